import re
import sys
import xml.etree.ElementTree as etree

import pytest
from latex2mathml.converter import convert
from latex2mathml.exceptions import (
    DenominatorNotFoundError,
    DoubleSubscriptsError,
    DoubleSuperscriptsError,
    ExtraLeftOrMissingRightError,
    InvalidAlignmentError,
    InvalidStyleForGenfracError,
    InvalidWidthError,
    LimitsMustFollowMathOperatorError,
    MissingEndError,
    MissingSuperScriptOrSubscriptError,
    NoAvailableTokensError,
    NumeratorNotFoundError,
)
from markdown import Markdown
from markdown.blockprocessors import BlockProcessor
from markdown.extensions import Extension
from markdown.inlinepatterns import InlineProcessor


TEX_ERRORS = (
    DenominatorNotFoundError,
    DoubleSubscriptsError,
    DoubleSuperscriptsError,
    ExtraLeftOrMissingRightError,
    InvalidAlignmentError,
    InvalidStyleForGenfracError,
    InvalidWidthError,
    LimitsMustFollowMathOperatorError,
    MissingEndError,
    MissingSuperScriptOrSubscriptError,
    NoAvailableTokensError,
    NumeratorNotFoundError,
)

# `$x$`, but not `$5 and $10`, `\$` or `$$`
INLINE_MATH_PATTERN = r"(?<![\\$\w])\$(?![\s$])(?P<tex>.+?)(?<![\s\\])\$(?![\w$])"
DISPLAY_MATH_DELIMITER = "$$"
DISPLAY_MATH_CLASS = "math"
MATH_ELEMENT_PATTERN = re.compile(r"<(m[a-z]+)[\s>/]")
MATH_FONT_FAMILY = "mdsite-math"

BASE_RULES = [
    'math[display="block"] { display: block math; margin: 1em 0; overflow-x: auto; overflow-y: hidden; }',
    f"div.{DISPLAY_MATH_CLASS} {{ text-align: center; }}",
]

# Only emitted once a rendered formula uses the element, unless the full stylesheet is requested
ELEMENT_RULES = {
    "mi": 'math mi[mathvariant="normal"] { font-style: normal; }',
    "mn": "math mn { font-style: normal; }",
    "mo": "math mo { font-style: normal; }",
    "mtext": "math mtext { font-family: serif; }",
    "mfrac": "math mfrac { padding-inline: 0.1em; }",
    "msqrt": "math msqrt { padding-inline-start: 0.1em; }",
    "mroot": "math mroot { padding-inline-start: 0.1em; }",
    "msub": "math msub { margin-inline-end: 0.05em; }",
    "msup": "math msup { margin-inline-end: 0.05em; }",
    "msubsup": "math msubsup { margin-inline-end: 0.05em; }",
    "munder": "math munder { margin-inline: 0.05em; }",
    "mover": "math mover { margin-inline: 0.05em; }",
    "munderover": "math munderover { margin-inline: 0.05em; }",
    "mtable": "math mtable { display: inline-table; border-collapse: collapse; }",
    "mtd": "math mtd { padding: 0.2em 0.5em; }",
    "mspace": "math mspace { display: inline-block; }",
    "menclose": 'math menclose[notation~="box"] { border: 1px solid currentColor; padding: 0.1em 0.2em; }',
    "mstyle": 'math mstyle[displaystyle="true"] { math-style: normal; }',
    "merror": "math merror { color: #c00; }",
}


class MathRenderer:
    """TeX -> MathML, plus the stylesheet for the MathML produced so far.

    Like the highlight stylesheet, the adaptive math stylesheet only grows
    when a formula uses an element no earlier formula did.
    """

    def __init__(self, full_stylesheet: bool = False, font_url: str | None = None) -> None:
        self.full_stylesheet = full_stylesheet
        self.font_url = font_url
        self.used_elements: set[str] = set()

    def to_mathml(self, tex: str, display: str) -> str | None:
        """None when `tex` cannot be converted; the caller keeps the source text."""
        try:
            mathml = convert(tex.strip(), display=display)
        except TEX_ERRORS as e:
            print(f"Could not convert math {tex.strip()!r}: {type(e).__name__}", file=sys.stderr)
            return None
        self.used_elements.update(MATH_ELEMENT_PATTERN.findall(mathml))
        return mathml

    def stylesheet(self) -> str:
        rules = []
        fonts = '"STIX Two Math", "Latin Modern Math", math'
        if self.font_url:
            url = self.font_url.replace('"', "%22")
            rules.append(f'@font-face {{ font-family: "{MATH_FONT_FAMILY}"; src: url("{url}"); }}')
            fonts = f'"{MATH_FONT_FAMILY}", {fonts}'
        rules.append(f"math {{ font-family: {fonts}; }}")
        rules.extend(BASE_RULES)
        for element, rule in ELEMENT_RULES.items():
            if self.full_stylesheet or element in self.used_elements:
                rules.append(rule)
        return "\n".join(rules) + "\n"


class InlineMathProcessor(InlineProcessor):
    def __init__(self, pattern: str, md: Markdown, math: MathRenderer) -> None:
        super().__init__(pattern, md)
        self.math = math

    def handleMatch(self, m, data):
        mathml = self.math.to_mathml(m.group("tex"), "inline")
        if mathml is None:
            return None, None, None
        return self.md.htmlStash.store(mathml), m.start(0), m.end(0)


class DisplayMathProcessor(BlockProcessor):
    def __init__(self, parser, math: MathRenderer) -> None:
        super().__init__(parser)
        self.math = math

    def test(self, parent, block) -> bool:
        return block.startswith(DISPLAY_MATH_DELIMITER)

    def run(self, parent, blocks):
        text = blocks[0][len(DISPLAY_MATH_DELIMITER):]
        consumed = 1
        # A formula may contain blank lines, so keep taking blocks until the closing delimiter
        while not text.rstrip().endswith(DISPLAY_MATH_DELIMITER):
            if consumed == len(blocks):
                return False
            text = f"{text}\n\n{blocks[consumed]}"
            consumed += 1

        mathml = self.math.to_mathml(text.rstrip()[: -len(DISPLAY_MATH_DELIMITER)], "block")
        if mathml is None:
            return False
        del blocks[:consumed]
        container = etree.SubElement(parent, "div")
        container.set("class", DISPLAY_MATH_CLASS)
        container.text = self.parser.md.htmlStash.store(mathml)


class MathExtension(Extension):
    def __init__(self, math: MathRenderer) -> None:
        super().__init__()
        self.math = math

    def extendMarkdown(self, md: Markdown) -> None:
        # Ahead of backslash escapes (180) so TeX commands reach the converter untouched
        md.inlinePatterns.register(InlineMathProcessor(INLINE_MATH_PATTERN, md, self.math), "math_inline", 185)
        md.parser.blockprocessors.register(DisplayMathProcessor(md.parser, self.math), "math_display", 95)


class TestMathRenderer:
    def _markdown(self, math: MathRenderer) -> Markdown:
        return Markdown(extensions=[MathExtension(math)])

    def test_inline(self):
        html = self._markdown(MathRenderer()).convert("Euler: $e^{i\\pi} + 1 = 0$.")
        assert html.startswith("<p>Euler: <math ")
        assert 'display="inline"' in html
        assert "<msup>" in html
        assert html.endswith("</math>.</p>")

    def test_display(self):
        html = self._markdown(MathRenderer()).convert("Before\n\n$$\n\\frac{a}{b}\n$$\n\nAfter")
        assert f'<div class="{DISPLAY_MATH_CLASS}"><math ' in html
        assert 'display="block"' in html
        assert "<mfrac>" in html
        assert html.endswith("<p>After</p>")

    def test_display_spanning_blank_lines(self):
        html = self._markdown(MathRenderer()).convert("$$\nx\n\n= 1\n$$")
        assert html.count("<math ") == 1
        assert "$$" not in html

    def test_unterminated_display_is_text(self):
        html = self._markdown(MathRenderer()).convert("$$\nx")
        assert "<math" not in html
        assert "$$" in html

    def test_dollar_amounts_are_not_math(self):
        html = self._markdown(MathRenderer()).convert("It costs $5 and $10, or \\$x\\$.")
        assert "<math" not in html

    def test_code_is_left_alone(self):
        html = self._markdown(MathRenderer()).convert("`$x$`\n\n```\n$$\ny\n$$\n```\n")
        assert "<math" not in html

    def test_invalid_tex_is_kept(self, capsys):
        html = self._markdown(MathRenderer()).convert("$x_1_2$")
        assert html == "<p>$x_1_2$</p>"
        assert "Could not convert math 'x_1_2': DoubleSubscriptsError" in capsys.readouterr().err

    def test_adaptive_stylesheet(self):
        math = MathRenderer()
        initial = math.stylesheet()
        assert initial.strip()
        assert "math mfrac" not in initial
        self._markdown(math).convert("$\\frac{1}{2}$")
        assert "math mfrac" in math.stylesheet()
        assert "math mtable" not in math.stylesheet()

    def test_full_stylesheet(self):
        css = MathRenderer(full_stylesheet=True).stylesheet()
        for rule in ELEMENT_RULES.values():
            assert rule in css

    def test_font_url(self):
        css = MathRenderer(font_url="fonts/math.woff2").stylesheet()
        assert f'@font-face {{ font-family: "{MATH_FONT_FAMILY}"; src: url("fonts/math.woff2"); }}' in css
        assert f'math {{ font-family: "{MATH_FONT_FAMILY}", ' in css
        assert "@font-face" not in MathRenderer().stylesheet()

    @pytest.mark.parametrize("tex", ["x", "a^2 + b^2 = c^2", "\\sqrt{2}"])
    def test_used_elements_are_recorded(self, tex):
        math = MathRenderer()
        assert math.to_mathml(tex, "inline") is not None
        assert "mrow" in math.used_elements
