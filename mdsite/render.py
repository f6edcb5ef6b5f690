import re

import markdown
import pytest
from pygments.formatters import HtmlFormatter
from pygments.styles import get_style_by_name
from pygments.util import ClassNotFound

from mdsite.errors import SiteError
from mdsite.mathml import MathExtension, MathRenderer


HIGHLIGHT_CSS_CLASS = "codehilite"
TOKEN_CLASS_PATTERN = re.compile(r'<span class="([\w-]+)"')
TOKEN_RULE_PATTERN = re.compile(rf"^\.{HIGHLIGHT_CSS_CLASS} \.([\w-]+) ")

MARKDOWN_EXTENSIONS = [
    "markdown.extensions.fenced_code",
    "markdown.extensions.tables",
    "markdown.extensions.codehilite",
    "markdown.extensions.toc",
    "markdown.extensions.attr_list",
    "markdown.extensions.footnotes",
]


class MarkdownRenderer:
    """Markdown -> HTML, plus the math and highlight stylesheets matching what was rendered.

    In adaptive mode a stylesheet only carries rules for the MathML elements or
    token classes that showed up in some document rendered so far, so it
    changes only when a document introduces something new.
    """

    def __init__(
        self,
        style: str = "default",
        full_css: bool = False,
        full_math: bool = False,
        math_font_url: str | None = None,
    ) -> None:
        try:
            get_style_by_name(style)
        except ClassNotFound:
            raise SiteError(f"Unknown highlight style: {style}")
        self.style = style
        self.full_css = full_css
        self.used_token_classes: set[str] = set()
        self.math = MathRenderer(full_stylesheet=full_math, font_url=math_font_url)
        self.md = markdown.Markdown(
            extensions=[*MARKDOWN_EXTENSIONS, MathExtension(self.math)],
            extension_configs={
                "markdown.extensions.codehilite": {
                    "css_class": HIGHLIGHT_CSS_CLASS,
                    "guess_lang": False,
                },
            },
        )

    def render(self, text: str) -> str:
        self.md.reset()
        html = self.md.convert(text)
        if not html:
            return ""
        self.used_token_classes.update(TOKEN_CLASS_PATTERN.findall(html))
        return f"{html}\n"

    def math_stylesheet(self) -> str:
        return self.math.stylesheet()

    def highlight_stylesheet(self) -> str:
        rules = HtmlFormatter(style=self.style).get_style_defs(f".{HIGHLIGHT_CSS_CLASS}").splitlines()
        if not self.full_css:
            rules = [
                rule
                for rule in rules
                if (match := TOKEN_RULE_PATTERN.match(rule)) is None or match.group(1) in self.used_token_classes
            ]
        return "\n".join(rules) + "\n"


class TestMarkdownRenderer:
    def test_paragraph(self):
        assert MarkdownRenderer().render("This is file") == "<p>This is file</p>\n"

    def test_empty_document(self):
        assert MarkdownRenderer().render("") == ""

    def test_root_links_survive_rendering(self):
        html = MarkdownRenderer().render("[Readme](@/README.html) ![logo](@/img/logo.png)")
        assert 'href="@/README.html"' in html
        assert 'src="@/img/logo.png"' in html

    def test_renders_independent_documents(self):
        renderer = MarkdownRenderer()
        renderer.render("# One\n\n[^1]\n\n[^1]: note")
        assert renderer.render("two") == "<p>two</p>\n"

    def test_math(self):
        renderer = MarkdownRenderer()
        html = renderer.render("Area: $\\pi r^2$\n\n$$\n\\sqrt{x}\n$$\n")
        assert 'display="inline"' in html
        assert '<div class="math"><math ' in html
        assert "math msqrt" in renderer.math_stylesheet()

    def test_math_inside_code_block_is_not_rendered(self):
        html = MarkdownRenderer().render("```\ncost = $a$ + $b$\n```\n")
        assert "<math" not in html

    def test_math_options(self):
        renderer = MarkdownRenderer(full_math=True, math_font_url="/fonts/math.woff")
        css = renderer.math_stylesheet()
        assert "math mtable" in css
        assert 'url("/fonts/math.woff")' in css

    def test_initial_stylesheets_have_contents(self):
        renderer = MarkdownRenderer()
        assert renderer.highlight_stylesheet().strip()
        assert renderer.math_stylesheet().strip()

    def test_adaptive_stylesheet_grows_with_content(self):
        renderer = MarkdownRenderer()
        before = renderer.highlight_stylesheet()
        renderer.render("plain text only")
        assert renderer.highlight_stylesheet() == before

        renderer.render("```python\ndef main():\n    return 1\n```\n")
        after = renderer.highlight_stylesheet()
        assert after != before
        assert ".codehilite .k " in after

    def test_full_stylesheet(self):
        full = MarkdownRenderer(full_css=True).highlight_stylesheet()
        adaptive = MarkdownRenderer().highlight_stylesheet()
        assert len(full) > len(adaptive)
        assert ".codehilite .k " in full

    def test_unknown_style(self):
        with pytest.raises(SiteError):
            MarkdownRenderer(style="no-such-style")
