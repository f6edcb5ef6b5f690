import os
import re

from mdsite.env import LINK_ATTRIBUTES, ROOT_MARKER, SRCSET_ATTRIBUTES
from mdsite.paths import AnchoredPath, DirRef, FileRef
from mdsite.roots import RootContext, has_root_marker, strip_root_marker


# Textual pass over attr="value" pairs. The lookbehind keeps e.g. data-src from matching src
ATTRIBUTE_PATTERN = re.compile(
    r"(?<![\w-])(?P<attr>" + "|".join(LINK_ATTRIBUTES) + r")\s*=\s*(?P<quote>[\"'])(?P<value>.*?)(?P=quote)",
    re.IGNORECASE | re.DOTALL,
)
SRCSET_CANDIDATE_PATTERN = re.compile(r"^(\s*)(\S*)(.*)$", re.DOTALL)


def rewrite_root_link(value: str, produced: FileRef, roots: RootContext) -> str:
    """Turn `@/target` into a link to the target's output location, relative to `produced`.

    Anything without the marker is returned as-is.
    """
    if not has_root_marker(value):
        return value
    target = roots.resolve_under_input(strip_root_marker(value))
    # The target will live at the same relative location under the output root
    mirrored = AnchoredPath.resolve(target.path_from(roots.input_root), roots.output_root)
    relative = mirrored.path_from(produced.parent).replace(os.sep, "/")
    if value.endswith("/") and not relative.endswith("/"):
        relative += "/"
    return relative


def rewrite_srcset(value: str, produced: FileRef, roots: RootContext) -> str:
    out = []
    for candidate in re.split(r"(,)", value):
        if candidate == ",":
            out.append(candidate)
            continue
        leading_space, url, descriptor = SRCSET_CANDIDATE_PATTERN.match(candidate).groups()
        out.append(leading_space + rewrite_root_link(url, produced, roots) + descriptor)
    return "".join(out)


def rewrite_links(html: str, produced: FileRef, roots: RootContext) -> str:
    """Rewrite every root-relative reference in `html` for a document written to `produced`."""
    if ROOT_MARKER not in html:
        return html

    def replace(match: re.Match) -> str:
        value = match.group("value")
        if match.group("attr").lower() in SRCSET_ATTRIBUTES:
            new_value = rewrite_srcset(value, produced, roots)
        else:
            new_value = rewrite_root_link(value, produced, roots)
        if new_value == value:
            return match.group(0)
        text = match.group(0)
        value_start = match.start("value") - match.start()
        value_end = match.end("value") - match.start()
        return text[:value_start] + new_value + text[value_end:]

    return ATTRIBUTE_PATTERN.sub(replace, html)


class TestRewriteLinks:
    def _setup(self, tmp_path) -> RootContext:
        return RootContext.for_tree(DirRef.resolve("input", tmp_path), DirRef.resolve("output", tmp_path))

    def _produced(self, roots: RootContext, source: str) -> FileRef:
        return roots.mirror_to_output(FileRef.resolve(source, roots.input_root))

    def test_href_from_file_to_root(self, tmp_path):
        roots = self._setup(tmp_path)
        html = '<a href="@/README.html">Readme</a>'
        out = rewrite_links(html, self._produced(roots, "docs/guide.md"), roots)
        assert out == '<a href="../README.html">Readme</a>'

    def test_href_from_nested_file_to_root(self, tmp_path):
        roots = self._setup(tmp_path)
        html = '<a href="@/README.html">Readme</a>'
        out = rewrite_links(html, self._produced(roots, "docs/sub/detail.md"), roots)
        assert out == '<a href="../../README.html">Readme</a>'

    def test_href_from_root_to_nested_file(self, tmp_path):
        roots = self._setup(tmp_path)
        html = '<a href="@/docs/guide.html">Guide</a>'
        out = rewrite_links(html, self._produced(roots, "README.md"), roots)
        assert out == '<a href="docs/guide.html">Guide</a>'

    def test_href_between_siblings(self, tmp_path):
        roots = self._setup(tmp_path)
        html = '<a href="@/docs/sub/detail.html">Detail</a>'
        out = rewrite_links(html, self._produced(roots, "docs/guide.md"), roots)
        assert out == '<a href="sub/detail.html">Detail</a>'

    def test_depth_gives_parent_steps(self, tmp_path):
        roots = self._setup(tmp_path)
        produced = self._produced(roots, "a/b/c/page.md")
        out = rewrite_links('<img src="@/x/y/pic.png">', produced, roots)
        assert out == '<img src="../../../x/y/pic.png">'

    def test_src_and_single_quotes(self, tmp_path):
        roots = self._setup(tmp_path)
        produced = self._produced(roots, "docs/guide.md")
        assert rewrite_links('<img src="@/images/logo.png">', produced, roots) == '<img src="../images/logo.png">'
        assert rewrite_links("<img src='@/images/logo.png'>", produced, roots) == "<img src='../images/logo.png'>"

    def test_srcset_candidates(self, tmp_path):
        roots = self._setup(tmp_path)
        produced = self._produced(roots, "docs/guide.md")
        html = '<img srcset="@/img/a.png 1x, img/b.png 2x,@/img/c.png 3x">'
        out = rewrite_links(html, produced, roots)
        assert out == '<img srcset="../img/a.png 1x, img/b.png 2x,../img/c.png 3x">'

    def test_unmarked_values_unchanged(self, tmp_path):
        roots = self._setup(tmp_path)
        produced = self._produced(roots, "docs/guide.md")
        html = (
            '<a href="README.html">Readme</a><img src="/abs.png" srcset="a.png 1x, b.png 2x">'
            '<form action="../submit"></form>'
        )
        assert rewrite_links(html, produced, roots) == html

    def test_unknown_attributes_untouched(self, tmp_path):
        roots = self._setup(tmp_path)
        produced = self._produced(roots, "docs/guide.md")
        html = '<div data-src="@/a.png" title="@/b.png" data="@/c.png"></div>'
        out = rewrite_links(html, produced, roots)
        assert out == '<div data-src="@/a.png" title="@/b.png" data="../c.png"></div>'

    def test_malformed_attribute_passes_through(self, tmp_path):
        roots = self._setup(tmp_path)
        produced = self._produced(roots, "docs/guide.md")
        html = '<a href=@/README.html>x</a><a href="@/open'
        assert rewrite_links(html, produced, roots) == html

    def test_own_directory_and_trailing_slash(self, tmp_path):
        roots = self._setup(tmp_path)
        produced = self._produced(roots, "docs/guide.md")
        assert rewrite_links('<a href="@/docs">', produced, roots) == '<a href=".">'
        assert rewrite_links('<a href="@/other/">', produced, roots) == '<a href="../other/">'

    def test_single_file_roots(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        roots = RootContext.for_single_file()
        produced = FileRef.resolve("notes/page.html")
        assert rewrite_links('<a href="@/index.html">', produced, roots) == '<a href="../index.html">'

    def test_forward_slashes(self, tmp_path):
        roots = self._setup(tmp_path)
        source = "docs\\guide.md" if os.sep == "\\" else "docs/guide.md"
        out = rewrite_links('<a href="@/README.html">Readme</a>', self._produced(roots, source), roots)
        assert "\\" not in out
        assert "../README.html" in out
