import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Self

from mdsite.env import DOCUMENT_EXT, OUTPUT_EXT, ROOT_MARKER
from mdsite.paths import AnchoredPath, DirRef, FileRef, is_outside


def _cwd() -> DirRef:
    return DirRef.resolve("")


def strip_root_marker(text: str) -> str:
    """Drop a leading `@/`. Whatever follows is always taken as relative to the root."""
    if text.startswith(ROOT_MARKER):
        return text[len(ROOT_MARKER):].lstrip("/\\")
    return text


def has_root_marker(text: str) -> bool:
    return text.startswith(ROOT_MARKER)


@dataclass(frozen=True)
class RootContext:
    """The input and output roots of one conversion run.

    Instances are never modified; a reconfiguration builds a new context and
    swaps it in, so a render holding the previous one keeps a consistent view.
    """

    input_root: DirRef = field(default_factory=_cwd)
    output_root: DirRef = field(default_factory=_cwd)

    @classmethod
    def for_single_file(cls) -> Self:
        return cls(input_root=_cwd(), output_root=_cwd())

    @classmethod
    def for_tree(cls, input_dir: DirRef, output_dir: DirRef) -> Self:
        return cls(input_root=input_dir, output_root=output_dir)

    def resolve_under_input(self, text: str) -> AnchoredPath:
        return AnchoredPath.resolve(strip_root_marker(text), self.input_root)

    def resolve_under_output(self, text: str) -> AnchoredPath:
        return AnchoredPath.resolve(strip_root_marker(text), self.output_root)

    def is_under_input(self, path) -> bool:
        return not is_outside(AnchoredPath.resolve(os.fspath(path)).path_from(self.input_root))

    def is_under_output(self, path) -> bool:
        return not is_outside(AnchoredPath.resolve(os.fspath(path)).path_from(self.output_root))

    def mirror_to_output(self, source: FileRef) -> FileRef:
        mirrored = FileRef.resolve(source.path_from(self.input_root), self.output_root)
        if source.ext == DOCUMENT_EXT:
            return mirrored.with_ext(OUTPUT_EXT)
        return mirrored

    @staticmethod
    def default_output(file: str) -> str:
        return f"{Path(file).stem}{OUTPUT_EXT}"


class TestRootContext:
    def _context(self, tmp_path) -> RootContext:
        return RootContext.for_tree(
            DirRef.resolve("input", tmp_path),
            DirRef.resolve("output", tmp_path),
        )

    def test_defaults_to_cwd(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        for roots in [RootContext(), RootContext.for_single_file()]:
            assert roots.input_root.abs_path == os.getcwd()
            assert roots.output_root.abs_path == os.getcwd()

    def test_for_tree(self, tmp_path):
        roots = self._context(tmp_path)
        assert roots.input_root.abs_path == str(tmp_path / "input")
        assert roots.output_root.abs_path == str(tmp_path / "output")

    def test_resolve_under_input(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        roots = self._context(tmp_path)
        expected = os.path.join("input", "docs", "guide.md")
        assert roots.resolve_under_input("docs/guide.md").location == expected
        assert roots.resolve_under_input("@/docs/guide.md").location == expected
        assert roots.resolve_under_input("@/docs/sub/detail.md").location == os.path.join(
            "input", "docs", "sub", "detail.md"
        )

    def test_resolve_under_output(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        roots = self._context(tmp_path)
        assert roots.resolve_under_output("docs/guide.html").location == os.path.join("output", "docs", "guide.html")
        assert roots.resolve_under_output("@/css/style.css").location == os.path.join("output", "css", "style.css")

    def test_marker_never_escapes_to_filesystem_root(self, tmp_path):
        roots = self._context(tmp_path)
        assert roots.resolve_under_input("@//etc/passwd").abs_path == str(tmp_path / "input" / "etc" / "passwd")

    def test_mirror_to_output(self, tmp_path):
        roots = self._context(tmp_path)
        doc = FileRef.resolve("docs/Guide.MD", roots.input_root)
        asset = FileRef.resolve("img/logo.png", roots.input_root)
        assert roots.mirror_to_output(doc).abs_path == str(tmp_path / "output" / "docs" / "Guide.html")
        assert roots.mirror_to_output(asset).abs_path == str(tmp_path / "output" / "img" / "logo.png")

    def test_containment(self, tmp_path):
        roots = RootContext.for_tree(DirRef.resolve(str(tmp_path)), DirRef.resolve("site", tmp_path))
        assert roots.is_under_input(tmp_path / "a.md")
        assert roots.is_under_output(tmp_path / "site" / "a.html")
        assert not roots.is_under_output(tmp_path / "a.md")
        assert not roots.is_under_input(tmp_path.parent / "other.md")

    def test_default_output(self):
        assert RootContext.default_output(os.path.join("input", "README.md")) == "README.html"
        assert RootContext.default_output(os.path.join("input", "docs", "guide.md")) == "guide.html"
