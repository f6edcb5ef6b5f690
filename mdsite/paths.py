import os
import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, ClassVar, Iterator, Self

import pytest


def _anchor_dir(anchor: "str | os.PathLike | AnchoredPath | FileRef | DirRef | None") -> str:
    if anchor is None:
        return os.getcwd()
    if isinstance(anchor, AnchoredPath):
        return anchor.abs_path
    if isinstance(anchor, (FileRef, DirRef)):
        return anchor.abs_path
    # abspath("") is the working directory
    return os.path.abspath(os.fspath(anchor))


def is_outside(relative_path: str) -> bool:
    """Does a path produced by `path_from()` leave the directory it was computed from?"""
    if os.path.isabs(relative_path):
        return True
    return relative_path == os.pardir or relative_path.startswith(os.pardir + os.sep)


@dataclass(frozen=True)
class AnchoredPath:
    """A path tied to the absolute directory it was given relative to.

    `raw` is the text exactly as supplied (trimmed). `src_dir` is the directory
    it was resolved against, and `abs_path` the normalized absolute result.
    Keeping the anchor around lets the same location be re-expressed relative
    to any other directory without losing what the caller originally wrote.
    """

    raw: str
    src_dir: str
    abs_path: str

    @classmethod
    def resolve(cls, text: str, anchor=None) -> Self:
        if text is None:
            raise TypeError("Cannot resolve a path from None")
        src_dir = _anchor_dir(anchor)
        raw = text.strip()
        # An empty path names the anchoring directory itself
        return cls(
            raw=raw,
            src_dir=src_dir,
            abs_path=os.path.normpath(os.path.join(src_dir, raw)),
        )

    def path_from(self, other) -> str:
        base = _anchor_dir(other)
        try:
            return os.path.relpath(self.abs_path, base)
        except ValueError:
            # No common root (e.g. another drive)
            return self.abs_path

    @property
    def path(self) -> str:
        """Clean path relative to the anchoring directory, or absolute if given absolute."""
        if self.is_absolute():
            return self.abs_path
        return self.path_from(self.src_dir)

    @property
    def location(self) -> str:
        """Human-readable form for log lines: cwd-relative unless that would climb out of the cwd."""
        if self.is_absolute():
            return self.abs_path
        relative = self.path_from(os.getcwd())
        if is_outside(relative):
            return self.abs_path
        return relative

    def is_absolute(self) -> bool:
        return os.path.isabs(self.raw)

    def chdir(self, anchor) -> Self:
        # Re-derive the text relative to the new anchor so `raw` stays meaningful for further rebasing
        new_anchor = _anchor_dir(anchor)
        return AnchoredPath.resolve(self.path_from(new_anchor), new_anchor)

    def __fspath__(self) -> str:
        return self.abs_path

    def __str__(self) -> str:
        return self.abs_path


class _AnchoredRef:
    path: AnchoredPath

    @classmethod
    def resolve(cls, text: str, anchor=None) -> Self:
        return cls(AnchoredPath.resolve(text, anchor))

    @property
    def raw(self) -> str:
        return self.path.raw

    @property
    def abs_path(self) -> str:
        return self.path.abs_path

    @property
    def location(self) -> str:
        return self.path.location

    @property
    def fs_path(self) -> Path:
        return Path(self.path.abs_path)

    @property
    def name(self) -> str:
        return self.fs_path.name

    def path_from(self, other) -> str:
        return self.path.path_from(other)

    def chdir(self, anchor) -> Self:
        return type(self)(self.path.chdir(anchor))

    def exists(self) -> bool:
        return self.fs_path.exists()

    def is_file(self) -> bool:
        return self.fs_path.is_file()

    def is_dir(self) -> bool:
        return self.fs_path.is_dir()

    def __fspath__(self) -> str:
        return self.path.abs_path

    def __str__(self) -> str:
        return self.path.abs_path


@dataclass(frozen=True)
class FileRef(_AnchoredRef):
    path: AnchoredPath
    kind: ClassVar[str] = "file"

    @property
    def filename(self) -> str:
        return self.name

    @property
    def ext(self) -> str:
        # Computed from the basename only, so "a.b/c" has no extension
        return self.fs_path.suffix.lower()

    @property
    def stem(self) -> str:
        return self.fs_path.stem

    @property
    def parent(self) -> "DirRef":
        return DirRef.resolve(str(self.fs_path.parent))

    def with_ext(self, ext: str) -> Self:
        return FileRef.resolve(str(Path(self.path.path).with_suffix(ext)), self.path.src_dir)

    def read_text(self) -> str:
        return self.fs_path.read_text(encoding="utf-8")

    @contextmanager
    def open_write(self) -> Iterator[BinaryIO]:
        self.parent.mkdir()
        with self.fs_path.open("wb") as f:
            yield f

    def write_text(self, text: str) -> None:
        with self.open_write() as f:
            f.write(text.encode("utf-8"))

    def copy_to(self, destination: "FileRef") -> None:
        destination.parent.mkdir()
        shutil.copyfile(self.fs_path, destination.fs_path)


@dataclass(frozen=True)
class DirRef(_AnchoredRef):
    path: AnchoredPath
    kind: ClassVar[str] = "dir"

    def mkdir(self) -> None:
        self.fs_path.mkdir(parents=True, exist_ok=True)

    def clean(self) -> None:
        """Remove everything inside this directory, keeping the directory itself."""
        if not self.is_dir():
            return
        for child in self.fs_path.iterdir():
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()

    def entries(self) -> list["PathRef"]:
        """Every descendant, sorted, each directory's entries before its subdirectories' contents.

        Each entry is anchored at this directory.
        """
        root = self.fs_path
        found: list[PathRef] = []

        def visit(directory: Path) -> None:
            children = sorted(directory.iterdir(), key=lambda child: child.name)
            subdirs = [child for child in children if child.is_dir()]
            for child in subdirs:
                found.append(DirRef.resolve(str(child.relative_to(root)), self))
            for child in children:
                if not child.is_dir():
                    found.append(FileRef.resolve(str(child.relative_to(root)), self))
            for child in subdirs:
                # Linked directories are listed but not descended into
                if not child.is_symlink():
                    visit(child)

        visit(root)
        return found


PathRef = FileRef | DirRef


def open_path(text: str) -> PathRef:
    path = AnchoredPath.resolve(text)
    fs_path = Path(path.abs_path)
    if not fs_path.exists():
        raise FileNotFoundError(f"No such file or directory: {text}")
    if fs_path.is_file():
        return FileRef(path)
    return DirRef(path)


def append_missing_ext(path: str, ext: str) -> str:
    if not ext.startswith("."):
        ext = f".{ext}"
    if Path(path).suffix == "":
        return path + ext
    return path


class TestAnchoredPath:
    def test_file_in_cwd(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        p = AnchoredPath.resolve("file.md")
        assert p.location == "file.md"
        assert p.abs_path == os.path.join(os.getcwd(), "file.md")

    def test_file_in_abs_dir(self, tmp_path):
        p = AnchoredPath.resolve("file.md", tmp_path / "sub")
        assert p.abs_path == str(tmp_path / "sub" / "file.md")
        assert p.src_dir == str(tmp_path / "sub")

    def test_empty_text_is_the_anchor(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert AnchoredPath.resolve("", tmp_path / "dir").abs_path == str(tmp_path / "dir")
        assert AnchoredPath.resolve("", "").abs_path == os.getcwd()
        assert AnchoredPath.resolve("").abs_path == os.getcwd()

    def test_none_is_rejected(self):
        with pytest.raises(TypeError):
            AnchoredPath.resolve(None)

    def test_raw_is_trimmed(self, tmp_path):
        p = AnchoredPath.resolve("  a.txt \n", tmp_path)
        assert p.raw == "a.txt"
        assert p.abs_path == str(tmp_path / "a.txt")

    def test_unnormalized_path_outside_cwd(self, tmp_path, monkeypatch):
        work = tmp_path / "work"
        work.mkdir()
        monkeypatch.chdir(work)
        p = AnchoredPath.resolve(".././//a.txt")
        assert p.abs_path == str(tmp_path / "a.txt")
        # Climbing out of the cwd is shown in absolute form
        assert p.location == p.abs_path

    def test_relative_anchor(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        p = AnchoredPath.resolve("abc.txt", "folder")
        assert p.location == os.path.join("folder", "abc.txt")
        assert p.path_from("folder") == "abc.txt"
        assert p.path == "abc.txt"

    def test_trailing_slash(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        p = AnchoredPath.resolve("folder/")
        assert p.location == "folder"
        assert p.abs_path == str(tmp_path / "folder")

    def test_absolute_raw(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        p = AnchoredPath.resolve(str(tmp_path / "x.md"), tmp_path / "elsewhere")
        assert p.is_absolute()
        assert p.abs_path == str(tmp_path / "x.md")
        assert p.location == p.abs_path
        assert p.path == p.abs_path

    def test_path_from_climbs_with_parent_segments(self, tmp_path):
        p = AnchoredPath.resolve("a/b.md", tmp_path / "input")
        relative = p.path_from(tmp_path / "output" / "docs")
        assert relative == os.path.join("..", "..", "input", "a", "b.md")
        assert is_outside(relative)
        assert not is_outside(p.path_from(tmp_path))

    def test_round_trip_through_anchor(self, tmp_path):
        for text in ["a.md", "x/../y/z.md", "./deep/er/", "../up.txt"]:
            p = AnchoredPath.resolve(text, tmp_path / "anchor")
            assert os.path.normpath(p.path_from(tmp_path / "anchor")) == os.path.normpath(text)

    def test_chdir_is_composable(self, tmp_path):
        a = tmp_path / "a"
        b = tmp_path / "b" / "c"
        p = AnchoredPath.resolve("docs/guide.md", a)
        moved = p.chdir(b)
        assert moved.src_dir == str(b)
        assert moved.raw == os.path.join("..", "..", "a", "docs", "guide.md")
        assert moved.abs_path == p.abs_path
        assert moved.abs_path == AnchoredPath.resolve(p.path_from(b), b).abs_path
        assert p.chdir(a).chdir(b) == p.chdir(b)


class TestFileRef:
    def test_relative_to_anchor(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        f = FileRef.resolve("abc.txt", "input")
        assert f.path_from("input") == "abc.txt"
        assert f.kind == "file"

    def test_ext(self, tmp_path):
        assert FileRef.resolve("README.MD", tmp_path).ext == ".md"
        assert FileRef.resolve("Makefile", tmp_path).ext == ""
        assert FileRef.resolve(".bashrc", tmp_path).ext == ""
        assert FileRef.resolve("a.b/c", tmp_path).ext == ""
        assert FileRef.resolve("a.tar.gz", tmp_path).ext == ".gz"

    def test_parent_and_stem(self, tmp_path):
        f = FileRef.resolve("docs/guide.md", tmp_path)
        assert f.parent.abs_path == str(tmp_path / "docs")
        assert f.parent.kind == "dir"
        assert f.stem == "guide"
        assert f.filename == "guide.md"

    def test_with_ext_keeps_anchor(self, tmp_path):
        f = FileRef.resolve("docs/guide.md", tmp_path).with_ext(".html")
        assert f.abs_path == str(tmp_path / "docs" / "guide.html")
        assert f.path.src_dir == str(tmp_path)
        assert FileRef.resolve("Guide.MD", tmp_path).with_ext(".html").name == "Guide.html"

    def test_chdir_preserves_kind(self, tmp_path):
        f = FileRef.resolve("x.md", tmp_path / "in").chdir(tmp_path)
        assert isinstance(f, FileRef)
        assert f.raw == os.path.join("in", "x.md")

    def test_write_creates_parents(self, tmp_path):
        f = FileRef.resolve("a/b/c.txt", tmp_path)
        f.write_text("hello\n")
        assert f.is_file()
        assert f.read_text() == "hello\n"
        with f.open_write() as sink:
            sink.write(b"\x00\x01")
        assert (tmp_path / "a" / "b" / "c.txt").read_bytes() == b"\x00\x01"

    def test_copy_to(self, tmp_path):
        src = FileRef.resolve("in/logo.png", tmp_path)
        src.write_text("png")
        dest = FileRef.resolve("out/img/logo.png", tmp_path)
        src.copy_to(dest)
        assert (tmp_path / "out" / "img" / "logo.png").read_bytes() == b"png"

    def test_fspath(self, tmp_path):
        f = FileRef.resolve("data.txt", tmp_path)
        with open(f, "w") as out:
            out.write("ok")
        assert os.fspath(f) == str(tmp_path / "data.txt")


class TestDirRef:
    def test_entries_are_anchored_and_sorted(self, tmp_path):
        (tmp_path / "b").mkdir()
        (tmp_path / "b" / "z.md").write_text("z")
        (tmp_path / "a.md").write_text("a")
        entries = DirRef.resolve(str(tmp_path)).entries()
        assert [(e.kind, e.path.raw) for e in entries] == [
            ("dir", "b"),
            ("file", "a.md"),
            ("file", os.path.join("b", "z.md")),
        ]
        assert all(e.path.src_dir == str(tmp_path) for e in entries)

    def test_clean_keeps_directory(self, tmp_path):
        out = tmp_path / "out"
        (out / "nested").mkdir(parents=True)
        (out / "nested" / "x.html").write_text("x")
        (out / "dummy.txt").write_text("12345")
        d = DirRef.resolve(str(out))
        d.clean()
        assert out.is_dir()
        assert list(out.iterdir()) == []

    def test_clean_missing_directory(self, tmp_path):
        DirRef.resolve("missing", tmp_path).clean()
        assert not (tmp_path / "missing").exists()

    def test_mkdir(self, tmp_path):
        d = DirRef.resolve("site/docs", tmp_path)
        d.mkdir()
        assert (tmp_path / "site" / "docs").is_dir()
        # Existing directories are left alone
        (tmp_path / "site" / "docs" / "keep.html").write_text("k")
        d.mkdir()
        assert (tmp_path / "site" / "docs" / "keep.html").read_text() == "k"

    def test_entries_of_nested_tree(self, tmp_path):
        (tmp_path / "a" / "b").mkdir(parents=True)
        (tmp_path / "a" / "b" / "deep.md").write_text("d")
        (tmp_path / "a" / "top.md").write_text("t")
        (tmp_path / "z.txt").write_text("z")
        entries = DirRef.resolve(str(tmp_path)).entries()
        assert [e.path.raw for e in entries] == [
            "a",
            "z.txt",
            os.path.join("a", "b"),
            os.path.join("a", "top.md"),
            os.path.join("a", "b", "deep.md"),
        ]


class TestOpenPath:
    def test_dispatch(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "file.md").write_text("x")
        (tmp_path / "dir").mkdir()
        assert isinstance(open_path("file.md"), FileRef)
        assert isinstance(open_path("dir"), DirRef)
        with pytest.raises(FileNotFoundError):
            open_path("nope.md")

    def test_append_missing_ext(self):
        assert append_missing_ext("output", ".html") == "output.html"
        assert append_missing_ext("output.html", ".html") == "output.html"
        assert append_missing_ext("output.xxx", "html") == "output.xxx"
        assert append_missing_ext(os.path.join("a.d", "out"), ".html") == os.path.join("a.d", "out.html")
