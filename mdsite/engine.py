import asyncio
import datetime
import fnmatch
import os
import sys
from dataclasses import dataclass
from pathlib import PurePath
from typing import AsyncIterator, Callable

import pytest

from mdsite.config import ConvertOptions
from mdsite.env import DEFAULT_OUTPUT_DIR, DEFAULT_TEMPLATE_FILE, DOCUMENT_EXT, OUTPUT_EXT
from mdsite.errors import MissingInputError, SiteError
from mdsite.hot_reload import ChangeEvent, ChangeKind, WatchTarget, watch_paths
from mdsite.links import rewrite_links
from mdsite.paths import DirRef, FileRef, PathRef, append_missing_ext, open_path
from mdsite.render import MarkdownRenderer
from mdsite.roots import RootContext, strip_root_marker
from mdsite.templates import HtmlTemplate, TemplateProvider, fill_template


WatchSource = Callable[[list[WatchTarget]], AsyncIterator[ChangeEvent]]


@dataclass(frozen=True)
class ConversionPlan:
    source: PathRef
    # None sends the document to stdout (single-file mode only)
    output: FileRef | DirRef | None
    template: str
    roots: RootContext

    @property
    def is_tree(self) -> bool:
        return isinstance(self.source, DirRef)


def is_ignored(relative_path: str, patterns: list[str]) -> bool:
    path = PurePath(relative_path)
    for pattern in patterns:
        if path.match(pattern):
            return True
        # A pattern naming a directory excludes everything below it
        if any(fnmatch.fnmatch(part, pattern) for part in path.parts[:-1]):
            return True
    return False


class SiteConverter:
    """Converts a markdown file, or a whole directory of them, into HTML.

    Directory inputs are mirrored into the output directory: `.md` files are
    rendered, everything else is copied as-is. `watch()` does the same and then
    keeps re-rendering whatever changes.
    """

    def __init__(
        self,
        options: ConvertOptions | None = None,
        renderer: MarkdownRenderer | None = None,
        templates: TemplateProvider | None = None,
        watch_source: WatchSource = watch_paths,
    ) -> None:
        self.options = options or ConvertOptions()
        self.renderer = renderer or MarkdownRenderer(
            style=self.options.style,
            full_css=self.options.full_css,
            full_math=self.options.full_math,
            math_font_url=self.options.math_font_url,
        )
        self.templates = templates or TemplateProvider()
        self.watch_source = watch_source
        self.roots = RootContext()
        # Last contents written, per stylesheet path
        self.last_stylesheets: dict[str, str] = {}
        self._stylesheet_lock: asyncio.Lock | None = None

    def _print(self, *args) -> None:
        if not self.options.quiet:
            print(*args)

    async def convert(self, input_path: str, output_path: str | None = None, template: str | None = None) -> None:
        plan = self._prepare(input_path, output_path, template)
        self._stylesheet_lock = asyncio.Lock()
        await self._run(plan)

    async def watch(self, input_path: str, output_path: str | None = None, template: str | None = None) -> None:
        plan = self._prepare(input_path, output_path, template)
        self._stylesheet_lock = asyncio.Lock()
        await self._run(plan)
        if plan.is_tree:
            await self._watch_tree(plan)
        else:
            await self._watch_single(plan)

    def _prepare(self, input_path: str, output_path: str | None, template: str | None) -> ConversionPlan:
        if template is not None and not template.strip():
            raise SiteError("template must not be empty")
        if self.options.math and self.options.math == self.options.css:
            raise SiteError(f"math and highlight stylesheets must be different files: {self.options.math}")
        try:
            source = open_path(input_path)
        except FileNotFoundError:
            raise MissingInputError(f"No such file or directory: {input_path}")

        if isinstance(source, DirRef):
            plan = self._prepare_tree(source, output_path, template)
        else:
            plan = self._prepare_single(source, output_path, template)

        if not self.templates.exists(plan.template):
            raise SiteError(f"Template not found: {plan.template}")
        return plan

    def _prepare_tree(self, source: DirRef, output_path: str | None, template: str | None) -> ConversionPlan:
        if self.options.stdout:
            raise SiteError("stdout can only be used when the input is a file")
        if output_path is not None and not output_path.strip():
            raise SiteError("output directory must not be empty when the input is a directory")

        output = DirRef.resolve(output_path if output_path is not None else DEFAULT_OUTPUT_DIR)
        if output.exists() and not output.is_dir():
            raise SiteError(f"output is not a directory: {output.location}")
        if output.abs_path == source.abs_path:
            raise SiteError("output directory must differ from the input directory")
        roots = RootContext.for_tree(source, output)
        if self.options.clean and roots.is_under_output(source):
            raise SiteError(f"refusing to clean {output.location}: it contains the input directory")

        if template is None:
            per_tree_template = FileRef.resolve(DEFAULT_TEMPLATE_FILE, source)
            template = per_tree_template.location if per_tree_template.is_file() else "default"
        return ConversionPlan(source=source, output=output, template=template, roots=roots)

    def _prepare_single(self, source: FileRef, output_path: str | None, template: str | None) -> ConversionPlan:
        roots = RootContext.for_single_file()
        template = template if template is not None else "default"
        if self.options.stdout or (output_path is not None and not output_path.strip()):
            return ConversionPlan(source=source, output=None, template=template, roots=roots)

        name = output_path if output_path is not None else RootContext.default_output(source.abs_path)
        output = FileRef.resolve(append_missing_ext(name, OUTPUT_EXT))
        if output.is_dir():
            raise SiteError(f"output is a directory: {output.location}")
        return ConversionPlan(source=source, output=output, template=template, roots=roots)

    async def _run(self, plan: ConversionPlan) -> None:
        # Swap in the new roots as a whole; nothing mutates a context in place
        self.roots = plan.roots
        self.last_stylesheets = {}
        if plan.is_tree:
            await self._convert_tree(plan)
        else:
            await self._convert_single(plan)

    async def _convert_single(self, plan: ConversionPlan) -> None:
        template = self.templates.resolve(plan.template)
        produced = plan.output or FileRef.resolve(RootContext.default_output(plan.source.abs_path))
        document = await self._render_document(plan.source, produced, template, plan.roots)
        if plan.output is None:
            sys.stdout.write(document)
            return

        await asyncio.to_thread(plan.output.write_text, document)
        self._print("wrote:", plan.output.location)
        for path, render in self._stylesheets().items():
            await self._write_stylesheet(FileRef.resolve(strip_root_marker(path), plan.output.parent), render)

    async def _convert_tree(self, plan: ConversionPlan) -> None:
        roots = plan.roots
        if self.options.clean:
            await asyncio.to_thread(roots.output_root.clean)
        await asyncio.to_thread(roots.output_root.mkdir)

        template = self.templates.resolve(plan.template)
        entries = await asyncio.to_thread(roots.input_root.entries)
        await asyncio.gather(*(self._transform_entry(entry, template, roots) for entry in entries))
        # Every document of the pass has been rendered by now
        await self._refresh_stylesheets(roots)

    def _should_convert(self, source: FileRef, roots: RootContext) -> bool:
        if not roots.is_under_input(source):
            return False
        # Output directory nested inside the input tree
        if roots.is_under_input(roots.output_root) and roots.is_under_output(source):
            return False
        return not is_ignored(source.path_from(roots.input_root), self.options.ignore)

    async def _transform_entry(self, entry: PathRef, template: HtmlTemplate, roots: RootContext) -> None:
        if not isinstance(entry, FileRef):
            return
        if not self._should_convert(entry, roots):
            return

        destination = roots.mirror_to_output(entry)
        if entry.ext == DOCUMENT_EXT:
            document = await self._render_document(entry, destination, template, roots)
            await asyncio.to_thread(destination.write_text, document)
            self._print("wrote:", destination.location)
        elif entry.is_file():
            await asyncio.to_thread(entry.copy_to, destination)
            self._print("copied:", destination.location)

    async def _render_document(
        self,
        source: FileRef,
        produced: FileRef,
        template: HtmlTemplate,
        roots: RootContext,
    ) -> str:
        text = await asyncio.to_thread(source.read_text)
        modified = await asyncio.to_thread(os.path.getmtime, source.abs_path)
        document = fill_template(
            template,
            {
                "title": source.stem,
                "content": self.renderer.render(text),
                "date": datetime.date.fromtimestamp(modified).isoformat(),
            },
        )
        # Run over the filled page so root links in the template are fixed up too
        return rewrite_links(document, produced, roots)

    def _stylesheets(self) -> dict[str, Callable[[], str]]:
        """Configured stylesheet path -> function producing its current contents."""
        stylesheets = {}
        if self.options.math:
            stylesheets[self.options.math] = self.renderer.math_stylesheet
        if self.options.css:
            stylesheets[self.options.css] = self.renderer.highlight_stylesheet
        return stylesheets

    async def _refresh_stylesheets(self, roots: RootContext) -> None:
        for path, render in self._stylesheets().items():
            await self._write_stylesheet(FileRef(roots.resolve_under_output(path)), render)

    async def _write_stylesheet(self, target: FileRef, render: Callable[[], str]) -> None:
        async with self._stylesheet_lock:
            css = render()
            if self.last_stylesheets.get(target.abs_path) == css:
                return
            await asyncio.to_thread(target.write_text, css)
            self._print("wrote:", target.location)
            self.last_stylesheets[target.abs_path] = css

    async def _watch_single(self, plan: ConversionPlan) -> None:
        source = plan.source
        self._print(f"Watch started: {source.location}")
        async for event in self.watch_source([WatchTarget(source.parent.abs_path, recursive=False)]):
            if event.path != source.abs_path or event.kind is ChangeKind.Removed:
                continue
            try:
                await self._convert_single(plan)
            except FileNotFoundError:
                print(f"Skipped {source.location}: file disappeared before it could be read", file=sys.stderr)

    async def _watch_tree(self, plan: ConversionPlan) -> None:
        template_file = self.templates.template_file(plan.template)
        targets = [WatchTarget(plan.source.abs_path, recursive=True)]
        if template_file is not None and not plan.roots.is_under_input(template_file):
            targets.append(WatchTarget(template_file.parent.abs_path, recursive=False))
        self._print(f"Watch started: {plan.source.location}")

        pending: set[asyncio.Task] = set()
        try:
            async for event in self.watch_source(targets):
                self._reap(pending)
                if template_file is not None and event.path == template_file.abs_path:
                    if event.kind is not ChangeKind.Removed:
                        await self._drain(pending)
                        plan = await self._reload_template(plan)
                    continue
                # Outputs of removed sources are left in place
                if event.kind is ChangeKind.Removed:
                    continue
                source = FileRef.resolve(event.path)
                if not self._should_convert(source, plan.roots):
                    continue
                pending.add(asyncio.create_task(self._on_source_changed(source, plan)))
        except asyncio.CancelledError:
            # Renders already in flight are allowed to finish
            await asyncio.gather(*pending, return_exceptions=True)
            raise
        await self._drain(pending)

    @staticmethod
    def _reap(pending: set[asyncio.Task]) -> None:
        for task in [t for t in pending if t.done()]:
            pending.discard(task)
            # Re-raises anything unexpected from the per-file task
            task.result()

    @staticmethod
    async def _drain(pending: set[asyncio.Task]) -> None:
        if pending:
            tasks = list(pending)
            pending.clear()
            await asyncio.gather(*tasks)

    async def _reload_template(self, plan: ConversionPlan) -> ConversionPlan:
        self.templates.invalidate(plan.template)
        roots = RootContext.for_tree(plan.source, plan.output)
        new_plan = ConversionPlan(source=plan.source, output=plan.output, template=plan.template, roots=roots)
        await self._run(new_plan)
        return new_plan

    async def _on_source_changed(self, source: FileRef, plan: ConversionPlan) -> None:
        template = self.templates.resolve(plan.template)
        try:
            await self._transform_entry(source, template, plan.roots)
        except FileNotFoundError:
            print(f"Skipped {source.location}: file disappeared before it could be read", file=sys.stderr)
            return
        if source.ext == DOCUMENT_EXT:
            await self._refresh_stylesheets(plan.roots)


def scripted_source(steps: list[tuple[Callable[[], None], ChangeEvent]], seen_targets: list[WatchTarget]) -> WatchSource:
    """A change-event stream for tests: runs each step's action, then emits its event."""

    async def source(targets: list[WatchTarget]) -> AsyncIterator[ChangeEvent]:
        seen_targets.extend(targets)
        for action, event in steps:
            action()
            yield event
            # Give per-file tasks a chance to run between events
            await asyncio.sleep(0)

    return source


class TestSiteConverter:
    @pytest.fixture(autouse=True)
    def workspace(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "input-dir" / "abc").mkdir(parents=True)
        (tmp_path / "input-dir" / "_template.html").write_text("{{ content }}")
        (tmp_path / "input-dir" / "test.md").write_text("Hello World!")
        (tmp_path / "file.md").write_text("This is file")
        (tmp_path / "test").mkdir()
        (tmp_path / "test" / "absTemplate.html").write_text("abs:{{ content }}")
        (tmp_path / "test" / "absFile.md").write_text("abyss")
        return tmp_path

    @staticmethod
    def _convert(*args, **options) -> None:
        asyncio.run(SiteConverter(ConvertOptions(**options)).convert(*args))

    def test_single_file(self, workspace, capsys):
        self._convert("file.md")
        html = (workspace / "file.html").read_text()
        assert html.startswith("<!DOCTYPE html>")
        assert "<p>This is file</p>\n" in html
        assert capsys.readouterr().out == "wrote: file.html\n"

    def test_single_file_output_names(self, workspace, capsys):
        self._convert("file.md", "output")
        assert (workspace / "output.html").is_file()
        self._convert("file.md", "output.xxx")
        assert (workspace / "output.xxx").is_file()
        absolute = str(workspace / "xxx" / "output")
        self._convert("file.md", absolute)
        assert (workspace / "xxx" / "output.html").is_file()
        assert capsys.readouterr().out.splitlines() == [
            "wrote: output.html",
            "wrote: output.xxx",
            f"wrote: {absolute}.html",
        ]

    def test_single_file_output_named_like_directory(self, workspace, capsys):
        self._convert("file.md", "input-dir", "none")
        assert (workspace / "input-dir.html").read_text() == "<p>This is file</p>\n"
        assert capsys.readouterr().out == "wrote: input-dir.html\n"

    def test_single_file_math(self, workspace, capsys):
        (workspace / "formula.md").write_text("$$\n\\frac{a}{b}\n$$\n")
        self._convert("formula.md", None, "none", math="css/math.css", math_font_url="/fonts/math.woff2")
        assert '<div class="math"><math ' in (workspace / "formula.html").read_text()
        css = (workspace / "css" / "math.css").read_text()
        assert "math mfrac" in css
        assert 'url("/fonts/math.woff2")' in css
        assert capsys.readouterr().out.splitlines() == ["wrote: formula.html", f"wrote: {os.path.join('css', 'math.css')}"]

    def test_single_file_templates(self, workspace):
        self._convert("file.md", None, "input-dir/_template.html")
        assert (workspace / "file.html").read_text() == "<p>This is file</p>\n"
        self._convert("file.md", None, str(workspace / "test" / "absTemplate.html"))
        assert (workspace / "file.html").read_text() == "abs:<p>This is file</p>\n"
        self._convert("file.md", None, "none")
        assert (workspace / "file.html").read_text() == "<p>This is file</p>\n"

    def test_single_file_quiet(self, workspace, capsys):
        self._convert("file.md", quiet=True)
        assert (workspace / "file.html").is_file()
        assert capsys.readouterr().out == ""

    def test_single_file_stylesheet(self, workspace, capsys):
        self._convert("file.md", math="math.css")
        assert (workspace / "math.css").read_text().strip()
        assert capsys.readouterr().out.splitlines() == ["wrote: file.html", "wrote: math.css"]

    def test_single_file_stylesheet_follows_output(self, workspace):
        output = str(workspace / "test2" / "output.txt")
        self._convert(str(workspace / "test" / "absFile.md"), output, str(workspace / "test" / "absTemplate.html"),
                      math="math.css", full_math=True)
        assert (workspace / "test2" / "output.txt").read_text() == "abs:<p>abyss</p>\n"
        assert (workspace / "test2" / "math.css").is_file()

    def test_single_file_stdout(self, workspace, capsys):
        self._convert("file.md", None, "none", stdout=True)
        assert capsys.readouterr().out == "<p>This is file</p>\n"
        self._convert("file.md", "", "none")
        assert capsys.readouterr().out == "<p>This is file</p>\n"
        assert not (workspace / "file.html").exists()

    def test_single_file_clean_is_harmless(self, workspace):
        self._convert("file.md", clean=True)
        assert (workspace / "file.html").is_file()
        assert (workspace / "input-dir" / "test.md").is_file()

    def test_validation_errors(self, workspace):
        (workspace / "taken.html").mkdir()
        with pytest.raises(SiteError, match="output is a directory"):
            self._convert("file.md", "taken")
        with pytest.raises(SiteError, match="template must not be empty"):
            self._convert("file.md", None, "  ")
        with pytest.raises(SiteError, match="Template not found"):
            self._convert("file.md", None, "missing.html")
        with pytest.raises(SiteError, match="stdout"):
            self._convert("input-dir", stdout=True)
        with pytest.raises(SiteError, match="must not be empty"):
            self._convert("input-dir", "")
        with pytest.raises(SiteError, match="must differ"):
            self._convert("input-dir", "input-dir")
        with pytest.raises(SiteError, match="refusing to clean"):
            self._convert("input-dir", ".", clean=True)
        with pytest.raises(SiteError, match="different files"):
            self._convert("file.md", math="styles.css", css="styles.css")
        assert not (workspace / "file.html").exists()
        assert not (workspace / "output").exists()

    def test_missing_input(self, workspace):
        with pytest.raises(MissingInputError, match="No such file or directory: nope.md"):
            self._convert("nope.md", "out.html")
        assert not (workspace / "out.html").exists()

    def test_directory(self, workspace, capsys):
        self._convert("input-dir")
        assert (workspace / "output" / "_template.html").is_file()
        assert (workspace / "output" / "test.html").read_text() == "<p>Hello World!</p>\n"
        assert sorted(capsys.readouterr().out.splitlines()) == [
            f"copied: {os.path.join('output', '_template.html')}",
            f"wrote: {os.path.join('output', 'test.html')}",
        ]

    def test_directory_explicit_template_and_stylesheet(self, workspace):
        self._convert("input-dir", "site", "fallback", css="@/css/highlight.css")
        html = (workspace / "site" / "test.html").read_text()
        assert "<title>test</title>" in html
        assert (workspace / "site" / "css" / "highlight.css").is_file()

    def test_directory_math_and_highlight_stylesheets(self, workspace, capsys):
        (workspace / "input-dir" / "abc" / "maths.md").write_text("$\\sqrt{2}$\n\n```python\nx = 1\n```\n")
        self._convert("input-dir", None, "none", math="math.css", css="highlight.css")
        assert "math msqrt" in (workspace / "output" / "math.css").read_text()
        assert ".codehilite " in (workspace / "output" / "highlight.css").read_text()
        lines = capsys.readouterr().out.splitlines()
        assert lines[-2:] == [
            f"wrote: {os.path.join('output', 'math.css')}",
            f"wrote: {os.path.join('output', 'highlight.css')}",
        ]

    def test_empty_directory_still_creates_output(self, workspace):
        (workspace / "empty").mkdir()
        self._convert("empty", "site")
        assert (workspace / "site").is_dir()

    def test_clean_removes_stale_output(self, workspace):
        converter = SiteConverter(ConvertOptions(clean=True))
        asyncio.run(converter.convert("input-dir"))
        (workspace / "output" / "dummy.txt").write_text("12345")
        (workspace / "output" / "stale").mkdir()
        asyncio.run(converter.convert("input-dir"))
        assert (workspace / "output" / "test.html").is_file()
        assert not (workspace / "output" / "dummy.txt").exists()
        assert not (workspace / "output" / "stale").exists()

    def test_clean_pass_rewrites_stylesheet(self, workspace):
        converter = SiteConverter(ConvertOptions(clean=True, css="highlight.css"))
        asyncio.run(converter.convert("input-dir"))
        asyncio.run(converter.convert("input-dir"))
        assert (workspace / "output" / "highlight.css").is_file()

    def test_conversion_is_idempotent(self, workspace):
        (workspace / "input-dir" / "abc" / "page.md").write_text("# Title\n\n[home](@/test.html)\n")
        (workspace / "input-dir" / "abc" / "logo.png").write_bytes(b"\x89PNG\r\n")

        def snapshot() -> dict[str, bytes]:
            root = workspace / "output"
            return {str(p.relative_to(root)): p.read_bytes() for p in root.rglob("*") if p.is_file()}

        self._convert("input-dir", math="math.css", css="highlight.css")
        first = snapshot()
        self._convert("input-dir", math="math.css", css="highlight.css")
        assert snapshot() == first
        assert first[os.path.join("abc", "logo.png")] == b"\x89PNG\r\n"

    def test_ignore(self, workspace):
        (workspace / "input-dir" / "other.md").write_text("other")
        (workspace / "input-dir" / "drafts").mkdir()
        (workspace / "input-dir" / "drafts" / "wip.md").write_text("wip")
        self._convert("input-dir", ignore=["test.md", "drafts"])
        assert (workspace / "output" / "other.html").is_file()
        assert (workspace / "output" / "_template.html").is_file()
        assert not (workspace / "output" / "test.html").exists()
        assert not (workspace / "output" / "drafts").exists()

    def test_root_links(self, workspace):
        (workspace / "input" / "docs").mkdir(parents=True)
        (workspace / "input" / "README.md").write_text("# Readme\n")
        (workspace / "input" / "docs" / "guide.md").write_text("[Readme](@/README.html)\n")
        self._convert("input", "output", "none")
        html = (workspace / "output" / "docs" / "guide.html").read_text()
        assert html == '<p><a href="../README.html">Readme</a></p>\n'

    def test_root_links_in_template(self, workspace):
        (workspace / "input" / "docs").mkdir(parents=True)
        (workspace / "input" / "docs" / "guide.md").write_text("guide")
        (workspace / "layout.html").write_text('<link href="@/style.css">{{ content }}')
        self._convert("input", "output", "layout.html")
        html = (workspace / "output" / "docs" / "guide.html").read_text()
        assert html == '<link href="../style.css"><p>guide</p>\n'

    def test_output_nested_in_input(self, workspace):
        (workspace / "site").mkdir()
        (workspace / "site" / "index.md").write_text("index")
        self._convert("site", os.path.join("site", "public"))
        self._convert("site", os.path.join("site", "public"))
        assert (workspace / "site" / "public" / "index.html").is_file()
        assert not (workspace / "site" / "public" / "public").exists()


class TestWatch:
    @pytest.fixture(autouse=True)
    def workspace(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "input-dir").mkdir()
        (tmp_path / "input-dir" / "test.md").write_text("Hello World!")
        (tmp_path / "layout.html").write_text("A:{{ content }}")
        (tmp_path / "file.md").write_text("This is file")
        return tmp_path

    def test_watch_file(self, workspace, capsys):
        targets: list[WatchTarget] = []
        steps = [
            (lambda: (workspace / "file.md").write_text("changed"), ChangeEvent(ChangeKind.Changed, str(workspace / "file.md"))),
            (lambda: None, ChangeEvent(ChangeKind.Changed, str(workspace / "other.md"))),
        ]
        converter = SiteConverter(watch_source=scripted_source(steps, targets))
        asyncio.run(converter.watch("file.md", None, "none"))
        assert targets == [WatchTarget(str(workspace), recursive=False)]
        assert (workspace / "file.html").read_text() == "<p>changed</p>\n"
        assert capsys.readouterr().out.splitlines() == [
            "wrote: file.html",
            "Watch started: file.md",
            "wrote: file.html",
        ]

    def test_watch_directory(self, workspace, capsys):
        input_dir = workspace / "input-dir"
        targets: list[WatchTarget] = []
        steps = [
            (lambda: (input_dir / "new.md").write_text("new"), ChangeEvent(ChangeKind.Added, str(input_dir / "new.md"))),
            (lambda: (input_dir / "test.md").write_text("edited"), ChangeEvent(ChangeKind.Changed, str(input_dir / "test.md"))),
            (lambda: None, ChangeEvent(ChangeKind.Removed, str(input_dir / "test.md"))),
        ]
        converter = SiteConverter(watch_source=scripted_source(steps, targets))
        asyncio.run(converter.watch("input-dir", None, "layout.html"))

        assert targets == [
            WatchTarget(str(input_dir), recursive=True),
            WatchTarget(str(workspace), recursive=False),
        ]
        assert (workspace / "output" / "new.html").read_text() == "A:<p>new</p>\n"
        assert (workspace / "output" / "test.html").read_text() == "A:<p>edited</p>\n"
        lines = capsys.readouterr().out.splitlines()
        assert lines[:2] == [f"wrote: {os.path.join('output', 'test.html')}", "Watch started: input-dir"]
        assert sorted(lines[2:]) == [
            f"wrote: {os.path.join('output', 'new.html')}",
            f"wrote: {os.path.join('output', 'test.html')}",
        ]

    def test_template_change_reconverts_everything(self, workspace):
        input_dir = workspace / "input-dir"
        (input_dir / "second.md").write_text("second")
        steps = [
            (lambda: (workspace / "layout.html").write_text("B:{{ content }}"),
             ChangeEvent(ChangeKind.Changed, str(workspace / "layout.html"))),
        ]
        converter = SiteConverter(watch_source=scripted_source(steps, []))
        original_roots = None

        async def run():
            nonlocal original_roots
            await converter.convert("input-dir", None, "layout.html")
            original_roots = converter.roots
            await converter.watch("input-dir", None, "layout.html")

        asyncio.run(run())
        assert (workspace / "output" / "test.html").read_text() == "B:<p>Hello World!</p>\n"
        assert (workspace / "output" / "second.html").read_text() == "B:<p>second</p>\n"
        assert converter.roots == original_roots
        assert converter.roots is not original_roots

    def test_template_pass_finishes_before_later_events(self, workspace, capsys):
        input_dir = workspace / "input-dir"
        (input_dir / "a.md").write_text("a")

        def edit_template_and_source():
            (workspace / "layout.html").write_text("B:{{ content }}")
            (input_dir / "a.md").write_text("a2")

        steps = [
            (edit_template_and_source, ChangeEvent(ChangeKind.Changed, str(workspace / "layout.html"))),
            (lambda: None, ChangeEvent(ChangeKind.Changed, str(input_dir / "a.md"))),
        ]
        converter = SiteConverter(watch_source=scripted_source(steps, []))
        asyncio.run(converter.watch("input-dir", None, "layout.html"))

        assert (workspace / "output" / "a.html").read_text() == "B:<p>a2</p>\n"
        assert (workspace / "output" / "test.html").read_text() == "B:<p>Hello World!</p>\n"
        lines = capsys.readouterr().out.splitlines()
        after_start = lines[lines.index("Watch started: input-dir") + 1:]
        a_html = f"wrote: {os.path.join('output', 'a.html')}"
        test_html = f"wrote: {os.path.join('output', 'test.html')}"
        # Full re-pass first, then the queued per-file event
        assert sorted(after_start[:2]) == [a_html, test_html]
        assert after_start[2:] == [a_html]

    def test_per_tree_template_change(self, workspace):
        input_dir = workspace / "input-dir"
        (input_dir / "_template.html").write_text("T1:{{ content }}")
        (input_dir / "second.md").write_text("second")
        targets: list[WatchTarget] = []
        steps = [
            (lambda: (input_dir / "_template.html").write_text("T2:{{ content }}"),
             ChangeEvent(ChangeKind.Changed, str(input_dir / "_template.html"))),
        ]
        converter = SiteConverter(ConvertOptions(quiet=True), watch_source=scripted_source(steps, targets))
        asyncio.run(converter.watch("input-dir"))

        # The template lives in the watched tree, so nothing else is watched
        assert targets == [WatchTarget(str(input_dir), recursive=True)]
        output = workspace / "output"
        assert (output / "test.html").read_text() == "T2:<p>Hello World!</p>\n"
        assert (output / "second.html").read_text() == "T2:<p>second</p>\n"
        assert (output / "_template.html").read_text() == "T2:{{ content }}"

    def test_unrelated_events_are_skipped(self, workspace):
        input_dir = workspace / "input-dir"
        (input_dir / "public").mkdir()
        steps = [
            (lambda: (input_dir / "public" / "x.md").write_text("x"),
             ChangeEvent(ChangeKind.Added, str(input_dir / "public" / "x.md"))),
            (lambda: (input_dir / "skip.md").write_text("skip"),
             ChangeEvent(ChangeKind.Added, str(input_dir / "skip.md"))),
            (lambda: (workspace / "elsewhere.md").write_text("elsewhere"),
             ChangeEvent(ChangeKind.Added, str(workspace / "elsewhere.md"))),
            (lambda: None, ChangeEvent(ChangeKind.Changed, str(input_dir / "vanished.md"))),
        ]
        converter = SiteConverter(ConvertOptions(ignore=["skip.md"]), watch_source=scripted_source(steps, []))
        asyncio.run(converter.watch("input-dir", os.path.join("input-dir", "public"), "none"))
        public = input_dir / "public"
        assert (public / "test.html").is_file()
        assert not (public / "public").exists()
        assert not (public / "skip.html").exists()
        assert not (public / "vanished.html").exists()

    def test_stylesheet_written_only_when_it_changes(self, workspace, capsys):
        input_dir = workspace / "input-dir"
        steps = [
            (lambda: (input_dir / "plain.md").write_text("plain"),
             ChangeEvent(ChangeKind.Added, str(input_dir / "plain.md"))),
            (lambda: (input_dir / "code.md").write_text("```python\nimport os\n```\n"),
             ChangeEvent(ChangeKind.Added, str(input_dir / "code.md"))),
        ]
        options = ConvertOptions(css="highlight.css")
        converter = SiteConverter(options, watch_source=scripted_source(steps, []))
        asyncio.run(converter.watch("input-dir", None, "none"))
        stylesheet_writes = [
            line for line in capsys.readouterr().out.splitlines()
            if line == f"wrote: {os.path.join('output', 'highlight.css')}"
        ]
        assert len(stylesheet_writes) == 2
        assert ".codehilite .kn " in (workspace / "output" / "highlight.css").read_text()


class TestIsIgnored:
    def test_patterns(self):
        assert is_ignored("test.md", ["test.md"])
        assert is_ignored(os.path.join("a", "test.md"), ["test.md"])
        assert is_ignored(os.path.join("a", "b.tmp"), ["*.tmp"])
        assert is_ignored(os.path.join("drafts", "x", "y.md"), ["drafts"])
        assert not is_ignored("other.md", ["test.md", "drafts"])
        assert not is_ignored("test.md", [])
