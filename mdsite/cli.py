import argparse
import asyncio
import os
import sys

import pytest

from mdsite.config import SiteConfig, into_convert_options, load_config_file, merge_options
from mdsite.engine import SiteConverter
from mdsite.env import DEFAULT_CONFIG_FILE
from mdsite.errors import SiteError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mdsite", description="Convert markdown files into HTML documents")
    parser.add_argument("input", nargs="?", help="input file or directory")
    parser.add_argument("-o", "--output", help="output filename or directory")
    parser.add_argument("-t", "--template", help="HTML template: none, default, fallback or a file path")
    # store_true flags default to None so the config file can still set them
    parser.add_argument("-w", "--watch", action="store_true", default=None, help="keep converting as files change")
    parser.add_argument("-q", "--quiet", action="store_true", default=None, help="do not print progress")
    parser.add_argument("-c", "--clean", action="store_true", default=None, help="empty the output directory first")
    parser.add_argument(
        "--math",
        nargs="?",
        const=True,
        default=None,
        metavar="FILE",
        help="write the math stylesheet (append :full for every rule)",
    )
    parser.add_argument("--math-font-url", help=argparse.SUPPRESS)
    parser.add_argument(
        "--css",
        nargs="?",
        const=True,
        default=None,
        metavar="FILE",
        help="write the code highlighting stylesheet (append :full for every rule)",
    )
    parser.add_argument("--style", help="pygments style used for the highlight stylesheet")
    parser.add_argument("--ignore", action="append", metavar="PATTERN", help="skip matching files (repeatable)")
    parser.add_argument("--stdout", action="store_true", default=None, help=argparse.SUPPRESS)
    parser.add_argument("--config", help=f"YAML config file (default: {DEFAULT_CONFIG_FILE} when present)")
    return parser


def load_settings(args: argparse.Namespace) -> SiteConfig:
    config_path = args.config
    if config_path is None and os.path.isfile(DEFAULT_CONFIG_FILE):
        config_path = DEFAULT_CONFIG_FILE
    config = load_config_file(config_path) if config_path is not None else SiteConfig()
    cli = {key: value for key, value in vars(args).items() if key != "config"}
    return merge_options(config, cli)


async def run(settings: SiteConfig) -> None:
    converter = SiteConverter(into_convert_options(settings))
    if settings.watch:
        await converter.watch(settings.input, settings.output, settings.template)
    else:
        await converter.convert(settings.input, settings.output, settings.template)


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args)
        if not settings.input:
            raise SiteError("no input file or directory given")
        asyncio.run(run(settings))
    except SiteError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        # Ctrl-C is how a watch session ends
        pass


class TestCli:
    def test_convert_file(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "file.md").write_text("This is file")
        main(["file.md", "-t", "none", "--css"])
        assert (tmp_path / "file.html").read_text() == "<p>This is file</p>\n"
        assert (tmp_path / "highlight.css").is_file()
        assert capsys.readouterr().out == "wrote: file.html\nwrote: highlight.css\n"

    def test_math_option(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "file.md").write_text("$x^2$")
        main(["file.md", "-t", "none", "--math", "--math-font-url", "fonts/math.woff2"])
        assert "<msup>" in (tmp_path / "file.html").read_text()
        assert 'url("fonts/math.woff2")' in (tmp_path / "math.css").read_text()
        assert capsys.readouterr().out == "wrote: file.html\nwrote: math.css\n"

        main(["file.md", "-q", "--math", "all.css:full"])
        assert "math mtable" in (tmp_path / "all.css").read_text()

    def test_config_file_and_cli_merge(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "docs").mkdir()
        (tmp_path / "docs" / "a.md").write_text("a")
        (tmp_path / "docs" / "b.md").write_text("b")
        (tmp_path / "docs" / "c.md").write_text("c")
        (tmp_path / DEFAULT_CONFIG_FILE).write_text("input: docs\noutput: public\nquiet: true\nignore: a.md\n")
        main(["--ignore", "b.md", "-t", "none"])
        assert sorted(p.name for p in (tmp_path / "public").iterdir()) == ["c.html"]
        assert capsys.readouterr().out == ""

    def test_explicit_config(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "in").mkdir()
        (tmp_path / "in" / "x.md").write_text("x")
        (tmp_path / "site.yaml").write_text("output: out\nclean: true\n")
        (tmp_path / "out").mkdir()
        (tmp_path / "out" / "stale.html").write_text("old")
        main(["in", "--config", "site.yaml", "-q"])
        assert (tmp_path / "out" / "x.html").is_file()
        assert not (tmp_path / "out" / "stale.html").exists()

    def test_validation_error_exit(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "dir").mkdir()
        with pytest.raises(SystemExit) as exc_info:
            main(["dir", "--stdout"])
        assert exc_info.value.code == 1
        err = capsys.readouterr().err
        assert err.startswith("Error: ")
        assert "Traceback" not in err

    def test_missing_input_exit(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(SystemExit):
            main(["missing.md"])
        assert capsys.readouterr().err == "Error: No such file or directory: missing.md\n"
        with pytest.raises(SystemExit):
            main([])
        assert capsys.readouterr().err == "Error: no input file or directory given\n"
