import sys
from pathlib import Path
from typing import Any, Optional

import pytest
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mdsite.env import DEFAULT_MATH_STYLESHEET, DEFAULT_STYLESHEET
from mdsite.errors import SiteError


FULL_STYLESHEET_SUFFIX = ":full"


class SiteConfig(BaseModel):
    """Settings as they appear in the config file and on the command line. Unset means "not given"."""

    model_config = ConfigDict(populate_by_name=True)

    input: Optional[str] = None
    output: Optional[str] = None
    template: Optional[str] = None
    watch: Optional[bool] = None
    quiet: Optional[bool] = None
    clean: Optional[bool] = None
    stdout: Optional[bool] = None
    # true -> default stylesheet name, "<file>[:full]" -> explicit name
    math: Optional[str | bool] = None
    math_font_url: Optional[str] = Field(default=None, alias="math-font-url")
    css: Optional[str | bool] = None
    style: Optional[str] = None
    ignore: list[str] = Field(default=[])

    @field_validator("ignore", mode="before")
    @classmethod
    def _normalize_ignore(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, list):
            return [v for v in value if isinstance(v, str)]
        return []


class ConvertOptions(BaseModel):
    quiet: bool = False
    clean: bool = False
    stdout: bool = False
    # Where to write the math stylesheet; None disables it
    math: Optional[str] = None
    full_math: bool = False
    math_font_url: Optional[str] = None
    # Where to write the code highlighting stylesheet; None disables it
    css: Optional[str] = None
    full_css: bool = False
    style: str = "default"
    ignore: list[str] = Field(default=[])


def config_keys() -> set[str]:
    return {field.alias or name for name, field in SiteConfig.model_fields.items()}


def load_config_file(path: str) -> SiteConfig:
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise SiteError(f"config file not found: {path}")
    except OSError as e:
        raise SiteError(f"config file error: ({path}) {e}")

    try:
        raw = yaml.load(text, Loader=yaml.SafeLoader)
    except yaml.YAMLError:
        raise SiteError(f"failed to parse config file: {path}")
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise SiteError(f"invalid config format: {path}")

    known = {}
    for key, value in raw.items():
        if key not in config_keys():
            print(f'Unknown key "{key}" in config file', file=sys.stderr)
            continue
        known[key] = value

    try:
        return SiteConfig.model_validate(known)
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(loc) for loc in error["loc"])
        raise SiteError(f"invalid value for \"{field}\" in {path}: {error['msg']}")


def merge_options(config: SiteConfig, cli: dict[str, Any]) -> SiteConfig:
    """Command-line values win over the config file; ignore patterns from both are kept."""
    merged = config.model_dump()
    for key, value in cli.items():
        if key == "ignore" or value is None:
            continue
        merged[key] = value
    merged["ignore"] = [*config.ignore, *(cli.get("ignore") or [])]
    return SiteConfig.model_validate(merged)


def split_stylesheet_option(value: str | bool | None, default: str) -> tuple[Optional[str], bool]:
    """`true` -> (default, False), `"<file>:full"` -> (file, True), unset or false -> (None, False)."""
    if value is True:
        return default, False
    if not value:
        return None, False
    if value.endswith(FULL_STYLESHEET_SUFFIX):
        return value[: -len(FULL_STYLESHEET_SUFFIX)] or default, True
    return value, False


def into_convert_options(config: SiteConfig) -> ConvertOptions:
    math, full_math = split_stylesheet_option(config.math, DEFAULT_MATH_STYLESHEET)
    css, full_css = split_stylesheet_option(config.css, DEFAULT_STYLESHEET)
    return ConvertOptions(
        quiet=bool(config.quiet),
        clean=bool(config.clean),
        stdout=bool(config.stdout),
        math=math,
        full_math=full_math,
        math_font_url=config.math_font_url,
        css=css,
        full_css=full_css,
        style=config.style or "default",
        ignore=config.ignore,
    )


class TestConfig:
    def test_load(self, tmp_path):
        config_file = tmp_path / "mdsite.yaml"
        config_file.write_text(
            "input: docs\n"
            "output: public\n"
            "clean: true\n"
            "math: css/math.css\n"
            "math-font-url: /fonts/math.woff2\n"
            "css: css/highlight.css\n"
            "ignore: drafts\n"
        )
        config = load_config_file(str(config_file))
        assert config.input == "docs"
        assert config.output == "public"
        assert config.clean is True
        assert config.math == "css/math.css"
        assert config.math_font_url == "/fonts/math.woff2"
        assert config.css == "css/highlight.css"
        assert config.ignore == ["drafts"]
        assert config.watch is None

    def test_empty_file(self, tmp_path):
        config_file = tmp_path / "mdsite.yaml"
        config_file.write_text("")
        assert load_config_file(str(config_file)) == SiteConfig()

    def test_unknown_keys_warn(self, tmp_path, capsys):
        config_file = tmp_path / "mdsite.yaml"
        config_file.write_text("quiet: true\nmaths: yes\n")
        config = load_config_file(str(config_file))
        assert config.quiet is True
        assert 'Unknown key "maths" in config file' in capsys.readouterr().err

    def test_ignore_list_filters_non_strings(self, tmp_path):
        config_file = tmp_path / "mdsite.yaml"
        config_file.write_text("ignore:\n  - '*.tmp'\n  - 3\n  - test.md\n")
        assert load_config_file(str(config_file)).ignore == ["*.tmp", "test.md"]

    def test_errors(self, tmp_path):
        with pytest.raises(SiteError, match="config file not found"):
            load_config_file(str(tmp_path / "missing.yaml"))

        broken = tmp_path / "broken.yaml"
        broken.write_text("input: [unclosed\n")
        with pytest.raises(SiteError, match="failed to parse"):
            load_config_file(str(broken))

        scalar = tmp_path / "scalar.yaml"
        scalar.write_text("just a string\n")
        with pytest.raises(SiteError, match="invalid config format"):
            load_config_file(str(scalar))

        wrong_type = tmp_path / "wrong.yaml"
        wrong_type.write_text("clean: [1, 2]\n")
        with pytest.raises(SiteError, match="clean"):
            load_config_file(str(wrong_type))

    def test_merge(self):
        config = SiteConfig(output="public", quiet=True, ignore=["a.md"], math_font_url="a.woff")
        merged = merge_options(config, {"output": "site", "quiet": None, "ignore": ["b.md"], "math": True})
        assert merged.output == "site"
        assert merged.quiet is True
        assert merged.math is True
        assert merged.math_font_url == "a.woff"
        assert merged.ignore == ["a.md", "b.md"]
        assert merge_options(config, {"math_font_url": "b.woff"}).math_font_url == "b.woff"

    def test_into_convert_options(self):
        options = into_convert_options(SiteConfig())
        assert options.math is None
        assert options.css is None
        assert into_convert_options(SiteConfig(math=True)).math == DEFAULT_MATH_STYLESHEET
        assert into_convert_options(SiteConfig(css=True)).css == DEFAULT_STYLESHEET

        options = into_convert_options(
            SiteConfig(math="math.css:full", math_font_url="f.woff", css="code.css", quiet=True, style="monokai")
        )
        assert options.math == "math.css"
        assert options.full_math is True
        assert options.math_font_url == "f.woff"
        assert options.css == "code.css"
        assert options.full_css is False
        assert options.quiet is True
        assert options.style == "monokai"
        assert into_convert_options(SiteConfig(math=":full")).math == DEFAULT_MATH_STYLESHEET
        assert into_convert_options(SiteConfig(css="hl.css:full")).full_css is True
