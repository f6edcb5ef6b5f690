import sys
from dataclasses import dataclass
from pathlib import Path

from jinja2 import Environment
from markupsafe import Markup

from mdsite.paths import FileRef


@dataclass(frozen=True)
class HtmlTemplate:
    content: str


FALLBACK_TEMPLATE = HtmlTemplate(
    """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{{ title }}</title>
</head>
<body>
{{ content }}
</body>
</html>
"""
)

DEFAULT_TEMPLATE = HtmlTemplate(
    """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{{ title }}</title>
  <style>
    :root {
      --font-family: -apple-system, BlinkMacSystemFont, "Helvetica Neue", "Segoe UI", sans-serif;
      --color-background: #f8f8f8;
      --color-text: #333;
      --color-link: #1560d2;
      --color-code-background: #e8e8e8;
      --max-width-page: 960px;
      --max-width-paragraph: 720px;
    }
    html { background-color: var(--color-background); }
    body {
      font-family: var(--font-family);
      font-size: 0.9rem;
      line-height: 1.625;
      color: var(--color-text);
    }
    div#wrap { max-width: var(--max-width-page); margin: 0 auto; padding: 0 1rem; }
    p, pre { max-width: var(--max-width-paragraph); }
    a { color: var(--color-link); }
    code { padding: 0 0.25rem; border-radius: 2px; background-color: var(--color-code-background); }
    pre > code { display: block; padding: 0.5rem 1rem; overflow-x: auto; }
    table { border-collapse: collapse; }
    th, td { border: 1px solid #ccc; padding: 0.25rem 0.5rem; }
  </style>
</head>
<body>
<div id="wrap">
{{ content }}
</div>
</body>
</html>
"""
)

NONE_TEMPLATE = HtmlTemplate("{{ content }}")

BUILTIN_TEMPLATES = {
    "none": NONE_TEMPLATE,
    "default": DEFAULT_TEMPLATE,
    "fallback": FALLBACK_TEMPLATE,
}

_jinja_env = Environment(autoescape=True, keep_trailing_newline=True)


def fill_template(template: HtmlTemplate, variables: dict[str, str]) -> str:
    """Render `template`. `content` is inserted as markup, every other variable is escaped."""
    context = dict(variables)
    if "content" in context:
        context["content"] = Markup(context["content"])
    return _jinja_env.from_string(template.content).render(**context)


class TemplateProvider:
    """Looks templates up by identifier: built-in name first, then a file path."""

    def __init__(self) -> None:
        self.cache: dict[str, HtmlTemplate] = {}

    @staticmethod
    def is_builtin(template: str) -> bool:
        return template in BUILTIN_TEMPLATES

    def exists(self, template: str) -> bool:
        return self.is_builtin(template) or Path(template).is_file()

    def template_file(self, template: str) -> FileRef | None:
        """The file backing `template`, if it names a real file rather than a built-in."""
        if self.is_builtin(template) or not Path(template).is_file():
            return None
        return FileRef.resolve(template)

    def invalidate(self, template: str) -> None:
        self.cache.pop(template, None)

    def resolve(self, template: str | None, use_cache: bool = True) -> HtmlTemplate:
        if template is None or not template.strip():
            return FALLBACK_TEMPLATE
        if self.is_builtin(template):
            return BUILTIN_TEMPLATES[template]
        if use_cache and template in self.cache:
            return self.cache[template]

        template_file = self.template_file(template)
        if template_file is not None:
            loaded = HtmlTemplate(template_file.read_text())
            self.cache[template] = loaded
            return loaded

        print(f"Template file not found: {template}", file=sys.stderr)
        return DEFAULT_TEMPLATE


class TestFillTemplate:
    def test_content_is_not_escaped(self):
        out = fill_template(NONE_TEMPLATE, {"content": "<p>This is file</p>\n"})
        assert out == "<p>This is file</p>\n"

    def test_title_is_escaped(self):
        out = fill_template(HtmlTemplate("<title>{{ title }}</title>"), {"title": "a<b", "content": ""})
        assert out == "<title>a&lt;b</title>"

    def test_default_template_wraps_content(self):
        out = fill_template(DEFAULT_TEMPLATE, {"title": "file", "content": "<p>x</p>\n"})
        assert out.startswith("<!DOCTYPE html>")
        assert "<title>file</title>" in out
        assert "<p>x</p>\n" in out
        assert out.endswith("</html>\n")

    def test_date_variable(self):
        out = fill_template(HtmlTemplate("{{ date }}|{{ content }}"), {"date": "2024-01-02", "content": "c"})
        assert out == "2024-01-02|c"


class TestTemplateProvider:
    def _write(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "tmpl").mkdir()
        (tmp_path / "tmpl" / "a.html").write_text("A: {{ content }}")
        (tmp_path / "tmpl" / "b.html").write_text("B: {{ content }}")

    def test_fallback_for_blank(self):
        provider = TemplateProvider()
        for blank in [None, "", "   "]:
            tmpl = provider.resolve(blank)
            assert "<!DOCTYPE html>" in tmpl.content
            assert "{{ content }}" in tmpl.content

    def test_builtins(self):
        provider = TemplateProvider()
        assert provider.resolve("none") is NONE_TEMPLATE
        assert provider.resolve("default") is DEFAULT_TEMPLATE
        assert provider.exists("fallback")
        assert provider.template_file("default") is None

    def test_loads_file(self, tmp_path, monkeypatch):
        self._write(tmp_path, monkeypatch)
        provider = TemplateProvider()
        assert provider.resolve("tmpl/a.html").content == "A: {{ content }}"
        assert provider.resolve(str(tmp_path / "tmpl" / "b.html")).content == "B: {{ content }}"
        assert provider.template_file("tmpl/a.html").abs_path == str(tmp_path / "tmpl" / "a.html")

    def test_caches_until_invalidated(self, tmp_path, monkeypatch):
        self._write(tmp_path, monkeypatch)
        provider = TemplateProvider()
        first = provider.resolve("tmpl/a.html")
        (tmp_path / "tmpl" / "a.html").write_text("A2: {{ content }}")
        assert provider.resolve("tmpl/a.html") == first
        assert provider.resolve("tmpl/a.html", use_cache=False).content == "A2: {{ content }}"

        (tmp_path / "tmpl" / "a.html").write_text("A3: {{ content }}")
        provider.invalidate("tmpl/a.html")
        assert provider.resolve("tmpl/a.html").content == "A3: {{ content }}"

    def test_missing_file_warns(self, tmp_path, monkeypatch, capsys):
        self._write(tmp_path, monkeypatch)
        provider = TemplateProvider()
        assert not provider.exists("tmpl/missing.html")
        tmpl = provider.resolve("tmpl/missing.html")
        assert tmpl is DEFAULT_TEMPLATE
        assert capsys.readouterr().err == "Template file not found: tmpl/missing.html\n"
