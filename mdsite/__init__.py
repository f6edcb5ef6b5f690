from mdsite.config import ConvertOptions, SiteConfig, load_config_file
from mdsite.engine import SiteConverter
from mdsite.errors import MissingInputError, SiteError
from mdsite.links import rewrite_links
from mdsite.mathml import MathRenderer
from mdsite.paths import AnchoredPath, DirRef, FileRef, PathRef, open_path
from mdsite.render import MarkdownRenderer
from mdsite.roots import RootContext
from mdsite.templates import TemplateProvider, fill_template
