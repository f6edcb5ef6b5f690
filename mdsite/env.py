DOCUMENT_EXT = ".md"
OUTPUT_EXT = ".html"

# Prefix for references resolved against the input/output root instead of the current document
ROOT_MARKER = "@/"

DEFAULT_OUTPUT_DIR = "output"
DEFAULT_TEMPLATE_FILE = "_template.html"
DEFAULT_MATH_STYLESHEET = "math.css"
DEFAULT_STYLESHEET = "highlight.css"
DEFAULT_CONFIG_FILE = "mdsite.yaml"

LINK_ATTRIBUTES = (
    "href",
    "src",
    "action",
    "formaction",
    "poster",
    "cite",
    "data",
    "manifest",
    "srcset",
    "imgsrcset",
    "ping",
    "content",
    "usemap",
)
# Comma-separated candidate lists, each candidate being "<url> <descriptor>"
SRCSET_ATTRIBUTES = ("srcset", "imgsrcset")
