from common import llm
from common.jsonio import atomic_write_json, load_document, load_json
from common.text_template import render_placeholders

__all__ = ["llm", "load_json", "load_document", "atomic_write_json", "render_placeholders"]
