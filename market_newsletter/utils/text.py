"""
Text helpers shared by the scoring prompt and the renderer.
"""

import re
import warnings

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning


_WHITESPACE = re.compile(r"\s+")


def strip_html(html: str) -> str:
    """Return the visible text of an HTML fragment with whitespace collapsed."""
    if not html:
        return ""
    with warnings.catch_warnings():
        # Snippets that look like a bare URL or filename trigger this warning
        warnings.simplefilter("ignore", MarkupResemblesLocatorWarning)
        text = BeautifulSoup(html, "html.parser").get_text(" ")
    return _WHITESPACE.sub(" ", text.replace("\xa0", " ")).strip()


def truncate(text: str, max_length: int = 200, ellipsis: str = "...") -> str:
    if not text or len(text) <= max_length:
        return text or ""
    return text[:max_length] + ellipsis
