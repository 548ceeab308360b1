"""Content conversion helpers between note HTML and Markdown."""

from __future__ import annotations

import re

from markdownify import markdownify as to_markdown
from markdown_it import MarkdownIt

_EXCESS_BLANK_LINES_RE = re.compile(r"\n{3,}")


class ContentConverter:
    """Translate between the note server's HTML representation and Markdown."""

    def __init__(self) -> None:
        self._markdown = MarkdownIt("commonmark", {"html": True}).enable("table")

    def html_to_markdown(self, html: str) -> str:
        """Rewrite known markup as Markdown; unrecognized tags are reduced to their text."""

        markdown = to_markdown(html, heading_style="ATX", strong_em_symbol="**", bullets="-")
        return _EXCESS_BLANK_LINES_RE.sub("\n\n", markdown).strip() + "\n"

    def markdown_to_html(self, markdown: str) -> str:
        return self._markdown.render(markdown)
