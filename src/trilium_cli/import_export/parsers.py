"""Readers that normalize raw file content into ``ContentInfo`` and writers for the reverse."""

from __future__ import annotations

import html
import json
import re
from html.parser import HTMLParser
from typing import Any, Optional, Protocol, Sequence

from .dependencies import FrontMatterParser, PlainFrontMatterParser
from .types import ContentInfo, ContentType, FileInfo, ImportExportError

MARKDOWN_LINK_RE = re.compile(r"(?<!!)\[([^\]]+)\]\(([^)]+)\)")
WIKILINK_RE = re.compile(r"(?<!!)\[\[([^\]]+)\]\]")
IMAGE_RE = re.compile(r"!\[([^\]]*)\]\(([^)]+)\)")
EMBED_RE = re.compile(r"!\[\[([^\]]+)\]\]")
INLINE_TAG_RE = re.compile(r"(?<![\w#/&])#([\w-]+)")
HEADING_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
FENCED_CODE_RE = re.compile(r"^```.*?^```", re.MULTILINE | re.DOTALL)
INLINE_CODE_RE = re.compile(r"`[^`\n]*`")


def _dedupe(values: Sequence[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        if value and value not in seen:
            seen[value] = None
    return list(seen)


def _text_stats(text: str) -> dict[str, int]:
    return {"word_count": len(text.split()), "line_count": len(text.split("\n"))}


def wikilink_target(raw: str) -> str:
    """``Note#Heading|Alias`` -> ``Note``."""

    return raw.split("|", 1)[0].split("#", 1)[0].strip()


def front_matter_tags(front_matter: dict[str, Any]) -> list[str]:
    raw = front_matter.get("tags", front_matter.get("tag"))
    if raw is None:
        return []
    if isinstance(raw, str):
        values = re.split(r"[,\s]+", raw)
    elif isinstance(raw, (list, tuple, set)):
        values = [str(item) for item in raw]
    else:
        values = [str(raw)]
    return [value.strip().lstrip("#") for value in values if value and value.strip()]


class ContentParser(Protocol):
    def can_handle(self, file: FileInfo) -> bool: ...

    def parse(self, content: str, file: FileInfo) -> ContentInfo: ...


class MarkdownParser:
    extensions = {"md", "markdown", "mdown", "mkd"}

    def __init__(self, front_matter: Optional[FrontMatterParser] = None) -> None:
        self.front_matter = front_matter or PlainFrontMatterParser()

    def can_handle(self, file: FileInfo) -> bool:
        return file.extension in self.extensions

    def parse(self, content: str, file: FileInfo) -> ContentInfo:
        front_matter, body = self.front_matter.parse(content)

        links = [target.strip() for _, target in MARKDOWN_LINK_RE.findall(body)]
        links += [wikilink_target(raw) for raw in WIKILINK_RE.findall(body)]
        attachments = [source.strip() for _, source in IMAGE_RE.findall(body)]
        attachments += [wikilink_target(raw) for raw in EMBED_RE.findall(body)]

        searchable = INLINE_CODE_RE.sub("", FENCED_CODE_RE.sub("", body))
        inline_tags = INLINE_TAG_RE.findall(searchable)
        tags = _dedupe(front_matter_tags(front_matter) + inline_tags)

        title = front_matter.get("title")
        if not title:
            heading = HEADING_RE.search(body)
            title = heading.group(1).strip() if heading else file.stem

        metadata = {"has_yaml_front_matter": bool(front_matter), **_text_stats(content)}
        return ContentInfo(
            type=ContentType.MARKDOWN,
            title=str(title),
            content=body,
            front_matter=front_matter,
            links=_dedupe(links),
            attachments=_dedupe(attachments),
            tags=tags,
            metadata=metadata,
        )


class _HtmlInspector(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.title: Optional[str] = None
        self.links: list[str] = []
        self.images: list[str] = []
        self.meta: dict[str, str] = {}
        self._in_title = False
        self._title_parts: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, Optional[str]]]) -> None:
        attributes = {name: value or "" for name, value in attrs}
        if tag == "title":
            self._in_title = True
        elif tag == "a" and attributes.get("href"):
            self.links.append(attributes["href"])
        elif tag == "img" and attributes.get("src"):
            self.images.append(attributes["src"])
        elif tag == "meta":
            name = attributes.get("name") or attributes.get("property")
            if name and "content" in attributes:
                self.meta[name] = attributes["content"]

    def handle_endtag(self, tag: str) -> None:
        if tag == "title" and self._in_title:
            self._in_title = False
            self.title = "".join(self._title_parts).strip() or None

    def handle_data(self, data: str) -> None:
        if self._in_title:
            self._title_parts.append(data)


class HtmlParser:
    extensions = {"html", "htm"}

    def can_handle(self, file: FileInfo) -> bool:
        return file.extension in self.extensions

    def parse(self, content: str, file: FileInfo) -> ContentInfo:
        inspector = _HtmlInspector()
        inspector.feed(content)
        inspector.close()
        return ContentInfo(
            type=ContentType.HTML,
            title=inspector.title or file.stem,
            content=content,
            links=_dedupe(inspector.links),
            attachments=_dedupe(inspector.images),
            metadata={"meta": inspector.meta, **_text_stats(content)},
        )


class JsonParser:
    extensions = {"json", "jsonl"}

    def can_handle(self, file: FileInfo) -> bool:
        return file.extension in self.extensions

    def parse(self, content: str, file: FileInfo) -> ContentInfo:
        try:
            if file.extension == "jsonl":
                parsed: Any = [json.loads(line) for line in content.splitlines() if line.strip()]
            else:
                parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ImportExportError(
                f"Invalid JSON in {file.path}: {exc.msg}",
                "JSON_PARSE_ERROR",
                {"path": file.path, "line": exc.lineno, "column": exc.colno},
            ) from exc

        title = None
        if isinstance(parsed, dict):
            title = parsed.get("title") or parsed.get("name")
        return ContentInfo(
            type=ContentType.JSON,
            title=str(title) if title else file.stem,
            content=content,
            metadata={
                "json_type": type(parsed).__name__,
                "item_count": len(parsed) if isinstance(parsed, (list, dict)) else 1,
            },
        )


class TextParser:
    def can_handle(self, file: FileInfo) -> bool:
        return True

    def parse(self, content: str, file: FileInfo) -> ContentInfo:
        return ContentInfo(type=ContentType.TEXT, title=file.stem, content=content, metadata=_text_stats(content))


def default_parsers(front_matter: Optional[FrontMatterParser] = None) -> list[ContentParser]:
    return [MarkdownParser(front_matter), HtmlParser(), JsonParser(), TextParser()]


def parse_content(
    content: str,
    file: FileInfo,
    parsers: Optional[Sequence[ContentParser]] = None,
) -> ContentInfo:
    """Parse with the first parser that accepts ``file``."""

    for parser in parsers or default_parsers():
        if parser.can_handle(file):
            return parser.parse(content, file)
    return TextParser().parse(content, file)


# ----------------------------------------------------------------------
# Formatters
# ----------------------------------------------------------------------
def _front_matter_value(value: Any) -> str:
    if isinstance(value, (list, tuple, set)):
        return "[" + ", ".join(json.dumps(str(item), ensure_ascii=False) for item in value) + "]"
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, (bool, int, float)) or value is None:
        return json.dumps(value)
    return json.dumps(str(value), ensure_ascii=False)


def render_front_matter(front_matter: dict[str, Any]) -> str:
    if not front_matter:
        return ""
    lines = [f"{key}: {_front_matter_value(value)}" for key, value in front_matter.items()]
    return "---\n" + "\n".join(lines) + "\n---\n\n"


class ContentFormatter(Protocol):
    def can_handle(self, content: ContentInfo, format: str) -> bool: ...

    def format(self, content: ContentInfo, format: str) -> str: ...


class MarkdownFormatter:
    def can_handle(self, content: ContentInfo, format: str) -> bool:
        return format == "obsidian" or content.type == ContentType.MARKDOWN

    def format(self, content: ContentInfo, format: str) -> str:
        output = render_front_matter(content.front_matter or {})
        body = content.content
        if content.title and not body.lstrip().startswith("#"):
            output += f"# {content.title}\n\n"
        return output + body


class HtmlFormatter:
    def can_handle(self, content: ContentInfo, format: str) -> bool:
        return format == "html" or content.type == ContentType.HTML

    def format(self, content: ContentInfo, format: str) -> str:
        if content.content.lstrip().lower().startswith(("<!doctype", "<html")):
            return content.content
        title = html.escape(content.title or "")
        meta = "".join(
            f'\n<meta name="{html.escape(str(key))}" content="{html.escape(str(value))}">'
            for key, value in (content.front_matter or {}).items()
        )
        return (
            "<!DOCTYPE html>\n<html>\n<head>\n<meta charset=\"utf-8\">\n"
            f"<title>{title}</title>{meta}\n</head>\n<body>\n{content.content}\n</body>\n</html>\n"
        )


def format_content(content: ContentInfo, format: str) -> str:
    for formatter in (MarkdownFormatter(), HtmlFormatter()):
        if formatter.can_handle(content, format):
            return formatter.format(content, format)
    return content.content
