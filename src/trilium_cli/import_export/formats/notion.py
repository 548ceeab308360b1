"""Notion page-export archives: block pages, CSV databases and their attachments."""

from __future__ import annotations

import base64
import csv
import hashlib
import html
import io
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Iterator, Optional, Sequence

from ..naming import safe_title_file_name, unique_file_name
from ..parsers import MarkdownFormatter
from ..secure_path import SecurePathResolver
from ..types import (
    ContentInfo,
    ContentType,
    ExportResult,
    FileInfo,
    FileResult,
    FormatType,
    ImportExportError,
    ImportResult,
    NotionConfig,
    OperationContext,
    OperationError,
    utcnow,
)
from ..utils import (
    MAX_TEXT_FILE_SIZE,
    ensure_directory,
    guess_mime_type,
    matches_any,
    read_binary_file,
    write_binary_file,
    write_text_file,
)
from .base import BaseHandler, NoteAttribute, group_by_depth, parent_not_created

logger = logging.getLogger(__name__)

PAGE_EXTENSIONS = {"md", "html", "csv"}
ATTACHMENT_EXTENSIONS = {
    "png", "jpg", "jpeg", "gif", "webp", "svg",
    "pdf", "doc", "docx", "odt", "rtf",
    "mp3", "wav", "ogg", "m4a",
    "mp4", "webm", "ogv", "mov",
    "zip", "rar", "7z", "tar", "gz",
}
EXPORT_ARCHIVE_NAME = "notion-export.zip"
MAX_ENTRY_SIZE = MAX_TEXT_FILE_SIZE

PAGE_ID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}|(?<![0-9a-f])[0-9a-f]{32}(?![0-9a-f])",
    re.IGNORECASE,
)
LEADING_ORDINAL_RE = re.compile(r"^\d+\s+")
HEADING_BLOCK_RE = re.compile(r"^(#{1,6})\s+(.*)$")
QUOTE_BLOCK_RE = re.compile(r"^>\s(.*)$")
BULLET_BLOCK_RE = re.compile(r"^[-*+]\s(.*)$")
NUMBERED_BLOCK_RE = re.compile(r"^\d+\.\s(.*)$")
RULE_BLOCK_RE = re.compile(r"^-{3,}$")
HTML_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
HTML_H1_RE = re.compile(r"<h1[^>]*>(.*?)</h1>", re.IGNORECASE | re.DOTALL)
TAG_RE = re.compile(r"<[^>]+>")
LIST_TAGS = {"bulleted_list_item": "ul", "numbered_list_item": "ol"}


# ----------------------------------------------------------------------
# Page model
# ----------------------------------------------------------------------
@dataclass(slots=True)
class NotionBlock:
    id: str
    type: str
    content: str = ""
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class NotionPage:
    """One page or database parsed from an archive entry."""

    id: str
    title: str
    path: str
    type: str
    content: str
    blocks: list[NotionBlock] = field(default_factory=list)
    properties: dict[str, Any] = field(default_factory=dict)
    parent_id: Optional[str] = None
    children: list[str] = field(default_factory=list)
    attachments: list[str] = field(default_factory=list)
    full_path: Optional[str] = None


class PageTree:
    """Pages keyed by id. Parents own the ordered list of their children's ids."""

    def __init__(self) -> None:
        self.pages: dict[str, NotionPage] = {}

    def __len__(self) -> int:
        return len(self.pages)

    def __contains__(self, page_id: object) -> bool:
        return page_id in self.pages

    def add(self, page: NotionPage) -> NotionPage:
        base_id = page.id
        counter = 1
        while page.id in self.pages:
            counter += 1
            page.id = f"{base_id}-{counter}"
        self.pages[page.id] = page
        return page

    def get(self, page_id: str) -> NotionPage:
        return self.pages[page_id]

    def link(self, child_id: str, parent_id: str) -> None:
        child = self.pages[child_id]
        if child.parent_id == parent_id:
            return
        if child.parent_id is not None:
            self.pages[child.parent_id].children.remove(child_id)
        child.parent_id = parent_id
        self.pages[parent_id].children.append(child_id)

    def parent(self, page_id: str) -> Optional[NotionPage]:
        parent_id = self.pages[page_id].parent_id
        return self.pages[parent_id] if parent_id else None

    def depth(self, page_id: str) -> int:
        depth = 0
        current = self.pages[page_id].parent_id
        while current is not None:
            depth += 1
            current = self.pages[current].parent_id
        return depth

    def roots(self) -> list[NotionPage]:
        return sorted(
            (page for page in self.pages.values() if page.parent_id is None),
            key=lambda page: page.path,
        )

    def walk(self) -> Iterator[NotionPage]:
        """Yield pages depth-first, each parent before its children."""

        stack = list(reversed(self.roots()))
        while stack:
            page = stack.pop()
            yield page
            stack.extend(reversed([self.pages[child] for child in page.children]))


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------
def extract_page_id(file_name: str) -> Optional[str]:
    match = PAGE_ID_RE.search(file_name)
    return match.group(0).lower() if match else None


def page_id_for(file_name: str) -> str:
    return extract_page_id(file_name) or hashlib.md5(file_name.encode("utf-8")).hexdigest()[:8]


def clean_title(title: str) -> str:
    title = PAGE_ID_RE.sub("", title)
    return LEADING_ORDINAL_RE.sub("", title.strip()).strip()


def parse_blocks(markdown: str, page_id: str = "page") -> list[NotionBlock]:
    """Split Markdown into blocks.

    Each line is tested as a heading, then a quote, a fenced code block, a
    bulleted item and a numbered item; blank lines and ``---`` rules of any
    length are dropped and anything else becomes a paragraph. An unterminated
    fence runs to the end of the input.
    """

    blocks: list[NotionBlock] = []
    lines = markdown.split("\n")
    index = 0

    def _add(type: str, content: str, **properties: Any) -> None:
        blocks.append(NotionBlock(id=f"{page_id}-block-{len(blocks)}", type=type, content=content, properties=properties))

    while index < len(lines):
        line = lines[index].lstrip()
        stripped = line.strip()
        heading = HEADING_BLOCK_RE.match(stripped)
        quote = QUOTE_BLOCK_RE.match(line)
        if heading:
            _add(f"heading_{len(heading.group(1))}", heading.group(2).strip())
        elif quote:
            _add("quote", quote.group(1).strip())
        elif stripped.startswith("```"):
            language = stripped[3:].strip()
            code: list[str] = []
            index += 1
            while index < len(lines) and not lines[index].strip().startswith("```"):
                code.append(lines[index])
                index += 1
            _add("code", "\n".join(code), language=language)
        elif BULLET_BLOCK_RE.match(line):
            _add("bulleted_list_item", BULLET_BLOCK_RE.match(line).group(1).strip())
        elif NUMBERED_BLOCK_RE.match(line):
            _add("numbered_list_item", NUMBERED_BLOCK_RE.match(line).group(1).strip())
        elif stripped and not RULE_BLOCK_RE.match(stripped):
            _add("paragraph", stripped)
        index += 1
    return blocks


def _strip_tags(value: str) -> str:
    return html.unescape(TAG_RE.sub("", value)).strip()


def _markdown_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    lines = ["| " + " | ".join(headers) + " |", "| " + " | ".join("---" for _ in headers) + " |"]
    for row in rows:
        lines.append("| " + " | ".join(row) + " |")
    return "\n".join(lines)


def parse_page(path: str, text: str, *, front_matter: Any, converter: Any) -> NotionPage:
    """Build a ``NotionPage`` from one archive entry."""

    file_name = PurePosixPath(path).name
    extension = PurePosixPath(path).suffix.lower().lstrip(".")
    page_id = page_id_for(file_name)
    title = clean_title(PurePosixPath(file_name).stem)
    properties: dict[str, Any] = {}

    if extension == "csv":
        records = [row for row in csv.reader(io.StringIO(text)) if any(cell.strip() for cell in row)]
        headers = [cell.strip() for cell in records[0]] if records else []
        rows = [[cell.strip() for cell in row] for row in records[1:]]
        table = _markdown_table(headers, rows) if headers else ""
        block = NotionBlock(
            id=f"{page_id}-block-0",
            type="table",
            content=table,
            properties={"headers": headers, "rows": rows, "row_count": len(rows), "column_count": len(headers)},
        )
        return NotionPage(
            id=page_id,
            title=title or f"Database ({len(rows)} rows)",
            path=path,
            type="database",
            content=table,
            blocks=[block],
            properties={"row_count": len(rows), "column_count": len(headers)},
        )

    if extension == "html":
        match = HTML_TITLE_RE.search(text) or HTML_H1_RE.search(text)
        if match and _strip_tags(match.group(1)):
            title = clean_title(_strip_tags(match.group(1))) or title
        markdown = converter.html_to_markdown(text)
    else:
        properties, markdown = front_matter.parse(text)
        declared = properties.get("title")
        heading = re.search(r"^#\s+(.+)$", markdown, re.MULTILINE)
        if declared:
            title = clean_title(str(declared)) or title
        elif heading:
            title = clean_title(heading.group(1)) or title

    return NotionPage(
        id=page_id,
        title=title or "Untitled",
        path=path,
        type="page",
        content=markdown,
        blocks=parse_blocks(markdown, page_id),
        properties=dict(properties),
    )


def build_hierarchy(tree: PageTree) -> None:
    """Attach each page to the page whose sibling directory holds it.

    Notion stores the children of ``Parent <id>.md`` inside ``Parent <id>/``.
    """

    by_location: dict[tuple[str, str], str] = {}
    for page in sorted(tree.pages.values(), key=lambda item: item.path):
        location = PurePosixPath(page.path)
        by_location.setdefault((location.parent.as_posix(), location.stem), page.id)

    for page in sorted(tree.pages.values(), key=lambda item: (item.path.count("/"), item.path)):
        directory = PurePosixPath(page.path).parent
        if directory.as_posix() == ".":
            continue
        parent_id = by_location.get((directory.parent.as_posix(), directory.name))
        if parent_id and parent_id != page.id:
            tree.link(page.id, parent_id)


def attachment_owner(tree: PageTree, attachment_path: str) -> Optional[NotionPage]:
    """The page whose own directory holds the attachment, else the first page beside it."""

    directory = PurePosixPath(attachment_path).parent
    siblings: list[NotionPage] = []
    for page in sorted(tree.pages.values(), key=lambda item: item.path):
        location = PurePosixPath(page.path)
        if location.parent == directory.parent and location.stem == directory.name:
            return page
        if location.parent == directory:
            siblings.append(page)
    return siblings[0] if siblings else None


def render_block(block: NotionBlock) -> str:
    text = html.escape(block.content or "")
    if block.type == "paragraph":
        return f"<p>{text}</p>\n"
    if block.type.startswith("heading_"):
        level = block.type.rsplit("_", 1)[-1]
        return f"<h{level}>{text}</h{level}>\n"
    if block.type in ("bulleted_list_item", "numbered_list_item"):
        return f"<li>{text}</li>\n"
    if block.type == "quote":
        return f"<blockquote>{text}</blockquote>\n"
    if block.type == "code":
        language = html.escape(block.properties.get("language", ""))
        return f'<pre><code class="language-{language}">{text}</code></pre>\n'
    if block.type == "table":
        headers = block.properties.get("headers", [])
        rows = block.properties.get("rows", [])
        head = "".join(f"<th>{html.escape(cell)}</th>" for cell in headers)
        body = "".join(
            "<tr>" + "".join(f"<td>{html.escape(cell)}</td>" for cell in row) + "</tr>" for row in rows
        )
        return f"<table>\n<thead><tr>{head}</tr></thead>\n<tbody>{body}</tbody>\n</table>\n"
    return f'<div class="notion-block notion-{html.escape(block.type)}">{text}</div>\n'


def render_blocks(blocks: Sequence[NotionBlock]) -> str:
    """Render blocks in order, wrapping runs of list items in ``<ul>`` or ``<ol>``."""

    parts: list[str] = []
    open_list: Optional[str] = None
    for block in blocks:
        tag = LIST_TAGS.get(block.type)
        if tag != open_list:
            if open_list:
                parts.append(f"</{open_list}>\n")
            if tag:
                parts.append(f"<{tag}>\n")
            open_list = tag
        parts.append(render_block(block))
    if open_list:
        parts.append(f"</{open_list}>\n")
    return "".join(parts)


# ----------------------------------------------------------------------
# Import
# ----------------------------------------------------------------------
class NotionImportHandler(BaseHandler[NotionConfig]):
    """Import a Notion page-export archive into the note tree."""

    format = FormatType.NOTION
    config_model = NotionConfig

    def check_environment(self, config: NotionConfig) -> None:
        if config.zip_path is None:
            raise ImportExportError(
                "Invalid configuration: zip_path is required for import (zip_path)",
                "INVALID_CONFIG",
                {"field": "zip_path"},
                format=self.format,
            )
        archive_path = Path(config.zip_path).expanduser()
        if not archive_path.is_file():
            raise ImportExportError(f"Archive not found: {archive_path}", "SOURCE_NOT_FOUND", {"path": str(archive_path)})
        self.capabilities.archives.open(archive_path).close()

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------
    def scan(self, config: Any, context: OperationContext) -> list[FileInfo]:
        config = self._coerce(config)
        tree, attachments = self.extract(config, context)
        files = [self._page_info(tree, page) for page in tree.walk()]
        owners = {path: page.id for page in tree.pages.values() for path in page.attachments}
        for path, full_path in sorted(attachments.items()):
            files.append(
                self._entry_info(
                    path,
                    full_path,
                    depth=path.count("/"),
                    metadata={
                        "is_attachment": True,
                        "parent_page_id": owners.get(path),
                        "original_path": path,
                    },
                )
            )
        return files

    def extract(self, config: NotionConfig, context: OperationContext) -> tuple[PageTree, dict[str, Path]]:
        """Unpack the archive beneath the temp directory and parse its pages.

        Entries that would escape the extraction directory are recorded as
        errors and skipped; the rest of the archive is still processed.
        """

        staging = ensure_directory(context.temp_directory / "notion-import")
        resolver = SecurePathResolver(staging, max_depth=config.max_depth or 10)
        tree = PageTree()
        attachments: dict[str, Path] = {}

        archive = self.capabilities.archives.open(Path(config.zip_path).expanduser())
        try:
            for entry in sorted(archive.entries(), key=lambda item: item.name):
                if entry.is_dir:
                    continue
                name = entry.name
                extension = PurePosixPath(name).suffix.lower().lstrip(".")
                is_page = extension in PAGE_EXTENSIONS
                is_attachment = config.include_attachments and extension in ATTACHMENT_EXTENSIONS
                if not (is_page or is_attachment):
                    continue
                if config.patterns and not matches_any(name, config.patterns):
                    continue
                if matches_any(name, config.exclude_patterns):
                    continue
                try:
                    target = resolver.resolve(name)
                    if entry.size > MAX_ENTRY_SIZE:
                        raise ImportExportError(
                            f"Archive entry too large: {name} ({entry.size} bytes)",
                            "CONTENT_TOO_LARGE",
                            {"path": name, "size": entry.size, "max_size": MAX_ENTRY_SIZE},
                        )
                    data = archive.read(name)
                    write_binary_file(target, data)
                    if is_attachment:
                        attachments[name] = target
                        continue
                    text = data.decode("utf-8")
                    page = parse_page(
                        name,
                        text,
                        front_matter=self.capabilities.front_matter,
                        converter=self.converter,
                    )
                    page.full_path = str(target)
                    tree.add(page)
                except (ImportExportError, UnicodeDecodeError, csv.Error, OSError) as exc:
                    error = OperationError.from_exception(exc, code="INVALID_ARCHIVE_ENTRY", path=name)
                    self.errors.record(error)
                    logger.warning(f"notion: skipped archive entry {name}: {error.message}")
        finally:
            archive.close()

        build_hierarchy(tree)
        for path in sorted(attachments):
            owner = attachment_owner(tree, path)
            if owner is not None:
                owner.attachments.append(path)
        return tree, attachments

    def _page_info(self, tree: PageTree, page: NotionPage) -> FileInfo:
        full_path = Path(page.full_path or "")
        return self._entry_info(
            page.path,
            full_path,
            depth=tree.depth(page.id),
            metadata={
                "notion_page_id": page.id,
                "page_title": page.title,
                "page_type": page.type,
                "parent_page_id": page.parent_id,
                "has_children": bool(page.children),
                "block_count": len(page.blocks),
                "properties": dict(page.properties),
                "attachment_count": len(page.attachments),
                "is_attachment": False,
            },
        )

    @staticmethod
    def _entry_info(path: str, full_path: Path, *, depth: int, metadata: dict[str, Any]) -> FileInfo:
        name = PurePosixPath(path).name
        stat = full_path.stat()
        return FileInfo(
            path=path,
            full_path=str(full_path),
            relative_path=path,
            name=name,
            extension=PurePosixPath(name).suffix.lower().lstrip("."),
            size=stat.st_size,
            mime_type=guess_mime_type(name),
            depth=depth,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------
    def import_files(self, files: Sequence[FileInfo], config: Any, context: OperationContext) -> ImportResult:
        config = self._coerce(config)
        started = utcnow()
        tracker = self.tracker(context, config, len(files))
        tracker.start("Starting Notion import")

        if config.dry_run:
            tracker.complete("Dry run completed - no changes made")
            return self.dry_run_import(files, config, started)

        pages = [file for file in files if not file.metadata.get("is_attachment")]
        attachments = [file for file in files if file.metadata.get("is_attachment")]
        note_ids: dict[str, str] = {}
        page_ids = {file.metadata.get("notion_page_id") for file in pages}
        results: list[FileResult] = []

        for level in group_by_depth(pages):
            level_results = self.run_items(
                level,
                lambda file: self._import_page(file, config, note_ids, page_ids),
                config,
                tracker,
                label="Imported pages",
            )
            for file, result in zip(level, level_results):
                if result.success and result.owner_id:
                    note_ids[file.metadata["notion_page_id"]] = result.owner_id
            results += level_results

        if config.include_attachments:
            results += self.run_items(
                attachments,
                lambda file: self._import_attachment(file, note_ids),
                config,
                tracker,
                label="Imported attachments",
            )

        successful = sum(1 for result in results if result.success)
        tracker.complete(f"Import completed: {successful}/{len(files)} files processed")
        return self.import_result(files, results, config, started, metadata={"pages": dict(note_ids)})

    def _import_page(
        self,
        file: FileInfo,
        config: NotionConfig,
        note_ids: dict[str, str],
        page_ids: set[Optional[str]],
    ) -> FileResult:
        parent_page_id = file.metadata.get("parent_page_id")
        parent_note_id = config.parent_note_id
        if parent_page_id in note_ids:
            parent_note_id = note_ids[parent_page_id]
        elif parent_page_id and parent_page_id in page_ids:
            raise parent_not_created(file.path, parent_page_id)
        elif parent_page_id:
            self.errors.add_warning(f"Parent of {file.path} is not part of this import; placing it under {parent_note_id}")

        text = read_binary_file(Path(file.full_path)).decode("utf-8")
        page = parse_page(file.path, text, front_matter=self.capabilities.front_matter, converter=self.converter)
        page.id = file.metadata.get("notion_page_id", page.id)

        return self.upsert_note(
            file,
            config,
            identity=NoteAttribute("original-path", file.path),
            parent_note_id=parent_note_id,
            title=page.title,
            content=self.to_note_html(page, config),
            attributes=self._note_attributes(page, config),
        )

    def to_note_html(self, page: NotionPage, config: NotionConfig) -> str:
        if not config.convert_blocks:
            return page.content
        rendered = render_blocks(page.blocks)
        return rendered or page.content

    @staticmethod
    def _note_attributes(page: NotionPage, config: NotionConfig) -> list[NoteAttribute]:
        attributes = [NoteAttribute("source", "notion")]
        if config.preserve_ids:
            attributes.append(NoteAttribute("notion-page-id", page.id))
        attributes.append(NoteAttribute("notion-page-type", page.type))
        for key, value in page.properties.items():
            if key in ("title", "type"):
                continue
            if isinstance(value, (list, tuple)):
                value = ", ".join(str(item) for item in value)
            attributes.append(NoteAttribute(f"notion-{key}", "" if value is None else str(value)))
        return attributes

    def _import_attachment(self, file: FileInfo, note_ids: dict[str, str]) -> FileResult:
        parent_page_id = file.metadata.get("parent_page_id")
        owner = note_ids.get(parent_page_id) if parent_page_id else None
        if owner is None:
            raise ImportExportError(
                f"Parent note not found for attachment: {file.name}",
                "ATTACHMENT_PARENT_NOT_FOUND",
                {"path": file.path, "parent_page_id": parent_page_id},
            )
        data = read_binary_file(Path(file.full_path))
        attachment = self.client.create_attachment(
            owner_id=owner,
            title=file.name,
            mime=file.mime_type or "application/octet-stream",
            role="file",
            content=base64.b64encode(data).decode("ascii"),
        )
        return FileResult(
            file=file,
            success=True,
            owner_id=owner,
            metadata={"attachment_id": attachment.attachment_id, "parent_note_id": owner},
        )


# ----------------------------------------------------------------------
# Export
# ----------------------------------------------------------------------
class NotionExportHandler(BaseHandler[NotionConfig]):
    """Export notes as Markdown pages zipped in Notion's layout."""

    format = FormatType.NOTION
    config_model = NotionConfig

    def check_environment(self, config: NotionConfig) -> None:
        if config.output_path is None:
            raise ImportExportError(
                "Invalid configuration: output_path is required for export (output_path)",
                "INVALID_CONFIG",
                {"field": "output_path"},
                format=self.format,
            )
        output = Path(config.output_path).expanduser()
        if output.exists() and not output.is_dir():
            raise ImportExportError(f"Path is not a directory: {output}", "NOT_A_DIRECTORY", {"path": str(output)})

    @staticmethod
    def staging_directory(context: OperationContext) -> Path:
        return context.temp_directory / "notion-export"

    def archive_path(self, config: NotionConfig) -> Path:
        return Path(config.output_path).expanduser() / EXPORT_ARCHIVE_NAME

    def plan(self, note_ids: Sequence[str], config: Any, context: OperationContext) -> list[FileInfo]:
        config = self._coerce(config)
        staging = self.staging_directory(context)
        files: list[FileInfo] = []
        used: set[str] = set()
        directories: dict[str, str] = {}

        def _reserve(directory: str, file_name: str) -> str:
            root = PurePosixPath(directory) if directory else PurePosixPath()
            name = unique_file_name(
                Path(directory or "."), file_name, exists=lambda path: (root / path.name).as_posix() in used
            )
            planned = (root / name).as_posix()
            used.add(planned)
            return planned

        for node in self.collect_export_nodes(note_ids):
            directory = ""
            if node.parent_note_id and config.preserve_structure:
                directory = directories.get(node.parent_note_id, "")
            path = _reserve(directory, f"{safe_title_file_name(node.title)}.md")
            directories[node.note_id] = path[: -len(".md")]
            files.append(
                self.planned_file(
                    path,
                    staging,
                    len(node.content.encode("utf-8")),
                    depth=node.depth,
                    mime_type="text/markdown",
                    metadata={
                        "note_id": node.note_id,
                        "note_title": node.title,
                        "note_type": node.type,
                        "parent_note_id": node.parent_note_id,
                        "is_attachment": False,
                    },
                )
            )
            if not config.include_attachments:
                continue
            for attachment in self.node_attachments(node):
                attachment_path = _reserve("attachments", safe_title_file_name(attachment.title, fallback="attachment"))
                files.append(
                    self.planned_file(
                        attachment_path,
                        staging,
                        attachment.content_length,
                        depth=1,
                        mime_type=attachment.mime,
                        metadata={
                            "attachment_id": attachment.attachment_id,
                            "parent_note_id": node.note_id,
                            "is_attachment": True,
                        },
                    )
                )
        return files

    def export_notes(self, files: Sequence[FileInfo], config: Any, context: OperationContext) -> ExportResult:
        config = self._coerce(config)
        started = utcnow()
        archive_path = self.archive_path(config)
        tracker = self.tracker(context, config, len(files))
        tracker.start("Starting Notion export")

        if config.dry_run:
            tracker.complete("Dry run completed - no files written")
            return self.dry_run_export(files, config, started, str(archive_path))

        staging = ensure_directory(self.staging_directory(context))
        resolver = SecurePathResolver(staging)
        results = self.run_items(
            files,
            lambda file: self._export_file(file, resolver),
            config,
            tracker,
            label="Exported",
        )

        entries = self.capabilities.archives.write_tree(staging, archive_path)
        logger.info(f"notion: wrote {entries} entries to {archive_path}")
        tracker.complete(f"Export completed: {sum(1 for result in results if result.success)}/{len(files)} files")
        return self.export_result(
            files, results, config, started, str(archive_path), metadata={"archive_entries": entries}
        )

    def _export_file(self, file: FileInfo, resolver: SecurePathResolver) -> FileResult:
        target = resolver.resolve(file.path)
        if file.metadata.get("is_attachment"):
            write_binary_file(target, self.client.get_attachment_content(file.metadata["attachment_id"]))
            return FileResult(file=file, success=True, owner_id=file.metadata.get("parent_note_id"))

        note_id = file.metadata["note_id"]
        note = self.client.get_note(note_id)
        content = self.client.get_note_content(note_id)
        write_text_file(target, self.to_notion_markdown(note, content))
        return FileResult(file=file, success=True, owner_id=note_id)

    def to_notion_markdown(self, note: Any, content: str) -> str:
        properties: dict[str, Any] = {}
        for attribute in note.attributes:
            if attribute.type == "label" and attribute.name.startswith("notion-"):
                properties[attribute.name[len("notion-") :]] = attribute.value
        body = self.converter.html_to_markdown(content) if note.type == "text" else content
        body = f"# {note.title}\n\n{body}"
        info = ContentInfo(type=ContentType.MARKDOWN, title=note.title, content=body, front_matter=properties)
        return MarkdownFormatter().format(info, self.format.value)

