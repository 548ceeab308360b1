"""Plain directory import and export."""

from __future__ import annotations

import dataclasses
import html
import json
import logging
import re
from collections import Counter, defaultdict
from pathlib import Path, PurePosixPath
from typing import Any, Optional, Sequence

from ..naming import safe_title_file_name, unique_file_name
from ..parsers import parse_content
from ..secure_path import SecurePathResolver, validate_root_directory
from ..types import (
    ContentInfo,
    ContentType,
    DirectoryConfig,
    ExportResult,
    FileInfo,
    FileResult,
    FormatType,
    ImportExportError,
    ImportResult,
    OperationContext,
    OperationError,
    utcnow,
)
from ..utils import (
    detect_content_type,
    ensure_directory,
    format_file_size,
    read_binary_file,
    read_text_file,
    scan_files,
    write_binary_file,
    write_text_file,
)
from .base import BaseHandler, ExportNode, NoteAttribute, encode_attachment, parent_not_created

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 1024
TEXT_EXTENSIONS = {"txt", "md", "html", "json", "xml", "yaml", "yml", "csv", "tsv", "log"}
MARKDOWN_HINT_RE = re.compile(r"!?\[.*\]\(.*\)")
HTML_TAG_RE = re.compile(r"<[a-z][\s\S]*>", re.IGNORECASE)
PRINTABLE_RE = re.compile(r"[\x20-\x7e\t\n\r]")


def is_text_content(sample: str) -> bool:
    """No NUL characters and more than 80% printable ASCII."""

    if not sample:
        return True
    if "\0" in sample:
        return False
    printable = len(PRINTABLE_RE.findall(sample))
    return printable / len(sample) > 0.8


def sniff_content_type(sample: str, file: FileInfo) -> ContentType:
    stripped = sample.strip()
    if stripped.startswith(("{", "[")):
        try:
            json.loads(stripped)
        except ValueError:
            pass
        else:
            return ContentType.JSON
    if "<!DOCTYPE" in sample or "<html" in sample or HTML_TAG_RE.search(sample):
        return ContentType.HTML
    if any(marker in sample for marker in ("# ", "## ", "---\n", "```")) or MARKDOWN_HINT_RE.search(sample):
        return ContentType.MARKDOWN
    return detect_content_type(file)


def read_sample(path: Path, size: int = SAMPLE_SIZE) -> str:
    try:
        with path.open("rb") as handle:
            return handle.read(size).decode("utf-8", errors="replace")
    except OSError as exc:
        raise ImportExportError(
            f"Failed to read file sample: {path}",
            "FILE_SAMPLE_READ_ERROR",
            {"path": str(path), "max_bytes": size, "error": str(exc)},
        ) from exc


def is_text_file(file: FileInfo) -> bool:
    if "has_text_content" in file.metadata:
        return bool(file.metadata["has_text_content"])
    return file.extension in TEXT_EXTENSIONS or (file.mime_type or "").startswith("text/")


def _directory_of(path: str) -> str:
    parent = PurePosixPath(path).parent.as_posix()
    return "" if parent == "." else parent


def render_file_tree(paths: Sequence[str]) -> str:
    tree: dict[str, Any] = {}
    for path in paths:
        node = tree
        parts = [part for part in path.split("/") if part]
        for part in parts[:-1]:
            child = node.setdefault(part, {})
            if child is None:
                child = node[part] = {}
            node = child
        if parts:
            node.setdefault(parts[-1], None)

    lines: list[str] = []

    def _render(node: dict[str, Any], prefix: str) -> None:
        entries = sorted(node.items())
        for index, (name, children) in enumerate(entries):
            last = index == len(entries) - 1
            lines.append(prefix + ("└── " if last else "├── ") + name)
            if isinstance(children, dict):
                _render(children, prefix + ("    " if last else "│   "))

    _render(tree, "")
    return "\n".join(lines) + ("\n" if lines else "")


class DirectoryImportHandler(BaseHandler[DirectoryConfig]):
    """Import an arbitrary directory tree matched by glob patterns."""

    format = FormatType.DIRECTORY
    config_model = DirectoryConfig

    def check_environment(self, config: DirectoryConfig) -> None:
        if config.source_path is None:
            raise ImportExportError(
                "Invalid configuration: source_path is required for import (source_path)",
                "INVALID_CONFIG",
                {"field": "source_path"},
                format=self.format,
            )
        validate_root_directory(config.source_path, code="SOURCE_NOT_FOUND")

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------
    def scan(self, config: Any, context: OperationContext) -> list[FileInfo]:
        config = self._coerce(config)
        files = scan_files(
            Path(config.source_path),
            patterns=[*config.file_patterns, *config.patterns],
            exclude_patterns=[*config.ignore_patterns, *config.exclude_patterns],
            max_depth=config.max_depth or 10,
            errors=self.errors,
        )
        return [dataclasses.replace(file, metadata=self._file_metadata(file, config)) for file in files]

    def _file_metadata(self, file: FileInfo, config: DirectoryConfig) -> dict[str, Any]:
        content_type = detect_content_type(file)
        metadata: dict[str, Any] = dict(file.metadata)
        if config.detect_format and file.extension != "md":
            try:
                sample = read_sample(Path(file.full_path))
            except ImportExportError as exc:
                self.errors.add_warning(f"Could not read sample from {file.path}: {exc.message}")
            else:
                content_type = sniff_content_type(sample, file)
                metadata["detected_type"] = content_type.value
                metadata["has_text_content"] = is_text_content(sample)

        if content_type == ContentType.MARKDOWN and file.extension == "md":
            try:
                info = parse_content(read_text_file(Path(file.full_path)), file, self.parsers)
            except ImportExportError as exc:
                self.errors.add_warning(f"Could not parse markdown content from {file.path}: {exc.message}")
            else:
                metadata.update(
                    {
                        "has_yaml_front_matter": bool(info.front_matter),
                        "link_count": len(info.links),
                        "attachment_count": len(info.attachments),
                        "tag_count": len(info.tags),
                        "word_count": info.metadata.get("word_count", 0),
                        "line_count": info.metadata.get("line_count", 0),
                    }
                )

        metadata["content_type"] = content_type.value
        metadata["directory_path"] = _directory_of(file.path)
        return metadata

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------
    def import_files(self, files: Sequence[FileInfo], config: Any, context: OperationContext) -> ImportResult:
        config = self._coerce(config)
        started = utcnow()
        tracker = self.tracker(context, config, len(files))
        tracker.start("Starting directory import")

        if config.dry_run:
            tracker.complete("Dry run completed - no changes made")
            return self.dry_run_import(files, config, started)

        directories = self._create_directory_notes(files, config)
        results = self.run_items(
            files,
            lambda file: self._import_file(file, config, directories),
            config,
            tracker,
            label="Imported",
        )

        metadata: dict[str, Any] = {"directories": dict(directories)}
        if config.create_index:
            try:
                metadata["index_note_id"] = self._create_index_note(files, config)
            except Exception as exc:
                self.errors.add_warning(f"Could not create import index: {exc}")

        successful = sum(1 for result in results if result.success)
        tracker.complete(f"Import completed: {successful}/{len(files)} files processed")
        return self.import_result(files, results, config, started, metadata=metadata)

    def _create_directory_notes(self, files: Sequence[FileInfo], config: DirectoryConfig) -> dict[str, str]:
        directories: dict[str, str] = {}
        if not config.preserve_structure:
            return directories

        paths: set[str] = set()
        for file in files:
            directory = _directory_of(file.path)
            while directory:
                paths.add(directory)
                directory = _directory_of(directory)

        for path in sorted(paths, key=lambda item: (item.count("/"), item)):
            parent = _directory_of(path)
            if parent and parent not in directories:
                self.errors.record(OperationError.from_exception(parent_not_created(path, parent), path=path))
                continue
            name = PurePosixPath(path).name
            try:
                directories[path] = self.ensure_folder_note(
                    config,
                    identity=NoteAttribute("directory-path", path),
                    parent_note_id=directories.get(parent, config.parent_note_id),
                    title=name,
                    content=(
                        f"<h1>{html.escape(name)}</h1>\n"
                        f"<p>Directory imported from: <code>{html.escape(path)}</code></p>"
                    ),
                    attributes=[NoteAttribute("source", "directory"), NoteAttribute("type", "folder")],
                )
            except Exception as exc:
                logger.warning(f"directory: could not create directory note for {path}: {exc}")
                self.errors.record(OperationError.from_exception(exc, code="FOLDER_CREATE_FAILED", path=path))
        return directories

    def _parent_for(self, file: FileInfo, config: DirectoryConfig, directories: dict[str, str]) -> Optional[str]:
        directory = _directory_of(file.path)
        if not config.preserve_structure or not directory:
            return None
        if directory not in directories:
            raise parent_not_created(file.path, directory)
        return directories[directory]

    def _import_file(self, file: FileInfo, config: DirectoryConfig, directories: dict[str, str]) -> FileResult:
        parent = self._parent_for(file, config, directories)
        if is_text_file(file):
            return self._import_text(file, config, parent or config.parent_note_id)
        return self._import_binary(file, config, parent)

    def _import_text(self, file: FileInfo, config: DirectoryConfig, parent_note_id: str) -> FileResult:
        raw = read_text_file(Path(file.full_path))
        content = parse_content(raw, file, self.parsers)
        result = self.upsert_note(
            file,
            config,
            identity=NoteAttribute("original-path", file.path),
            parent_note_id=parent_note_id,
            title=content.title or file.stem,
            content=self.to_note_html(content, raw, file),
            attributes=self._file_attributes(file, content),
        )
        result.metadata.update(
            {
                "content_type": content.type.value,
                "has_metadata": bool(content.front_matter),
                "link_count": len(content.links),
                "parent_note_id": parent_note_id,
            }
        )
        return result

    def to_note_html(self, content: ContentInfo, raw: str, file: FileInfo) -> str:
        detected = file.metadata.get("detected_type")
        if content.type == ContentType.MARKDOWN:
            return self.converter.markdown_to_html(content.content)
        if content.type == ContentType.HTML or detected == ContentType.HTML.value:
            return raw
        if content.type == ContentType.JSON or detected == ContentType.JSON.value:
            try:
                pretty = json.dumps(json.loads(raw), indent=2, ensure_ascii=False)
            except ValueError:
                return f"<pre><code>{html.escape(raw)}</code></pre>"
            return f'<pre><code class="language-json">{html.escape(pretty)}</code></pre>'
        return f"<pre>{html.escape(raw)}</pre>"

    def _import_binary(self, file: FileInfo, config: DirectoryConfig, owner: Optional[str]) -> FileResult:
        data = read_binary_file(Path(file.full_path))
        mime = file.mime_type or "application/octet-stream"
        if owner is None:
            result = self.upsert_note(
                file,
                config,
                identity=NoteAttribute("original-path", file.path),
                parent_note_id=config.parent_note_id,
                title=file.name,
                content=encode_attachment(data, mime),
                type="file",
                mime=mime,
                attributes=self._file_attributes(file, None),
            )
            result.metadata.update({"mime_type": mime, "is_attachment": False})
            return result

        attachment = self.client.create_attachment(
            owner_id=owner,
            title=file.name,
            mime=mime,
            role="image" if mime.startswith("image/") else "file",
            content=encode_attachment(data, mime),
        )
        return FileResult(
            file=file,
            success=True,
            owner_id=owner,
            metadata={"attachment_id": attachment.attachment_id, "mime_type": mime, "parent_note_id": owner},
        )

    @staticmethod
    def _file_attributes(file: FileInfo, content: Optional[ContentInfo]) -> list[NoteAttribute]:
        attributes = [NoteAttribute("source", "directory"), NoteAttribute("original-name", file.name)]
        if file.extension:
            attributes.append(NoteAttribute("file-extension", file.extension))
        if file.mime_type:
            attributes.append(NoteAttribute("mime-type", file.mime_type))
        if content is None:
            return attributes
        attributes += [NoteAttribute("tag", tag) for tag in content.tags]
        for key, value in (content.front_matter or {}).items():
            if key in ("title", "tags"):
                continue
            attributes.append(NoteAttribute(f"metadata-{key}", "" if value is None else str(value)))
        return attributes

    def _create_index_note(self, files: Sequence[FileInfo], config: DirectoryConfig) -> str:
        return self.create_note(
            parent_note_id=config.parent_note_id,
            title="Import Index",
            content=self.index_html(files, config),
            attributes=[
                NoteAttribute("source", "directory"),
                NoteAttribute("type", "index"),
                NoteAttribute("import-date", utcnow().isoformat()),
            ],
        )

    @staticmethod
    def index_html(files: Sequence[FileInfo], config: DirectoryConfig) -> str:
        by_directory: dict[str, list[FileInfo]] = defaultdict(list)
        for file in files:
            by_directory[file.metadata.get("directory_path", _directory_of(file.path))].append(file)

        lines = [
            "<h1>Import Index</h1>",
            f"<p>Imported from: <code>{html.escape(str(config.source_path))}</code></p>",
            f"<p>Import date: {utcnow():%Y-%m-%d %H:%M:%S} UTC</p>",
            "<h2>File Structure</h2>",
            "<ul>",
        ]
        for directory in sorted(by_directory):
            entries = [
                f"<li>{html.escape(file.name)} ({html.escape(file.extension or 'no-extension')})</li>"
                for file in by_directory[directory]
            ]
            if not directory:
                lines += entries
            else:
                lines += [f"<li><strong>{html.escape(directory)}/</strong>", "<ul>", *entries, "</ul>", "</li>"]
        lines.append("</ul>")

        text_files = sum(1 for file in files if is_text_file(file))
        types = Counter(file.extension or "no-extension" for file in files)
        lines += [
            "<h2>Import Statistics</h2>",
            "<ul>",
            f"<li>Total files: {len(files)}</li>",
            f"<li>Text files: {text_files}</li>",
            f"<li>Binary files: {len(files) - text_files}</li>",
            f"<li>Total size: {format_file_size(sum(file.size for file in files))}</li>",
            f"<li>File types: {', '.join(f'{ext} ({count})' for ext, count in sorted(types.items()))}</li>",
            "</ul>",
        ]
        return "\n".join(lines) + "\n"


class DirectoryExportHandler(BaseHandler[DirectoryConfig]):
    """Export notes as individual files in a directory."""

    format = FormatType.DIRECTORY
    config_model = DirectoryConfig

    def check_environment(self, config: DirectoryConfig) -> None:
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
    def file_name_for(node: ExportNode, config: DirectoryConfig) -> str:
        base = safe_title_file_name(node.title)
        extension = (node.attributes.get("file-extension") or [None])[0]
        if config.preserve_extensions and extension:
            return f"{base}.{extension}"
        if node.mime == "application/json" or (node.type == "code" and node.content.lstrip().startswith("{")):
            return f"{base}.json"
        if "# " in node.content or "## " in node.content:
            return f"{base}.md"
        return f"{base}.html"

    def plan(self, note_ids: Sequence[str], config: Any, context: OperationContext) -> list[FileInfo]:
        config = self._coerce(config)
        output = Path(config.output_path).expanduser()
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
            file_name = self.file_name_for(node, config)
            path = _reserve(directory, file_name)
            directories[node.note_id] = (PurePosixPath(directory) / safe_title_file_name(node.title)).as_posix()
            files.append(
                self.planned_file(
                    path,
                    output,
                    len(node.content.encode("utf-8")),
                    depth=path.count("/"),
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
            attachment_root = f"{directories[node.note_id]}/attachments" if config.preserve_structure else "attachments"
            for attachment in self.node_attachments(node):
                attachment_path = _reserve(attachment_root, safe_title_file_name(attachment.title, fallback="attachment"))
                files.append(
                    self.planned_file(
                        attachment_path,
                        output,
                        attachment.content_length,
                        depth=attachment_path.count("/"),
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
        output = Path(config.output_path).expanduser()
        tracker = self.tracker(context, config, len(files))
        tracker.start("Starting directory export")

        if config.dry_run:
            tracker.complete("Dry run completed - no files written")
            return self.dry_run_export(files, config, started, str(output))

        ensure_directory(output)
        resolver = SecurePathResolver(output, max_depth=config.max_depth or 10)
        results = self.run_items(files, lambda file: self._export_file(file, resolver), config, tracker, label="Exported")

        metadata: dict[str, Any] = {}
        if config.create_index:
            try:
                index = resolver.resolve(config.index_file_name)
                write_text_file(index, self.index_markdown(files))
                metadata["index_file"] = str(index)
            except ImportExportError as exc:
                self.errors.add_warning(f"Could not write export index: {exc.message}")

        tracker.complete(f"Export completed: {sum(1 for result in results if result.success)}/{len(files)} files")
        return self.export_result(files, results, config, started, str(output), metadata=metadata)

    def _export_file(self, file: FileInfo, resolver: SecurePathResolver) -> FileResult:
        target = resolver.resolve(file.path)
        if file.metadata.get("is_attachment"):
            data = self.client.get_attachment_content(file.metadata["attachment_id"])
            write_binary_file(target, data)
            return FileResult(
                file=file,
                success=True,
                owner_id=file.metadata.get("parent_note_id"),
                metadata={"attachment_id": file.metadata["attachment_id"], "file_size": len(data)},
            )

        note_id = file.metadata["note_id"]
        note = self.client.get_note(note_id)
        content = self.client.get_note_content(note_id)
        exported = self.render_note(note, content, file.extension)
        write_text_file(target, exported)
        return FileResult(
            file=file,
            success=True,
            owner_id=note_id,
            metadata={"note_title": note.title, "content_length": len(exported), "export_format": file.extension},
        )

    def render_note(self, note: Any, content: str, extension: str) -> str:
        if extension == "md" and note.type == "text" and note.mime == "text/html":
            content = self.converter.html_to_markdown(content)
        if extension not in ("md", "html"):
            return content

        source = note.label("source")
        original_path = note.label("original-path")
        if not (source or original_path):
            return content
        header = ""
        if source:
            header += f"<!-- Source: {source} -->\n"
        if original_path:
            header += f"<!-- Original path: {original_path} -->\n"
        header += f"<!-- Exported from Trilium on {utcnow().isoformat()} -->\n\n"
        return header + content

    @staticmethod
    def index_markdown(files: Sequence[FileInfo]) -> str:
        notes = [file for file in files if not file.metadata.get("is_attachment")]
        attachments = [file for file in files if file.metadata.get("is_attachment")]
        lines = [
            "# Export Index",
            "",
            f"**Export date:** {utcnow():%Y-%m-%d %H:%M:%S} UTC",
            "",
            f"**Total files:** {len(files)}",
            "",
        ]
        if notes:
            lines += ["## Notes", ""]
            lines += [f"- [{file.metadata.get('note_title') or file.name}]({file.path})" for file in notes]
            lines.append("")
        if attachments:
            lines += ["## Attachments", ""]
            lines += [f"- [{file.name}]({file.path})" for file in attachments]
            lines.append("")
        lines += ["## File Structure", "", "```"]
        return "\n".join(lines) + "\n" + render_file_tree([file.path for file in files]) + "```\n"
