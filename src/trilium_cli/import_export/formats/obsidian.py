"""Vault-style import and export: Markdown notes with front matter and wiki-links."""

from __future__ import annotations

import dataclasses
import logging
import re
from pathlib import Path, PurePosixPath
from typing import Any, Optional, Sequence

from ..naming import safe_title_file_name, unique_file_name
from ..parsers import EMBED_RE, IMAGE_RE, MARKDOWN_LINK_RE, WIKILINK_RE, MarkdownParser, format_content, wikilink_target
from ..secure_path import SecurePathResolver, validate_root_directory
from ..types import (
    ContentInfo,
    ContentType,
    ExportResult,
    FileInfo,
    FileResult,
    FormatType,
    ImportExportError,
    ImportResult,
    ObsidianConfig,
    OperationContext,
    OperationError,
    utcnow,
)
from ..utils import ensure_directory, read_binary_file, read_text_file, scan_files, write_binary_file, write_text_file
from .base import BaseHandler, NoteAttribute, encode_attachment, parent_not_created

logger = logging.getLogger(__name__)

WIKILINK_WITH_ALIAS_RE = re.compile(r"(?<!!)\[\[([^\]|]+)(?:\|([^\]]+))?\]\]")
INTERNAL_LINK_RE = re.compile(r'<a[^>]*href="#root/([^"]+)"[^>]*>([^<]+)</a>')
CALLOUT_RE = re.compile(r"^>\s*\[![\w-]+\]", re.MULTILINE)
INLINE_TAG_PRESENT_RE = re.compile(r"(?<![\w#/&])#[\w-]+")
FOLDER_NOTE_CONTENT = "<p>Folder imported from Obsidian vault.</p>"


def _folder_of(path: str) -> str:
    parent = PurePosixPath(path).parent.as_posix()
    return "" if parent == "." else parent


def _ancestor_folders(path: str) -> list[str]:
    parents = [parent.as_posix() for parent in PurePosixPath(path).parents if parent.as_posix() != "."]
    return list(reversed(parents))


class ObsidianImportHandler(BaseHandler[ObsidianConfig]):
    """Import an Obsidian vault into the note tree."""

    format = FormatType.OBSIDIAN
    config_model = ObsidianConfig

    def check_environment(self, config: ObsidianConfig) -> None:
        validate_root_directory(config.vault_path, code="VAULT_NOT_FOUND")

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------
    def scan(self, config: Any, context: OperationContext) -> list[FileInfo]:
        config = self._coerce(config)
        patterns = ["**/*.md"]
        if config.include_attachments:
            patterns += [f"**/*.{extension}" for extension in config.attachment_formats]
        patterns += config.patterns

        excludes = list(config.exclude_patterns)
        for folder in config.ignore_folders:
            excludes += [f"{folder}/**", f"**/{folder}/**"]
        if not config.include_templates:
            excludes.append(f"{config.templates_folder}/**")

        files = scan_files(
            Path(config.vault_path),
            patterns=patterns,
            exclude_patterns=excludes,
            max_depth=config.max_depth or 10,
            errors=self.errors,
        )
        return [dataclasses.replace(file, metadata=self._vault_metadata(file, config)) for file in files]

    def _vault_metadata(self, file: FileInfo, config: ObsidianConfig) -> dict[str, Any]:
        is_markdown = file.extension == "md"
        metadata: dict[str, Any] = {
            "is_markdown": is_markdown,
            "is_attachment": not is_markdown,
            "is_template": file.path.startswith(config.templates_folder + "/"),
            "is_daily_note": file.path.startswith(config.daily_notes_folder + "/"),
            "folder_path": _folder_of(file.path),
        }
        if not is_markdown:
            return metadata
        try:
            content = read_text_file(Path(file.full_path))
        except ImportExportError as exc:
            self.errors.add_warning(f"Could not read markdown metadata for {file.path}: {exc.message}")
            return metadata

        front_matter, _ = self.capabilities.front_matter.parse(content) if config.process_front_matter else ({}, content)
        wikilinks = WIKILINK_RE.findall(content)
        metadata.update(
            {
                "has_yaml_front_matter": bool(front_matter),
                "front_matter": front_matter,
                "wikilink_count": len(wikilinks),
                "markdown_link_count": len(MARKDOWN_LINK_RE.findall(content)),
                "has_wikilinks": bool(wikilinks),
                "embed_count": len(EMBED_RE.findall(content)),
                "image_count": len(IMAGE_RE.findall(content)),
                "has_tags": bool(INLINE_TAG_PRESENT_RE.search(content)) or "tags" in front_matter,
                "has_callouts": bool(CALLOUT_RE.search(content)),
                "has_dataview": "```dataview" in content,
            }
        )
        return metadata

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------
    def import_files(self, files: Sequence[FileInfo], config: Any, context: OperationContext) -> ImportResult:
        config = self._coerce(config)
        started = utcnow()
        tracker = self.tracker(context, config, len(files))
        tracker.start("Starting Obsidian import")

        if config.dry_run:
            tracker.complete("Dry run completed - no changes made")
            return self.dry_run_import(files, config, started)

        markdown_files = [file for file in files if file.extension == "md"]
        attachment_files = [file for file in files if file.extension != "md"] if config.include_attachments else []

        folder_notes = self._create_folder_notes(files, config)
        parsed: dict[str, tuple[str, ContentInfo]] = {}

        def _import_markdown(file: FileInfo) -> FileResult:
            result, content = self._import_markdown(file, config, folder_notes)
            if result.success and not result.skipped and result.owner_id:
                parsed[file.path] = (result.owner_id, content)
            return result

        results = self.run_items(markdown_files, _import_markdown, config, tracker, label="Imported notes")

        note_ids = {path: note_id for path, (note_id, _) in parsed.items()}
        if config.convert_wikilinks:
            self._resolve_wikilinks(parsed, note_ids)

        results += self.run_items(
            attachment_files,
            lambda file: self._import_attachment(file, config, parsed, folder_notes),
            config,
            tracker,
            label="Imported attachments",
        )

        successful = sum(1 for result in results if result.success)
        tracker.complete(f"Import completed: {successful}/{len(files)} files processed")
        return self.import_result(files, results, config, started, metadata={"folders": dict(folder_notes)})

    def _create_folder_notes(self, files: Sequence[FileInfo], config: ObsidianConfig) -> dict[str, str]:
        """Create one note per vault folder, parents first; returns folder path -> note id."""

        folder_notes: dict[str, str] = {}
        if not self._uses_folder_notes(config):
            return folder_notes

        folders = sorted(
            {folder for file in files for folder in _ancestor_folders(file.path)},
            key=lambda folder: (folder.count("/"), folder),
        )
        for folder in folders:
            parent_folder = _folder_of(folder)
            if parent_folder and parent_folder not in folder_notes:
                self.errors.record(
                    OperationError.from_exception(parent_not_created(folder, parent_folder), path=folder)
                )
                continue
            try:
                folder_notes[folder] = self.ensure_folder_note(
                    config,
                    identity=NoteAttribute("folder-path", folder),
                    parent_note_id=folder_notes.get(parent_folder, config.parent_note_id),
                    title=PurePosixPath(folder).name,
                    content=FOLDER_NOTE_CONTENT,
                    attributes=[NoteAttribute("source", "obsidian"), NoteAttribute("type", "folder")],
                )
            except Exception as exc:
                logger.warning(f"obsidian: could not create folder note for {folder}: {exc}")
                self.errors.record(OperationError.from_exception(exc, code="FOLDER_CREATE_FAILED", path=folder))
        return folder_notes

    @staticmethod
    def _uses_folder_notes(config: ObsidianConfig) -> bool:
        return config.preserve_folder_structure and config.create_missing_parents

    def _parent_for(self, path: str, config: ObsidianConfig, folder_notes: dict[str, str]) -> str:
        folder = _folder_of(path)
        if not folder or not self._uses_folder_notes(config):
            return config.parent_note_id
        if folder not in folder_notes:
            raise parent_not_created(path, folder)
        return folder_notes[folder]

    def _import_markdown(
        self,
        file: FileInfo,
        config: ObsidianConfig,
        folder_notes: dict[str, str],
    ) -> tuple[FileResult, ContentInfo]:
        raw = read_text_file(Path(file.full_path))
        parser = MarkdownParser(self.capabilities.front_matter if config.process_front_matter else None)
        content = parser.parse(raw, file)
        html = self.converter.markdown_to_html(content.content)

        result = self.upsert_note(
            file,
            config,
            identity=NoteAttribute("original-path", file.path),
            parent_note_id=self._parent_for(file.path, config, folder_notes),
            title=content.title or file.stem,
            content=html,
            attributes=self._note_attributes(content, file),
        )
        return result, content

    def _note_attributes(self, content: ContentInfo, file: FileInfo) -> list[NoteAttribute]:
        attributes = [NoteAttribute("tag", tag) for tag in content.tags]
        for key, value in (content.front_matter or {}).items():
            if key in ("title", "tags", "tag"):
                continue
            if isinstance(value, (list, tuple)):
                value = ", ".join(str(item) for item in value)
            attributes.append(NoteAttribute(f"obsidian-{key}", "" if value is None else str(value)))
        if file.metadata.get("is_template"):
            attributes.append(NoteAttribute("template"))
        attributes.append(NoteAttribute("source", "obsidian"))
        return attributes

    def _resolve_wikilinks(self, parsed: dict[str, tuple[str, ContentInfo]], note_ids: dict[str, str]) -> None:
        by_stem: dict[str, str] = {}
        for path, note_id in sorted(note_ids.items()):
            by_stem.setdefault(PurePosixPath(path).stem.lower(), note_id)

        def _target(name: str) -> Optional[str]:
            name = wikilink_target(name)
            return note_ids.get(name + ".md") or note_ids.get(name) or by_stem.get(PurePosixPath(name).stem.lower())

        for path, (note_id, content) in parsed.items():
            changed = False

            def _replace(match: re.Match[str]) -> str:
                nonlocal changed
                target = _target(match.group(1))
                if target is None:
                    return match.group(0)
                changed = True
                text = (match.group(2) or match.group(1)).strip()
                return f'<a href="#root/{target}">{text}</a>'

            rewritten = WIKILINK_WITH_ALIAS_RE.sub(_replace, content.content)
            if not changed:
                continue
            try:
                self.client.update_note_content(note_id, self.converter.markdown_to_html(rewritten))
            except Exception as exc:
                self.errors.add_warning(f"Could not resolve wikilinks in {path}: {exc}")

    def _import_attachment(
        self,
        file: FileInfo,
        config: ObsidianConfig,
        parsed: dict[str, tuple[str, ContentInfo]],
        folder_notes: dict[str, str],
    ) -> FileResult:
        owner = self._attachment_owner(file, parsed) or self._parent_for(file.path, config, folder_notes)
        data = read_binary_file(Path(file.full_path))
        mime = file.mime_type or "application/octet-stream"
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
            metadata={"attachment_id": attachment.attachment_id},
        )

    @staticmethod
    def _attachment_owner(file: FileInfo, parsed: dict[str, tuple[str, ContentInfo]]) -> Optional[str]:
        candidates = {file.name, file.stem, file.path}
        for path in sorted(parsed):
            note_id, content = parsed[path]
            references = set(content.attachments) | set(content.links)
            if any(reference in candidates or reference.endswith("/" + file.name) for reference in references):
                return note_id
        return None


class ObsidianExportHandler(BaseHandler[ObsidianConfig]):
    """Export notes into an Obsidian vault layout."""

    format = FormatType.OBSIDIAN
    config_model = ObsidianConfig

    def check_environment(self, config: ObsidianConfig) -> None:
        vault = Path(config.vault_path).expanduser()
        if vault.exists() and not vault.is_dir():
            raise ImportExportError(f"Path is not a directory: {vault}", "NOT_A_DIRECTORY", {"path": str(vault)})

    def plan(self, note_ids: Sequence[str], config: Any, context: OperationContext) -> list[FileInfo]:
        config = self._coerce(config)
        vault = Path(config.vault_path).expanduser()
        files: list[FileInfo] = []
        used: set[str] = set()
        titles: dict[str, str] = {}

        def _reserve(directory: str, file_name: str) -> str:
            root = PurePosixPath(directory) if directory else PurePosixPath()
            name = unique_file_name(
                Path(directory or "."), file_name, exists=lambda path: (root / path.name).as_posix() in used
            )
            planned = (root / name).as_posix()
            used.add(planned)
            return planned

        for node in self.collect_export_nodes(note_ids):
            title = safe_title_file_name(node.title)
            titles[node.note_id] = title
            directory = ""
            if node.parent_note_id and config.preserve_folder_structure:
                directory = titles.get(node.parent_note_id, "")
            path = _reserve(directory, f"{title}.md")
            files.append(
                self.planned_file(
                    path,
                    vault,
                    len(node.content.encode("utf-8")),
                    depth=path.count("/"),
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
                attachment_path = _reserve(config.attachment_folder, safe_title_file_name(attachment.title, fallback="attachment"))
                files.append(
                    self.planned_file(
                        attachment_path,
                        vault,
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
        vault = Path(config.vault_path).expanduser()
        tracker = self.tracker(context, config, len(files))
        tracker.start("Starting Obsidian export")

        if config.dry_run:
            tracker.complete("Dry run completed - no files written")
            return self.dry_run_export(files, config, started, str(vault))

        ensure_directory(vault)
        resolver = SecurePathResolver(vault)
        results = self.run_items(
            files,
            lambda file: self._export_file(file, config, resolver),
            config,
            tracker,
            label="Exported",
        )
        tracker.complete(f"Export completed: {sum(1 for result in results if result.success)}/{len(files)} files")
        return self.export_result(files, results, config, started, str(vault))

    def _export_file(self, file: FileInfo, config: ObsidianConfig, resolver: SecurePathResolver) -> FileResult:
        target = resolver.resolve(file.path)
        if file.metadata.get("is_attachment"):
            data = self.client.get_attachment_content(file.metadata["attachment_id"])
            write_binary_file(target, data)
            return FileResult(file=file, success=True, owner_id=file.metadata.get("parent_note_id"))

        note_id = file.metadata["note_id"]
        note = self.client.get_note(note_id)
        content = self.client.get_note_content(note_id)
        write_text_file(target, self.to_obsidian_markdown(note, content, config))
        return FileResult(file=file, success=True, owner_id=note_id)

    def to_obsidian_markdown(self, note: Any, content: str, config: ObsidianConfig) -> str:
        front_matter: dict[str, Any] = {}
        tags: list[str] = []
        for attribute in note.attributes:
            if attribute.type != "label":
                continue
            if attribute.name.startswith("obsidian-"):
                front_matter[attribute.name[len("obsidian-") :]] = attribute.value
            elif attribute.name == "tag":
                tags.append(attribute.value)
        if tags:
            front_matter["tags"] = tags
        if note.date_created:
            front_matter["created"] = note.date_created
        if note.date_modified:
            front_matter["modified"] = note.date_modified

        if note.type == "text":
            if config.preserve_wikilinks:
                content = INTERNAL_LINK_RE.sub(lambda match: f"[[{match.group(2).strip()}]]", content)
            body = self.converter.html_to_markdown(content)
        else:
            body = content

        info = ContentInfo(type=ContentType.MARKDOWN, title=note.title, content=body, front_matter=front_matter)
        return format_content(info, self.format.value)

