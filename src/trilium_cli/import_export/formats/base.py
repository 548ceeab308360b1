"""Behaviour shared by every format handler."""

from __future__ import annotations

import base64
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Generic, Iterable, Optional, Protocol, Sequence

import httpx

from ..converters import ContentConverter
from ..dependencies import Capabilities, resolve_capabilities
from ..parsers import default_parsers
from ..progress import MAX_REPORTED_ERRORS, ErrorCollector, ProgressTracker
from ..types import (
    ConfigT,
    DuplicateHandling,
    ExportResult,
    FileInfo,
    FileResult,
    FormatConfig,
    FormatType,
    ImportExportError,
    ImportResult,
    NoteRepository,
    OperationContext,
    OperationError,
    OperationSummary,
    OperationType,
    SyncResult,
    utcnow,
    validate_config,
)
from ..utils import process_batch

logger = logging.getLogger(__name__)

DRY_RUN_IMPORT_REASON = "Dry run - would import"
DRY_RUN_EXPORT_REASON = "Dry run - would export"

TEXT_MIME_PREFIXES = ("text/",)
TEXT_MIME_TYPES = {"application/json", "application/xml", "image/svg+xml"}


class Importer(Protocol):
    format: FormatType

    def validate(self, config: Any) -> FormatConfig: ...

    def scan(self, config: Any, context: OperationContext) -> list[FileInfo]: ...

    def import_files(self, files: Sequence[FileInfo], config: Any, context: OperationContext) -> ImportResult: ...


class Exporter(Protocol):
    format: FormatType

    def validate(self, config: Any) -> FormatConfig: ...

    def plan(self, note_ids: Sequence[str], config: Any, context: OperationContext) -> list[FileInfo]: ...

    def export_notes(self, files: Sequence[FileInfo], config: Any, context: OperationContext) -> ExportResult: ...


class Syncer(Protocol):
    format: FormatType

    def validate(self, config: Any) -> FormatConfig: ...

    def sync(self, config: Any, context: OperationContext) -> SyncResult: ...


@dataclass(slots=True)
class NoteAttribute:
    name: str
    value: str = ""
    type: str = "label"


@dataclass(slots=True)
class ExportNode:
    """A note reached while planning an export."""

    note_id: str
    title: str
    type: str
    mime: str
    depth: int
    parent_note_id: Optional[str]
    content: str
    attributes: dict[str, list[str]]
    date_created: Optional[str] = None
    date_modified: Optional[str] = None


def is_text_mime(mime: Optional[str]) -> bool:
    if not mime:
        return False
    return mime.startswith(TEXT_MIME_PREFIXES) or mime in TEXT_MIME_TYPES


def encode_attachment(data: bytes, mime: Optional[str]) -> str:
    """Attachments travel as text for textual MIME types and base64 otherwise."""

    if is_text_mime(mime):
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            pass
    return base64.b64encode(data).decode("ascii")


def group_by_depth(files: Iterable[FileInfo]) -> list[list[FileInfo]]:
    groups: dict[int, list[FileInfo]] = defaultdict(list)
    for file in files:
        groups[file.depth].append(file)
    return [groups[depth] for depth in sorted(groups)]


def parent_not_created(path: str, parent: str) -> ImportExportError:
    return ImportExportError(
        f"Parent of {path} was not created: {parent}",
        "PARENT_NOT_CREATED",
        {"path": path, "parent": parent},
    )


def note_placeholder(note_id: str, *, suffix: str = "") -> FileInfo:
    """Stand-in for a note that could not be planned, so its failure shows up in results."""

    path = f"{note_id}{suffix}"
    return FileInfo(
        path=path,
        full_path="",
        relative_path=path,
        name=path,
        extension="",
        size=0,
        metadata={"note_id": note_id, "is_attachment": False},
    )


class BaseHandler(Generic[ConfigT]):
    """Common plumbing: config validation, note creation, results and summaries."""

    format: FormatType
    config_model: type[ConfigT]

    def __init__(
        self,
        client: NoteRepository,
        *,
        capabilities: Optional[Capabilities] = None,
        converter: Optional[ContentConverter] = None,
    ) -> None:
        self.client = client
        self.capabilities = capabilities or resolve_capabilities()
        self.converter = converter or ContentConverter()
        self.parsers = default_parsers(self.capabilities.front_matter)
        self.errors = ErrorCollector()
        self.plan_failures: list[FileResult] = []

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def validate(self, config: Any) -> ConfigT:
        parsed = validate_config(self.config_model, config, format=self.format)
        self.check_environment(parsed)
        return parsed

    def check_environment(self, config: ConfigT) -> None:
        """Confirm that configured paths exist and have the expected kind."""

    def _coerce(self, config: Any) -> ConfigT:
        if isinstance(config, self.config_model):
            return config
        return validate_config(self.config_model, config, format=self.format)

    # ------------------------------------------------------------------
    # Item helpers
    # ------------------------------------------------------------------
    def tracker(self, context: OperationContext, config: FormatConfig, total: int) -> ProgressTracker:
        return ProgressTracker(context.operation_id, total, context.events, enabled=config.progress)

    def failure(self, file: FileInfo, exc: Exception, *, code: str = "ITEM_FAILED") -> FileResult:
        if isinstance(exc, httpx.HTTPStatusError):
            error = OperationError(
                code="API_ERROR",
                message=f"{exc.response.status_code} {exc.response.reason_phrase}: {exc.request.url}",
                details={"path": file.path},
            )
        elif isinstance(exc, httpx.RequestError):
            error = OperationError(code="API_ERROR", message=str(exc), details={"path": file.path})
        else:
            error = OperationError.from_exception(exc, code=code, path=file.path)
        if isinstance(exc, (ImportExportError, httpx.HTTPError)):
            logger.warning(f"{self.format.value}: {file.path} failed with {error.code}: {error.message}")
        else:
            logger.error(f"{self.format.value}: unexpected failure for {file.path}", exc_info=True)
        self.errors.record(error)
        return FileResult(file=file, success=False, error=error)

    def run_items(
        self,
        files: Sequence[FileInfo],
        worker: Callable[[FileInfo], FileResult],
        config: FormatConfig,
        tracker: ProgressTracker,
        *,
        label: str = "Processed",
    ) -> list[FileResult]:
        """Process independent items on the worker pool, isolating failures per item."""

        def _on_progress(done: int, total: int) -> None:
            tracker.progress(message=f"{label} {done}/{total}")

        return process_batch(
            files,
            worker,
            concurrency=config.concurrency,
            batch_size=config.batch_size,
            on_progress=_on_progress,
            on_error=lambda file, exc: self.failure(file, exc),
        )

    # ------------------------------------------------------------------
    # Repository helpers
    # ------------------------------------------------------------------
    def create_note(
        self,
        *,
        parent_note_id: str,
        title: str,
        content: str,
        type: str = "text",
        mime: Optional[str] = None,
        attributes: Sequence[NoteAttribute] = (),
    ) -> str:
        created = self.client.create_note(
            parent_note_id=parent_note_id,
            title=title,
            type=type,
            content=content,
            mime=mime,
        )
        note_id = created.note.note_id
        self.add_attributes(note_id, attributes)
        return note_id

    def add_attributes(self, note_id: str, attributes: Sequence[NoteAttribute]) -> None:
        for attribute in attributes:
            name = attribute.name.strip().replace(" ", "-")
            if not name:
                continue
            try:
                self.client.create_attribute(note_id=note_id, type=attribute.type, name=name, value=attribute.value)
            except (httpx.HTTPError, ValueError) as exc:
                self.errors.add_warning(f"Could not add attribute {name!r} to note {note_id}: {exc}")

    def find_note_by_label(self, name: str, value: str) -> Optional[str]:
        """Find a note this format created earlier; the ``source`` label scopes the lookup."""

        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        source = self.format.value
        for note in self.client.search_notes(f'#{name}="{escaped}" #source="{source}"', limit=5):
            if value in note.labels(name) and source in note.labels("source"):
                return note.note_id
        return None

    def ensure_folder_note(
        self,
        config: FormatConfig,
        *,
        identity: NoteAttribute,
        parent_note_id: str,
        title: str,
        content: str,
        attributes: Sequence[NoteAttribute] = (),
    ) -> str:
        """Reuse the folder note from an earlier import unless duplicates are renamed."""

        if config.duplicate_handling != DuplicateHandling.RENAME:
            existing = self.find_note_by_label(identity.name, identity.value)
            if existing:
                return existing
        return self.create_note(
            parent_note_id=parent_note_id,
            title=title,
            content=content,
            attributes=[*attributes, identity],
        )

    def upsert_note(
        self,
        file: FileInfo,
        config: FormatConfig,
        *,
        identity: NoteAttribute,
        parent_note_id: str,
        title: str,
        content: str,
        type: str = "text",
        mime: Optional[str] = None,
        attributes: Sequence[NoteAttribute] = (),
    ) -> FileResult:
        """Create a note or apply the duplicate policy to an existing one found by ``identity``."""

        existing = self.find_note_by_label(identity.name, identity.value)
        policy = config.duplicate_handling
        if existing and policy == DuplicateHandling.SKIP:
            return FileResult(
                file=file,
                success=True,
                skipped=True,
                owner_id=existing,
                reason="Note already exists",
            )
        if existing and policy in (DuplicateHandling.OVERWRITE, DuplicateHandling.MERGE):
            if policy == DuplicateHandling.MERGE:
                content = self.client.get_note_content(existing) + "\n" + content
            self.client.update_note(existing, title=title)
            self.client.update_note_content(existing, content)
            return FileResult(file=file, success=True, owner_id=existing, metadata={"action": "updated"})

        if existing and policy == DuplicateHandling.RENAME:
            title = f"{title} (imported {utcnow():%Y-%m-%d %H%M%S})"
        note_id = self.create_note(
            parent_note_id=parent_note_id,
            title=title,
            content=content,
            type=type,
            mime=mime,
            attributes=[*attributes, identity],
        )
        return FileResult(file=file, success=True, owner_id=note_id, metadata={"action": "created"})

    # ------------------------------------------------------------------
    # Export planning
    # ------------------------------------------------------------------
    def collect_export_nodes(self, note_ids: Sequence[str]) -> list[ExportNode]:
        """Fetch each root note and its direct children, in root order.

        A note that cannot be fetched is recorded in ``plan_failures`` and
        left out together with its children; the other notes are still planned.
        """

        nodes: list[ExportNode] = []
        seen: set[str] = set()
        self.plan_failures = []

        def _visit(note_id: str, depth: int, parent: Optional[str]) -> None:
            if note_id in seen:
                return
            seen.add(note_id)
            try:
                note = self.client.get_note(note_id)
                content = self.client.get_note_content(note.note_id)
            except Exception as exc:
                self.plan_failures.append(self.failure(note_placeholder(note_id), exc, code="NOTE_NOT_FOUND"))
                return
            attributes: dict[str, list[str]] = defaultdict(list)
            for attribute in note.attributes:
                if attribute.type == "label":
                    attributes[attribute.name].append(attribute.value)
            nodes.append(
                ExportNode(
                    note_id=note.note_id,
                    title=note.title,
                    type=note.type,
                    mime=note.mime,
                    depth=depth,
                    parent_note_id=parent,
                    content=content,
                    attributes=dict(attributes),
                    date_created=note.date_created,
                    date_modified=note.date_modified,
                )
            )
            if depth == 0:
                for child_id in note.child_note_ids:
                    _visit(child_id, depth + 1, note.note_id)

        for note_id in note_ids:
            _visit(note_id, 0, None)
        return nodes

    def node_attachments(self, node: ExportNode) -> list[Any]:
        try:
            return self.client.get_attachments(node.note_id)
        except Exception as exc:
            placeholder = note_placeholder(node.note_id, suffix="/attachments")
            self.plan_failures.append(self.failure(placeholder, exc, code="API_ERROR"))
            return []

    @staticmethod
    def planned_file(
        path: str,
        output_root: Path,
        size: int,
        *,
        depth: int,
        metadata: dict[str, Any],
        mime_type: Optional[str] = None,
        last_modified: Optional[datetime] = None,
    ) -> FileInfo:
        name = path.rsplit("/", 1)[-1]
        extension = name.rsplit(".", 1)[-1].lower() if "." in name else ""
        return FileInfo(
            path=path,
            full_path=str(output_root / path),
            relative_path=path,
            name=name,
            extension=extension,
            size=size,
            mime_type=mime_type,
            last_modified=last_modified,
            depth=depth,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------
    def summarize(
        self,
        operation: OperationType,
        files: Sequence[FileInfo],
        results: Sequence[FileResult],
        started: datetime,
        *,
        metadata: Optional[dict[str, Any]] = None,
    ) -> OperationSummary:
        finished = utcnow()
        successful = [result for result in results if result.success and not result.skipped]
        return OperationSummary(
            operation=operation,
            format=self.format,
            start_time=started,
            end_time=finished,
            duration=(finished - started).total_seconds() * 1000,
            total_files=len(files),
            processed_files=len(results),
            successful_files=len(successful),
            failed_files=sum(1 for result in results if not result.success),
            skipped_files=sum(1 for result in results if result.skipped),
            total_size=sum(file.size for file in files),
            processed_size=sum(result.file.size for result in successful),
            errors=self.errors.errors[:MAX_REPORTED_ERRORS],
            warnings=self.errors.warnings,
            metadata=dict(metadata or {}),
        )

    def dry_run_import(self, files: Sequence[FileInfo], config: FormatConfig, started: datetime) -> ImportResult:
        results = [FileResult(file=file, success=True, reason=DRY_RUN_IMPORT_REASON) for file in files]
        return ImportResult(
            summary=self.summarize(OperationType.IMPORT, files, results, started, metadata={"dry_run": True}),
            files=results,
            warnings=self.errors.warnings,
            config=config,
        )

    def _with_plan_failures(
        self, files: Sequence[FileInfo], results: Sequence[FileResult]
    ) -> tuple[list[FileInfo], list[FileResult]]:
        failures = self.plan_failures
        return [*(result.file for result in failures), *files], [*failures, *results]

    def dry_run_export(
        self, files: Sequence[FileInfo], config: FormatConfig, started: datetime, output_path: str
    ) -> ExportResult:
        results = [FileResult(file=file, success=True, reason=DRY_RUN_EXPORT_REASON) for file in files]
        files, results = self._with_plan_failures(files, results)
        return ExportResult(
            summary=self.summarize(OperationType.EXPORT, files, results, started, metadata={"dry_run": True}),
            output_path=output_path,
            files=results,
            warnings=self.errors.warnings,
            config=config,
        )

    def import_result(
        self,
        files: Sequence[FileInfo],
        results: Sequence[FileResult],
        config: FormatConfig,
        started: datetime,
        *,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ImportResult:
        created: list[str] = []
        updated: list[str] = []
        attachments: list[str] = []
        for result in results:
            if not result.success or result.skipped or not result.owner_id:
                continue
            if result.metadata.get("attachment_id"):
                attachments.append(result.metadata["attachment_id"])
            elif result.metadata.get("action") == "updated":
                updated.append(result.owner_id)
            else:
                created.append(result.owner_id)
        return ImportResult(
            summary=self.summarize(OperationType.IMPORT, files, results, started, metadata=metadata),
            files=list(results),
            created=created,
            updated=updated,
            attachments=attachments,
            warnings=self.errors.warnings,
            config=config,
        )

    def export_result(
        self,
        files: Sequence[FileInfo],
        results: Sequence[FileResult],
        config: FormatConfig,
        started: datetime,
        output_path: str,
        *,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ExportResult:
        files, results = self._with_plan_failures(files, results)
        exported = [
            result.file.path
            for result in results
            if result.success and not result.skipped and not result.file.metadata.get("is_attachment")
        ]
        attachments = [
            result.file.path
            for result in results
            if result.success and not result.skipped and result.file.metadata.get("is_attachment")
        ]
        return ExportResult(
            summary=self.summarize(OperationType.EXPORT, files, results, started, metadata=metadata),
            output_path=output_path,
            files=list(results),
            exported=exported,
            attachments=attachments,
            warnings=self.errors.warnings,
            config=config,
        )
