"""Shared types for the import/export pipeline."""

from __future__ import annotations

import dataclasses
import os
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from trilium_cli.etapi.models import Attachment, Attribute, CreatedNote, Note


class FormatType(str, Enum):
    OBSIDIAN = "obsidian"
    NOTION = "notion"
    DIRECTORY = "directory"
    GIT = "git"


class OperationType(str, Enum):
    IMPORT = "import"
    EXPORT = "export"
    SYNC = "sync"


class DuplicateHandling(str, Enum):
    SKIP = "skip"
    OVERWRITE = "overwrite"
    RENAME = "rename"
    MERGE = "merge"


class ContentType(str, Enum):
    TEXT = "text"
    MARKDOWN = "markdown"
    HTML = "html"
    JSON = "json"
    BINARY = "binary"
    IMAGE = "image"
    DOCUMENT = "document"


class ProgressEventType(str, Enum):
    START = "start"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------
class ImportExportError(RuntimeError):
    """Failure carrying a stable string code and structured details."""

    def __init__(
        self,
        message: str,
        code: str = "IMPORT_EXPORT_ERROR",
        details: Optional[dict[str, Any]] = None,
        *,
        operation: Optional[OperationType] = None,
        format: Optional[FormatType] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.operation = operation
        self.format = format

    def to_operation_error(self) -> "OperationError":
        return OperationError(code=self.code, message=self.message, details=dict(self.details))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "details": to_jsonable(self.details),
            "operation": self.operation.value if self.operation else None,
            "format": self.format.value if self.format else None,
        }


@dataclass(slots=True)
class OperationError:
    """Typed error recorded against one item or the whole operation."""

    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def from_exception(cls, exc: BaseException, *, code: str = "UNKNOWN_ERROR", **details: Any) -> "OperationError":
        if isinstance(exc, ImportExportError):
            error = exc.to_operation_error()
            error.details.update(details)
            return error
        return cls(code=code, message=str(exc) or type(exc).__name__, details=details)


# ----------------------------------------------------------------------
# Files and content
# ----------------------------------------------------------------------
@dataclass(slots=True, frozen=True)
class FileInfo:
    """One discovered or planned unit of work."""

    path: str
    full_path: str
    relative_path: str
    name: str
    extension: str
    size: int
    mime_type: Optional[str] = None
    last_modified: Optional[datetime] = None
    checksum: Optional[str] = None
    depth: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def stem(self) -> str:
        return Path(self.name).stem


@dataclass(slots=True)
class ContentInfo:
    """Format-agnostic parsed representation of a file's content."""

    type: ContentType
    content: str
    title: Optional[str] = None
    front_matter: Optional[dict[str, Any]] = None
    links: list[str] = field(default_factory=list)
    attachments: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProgressEvent:
    id: str
    type: ProgressEventType
    message: str
    current: Optional[int] = None
    total: Optional[int] = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


ProgressCallback = Callable[[ProgressEvent], None]


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------
@dataclass(slots=True)
class FileResult:
    """Outcome of processing a single :class:`FileInfo`."""

    file: FileInfo
    success: bool
    owner_id: Optional[str] = None
    error: Optional[OperationError] = None
    skipped: bool = False
    reason: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class OperationSummary:
    operation: OperationType
    format: FormatType
    start_time: datetime
    end_time: datetime
    duration: float
    total_files: int = 0
    processed_files: int = 0
    successful_files: int = 0
    failed_files: int = 0
    skipped_files: int = 0
    total_size: int = 0
    processed_size: int = 0
    errors: list[OperationError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ImportResult:
    summary: OperationSummary
    files: list[FileResult] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    attachments: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    config: Optional[BaseModel] = None

    def to_dict(self) -> dict[str, Any]:
        return _result_to_dict(self)


@dataclass(slots=True)
class ExportResult:
    summary: OperationSummary
    output_path: str
    files: list[FileResult] = field(default_factory=list)
    exported: list[str] = field(default_factory=list)
    attachments: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    config: Optional[BaseModel] = None

    def to_dict(self) -> dict[str, Any]:
        return _result_to_dict(self)


@dataclass(slots=True)
class SyncResult:
    summary: OperationSummary
    repository: str
    branch: str
    commit_hash: Optional[str] = None
    files: list[FileResult] = field(default_factory=list)
    imported: list[str] = field(default_factory=list)
    exported: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    config: Optional[BaseModel] = None

    def to_dict(self) -> dict[str, Any]:
        return _result_to_dict(self)


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums, paths and datetimes into JSON-friendly values."""

    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {item.name: to_jsonable(getattr(value, item.name)) for item in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bytes):
        return f"<{len(value)} bytes>"
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(item) for item in value]
    return value


def _result_to_dict(result: Any) -> dict[str, Any]:
    return to_jsonable(result)


# ----------------------------------------------------------------------
# Operation context
# ----------------------------------------------------------------------
@dataclass(slots=True)
class OperationContext:
    """Per-invocation environment threaded through a single operation."""

    operation_id: str
    trilium_url: str
    api_token: str
    working_directory: Path
    temp_directory: Path
    log_level: str = "info"
    events: Optional[ProgressCallback] = None
    started_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        operation: OperationType,
        format: FormatType,
        *,
        trilium_url: str = "",
        api_token: str = "",
        working_directory: Optional[Path] = None,
        log_level: str = "info",
        events: Optional[ProgressCallback] = None,
    ) -> "OperationContext":
        millis = int(time.time() * 1000)
        temp_directory = Path(tempfile.mkdtemp(prefix=f"trilium-{operation.value}-{format.value}-{millis}-"))
        return cls(
            operation_id=f"{operation.value}-{format.value}-{uuid.uuid4().hex[:12]}",
            trilium_url=trilium_url,
            api_token=api_token,
            working_directory=working_directory or Path(os.getcwd()),
            temp_directory=temp_directory,
            log_level=log_level,
            events=events,
        )


# ----------------------------------------------------------------------
# Note repository
# ----------------------------------------------------------------------
class NoteRepository(Protocol):
    """Operations the pipeline needs from the note server."""

    def get_note(self, note_id: str) -> Note: ...

    def get_note_content(self, note_id: str) -> str: ...

    def create_note(
        self,
        *,
        parent_note_id: str,
        title: str,
        type: str = "text",
        content: str = "",
        mime: Optional[str] = None,
    ) -> CreatedNote: ...

    def update_note(self, note_id: str, **changes: object) -> Note: ...

    def update_note_content(self, note_id: str, content: str) -> None: ...

    def delete_note(self, note_id: str) -> None: ...

    def get_attributes(self, note_id: str) -> list[Attribute]: ...

    def create_attribute(
        self,
        *,
        note_id: str,
        type: str,
        name: str,
        value: str = "",
        is_inheritable: bool = False,
    ) -> Attribute: ...

    def get_attachments(self, note_id: str) -> list[Attachment]: ...

    def create_attachment(
        self,
        *,
        owner_id: str,
        title: str,
        mime: str,
        role: str = "file",
        content: str = "",
    ) -> Attachment: ...

    def get_attachment_content(self, attachment_id: str) -> bytes: ...

    def search_notes(self, query: str, *, limit: int = 50, include_archived: bool = False) -> list[Note]: ...


# ----------------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------------
_UNSAFE_PATTERN_TOKENS = ("..", "~", "$")


def _ensure_safe_patterns(value: list[str]) -> list[str]:
    for pattern in value:
        if not pattern or any(token in pattern for token in _UNSAFE_PATTERN_TOKENS):
            raise ValueError(f"unsafe glob pattern {pattern!r}")
    return value


class FormatConfig(BaseModel):
    """Options shared by every format handler."""

    duplicate_handling: DuplicateHandling = Field(
        DuplicateHandling.SKIP, description="Policy for notes that already exist"
    )
    preserve_structure: bool = Field(True, description="Mirror the source hierarchy as parent notes")
    include_attachments: bool = Field(True, description="Import or export attachments")
    validate_content: bool = Field(True, description="Validate content before writing")
    create_missing_parents: bool = Field(True, description="Create folder notes for intermediate directories")
    max_depth: Optional[int] = Field(None, gt=0, description="Maximum traversal depth")
    patterns: list[str] = Field(default_factory=list, description="Glob patterns to include")
    exclude_patterns: list[str] = Field(default_factory=list, description="Glob patterns to exclude")
    dry_run: bool = Field(False, description="Scan or plan only; perform no writes")
    batch_size: int = Field(100, gt=0, description="Items queued on the worker pool ahead of completion")
    timeout: int = Field(30000, gt=0, description="Per-request timeout in milliseconds")
    retries: int = Field(3, ge=0, description="Retries for failed requests")
    concurrency: int = Field(5, ge=1, le=64, description="Worker pool width")
    progress: bool = Field(True, description="Emit progress events")
    parent_note_id: str = Field("root", min_length=1, description="Note that receives imported top-level notes")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("patterns", "exclude_patterns")
    @classmethod
    def _check_patterns(cls, value: list[str]) -> list[str]:
        return _ensure_safe_patterns(value)


class ObsidianConfig(FormatConfig):
    vault_path: Path = Field(..., description="Root directory of the vault")
    preserve_wikilinks: bool = Field(True, description="Write internal links back as [[wikilinks]] on export")
    convert_wikilinks: bool = Field(False, description="Turn [[wikilinks]] into internal note links on import")
    include_templates: bool = False
    templates_folder: str = "templates"
    attachment_folder: str = "attachments"
    daily_notes_folder: str = "daily"
    process_front_matter: bool = True
    preserve_folder_structure: bool = True
    ignore_folders: list[str] = Field(default_factory=lambda: [".obsidian", ".trash"])
    image_formats: list[str] = Field(default_factory=lambda: ["png", "jpg", "jpeg", "gif", "webp", "svg"])
    document_formats: list[str] = Field(default_factory=lambda: ["pdf", "doc", "docx", "odt"])
    audio_formats: list[str] = Field(default_factory=lambda: ["mp3", "wav", "ogg", "m4a"])
    video_formats: list[str] = Field(default_factory=lambda: ["mp4", "webm", "ogv", "mov"])

    @property
    def attachment_formats(self) -> list[str]:
        return self.image_formats + self.document_formats + self.audio_formats + self.video_formats


class AttachmentHandling(str, Enum):
    EMBED = "embed"
    LINK = "link"
    COPY = "copy"


class NotionConfig(FormatConfig):
    zip_path: Optional[Path] = Field(None, description="Page-export archive to import")
    output_path: Optional[Path] = Field(None, description="Directory that receives notion-export.zip")
    workspace_name: Optional[str] = None
    preserve_ids: bool = False
    convert_blocks: bool = True
    include_comments: bool = False
    process_templates: bool = True
    convert_tables: bool = True
    process_callouts: bool = True
    attachment_handling: AttachmentHandling = AttachmentHandling.COPY


class DirectoryConfig(FormatConfig):
    source_path: Optional[Path] = Field(None, description="Directory to import")
    output_path: Optional[Path] = Field(None, description="Directory that receives exported files")
    file_patterns: list[str] = Field(default_factory=lambda: ["**/*.md", "**/*.txt", "**/*.html"])
    ignore_patterns: list[str] = Field(default_factory=lambda: ["**/node_modules/**", "**/.git/**"])
    detect_format: bool = True
    preserve_extensions: bool = True
    create_index: bool = False
    index_file_name: str = "index.md"

    @field_validator("file_patterns", "ignore_patterns")
    @classmethod
    def _check_file_patterns(cls, value: list[str]) -> list[str]:
        return _ensure_safe_patterns(value)


class SyncDirection(str, Enum):
    IMPORT = "import"
    EXPORT = "export"
    BIDIRECTIONAL = "bidirectional"


class ConflictResolution(str, Enum):
    MANUAL = "manual"
    LOCAL = "local"
    REMOTE = "remote"
    MERGE = "merge"


class GitConfig(FormatConfig):
    repository_path: Path = Field(..., description="Working tree of a git checkout")
    branch: str = Field("main", min_length=1)
    remote: str = Field("origin", min_length=1)
    commit_message: Optional[str] = None
    author_name: Optional[str] = None
    author_email: Optional[str] = None
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    conflict_resolution: ConflictResolution = ConflictResolution.MANUAL
    track_changes: bool = True
    include_history: bool = False
    push_after_export: bool = False
    pull_before_import: bool = True
    export_note_ids: list[str] = Field(default_factory=list, description="Roots exported during sync")


ConfigT = TypeVar("ConfigT", bound=FormatConfig)


def validate_config(model: type[ConfigT], raw: Any, *, format: Optional[FormatType] = None) -> ConfigT:
    """Coerce ``raw`` into ``model``, raising ``INVALID_CONFIG`` on schema violations."""

    try:
        if isinstance(raw, model):
            return model.model_validate(raw.model_dump())
        if isinstance(raw, BaseModel):
            raw = raw.model_dump()
        return model.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        field_name = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ImportExportError(
            f"Invalid configuration: {first.get('msg', str(exc))}" + (f" ({field_name})" if field_name else ""),
            "INVALID_CONFIG",
            {"field": field_name, "errors": to_jsonable(exc.errors(include_url=False, include_context=False))},
            format=format,
        ) from exc
