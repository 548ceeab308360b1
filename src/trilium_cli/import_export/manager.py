"""Entry point that resolves a format handler and runs one operation end to end."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence

from .converters import ContentConverter
from .dependencies import Capabilities, resolve_capabilities
from .formats.base import BaseHandler
from .formats.directory import DirectoryExportHandler, DirectoryImportHandler
from .formats.git import GitSyncHandler
from .formats.notion import NotionExportHandler, NotionImportHandler
from .formats.obsidian import ObsidianExportHandler, ObsidianImportHandler
from .types import (
    ExportResult,
    FileInfo,
    FormatType,
    ImportExportError,
    ImportResult,
    NoteRepository,
    OperationContext,
    OperationType,
    ProgressCallback,
    SyncResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FormatHandlers:
    importer: Optional[type[BaseHandler]] = None
    exporter: Optional[type[BaseHandler]] = None
    syncer: Optional[type[BaseHandler]] = None


HANDLERS: dict[FormatType, FormatHandlers] = {
    FormatType.OBSIDIAN: FormatHandlers(importer=ObsidianImportHandler, exporter=ObsidianExportHandler),
    FormatType.NOTION: FormatHandlers(importer=NotionImportHandler, exporter=NotionExportHandler),
    FormatType.DIRECTORY: FormatHandlers(importer=DirectoryImportHandler, exporter=DirectoryExportHandler),
    FormatType.GIT: FormatHandlers(syncer=GitSyncHandler),
}


def _format_type(format: FormatType | str, operation: OperationType) -> FormatType:
    try:
        return FormatType(format)
    except ValueError as exc:
        raise ImportExportError(
            f"No {operation.value} handler found for format: {format}",
            "HANDLER_NOT_FOUND",
            {"format": str(format), "operation": operation.value},
            operation=operation,
        ) from exc


class ImportExportManager:
    """Run imports, exports and syncs against a note repository.

    Every call resolves its handler from the static registry, validates the
    configuration before touching the filesystem or the server, builds a
    fresh ``OperationContext`` and removes the context's temp directory when
    the call returns.
    """

    def __init__(
        self,
        client: NoteRepository,
        *,
        trilium_url: str = "",
        api_token: str = "",
        working_directory: Optional[Path] = None,
        capabilities: Optional[Capabilities] = None,
        events: Optional[ProgressCallback] = None,
        log_level: str = "info",
        handler_options: Optional[dict[FormatType, dict[str, Any]]] = None,
    ) -> None:
        self.client = client
        self.trilium_url = trilium_url
        self.api_token = api_token
        self.working_directory = working_directory or Path.cwd()
        self.capabilities = capabilities or resolve_capabilities()
        self.converter = ContentConverter()
        self.events = events
        self.log_level = log_level
        self.handler_options = handler_options or {}

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    def list_import_formats(self) -> list[FormatType]:
        return [format for format, handlers in HANDLERS.items() if handlers.importer]

    def list_export_formats(self) -> list[FormatType]:
        return [format for format, handlers in HANDLERS.items() if handlers.exporter]

    def list_sync_formats(self) -> list[FormatType]:
        return [format for format, handlers in HANDLERS.items() if handlers.syncer]

    def handler(self, format: FormatType | str, operation: OperationType) -> BaseHandler:
        """Instantiate a fresh handler so each operation owns its error collector."""

        format_type = _format_type(format, operation)
        handlers = HANDLERS.get(format_type, FormatHandlers())
        handler_class = {
            OperationType.IMPORT: handlers.importer,
            OperationType.EXPORT: handlers.exporter,
            OperationType.SYNC: handlers.syncer,
        }[operation]
        if handler_class is None:
            raise ImportExportError(
                f"No {operation.value} handler found for format: {format_type.value}",
                "HANDLER_NOT_FOUND",
                {"format": format_type.value, "operation": operation.value},
                operation=operation,
                format=format_type,
            )
        return handler_class(
            self.client,
            capabilities=self.capabilities,
            converter=self.converter,
            **self.handler_options.get(format_type, {}),
        )

    def _context(self, operation: OperationType, format: FormatType) -> OperationContext:
        return OperationContext.create(
            operation,
            format,
            trilium_url=self.trilium_url,
            api_token=self.api_token,
            working_directory=self.working_directory,
            log_level=self.log_level,
            events=self.events,
        )

    @staticmethod
    def _cleanup(context: OperationContext) -> None:
        if context.temp_directory.exists():
            shutil.rmtree(context.temp_directory, ignore_errors=True)
            logger.debug(f"Removed temp directory {context.temp_directory}")

    # ------------------------------------------------------------------
    # Generic operations
    # ------------------------------------------------------------------
    def run_import(self, format: FormatType | str, config: Any) -> ImportResult:
        handler = self.handler(format, OperationType.IMPORT)
        validated = handler.validate(config)
        context = self._context(OperationType.IMPORT, handler.format)
        logger.info(f"Starting {handler.format.value} import ({context.operation_id})")
        try:
            files = handler.scan(validated, context)
            result = handler.import_files(files, validated, context)
        finally:
            self._cleanup(context)
        logger.info(
            f"Finished {handler.format.value} import: {result.summary.successful_files} succeeded, "
            f"{result.summary.failed_files} failed, {result.summary.skipped_files} skipped"
        )
        return result

    def run_export(self, format: FormatType | str, note_ids: Sequence[str], config: Any) -> ExportResult:
        handler = self.handler(format, OperationType.EXPORT)
        validated = handler.validate(config)
        context = self._context(OperationType.EXPORT, handler.format)
        logger.info(f"Starting {handler.format.value} export of {len(note_ids)} note(s) ({context.operation_id})")
        try:
            files = handler.plan(list(note_ids), validated, context)
            result = handler.export_notes(files, validated, context)
        finally:
            self._cleanup(context)
        logger.info(f"Finished {handler.format.value} export to {result.output_path}")
        return result

    def run_sync(self, format: FormatType | str, config: Any) -> SyncResult:
        handler = self.handler(format, OperationType.SYNC)
        validated = handler.validate(config)
        context = self._context(OperationType.SYNC, handler.format)
        logger.info(f"Starting {handler.format.value} sync ({context.operation_id})")
        try:
            result = handler.sync(validated, context)
        finally:
            self._cleanup(context)
        logger.info(f"Finished {handler.format.value} sync on branch {result.branch}")
        return result

    def scan(self, format: FormatType | str, config: Any) -> list[FileInfo]:
        """Preview the files an import would process without changing anything."""

        handler = self.handler(format, OperationType.IMPORT)
        validated = handler.validate(config)
        context = self._context(OperationType.IMPORT, handler.format)
        try:
            return handler.scan(validated, context)
        finally:
            self._cleanup(context)

    def plan_export(self, format: FormatType | str, note_ids: Sequence[str], config: Any) -> list[FileInfo]:
        handler = self.handler(format, OperationType.EXPORT)
        validated = handler.validate(config)
        context = self._context(OperationType.EXPORT, handler.format)
        try:
            return handler.plan(list(note_ids), validated, context)
        finally:
            self._cleanup(context)

    # ------------------------------------------------------------------
    # Per-format shortcuts
    # ------------------------------------------------------------------
    def import_obsidian(self, config: Any) -> ImportResult:
        return self.run_import(FormatType.OBSIDIAN, config)

    def export_obsidian(self, note_ids: Sequence[str], config: Any) -> ExportResult:
        return self.run_export(FormatType.OBSIDIAN, note_ids, config)

    def import_notion(self, config: Any) -> ImportResult:
        return self.run_import(FormatType.NOTION, config)

    def export_notion(self, note_ids: Sequence[str], config: Any) -> ExportResult:
        return self.run_export(FormatType.NOTION, note_ids, config)

    def import_directory(self, config: Any) -> ImportResult:
        return self.run_import(FormatType.DIRECTORY, config)

    def export_directory(self, note_ids: Sequence[str], config: Any) -> ExportResult:
        return self.run_export(FormatType.DIRECTORY, note_ids, config)

    def sync_git(self, config: Any) -> SyncResult:
        return self.run_sync(FormatType.GIT, config)
