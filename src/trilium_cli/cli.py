"""Command-line interface for importing, exporting and syncing Trilium notes."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TaskProgressColumn, TextColumn
from rich.table import Table

from .config import TriliumConfig, ensure_config
from .etapi.client import create_client
from .import_export.manager import HANDLERS, ImportExportManager
from .import_export.types import (
    ConflictResolution,
    DuplicateHandling,
    ExportResult,
    FileInfo,
    FormatType,
    ImportExportError,
    ImportResult,
    ProgressEvent,
    ProgressEventType,
    SyncDirection,
    SyncResult,
)

app = typer.Typer(help="Import, export and sync Trilium notes with Obsidian, Notion, folders and git.")
import_app = typer.Typer(help="Import external content into Trilium.")
export_app = typer.Typer(help="Export Trilium notes to external formats.")
sync_app = typer.Typer(help="Synchronize Trilium notes with external stores.")
app.add_typer(import_app, name="import")
app.add_typer(export_app, name="export")
app.add_typer(sync_app, name="sync")

console = Console()
err_console = Console(stderr=True)
logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

SCAN_PATH_FIELDS = {
    FormatType.OBSIDIAN: "vault_path",
    FormatType.NOTION: "zip_path",
    FormatType.DIRECTORY: "source_path",
}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=LOG_LEVELS.get(level, logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


class ProgressDisplay:
    """Sink progress events into a rich progress bar and the log."""

    def __init__(self, output: Console) -> None:
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=output,
            transient=True,
        )
        self._tasks: dict[str, TaskID] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> "ProgressDisplay":
        self.progress.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.progress.stop()

    def __call__(self, event: ProgressEvent) -> None:
        if event.type == ProgressEventType.ERROR:
            logger.warning(f"{event.id}: {event.message}")
        else:
            logger.debug(f"{event.id}: {event.type.value} {event.message}")
        with self._lock:
            task = self._tasks.get(event.id)
            if task is None:
                task = self.progress.add_task(event.message or event.id, total=event.total or None)
                self._tasks[event.id] = task
        self.progress.update(
            task,
            description=event.message or event.id,
            completed=event.current or 0,
            total=event.total or None,
        )


# ----------------------------------------------------------------------
# Shared plumbing
# ----------------------------------------------------------------------
@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to a configuration TOML file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="One of error, warn, info or debug"),
    server: Optional[str] = typer.Option(None, "--server", help="Base URL of the Trilium server"),
    token: Optional[str] = typer.Option(None, "--token", help="ETAPI token"),
    json_output: bool = typer.Option(False, "--json", help="Print results as JSON"),
) -> None:
    if log_level and log_level not in LOG_LEVELS:
        raise typer.BadParameter(f"Unknown log level {log_level!r}", param_hint="--log-level")
    ctx.obj = {
        "config_path": config_path,
        "log_level": log_level,
        "server": server,
        "token": token,
        "json": json_output,
    }


def _resolve_config(ctx: typer.Context) -> TriliumConfig:
    options = ctx.obj or {}
    config = ensure_config(
        base_url=options.get("server"),
        api_token=options.get("token"),
        log_level=options.get("log_level"),
        config_path=options.get("config_path"),
    )
    configure_logging(config.defaults.log_level)
    return config


def _build_manager(
    ctx: typer.Context,
    *,
    events: Optional[Callable[[ProgressEvent], None]] = None,
) -> tuple[ImportExportManager, TriliumConfig, Callable[[], None]]:
    config = _resolve_config(ctx)
    client = create_client(base_url=str(config.credentials.base_url), api_token=config.credentials.api_token)
    manager = ImportExportManager(
        client,
        trilium_url=str(config.credentials.base_url),
        api_token=config.credentials.api_token,
        events=events,
        log_level=config.defaults.log_level,
    )

    def _cleanup() -> None:
        client.close()

    return manager, config, _cleanup


def _common_options(
    config: TriliumConfig,
    *,
    dry_run: bool,
    concurrency: Optional[int],
    include: Optional[list[str]],
    exclude: Optional[list[str]],
    duplicate: DuplicateHandling = DuplicateHandling.SKIP,
    parent_note_id: Optional[str] = None,
) -> dict[str, Any]:
    return {
        "dry_run": dry_run,
        "duplicate_handling": duplicate,
        "concurrency": concurrency or config.defaults.concurrency,
        "batch_size": config.defaults.batch_size,
        "parent_note_id": parent_note_id or config.defaults.parent_note_id,
        "patterns": include or [],
        "exclude_patterns": exclude or [],
    }


def _execute(ctx: typer.Context, operation: Callable[[ImportExportManager, TriliumConfig], Any]) -> None:
    json_output = bool((ctx.obj or {}).get("json"))
    try:
        with ProgressDisplay(err_console) as display:
            manager, config, cleanup = _build_manager(ctx, events=display)
            try:
                result = operation(manager, config)
            finally:
                cleanup()
    except ImportExportError as exc:
        err_console.print(f"[red]Error ({exc.code}):[/red] {exc}")
        raise typer.Exit(code=1) from exc
    except RuntimeError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    _report(result, json_output=json_output)


def _summary_table(title: str, rows: list[tuple[str, Any]]) -> Table:
    table = Table(title=title)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for name, value in rows:
        table.add_row(name, str(value))
    return table


def _report(result: ImportResult | ExportResult | SyncResult, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=result.to_dict())
        return

    summary = result.summary
    rows: list[tuple[str, Any]] = [
        ("Total files", summary.total_files),
        ("Succeeded", summary.successful_files),
        ("Failed", summary.failed_files),
        ("Skipped", summary.skipped_files),
        ("Duration (ms)", round(summary.duration)),
    ]
    if isinstance(result, ImportResult):
        rows += [("Created notes", len(result.created)), ("Updated notes", len(result.updated))]
        rows.append(("Attachments", len(result.attachments)))
    elif isinstance(result, ExportResult):
        rows += [("Exported files", len(result.exported)), ("Output", result.output_path)]
    else:
        rows += [
            ("Imported", len(result.imported)),
            ("Exported", len(result.exported)),
            ("Conflicts", len(result.conflicts)),
            ("Branch", result.branch),
            ("Commit", result.commit_hash or "-"),
        ]
    title = f"{summary.format.value.title()} {summary.operation.value.title()} Summary"
    console.print(_summary_table(title, rows))

    for error in summary.errors:
        path = error.details.get("path", "")
        console.print(f"[red]{error.code}[/red] {path} {error.message}".rstrip())
    for warning in result.warnings:
        console.print(f"[yellow]warning[/yellow] {warning}")


def _print_files(files: list[FileInfo], *, title: str, json_output: bool) -> None:
    if json_output:
        console.print_json(data=[{"path": file.path, "size": file.size, "depth": file.depth} for file in files])
        return
    table = Table(title=title)
    table.add_column("Path")
    table.add_column("Depth", justify="right")
    table.add_column("Size", justify="right")
    for file in files:
        table.add_row(file.path, str(file.depth), str(file.size))
    console.print(table)


# ----------------------------------------------------------------------
# Discovery
# ----------------------------------------------------------------------
@app.command()
def formats() -> None:
    """List the formats available for import, export and sync."""

    table = Table(title="Supported Formats")
    table.add_column("Format")
    table.add_column("Import")
    table.add_column("Export")
    table.add_column("Sync")
    for format, handlers in HANDLERS.items():
        table.add_row(
            format.value,
            "yes" if handlers.importer else "-",
            "yes" if handlers.exporter else "-",
            "yes" if handlers.syncer else "-",
        )
    console.print(table)


@app.command()
def scan(
    ctx: typer.Context,
    format: FormatType = typer.Argument(..., help="Import format to scan for"),
    path: Path = typer.Argument(..., help="Vault, archive or directory to scan"),
    include: Optional[list[str]] = typer.Option(None, "--include", help="Glob pattern to include"),
    exclude: Optional[list[str]] = typer.Option(None, "--exclude", help="Glob pattern to exclude"),
) -> None:
    """Preview the files an import would process without contacting the server."""

    options = ctx.obj or {}
    configure_logging(options.get("log_level") or "info")
    field_name = SCAN_PATH_FIELDS.get(format)
    if field_name is None:
        raise typer.BadParameter(f"{format.value} has no import scanner", param_hint="FORMAT")

    # Scanning reads local files only.
    manager = ImportExportManager(None, log_level=options.get("log_level") or "info")  # type: ignore[arg-type]
    try:
        files = manager.scan(format, {field_name: path, "patterns": include or [], "exclude_patterns": exclude or []})
    except ImportExportError as exc:
        err_console.print(f"[red]Error ({exc.code}):[/red] {exc}")
        raise typer.Exit(code=1) from exc
    _print_files(files, title=f"{format.value.title()} Scan", json_output=bool(options.get("json")))


@app.command()
def plan(
    ctx: typer.Context,
    format: FormatType = typer.Argument(..., help="Export format to plan"),
    note_ids: list[str] = typer.Argument(..., help="Root note IDs to export"),
    output: Path = typer.Option(Path.cwd(), "--output", "-o", help="Export destination"),
) -> None:
    """Show the files an export would write without writing them."""

    options = ctx.obj or {}
    try:
        manager, _, cleanup = _build_manager(ctx)
        try:
            config_key = "vault_path" if format == FormatType.OBSIDIAN else "output_path"
            files = manager.plan_export(format, note_ids, {config_key: output})
        finally:
            cleanup()
    except ImportExportError as exc:
        err_console.print(f"[red]Error ({exc.code}):[/red] {exc}")
        raise typer.Exit(code=1) from exc
    except RuntimeError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    _print_files(files, title=f"{format.value.title()} Export Plan", json_output=bool(options.get("json")))


# ----------------------------------------------------------------------
# Import
# ----------------------------------------------------------------------
@import_app.command("obsidian")
def import_obsidian(
    ctx: typer.Context,
    vault: Path = typer.Argument(..., help="Obsidian vault directory"),
    parent_id: Optional[str] = typer.Option(None, "--parent-id", help="Note that receives the imported tree"),
    duplicate: DuplicateHandling = typer.Option(DuplicateHandling.SKIP, "--duplicate", help="Policy for existing notes"),
    convert_wikilinks: bool = typer.Option(False, "--convert-wikilinks", help="Turn [[links]] into note links"),
    include_templates: bool = typer.Option(False, "--include-templates", help="Import the templates folder"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Worker pool size"),
    include: Optional[list[str]] = typer.Option(None, "--include", help="Glob pattern to include"),
    exclude: Optional[list[str]] = typer.Option(None, "--exclude", help="Glob pattern to exclude"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Scan only; create nothing"),
) -> None:
    """Import an Obsidian vault."""

    def _operation(manager: ImportExportManager, config: TriliumConfig) -> ImportResult:
        options = _common_options(
            config,
            dry_run=dry_run,
            concurrency=concurrency,
            include=include,
            exclude=exclude,
            duplicate=duplicate,
            parent_note_id=parent_id,
        )
        return manager.import_obsidian(
            {
                **options,
                "vault_path": vault,
                "convert_wikilinks": convert_wikilinks,
                "include_templates": include_templates,
            }
        )

    _execute(ctx, _operation)


@import_app.command("notion")
def import_notion(
    ctx: typer.Context,
    archive: Path = typer.Argument(..., help="Notion page-export zip archive"),
    parent_id: Optional[str] = typer.Option(None, "--parent-id", help="Note that receives the imported tree"),
    duplicate: DuplicateHandling = typer.Option(DuplicateHandling.SKIP, "--duplicate", help="Policy for existing notes"),
    preserve_ids: bool = typer.Option(False, "--preserve-ids", help="Record Notion page IDs as labels"),
    raw: bool = typer.Option(False, "--raw", help="Keep page bodies without block conversion"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Worker pool size"),
    include: Optional[list[str]] = typer.Option(None, "--include", help="Glob pattern to include"),
    exclude: Optional[list[str]] = typer.Option(None, "--exclude", help="Glob pattern to exclude"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Scan only; create nothing"),
) -> None:
    """Import a Notion page-export archive."""

    def _operation(manager: ImportExportManager, config: TriliumConfig) -> ImportResult:
        options = _common_options(
            config,
            dry_run=dry_run,
            concurrency=concurrency,
            include=include,
            exclude=exclude,
            duplicate=duplicate,
            parent_note_id=parent_id,
        )
        return manager.import_notion(
            {**options, "zip_path": archive, "preserve_ids": preserve_ids, "convert_blocks": not raw}
        )

    _execute(ctx, _operation)


@import_app.command("directory")
def import_directory(
    ctx: typer.Context,
    source: Path = typer.Argument(..., help="Directory to import"),
    parent_id: Optional[str] = typer.Option(None, "--parent-id", help="Note that receives the imported tree"),
    duplicate: DuplicateHandling = typer.Option(DuplicateHandling.SKIP, "--duplicate", help="Policy for existing notes"),
    create_index: bool = typer.Option(False, "--index", help="Create an index note summarizing the import"),
    flat: bool = typer.Option(False, "--flat", help="Do not mirror subdirectories as folder notes"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Worker pool size"),
    include: Optional[list[str]] = typer.Option(None, "--include", help="Glob pattern to include"),
    exclude: Optional[list[str]] = typer.Option(None, "--exclude", help="Glob pattern to exclude"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Scan only; create nothing"),
) -> None:
    """Import a plain directory tree."""

    def _operation(manager: ImportExportManager, config: TriliumConfig) -> ImportResult:
        options = _common_options(
            config,
            dry_run=dry_run,
            concurrency=concurrency,
            include=include,
            exclude=exclude,
            duplicate=duplicate,
            parent_note_id=parent_id,
        )
        return manager.import_directory(
            {**options, "source_path": source, "create_index": create_index, "preserve_structure": not flat}
        )

    _execute(ctx, _operation)


# ----------------------------------------------------------------------
# Export
# ----------------------------------------------------------------------
@export_app.command("obsidian")
def export_obsidian(
    ctx: typer.Context,
    note_ids: list[str] = typer.Argument(..., help="Root note IDs to export"),
    vault: Path = typer.Option(..., "--vault", "-o", help="Destination vault directory"),
    markdown_links: bool = typer.Option(False, "--markdown-links", help="Write markdown links instead of [[links]]"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Worker pool size"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Plan only; write nothing"),
) -> None:
    """Export notes into an Obsidian vault."""

    def _operation(manager: ImportExportManager, config: TriliumConfig) -> ExportResult:
        options = _common_options(config, dry_run=dry_run, concurrency=concurrency, include=None, exclude=None)
        return manager.export_obsidian(
            note_ids, {**options, "vault_path": vault, "preserve_wikilinks": not markdown_links}
        )

    _execute(ctx, _operation)


@export_app.command("notion")
def export_notion(
    ctx: typer.Context,
    note_ids: list[str] = typer.Argument(..., help="Root note IDs to export"),
    output: Path = typer.Option(..., "--output", "-o", help="Directory that receives notion-export.zip"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Worker pool size"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Plan only; write nothing"),
) -> None:
    """Export notes as a Notion-compatible markdown archive."""

    def _operation(manager: ImportExportManager, config: TriliumConfig) -> ExportResult:
        options = _common_options(config, dry_run=dry_run, concurrency=concurrency, include=None, exclude=None)
        return manager.export_notion(note_ids, {**options, "output_path": output})

    _execute(ctx, _operation)


@export_app.command("directory")
def export_directory(
    ctx: typer.Context,
    note_ids: list[str] = typer.Argument(..., help="Root note IDs to export"),
    output: Path = typer.Option(..., "--output", "-o", help="Destination directory"),
    create_index: bool = typer.Option(False, "--index", help="Write an index file listing exported notes"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Worker pool size"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Plan only; write nothing"),
) -> None:
    """Export notes into a plain directory tree."""

    def _operation(manager: ImportExportManager, config: TriliumConfig) -> ExportResult:
        options = _common_options(config, dry_run=dry_run, concurrency=concurrency, include=None, exclude=None)
        return manager.export_directory(note_ids, {**options, "output_path": output, "create_index": create_index})

    _execute(ctx, _operation)


# ----------------------------------------------------------------------
# Sync
# ----------------------------------------------------------------------
@sync_app.command("git")
def sync_git(
    ctx: typer.Context,
    repository: Path = typer.Argument(..., help="Working tree of a git checkout"),
    branch: str = typer.Option("main", "--branch", "-b", help="Branch to sync"),
    remote: str = typer.Option("origin", "--remote", help="Remote used for pull and push"),
    direction: SyncDirection = typer.Option(SyncDirection.BIDIRECTIONAL, "--direction", help="Sync direction"),
    conflict: ConflictResolution = typer.Option(
        ConflictResolution.MANUAL, "--conflict", help="How to treat files changed on both sides"
    ),
    export_note_ids: Optional[list[str]] = typer.Option(None, "--note", help="Note ID to export during sync"),
    commit_message: Optional[str] = typer.Option(None, "--message", "-m", help="Commit message"),
    author_name: Optional[str] = typer.Option(None, "--author-name", help="Commit author name"),
    author_email: Optional[str] = typer.Option(None, "--author-email", help="Commit author email"),
    no_pull: bool = typer.Option(False, "--no-pull", help="Skip pulling before import"),
    push: bool = typer.Option(False, "--push", help="Push after committing exported notes"),
    parent_id: Optional[str] = typer.Option(None, "--parent-id", help="Note that receives imported files"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report only; change nothing"),
) -> None:
    """Synchronize notes with a git repository."""

    def _operation(manager: ImportExportManager, config: TriliumConfig) -> SyncResult:
        options = _common_options(
            config,
            dry_run=dry_run,
            concurrency=None,
            include=None,
            exclude=None,
            parent_note_id=parent_id,
        )
        return manager.sync_git(
            {
                **options,
                "repository_path": repository,
                "branch": branch,
                "remote": remote,
                "sync_direction": direction,
                "conflict_resolution": conflict,
                "export_note_ids": export_note_ids or [],
                "commit_message": commit_message,
                "author_name": author_name,
                "author_email": author_email,
                "pull_before_import": not no_pull,
                "push_after_export": push,
            }
        )

    _execute(ctx, _operation)


def run() -> None:
    """Entry point for console scripts."""

    app()


if __name__ == "__main__":  # pragma: no cover
    run()
