"""Filesystem scanning, file IO and batching helpers shared by the format handlers."""

from __future__ import annotations

import hashlib
import logging
import mimetypes
import os
import re
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, Optional, Sequence, TypeVar

from .progress import ErrorCollector
from .secure_path import SecurePathResolver, validate_file_size
from .types import ContentType, FileInfo, ImportExportError

logger = logging.getLogger(__name__)

MAX_SCAN_FILE_SIZE = 500 * 1024 * 1024
MAX_TEXT_FILE_SIZE = 100 * 1024 * 1024
DEFAULT_SCAN_DEPTH = 10

T = TypeVar("T")
R = TypeVar("R")

MARKDOWN_EXTENSIONS = {"md", "markdown", "mdown", "mkd"}
HTML_EXTENSIONS = {"html", "htm"}
JSON_EXTENSIONS = {"json", "jsonl"}
TEXT_EXTENSIONS = {"txt", "text"}
DOCUMENT_MIME_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.oasis.opendocument.text",
}


# ----------------------------------------------------------------------
# Glob matching
# ----------------------------------------------------------------------
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a ``**``-aware glob into a regular expression over POSIX paths."""

    index = 0
    parts: list[str] = []
    while index < len(pattern):
        char = pattern[index]
        if pattern.startswith("**/", index):
            parts.append("(?:.*/)?")
            index += 3
            continue
        if pattern.startswith("**", index):
            parts.append(".*")
            index += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        elif char == "{" and "}" in pattern[index:]:
            end = pattern.index("}", index)
            options = pattern[index + 1 : end].split(",")
            parts.append("(?:" + "|".join(re.escape(option) for option in options) + ")")
            index = end
        else:
            parts.append(re.escape(char))
        index += 1
    return re.compile("^" + "".join(parts) + "$")


def matches_any(relative_path: str, patterns: Iterable[str]) -> bool:
    return any(glob_to_regex(pattern).match(relative_path) for pattern in patterns)


# ----------------------------------------------------------------------
# Scanning
# ----------------------------------------------------------------------
def guess_mime_type(name: str) -> Optional[str]:
    mime, _ = mimetypes.guess_type(name)
    if mime is None and Path(name).suffix.lower() in {".md", ".markdown", ".mdown", ".mkd"}:
        return "text/markdown"
    return mime


def build_file_info(
    root: Path,
    full_path: Path,
    *,
    size: Optional[int] = None,
    relative: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> FileInfo:
    relative = relative or full_path.relative_to(root).as_posix()
    stat = full_path.stat()
    return FileInfo(
        path=relative,
        full_path=str(full_path),
        relative_path=relative,
        name=full_path.name,
        extension=full_path.suffix.lower().lstrip("."),
        size=stat.st_size if size is None else size,
        mime_type=guess_mime_type(full_path.name),
        last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        depth=len(PurePosixPath(relative).parts) - 1,
        metadata=dict(metadata or {}),
    )


def scan_files(
    root: Path,
    *,
    patterns: Sequence[str] = ("**/*",),
    exclude_patterns: Sequence[str] = (),
    max_depth: int = DEFAULT_SCAN_DEPTH,
    include_hidden: bool = False,
    follow_symlinks: bool = False,
    errors: Optional[ErrorCollector] = None,
) -> list[FileInfo]:
    """Enumerate files under ``root`` matching ``patterns``.

    Read-only and deterministic: results are sorted by relative path. Files
    that cannot be confined under ``root``, exceed the size limit or sit
    deeper than ``max_depth`` are skipped with a warning.
    """

    def _warn(message: str) -> None:
        if errors is not None:
            errors.add_warning(message)
        else:
            logger.warning(message)

    safe_patterns = []
    for pattern in patterns:
        if any(token in pattern for token in ("..", "~", "$")):
            _warn(f"Skipping potentially dangerous pattern: {pattern}")
            continue
        safe_patterns.append(pattern)

    resolver = SecurePathResolver(root, max_depth=max_depth + 1)
    root = resolver.base
    files: list[FileInfo] = []

    for current, directories, filenames in os.walk(root, followlinks=follow_symlinks):
        current_path = Path(current)
        relative_dir = current_path.relative_to(root)
        dir_depth = len(relative_dir.parts)
        directories[:] = sorted(
            name
            for name in directories
            if (include_hidden or not name.startswith("."))
            and dir_depth < max_depth
            and not matches_any((relative_dir / name).as_posix() + "/", exclude_patterns)
        )
        for filename in sorted(filenames):
            if not include_hidden and filename.startswith("."):
                continue
            relative = (relative_dir / filename).as_posix()
            if not matches_any(relative, safe_patterns) or matches_any(relative, exclude_patterns):
                continue
            candidate = current_path / filename
            if candidate.is_symlink() and not follow_symlinks:
                continue
            try:
                full_path = resolver.resolve(relative)
                if not full_path.is_file():
                    continue
                size = validate_file_size(full_path, max_size=MAX_SCAN_FILE_SIZE)
                info = build_file_info(root, full_path, size=size, relative=relative)
            except (ImportExportError, OSError) as exc:
                _warn(f"Could not process file {relative}: {exc}")
                continue
            if info.depth > max_depth:
                _warn(f"File depth exceeds limit: {relative}")
                continue
            files.append(info)

    return sorted(files, key=lambda item: item.path)


# ----------------------------------------------------------------------
# File IO
# ----------------------------------------------------------------------
def calculate_checksum(path: Path) -> str:
    digest = hashlib.sha256()
    try:
        with Path(path).open("rb") as handle:
            for chunk in iter(lambda: handle.read(1024 * 1024), b""):
                digest.update(chunk)
    except OSError as exc:
        raise ImportExportError(
            f"Failed to calculate checksum for {path}",
            "CHECKSUM_ERROR",
            {"path": str(path), "error": str(exc)},
        ) from exc
    return digest.hexdigest()


def ensure_directory(path: Path) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ImportExportError(
            f"Failed to create directory: {path}",
            "DIRECTORY_CREATE_ERROR",
            {"path": str(path), "error": str(exc)},
        ) from exc
    return path


def read_text_file(path: Path, *, max_size: int = MAX_TEXT_FILE_SIZE) -> str:
    path = Path(path)
    validate_file_size(path, max_size=max_size)
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ImportExportError(
            f"Failed to read file: {path}",
            "FILE_READ_ERROR",
            {"path": str(path), "error": str(exc)},
        ) from exc


def read_binary_file(path: Path, *, max_size: int = MAX_SCAN_FILE_SIZE) -> bytes:
    path = Path(path)
    validate_file_size(path, max_size=max_size)
    try:
        return path.read_bytes()
    except OSError as exc:
        raise ImportExportError(
            f"Failed to read file: {path}",
            "FILE_READ_ERROR",
            {"path": str(path), "error": str(exc)},
        ) from exc


def write_text_file(path: Path, content: str) -> int:
    data = content.encode("utf-8")
    return write_binary_file(path, data)


def write_binary_file(path: Path, data: bytes) -> int:
    if len(data) > MAX_TEXT_FILE_SIZE:
        raise ImportExportError(
            f"Content too large: {len(data)} bytes",
            "CONTENT_TOO_LARGE",
            {"path": str(path), "size": len(data), "max_size": MAX_TEXT_FILE_SIZE},
        )
    ensure_directory(path.parent)
    try:
        path.write_bytes(data)
    except OSError as exc:
        raise ImportExportError(
            f"Failed to write file: {path}",
            "FILE_WRITE_ERROR",
            {"path": str(path), "error": str(exc)},
        ) from exc
    return len(data)


def format_file_size(size: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    return f"{value:.2f} {units[unit]}"


def detect_content_type(file: FileInfo) -> ContentType:
    extension = file.extension.lower()
    if extension in MARKDOWN_EXTENSIONS:
        return ContentType.MARKDOWN
    if extension in HTML_EXTENSIONS:
        return ContentType.HTML
    if extension in JSON_EXTENSIONS:
        return ContentType.JSON
    if extension in TEXT_EXTENSIONS:
        return ContentType.TEXT
    mime = file.mime_type or ""
    if mime.startswith("image/"):
        return ContentType.IMAGE
    if mime in DOCUMENT_MIME_TYPES:
        return ContentType.DOCUMENT
    return ContentType.TEXT


# ----------------------------------------------------------------------
# Batching
# ----------------------------------------------------------------------
def process_batch(
    items: Iterable[T],
    processor: Callable[[T], R],
    *,
    concurrency: int = 5,
    batch_size: int = 100,
    on_progress: Optional[Callable[[int, int], None]] = None,
    on_error: Optional[Callable[[T, Exception], R]] = None,
) -> list[R]:
    """Run ``processor`` over ``items`` on a pool of ``concurrency`` workers.

    Results are returned in input order. ``batch_size`` caps how many items are
    queued on the pool ahead of completion. When ``on_error`` is given, an
    exception raised for one item is converted into that item's result and
    siblings keep running; otherwise the first failure propagates.
    """

    materialized = list(items)
    total = len(materialized)
    results: list[Optional[R]] = [None] * total
    completed = 0

    def _run(item: T) -> R:
        try:
            return processor(item)
        except Exception as exc:
            if on_error is None:
                raise
            return on_error(item, exc)

    def _collect(index: int, value: R) -> None:
        nonlocal completed
        results[index] = value
        completed += 1
        if on_progress is not None:
            on_progress(completed, total)

    if concurrency <= 1 or total <= 1:
        for index, item in enumerate(materialized):
            _collect(index, _run(item))
        return results  # type: ignore[return-value]

    window = max(batch_size, concurrency)
    pending: dict[Future, int] = {}
    with ThreadPoolExecutor(max_workers=min(concurrency, total), thread_name_prefix="import-export") as pool:
        for index, item in enumerate(materialized):
            pending[pool.submit(_run, item)] = index
            if len(pending) >= window:
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    _collect(pending.pop(future), future.result())
        while pending:
            done, _ = wait(pending, return_when=FIRST_COMPLETED)
            for future in done:
                _collect(pending.pop(future), future.result())
    return results  # type: ignore[return-value]
