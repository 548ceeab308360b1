"""Confinement of filesystem paths used during scan, import and export."""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional

from .types import ImportExportError

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10
DEFAULT_MAX_FILE_SIZE = 100 * 1024 * 1024

BLOCKED_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\.\."),
    re.compile(r"~[\\/]"),
    re.compile(r"^[\\/]"),
    re.compile(r"[\x00-\x1f]"),
    re.compile(r'[<>:"|?*]'),
    re.compile(r"^\."),
    re.compile(r"\$\{"),
    re.compile(r"`"),
)
_UNSAFE_SEGMENT_TOKENS = ("..", "~", "$")


def check_blocked_patterns(raw_path: str) -> None:
    """Raise ``BLOCKED_PATH_PATTERN`` if ``raw_path`` matches any blocked pattern."""

    if not isinstance(raw_path, str) or not raw_path:
        raise ImportExportError(
            "Invalid path: path must be a non-empty string",
            "INVALID_PATH_TYPE",
            {"path": raw_path},
        )
    for pattern in BLOCKED_PATTERNS:
        if pattern.search(raw_path):
            raise ImportExportError(
                f"Path contains blocked pattern: {raw_path!r}",
                "BLOCKED_PATH_PATTERN",
                {"path": raw_path, "pattern": pattern.pattern},
            )


class SecurePathResolver:
    """Resolve relative paths beneath a fixed base directory.

    Every candidate is screened for traversal sequences, home references,
    control characters and shell metacharacters before it is joined to the
    base. The resolved result (symlinks included) must stay under the base.
    """

    def __init__(
        self,
        base: Path | str,
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
        allowed_extensions: Optional[Iterable[str]] = None,
    ) -> None:
        self.base = Path(base).expanduser().resolve()
        self.max_depth = max_depth
        self.allowed_extensions = (
            {extension.lower().lstrip(".") for extension in allowed_extensions} if allowed_extensions else set()
        )

    def resolve(self, relative_path: str | PurePosixPath) -> Path:
        raw = str(relative_path).replace("\\", "/")
        check_blocked_patterns(raw)

        parts = [part for part in PurePosixPath(raw).parts if part not in ("", ".")]
        if len(parts) - 1 > self.max_depth:
            raise ImportExportError(
                f"Path exceeds maximum depth of {self.max_depth}: {raw!r}",
                "PATH_TOO_DEEP",
                {"path": raw, "max_depth": self.max_depth},
            )

        candidate = self.base.joinpath(*parts).resolve()
        if not self._contains(candidate):
            raise ImportExportError(
                f"Path escapes base directory: {raw!r}",
                "PATH_TRAVERSAL_DETECTED",
                {"path": raw, "base": str(self.base), "resolved": str(candidate)},
            )
        return candidate

    def join(self, *segments: str) -> Path:
        for index, segment in enumerate(segments):
            if not segment or not isinstance(segment, str):
                raise ImportExportError(
                    f"Invalid path segment at index {index}",
                    "INVALID_PATH_SEGMENT",
                    {"segment": segment, "index": index},
                )
            if any(token in segment for token in _UNSAFE_SEGMENT_TOKENS):
                raise ImportExportError(
                    f"Path segment contains dangerous patterns: {segment!r}",
                    "UNSAFE_PATH_SEGMENT",
                    {"segment": segment, "index": index},
                )
        return self.resolve("/".join(segments))

    def relative(self, path: Path) -> str:
        """Return ``path`` relative to the base using forward slashes."""

        resolved = Path(path).resolve()
        if not self._contains(resolved):
            raise ImportExportError(
                f"Path escapes base directory: {path}",
                "PATH_TRAVERSAL_DETECTED",
                {"path": str(path), "base": str(self.base)},
            )
        return resolved.relative_to(self.base).as_posix()

    def validate_file(self, relative_path: str, *, max_size: int = DEFAULT_MAX_FILE_SIZE) -> Path:
        path = self.resolve(relative_path)
        if self.allowed_extensions:
            extension = path.suffix.lower().lstrip(".")
            if extension not in self.allowed_extensions:
                raise ImportExportError(
                    f"File extension not allowed: {extension!r}",
                    "FORBIDDEN_FILE_EXTENSION",
                    {"path": str(path), "extension": extension, "allowed": sorted(self.allowed_extensions)},
                )
        if not path.is_file() or not os.access(path, os.R_OK):
            raise ImportExportError(
                f"File not accessible: {path}",
                "FILE_NOT_ACCESSIBLE",
                {"path": str(path)},
            )
        validate_file_size(path, max_size=max_size)
        return path

    def validate_directory(self, relative_path: str) -> Path:
        path = self.resolve(relative_path)
        try:
            is_directory = path.is_dir()
            exists = path.exists()
        except OSError as exc:
            raise ImportExportError(
                f"Directory not accessible: {path}",
                "DIRECTORY_NOT_ACCESSIBLE",
                {"path": str(path), "error": str(exc)},
            ) from exc
        if not exists:
            raise ImportExportError(
                f"Directory not accessible: {path}",
                "DIRECTORY_NOT_ACCESSIBLE",
                {"path": str(path)},
            )
        if not is_directory:
            raise ImportExportError(f"Path is not a directory: {path}", "NOT_A_DIRECTORY", {"path": str(path)})
        return path

    def is_within_base(self, relative_path: str) -> bool:
        try:
            self.resolve(relative_path)
        except ImportExportError:
            return False
        return True

    def _contains(self, candidate: Path) -> bool:
        return candidate == self.base or candidate.is_relative_to(self.base)


def validate_file_size(path: Path, *, max_size: int = DEFAULT_MAX_FILE_SIZE) -> int:
    try:
        size = path.stat().st_size
    except OSError as exc:
        raise ImportExportError(
            f"Cannot check file size: {path}",
            "FILE_SIZE_CHECK_ERROR",
            {"path": str(path), "error": str(exc)},
        ) from exc
    if size > max_size:
        raise ImportExportError(
            f"File too large: {size} bytes (max: {max_size} bytes)",
            "FILE_TOO_LARGE",
            {"path": str(path), "size": size, "max_size": max_size},
        )
    return size


def validate_root_directory(path: Path | str, *, code: str = "SOURCE_NOT_FOUND") -> Path:
    """Check that a configured root exists and is a directory."""

    root = Path(path).expanduser()
    if not root.exists():
        raise ImportExportError(f"Directory not found: {root}", code, {"path": str(root)})
    if not root.is_dir():
        raise ImportExportError(f"Path is not a directory: {root}", "NOT_A_DIRECTORY", {"path": str(root)})
    logger.debug(f"Validated root directory {root}")
    return root.resolve()
