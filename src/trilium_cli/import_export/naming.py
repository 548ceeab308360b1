"""Utilities for mapping note titles to filesystem-friendly names."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Callable

from .types import ImportExportError

_NON_WORD_RE = re.compile(r"[^a-z0-9]+")
_INVALID_FILENAME_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_EDGE_DOTS_RE = re.compile(r"^\.+|\.+$")
_WHITESPACE_RE = re.compile(r"\s+")

MAX_FILENAME_LENGTH = 255
MAX_UNIQUE_ATTEMPTS = 10000


def slugify(value: str, *, fallback: str = "note") -> str:
    """Return a lowercase, hyphen-separated slug derived from ``value``."""

    value = value.lower().strip()
    value = _NON_WORD_RE.sub("-", value)
    value = value.strip("-")
    if not value:
        return fallback
    return value[:120]


def sanitize_file_name(name: str) -> str:
    """Replace characters that are invalid in file names and trim the result.

    Raises ``ImportExportError`` when nothing usable remains.
    """

    if not isinstance(name, str) or not name:
        raise ImportExportError("Invalid filename: must be a non-empty string", "INVALID_FILENAME", {"name": name})

    sanitized = _INVALID_FILENAME_RE.sub("_", name)
    sanitized = _EDGE_DOTS_RE.sub("", sanitized)
    sanitized = _WHITESPACE_RE.sub(" ", sanitized).strip()
    sanitized = sanitized[:MAX_FILENAME_LENGTH]
    if not sanitized:
        raise ImportExportError(
            "Filename sanitization resulted in empty string",
            "EMPTY_FILENAME_AFTER_SANITIZATION",
            {"original": name},
        )
    return sanitized


def safe_title_file_name(title: str, *, fallback: str = "Untitled") -> str:
    try:
        return sanitize_file_name(title)
    except ImportExportError:
        return fallback


def unique_file_name(
    directory: Path,
    file_name: str,
    *,
    exists: Callable[[Path], bool] = Path.exists,
) -> str:
    """Return ``file_name`` or ``name_<n><ext>`` so that it does not collide in ``directory``."""

    if not exists(directory / file_name):
        return file_name
    stem = Path(file_name).stem
    suffix = Path(file_name).suffix
    for counter in range(1, MAX_UNIQUE_ATTEMPTS + 1):
        candidate = f"{stem}_{counter}{suffix}"
        if not exists(directory / candidate):
            return candidate
    raise ImportExportError(
        f"Could not generate unique filename for {file_name}",
        "UNIQUE_FILENAME_GENERATION_FAILED",
        {"directory": str(directory), "file_name": file_name},
    )
