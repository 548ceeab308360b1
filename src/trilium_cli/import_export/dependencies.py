"""Gatekeeper for optional format libraries and the capabilities built on them."""

from __future__ import annotations

import importlib
import logging
import threading
import zlib
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType, SimpleNamespace
from typing import Any, Callable, Optional, Protocol

from .types import ImportExportError

logger = logging.getLogger(__name__)

# import name -> distribution that provides it
ALLOWED_MODULES: dict[str, str] = {
    "zipfile": "python (standard library)",
    "frontmatter": "python-frontmatter",
    "yaml": "PyYAML",
    "markdownify": "markdownify",
    "markdown_it": "markdown-it-py",
}

DEFAULT_TIMEOUT = 10.0


def _check_allowed(name: str) -> None:
    if name not in ALLOWED_MODULES:
        raise ImportExportError(
            f"Dynamic import not allowed for module: {name}",
            "FORBIDDEN_DYNAMIC_IMPORT",
            {"module": name, "allowed": sorted(ALLOWED_MODULES)},
        )


class DependencyLoader:
    """Load allow-listed modules with a timeout and cache the result."""

    def __init__(self, *, importer: Callable[[str], Any] = importlib.import_module) -> None:
        self._importer = importer
        self._cache: dict[str, Any] = {}
        self._lock = threading.Lock()

    def load(
        self,
        name: str,
        *,
        optional: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        fallback: Optional[Callable[[], Any]] = None,
        cache_key: Optional[str] = None,
    ) -> Any:
        _check_allowed(name)
        key = cache_key or name
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        try:
            module = self._import_with_timeout(name, timeout)
        except ImportExportError as exc:
            if optional:
                logger.warning(f"Optional dependency {name} unavailable: {exc.message}")
                return self._remember(key, fallback() if fallback else SimpleNamespace())
            if exc.code == "MODULE_IMPORT_TIMEOUT":
                raise
            raise ImportExportError(
                f"Failed to load required dependency: {name}. Install it with: pip install {ALLOWED_MODULES[name]}",
                "DEPENDENCY_LOAD_ERROR",
                {"module": name, "error": exc.details.get("error"), "optional": optional},
            ) from exc

        return self._remember(key, module)

    def load_many(self, names: dict[str, bool], *, timeout: float = DEFAULT_TIMEOUT) -> dict[str, Any]:
        """Load several modules; ``names`` maps module name to its optional flag."""

        return {name: self.load(name, optional=optional, timeout=timeout) for name, optional in names.items()}

    def is_available(self, name: str) -> bool:
        _check_allowed(name)
        try:
            self._import_with_timeout(name, DEFAULT_TIMEOUT)
        except ImportExportError:
            return False
        return True

    def dependency_info(self) -> dict[str, bool]:
        return {name: self.is_available(name) for name in ALLOWED_MODULES}

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def cache_stats(self) -> dict[str, Any]:
        with self._lock:
            return {"size": len(self._cache), "keys": list(self._cache)}

    def _remember(self, key: str, value: Any) -> Any:
        with self._lock:
            self._cache[key] = value
        return value

    def _import_with_timeout(self, name: str, timeout: float) -> ModuleType:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dependency-loader")
        future = executor.submit(self._importer, name)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout as exc:
            raise ImportExportError(
                f"Module import timed out: {name}",
                "MODULE_IMPORT_TIMEOUT",
                {"module": name, "timeout": timeout},
            ) from exc
        except Exception as exc:
            raise ImportExportError(
                f"Failed to import module: {name}",
                "DEPENDENCY_LOAD_ERROR",
                {"module": name, "error": str(exc)},
            ) from exc
        finally:
            executor.shutdown(wait=False)


def create_validated_loader(
    loader: DependencyLoader,
    name: str,
    *,
    optional: bool = False,
    fallback: Optional[Callable[[], Any]] = None,
    validator: Optional[Callable[[Any], bool]] = None,
) -> Callable[[], Any]:
    """Return a zero-argument loader that also checks the loaded module's shape."""

    def _load() -> Any:
        module = loader.load(name, optional=optional, fallback=fallback)
        if validator and not validator(module):
            raise ImportExportError(
                f"Module validation failed: {name}",
                "MODULE_VALIDATION_ERROR",
                {"module": name},
            )
        return module

    return _load


# ----------------------------------------------------------------------
# Capability interfaces
# ----------------------------------------------------------------------
class FrontMatterParser(Protocol):
    def parse(self, text: str) -> tuple[dict[str, Any], str]: ...

    def dump(self, metadata: dict[str, Any], body: str) -> str: ...


@dataclass(slots=True)
class ArchiveEntry:
    name: str
    size: int
    is_dir: bool


class ArchiveReader(Protocol):
    def entries(self) -> list[ArchiveEntry]: ...

    def read(self, name: str) -> bytes: ...

    def close(self) -> None: ...


class ArchiveBackend(Protocol):
    def open(self, path: Path) -> ArchiveReader: ...

    def write_tree(self, source: Path, destination: Path) -> int: ...


class YamlFrontMatterParser:
    """Front matter handled by python-frontmatter."""

    def __init__(self, module: Any) -> None:
        self._frontmatter = module

    def parse(self, text: str) -> tuple[dict[str, Any], str]:
        try:
            post = self._frontmatter.loads(text)
        except Exception as exc:
            # Malformed YAML headers are treated as plain body text.
            logger.warning(f"Ignoring unreadable front matter: {exc}")
            return {}, text
        return dict(post.metadata), post.content

    def dump(self, metadata: dict[str, Any], body: str) -> str:
        post = self._frontmatter.Post(body)
        post.metadata.update(metadata)
        return self._frontmatter.dumps(post) + "\n"


class PlainFrontMatterParser:
    """Used when no front matter library is available; headers stay in the body."""

    def parse(self, text: str) -> tuple[dict[str, Any], str]:
        return {}, text

    def dump(self, metadata: dict[str, Any], body: str) -> str:
        return body


class ZipArchiveReader:
    def __init__(self, module: Any, path: Path) -> None:
        self._bad_zip = module.BadZipFile
        try:
            self._zip = module.ZipFile(path)
        except (OSError, module.BadZipFile) as exc:
            raise ImportExportError(
                f"Failed to open archive: {path}",
                "INVALID_ARCHIVE",
                {"path": str(path), "error": str(exc)},
            ) from exc

    def entries(self) -> list[ArchiveEntry]:
        return [
            ArchiveEntry(name=info.filename, size=info.file_size, is_dir=info.is_dir())
            for info in self._zip.infolist()
        ]

    def read(self, name: str) -> bytes:
        try:
            return self._zip.read(name)
        except (self._bad_zip, zlib.error, EOFError, OSError, RuntimeError) as exc:
            raise ImportExportError(
                f"Failed to extract archive entry: {name}",
                "ARCHIVE_EXTRACTION_ERROR",
                {"path": name, "error": str(exc)},
            ) from exc

    def close(self) -> None:
        self._zip.close()

    def __enter__(self) -> "ZipArchiveReader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class ZipArchiveBackend:
    def __init__(self, module: Any) -> None:
        self._zipfile = module

    def open(self, path: Path) -> ZipArchiveReader:
        return ZipArchiveReader(self._zipfile, path)

    def write_tree(self, source: Path, destination: Path) -> int:
        """Zip every file beneath ``source`` into ``destination``; return the entry count."""

        destination.parent.mkdir(parents=True, exist_ok=True)
        count = 0
        with self._zipfile.ZipFile(destination, "w", compression=self._zipfile.ZIP_DEFLATED) as archive:
            for file_path in sorted(source.rglob("*")):
                if not file_path.is_file() or file_path == destination:
                    continue
                relative = file_path.relative_to(source)
                if ".." in relative.parts:
                    continue
                archive.write(file_path, relative.as_posix())
                count += 1
        return count


class UnavailableArchiveBackend:
    def _fail(self) -> ImportExportError:
        return ImportExportError(
            "Archive support is unavailable in this environment",
            "DEPENDENCY_LOAD_ERROR",
            {"module": "zipfile"},
        )

    def open(self, path: Path) -> ArchiveReader:
        raise self._fail()

    def write_tree(self, source: Path, destination: Path) -> int:
        raise self._fail()


@dataclass(slots=True)
class Capabilities:
    """Optional-library backed services injected into format handlers."""

    front_matter: FrontMatterParser
    archives: ArchiveBackend


_default_loader = DependencyLoader()


def default_loader() -> DependencyLoader:
    return _default_loader


def resolve_capabilities(loader: Optional[DependencyLoader] = None) -> Capabilities:
    loader = loader or _default_loader
    frontmatter_module = loader.load("frontmatter", optional=True, fallback=lambda: None)
    zipfile_module = loader.load("zipfile", optional=True, fallback=lambda: None)
    front_matter: FrontMatterParser = (
        YamlFrontMatterParser(frontmatter_module) if frontmatter_module is not None else PlainFrontMatterParser()
    )
    archives: ArchiveBackend = (
        ZipArchiveBackend(zipfile_module) if zipfile_module is not None else UnavailableArchiveBackend()
    )
    return Capabilities(front_matter=front_matter, archives=archives)
