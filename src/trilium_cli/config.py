"""Configuration helpers for the Trilium CLI."""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, HttpUrl, ValidationError

LogLevel = Literal["error", "warn", "info", "debug"]


class TriliumCredentials(BaseModel):
    """Connection information for the Trilium ETAPI."""

    base_url: HttpUrl = Field(..., description="Base URL of the Trilium server")
    api_token: str = Field(..., description="ETAPI token created in Trilium's options")


class ImportExportDefaults(BaseModel):
    """Default parameters applied to every import, export and sync."""

    concurrency: int = Field(5, ge=1, le=32, description="Worker pool size for independent items")
    batch_size: int = Field(100, ge=1, description="Items queued on the worker pool ahead of completion")
    log_level: LogLevel = Field("info", description="Logging verbosity")
    parent_note_id: str = Field("root", description="Note under which imported trees are created")


class TriliumConfig(BaseModel):
    """Aggregate configuration for the CLI."""

    credentials: TriliumCredentials
    defaults: ImportExportDefaults = Field(default_factory=ImportExportDefaults)


ENV_PREFIX = "TRILIUM"
DEFAULT_CONFIG_PATHS = (
    Path.cwd() / "trilium-cli.toml",
    Path.home() / ".config" / "trilium-cli" / "config.toml",
)


@dataclasses.dataclass
class ConfigSource:
    """Result of attempting to resolve configuration data."""

    config: Optional[TriliumConfig]
    path: Optional[Path]
    error: Optional[Exception]


def _load_from_env() -> dict[str, object]:
    """Return configuration values found in ``TRILIUM_*`` environment variables."""

    def _get(name: str) -> Optional[str]:
        return os.getenv(f"{ENV_PREFIX}_{name}")

    credentials: dict[str, str] = {}
    for key in ("BASE_URL", "API_TOKEN"):
        value = _get(key)
        if value:
            credentials[key.lower()] = value

    if not credentials:
        return {}

    defaults: dict[str, str] = {}
    for key in ("CONCURRENCY", "BATCH_SIZE", "LOG_LEVEL", "PARENT_NOTE_ID"):
        value = _get(key)
        if value:
            defaults[key.lower()] = value

    return {"credentials": credentials, "defaults": defaults}


def _load_toml(path: Path) -> Optional[dict]:
    if not path.exists():
        return None

    try:  # Python 3.11+
        import tomllib  # type: ignore
    except ModuleNotFoundError:  # pragma: no cover - Python <3.11
        import tomli as tomllib  # type: ignore

    with path.open("rb") as handle:
        return tomllib.load(handle)


def resolve_config(
    explicit_path: Optional[Path] = None,
    *,
    search_paths: tuple[Path, ...] = DEFAULT_CONFIG_PATHS,
) -> ConfigSource:
    """Discover configuration using the first available source.

    The priority order is:
    1. Explicit path provided via CLI argument.
    2. Default configuration files in the working directory or the user's config directory.
    3. Environment variables with the `TRILIUM_` prefix.
    """

    errors: list[Exception] = []
    sources: list[tuple[Optional[Path], Optional[dict]]] = []

    if explicit_path:
        try:
            data = _load_toml(explicit_path)
            if data is not None:
                sources.append((explicit_path, data))
        except (OSError, ValueError) as exc:
            errors.append(exc)

    if not sources:
        for path in search_paths:
            try:
                data = _load_toml(path)
            except (OSError, ValueError) as exc:
                errors.append(exc)
                continue
            if data is not None:
                sources.append((path, data))
                break

    if not sources:
        env_data = _load_from_env()
        if env_data:
            sources.append((None, env_data))

    for path, data in sources:
        try:
            config = TriliumConfig.model_validate(data)
            return ConfigSource(config=config, path=path, error=None)
        except ValidationError as exc:
            errors.append(exc)

    error = errors[0] if errors else None
    return ConfigSource(config=None, path=None, error=error)


def ensure_config(
    *,
    base_url: Optional[str] = None,
    api_token: Optional[str] = None,
    log_level: Optional[str] = None,
    parent_note_id: Optional[str] = None,
    config_path: Optional[Path] = None,
    search_paths: tuple[Path, ...] = DEFAULT_CONFIG_PATHS,
) -> TriliumConfig:
    """Resolve configuration from precedence order and apply explicit CLI options on top."""

    source = resolve_config(config_path, search_paths=search_paths)

    if source.config:
        config = source.config.model_copy(deep=True)
    else:
        if not all([base_url, api_token]):
            hint = " or configuration file" if config_path else ""
            raise RuntimeError(
                "Missing Trilium credentials. Provide --server and --token, TRILIUM_ environment variables" + hint
            )
        config = TriliumConfig(
            credentials=TriliumCredentials(base_url=base_url, api_token=api_token),
        )

    credentials = config.credentials.model_dump()
    if base_url:
        credentials["base_url"] = base_url
    if api_token:
        credentials["api_token"] = api_token
    config.credentials = TriliumCredentials.model_validate(credentials)

    if log_level:
        config.defaults = config.defaults.model_copy(update={"log_level": log_level})
    if parent_note_id:
        config.defaults.parent_note_id = parent_note_id

    return config
