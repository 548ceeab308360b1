import pytest
from pydantic import ValidationError

from trilium_cli.config import ensure_config, resolve_config

CONFIG_TOML = """
[credentials]
base_url = "http://localhost:8080"
api_token = "file-token"

[defaults]
concurrency = 8
parent_note_id = "inbox"
"""


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("BASE_URL", "API_TOKEN", "CONCURRENCY", "BATCH_SIZE", "LOG_LEVEL", "PARENT_NOTE_ID"):
        monkeypatch.delenv(f"TRILIUM_{name}", raising=False)
    return monkeypatch


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "trilium-cli.toml"
    path.write_text(CONFIG_TOML, encoding="utf-8")
    return path


def test_explicit_file_is_loaded(clean_env, config_file):
    source = resolve_config(config_file, search_paths=())

    assert source.path == config_file
    assert source.error is None
    assert str(source.config.credentials.base_url).startswith("http://localhost:8080")
    assert source.config.credentials.api_token == "file-token"
    assert source.config.defaults.concurrency == 8
    assert source.config.defaults.batch_size == 100
    assert source.config.defaults.parent_note_id == "inbox"


def test_search_paths_are_tried_in_order(clean_env, tmp_path, config_file):
    source = resolve_config(search_paths=(tmp_path / "absent.toml", config_file))

    assert source.path == config_file


def test_environment_is_the_last_resort(clean_env):
    clean_env.setenv("TRILIUM_BASE_URL", "http://notes.example.com")
    clean_env.setenv("TRILIUM_API_TOKEN", "env-token")
    clean_env.setenv("TRILIUM_CONCURRENCY", "3")
    clean_env.setenv("TRILIUM_LOG_LEVEL", "debug")

    source = resolve_config(search_paths=())

    assert source.path is None
    assert source.config.credentials.api_token == "env-token"
    assert source.config.defaults.concurrency == 3
    assert source.config.defaults.log_level == "debug"


def test_invalid_values_are_reported_not_raised(clean_env, tmp_path):
    path = tmp_path / "bad.toml"
    path.write_text('[credentials]\nbase_url = "http://x"\napi_token = "t"\n[defaults]\nconcurrency = 100\n', encoding="utf-8")
    broken = tmp_path / "broken.toml"
    broken.write_text("[credentials\n", encoding="utf-8")

    invalid = resolve_config(path, search_paths=())
    unparsable = resolve_config(broken, search_paths=())

    assert invalid.config is None
    assert isinstance(invalid.error, ValidationError)
    assert unparsable.config is None
    assert isinstance(unparsable.error, ValueError)


def test_missing_credentials_raise(clean_env):
    with pytest.raises(RuntimeError, match="Missing Trilium credentials"):
        ensure_config(search_paths=())


def test_cli_values_override_file(clean_env, config_file):
    config = ensure_config(
        api_token="cli-token",
        log_level="debug",
        parent_note_id="abc",
        config_path=config_file,
        search_paths=(),
    )

    assert config.credentials.api_token == "cli-token"
    assert str(config.credentials.base_url).startswith("http://localhost:8080")
    assert config.defaults.log_level == "debug"
    assert config.defaults.parent_note_id == "abc"
    assert config.defaults.concurrency == 8


def test_cli_credentials_alone_are_enough(clean_env):
    config = ensure_config(base_url="http://localhost:37840", api_token="t", search_paths=())

    assert config.credentials.api_token == "t"
    assert config.defaults.concurrency == 5
    assert config.defaults.log_level == "info"
