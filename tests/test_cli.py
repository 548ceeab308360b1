import pytest
from typer.testing import CliRunner

from conftest import FakeNoteClient
from trilium_cli import cli

runner = CliRunner()


class ClosableClient(FakeNoteClient):
    closed = False

    def close(self):
        self.closed = True


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ("BASE_URL", "API_TOKEN", "CONCURRENCY", "BATCH_SIZE", "LOG_LEVEL", "PARENT_NOTE_ID"):
        monkeypatch.delenv(f"TRILIUM_{name}", raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


@pytest.fixture
def fake_server(clean_env):
    client = ClosableClient()
    clean_env.setattr(cli, "create_client", lambda **kwargs: client)
    return client


def test_formats_lists_every_format():
    result = runner.invoke(cli.app, ["formats"])

    assert result.exit_code == 0
    for name in ("obsidian", "notion", "directory", "git"):
        assert name in result.stdout


def test_scan_runs_offline(clean_env, tmp_path, write_tree):
    vault = write_tree(tmp_path / "vault", {"Hello.md": "# Hello\n", "sub/Other.md": "# Other\n"})

    result = runner.invoke(cli.app, ["--json", "scan", "obsidian", str(vault)])

    assert result.exit_code == 0
    assert '"path": "Hello.md"' in result.stdout
    assert '"path": "sub/Other.md"' in result.stdout


def test_scan_reports_missing_source(clean_env, tmp_path):
    result = runner.invoke(cli.app, ["scan", "directory", str(tmp_path / "missing")])

    assert result.exit_code == 1


def test_unknown_log_level_is_rejected():
    result = runner.invoke(cli.app, ["--log-level", "loud", "formats"])

    assert result.exit_code == 2


def test_import_without_credentials_fails(clean_env, tmp_path, write_tree):
    vault = write_tree(tmp_path / "vault", {"Hello.md": "# Hello\n"})

    result = runner.invoke(cli.app, ["import", "obsidian", str(vault)])

    assert result.exit_code == 1


def test_import_obsidian_through_the_cli(fake_server, tmp_path, write_tree):
    vault = write_tree(tmp_path / "vault", {"Hello.md": "# Hello\n\nWorld\n"})

    result = runner.invoke(
        cli.app,
        ["--server", "http://localhost:8080", "--token", "t", "--json", "import", "obsidian", str(vault)],
    )

    assert result.exit_code == 0, result.output
    assert fake_server.find_by_title("Hello").labels("source") == ["obsidian"]
    assert '"successful_files": 1' in result.stdout
    assert fake_server.closed


def test_export_directory_through_the_cli(fake_server, tmp_path):
    note_id = fake_server.add_note("Solo", "<p>alone</p>")

    result = runner.invoke(
        cli.app,
        ["--server", "http://localhost:8080", "--token", "t", "export", "directory", note_id, "--output", str(tmp_path / "out")],
    )

    assert result.exit_code == 0, result.output
    assert (tmp_path / "out" / "Solo.html").read_text(encoding="utf-8") == "<p>alone</p>"
    assert "Directory Export Summary" in result.stdout
