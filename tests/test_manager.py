import dataclasses
import shutil
from types import SimpleNamespace

import pytest

from trilium_cli.import_export.formats.notion import NotionImportHandler
from trilium_cli.import_export.manager import ImportExportManager
from trilium_cli.import_export.types import (
    FormatType,
    ImportExportError,
    OperationContext,
    OperationType,
    ProgressEventType,
)


class RecordingManager(ImportExportManager):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.contexts = []

    def _context(self, operation, format):
        context = super()._context(operation, format)
        self.contexts.append(context)
        return context


def test_format_registry_lists():
    manager = ImportExportManager(None)

    assert manager.list_import_formats() == [FormatType.OBSIDIAN, FormatType.NOTION, FormatType.DIRECTORY]
    assert manager.list_export_formats() == [FormatType.OBSIDIAN, FormatType.NOTION, FormatType.DIRECTORY]
    assert manager.list_sync_formats() == [FormatType.GIT]


@pytest.mark.parametrize(
    ("format", "operation"),
    [("evernote", OperationType.IMPORT), (FormatType.GIT, OperationType.EXPORT), ("obsidian", OperationType.SYNC)],
)
def test_unknown_handlers_are_reported(format, operation):
    with pytest.raises(ImportExportError) as exc:
        ImportExportManager(None).handler(format, operation)

    assert exc.value.code == "HANDLER_NOT_FOUND"
    assert exc.value.details["operation"] == operation.value


def test_each_call_gets_a_fresh_handler(client):
    manager = ImportExportManager(client)

    first = manager.handler("obsidian", OperationType.IMPORT)
    second = manager.handler("obsidian", OperationType.IMPORT)

    assert first is not second
    assert first.errors is not second.errors


def test_invalid_config_fails_before_any_work(client, tmp_path):
    manager = RecordingManager(client)

    with pytest.raises(ImportExportError) as exc:
        manager.import_obsidian({"vault_path": tmp_path / "missing"})

    assert exc.value.code == "VAULT_NOT_FOUND"
    assert manager.contexts == []
    assert client.created == []


def test_import_reports_progress_and_removes_temp_directory(client, tmp_path, make_zip):
    archive = make_zip(tmp_path / "export.zip", {"Page.md": "# Page\n"})
    events = []
    manager = RecordingManager(client, events=events.append, working_directory=tmp_path)

    result = manager.import_notion({"zip_path": archive})

    context = manager.contexts[0]
    assert context.operation_id.startswith("import-notion-")
    assert context.working_directory == tmp_path
    assert not context.temp_directory.exists()
    assert result.summary.successful_files == 1
    assert events[0].type == ProgressEventType.START
    assert events[-1].type == ProgressEventType.COMPLETE
    assert {event.id for event in events} == {context.operation_id}


def test_temp_directory_is_removed_when_import_fails(client, tmp_path, make_zip, monkeypatch):
    archive = make_zip(tmp_path / "export.zip", {"Page.md": "# Page\n"})

    def explode(self, files, config, context):
        raise RuntimeError("server went away")

    monkeypatch.setattr(NotionImportHandler, "import_files", explode)
    manager = RecordingManager(client)

    with pytest.raises(RuntimeError):
        manager.import_notion({"zip_path": archive})

    assert not manager.contexts[0].temp_directory.exists()


def test_scan_and_plan_preview_without_changes(client, tmp_path, write_tree):
    vault = write_tree(tmp_path / "vault", {"A.md": "# A\n"})
    note_id = client.add_note("Exported", "<p>x</p>")
    created = list(client.created)
    manager = ImportExportManager(client)

    scanned = manager.scan("obsidian", {"vault_path": vault})
    planned = manager.plan_export("directory", [note_id], {"output_path": tmp_path / "out"})

    assert [file.path for file in scanned] == ["A.md"]
    assert [file.path for file in planned] == ["Exported.html"]
    assert client.created == created
    assert not (tmp_path / "out").exists()


def test_export_shortcut_writes_files(client, tmp_path):
    note_id = client.add_note("Exported", "<p>x</p>")

    result = ImportExportManager(client).export_directory([note_id], {"output_path": tmp_path / "out"})

    assert result.exported == ["Exported.html"]
    assert (tmp_path / "out" / "Exported.html").read_text(encoding="utf-8") == "<p>x</p>"


def test_handler_options_reach_the_git_handler(client, fake_git, tmp_path, write_tree):
    repo = write_tree(tmp_path / "repo", {".git/HEAD": "ref: refs/heads/main\n", "readme.md": "# Readme\n"})
    manager = ImportExportManager(client, handler_options={FormatType.GIT: {"git_runner": fake_git}})

    result = manager.sync_git({"repository_path": repo, "sync_direction": "import"})

    assert result.imported == ["readme.md"]
    assert client.find_by_title("Readme").labels("source") == ["git"]
    assert "pull" in fake_git.subcommands()


def test_contexts_created_in_the_same_millisecond_get_distinct_temp_directories(monkeypatch):
    monkeypatch.setattr("trilium_cli.import_export.types.time", SimpleNamespace(time=lambda: 1_700_000_000.0))

    first = OperationContext.create(OperationType.IMPORT, FormatType.NOTION)
    second = OperationContext.create(OperationType.IMPORT, FormatType.NOTION)
    try:
        assert first.temp_directory != second.temp_directory
        assert first.temp_directory.is_dir()
        assert second.temp_directory.is_dir()
        assert first.temp_directory.name.startswith("trilium-import-notion-1700000000000-")
    finally:
        shutil.rmtree(first.temp_directory, ignore_errors=True)
        shutil.rmtree(second.temp_directory, ignore_errors=True)


def test_missing_note_does_not_abort_the_export(client, tmp_path):
    good = client.add_note("Good", "<p>fine</p>")

    result = ImportExportManager(client).export_obsidian([good, "missing"], {"output_path": tmp_path / "vault"})

    assert result.exported == ["Good.md"]
    assert (tmp_path / "vault" / "Good.md").exists()
    assert result.summary.failed_files == 1
    failed = [file_result for file_result in result.files if not file_result.success]
    assert failed[0].file.path == "missing"
    assert failed[0].error.code == "NOTE_NOT_FOUND"


def test_attachment_listing_failure_is_reported_per_note(client, tmp_path, monkeypatch):
    note_id = client.add_note("Exported", "<p>x</p>")

    def unavailable(owner_id):
        raise RuntimeError("attachments unavailable")

    monkeypatch.setattr(client, "get_attachments", unavailable)
    result = ImportExportManager(client).export_directory([note_id], {"output_path": tmp_path / "out"})

    assert result.exported == ["Exported.html"]
    failed = [file_result for file_result in result.files if not file_result.success]
    assert [file_result.error.code for file_result in failed] == ["API_ERROR"]
    assert failed[0].file.path == f"{note_id}/attachments"


def test_repeated_scans_list_the_same_archive_entries(client, tmp_path, make_zip):
    archive = make_zip(tmp_path / "export.zip", {"a.md": "# A\n", "a/b.md": "# B\n"})
    manager = ImportExportManager(client)

    first = manager.scan("notion", {"zip_path": archive})
    second = manager.scan("notion", {"zip_path": archive})

    # Staged copies live in each operation's own temp directory.
    assert [file.full_path for file in first] != [file.full_path for file in second]
    assert [dataclasses.replace(file, full_path="") for file in first] == [
        dataclasses.replace(file, full_path="") for file in second
    ]
