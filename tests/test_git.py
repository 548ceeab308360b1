import pytest

from conftest import FakeGit
from trilium_cli.import_export.formats.git import (
    DEFAULT_COMMIT_MESSAGE,
    GitRunner,
    GitSyncHandler,
    parse_porcelain,
    sanitize_author_email,
    sanitize_author_name,
    sanitize_branch,
    sanitize_commit_message,
)
from trilium_cli.import_export.types import ImportExportError


@pytest.fixture
def repo(tmp_path, write_tree):
    return write_tree(tmp_path / "repo", {".git/HEAD": "ref: refs/heads/main\n", "notes.md": "# Notes\n\nHello\n"})


def _sync(client, git, context, repo, **options):
    handler = GitSyncHandler(client, git_runner=git)
    config = handler.validate({"repository_path": repo, **options})
    return handler.sync(config, context)


def test_sanitizers_strip_unsafe_characters():
    assert sanitize_branch("feature/new branch!") == "feature/newbranch"
    assert sanitize_branch("..release..") == "release"
    assert sanitize_commit_message("fix `rm` $(x)") == "fix rm x"
    assert sanitize_commit_message(None) == DEFAULT_COMMIT_MESSAGE
    assert sanitize_commit_message("$()") == DEFAULT_COMMIT_MESSAGE
    assert sanitize_author_name('  Ada   "Lovelace" ') == "Ada Lovelace"
    assert sanitize_author_email(" ada@example.com ") == "ada@example.com"


@pytest.mark.parametrize(
    ("call", "code"),
    [
        (lambda: sanitize_branch("---"), "INVALID_BRANCH_NAME"),
        (lambda: sanitize_author_name("<>$"), "INVALID_USER_NAME"),
        (lambda: sanitize_author_email("not-an-email"), "INVALID_EMAIL_FORMAT"),
    ],
)
def test_sanitizers_reject_empty_results(call, code):
    with pytest.raises(ImportExportError) as exc:
        call()
    assert exc.value.code == code


def test_runner_only_allows_listed_subcommands(tmp_path, fake_git):
    runner = GitRunner(tmp_path, runner=fake_git)

    with pytest.raises(ImportExportError) as exc:
        runner("rm", "-rf", ".")

    assert exc.value.code == "FORBIDDEN_GIT_COMMAND"
    assert fake_git.calls == []


def test_runner_maps_process_failures(tmp_path):
    runner = GitRunner(tmp_path, runner=FakeGit(failures=("log",)))

    with pytest.raises(ImportExportError) as exc:
        runner("log", "-1")

    assert exc.value.code == "GIT_COMMAND_FAILED"
    assert exc.value.details["stderr"] == "log failed"


def test_parse_porcelain_sorts_entries():
    status = parse_porcelain(" M a.md\nA  b.md\n D c.md\n?? d.md\n", "main")

    assert status.branch == "main"
    assert status.modified == ["a.md"]
    assert status.added == ["b.md"]
    assert status.deleted == ["c.md"]
    assert status.untracked == ["d.md"]
    assert status.staged == ["b.md"]


def test_validate_requires_git_checkout(client, tmp_path):
    plain = tmp_path / "plain"
    plain.mkdir()

    with pytest.raises(ImportExportError) as exc:
        GitSyncHandler(client).validate({"repository_path": plain})
    assert exc.value.code == "NOT_GIT_REPOSITORY"


def test_validate_sanitizes_branch_and_rejects_bad_email(client, repo):
    handler = GitSyncHandler(client)

    config = handler.validate({"repository_path": repo, "branch": "feature/new branch!"})
    assert config.branch == "feature/newbranch"

    with pytest.raises(ImportExportError) as exc:
        handler.validate({"repository_path": repo, "author_email": "nobody"})
    assert exc.value.code == "INVALID_EMAIL_FORMAT"


def test_bidirectional_sync_imports_exports_and_commits(client, fake_git, context, repo):
    client.add_note("Page", "<p>Body</p>", labels={"source": "git", "git-path": "page.md"})

    result = _sync(client, fake_git, context, repo, author_name="Sync Bot")

    notes = client.find_by_title("Notes")
    assert notes.labels("git-path") == ["notes.md"]
    assert "<h1>Notes</h1>" in client.get_note_content(notes.note_id)
    assert result.imported == ["notes.md"]
    assert result.exported == ["page.md"]
    assert result.commit_hash == "abc123"
    assert result.branch == "main"

    written = (repo / "page.md").read_text(encoding="utf-8")
    assert written.startswith("---\n")
    assert "# Page" in written
    assert "Body" in written

    assert ["add", "--", "page.md"] in fake_git.calls
    assert ["config", "user.name", "Sync Bot"] in fake_git.calls
    commands = fake_git.subcommands()
    assert commands.index("pull") < commands.index("commit")
    assert "push" not in commands


def test_push_after_export(client, fake_git, context, repo):
    client.add_note("Page", "<p>Body</p>", labels={"source": "git", "git-path": "page.md"})

    _sync(client, fake_git, context, repo, sync_direction="export", push_after_export=True)

    assert ["push", "origin", "main"] in fake_git.calls
    assert "pull" not in fake_git.subcommands()


def test_manual_conflict_leaves_file_untouched(client, fake_git, context, repo):
    seeded = client.add_note("Notes", "<p>Seeded body</p>")

    result = _sync(client, fake_git, context, repo, export_note_ids=[seeded])

    assert result.conflicts == ["notes.md"]
    assert result.exported == []
    assert result.summary.failed_files == 1
    assert (repo / "notes.md").read_text(encoding="utf-8") == "# Notes\n\nHello\n"
    assert "commit" not in fake_git.subcommands()


def test_merge_conflict_appends_exported_text(client, fake_git, context, repo):
    seeded = client.add_note("Notes", "<p>Seeded body</p>")

    result = _sync(client, fake_git, context, repo, export_note_ids=[seeded], conflict_resolution="merge")

    merged = (repo / "notes.md").read_text(encoding="utf-8")
    assert merged.startswith("# Notes\n\nHello\n\n")
    assert "Seeded body" in merged
    assert result.exported == ["notes.md"]
    assert result.conflicts == []


def test_local_conflict_keeps_working_tree(client, fake_git, context, repo):
    seeded = client.add_note("Notes", "<p>Seeded body</p>")

    result = _sync(client, fake_git, context, repo, export_note_ids=[seeded], conflict_resolution="local")

    assert (repo / "notes.md").read_text(encoding="utf-8") == "# Notes\n\nHello\n"
    assert result.summary.skipped_files == 1
    assert any("notes.md" in warning for warning in result.warnings)


def test_dry_run_touches_nothing(client, fake_git, context, repo):
    client.add_note("Page", "<p>Body</p>", labels={"source": "git", "git-path": "page.md"})
    created = list(client.created)

    result = _sync(client, fake_git, context, repo, dry_run=True)

    assert client.created == created
    assert not (repo / "page.md").exists()
    assert result.imported == ["notes.md"]
    assert result.commit_hash is None
    assert set(fake_git.subcommands()) <= {"branch", "status", "rev-parse", "remote"}


def test_branch_switch_uses_existing_branch(client, context, repo):
    git = FakeGit(responses={("branch", "--show-current"): "dev\n", ("branch", "--list"): "* dev\n  main\n"})

    result = _sync(client, git, context, repo, sync_direction="export")

    assert ["checkout", "main"] in git.calls
    assert result.branch == "main"


def test_pull_failure_aborts_sync(client, context, repo):
    git = FakeGit(failures=("pull",))

    with pytest.raises(ImportExportError) as exc:
        _sync(client, git, context, repo)

    assert exc.value.code == "GIT_SYNC_ERROR"
    assert exc.value.details["cause"] == "GIT_PULL_ERROR"
    assert client.created == []


def test_just_imported_file_conflicts_with_its_export(client, fake_git, context, repo):
    client.add_note("Page", "<p>Body</p>", labels={"source": "git", "git-path": "page.md"})

    result = _sync(client, fake_git, context, repo)

    assert result.imported == ["notes.md"]
    assert result.conflicts == ["notes.md"]
    assert result.exported == ["page.md"]
    assert (repo / "notes.md").read_text(encoding="utf-8") == "# Notes\n\nHello\n"


def test_remote_resolution_rewrites_just_imported_file(client, fake_git, context, repo):
    result = _sync(client, fake_git, context, repo, conflict_resolution="remote")

    assert result.conflicts == []
    assert result.exported == ["notes.md"]
    written = (repo / "notes.md").read_text(encoding="utf-8")
    assert written.startswith("---\n")
    assert "Hello" in written
