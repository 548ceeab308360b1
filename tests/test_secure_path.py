import pytest

from trilium_cli.import_export.secure_path import (
    SecurePathResolver,
    check_blocked_patterns,
    validate_file_size,
    validate_root_directory,
)
from trilium_cli.import_export.types import ImportExportError


@pytest.fixture
def resolver(tmp_path):
    base = tmp_path / "base"
    base.mkdir()
    return SecurePathResolver(base, max_depth=3)


def _code(call):
    with pytest.raises(ImportExportError) as exc:
        call()
    return exc.value.code


@pytest.mark.parametrize(
    "raw",
    ["../etc/passwd", "notes/../../x", "~/secret", "/absolute", "bad\x01name", "what?.md", ".env", "${HOME}/x", "`cmd`"],
)
def test_blocked_patterns(raw):
    assert _code(lambda: check_blocked_patterns(raw)) == "BLOCKED_PATH_PATTERN"


def test_empty_path_is_rejected():
    assert _code(lambda: check_blocked_patterns("")) == "INVALID_PATH_TYPE"


def test_resolve_stays_under_base(resolver):
    assert resolver.resolve("a/b.md") == resolver.base / "a" / "b.md"
    assert resolver.resolve("a\\b.md") == resolver.base / "a" / "b.md"
    assert resolver.relative(resolver.base / "a" / "b.md") == "a/b.md"


def test_depth_limit(resolver):
    assert resolver.resolve("a/b/c/d.md").name == "d.md"
    assert _code(lambda: resolver.resolve("a/b/c/d/e.md")) == "PATH_TOO_DEEP"


def test_symlink_escape_is_detected(resolver, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    (resolver.base / "link").symlink_to(outside, target_is_directory=True)

    assert _code(lambda: resolver.resolve("link/file.md")) == "PATH_TRAVERSAL_DETECTED"
    assert not resolver.is_within_base("link/file.md")
    assert resolver.is_within_base("inside.md")


def test_join_checks_each_segment(resolver):
    assert resolver.join("a", "b.md") == resolver.base / "a" / "b.md"
    assert _code(lambda: resolver.join("a", "")) == "INVALID_PATH_SEGMENT"
    assert _code(lambda: resolver.join("a", "..b")) == "UNSAFE_PATH_SEGMENT"
    assert _code(lambda: resolver.join("$x")) == "UNSAFE_PATH_SEGMENT"


def test_validate_file_and_directory(tmp_path):
    base = tmp_path / "base"
    (base / "docs").mkdir(parents=True)
    (base / "docs" / "a.md").write_text("hello", encoding="utf-8")
    resolver = SecurePathResolver(base, allowed_extensions=[".md"])

    assert resolver.validate_file("docs/a.md").name == "a.md"
    assert resolver.validate_directory("docs").name == "docs"
    assert _code(lambda: resolver.validate_file("docs/missing.md")) == "FILE_NOT_ACCESSIBLE"
    assert _code(lambda: resolver.validate_file("docs/a.md", max_size=2)) == "FILE_TOO_LARGE"
    assert _code(lambda: resolver.validate_directory("nope")) == "DIRECTORY_NOT_ACCESSIBLE"
    assert _code(lambda: resolver.validate_directory("docs/a.md")) == "NOT_A_DIRECTORY"

    (base / "docs" / "b.txt").write_text("x", encoding="utf-8")
    assert _code(lambda: resolver.validate_file("docs/b.txt")) == "FORBIDDEN_FILE_EXTENSION"


def test_root_directory_validation(tmp_path):
    file_path = tmp_path / "file.txt"
    file_path.write_text("x", encoding="utf-8")

    assert validate_root_directory(tmp_path) == tmp_path.resolve()
    assert _code(lambda: validate_root_directory(tmp_path / "missing", code="VAULT_NOT_FOUND")) == "VAULT_NOT_FOUND"
    assert _code(lambda: validate_root_directory(file_path)) == "NOT_A_DIRECTORY"
    assert validate_file_size(file_path) == 1
