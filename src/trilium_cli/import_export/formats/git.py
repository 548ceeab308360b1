"""Synchronize notes with the working tree of a git repository."""

from __future__ import annotations

import html
import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Collection, Optional, Sequence

from ..naming import safe_title_file_name, slugify
from ..parsers import parse_content, render_front_matter
from ..secure_path import SecurePathResolver, validate_root_directory
from ..types import (
    ConflictResolution,
    ContentType,
    FileInfo,
    FileResult,
    FormatType,
    GitConfig,
    ImportExportError,
    OperationContext,
    OperationError,
    OperationType,
    SyncDirection,
    SyncResult,
    utcnow,
)
from ..utils import build_file_info, process_batch, read_text_file, scan_files, write_binary_file, write_text_file
from .base import DRY_RUN_IMPORT_REASON, BaseHandler, NoteAttribute

logger = logging.getLogger(__name__)

ALLOWED_GIT_COMMANDS = frozenset(
    {"status", "branch", "checkout", "pull", "push", "add", "commit", "log", "remote", "rev-parse", "config"}
)
IMPORT_PATTERNS = ("**/*.md", "**/*.txt", "**/*.html", "**/*.json")
IMPORT_EXCLUDES = (".git/**", "**/.git/**", "node_modules/**", "**/node_modules/**")
DEFAULT_COMMIT_MESSAGE = "Automated commit"

_BRANCH_INVALID_RE = re.compile(r"[^a-zA-Z0-9._/-]")
_BRANCH_EDGE_RE = re.compile(r"^[-._]+|[-._]+$")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_MESSAGE_META_RE = re.compile(r"[`$(){}\[\]]")
_USER_META_RE = re.compile(r'[<>"`$(){}\[\]]')
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


# ----------------------------------------------------------------------
# Input sanitizing
# ----------------------------------------------------------------------
def sanitize_branch(name: str) -> str:
    """Reduce a branch or remote name to ``[A-Za-z0-9._/-]`` without edge punctuation."""

    if not isinstance(name, str) or not name:
        raise ImportExportError("Invalid branch name: must be a non-empty string", "INVALID_BRANCH")
    sanitized = _BRANCH_INVALID_RE.sub("", name)
    sanitized = re.sub(r"\.\.+", ".", _BRANCH_EDGE_RE.sub("", sanitized)).strip()
    if not sanitized:
        raise ImportExportError(
            "Invalid branch name: sanitization resulted in empty string",
            "INVALID_BRANCH_NAME",
            {"original": name},
        )
    return sanitized


def sanitize_commit_message(message: Optional[str]) -> str:
    if not message:
        return DEFAULT_COMMIT_MESSAGE
    sanitized = _MESSAGE_META_RE.sub("", _CONTROL_RE.sub("", message)).strip()[:200]
    return sanitized or DEFAULT_COMMIT_MESSAGE


def sanitize_author_name(name: str) -> str:
    sanitized = re.sub(r"\s+", " ", _USER_META_RE.sub("", name or "")).strip()[:100]
    if not sanitized:
        raise ImportExportError(
            "Invalid git user name: sanitization resulted in empty string",
            "INVALID_USER_NAME",
            {"original": name},
        )
    return sanitized


def sanitize_author_email(email: str) -> str:
    if not email or not _EMAIL_RE.match(email.strip()):
        raise ImportExportError(
            "Invalid git email: must be a valid email address",
            "INVALID_EMAIL_FORMAT",
            {"email": email},
        )
    return email.strip()[:100]


# ----------------------------------------------------------------------
# Git process wrapper
# ----------------------------------------------------------------------
class GitRunner:
    """Run allow-listed git sub-commands inside one repository."""

    def __init__(self, repository: Path, *, runner: Callable[..., Any] = subprocess.run) -> None:
        self.repository = repository
        self._runner = runner

    def __call__(self, *args: str, timeout: float = 15.0) -> str:
        if not args or args[0] not in ALLOWED_GIT_COMMANDS:
            raise ImportExportError(
                f"Git command not allowed: {args[0] if args else ''}",
                "FORBIDDEN_GIT_COMMAND",
                {"args": list(args)},
            )
        command = ["git", *args]
        logger.debug(f"Running {' '.join(command)} in {self.repository}")
        try:
            completed = self._runner(
                command,
                cwd=str(self.repository),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=True,
            )
        except subprocess.TimeoutExpired as exc:
            raise ImportExportError(
                f"Git command timed out after {timeout}s: {' '.join(command)}",
                "GIT_TIMEOUT",
                {"command": command, "timeout": timeout},
            ) from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            raise ImportExportError(
                f"Git command failed: {' '.join(command)}" + (f": {stderr}" if stderr else ""),
                "GIT_COMMAND_FAILED",
                {"command": command, "exit_code": exc.returncode, "stderr": stderr},
            ) from exc
        except FileNotFoundError as exc:
            raise ImportExportError("git executable not found", "GIT_NOT_FOUND", {"command": command}) from exc
        return completed.stdout or ""


@dataclass(slots=True)
class GitStatus:
    branch: str
    modified: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)
    staged: list[str] = field(default_factory=list)
    remote_url: Optional[str] = None
    last_commit_hash: Optional[str] = None


def parse_porcelain(output: str, branch: str) -> GitStatus:
    status = GitStatus(branch=branch)
    for line in output.splitlines():
        if not line.strip():
            continue
        code, path = line[:2], line[3:]
        if code[0] not in (" ", "?"):
            status.staged.append(path)
        if "M" in code:
            status.modified.append(path)
        elif "A" in code:
            status.added.append(path)
        elif "D" in code:
            status.deleted.append(path)
        elif code == "??":
            status.untracked.append(path)
    return status


# ----------------------------------------------------------------------
# Sync handler
# ----------------------------------------------------------------------
class GitSyncHandler(BaseHandler[GitConfig]):
    """Import files from, and export notes into, a git working tree."""

    format = FormatType.GIT
    config_model = GitConfig

    def __init__(self, client: Any, *, git_runner: Optional[Callable[..., Any]] = None, **kwargs: Any) -> None:
        super().__init__(client, **kwargs)
        self._subprocess = git_runner or subprocess.run

    def validate(self, config: Any) -> GitConfig:
        parsed = super().validate(config)
        updates: dict[str, Any] = {
            "branch": sanitize_branch(parsed.branch),
            "remote": sanitize_branch(parsed.remote),
        }
        if parsed.author_name:
            updates["author_name"] = sanitize_author_name(parsed.author_name)
        if parsed.author_email:
            updates["author_email"] = sanitize_author_email(parsed.author_email)
        if parsed.commit_message:
            updates["commit_message"] = sanitize_commit_message(parsed.commit_message)
        return parsed.model_copy(update=updates)

    def check_environment(self, config: GitConfig) -> None:
        repository = validate_root_directory(config.repository_path, code="SOURCE_NOT_FOUND")
        if not (repository / ".git").exists():
            raise ImportExportError(
                f"Path is not a git repository: {repository}",
                "NOT_GIT_REPOSITORY",
                {"path": str(repository)},
            )

    def git(self, config: GitConfig) -> GitRunner:
        return GitRunner(Path(config.repository_path).expanduser().resolve(), runner=self._subprocess)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------
    def sync(self, config: Any, context: OperationContext) -> SyncResult:
        config = self._coerce(config)
        started = utcnow()
        tracker = self.tracker(context, config, 100)
        tracker.start("Starting Git synchronization")
        git = self.git(config)
        direction = config.sync_direction

        try:
            tracker.progress(10, "Analyzing git repository")
            status = self.status(git, config)

            if config.branch and status.branch != config.branch and not config.dry_run:
                tracker.progress(20, f"Switching to branch: {config.branch}")
                self.switch_branch(git, config)
                status.branch = config.branch

            if config.pull_before_import and direction != SyncDirection.EXPORT and not config.dry_run:
                tracker.progress(30, "Pulling from remote repository")
                try:
                    git("pull", config.remote, config.branch, timeout=60.0)
                except ImportExportError as exc:
                    raise ImportExportError(exc.message, "GIT_PULL_ERROR", exc.details) from exc

            results: list[FileResult] = []
            imported: list[str] = []
            if direction in (SyncDirection.IMPORT, SyncDirection.BIDIRECTIONAL):
                tracker.progress(40, "Importing files from git")
                import_results = self.import_files(config, context)
                results += import_results
                imported += [result.file.path for result in import_results if result.success and not result.skipped]

            exported: list[str] = []
            conflicts: list[str] = []
            if direction in (SyncDirection.EXPORT, SyncDirection.BIDIRECTIONAL) and not config.dry_run:
                tracker.progress(60, "Exporting notes to git")
                export_results = self.export_notes(config, imported=set(imported))
                results += export_results
                for result in export_results:
                    if result.success and not result.skipped:
                        exported.append(result.file.path)
                    elif result.error is not None and result.error.code == "SYNC_CONFLICT":
                        conflicts.append(result.file.path)

            commit_hash = None
            if exported and not config.dry_run:
                tracker.progress(90, "Committing changes")
                commit_hash = self.commit(git, config, exported)
                if config.push_after_export and commit_hash:
                    tracker.progress(95, "Pushing to remote repository")
                    try:
                        git("push", config.remote, config.branch, timeout=60.0)
                    except ImportExportError as exc:
                        raise ImportExportError(exc.message, "GIT_PUSH_ERROR", exc.details) from exc
        except ImportExportError as exc:
            tracker.error(exc.message)
            raise ImportExportError(
                f"Git sync failed: {exc.message}",
                "GIT_SYNC_ERROR",
                {"repository_path": str(config.repository_path), "cause": exc.code, **exc.details},
                operation=OperationType.SYNC,
                format=self.format,
            ) from exc

        tracker.complete("Git sync completed successfully")
        files = [result.file for result in results]
        summary = self.summarize(
            OperationType.SYNC,
            files,
            results,
            started,
            metadata={
                "direction": direction.value,
                "dry_run": config.dry_run,
                "remote_url": status.remote_url,
                "pending_changes": len(status.modified) + len(status.added) + len(status.untracked),
            },
        )
        return SyncResult(
            summary=summary,
            repository=str(config.repository_path),
            branch=status.branch,
            commit_hash=commit_hash,
            files=results,
            imported=imported,
            exported=exported,
            conflicts=conflicts,
            warnings=self.errors.warnings,
            config=config,
        )

    # ------------------------------------------------------------------
    # Repository state
    # ------------------------------------------------------------------
    def status(self, git: GitRunner, config: GitConfig) -> GitStatus:
        try:
            branch = git("branch", "--show-current", timeout=10.0).strip()
            status = parse_porcelain(git("status", "--porcelain", timeout=10.0), branch)
        except ImportExportError as exc:
            raise ImportExportError(f"Failed to get git status: {exc.message}", "GIT_STATUS_ERROR", exc.details) from exc

        try:
            status.last_commit_hash = git("rev-parse", "HEAD", timeout=10.0).strip() or None
        except ImportExportError:
            logger.debug(f"No commits yet in {git.repository}")
        try:
            status.remote_url = git("remote", "get-url", config.remote, timeout=10.0).strip() or None
        except ImportExportError:
            logger.debug(f"Remote {config.remote} is not configured in {git.repository}")
        return status

    def switch_branch(self, git: GitRunner, config: GitConfig) -> None:
        try:
            existing = [line.strip(" *") for line in git("branch", "--list", timeout=10.0).splitlines()]
            if config.branch in existing:
                git("checkout", config.branch)
                return
            try:
                git("checkout", "-b", config.branch, f"{config.remote}/{config.branch}")
            except ImportExportError:
                git("checkout", "-b", config.branch)
        except ImportExportError as exc:
            raise ImportExportError(
                f"Failed to switch to branch {config.branch}: {exc.message}",
                "GIT_BRANCH_SWITCH_ERROR",
                {"branch": config.branch},
            ) from exc

    def commit(self, git: GitRunner, config: GitConfig, paths: Sequence[str]) -> str:
        try:
            git("add", "--", *paths)
            if config.author_name:
                git("config", "user.name", config.author_name, timeout=10.0)
            if config.author_email:
                git("config", "user.email", config.author_email, timeout=10.0)
            message = sanitize_commit_message(config.commit_message or f"Trilium sync: {utcnow().isoformat()}")
            git("commit", "-m", message)
            return git("rev-parse", "HEAD", timeout=10.0).strip()
        except ImportExportError as exc:
            raise ImportExportError(
                f"Failed to commit changes: {exc.message}",
                "GIT_COMMIT_ERROR",
                {"files": list(paths), **exc.details},
            ) from exc

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------
    def import_files(self, config: GitConfig, context: OperationContext) -> list[FileResult]:
        repository = Path(config.repository_path).expanduser()
        files = scan_files(
            repository,
            patterns=[*IMPORT_PATTERNS, *config.patterns],
            exclude_patterns=[*IMPORT_EXCLUDES, *config.exclude_patterns],
            max_depth=config.max_depth or 10,
            errors=self.errors,
        )
        if config.dry_run:
            return [FileResult(file=file, success=True, reason=DRY_RUN_IMPORT_REASON) for file in files]

        tracker = self.tracker(context, config, len(files))
        return self.run_items(files, lambda file: self._import_file(file, config), config, tracker, label="Imported")

    def _import_file(self, file: FileInfo, config: GitConfig) -> FileResult:
        raw = read_text_file(Path(file.full_path))
        content = parse_content(raw, file, self.parsers)
        if content.type == ContentType.MARKDOWN:
            body = self.converter.markdown_to_html(content.content)
        elif content.type == ContentType.HTML:
            body = raw
        else:
            body = f"<pre>{html.escape(raw)}</pre>"
        result = self.upsert_note(
            file,
            config,
            identity=NoteAttribute("git-path", file.path),
            parent_note_id=config.parent_note_id,
            title=content.title or file.stem,
            content=body,
            attributes=[
                NoteAttribute("source", "git"),
                NoteAttribute("git-repository", str(config.repository_path)),
                *(NoteAttribute("tag", tag) for tag in content.tags),
            ],
        )
        result.metadata["operation"] = "import"
        return result

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------
    def export_note_ids(self, config: GitConfig) -> list[str]:
        if config.export_note_ids:
            return list(config.export_note_ids)
        return [note.note_id for note in self.client.search_notes('#source="git"', limit=1000)]

    def export_notes(
        self,
        config: GitConfig,
        *,
        imported: Collection[str] = (),
    ) -> list[FileResult]:
        """Write notes as Markdown files; a target already written by the import step is a conflict."""

        repository = Path(config.repository_path).expanduser().resolve()
        resolver = SecurePathResolver(repository, max_depth=config.max_depth or 10)
        note_ids = self.export_note_ids(config)

        def _on_error(note_id: str, exc: Exception) -> list[FileResult]:
            placeholder = self._path_info(repository, f"{note_id}.md", {"note_id": note_id})
            return [self.failure(placeholder, exc)]

        batches = process_batch(
            note_ids,
            lambda note_id: self._export_note(note_id, config, resolver, imported),
            concurrency=config.concurrency,
            batch_size=config.batch_size,
            on_error=_on_error,
        )
        return [result for batch in batches for result in batch]

    def _export_note(
        self,
        note_id: str,
        config: GitConfig,
        resolver: SecurePathResolver,
        imported: Collection[str],
    ) -> list[FileResult]:
        note = self.client.get_note(note_id)
        content = self.client.get_note_content(note_id)
        path = note.label("git-path") or f"{slugify(note.title)}.md"
        target = resolver.resolve(path)
        metadata = {"note_id": note_id, "operation": "export"}

        markdown = self.to_markdown(note, content)
        if path in imported:
            resolution = config.conflict_resolution
            if resolution == ConflictResolution.MANUAL:
                error = OperationError(
                    code="SYNC_CONFLICT",
                    message=f"Sync conflict detected for file: {path}",
                    details={"path": path, "note_id": note_id},
                )
                self.errors.record(error)
                return [FileResult(file=self._path_info(resolver.base, path, metadata), success=False, error=error)]
            if resolution == ConflictResolution.LOCAL:
                self.errors.add_warning(f"Kept working tree version of {path}")
                return [
                    FileResult(
                        file=self._path_info(resolver.base, path, metadata),
                        success=True,
                        skipped=True,
                        reason="Working tree version kept",
                    )
                ]
            if resolution == ConflictResolution.MERGE and target.exists():
                markdown = read_text_file(target).rstrip("\n") + "\n\n" + markdown

        write_text_file(target, markdown)
        results = [FileResult(file=self._path_info(resolver.base, path, metadata), success=True, owner_id=note_id)]

        if config.include_attachments:
            for attachment in self.client.get_attachments(note_id):
                attachment_path = (
                    PurePosixPath("attachments") / safe_title_file_name(attachment.title, fallback="attachment")
                ).as_posix()
                write_binary_file(resolver.resolve(attachment_path), self.client.get_attachment_content(attachment.attachment_id))
                results.append(
                    FileResult(
                        file=self._path_info(resolver.base, attachment_path, {**metadata, "is_attachment": True}),
                        success=True,
                        owner_id=note_id,
                    )
                )
        return results

    def to_markdown(self, note: Any, content: str) -> str:
        front_matter: dict[str, Any] = {
            "id": note.note_id,
            "title": note.title,
            "created": note.date_created,
            "modified": note.date_modified,
        }
        for attribute in note.attributes:
            if attribute.type != "label" or attribute.name.startswith("git-") or attribute.name == "source":
                continue
            front_matter[attribute.name] = attribute.value
        body = self.converter.html_to_markdown(content) if note.type == "text" else content
        heading = "" if body.lstrip().startswith("#") else f"# {note.title}\n\n"
        return render_front_matter(front_matter) + heading + body

    @staticmethod
    def _path_info(repository: Path, path: str, metadata: dict[str, Any]) -> FileInfo:
        full_path = repository / path
        if full_path.is_file():
            return build_file_info(repository, full_path, relative=path, metadata=metadata)
        name = PurePosixPath(path).name
        return FileInfo(
            path=path,
            full_path=str(full_path),
            relative_path=path,
            name=name,
            extension=PurePosixPath(name).suffix.lower().lstrip("."),
            size=0,
            depth=path.count("/"),
            metadata=metadata,
        )
