"""Shared pytest fixtures: an in-memory note server and per-test operation contexts."""

from __future__ import annotations

import base64
import itertools
import re
import subprocess
import threading
import zipfile
from pathlib import Path
from typing import Optional

import pytest

from trilium_cli.etapi.models import Attachment, Attribute, Branch, CreatedNote, Note
from trilium_cli.import_export.types import OperationContext

_LABEL_TERM_RE = re.compile(r'#([\w-]+)(?:="((?:[^"\\]|\\.)*)")?')


class FakeNoteClient:
    """Thread-safe stand-in for the ETAPI client that keeps notes in memory.

    Creating a note under a parent that does not exist raises, so tests can
    rely on parent-before-child ordering being enforced.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.notes: dict[str, Note] = {"root": Note(note_id="root", title="root")}
        self.contents: dict[str, str] = {"root": ""}
        self.attachments: dict[str, Attachment] = {}
        self.attachment_data: dict[str, bytes] = {}
        self.created: list[str] = []

    # seeding helpers ---------------------------------------------------
    def add_note(
        self,
        title: str,
        content: str = "",
        *,
        parent: str = "root",
        type: str = "text",
        mime: str = "text/html",
        labels: Optional[dict[str, str]] = None,
    ) -> str:
        note_id = self.create_note(parent_note_id=parent, title=title, type=type, content=content, mime=mime).note.note_id
        for name, value in (labels or {}).items():
            self.create_attribute(note_id=note_id, type="label", name=name, value=value)
        return note_id

    def add_attachment(self, owner_id: str, title: str, data: bytes, mime: str = "application/octet-stream") -> str:
        attachment = self.create_attachment(owner_id=owner_id, title=title, mime=mime)
        self.attachment_data[attachment.attachment_id] = data
        attachment.content_length = len(data)
        return attachment.attachment_id

    def children_of(self, parent_id: str) -> list[Note]:
        return [self.notes[child] for child in self.notes[parent_id].child_note_ids]

    def find_by_title(self, title: str) -> Note:
        matches = [note for note in self.notes.values() if note.title == title]
        assert len(matches) == 1, f"expected one note titled {title!r}, found {len(matches)}"
        return matches[0]

    # NoteRepository ----------------------------------------------------
    def get_note(self, note_id: str) -> Note:
        return self.notes[note_id]

    def get_note_content(self, note_id: str) -> str:
        return self.contents[note_id]

    def create_note(
        self,
        *,
        parent_note_id: str,
        title: str,
        type: str = "text",
        content: str = "",
        mime: Optional[str] = None,
    ) -> CreatedNote:
        with self._lock:
            if parent_note_id not in self.notes:
                raise ValueError(f"Parent note {parent_note_id} does not exist")
            note_id = f"n{next(self._ids)}"
            note = Note(
                note_id=note_id,
                title=title,
                type=type,
                mime=mime or "text/html",
                parent_note_ids=[parent_note_id],
            )
            self.notes[note_id] = note
            self.contents[note_id] = content
            self.notes[parent_note_id].child_note_ids.append(note_id)
            self.created.append(note_id)
        branch = Branch(branch_id=f"{parent_note_id}_{note_id}", note_id=note_id, parent_note_id=parent_note_id)
        return CreatedNote(note=note, branch=branch)

    def update_note(self, note_id: str, **changes: object) -> Note:
        note = self.notes[note_id]
        if "title" in changes:
            note.title = str(changes["title"])
        return note

    def update_note_content(self, note_id: str, content: str) -> None:
        self.contents[note_id] = content

    def delete_note(self, note_id: str) -> None:
        with self._lock:
            note = self.notes.pop(note_id)
            self.contents.pop(note_id, None)
            for parent_id in note.parent_note_ids:
                if parent_id in self.notes:
                    self.notes[parent_id].child_note_ids.remove(note_id)

    def get_attributes(self, note_id: str) -> list[Attribute]:
        return list(self.notes[note_id].attributes)

    def create_attribute(
        self,
        *,
        note_id: str,
        type: str,
        name: str,
        value: str = "",
        is_inheritable: bool = False,
    ) -> Attribute:
        with self._lock:
            attribute = Attribute(
                attribute_id=f"a{next(self._ids)}",
                note_id=note_id,
                type=type,
                name=name,
                value=value,
                is_inheritable=is_inheritable,
            )
            self.notes[note_id].attributes.append(attribute)
        return attribute

    def get_attachments(self, note_id: str) -> list[Attachment]:
        return [attachment for attachment in self.attachments.values() if attachment.owner_id == note_id]

    def create_attachment(
        self,
        *,
        owner_id: str,
        title: str,
        mime: str,
        role: str = "file",
        content: str = "",
    ) -> Attachment:
        with self._lock:
            if owner_id not in self.notes:
                raise ValueError(f"Owner note {owner_id} does not exist")
            attachment = Attachment(
                attachment_id=f"att{next(self._ids)}",
                owner_id=owner_id,
                title=title,
                role=role,
                mime=mime,
                content_length=len(content),
            )
            self.attachments[attachment.attachment_id] = attachment
            self.attachment_data[attachment.attachment_id] = content.encode("utf-8")
        return attachment

    def get_attachment_content(self, attachment_id: str) -> bytes:
        return self.attachment_data[attachment_id]

    def decoded_attachment(self, attachment_id: str) -> bytes:
        return base64.b64decode(self.attachment_data[attachment_id])

    def search_notes(self, query: str, *, limit: int = 50, include_archived: bool = False) -> list[Note]:
        """Answer queries made of ``#name`` and ``#name="value"`` terms, all of which must match."""

        terms = [
            (name, re.sub(r"\\(.)", r"\1", raw_value) if raw_value else None)
            for name, raw_value in _LABEL_TERM_RE.findall(query)
        ]
        if not terms or _LABEL_TERM_RE.sub("", query).strip():
            return []
        with self._lock:
            notes = list(self.notes.values())

        def _matches(note: Note, name: str, value: Optional[str]) -> bool:
            return any(
                attribute.type == "label" and attribute.name == name and (value is None or attribute.value == value)
                for attribute in note.attributes
            )

        found = [note for note in notes if all(_matches(note, name, value) for name, value in terms)]
        return found[:limit]


class FakeGit:
    """Records git invocations and answers them from a table of canned outputs."""

    def __init__(self, responses: Optional[dict[tuple[str, ...], str]] = None, failures: tuple[str, ...] = ()) -> None:
        self.calls: list[list[str]] = []
        self.responses = {
            ("branch", "--show-current"): "main\n",
            ("status", "--porcelain"): "",
            ("rev-parse", "HEAD"): "abc123\n",
            **(responses or {}),
        }
        self.failures = set(failures)

    def __call__(self, command: list[str], **kwargs: object) -> subprocess.CompletedProcess:
        assert command[0] == "git"
        assert kwargs["check"] is True
        self.calls.append(command[1:])
        args = tuple(command[1:])
        if args[0] in self.failures or (args[0] == "remote" and args not in self.responses):
            raise subprocess.CalledProcessError(1, command, output="", stderr=f"{args[0]} failed")
        return subprocess.CompletedProcess(command, 0, stdout=self.responses.get(args, ""), stderr="")

    def subcommands(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def client() -> FakeNoteClient:
    return FakeNoteClient()


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def context(tmp_path: Path) -> OperationContext:
    return OperationContext(
        operation_id="test-operation",
        trilium_url="http://localhost:8080",
        api_token="token",
        working_directory=tmp_path,
        temp_directory=tmp_path / "operation-temp",
    )


@pytest.fixture
def write_tree():
    """Create files under a root from a ``{relative path: text or bytes}`` mapping."""

    def _write(root: Path, files: dict[str, str | bytes]) -> Path:
        for relative, content in files.items():
            target = root / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                target.write_bytes(content)
            else:
                target.write_text(content, encoding="utf-8")
        return root

    return _write


@pytest.fixture
def make_zip():
    """Build a zip archive from a ``{entry name: text or bytes}`` mapping."""

    def _make(path: Path, entries: dict[str, str | bytes]) -> Path:
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for name, content in entries.items():
                archive.writestr(name, content)
        return path

    return _make
