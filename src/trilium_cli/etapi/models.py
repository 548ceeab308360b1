"""Typed models for Trilium ETAPI entities."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(slots=True)
class Attribute:
    """Label or relation attached to a note."""

    attribute_id: str
    note_id: str
    type: str
    name: str
    value: str = ""
    position: int = 0
    is_inheritable: bool = False


@dataclass(slots=True)
class Note:
    """Note metadata as returned by ``GET /notes/{id}``."""

    note_id: str
    title: str
    type: str = "text"
    mime: str = "text/html"
    is_protected: bool = False
    attributes: list[Attribute] = field(default_factory=list)
    parent_note_ids: list[str] = field(default_factory=list)
    child_note_ids: list[str] = field(default_factory=list)
    date_created: Optional[str] = None
    date_modified: Optional[str] = None

    def labels(self, name: str) -> list[str]:
        """Return the values of every label called ``name``."""

        return [
            attribute.value
            for attribute in self.attributes
            if attribute.type == "label" and attribute.name == name
        ]

    def label(self, name: str) -> Optional[str]:
        values = self.labels(name)
        return values[0] if values else None


@dataclass(slots=True)
class Branch:
    """Placement of a note beneath a parent note."""

    branch_id: str
    note_id: str
    parent_note_id: str
    note_position: int = 0
    prefix: Optional[str] = None


@dataclass(slots=True)
class CreatedNote:
    """Payload returned by ``POST /create-note``."""

    note: Note
    branch: Branch


@dataclass(slots=True)
class Attachment:
    """Binary or text attachment owned by a note."""

    attachment_id: str
    owner_id: str
    title: str
    role: str = "file"
    mime: str = "application/octet-stream"
    position: int = 0
    content_length: int = 0
    date_modified: Optional[str] = None
