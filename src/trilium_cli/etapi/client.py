"""HTTP client wrapper for interacting with the Trilium ETAPI."""

from __future__ import annotations

from typing import Optional
from urllib.parse import urljoin

import httpx

from .models import Attachment, Attribute, Branch, CreatedNote, Note


class EtapiClient:
    """Thin wrapper above the Trilium external REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        api_root = urljoin(base_url.rstrip("/") + "/", "etapi/")
        self._client = httpx.Client(
            base_url=api_root,
            timeout=timeout,
            headers={"Authorization": token},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "EtapiClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401 - standard context manager signature
        self.close()

    # ------------------------------------------------------------------
    # Low-level helpers
    # ------------------------------------------------------------------
    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        response = self._client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    def _request(self, method: str, url: str, **kwargs) -> dict:
        return self._send(method, url, **kwargs).json()

    # ------------------------------------------------------------------
    # Parsers
    # ------------------------------------------------------------------
    @staticmethod
    def _to_attribute(data: dict) -> Attribute:
        return Attribute(
            attribute_id=str(data.get("attributeId", "")),
            note_id=str(data.get("noteId", "")),
            type=data.get("type", "label"),
            name=data["name"],
            value=data.get("value") or "",
            position=data.get("position", 0),
            is_inheritable=bool(data.get("isInheritable", False)),
        )

    @staticmethod
    def _to_note(data: dict) -> Note:
        return Note(
            note_id=str(data["noteId"]),
            title=data.get("title", ""),
            type=data.get("type", "text"),
            mime=data.get("mime", "text/html"),
            is_protected=bool(data.get("isProtected", False)),
            attributes=[EtapiClient._to_attribute(item) for item in data.get("attributes", [])],
            parent_note_ids=list(data.get("parentNoteIds", [])),
            child_note_ids=list(data.get("childNoteIds", [])),
            date_created=data.get("utcDateCreated") or data.get("dateCreated"),
            date_modified=data.get("utcDateModified") or data.get("dateModified"),
        )

    @staticmethod
    def _to_branch(data: dict) -> Branch:
        return Branch(
            branch_id=str(data.get("branchId", "")),
            note_id=str(data.get("noteId", "")),
            parent_note_id=str(data.get("parentNoteId", "")),
            note_position=data.get("notePosition", 0),
            prefix=data.get("prefix"),
        )

    @staticmethod
    def _to_attachment(data: dict) -> Attachment:
        return Attachment(
            attachment_id=str(data["attachmentId"]),
            owner_id=str(data.get("ownerId", "")),
            title=data.get("title", ""),
            role=data.get("role", "file"),
            mime=data.get("mime", "application/octet-stream"),
            position=data.get("position", 0),
            content_length=data.get("contentLength", 0),
            date_modified=data.get("utcDateModified") or data.get("dateModified"),
        )

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------
    def get_app_info(self) -> dict:
        return self._request("GET", "app-info")

    def search_notes(self, query: str, *, limit: int = 50, include_archived: bool = False) -> list[Note]:
        params = {
            "search": query,
            "limit": limit,
            "includeArchivedNotes": str(include_archived).lower(),
        }
        data = self._request("GET", "notes", params=params)
        return [self._to_note(item) for item in data.get("results", [])]

    def get_note(self, note_id: str) -> Note:
        return self._to_note(self._request("GET", f"notes/{note_id}"))

    def get_note_content(self, note_id: str) -> str:
        return self._send("GET", f"notes/{note_id}/content").text

    def create_note(
        self,
        *,
        parent_note_id: str,
        title: str,
        type: str = "text",
        content: str = "",
        mime: Optional[str] = None,
    ) -> CreatedNote:
        payload: dict[str, object] = {
            "parentNoteId": parent_note_id,
            "title": title,
            "type": type,
            "content": content,
        }
        if mime:
            payload["mime"] = mime
        data = self._request("POST", "create-note", json=payload)
        return CreatedNote(note=self._to_note(data["note"]), branch=self._to_branch(data["branch"]))

    def update_note(self, note_id: str, **changes: object) -> Note:
        return self._to_note(self._request("PATCH", f"notes/{note_id}", json=changes))

    def update_note_content(self, note_id: str, content: str) -> None:
        self._send(
            "PUT",
            f"notes/{note_id}/content",
            content=content.encode("utf-8"),
            headers={"Content-Type": "text/plain"},
        )

    def delete_note(self, note_id: str) -> None:
        self._send("DELETE", f"notes/{note_id}")

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------
    def get_attributes(self, note_id: str) -> list[Attribute]:
        return self.get_note(note_id).attributes

    def create_attribute(
        self,
        *,
        note_id: str,
        type: str,
        name: str,
        value: str = "",
        is_inheritable: bool = False,
    ) -> Attribute:
        if not name.strip() or any(char.isspace() for char in name):
            raise ValueError(f"Attribute name {name!r} cannot be empty or contain spaces")
        payload = {
            "noteId": note_id,
            "type": type,
            "name": name,
            "value": value,
            "isInheritable": is_inheritable,
        }
        return self._to_attribute(self._request("POST", "attributes", json=payload))

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------
    def get_attachments(self, note_id: str) -> list[Attachment]:
        data = self._request("GET", f"notes/{note_id}/attachments")
        return [self._to_attachment(item) for item in data]

    def create_attachment(
        self,
        *,
        owner_id: str,
        title: str,
        mime: str,
        role: str = "file",
        content: str = "",
    ) -> Attachment:
        payload = {
            "ownerId": owner_id,
            "title": title,
            "mime": mime,
            "role": role,
            "content": content,
        }
        return self._to_attachment(self._request("POST", "attachments", json=payload))

    def get_attachment_content(self, attachment_id: str) -> bytes:
        return self._send("GET", f"attachments/{attachment_id}/content").content


def create_client(*, base_url: str, api_token: str, timeout: float = 30.0) -> EtapiClient:
    return EtapiClient(base_url=base_url, token=api_token, timeout=timeout)
