import json

import httpx
import pytest

from trilium_cli.etapi.client import EtapiClient


def _client(handler):
    return EtapiClient(base_url="http://trilium.local:8080/", token="secret", transport=httpx.MockTransport(handler))


NOTE_PAYLOAD = {
    "noteId": "abc",
    "title": "Hello",
    "type": "text",
    "mime": "text/html",
    "attributes": [{"attributeId": "a1", "noteId": "abc", "type": "label", "name": "tag", "value": "x"}],
    "parentNoteIds": ["root"],
    "childNoteIds": [],
    "utcDateCreated": "2024-01-01 10:00:00.000Z",
}


def test_requests_carry_token_and_api_prefix():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"appVersion": "0.63"})

    with _client(handler) as client:
        assert client.get_app_info() == {"appVersion": "0.63"}

    assert seen[0].headers["Authorization"] == "secret"
    assert seen[0].url.path == "/etapi/app-info"


def test_create_note_sends_payload_and_parses_response():
    captured = {}

    def handler(request):
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            201,
            json={"note": NOTE_PAYLOAD, "branch": {"branchId": "root_abc", "noteId": "abc", "parentNoteId": "root"}},
        )

    with _client(handler) as client:
        created = client.create_note(parent_note_id="root", title="Hello", content="<p>hi</p>")

    assert captured["body"] == {"parentNoteId": "root", "title": "Hello", "type": "text", "content": "<p>hi</p>"}
    assert created.note.note_id == "abc"
    assert created.note.labels("tag") == ["x"]
    assert created.note.date_created == "2024-01-01 10:00:00.000Z"
    assert created.branch.parent_note_id == "root"


def test_search_passes_query_parameters():
    def handler(request):
        assert request.url.params["search"] == '#source="obsidian"'
        assert request.url.params["limit"] == "5"
        assert request.url.params["includeArchivedNotes"] == "false"
        return httpx.Response(200, json={"results": [NOTE_PAYLOAD]})

    with _client(handler) as client:
        notes = client.search_notes('#source="obsidian"', limit=5)

    assert [note.title for note in notes] == ["Hello"]


def test_update_content_is_sent_as_plain_text():
    captured = {}

    def handler(request):
        captured["method"] = request.method
        captured["type"] = request.headers["Content-Type"]
        captured["body"] = request.content.decode("utf-8")
        return httpx.Response(204)

    with _client(handler) as client:
        client.update_note_content("abc", "<p>é</p>")

    assert captured == {"method": "PUT", "type": "text/plain", "body": "<p>é</p>"}


def test_attachments_round_trip_through_the_api():
    def handler(request):
        if request.url.path.endswith("/content"):
            return httpx.Response(200, content=b"\x89PNG")
        if request.method == "POST":
            body = json.loads(request.content)
            return httpx.Response(201, json={"attachmentId": "att1", **body, "contentLength": 4})
        return httpx.Response(200, json=[{"attachmentId": "att1", "ownerId": "abc", "title": "img.png", "mime": "image/png"}])

    with _client(handler) as client:
        created = client.create_attachment(owner_id="abc", title="img.png", mime="image/png", role="image", content="iVBO")
        listed = client.get_attachments("abc")
        data = client.get_attachment_content("att1")

    assert created.owner_id == "abc"
    assert created.role == "image"
    assert listed[0].title == "img.png"
    assert data == b"\x89PNG"


def test_http_errors_are_raised():
    with _client(lambda request: httpx.Response(404, json={"code": "NOTE_NOT_FOUND"})) as client:
        with pytest.raises(httpx.HTTPStatusError):
            client.get_note("missing")


def test_attribute_names_with_spaces_are_rejected_locally():
    def handler(request):
        raise AssertionError("no request expected")

    with _client(handler) as client:
        with pytest.raises(ValueError):
            client.create_attribute(note_id="abc", type="label", name="bad name")
