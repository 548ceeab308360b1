import zipfile

import pytest

from trilium_cli.import_export.converters import ContentConverter
from trilium_cli.import_export.dependencies import PlainFrontMatterParser
from trilium_cli.import_export.formats import notion
from trilium_cli.import_export.formats.notion import (
    EXPORT_ARCHIVE_NAME,
    NotionExportHandler,
    NotionImportHandler,
    PageTree,
    build_hierarchy,
    clean_title,
    extract_page_id,
    parse_blocks,
    parse_page,
    render_block,
    render_blocks,
)
from trilium_cli.import_export.types import ImportExportError

PAGE_ID = "0123456789abcdef0123456789abcdef"


def _scan(client, context, archive, **options):
    handler = NotionImportHandler(client)
    config = handler.validate({"zip_path": archive, **options})
    return handler, config, handler.scan(config, context)


def test_parse_blocks_recognises_each_block_kind():
    markdown = "# Title\n> quoted\n```python\nprint(1)\n```\n- bullet\n1. numbered\n\n---\nplain text"

    blocks = parse_blocks(markdown, "p")

    assert [block.type for block in blocks] == [
        "heading_1",
        "quote",
        "code",
        "bulleted_list_item",
        "numbered_list_item",
        "paragraph",
    ]
    assert blocks[2].content == "print(1)"
    assert blocks[2].properties["language"] == "python"
    assert blocks[0].id == "p-block-0"


def test_unterminated_fence_runs_to_end():
    blocks = parse_blocks("```\nline one\nline two")

    assert len(blocks) == 1
    assert blocks[0].type == "code"
    assert blocks[0].content == "line one\nline two"


def test_page_ids_and_titles_are_taken_from_file_names():
    name = f"Meeting Notes {PAGE_ID}.md"

    assert extract_page_id(name) == PAGE_ID
    assert extract_page_id("plain.md") is None
    assert clean_title(f"Meeting Notes {PAGE_ID}") == "Meeting Notes"
    assert clean_title("01 Intro") == "Intro"


def test_csv_page_becomes_database_table():
    page = parse_page(
        "Tasks.csv",
        "Name,Status\nWrite,done\nReview,open\n",
        front_matter=PlainFrontMatterParser(),
        converter=ContentConverter(),
    )

    assert page.type == "database"
    assert page.title == "Tasks"
    assert page.blocks[0].properties["row_count"] == 2
    assert page.blocks[0].properties["column_count"] == 2
    html = render_block(page.blocks[0])
    assert "<th>Name</th>" in html
    assert "<td>Review</td>" in html


def test_html_page_title_comes_from_title_tag():
    page = parse_page(
        "Export.html",
        "<html><head><title>Quarterly Plan</title></head><body><p>Body</p></body></html>",
        front_matter=PlainFrontMatterParser(),
        converter=ContentConverter(),
    )

    assert page.title == "Quarterly Plan"
    assert "Body" in page.content


def test_build_hierarchy_links_pages_to_sibling_directories():
    tree = PageTree()
    for path in ("Root.md", "Root/Child.md", "Root/Child/Leaf.md", "Other.md"):
        tree.add(parse_page(path, "", front_matter=PlainFrontMatterParser(), converter=ContentConverter()))

    build_hierarchy(tree)

    by_path = {page.path: page for page in tree.pages.values()}
    assert by_path["Root/Child.md"].parent_id == by_path["Root.md"].id
    assert tree.depth(by_path["Root/Child/Leaf.md"].id) == 2
    assert [page.path for page in tree.walk()] == ["Other.md", "Root.md", "Root/Child.md", "Root/Child/Leaf.md"]


def test_three_level_archive_keeps_hierarchy(client, context, tmp_path, make_zip):
    archive = make_zip(
        tmp_path / "export.zip",
        {
            "root.md": "# Root\n\nTop level\n",
            "root/child.md": "# Child\n",
            "root/child/grandchild.md": "# Grandchild\n\n- item\n",
        },
    )

    handler, config, files = _scan(client, context, archive)
    result = handler.import_files(files, config, context)

    by_path = {file.path: file for file in files}
    grandchild = by_path["root/child/grandchild.md"]
    assert grandchild.depth == 2
    assert grandchild.metadata["parent_page_id"] == by_path["root/child.md"].metadata["notion_page_id"]

    assert result.summary.failed_files == 0
    root_note = client.find_by_title("Root")
    child_note = client.find_by_title("Child")
    leaf_note = client.find_by_title("Grandchild")
    assert root_note.parent_note_ids == ["root"]
    assert child_note.parent_note_ids == [root_note.note_id]
    assert leaf_note.parent_note_ids == [child_note.note_id]
    assert "<h1>Root</h1>" in client.get_note_content(root_note.note_id)
    assert "<li>item</li>" in client.get_note_content(leaf_note.note_id)


def test_page_labels_record_source_and_ids(client, context, tmp_path, make_zip):
    archive = make_zip(tmp_path / "export.zip", {f"Plan {PAGE_ID}.md": "---\nstatus: active\n---\n# Plan\n"})

    handler, config, files = _scan(client, context, archive, preserve_ids=True)
    handler.import_files(files, config, context)

    note = client.find_by_title("Plan")
    assert note.labels("source") == ["notion"]
    assert note.labels("notion-page-id") == [PAGE_ID]
    assert note.labels("notion-page-type") == ["page"]
    assert note.labels("notion-status") == ["active"]


def test_raw_mode_keeps_page_markdown(client, context, tmp_path, make_zip):
    archive = make_zip(tmp_path / "export.zip", {"Page.md": "# Page\n\nBody **bold**\n"})

    handler, config, files = _scan(client, context, archive, convert_blocks=False)
    handler.import_files(files, config, context)

    assert client.get_note_content(client.find_by_title("Page").note_id).strip() == "# Page\n\nBody **bold**"


def test_attachment_is_stored_on_owning_page(client, context, tmp_path, make_zip):
    image = b"\x89PNG\r\n\x1a\nfake"
    archive = make_zip(tmp_path / "export.zip", {"Page.md": "# Page\n", "Page/photo.png": image})

    handler, config, files = _scan(client, context, archive)
    result = handler.import_files(files, config, context)

    page = client.find_by_title("Page")
    attachments = client.get_attachments(page.note_id)
    assert [attachment.title for attachment in attachments] == ["photo.png"]
    assert client.decoded_attachment(attachments[0].attachment_id) == image
    assert result.attachments == [attachments[0].attachment_id]


def test_entries_escaping_extraction_directory_are_skipped(client, context, tmp_path, make_zip):
    archive = make_zip(tmp_path / "export.zip", {"../evil.md": "# Evil\n", "ok.md": "# Ok\n"})

    handler, config, files = _scan(client, context, archive)

    assert [file.path for file in files] == ["ok.md"]
    assert not (context.temp_directory / "evil.md").exists()
    assert not (tmp_path / "evil.md").exists()
    codes = [error.code for error in handler.errors.errors]
    assert codes == ["BLOCKED_PATH_PATTERN"]
    assert handler.errors.errors[0].details["path"] == "../evil.md"


def test_invalid_archive_is_rejected(client, tmp_path):
    bogus = tmp_path / "not-a.zip"
    bogus.write_text("plain text", encoding="utf-8")

    with pytest.raises(ImportExportError) as exc:
        NotionImportHandler(client).validate({"zip_path": bogus})
    assert exc.value.code == "INVALID_ARCHIVE"


def test_import_requires_zip_path(client):
    with pytest.raises(ImportExportError) as exc:
        NotionImportHandler(client).validate({})
    assert exc.value.code == "INVALID_CONFIG"


def test_dry_run_import_creates_nothing(client, context, tmp_path, make_zip):
    archive = make_zip(tmp_path / "export.zip", {"a.md": "# A\n", "a/b.md": "# B\n"})

    handler, config, files = _scan(client, context, archive, dry_run=True)
    result = handler.import_files(files, config, context)

    assert client.created == []
    assert result.summary.successful_files == 2


def test_export_zips_pages_in_notion_layout(client, context, tmp_path):
    parent = client.add_note("Parent", "<p>top</p>", labels={"notion-status": "Done"})
    client.add_note("Child", "<p>nested</p>", parent=parent)
    client.add_attachment(parent, "diagram.png", b"png-bytes", mime="image/png")

    exporter = NotionExportHandler(client)
    config = exporter.validate({"output_path": tmp_path / "out"})
    files = exporter.plan([parent], config, context)
    result = exporter.export_notes(files, config, context)

    archive_path = tmp_path / "out" / EXPORT_ARCHIVE_NAME
    assert result.output_path == str(archive_path)
    with zipfile.ZipFile(archive_path) as archive:
        names = sorted(archive.namelist())
        parent_text = archive.read("Parent.md").decode("utf-8")
        attachment = archive.read("attachments/diagram.png")
    assert names == ["Parent.md", "Parent/Child.md", "attachments/diagram.png"]
    assert parent_text.startswith("---\n")
    assert "# Parent" in parent_text
    assert attachment == b"png-bytes"
    assert result.attachments == ["attachments/diagram.png"]


def test_export_dry_run_writes_no_archive(client, context, tmp_path):
    note_id = client.add_note("Solo", "<p>solo</p>")

    exporter = NotionExportHandler(client)
    config = exporter.validate({"output_path": tmp_path / "out", "dry_run": True})
    result = exporter.export_notes(exporter.plan([note_id], config, context), config, context)

    assert not (tmp_path / "out").exists()
    assert result.summary.successful_files == 1


def test_block_rendering_escapes_text():
    blocks = parse_blocks("a <b> & c", "p")

    assert render_block(blocks[0]) == "<p>a &lt;b&gt; &amp; c</p>\n"


def test_list_items_are_wrapped_in_list_elements():
    blocks = parse_blocks("- a\n- b\n1. one\ntext")

    assert render_blocks(blocks) == (
        "<ul>\n<li>a</li>\n<li>b</li>\n</ul>\n<ol>\n<li>one</li>\n</ol>\n<p>text</p>\n"
    )


def test_rules_of_any_length_are_dropped():
    blocks = parse_blocks("-----\ntext\n---\n")

    assert [(block.type, block.content) for block in blocks] == [("paragraph", "text")]


def test_children_of_a_failed_page_are_not_created(client, context, tmp_path, make_zip, monkeypatch):
    archive = make_zip(
        tmp_path / "export.zip",
        {"root.md": "# Root\n", "root/child.md": "# Child\n", "other.md": "# Other\n"},
    )
    create_note = client.create_note

    def reject_root(**kwargs):
        if kwargs["title"] == "Root":
            raise RuntimeError("server rejected note")
        return create_note(**kwargs)

    monkeypatch.setattr(client, "create_note", reject_root)
    handler, config, files = _scan(client, context, archive)
    result = handler.import_files(files, config, context)

    by_path = {file_result.file.path: file_result for file_result in result.files}
    assert by_path["root.md"].success is False
    assert by_path["root/child.md"].success is False
    assert by_path["root/child.md"].error.code == "PARENT_NOT_CREATED"
    assert by_path["other.md"].success is True
    assert [note.title for note in client.children_of("root")] == ["Other"]
    assert not any(note.title == "Child" for note in client.notes.values())


def test_corrupt_entry_is_reported_and_the_rest_extracted(client, context, tmp_path):
    archive = tmp_path / "export.zip"
    with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_STORED) as handle:
        handle.writestr("a.md", "# A\n")
        handle.writestr("b.md", "# B\n\nunmistakable body\n")
    raw = bytearray(archive.read_bytes())
    offset = raw.index(b"unmistakable body")
    raw[offset] ^= 0xFF
    archive.write_bytes(bytes(raw))

    handler, config, files = _scan(client, context, archive)

    assert [file.path for file in files] == ["a.md"]
    errors = handler.errors.errors
    assert [error.code for error in errors] == ["ARCHIVE_EXTRACTION_ERROR"]
    assert errors[0].details["path"] == "b.md"


def test_oversized_entry_is_skipped_before_extraction(client, context, tmp_path, make_zip, monkeypatch):
    monkeypatch.setattr(notion, "MAX_ENTRY_SIZE", 16)
    archive = make_zip(tmp_path / "export.zip", {"big.md": "# Big\n\n" + "x" * 64, "small.md": "# S\n"})

    handler, config, files = _scan(client, context, archive)

    assert [file.path for file in files] == ["small.md"]
    errors = handler.errors.errors
    assert [error.code for error in errors] == ["CONTENT_TOO_LARGE"]
    assert errors[0].details["size"] > 16
    assert not (context.temp_directory / "notion-import" / "big.md").exists()


def test_scanning_twice_gives_the_same_files(client, context, tmp_path, make_zip):
    archive = make_zip(tmp_path / "export.zip", {"a.md": "# A\n", "a/b.md": "# B\n", "a/pic.png": b"\x89PNG"})
    handler = NotionImportHandler(client)
    config = handler.validate({"zip_path": archive})

    first = handler.scan(config, context)
    second = handler.scan(config, context)

    assert first == second
    assert client.created == []
