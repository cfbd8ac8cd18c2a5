"""
Unit tests for the MIME part tree walker.
"""

import base64

from app.models.mail import RawMessagePart
from app.services.mime_walker import walk_message


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def _text(mime_type: str, content: str) -> dict:
    return {"mimeType": mime_type, "filename": "", "body": {"data": _b64(content), "size": len(content)}}


def _attachment(filename: str, attachment_id: str, mime_type: str = "application/pdf", size: int = 10) -> dict:
    return {
        "mimeType": mime_type,
        "filename": filename,
        "body": {"attachmentId": attachment_id, "size": size},
    }


def _multipart(subtype: str, *parts: dict) -> dict:
    return {"mimeType": f"multipart/{subtype}", "filename": "", "body": {"size": 0}, "parts": list(parts)}


def _walk(tree: dict, **kwargs):
    return walk_message(RawMessagePart.model_validate(tree), **kwargs)


class TestContentAccumulation:
    """text/html and text/plain bodies end up in the right accumulator."""

    def test_alternative_parts(self):
        tree = _multipart(
            "alternative",
            _text("text/plain", "Hello plain"),
            _text("text/html", "<p>Hello html</p>"),
        )
        result = _walk(tree)
        assert result.text == "Hello plain"
        assert result.html == "<p>Hello html</p>"
        assert result.attachments == []

    def test_single_part_message_body_on_root(self):
        result = _walk(_text("text/plain", "just text"))
        assert result.text == "just text"
        assert result.html == ""

    def test_multiple_bodies_concatenated_in_order(self):
        tree = _multipart("mixed", _text("text/html", "<p>1</p>"), _text("text/html", "<p>2</p>"))
        assert _walk(tree).html == "<p>1</p><p>2</p>"

    def test_other_inline_types_ignored(self):
        tree = _multipart("mixed", _text("text/calendar", "BEGIN:VCALENDAR"), _text("text/plain", "x"))
        result = _walk(tree)
        assert result.text == "x"
        assert "VCALENDAR" not in result.html

    def test_undecodable_body_kept_raw_and_counted(self):
        tree = _multipart("alternative", {"mimeType": "text/plain", "body": {"data": "@@not base64@@"}})
        result = _walk(tree)
        assert result.text == "@@not base64@@"
        assert result.decode_fallbacks == 1

    def test_quoted_printable_inside_base64_is_decoded(self):
        result = _walk(_text("text/html", '<p style=3D"x">caf=C3=A9</p>'))
        assert result.html == '<p style="x">café</p>'


class TestAttachmentDiscovery:
    """Attachments are filename + attachmentId parts, in pre-order."""

    def test_attachment_order_is_preorder(self):
        """Order follows traversal, regardless of where content parts sit."""
        tree = _multipart(
            "mixed",
            _attachment("first.pdf", "att-1"),
            _multipart(
                "alternative",
                _text("text/plain", "body"),
                _attachment("second.png", "att-2", "image/png"),
            ),
            _text("text/html", "<p>after</p>"),
            _attachment("third.txt", "att-3", "text/plain"),
        )
        result = _walk(tree)
        assert [a.filename for a in result.attachments] == ["first.pdf", "second.png", "third.txt"]
        assert [a.provider_reference_id for a in result.attachments] == ["att-1", "att-2", "att-3"]

    def test_attachment_nested_three_levels_deep(self):
        tree = _multipart(
            "mixed",
            _multipart("related", _multipart("alternative", _attachment("deep.pdf", "att-deep"))),
        )
        result = _walk(tree)
        assert len(result.attachments) == 1
        assert result.attachments[0].filename == "deep.pdf"

    def test_descriptor_fields(self):
        result = _walk(_multipart("mixed", _attachment("r.pdf", "att-9", "application/pdf", 1234)))
        attachment = result.attachments[0]
        assert attachment.mime_type == "application/pdf"
        assert attachment.size == 1234
        assert attachment.download_url is None
        assert attachment.storage_path is None

    def test_missing_mime_type_defaults_to_octet_stream(self):
        part = {"mimeType": "", "filename": "blob", "body": {"attachmentId": "a", "size": 1}}
        result = _walk(_multipart("mixed", part))
        assert result.attachments[0].mime_type == "application/octet-stream"

    def test_text_attachment_is_not_read_as_body(self):
        """A text/plain part with a filename is an attachment, not content."""
        part = {
            "mimeType": "text/plain",
            "filename": "notes.txt",
            "body": {"attachmentId": "att-n", "data": _b64("should not appear"), "size": 17},
        }
        result = _walk(_multipart("mixed", part))
        assert result.text == ""
        assert len(result.attachments) == 1

    def test_filename_without_attachment_id_is_not_an_attachment(self):
        part = {"mimeType": "text/plain", "filename": "inline.txt", "body": {"data": _b64("inline"), "size": 6}}
        result = _walk(_multipart("mixed", part))
        assert result.attachments == []
        assert result.text == "inline"


class TestDepthGuard:
    def test_parts_beyond_max_depth_are_skipped(self):
        tree = _multipart(
            "mixed",
            _text("text/plain", "top"),
            _multipart("mixed", _multipart("mixed", _attachment("too-deep.pdf", "att-x"))),
        )
        result = _walk(tree, max_depth=2)
        assert result.text == "top"
        assert result.attachments == []
        assert result.skipped_parts == 1

    def test_deep_tree_does_not_recurse(self):
        """A deep tree walks fully when the limit allows it."""
        leaf = _attachment("bottom.pdf", "att-bottom")
        tree = leaf
        for _ in range(60):
            tree = _multipart("mixed", tree)
        result = _walk(tree, max_depth=1000)
        assert [a.filename for a in result.attachments] == ["bottom.pdf"]

    def test_very_deep_tree_is_truncated_not_rejected(self):
        """Hundreds of nesting levels cost the deep parts, never the message."""
        tree = _attachment("bottom.pdf", "att-bottom")
        for _ in range(300):
            tree = _multipart("mixed", tree)
        tree["parts"].insert(0, _text("text/plain", "top"))

        result = _walk(tree)

        assert result.text == "top"
        assert result.attachments == []
        assert result.skipped_parts > 0

    def test_raw_dict_payload_is_accepted(self):
        result = walk_message(_multipart("mixed", _text("text/html", "<p>x</p>")))
        assert result.html == "<p>x</p>"

    def test_malformed_child_is_skipped(self):
        tree = _multipart(
            "mixed",
            {"mimeType": "text/plain", "headers": "not-a-list"},
            _text("text/plain", "still here"),
        )
        result = _walk(tree)
        assert result.text == "still here"
        assert result.skipped_parts == 1


class TestCharset:
    def test_latin1_part_decoded_with_declared_charset(self):
        part = {
            "mimeType": "text/plain",
            "headers": [{"name": "Content-Type", "value": 'text/plain; charset="ISO-8859-1"'}],
            "body": {"data": base64.urlsafe_b64encode("café".encode("latin-1")).decode("ascii")},
        }
        assert _walk(_multipart("mixed", part)).text == "café"

    def test_charset_lookup(self):
        part = RawMessagePart.model_validate(
            {"headers": [{"name": "content-type", "value": "text/html; charset=Windows-1252"}]}
        )
        assert part.charset() == "windows-1252"
        assert RawMessagePart().charset() == "utf-8"
