"""
Unit tests for attachment materialization (fetch -> decode -> upload -> sign).
"""

import asyncio
import base64
import re
import threading
import time
from unittest.mock import AsyncMock, patch

import pytest

from app.errors import AccessRevokedError, TransientProviderError
from app.models.mail import AttachmentDescriptor
from app.services.attachment_materializer import (
    _monotonic_timestamp_ms,
    build_storage_path,
    materialize_attachment,
    materialize_attachments,
    sanitize_filename,
)


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _descriptor(filename: str = "report.pdf", ref: str = "att-1", size: int = 0) -> AttachmentDescriptor:
    return AttachmentDescriptor(
        filename=filename,
        mime_type="application/pdf",
        size=size,
        provider_reference_id=ref,
    )


def _signed(path: str, expiry_seconds: int = 3600) -> str:
    return f"https://files.example/{path}?token=t"


class TestStoragePath:
    def test_sanitize_filename_replaces_unsafe_characters(self):
        assert sanitize_filename("Q3 report (final).pdf") == "Q3_report__final_.pdf"
        assert sanitize_filename("../etc/passwd") == ".._etc_passwd"
        assert sanitize_filename("résumé.pdf") == "r_sum_.pdf"

    def test_empty_filename_gets_placeholder(self):
        assert sanitize_filename("") == "attachment"

    def test_path_layout(self):
        assert build_storage_path("u1", "m1", "a b.pdf", timestamp_ms=42) == "u1/m1/42_a_b.pdf"

    def test_repeated_paths_never_collide(self):
        """Materializing the same attachment twice gives two different paths."""
        paths = {build_storage_path("u1", "m1", "same.pdf") for _ in range(50)}
        assert len(paths) == 50

    def test_timestamps_strictly_increase(self):
        stamps = [_monotonic_timestamp_ms() for _ in range(20)]
        assert stamps == sorted(set(stamps))


class TestMaterializeAttachment:
    """Single attachment, success and each failure point."""

    @pytest.mark.asyncio
    async def test_success_sets_url_path_and_size(self):
        fetch = AsyncMock(return_value=_b64(b"abc"))
        with patch('app.services.storage.upload_attachment') as mock_upload, \
                patch('app.services.storage.get_signed_url', side_effect=_signed):
            result = await materialize_attachment(
                _descriptor(), message_id="m1", user_id="u1", fetch_data=fetch
            )

        fetch.assert_awaited_once_with("m1", "att-1")
        content, path, content_type = mock_upload.call_args[0]
        assert content == b"abc"
        assert content_type == "application/pdf"
        assert re.fullmatch(r"u1/m1/\d+_report\.pdf", path)
        assert result.storage_path == path
        assert result.download_url == f"https://files.example/{path}?token=t"
        assert result.size == 3
        assert result.filename == "report.pdf"

    @pytest.mark.asyncio
    async def test_declared_size_is_kept(self):
        fetch = AsyncMock(return_value=_b64(b"abc"))
        with patch('app.services.storage.upload_attachment'), \
                patch('app.services.storage.get_signed_url', side_effect=_signed):
            result = await materialize_attachment(
                _descriptor(size=999), message_id="m1", user_id="u1", fetch_data=fetch
            )
        assert result.size == 999

    @pytest.mark.asyncio
    async def test_fetch_failure_returns_original(self):
        """Provider errors while fetching bytes only cost the download URL."""
        descriptor = _descriptor()
        for error in (TransientProviderError("503", status_code=503), AccessRevokedError()):
            fetch = AsyncMock(side_effect=error)
            with patch('app.services.storage.upload_attachment') as mock_upload:
                result = await materialize_attachment(
                    descriptor, message_id="m1", user_id="u1", fetch_data=fetch
                )
            assert result is descriptor
            mock_upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_undecodable_data_returns_original(self):
        fetch = AsyncMock(return_value="***not base64***")
        with patch('app.services.storage.upload_attachment') as mock_upload:
            result = await materialize_attachment(
                _descriptor(), message_id="m1", user_id="u1", fetch_data=fetch
            )
        assert result.download_url is None
        mock_upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_upload_failure_returns_original_without_cleanup(self):
        fetch = AsyncMock(return_value=_b64(b"abc"))
        with patch('app.services.storage.upload_attachment', side_effect=Exception("full")), \
                patch('app.services.storage.delete_attachment') as mock_delete:
            result = await materialize_attachment(
                _descriptor(), message_id="m1", user_id="u1", fetch_data=fetch
            )
        assert result.download_url is None
        assert result.storage_path is None
        mock_delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_signed_url_failure_removes_uploaded_object(self):
        """All-or-nothing: bytes uploaded without a URL are deleted again."""
        fetch = AsyncMock(return_value=_b64(b"abc"))
        with patch('app.services.storage.upload_attachment') as mock_upload, \
                patch('app.services.storage.get_signed_url', side_effect=Exception("sign failed")), \
                patch('app.services.storage.delete_attachment') as mock_delete:
            result = await materialize_attachment(
                _descriptor(), message_id="m1", user_id="u1", fetch_data=fetch
            )

        assert result.download_url is None
        uploaded_path = mock_upload.call_args[0][1]
        mock_delete.assert_called_once_with(uploaded_path)

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_not_raised(self):
        fetch = AsyncMock(return_value=_b64(b"abc"))
        with patch('app.services.storage.upload_attachment'), \
                patch('app.services.storage.get_signed_url', side_effect=Exception("sign failed")), \
                patch('app.services.storage.delete_attachment', side_effect=Exception("gone")):
            result = await materialize_attachment(
                _descriptor(), message_id="m1", user_id="u1", fetch_data=fetch
            )
        assert result.download_url is None

    @pytest.mark.asyncio
    async def test_cancellation_after_upload_removes_object(self):
        """A caller abandoning the request does not leave an unlinked upload behind."""
        fetch = AsyncMock(return_value=_b64(b"abc"))
        signing = threading.Event()

        def slow_sign(path, expiry_seconds=3600):
            signing.set()
            time.sleep(0.2)
            return _signed(path)

        with patch('app.services.storage.upload_attachment') as mock_upload, \
                patch('app.services.storage.get_signed_url', side_effect=slow_sign), \
                patch('app.services.storage.delete_attachment') as mock_delete:
            task = asyncio.create_task(materialize_attachment(
                _descriptor(), message_id="m1", user_id="u1", fetch_data=fetch
            ))
            await asyncio.to_thread(signing.wait, 2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            mock_delete.assert_called_once_with(mock_upload.call_args[0][1])


class TestMaterializeAttachments:
    @pytest.mark.asyncio
    async def test_partial_failure_keeps_both_in_order(self):
        """One failing attachment does not affect the other or the order."""
        async def fetch(message_id, attachment_id):
            if attachment_id == "att-bad":
                raise TransientProviderError("boom", status_code=500)
            return _b64(b"good bytes")

        descriptors = [_descriptor("bad.pdf", "att-bad"), _descriptor("good.pdf", "att-good")]
        with patch('app.services.storage.upload_attachment'), \
                patch('app.services.storage.get_signed_url', side_effect=_signed):
            results = await materialize_attachments(
                descriptors, message_id="m1", user_id="u1", fetch_data=fetch
            )

        assert [r.filename for r in results] == ["bad.pdf", "good.pdf"]
        assert results[0].download_url is None
        assert results[1].download_url is not None

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        in_flight = 0
        peak = 0

        async def fetch(message_id, attachment_id):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return _b64(b"x")

        descriptors = [_descriptor(f"f{i}.pdf", f"att-{i}") for i in range(8)]
        with patch('app.services.storage.upload_attachment'), \
                patch('app.services.storage.get_signed_url', side_effect=_signed):
            results = await materialize_attachments(
                descriptors, message_id="m1", user_id="u1", fetch_data=fetch, concurrency=2
            )

        assert peak <= 2
        assert [r.provider_reference_id for r in results] == [f"att-{i}" for i in range(8)]

    @pytest.mark.asyncio
    async def test_empty_list(self):
        assert await materialize_attachments([], message_id="m", user_id="u", fetch_data=AsyncMock()) == []
