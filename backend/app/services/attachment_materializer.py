"""
Attachment materializer.

Turns an AttachmentDescriptor that only references provider bytes into one
with a durable, signed download URL:

    fetch (Gmail, via TokenManager) -> decode -> upload -> sign

Materialization is all-or-nothing per attachment. If any step fails the
original descriptor comes back unchanged (download_url=None) and whatever
was already uploaded is removed. A failing attachment never fails the
message it belongs to.
"""

import asyncio
import logging
import re
import threading
import time
from typing import Awaitable, Callable, Optional

from app.errors import AttachmentMaterializationError
from app.models.mail import AttachmentDescriptor
from app.services import storage
from app.services.codec import decode_url_safe_base64

logger = logging.getLogger(__name__)

ATTACHMENT_CONCURRENCY = 4

# (message_id, attachment_id) -> base64url attachment data
FetchData = Callable[[str, str], Awaitable[str]]

_timestamp_lock = threading.Lock()
_last_timestamp_ms = 0


def _monotonic_timestamp_ms() -> int:
    """Wall-clock milliseconds, bumped so no two calls in this process collide."""
    global _last_timestamp_ms
    with _timestamp_lock:
        now = int(time.time() * 1000)
        _last_timestamp_ms = max(now, _last_timestamp_ms + 1)
        return _last_timestamp_ms


def sanitize_filename(filename: str) -> str:
    sanitized = re.sub(r"[^A-Za-z0-9._-]", "_", filename or "")
    return sanitized or "attachment"


def build_storage_path(
    user_id: str,
    message_id: str,
    filename: str,
    timestamp_ms: Optional[int] = None,
) -> str:
    """``{user_id}/{message_id}/{timestamp}_{sanitized filename}``"""
    if timestamp_ms is None:
        timestamp_ms = _monotonic_timestamp_ms()
    return f"{user_id}/{message_id}/{timestamp_ms}_{sanitize_filename(filename)}"


async def _discard_upload(storage_path: str) -> None:
    try:
        await asyncio.to_thread(storage.delete_attachment, storage_path)
    except Exception as e:
        logger.warning(f"Could not remove orphaned attachment {storage_path}: {e}")


async def materialize_attachment(
    descriptor: AttachmentDescriptor,
    *,
    message_id: str,
    user_id: str,
    fetch_data: FetchData,
) -> AttachmentDescriptor:
    """
    Store one attachment and attach a signed URL to it.

    Returns:
        A copy of ``descriptor`` with ``download_url`` and ``storage_path``
        set, or ``descriptor`` itself if materialization failed.
    """
    uploaded_path: Optional[str] = None
    try:
        data = await fetch_data(message_id, descriptor.provider_reference_id)
        decoded = decode_url_safe_base64(data)
        if not decoded.ok:
            raise AttachmentMaterializationError("attachment data is not valid base64")
        content: bytes = decoded.value

        storage_path = build_storage_path(user_id, message_id, descriptor.filename)
        await asyncio.to_thread(
            storage.upload_attachment, content, storage_path, descriptor.mime_type
        )
        uploaded_path = storage_path

        download_url = await asyncio.to_thread(storage.get_signed_url, storage_path)
    except asyncio.CancelledError:
        if uploaded_path:
            await _discard_upload(uploaded_path)
        raise
    except Exception as e:
        logger.warning(
            f"Failed to materialize attachment '{descriptor.filename}' "
            f"of message {message_id}: {e}"
        )
        if uploaded_path:
            await _discard_upload(uploaded_path)
        return descriptor

    return descriptor.model_copy(update={
        "download_url": download_url,
        "storage_path": uploaded_path,
        "size": descriptor.size or len(content),
    })


async def materialize_attachments(
    descriptors: list[AttachmentDescriptor],
    *,
    message_id: str,
    user_id: str,
    fetch_data: FetchData,
    concurrency: int = ATTACHMENT_CONCURRENCY,
) -> list[AttachmentDescriptor]:
    """Materialize all attachments concurrently; result order matches input order."""
    if not descriptors:
        return []
    semaphore = asyncio.Semaphore(concurrency)

    async def _one(descriptor: AttachmentDescriptor) -> AttachmentDescriptor:
        async with semaphore:
            return await materialize_attachment(
                descriptor,
                message_id=message_id,
                user_id=user_id,
                fetch_data=fetch_data,
            )

    return list(await asyncio.gather(*(_one(d) for d in descriptors)))
