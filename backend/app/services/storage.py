"""
Supabase Storage service for email attachments.
Handles upload, signed URL generation, and deletion.

Attachment paths are built by the materializer and are unique per upload
(they embed a monotonic timestamp), so uploads never overwrite.
"""

import os
from urllib.parse import urlparse, urlunparse

from app.db import supabase_admin

DEFAULT_BUCKET = "email-attachments"
SIGNED_URL_TTL_SECONDS = 3600


def _bucket_name() -> str:
    return os.getenv("ATTACHMENTS_BUCKET", "").strip() or DEFAULT_BUCKET


def _require_admin_client():
    if not supabase_admin:
        raise ValueError("SUPABASE_SERVICE_KEY is required for storage operations")
    return supabase_admin


def upload_attachment(file_content: bytes, storage_path: str, content_type: str) -> str:
    """
    Upload attachment bytes to Supabase Storage.

    Args:
        file_content: Raw attachment bytes
        storage_path: Full object path inside the attachments bucket
        content_type: MIME type stored with the object

    Returns:
        The storage path that was written.

    Raises:
        Exception: If upload fails
    """
    client = _require_admin_client()
    try:
        client.storage.from_(_bucket_name()).upload(
            storage_path,
            file_content,
            {
                "content-type": content_type,
                "upsert": "false",
            },
        )
        return storage_path
    except Exception as e:
        raise Exception(f"Failed to upload attachment to storage: {str(e)}")


def _rewrite_signed_url_host(signed_url: str) -> str:
    """
    Replace the host in a signed URL with the browser-accessible Supabase URL.

    Inside Docker the backend talks to Supabase on an internal host, and
    Supabase embeds that host in every signed URL. When ``SUPABASE_PUBLIC_URL``
    is set, its scheme and host replace the signed URL's; otherwise the URL is
    returned unchanged.
    """
    public_url = os.getenv("SUPABASE_PUBLIC_URL", "").strip()
    if not public_url:
        return signed_url

    parsed_signed = urlparse(signed_url)
    parsed_public = urlparse(public_url)

    return urlunparse((
        parsed_public.scheme,
        parsed_public.netloc,
        parsed_signed.path,
        parsed_signed.params,
        parsed_signed.query,
        parsed_signed.fragment,
    ))


def get_signed_url(storage_path: str, expiry_seconds: int = SIGNED_URL_TTL_SECONDS) -> str:
    """
    Generate a time-bounded signed URL for a stored attachment.

    Args:
        storage_path: Object path inside the attachments bucket
        expiry_seconds: URL lifetime (default: 1 hour)

    Returns:
        Signed URL with a browser-accessible host.

    Raises:
        Exception: If URL generation fails
    """
    client = _require_admin_client()
    try:
        result = client.storage.from_(_bucket_name()).create_signed_url(
            storage_path,
            expiry_seconds,
        )
        # storage3 has returned both spellings over time
        signed = (result or {}).get("signedURL") or (result or {}).get("signedUrl")
        if not signed:
            raise Exception("No signed URL returned from storage")
        return _rewrite_signed_url_host(signed)
    except Exception as e:
        raise Exception(f"Failed to generate signed URL: {str(e)}")


def delete_attachment(storage_path: str) -> bool:
    """
    Remove a stored attachment.

    Returns:
        True if an object was deleted, False if nothing was at that path.

    Raises:
        Exception: If deletion fails (other than file not found)
    """
    client = _require_admin_client()
    try:
        result = client.storage.from_(_bucket_name()).remove([storage_path])
        return bool(result)
    except Exception as e:
        raise Exception(f"Failed to delete attachment from storage: {str(e)}")
