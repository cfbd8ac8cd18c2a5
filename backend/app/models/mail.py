"""
Pydantic models for mail ingestion.

Models:
  RawMessagePart        : one node of the provider's MIME part tree (input)
  AttachmentDescriptor  : an attachment found in the tree, optionally materialized
  NormalizedEmail       : the renderable email returned by GET /messages/{id}
  MessageSummary        : lightweight list-view row (metadata only)
  MessagePage           : one page of MessageSummary plus continuation token
  ProviderConnection    : gmail_connections row (OAuth credential pair + status)
  ConnectionStatus      : what the API exposes about a connection (no tokens)

JSON field names are camelCase to match the Gmail API and the frontend;
Python attributes are snake_case. Output models serialize by alias.
"""

import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator


DEFAULT_MIME_TYPE = "application/octet-stream"

_CHARSET_PARAM = re.compile(r"""charset\s*=\s*["']?([\w.:-]+)""", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Provider input
# ---------------------------------------------------------------------------

class PartBody(BaseModel):
    """Body of a MIME part: inline base64url data or an attachment reference."""
    model_config = {"populate_by_name": True, "extra": "ignore"}

    data: Optional[str] = None
    attachment_id: Optional[str] = Field(default=None, alias="attachmentId")
    size: int = 0


class PartHeader(BaseModel):
    model_config = {"extra": "ignore"}

    name: str
    value: str = ""


class RawMessagePart(BaseModel):
    """
    One node in a Gmail ``payload`` tree.

    Gmail sends many more fields (partId, ...); unknown fields are ignored.
    A part may nest further multipart parts to arbitrary depth, so children
    stay raw dicts here and are validated one node at a time by the walker.
    """
    model_config = {"populate_by_name": True, "extra": "ignore"}

    mime_type: str = Field(default="", alias="mimeType")
    filename: Optional[str] = None
    body: Optional[PartBody] = None
    headers: list[PartHeader] = []
    parts: list[dict] = []

    def header(self, name: str) -> str:
        """Return the first header value matching ``name`` (case-insensitive), or ''."""
        wanted = name.lower()
        for h in self.headers:
            if h.name.lower() == wanted:
                return h.value
        return ""

    def charset(self) -> str:
        """Charset declared in this part's Content-Type, or utf-8."""
        match = _CHARSET_PARAM.search(self.header("Content-Type"))
        return match.group(1).lower() if match else "utf-8"


# ---------------------------------------------------------------------------
# Attachments and normalized emails
# ---------------------------------------------------------------------------

class AttachmentDescriptor(BaseModel):
    """
    An attachment found during the tree walk.

    Created with a provider reference only. Materialization returns a copy
    with ``download_url`` (signed, time-bounded) and ``storage_path`` set; a
    descriptor that failed to materialize keeps ``download_url=None`` so the
    caller still sees the full attachment manifest.
    """
    model_config = {"frozen": True, "populate_by_name": True}

    filename: str
    mime_type: str = Field(default=DEFAULT_MIME_TYPE, alias="mimeType")
    size: int = 0
    provider_reference_id: str = Field(alias="providerReferenceId")
    download_url: Optional[str] = Field(default=None, alias="downloadUrl")
    storage_path: Optional[str] = Field(default=None, alias="storagePath")


class NormalizedEmail(BaseModel):
    """A fully processed email. Built fresh on every fetch and never mutated."""
    model_config = {"frozen": True, "populate_by_name": True}

    id: str
    thread_id: str = Field(alias="threadId")
    subject: str = ""
    from_: str = Field(default="", alias="from")
    to: str = ""
    date: str = ""
    snippet: str = ""
    content: str
    attachments: tuple[AttachmentDescriptor, ...] = ()
    labels: tuple[str, ...] = ()
    unread: bool = False


class MessageSummary(BaseModel):
    model_config = {"frozen": True, "populate_by_name": True}

    id: str
    thread_id: str = Field(default="", alias="threadId")
    subject: str = ""
    from_: str = Field(default="", alias="from")
    date: str = ""
    snippet: str = ""
    unread: bool = False


class MessagePage(BaseModel):
    model_config = {"populate_by_name": True}

    messages: list[MessageSummary] = []
    next_page_token: Optional[str] = Field(default=None, alias="nextPageToken")


# ---------------------------------------------------------------------------
# Provider connection (gmail_connections row)
# ---------------------------------------------------------------------------

class ProviderConnection(BaseModel):
    """
    Stored OAuth credentials for one user's linked Google account.

    Mutable on purpose: the token manager writes the refreshed access token
    (and, on revocation, ``is_active``/``last_error``) back onto the instance
    it was handed as well as onto the database row.
    """
    model_config = {"from_attributes": True, "extra": "ignore"}

    id: str
    user_id: str
    email_address: str = ""
    access_token: str
    refresh_token: str = ""
    is_active: bool = True
    last_error: Optional[str] = None

    @field_validator("email_address", "refresh_token", mode="before")
    @classmethod
    def _null_as_empty(cls, v):
        return v or ""

    @field_validator("is_active", mode="before")
    @classmethod
    def _null_as_inactive(cls, v):
        # The column is nullable; the app only ever treats TRUE as active.
        return bool(v)


class ConnectionStatus(BaseModel):
    """Connection state safe to return to the browser."""
    model_config = {"populate_by_name": True}

    connected: bool
    email_address: Optional[str] = Field(default=None, alias="emailAddress")
    is_active: bool = Field(default=False, alias="isActive")
    last_error: Optional[str] = Field(default=None, alias="lastError")
    reconnect_required: bool = Field(default=False, alias="reconnectRequired")


class ConnectGmailRequest(BaseModel):
    """Authorization code handed back by Google's consent redirect."""
    code: str
