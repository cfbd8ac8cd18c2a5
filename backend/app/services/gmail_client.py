"""
Thin Gmail REST client.

Every request is built here and sent through the TokenManager, so callers
never see a 401: they get a parsed JSON body, or a ProviderError subclass.
"""

import logging
from typing import Optional

import httpx

from app.errors import TransientProviderError
from app.models.mail import ProviderConnection
from app.services.token_manager import TokenManager

logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"

METADATA_HEADERS = ["Subject", "From", "To", "Date"]


class GmailClient:
    def __init__(self, http: httpx.AsyncClient, tokens: TokenManager, connection: ProviderConnection):
        self._http = http
        self._tokens = tokens
        self.connection = connection

    async def _get_json(self, path: str, params: Optional[dict] = None) -> dict:
        request = self._http.build_request("GET", f"{GMAIL_API_BASE}{path}", params=params)
        response = await self._tokens.call(self.connection, request)
        if not response.is_success:
            logger.warning(f"Gmail API {path} returned {response.status_code}")
            raise TransientProviderError(
                f"Gmail API error: {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    async def list_message_ids(
        self,
        page_size: int,
        page_token: Optional[str] = None,
        query: Optional[str] = None,
    ) -> tuple[list[str], Optional[str]]:
        """Return one page of message ids (provider order) and the next page token."""
        params: dict = {"maxResults": page_size}
        if page_token:
            params["pageToken"] = page_token
        if query:
            params["q"] = query
        data = await self._get_json("/messages", params)
        ids = [m["id"] for m in data.get("messages") or [] if m.get("id")]
        return ids, data.get("nextPageToken")

    async def get_message_metadata(self, message_id: str) -> dict:
        params = [("format", "metadata")] + [("metadataHeaders", h) for h in METADATA_HEADERS]
        return await self._get_json(f"/messages/{message_id}", params)

    async def get_message(self, message_id: str) -> dict:
        return await self._get_json(f"/messages/{message_id}", {"format": "full"})

    async def get_attachment_data(self, message_id: str, attachment_id: str) -> str:
        """Fetch an attachment body. Returns the provider's base64url string."""
        data = await self._get_json(f"/messages/{message_id}/attachments/{attachment_id}")
        return data.get("data") or ""
