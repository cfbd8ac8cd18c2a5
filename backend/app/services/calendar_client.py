"""
Google Calendar v3 client (read-only event listing).

Shares the TokenManager with the Gmail client, so a refresh triggered by a
calendar call is visible to concurrent mail calls for the same connection.
"""

from typing import Optional

import httpx

from app.errors import TransientProviderError
from app.models.mail import ProviderConnection
from app.services.token_manager import TokenManager

CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"


class CalendarClient:
    def __init__(self, http: httpx.AsyncClient, tokens: TokenManager, connection: ProviderConnection):
        self._http = http
        self._tokens = tokens
        self.connection = connection

    async def list_events(
        self,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
        calendar_id: str = "primary",
    ) -> list[dict]:
        """
        List single (expanded) events ordered by start time.

        ``time_min``/``time_max`` are RFC 3339 timestamps passed through to Google.
        """
        params = {"singleEvents": "true", "orderBy": "startTime"}
        if time_min:
            params["timeMin"] = time_min
        if time_max:
            params["timeMax"] = time_max

        request = self._http.build_request(
            "GET", f"{CALENDAR_API_BASE}/calendars/{calendar_id}/events", params=params
        )
        response = await self._tokens.call(self.connection, request)
        if not response.is_success:
            raise TransientProviderError(
                f"Calendar API error: {response.status_code}",
                status_code=response.status_code,
            )
        return response.json().get("items") or []
