"""
Calendar router.

Endpoints:
  GET /events?timeMin=&timeMax=   events from the primary calendar (auth: JWT)
"""

import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Query

from app.dependencies import get_connection, get_http_client, http_error_for
from app.errors import ProviderError
from app.models.mail import ProviderConnection
from app.services.calendar_client import CalendarClient
from app.services.token_manager import TokenManager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/events")
async def list_events(
    time_min: Optional[str] = Query(None, alias="timeMin"),
    time_max: Optional[str] = Query(None, alias="timeMax"),
    connection: ProviderConnection = Depends(get_connection),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    client = CalendarClient(http, TokenManager(http), connection)
    try:
        events = await client.list_events(time_min, time_max)
    except ProviderError as e:
        logger.warning(f"Listing calendar events failed for user {connection.user_id}: {e}")
        raise http_error_for(e)
    return {"events": events}
