"""
Shared FastAPI dependencies and provider-error translation for the routers.

Environment variables
---------------------
PROVIDER_TIMEOUT_SECONDS   Timeout for Google API calls (default: 30)
"""

import logging
import os
from typing import AsyncIterator

import httpx
from fastapi import Depends, HTTPException

from app.auth import get_current_user
from app.errors import (
    AccessRevokedError,
    NotConnectedError,
    ProviderError,
    TransientProviderError,
)
from app.models.mail import ProviderConnection
from app.services import connection_store

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 30.0


def _provider_timeout() -> float:
    try:
        return float(os.getenv("PROVIDER_TIMEOUT_SECONDS", DEFAULT_PROVIDER_TIMEOUT_SECONDS))
    except ValueError:
        return DEFAULT_PROVIDER_TIMEOUT_SECONDS


async def get_http_client() -> AsyncIterator[httpx.AsyncClient]:
    """One AsyncClient per request, closed when the response is done."""
    async with httpx.AsyncClient(timeout=_provider_timeout()) as client:
        yield client


def http_error_for(exc: ProviderError) -> HTTPException:
    """
    Map a provider failure to the HTTP error the frontend expects.

      NotConnectedError       -> 409 GMAIL_NOT_CONNECTED     (prompt to connect)
      AccessRevokedError      -> 401 GOOGLE_ACCESS_REVOKED   (prompt to reconnect)
      TransientProviderError  -> 502 PROVIDER_UNAVAILABLE    (retryable),
                                 or 404 when the provider said 404
    """
    if isinstance(exc, NotConnectedError):
        return HTTPException(
            status_code=409,
            detail={"code": "GMAIL_NOT_CONNECTED", "message": str(exc), "reconnect": True},
        )
    if isinstance(exc, AccessRevokedError):
        return HTTPException(
            status_code=401,
            detail={"code": "GOOGLE_ACCESS_REVOKED", "message": str(exc), "reconnect": True},
        )
    if isinstance(exc, TransientProviderError) and exc.status_code == 404:
        return HTTPException(status_code=404, detail="Not found at provider")
    return HTTPException(
        status_code=502,
        detail={"code": "PROVIDER_UNAVAILABLE", "message": str(exc), "retryable": True},
    )


def get_connection(user_id: str = Depends(get_current_user)) -> ProviderConnection:
    """The caller's active Gmail connection, or a 409/401 telling them to (re)connect."""
    try:
        return connection_store.get_connection_for_user(user_id)
    except ProviderError as e:
        raise http_error_for(e)
    except Exception as e:
        logger.error(f"Failed to load Gmail connection for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to load Gmail connection")
