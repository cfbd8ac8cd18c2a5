"""
Mail router.

Endpoints:
  GET /messages                 list one page of message summaries (auth: JWT)
  GET /messages/{message_id}    one fully normalized message (auth: JWT)
  GET /messages/{message_id}/attachments/{attachment_id}
                                re-store one attachment and issue a fresh
                                signed URL (auth: JWT)
"""

import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query

from app.dependencies import get_connection, get_http_client, http_error_for
from app.errors import AttachmentMaterializationError, ProviderError
from app.models.mail import (
    DEFAULT_MIME_TYPE,
    AttachmentDescriptor,
    MessagePage,
    NormalizedEmail,
    ProviderConnection,
)
from app.services.gmail_client import GmailClient
from app.services.ingestion import DEFAULT_PAGE_SIZE, IngestionService
from app.services.token_manager import TokenManager

logger = logging.getLogger(__name__)

router = APIRouter()


def _ingestion(http: httpx.AsyncClient, connection: ProviderConnection) -> IngestionService:
    return IngestionService(GmailClient(http, TokenManager(http), connection))


@router.get("/messages", response_model=MessagePage, response_model_by_alias=True)
async def list_messages(
    page_size: int = Query(DEFAULT_PAGE_SIZE, alias="pageSize", ge=1, le=500),
    page_token: Optional[str] = Query(None, alias="pageToken"),
    q: Optional[str] = Query(None),
    connection: ProviderConnection = Depends(get_connection),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    try:
        return await _ingestion(http, connection).list_messages(page_size, page_token, q)
    except ProviderError as e:
        logger.warning(f"Listing messages failed for user {connection.user_id}: {e}")
        raise http_error_for(e)


@router.get("/messages/{message_id}", response_model=NormalizedEmail, response_model_by_alias=True)
async def get_message(
    message_id: str,
    connection: ProviderConnection = Depends(get_connection),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    try:
        return await _ingestion(http, connection).get_message(message_id, connection.user_id)
    except ProviderError as e:
        logger.warning(f"Fetching message {message_id} failed for user {connection.user_id}: {e}")
        raise http_error_for(e)


@router.get(
    "/messages/{message_id}/attachments/{attachment_id}",
    response_model=AttachmentDescriptor,
    response_model_by_alias=True,
)
async def get_attachment(
    message_id: str,
    attachment_id: str,
    filename: str = Query("attachment"),
    mime_type: str = Query(DEFAULT_MIME_TYPE, alias="mimeType"),
    connection: ProviderConnection = Depends(get_connection),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    try:
        return await _ingestion(http, connection).get_attachment(
            message_id, attachment_id, connection.user_id, filename, mime_type
        )
    except ProviderError as e:
        logger.warning(
            f"Fetching attachment {attachment_id} of message {message_id} failed "
            f"for user {connection.user_id}: {e}"
        )
        raise http_error_for(e)
    except AttachmentMaterializationError as e:
        logger.error(str(e))
        raise HTTPException(
            status_code=502,
            detail={"code": "ATTACHMENT_UNAVAILABLE", "message": str(e), "retryable": True},
        )
