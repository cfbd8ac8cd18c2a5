"""
Gmail connection router (OAuth connect / status / disconnect).

Endpoints:
  GET    /gmail/auth-url   Google consent URL for the caller (auth: JWT)
  POST   /gmail            exchange an authorization code, save the connection (auth: JWT)
  GET    /gmail            connection status, including lastError (auth: JWT)
  DELETE /gmail            deactivate the caller's connection; rows are kept (auth: JWT)
"""

import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException

from app.auth import get_current_user
from app.dependencies import get_http_client, http_error_for
from app.errors import (
    AccessRevokedError,
    NotConnectedError,
    OAuthExchangeError,
    TransientProviderError,
)
from app.models.mail import ConnectGmailRequest, ConnectionStatus
from app.services import connection_store
from app.services.oauth import build_authorization_url, exchange_authorization_code

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/gmail/auth-url")
async def get_auth_url(user_id: str = Depends(get_current_user)):
    try:
        return {"url": build_authorization_url(user_id)}
    except ValueError as e:
        logger.error(f"Cannot build Google authorization URL: {e}")
        raise HTTPException(status_code=500, detail="Google OAuth is not configured")


@router.post("/gmail", response_model=ConnectionStatus, response_model_by_alias=True)
async def connect_gmail(
    body: ConnectGmailRequest,
    user_id: str = Depends(get_current_user),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    try:
        tokens = await exchange_authorization_code(http, body.code)
    except OAuthExchangeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TransientProviderError as e:
        raise http_error_for(e)

    try:
        connection = connection_store.upsert_connection(
            user_id,
            tokens.email_address,
            tokens.access_token,
            tokens.refresh_token,
        )
    except Exception as e:
        logger.error(f"Failed to save Gmail connection for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to save Gmail connection")

    return ConnectionStatus(
        connected=True,
        email_address=connection.email_address,
        is_active=True,
    )


@router.get("/gmail", response_model=ConnectionStatus, response_model_by_alias=True)
async def get_gmail_status(user_id: str = Depends(get_current_user)):
    try:
        connection = connection_store.get_connection_for_user(user_id)
    except NotConnectedError:
        return ConnectionStatus(connected=False)
    except AccessRevokedError as e:
        return ConnectionStatus(connected=False, last_error=str(e), reconnect_required=True)
    except Exception as e:
        logger.error(f"Failed to load Gmail connection for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to load Gmail connection")

    return ConnectionStatus(
        connected=True,
        email_address=connection.email_address,
        is_active=connection.is_active,
        last_error=connection.last_error,
    )


@router.delete("/gmail")
async def disconnect_gmail(user_id: str = Depends(get_current_user)):
    try:
        count = connection_store.disconnect_user(user_id)
    except Exception as e:
        logger.error(f"Failed to disconnect Gmail for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to disconnect Gmail")
    logger.info(f"Deactivated {count} Gmail connection(s) for user {user_id}")
    return {"disconnected": count > 0}
