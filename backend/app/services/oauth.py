"""
Google OAuth endpoints: consent URL, authorization-code exchange, refresh.

Environment variables
---------------------
GOOGLE_CLIENT_ID        OAuth client id
GOOGLE_CLIENT_SECRET    OAuth client secret
GOOGLE_REDIRECT_URI     Redirect URI registered for the client; the frontend
                        callback page posts the returned ``code`` back to
                        POST /api/connections/gmail
"""

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx

from app.errors import AccessRevokedError, OAuthExchangeError, TransientProviderError

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.compose",
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/userinfo.email",
]

# Google's token endpoint answers a revoked/expired refresh token with this code.
REVOKED_GRANT_ERROR = "invalid_grant"


@dataclass(frozen=True)
class OAuthTokens:
    access_token: str
    refresh_token: str
    email_address: str


def _client_credentials() -> tuple[str, str]:
    return os.getenv("GOOGLE_CLIENT_ID", ""), os.getenv("GOOGLE_CLIENT_SECRET", "")


def _redirect_uri() -> str:
    return os.getenv("GOOGLE_REDIRECT_URI", "")


def _oauth_error_code(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return ""
    if isinstance(payload, dict):
        return str(payload.get("error") or "")
    return ""


def build_authorization_url(user_id: str) -> str:
    """
    Build the Google consent URL for connecting a Gmail account.

    ``access_type=offline`` plus ``prompt=consent`` makes Google issue a
    refresh token every time. The user id travels in ``state``.
    """
    client_id, _ = _client_credentials()
    if not client_id:
        raise ValueError("GOOGLE_CLIENT_ID must be set to connect Gmail accounts")
    query = urlencode({
        "client_id": client_id,
        "redirect_uri": _redirect_uri(),
        "response_type": "code",
        "scope": " ".join(SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "state": user_id,
    })
    return f"{GOOGLE_AUTH_URL}?{query}"


async def exchange_authorization_code(http: httpx.AsyncClient, code: str) -> OAuthTokens:
    """
    Trade an authorization code for tokens and look up the connected address.

    Raises:
        OAuthExchangeError: Google rejected the code or returned no access token.
        TransientProviderError: network failure talking to Google.
    """
    client_id, client_secret = _client_credentials()
    try:
        token_response = await http.post(GOOGLE_TOKEN_URL, data={
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": _redirect_uri(),
        })
    except httpx.HTTPError as e:
        raise TransientProviderError(f"Token exchange request failed: {e}") from e

    if not token_response.is_success:
        error_code = _oauth_error_code(token_response) or str(token_response.status_code)
        logger.warning(f"Authorization code exchange rejected: {error_code}")
        raise OAuthExchangeError(f"Failed to exchange code for tokens: {error_code}")

    tokens = token_response.json()
    access_token = tokens.get("access_token")
    if not access_token:
        raise OAuthExchangeError("Token endpoint returned no access token")

    try:
        userinfo_response = await http.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
        )
    except httpx.HTTPError as e:
        raise TransientProviderError(f"User info request failed: {e}") from e
    if not userinfo_response.is_success:
        raise TransientProviderError(
            "Failed to get user info", status_code=userinfo_response.status_code
        )

    return OAuthTokens(
        access_token=access_token,
        refresh_token=tokens.get("refresh_token") or "",
        email_address=userinfo_response.json().get("email", ""),
    )


async def refresh_access_token(http: httpx.AsyncClient, refresh_token: str) -> str:
    """
    Ask Google for a new access token.

    Returns:
        The new access token.

    Raises:
        AccessRevokedError: the grant is gone (``invalid_grant``, or there is no
            refresh token to use at all). Only re-authentication helps.
        TransientProviderError: anything else (network, 5xx, other OAuth errors).
    """
    if not refresh_token:
        raise AccessRevokedError()

    client_id, client_secret = _client_credentials()
    try:
        response = await http.post(GOOGLE_TOKEN_URL, data={
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        })
    except httpx.HTTPError as e:
        raise TransientProviderError(f"Token refresh request failed: {e}") from e

    if response.is_success:
        access_token = response.json().get("access_token")
        if not access_token:
            raise TransientProviderError("Token refresh returned no access token")
        return access_token

    error_code = _oauth_error_code(response)
    if error_code == REVOKED_GRANT_ERROR:
        raise AccessRevokedError()
    raise TransientProviderError(
        f"Failed to refresh access token: {response.status_code} {error_code}".rstrip(),
        status_code=response.status_code,
    )
