"""
Access token lifecycle manager.

Every outbound Gmail and Calendar request goes through ``TokenManager.call``:

  1. An inactive (revoked) connection fails fast with AccessRevokedError.
  2. The request is sent with the cached access token.
  3. Any response other than 401 is returned untouched, errors included.
  4. On 401 the connection is refreshed inside a per-connection critical
     section, the new token is persisted, and the request is sent once more.
     That second response is returned whatever it is; there is no third try.

Refresh outcomes:
  - success          -> token stored (row + in-memory connection), last_error cleared
  - invalid_grant    -> connection deactivated with a reconnect message,
                        AccessRevokedError raised
  - anything else    -> TransientProviderError, connection left as it was

Single flight: concurrent calls for the same connection (say a mail fetch and
a calendar fetch) share one lock. Whoever enters second re-reads the row and
adopts the token the first caller stored instead of refreshing again.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional

import httpx

from app.errors import RECONNECT_MESSAGE, AccessRevokedError, TransientProviderError
from app.models.mail import ProviderConnection
from app.services import connection_store
from app.services.oauth import refresh_access_token

logger = logging.getLogger(__name__)

@dataclass
class _RefreshLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0  # holder plus waiters


# connection id -> lock guarding refresh-and-persist for that connection.
# An entry only lives while someone holds or waits on it.
_refresh_locks: dict[str, _RefreshLock] = {}


class ConnectionState(str, Enum):
    ACTIVE = "active"
    REFRESHING = "refreshing"
    REVOKED = "revoked"


@asynccontextmanager
async def _refresh_lock(connection_id: str) -> AsyncIterator[None]:
    entry = _refresh_locks.get(connection_id)
    if entry is None:
        entry = _refresh_locks[connection_id] = _RefreshLock()
    entry.users += 1
    try:
        async with entry.lock:
            yield
    finally:
        entry.users -= 1
        if entry.users == 0 and _refresh_locks.get(connection_id) is entry:
            del _refresh_locks[connection_id]


def connection_state(connection: ProviderConnection) -> ConnectionState:
    """Current lifecycle state of a connection as seen by this process."""
    if not connection.is_active:
        return ConnectionState.REVOKED
    entry = _refresh_locks.get(connection.id)
    if entry is not None and entry.lock.locked():
        return ConnectionState.REFRESHING
    return ConnectionState.ACTIVE


class TokenManager:
    """
    Wraps provider HTTP calls with refresh-on-401.

    Args:
        http: Shared async client used for both provider calls and token refresh.
        store: Persistence for gmail_connections rows (module-level functions of
            ``app.services.connection_store`` by default).
    """

    def __init__(self, http: httpx.AsyncClient, store=connection_store):
        self._http = http
        self._store = store

    async def call(self, connection: ProviderConnection, request: httpx.Request) -> httpx.Response:
        """
        Send ``request`` authenticated as ``connection``.

        Raises:
            AccessRevokedError: connection already revoked, or revoked during refresh.
            TransientProviderError: network failure, or a non-revocation refresh failure.
        """
        if not connection.is_active:
            raise AccessRevokedError(connection.last_error or RECONNECT_MESSAGE)

        used_token = connection.access_token
        response = await self._send(request, used_token)
        if response.status_code != 401:
            return response

        await response.aclose()
        logger.info(f"Access token rejected for connection {connection.id}; refreshing")
        new_token = await self._refresh(connection, used_token)
        return await self._send(request, new_token)

    async def _send(self, request: httpx.Request, access_token: str) -> httpx.Response:
        request.headers["Authorization"] = f"Bearer {access_token}"
        logger.debug(f"Provider request: {request.method} {request.url}")
        try:
            return await self._http.send(request)
        except httpx.HTTPError as e:
            raise TransientProviderError(f"Provider request failed: {e}") from e

    async def _refresh(self, connection: ProviderConnection, rejected_token: str) -> str:
        async with _refresh_lock(connection.id):
            current = await self._reload(connection)
            if current is not None:
                if not current.is_active:
                    self._apply_revocation(connection, current.last_error)
                    raise AccessRevokedError(connection.last_error)
                if current.access_token != rejected_token:
                    logger.info(
                        f"Connection {connection.id} was refreshed concurrently; reusing stored token"
                    )
                    connection.access_token = current.access_token
                    connection.last_error = None
                    return current.access_token

            refresh_token = connection.refresh_token or (current.refresh_token if current else "")
            try:
                new_token = await refresh_access_token(self._http, refresh_token)
            except AccessRevokedError:
                logger.warning(f"Refresh grant revoked for connection {connection.id}; deactivating")
                self._apply_revocation(connection, RECONNECT_MESSAGE)
                await self._persist_revocation(connection)
                raise
            except TransientProviderError as e:
                logger.warning(f"Token refresh failed for connection {connection.id}: {e}")
                raise

            await self._persist_token(connection, new_token, rejected_token)
            connection.access_token = new_token
            connection.last_error = None
            logger.info(f"Refreshed access token for connection {connection.id}")
            return new_token

    async def _reload(self, connection: ProviderConnection) -> Optional[ProviderConnection]:
        try:
            return await asyncio.to_thread(self._store.get_connection_by_id, connection.id)
        except Exception as e:
            logger.warning(f"Could not re-read connection {connection.id} before refresh: {e}")
            return None

    async def _persist_token(
        self, connection: ProviderConnection, new_token: str, rejected_token: str
    ) -> None:
        # The fresh token is valid either way; a failed write only costs the
        # next request another refresh.
        try:
            saved = await asyncio.to_thread(
                self._store.save_refreshed_token, connection.id, new_token, rejected_token
            )
        except Exception as e:
            logger.error(f"Failed to persist refreshed token for connection {connection.id}: {e}")
            return
        if not saved:
            logger.warning(
                f"Connection {connection.id} changed while refreshing; stored token left as is"
            )

    async def _persist_revocation(self, connection: ProviderConnection) -> None:
        try:
            await asyncio.to_thread(
                self._store.deactivate_connection, connection.id, connection.last_error
            )
        except Exception as e:
            logger.error(f"Failed to deactivate revoked connection {connection.id}: {e}")

    @staticmethod
    def _apply_revocation(connection: ProviderConnection, message: Optional[str]) -> None:
        connection.is_active = False
        connection.last_error = message or RECONNECT_MESSAGE
