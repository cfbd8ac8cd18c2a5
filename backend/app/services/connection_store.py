"""
Persistence for ProviderConnection rows (table ``gmail_connections``).

Rows are never deleted: disconnecting or losing the refresh grant only flips
``is_active`` off, so history stays auditable. Token writes are conditional
on the token the writer last saw, which keeps two processes refreshing the
same connection from silently overwriting each other.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from app.db import supabase_admin
from app.errors import AccessRevokedError, NotConnectedError
from app.models.mail import ProviderConnection

logger = logging.getLogger(__name__)

TABLE = "gmail_connections"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_connection_for_user(user_id: str) -> ProviderConnection:
    """
    Return the user's active connection.

    Raises:
        NotConnectedError: the user never connected, or disconnected.
        AccessRevokedError: the most recent connection was deactivated because
            its grant was revoked (``last_error`` is set); the user must reconnect.
    """
    result = (
        supabase_admin.table(TABLE)
        .select("*")
        .eq("user_id", user_id)
        .order("updated_at", desc=True)
        .execute()
    )
    rows = result.data or []

    for row in rows:
        if row.get("is_active"):
            return ProviderConnection(**row)

    if rows and rows[0].get("last_error"):
        raise AccessRevokedError(rows[0]["last_error"])
    raise NotConnectedError()


def get_connection_by_id(connection_id: str) -> Optional[ProviderConnection]:
    """Re-read a single row (used inside the refresh critical section)."""
    result = (
        supabase_admin.table(TABLE)
        .select("*")
        .eq("id", connection_id)
        .execute()
    )
    if not result.data:
        return None
    return ProviderConnection(**result.data[0])


def save_refreshed_token(connection_id: str, access_token: str, expected_token: str) -> bool:
    """
    Store a refreshed access token and clear ``last_error``.

    The update only applies while the row still holds ``expected_token``.

    Returns:
        True if the row was updated, False if someone else changed it first.
    """
    result = (
        supabase_admin.table(TABLE)
        .update({
            "access_token": access_token,
            "last_error": None,
            "updated_at": _now_iso(),
        })
        .eq("id", connection_id)
        .eq("access_token", expected_token)
        .execute()
    )
    return bool(result.data)


def deactivate_connection(connection_id: str, last_error: Optional[str]) -> None:
    """Mark a connection inactive. ``last_error`` is None for a plain disconnect."""
    supabase_admin.table(TABLE).update({
        "is_active": False,
        "last_error": last_error,
        "updated_at": _now_iso(),
    }).eq("id", connection_id).execute()


def disconnect_user(user_id: str) -> int:
    """Deactivate every active connection of a user. Returns the number of rows changed."""
    result = (
        supabase_admin.table(TABLE)
        .update({"is_active": False, "last_error": None, "updated_at": _now_iso()})
        .eq("user_id", user_id)
        .eq("is_active", True)
        .execute()
    )
    return len(result.data or [])


def upsert_connection(
    user_id: str,
    email_address: str,
    access_token: str,
    refresh_token: str,
) -> ProviderConnection:
    """
    Save the result of a successful OAuth code exchange as the active connection.

    Reconnecting the same Google address reuses its row (reactivating it and
    clearing ``last_error``). Google omits the refresh token when the user has
    already granted offline access; in that case the stored one is kept.
    Any other active connection of the user is deactivated so exactly one
    stays active.
    """
    existing = (
        supabase_admin.table(TABLE)
        .select("*")
        .eq("user_id", user_id)
        .eq("email_address", email_address)
        .execute()
    ).data or []

    now = _now_iso()
    values = {
        "user_id": user_id,
        "email_address": email_address,
        "access_token": access_token,
        "is_active": True,
        "last_error": None,
        "updated_at": now,
    }
    if refresh_token:
        values["refresh_token"] = refresh_token

    if existing:
        row_id = existing[0]["id"]
        result = supabase_admin.table(TABLE).update(values).eq("id", row_id).execute()
    else:
        values.setdefault("refresh_token", "")
        values["created_at"] = now
        result = supabase_admin.table(TABLE).insert(values).execute()

    if not result.data:
        raise Exception("gmail_connections write returned no data")
    row = result.data[0]

    supabase_admin.table(TABLE).update({
        "is_active": False,
        "updated_at": now,
    }).eq("user_id", user_id).eq("is_active", True).neq("id", row["id"]).execute()

    logger.info(f"Saved Gmail connection {row['id']} for user {user_id}")
    return ProviderConnection(**row)
