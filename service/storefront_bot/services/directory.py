"""
Operator directory backed by the Supabase `users` table.

Identities are keyed by telegram_id (unique constraint). New identities are
created as role=user, status=pending; only admin actions change status.
"""

import logging
from typing import Optional

from postgrest.exceptions import APIError
from supabase import Client

from storefront_bot.agents.schemas import DirectoryRecord, Role, UserStatus
from storefront_bot.supabase_client import get_supabase_admin

logger = logging.getLogger(__name__)

USERS_TABLE = "users"
UNIQUE_VIOLATION = "23505"


def _client(supabase: Optional[Client]) -> Client:
    return supabase or get_supabase_admin()


def get_identity(telegram_id: str, supabase: Optional[Client] = None) -> Optional[DirectoryRecord]:
    """Look up an identity by Telegram id; None if it doesn't exist."""
    result = _client(supabase).table(USERS_TABLE).select("*").eq(
        "telegram_id", str(telegram_id)
    ).limit(1).execute()

    if not result.data:
        return None
    return DirectoryRecord(**result.data[0])


def create_identity(
    telegram_id: str,
    username: Optional[str],
    supabase: Optional[Client] = None,
) -> DirectoryRecord:
    """
    Insert a pending identity.

    Raises:
        APIError: on database errors, including code 23505 when another
            update created the same telegram_id first
    """
    result = _client(supabase).table(USERS_TABLE).insert({
        "telegram_id": str(telegram_id),
        "username": username or "unknown",
        "role": Role.USER.value,
        "status": UserStatus.PENDING.value,
    }).execute()

    logger.info(f"Created pending identity for telegram_id={telegram_id}")
    return DirectoryRecord(**result.data[0])


def get_or_create_identity(
    telegram_id: str,
    username: Optional[str],
    supabase: Optional[Client] = None,
) -> tuple[DirectoryRecord, bool]:
    """
    Return (record, created).

    A duplicate-key race on insert resolves to the row that won, with
    created=False, so concurrent first contacts yield exactly one record.
    """
    existing = get_identity(telegram_id, supabase)
    if existing is not None:
        return existing, False

    try:
        return create_identity(telegram_id, username, supabase), True
    except APIError as e:
        if e.code != UNIQUE_VIOLATION:
            raise
        logger.info(f"Identity for telegram_id={telegram_id} created concurrently, re-fetching")

    record = get_identity(telegram_id, supabase)
    if record is None:
        raise RuntimeError(f"Identity for telegram_id={telegram_id} vanished after duplicate-key error")
    return record, False


def set_status(telegram_id: str, status: UserStatus, supabase: Optional[Client] = None) -> bool:
    """Update an identity's status. Returns False when no row matched."""
    result = _client(supabase).table(USERS_TABLE).update({
        "status": status.value,
    }).eq("telegram_id", str(telegram_id)).execute()

    updated = bool(result.data)
    if updated:
        logger.info(f"Identity telegram_id={telegram_id} is now {status.value}")
    else:
        logger.warning(f"No identity with telegram_id={telegram_id} to mark {status.value}")
    return updated


def list_admins(supabase: Optional[Client] = None) -> list[DirectoryRecord]:
    result = _client(supabase).table(USERS_TABLE).select("*").eq(
        "role", Role.ADMIN.value
    ).execute()
    return [DirectoryRecord(**row) for row in result.data or []]
