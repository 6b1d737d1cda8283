"""Persistence for intents and device sessions.

Two collaborator contracts (SessionStore, IntentStore) and their Supabase
implementations. Every intent status change is a conditional update
(UPDATE ... WHERE id = ? AND status IN (...)) so two invocations can never
both transition the same row; the `firing` status is the claim lock.

Tables:
- prebookings: one row per reservation intent (never deleted)
- auth_sessions: one row per (user_email, fingerprint)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

from supabase import AsyncClient, acreate_client

from prebooker.errors import ConfigError, StoreError
from prebooker.models import (
    AuthCookie,
    DeviceSession,
    IntentCreate,
    IntentStatus,
    ReservationIntent,
    SessionType,
)

logger = logging.getLogger(__name__)

INTENTS_TABLE = "prebookings"
SESSIONS_TABLE = "auth_sessions"


class SessionStore(Protocol):
    async def get_device_session(self, email: str, fingerprint: str) -> DeviceSession | None: ...

    async def update_refresh_token(self, email: str, new_token: str, fingerprint: str) -> None: ...

    async def update_cookies(
        self, email: str, cookies: list[AuthCookie], fingerprint: str
    ) -> None: ...

    async def update_token_update_data(
        self,
        email: str,
        success: bool,
        error: str | None = None,
        fingerprint: str | None = None,
    ) -> None: ...

    async def delete_session(
        self,
        email: str,
        fingerprint: str | None = None,
        session_type: SessionType | None = None,
    ) -> int: ...

    async def store_refreshed_token(
        self, session: DeviceSession, new_token: str, cookies: list[AuthCookie], now: datetime
    ) -> None: ...

    async def list_active_sessions(self, limit: int = 500) -> list[DeviceSession]: ...


class IntentStore(Protocol):
    async def create(self, data: IntentCreate, available_at: datetime) -> ReservationIntent: ...

    async def get(self, intent_id: str) -> ReservationIntent | None: ...

    async def list_for_user(self, email: str, limit: int = 50) -> list[ReservationIntent]: ...

    async def find_due(self, before: datetime, limit: int) -> list[ReservationIntent]: ...

    async def attach_dispatch(self, intent_id: str, dispatch_id: str) -> None: ...

    async def transition(
        self,
        intent_id: str,
        expected: Iterable[IntentStatus],
        new_status: IntentStatus,
        **fields: Any,
    ) -> ReservationIntent | None: ...

    async def claim(self, intent_id: str, now: datetime) -> ReservationIntent | None: ...


# ---------------------------------------------------------------------------
# Supabase client
# ---------------------------------------------------------------------------


async def init_supabase(url: str, service_key: str) -> AsyncClient:
    """Create the async Supabase service client. Call once at startup."""
    if not url or not service_key:
        raise ConfigError("SUPABASE_URL and SUPABASE_SERVICE_KEY are required")
    client = await acreate_client(url, service_key)
    logger.info("Supabase service client initialized (%s)", url)
    return client


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, IntentStatus):
        return value.value
    return value


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def session_from_row(row: dict) -> DeviceSession:
    return DeviceSession(
        user_email=row["user_email"],
        fingerprint=row["fingerprint"],
        token=row["aimharder_token"],
        cookies=[AuthCookie(**c) for c in row.get("aimharder_cookies") or []],
        session_type=row.get("session_type") or SessionType.DEVICE,
        is_admin=row.get("is_admin") or False,
        token_update_count=row.get("token_update_count") or 0,
        last_token_update_date=row.get("last_token_update_date"),
        last_token_update_error=row.get("last_token_update_error"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _cookies_column(cookies: list[AuthCookie]) -> list[dict]:
    return [c.model_dump() for c in cookies]


def intent_from_row(row: dict) -> ReservationIntent:
    return ReservationIntent.model_validate(row)


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


class SupabaseSessionStore:
    """auth_sessions access, always keyed by (user_email, fingerprint)."""

    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    def _table(self):
        return self._client.table(SESSIONS_TABLE)

    async def get_device_session(self, email: str, fingerprint: str) -> DeviceSession | None:
        resp = (
            await self._table()
            .select("*")
            .eq("user_email", email)
            .eq("fingerprint", fingerprint)
            .limit(1)
            .execute()
        )
        rows = resp.data
        return session_from_row(rows[0]) if rows else None

    async def list_active_sessions(self, limit: int = 500) -> list[DeviceSession]:
        """Every stored session, least recently refreshed first."""
        resp = (
            await self._table()
            .select("*")
            .order("last_token_update_date")
            .limit(limit)
            .execute()
        )
        return [session_from_row(r) for r in resp.data]

    async def _update(self, email: str, fingerprint: str | None, data: dict) -> int:
        query = self._table().update(data).eq("user_email", email)
        if fingerprint:
            query = query.eq("fingerprint", fingerprint)
        else:
            query = query.eq("session_type", SessionType.BACKGROUND.value)
        resp = await query.execute()
        if not resp.data:
            logger.warning(
                "No session row updated for %s (fingerprint=%s)", email, fingerprint or "background"
            )
        return len(resp.data)

    async def update_refresh_token(self, email: str, new_token: str, fingerprint: str) -> None:
        await self._update(email, fingerprint, {"aimharder_token": new_token})

    async def update_cookies(
        self, email: str, cookies: list[AuthCookie], fingerprint: str
    ) -> None:
        await self._update(email, fingerprint, {"aimharder_cookies": _cookies_column(cookies)})

    async def update_token_update_data(
        self,
        email: str,
        success: bool,
        error: str | None = None,
        fingerprint: str | None = None,
    ) -> None:
        if success:
            current = await self.get_device_session(email, fingerprint) if fingerprint else None
            count = current.token_update_count + 1 if current else 1
            data = {
                "token_update_count": count,
                "last_token_update_date": _serialize(datetime.now().astimezone()),
                "last_token_update_error": None,
            }
        else:
            data = {"last_token_update_error": error or "unknown error"}
        await self._update(email, fingerprint, data)

    async def delete_session(
        self,
        email: str,
        fingerprint: str | None = None,
        session_type: SessionType | None = None,
    ) -> int:
        """Delete sessions for a user. With no filter only device sessions go;
        the background session survives a device logout."""
        query = self._table().delete().eq("user_email", email)
        if fingerprint:
            query = query.eq("fingerprint", fingerprint)
        if session_type:
            query = query.eq("session_type", session_type.value)
        if not fingerprint and not session_type:
            query = query.eq("session_type", SessionType.DEVICE.value)
        resp = await query.execute()
        logger.info(
            "Deleted %d session(s) for %s (fingerprint=%s)", len(resp.data), email, fingerprint
        )
        return len(resp.data)

    async def store_refreshed_token(
        self, session: DeviceSession, new_token: str, cookies: list[AuthCookie], now: datetime
    ) -> None:
        """Write token, cookies and counters in one update."""
        await self._update(
            session.user_email,
            session.fingerprint,
            {
                "aimharder_token": new_token,
                "aimharder_cookies": _cookies_column(cookies),
                "token_update_count": session.token_update_count + 1,
                "last_token_update_date": _serialize(now),
                "last_token_update_error": None,
            },
        )


class SupabaseIntentStore:
    """prebookings access. Status changes only through transition()."""

    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    def _table(self):
        return self._client.table(INTENTS_TABLE)

    async def create(self, data: IntentCreate, available_at: datetime) -> ReservationIntent:
        row = {
            "user_email": data.user_email,
            "fingerprint": data.fingerprint,
            "box_id": data.box_id,
            "box_subdomain": data.box_subdomain,
            "box_aimharder_id": data.box_aimharder_id,
            "booking_data": data.booking_data.model_dump(by_alias=True),
            "class_type": data.class_type,
            "class_label": data.class_label,
            "available_at": _serialize(available_at),
            "status": IntentStatus.PENDING.value,
        }
        resp = await self._table().insert(row).execute()
        if not resp.data:
            raise StoreError("Insert into prebookings returned no row")
        return intent_from_row(resp.data[0])

    async def get(self, intent_id: str) -> ReservationIntent | None:
        resp = await self._table().select("*").eq("id", intent_id).limit(1).execute()
        rows = resp.data
        return intent_from_row(rows[0]) if rows else None

    async def list_for_user(self, email: str, limit: int = 50) -> list[ReservationIntent]:
        resp = (
            await self._table()
            .select("*")
            .eq("user_email", email)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return [intent_from_row(r) for r in resp.data]

    async def find_due(self, before: datetime, limit: int) -> list[ReservationIntent]:
        """Pending intents due by `before`, oldest slot first, then FIFO."""
        resp = (
            await self._table()
            .select("*")
            .eq("status", IntentStatus.PENDING.value)
            .lte("available_at", _serialize(before))
            .order("available_at")
            .order("created_at")
            .limit(limit)
            .execute()
        )
        return [intent_from_row(r) for r in resp.data]

    async def attach_dispatch(self, intent_id: str, dispatch_id: str) -> None:
        await self._table().update({"dispatch_id": dispatch_id}).eq("id", intent_id).execute()

    async def transition(
        self,
        intent_id: str,
        expected: Iterable[IntentStatus],
        new_status: IntentStatus,
        **fields: Any,
    ) -> ReservationIntent | None:
        """Conditional status change. Returns the updated intent, or None if
        the row was not in one of the expected statuses."""
        data = {k: _serialize(v) for k, v in fields.items()}
        data["status"] = new_status.value
        resp = (
            await self._table()
            .update(data)
            .eq("id", intent_id)
            .in_("status", [s.value for s in expected])
            .execute()
        )
        rows = resp.data
        if not rows:
            logger.info(
                "Transition of %s to %s lost (not in %s)",
                intent_id,
                new_status.value,
                ",".join(s.value for s in expected),
            )
            return None
        return intent_from_row(rows[0])

    async def claim(self, intent_id: str, now: datetime) -> ReservationIntent | None:
        return await self.transition(
            intent_id, [IntentStatus.PENDING], IntentStatus.FIRING, executed_at=now
        )
