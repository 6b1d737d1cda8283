"""Session keep-alive: refresh stored platform tokens between triggers.

Runs on its own cron. Every session whose token is older than the
keep-alive threshold is refreshed through the same tokenUpdate call the
executor uses, so a trigger rarely has to refresh on its hot path.

- refreshed → token, cookies and counters written back in one update
- logout    → device sessions are deleted (only that fingerprint);
              a background session is kept and logged for investigation
- error     → recorded on the session, retried on the next run
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from prebooker.executor import PlatformClient
from prebooker.models import DeviceSession, SessionType, TokenLogout, TokenRefreshed
from prebooker.sessions import needs_refresh
from prebooker.store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class KeepAliveReport:
    total: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "deleted": self.deleted,
            "errors": self.errors,
        }


def _label(session: DeviceSession) -> str:
    return f"{session.user_email} ({session.session_type.value}, {session.fingerprint[:10]})"


class SessionKeepAlive:
    def __init__(
        self,
        sessions: SessionStore,
        platform: PlatformClient,
        threshold_minutes: float = 20.0,
        limit: int = 500,
    ) -> None:
        self.sessions = sessions
        self.platform = platform
        self.threshold_minutes = threshold_minutes
        self.limit = limit

    async def run(self, now: datetime) -> KeepAliveReport:
        """Refresh every stale session once. One failing session never stops the run."""
        report = KeepAliveReport()
        sessions = await self.sessions.list_active_sessions(self.limit)
        report.total = len(sessions)

        for session in sessions:
            if not needs_refresh(session, now, self.threshold_minutes):
                report.skipped += 1
                continue
            try:
                await self._refresh(session, now, report)
            except Exception as e:
                logger.exception("Keep-alive for %s failed", _label(session))
                report.failed += 1
                report.errors.append(f"{_label(session)}: {e}")

        logger.info(
            "Keep-alive: %d sessions, %d updated, %d skipped, %d failed, %d deleted",
            report.total,
            report.updated,
            report.skipped,
            report.failed,
            report.deleted,
        )
        return report

    async def _refresh(
        self, session: DeviceSession, now: datetime, report: KeepAliveReport
    ) -> None:
        result = await self.platform.update_token(
            session.token, session.fingerprint, session.cookies
        )

        if isinstance(result, TokenRefreshed):
            await self.sessions.store_refreshed_token(
                session, result.new_token, result.cookies, now
            )
            report.updated += 1
            return

        if isinstance(result, TokenLogout):
            if session.session_type == SessionType.DEVICE:
                report.deleted += await self.sessions.delete_session(
                    session.user_email,
                    fingerprint=session.fingerprint,
                    session_type=SessionType.DEVICE,
                )
                logger.info("Device session expired and deleted: %s", _label(session))
            else:
                logger.warning(
                    "Background session got a logout response, kept: %s", _label(session)
                )
            report.failed += 1
            report.errors.append(f"{_label(session)}: session expired")
            return

        await self.sessions.update_token_update_data(
            session.user_email, False, result.message, fingerprint=session.fingerprint
        )
        report.failed += 1
        report.errors.append(f"{_label(session)}: {result.message}")
