"""Session freshness checks."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from prebooker.cookies import missing_cookies
from prebooker.models import DeviceSession

logger = logging.getLogger(__name__)


def token_age(session: DeviceSession, now: datetime) -> timedelta | None:
    if session.last_token_update_date is None:
        return None
    last = session.last_token_update_date
    if last.tzinfo is None:
        last = last.replace(tzinfo=now.tzinfo)
    return now - last


def needs_refresh(session: DeviceSession, now: datetime, threshold_minutes: float = 25.0) -> bool:
    """True if the token was never updated or is strictly older than the threshold."""
    age = token_age(session, now)
    if age is None:
        return True
    return age > timedelta(minutes=threshold_minutes)


def log_cookie_gaps(session: DeviceSession) -> None:
    missing = missing_cookies(session.cookies)
    if missing:
        logger.warning(
            "Session %s/%s is missing cookies: %s",
            session.user_email,
            session.fingerprint[:10],
            ", ".join(missing),
        )
