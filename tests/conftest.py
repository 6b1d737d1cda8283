"""Shared test fixtures: in-memory capabilities and a controllable clock."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from prebooker.config import Settings
from prebooker.errors import ScheduleError
from prebooker.executor import PrebookingExecutor
from prebooker.models import (
    AuthCookie,
    BookingConfirmed,
    BookingRequest,
    DeviceSession,
    IntentStatus,
    ReservationIntent,
    SessionType,
    TokenRefreshed,
)
from prebooker.recorder import OutcomeRecorder
from prebooker.scheduler import PrecisionScheduler
from prebooker.services import Services

NOW = datetime(2026, 2, 10, 18, 29, 56, tzinfo=timezone.utc)
SECRET = "test-prebooking-secret"
USER = "athlete@example.com"
DEVICE_FP = "fp-device-abc123456789"


class FakeClock:
    """Time only moves when something sleeps (or a test advances it)."""

    def __init__(self, start: datetime = NOW) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(max(seconds, 0.0))
        await asyncio.sleep(0)


class InMemoryIntentStore:
    def __init__(self) -> None:
        self.rows: dict[str, ReservationIntent] = {}
        self.claims: list[str] = []
        self._seq = 0

    def _created_at(self) -> datetime:
        self._seq += 1
        return NOW - timedelta(days=1) + timedelta(seconds=self._seq)

    def add(self, **overrides) -> ReservationIntent:
        data = {
            "id": str(uuid.uuid4()),
            "user_email": USER,
            "fingerprint": DEVICE_FP,
            "box_subdomain": "crossfitbox",
            "box_aimharder_id": "10122",
            "booking_data": BookingRequest(day="20260214", familyId="", id="52910"),
            "class_type": "WOD",
            "class_label": "Sábado 14 Feb 19:30",
            "available_at": NOW + timedelta(seconds=4),
            "created_at": self._created_at(),
        }
        data.update(overrides)
        intent = ReservationIntent(**data)
        self.rows[intent.id] = intent
        return intent

    async def create(self, data, available_at):
        return self.add(
            user_email=data.user_email,
            fingerprint=data.fingerprint,
            box_id=data.box_id,
            box_subdomain=data.box_subdomain,
            box_aimharder_id=data.box_aimharder_id,
            booking_data=data.booking_data,
            class_type=data.class_type,
            class_label=data.class_label,
            available_at=available_at,
        )

    async def get(self, intent_id):
        return self.rows.get(intent_id)

    async def list_for_user(self, email, limit=50):
        rows = [r for r in self.rows.values() if r.user_email == email]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[:limit]

    async def find_due(self, before, limit):
        rows = [
            r
            for r in self.rows.values()
            if r.status == IntentStatus.PENDING and r.available_at <= before
        ]
        rows.sort(key=lambda r: (r.available_at, r.created_at))
        return rows[:limit]

    async def attach_dispatch(self, intent_id, dispatch_id):
        self.rows[intent_id] = self.rows[intent_id].model_copy(update={"dispatch_id": dispatch_id})

    async def transition(self, intent_id, expected, new_status, **fields):
        row = self.rows.get(intent_id)
        if row is None or row.status not in list(expected):
            return None
        updated = row.model_copy(update={**fields, "status": new_status})
        self.rows[intent_id] = updated
        return updated

    async def claim(self, intent_id, now):
        claimed = await self.transition(
            intent_id, [IntentStatus.PENDING], IntentStatus.FIRING, executed_at=now
        )
        if claimed is not None:
            self.claims.append(intent_id)
        return claimed


class InMemorySessionStore:
    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], DeviceSession] = {}
        self.deleted: list[tuple[str, str | None]] = []

    def add(self, session: DeviceSession) -> DeviceSession:
        self.rows[(session.user_email, session.fingerprint)] = session
        return session

    async def get_device_session(self, email, fingerprint):
        return self.rows.get((email, fingerprint))

    async def list_active_sessions(self, limit=500):
        return list(self.rows.values())[:limit]

    def _patch(self, email, fingerprint, **update):
        key = (email, fingerprint)
        if key in self.rows:
            self.rows[key] = self.rows[key].model_copy(update=update)

    async def update_refresh_token(self, email, new_token, fingerprint):
        self._patch(email, fingerprint, token=new_token)

    async def update_cookies(self, email, cookies, fingerprint):
        self._patch(email, fingerprint, cookies=cookies)

    async def update_token_update_data(self, email, success, error=None, fingerprint=None):
        if success:
            current = self.rows.get((email, fingerprint))
            count = current.token_update_count + 1 if current else 1
            self._patch(email, fingerprint, token_update_count=count, last_token_update_error=None)
        else:
            self._patch(email, fingerprint, last_token_update_error=error)

    async def delete_session(self, email, fingerprint=None, session_type=None):
        doomed = [
            key
            for key, s in self.rows.items()
            if s.user_email == email
            and (fingerprint is None or s.fingerprint == fingerprint)
            and (session_type is None or s.session_type == session_type)
            and (fingerprint or session_type or s.session_type == SessionType.DEVICE)
        ]
        for key in doomed:
            del self.rows[key]
        self.deleted.append((email, fingerprint))
        return len(doomed)

    async def store_refreshed_token(self, session, new_token, cookies, now):
        self._patch(
            session.user_email,
            session.fingerprint,
            token=new_token,
            cookies=cookies,
            token_update_count=session.token_update_count + 1,
            last_token_update_date=now,
            last_token_update_error=None,
        )


class FakePlatform:
    """Stands in for AimharderClient."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.token_result = TokenRefreshed(new_token="refreshed-token", cookies=[])
        # Per-token overrides; an exception value is raised
        self.token_results: dict = {}
        self.booking_outcome = BookingConfirmed(booking_id="98765", book_state=1, message="")
        self.booking_error: Exception | None = None
        self.booking_delay = 0.0
        self.token_calls: list[tuple] = []
        self.booking_calls: list[dict] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None

    async def update_token(self, token, fingerprint, cookies):
        self.token_calls.append((token, fingerprint, cookies))
        result = self.token_results.get(token, self.token_result)
        if isinstance(result, Exception):
            raise result
        return result

    async def create_booking(self, box_subdomain, booking, cookies):
        self.booking_calls.append(
            {
                "subdomain": box_subdomain,
                "booking": booking,
                "cookies": cookies,
                "at": self.clock.now(),
            }
        )
        if self.booking_delay:
            await asyncio.sleep(self.booking_delay)
        if self.booking_error is not None:
            raise self.booking_error
        return self.booking_outcome


class FakeBroker:
    def __init__(self) -> None:
        self.published: list[dict] = []
        self.cancelled: list[str] = []
        self.fail_publish = False
        self.fail_cancel = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None

    async def publish(self, url, body, not_before):
        if self.fail_publish:
            raise ScheduleError("QStash rejected publish (HTTP 500)")
        message_id = f"msg_{len(self.published) + 1}"
        self.published.append(
            {"url": url, "body": body, "not_before": not_before, "id": message_id}
        )
        return message_id

    async def cancel(self, message_id):
        if self.fail_cancel:
            raise ScheduleError("QStash unreachable")
        self.cancelled.append(message_id)
        return True


class FakeNotifier:
    def __init__(self) -> None:
        self.successes: list = []
        self.failures: list = []

    async def send_prebooking_success(self, data):
        self.successes.append(data)
        return True

    async def send_prebooking_failure(self, data):
        self.failures.append(data)
        return True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        prebooking_secret=SECRET,
        cron_secret="cron-secret",
        api_key="client-api-key",
        app_url="https://prebooker.example.com",
        admin_email="admin@example.com",
    )


@pytest.fixture
def scheduler(clock):
    return PrecisionScheduler(lead_time_seconds=4.0, now=clock.now, sleep=clock.sleep)


@pytest.fixture
def intents():
    return InMemoryIntentStore()


@pytest.fixture
def sessions():
    return InMemorySessionStore()


@pytest.fixture
def platform(clock):
    return FakePlatform(clock)


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def recorder(intents, notifier):
    return OutcomeRecorder(intents, notifier)


@pytest.fixture
def executor(intents, sessions, platform, recorder, scheduler):
    return PrebookingExecutor(
        intents=intents,
        sessions=sessions,
        platform=platform,
        recorder=recorder,
        scheduler=scheduler,
        secret=SECRET,
        refresh_threshold_minutes=25.0,
        fire_timeout=3.0,
        max_execution_seconds=8.0,
    )


@pytest.fixture
def services(settings, intents, sessions, recorder, scheduler, platform, broker):
    return Services(
        settings=settings,
        intents=intents,
        sessions=sessions,
        recorder=recorder,
        scheduler=scheduler,
        platform_factory=lambda: platform,
        broker_factory=lambda: broker,
    )


@pytest.fixture
def auth_cookies():
    return [
        AuthCookie(name="AWSALB", value="alb-value"),
        AuthCookie(name="AWSALBCORS", value="albcors-value"),
        AuthCookie(name="PHPSESSID", value="php-session"),
        AuthCookie(name="amhrdrauth", value="auth-cookie"),
    ]


@pytest.fixture
def device_session(sessions, auth_cookies):
    """A device session whose token was updated 5 minutes ago."""
    return sessions.add(
        DeviceSession(
            user_email=USER,
            fingerprint=DEVICE_FP,
            token="device-token",
            cookies=auth_cookies,
            token_update_count=3,
            last_token_update_date=NOW - timedelta(minutes=5),
        )
    )


@pytest.fixture
def sample_booking_success():
    """A realistic /api/book response for a confirmed booking."""
    return {
        "clasesContratadas": "",
        "hasPublicMemberships": 0,
        "bookState": 1,
        "limitedClasses": 0,
        "id": "98765",
        "errorMssg": "",
        "errorMssgLang": "",
    }


@pytest.fixture
def sample_booking_early():
    """/api/book response when the class is not yet open for booking."""
    return {
        "clasesContratadas": "",
        "bookState": -12,
        "errorMssg": "No puedes reservar clases con más de 4 días de antelación",
        "errorMssgLang": "ERROR_ANTELACION_CLIENTE",
    }
