"""Prebooking executor: one timed reservation attempt.

Shared by the broker webhook and the cron sweep. Each attempt walks:

  received → validated → session-ready → armed → fired → recorded
                  (error exits: failed, duplicate-skip)

T-lead:  trigger arrives, token verified, intent loaded
         session fetched by (user, fingerprint), token refreshed if stale
         budget check, atomic claim pending → firing
T-0:     exact-instant asyncio.sleep ends, booking POST fires
T+rtt:   outcome recorded firing → confirmed|failed, e-mail in background

The claim is the only cross-path lock: a webhook and a sweep racing on the
same intent both reach it, exactly one wins, the other is a duplicate-skip.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Protocol, TypeVar

from prebooker.errors import (
    AuthExpiredError,
    IntentNotFoundError,
    SessionNotFoundError,
    ThirdPartyRejectionError,
    TimeoutExceededError,
    TransientNetworkError,
    ValidationError,
)
from prebooker.models import (
    AuthCookie,
    BookingConfirmed,
    BookingLogout,
    BookingOutcome,
    BookingRequest,
    DeviceSession,
    IntentStatus,
    ReservationIntent,
    TokenLogout,
    TokenRefreshed,
    TokenUpdateResult,
    TriggerPayload,
)
from prebooker.recorder import OutcomeRecorder
from prebooker.scheduler import ExecutionBudget, PrecisionScheduler
from prebooker.security_token import verify_token
from prebooker.sessions import log_cookie_gaps, needs_refresh
from prebooker.state import ExecutionPhase, ExecutionReport
from prebooker.store import IntentStore, SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PlatformClient(Protocol):
    async def update_token(
        self, token: str, fingerprint: str, cookies: list[AuthCookie]
    ) -> TokenUpdateResult: ...

    async def create_booking(
        self, box_subdomain: str, booking: BookingRequest, cookies: list[AuthCookie]
    ) -> BookingOutcome: ...


class PrebookingExecutor:
    """
    Runs attempts against injected capabilities:

        executor = PrebookingExecutor(intents, sessions, client, recorder, scheduler,
                                      secret=settings.prebooking_secret)
        report = await executor.handle_trigger(payload)
    """

    def __init__(
        self,
        intents: IntentStore,
        sessions: SessionStore,
        platform: PlatformClient,
        recorder: OutcomeRecorder,
        scheduler: PrecisionScheduler,
        secret: str = "",
        refresh_threshold_minutes: float = 25.0,
        fire_timeout: float = 3.0,
        max_execution_seconds: float = 8.0,
    ) -> None:
        self.intents = intents
        self.sessions = sessions
        self.platform = platform
        self.recorder = recorder
        self.scheduler = scheduler
        self._secret = secret
        self.refresh_threshold_minutes = refresh_threshold_minutes
        self.fire_timeout = fire_timeout
        self.max_execution_seconds = max_execution_seconds

    def new_budget(self) -> ExecutionBudget:
        return ExecutionBudget(
            started_at=self.scheduler.now(), max_seconds=self.max_execution_seconds
        )

    async def handle_trigger(
        self, payload: TriggerPayload, budget: ExecutionBudget | None = None
    ) -> ExecutionReport:
        """Verify a broker trigger and run the attempt it names.

        Raises ValidationError on a token mismatch and IntentNotFoundError
        for an unknown intent; every other outcome is in the report.
        """
        budget = budget or self.new_budget()
        report = ExecutionReport(intent_id=payload.prebooking_id)
        logger.info("%s Trigger received for intent %s", report.log_prefix, payload.prebooking_id)

        if not verify_token(
            self._secret, payload.security_token, payload.prebooking_id, payload.execute_at_ms
        ):
            logger.warning("%s Invalid security token for %s", report.log_prefix, payload.prebooking_id)
            raise ValidationError("Invalid security token")
        report.phase = ExecutionPhase.VALIDATED

        intent = await self.intents.get(payload.prebooking_id)
        if intent is None:
            raise IntentNotFoundError(f"Prebooking {payload.prebooking_id} not found")
        if intent.available_at_ms != payload.execute_at_ms:
            logger.warning(
                "%s executeAt %s differs from stored available_at %s, using stored",
                report.log_prefix,
                payload.execute_at,
                intent.available_at.isoformat(),
            )
        return await self.execute(intent, budget, report)

    async def execute(
        self,
        intent: ReservationIntent,
        budget: ExecutionBudget | None = None,
        report: ExecutionReport | None = None,
    ) -> ExecutionReport:
        """Run one attempt. Always returns a report; never retries."""
        budget = budget or self.new_budget()
        report = report or ExecutionReport(intent_id=intent.id, phase=ExecutionPhase.VALIDATED)
        report.prepared_at = self.scheduler.now()
        p = report.log_prefix

        if intent.status != IntentStatus.PENDING:
            return self._skip(report, f"Intent already {intent.status.value}")

        # --- session-ready, then budget check ---
        try:
            session = await self._within(
                budget,
                lambda: self._prepare_session(intent, report),
                "Session preparation exceeded the budget",
            )
            report.phase = ExecutionPhase.SESSION_READY

            now = self.scheduler.now()
            wait = (intent.available_at - now).total_seconds()
            if not budget.can_fire(now, wait, self.fire_timeout):
                raise TimeoutExceededError(
                    f"Slot opens in {wait:.2f}s, beyond the remaining budget"
                )
        except TimeoutExceededError as e:
            return self._out_of_budget(report, str(e))
        except SessionNotFoundError as e:
            return await self._fail_before_claim(intent, report, "session-not-found", str(e))
        except AuthExpiredError as e:
            return await self._fail_before_claim(intent, report, "auth-expired", str(e))
        except TransientNetworkError as e:
            return await self._fail_before_claim(intent, report, "refresh-failed", str(e))

        claimed = await self.intents.claim(intent.id, now)
        if claimed is None:
            return self._skip(report, "Claimed by another invocation")
        logger.info("%s Claimed intent %s", p, intent.id)

        # Past this point the intent is firing: every path must end in a
        # recorded transition or the sweep will never see it again.
        try:
            fired = await self._arm_and_fire(claimed, session, budget, report)
        except Exception as e:
            logger.exception("%s Unexpected error after claiming %s", p, intent.id)
            report.phase = ExecutionPhase.FAILED
            report.status = IntentStatus.FAILED
            report.error_code = "internal-error"
            report.message = f"{type(e).__name__}: {e}"
            fired = True
        if fired:
            await self.recorder.record(claimed, report)
        return report

    async def _arm_and_fire(
        self,
        intent: ReservationIntent,
        session: DeviceSession,
        budget: ExecutionBudget,
        report: ExecutionReport,
    ) -> bool:
        """Wait for the slot and fire. Returns False if the claim was released."""
        p = report.log_prefix
        report.phase = ExecutionPhase.ARMED
        target = intent.available_at
        now = self.scheduler.now()
        wait = (target - now).total_seconds()
        try:
            if wait > budget.remaining(now) - self.fire_timeout:
                raise TimeoutExceededError("Claim left no budget to wait for the slot")
            if wait > 0:
                await self._within(
                    budget,
                    lambda: self.scheduler.wait_until(target),
                    "Wait for the slot exceeded the budget",
                )
        except TimeoutExceededError as e:
            await self._release(intent, report, str(e))
            return False
        if wait <= 0:
            logger.warning("%s Trigger arrived %.0fms late, firing immediately", p, -wait * 1000)

        await self._fire(intent, session, report)
        return True

    async def _within(
        self, budget: ExecutionBudget, step: Callable[[], Awaitable[T]], message: str
    ) -> T:
        """Run step with whatever budget is left once a fire is reserved."""
        guard = budget.remaining(self.scheduler.now()) - self.fire_timeout
        if guard <= 0:
            raise TimeoutExceededError(message)
        try:
            return await asyncio.wait_for(step(), timeout=guard)
        except asyncio.TimeoutError as e:
            raise TimeoutExceededError(message) from e

    async def _prepare_session(
        self, intent: ReservationIntent, report: ExecutionReport
    ) -> DeviceSession:
        """Fetch the intent's device session and refresh its token if stale."""
        session = await self.sessions.get_device_session(intent.user_email, intent.fingerprint)
        if session is None:
            raise SessionNotFoundError(
                f"No session for {intent.user_email} on device {intent.fingerprint[:10]}"
            )
        log_cookie_gaps(session)

        now = self.scheduler.now()
        if not needs_refresh(session, now, self.refresh_threshold_minutes):
            return session

        logger.info("%s Token stale, refreshing before fire", report.log_prefix)
        result = await self.platform.update_token(session.token, session.fingerprint, session.cookies)

        if isinstance(result, TokenRefreshed):
            await self.sessions.store_refreshed_token(session, result.new_token, result.cookies, now)
            report.token_refreshed = True
            return session.model_copy(
                update={
                    "token": result.new_token,
                    "cookies": result.cookies,
                    "token_update_count": session.token_update_count + 1,
                    "last_token_update_date": now,
                    "last_token_update_error": None,
                }
            )

        if isinstance(result, TokenLogout):
            # A concurrent invocation may have rotated the token we just sent
            current = await self.sessions.get_device_session(
                session.user_email, session.fingerprint
            )
            if current is not None and current.token != session.token:
                logger.info(
                    "%s Token rotated by another invocation, using the stored session",
                    report.log_prefix,
                )
                return current
            await self.sessions.delete_session(session.user_email, fingerprint=session.fingerprint)
            raise AuthExpiredError(result.message)

        await self.sessions.update_token_update_data(
            session.user_email, False, result.message, fingerprint=session.fingerprint
        )
        raise TransientNetworkError(f"Token refresh failed: {result.message}")

    async def _fire(
        self, intent: ReservationIntent, session: DeviceSession, report: ExecutionReport
    ) -> None:
        """POST the booking and fold the outcome into the report."""
        p = report.log_prefix
        report.phase = ExecutionPhase.FIRED
        report.fired_at = self.scheduler.now()
        report.fire_latency_ms = (report.fired_at - intent.available_at).total_seconds() * 1000
        t0 = time.perf_counter()

        try:
            outcome = await asyncio.wait_for(
                self.platform.create_booking(
                    intent.box_subdomain, intent.booking_data, session.cookies
                ),
                timeout=self.fire_timeout,
            )
            self._interpret(outcome, report)
        except asyncio.TimeoutError:
            report.status = IntentStatus.FAILED
            report.error_code = "timeout-exceeded"
            report.message = f"No booking response within {self.fire_timeout:.1f}s"
        except TransientNetworkError as e:
            report.status = IntentStatus.FAILED
            report.error_code = "network-error"
            report.message = str(e)
        except AuthExpiredError as e:
            report.status = IntentStatus.FAILED
            report.error_code = "auth-expired"
            report.message = str(e)
            await self.sessions.delete_session(session.user_email, fingerprint=session.fingerprint)
        except ThirdPartyRejectionError as e:
            report.status = IntentStatus.FAILED
            report.error_code = e.error_code
            report.message = str(e)
            report.book_state = e.book_state
        finally:
            report.responded_at = self.scheduler.now()
            report.response_time_ms = (time.perf_counter() - t0) * 1000

        logger.info(
            "%s Fired: latency %.0fms, response %.0fms, %s",
            p,
            report.fire_latency_ms,
            report.response_time_ms,
            report.error_code or "confirmed",
        )

    @staticmethod
    def _interpret(outcome: BookingOutcome, report: ExecutionReport) -> None:
        if isinstance(outcome, BookingConfirmed):
            report.status = IntentStatus.CONFIRMED
            report.booking_id = outcome.booking_id
            report.book_state = outcome.book_state
            report.message = outcome.message
            return
        if isinstance(outcome, BookingLogout):
            raise AuthExpiredError("Session expired at booking time")
        raise ThirdPartyRejectionError(
            outcome.message, book_state=outcome.book_state, error_code=outcome.error_code
        )

    async def _fail_before_claim(
        self, intent: ReservationIntent, report: ExecutionReport, code: str, message: str
    ) -> ExecutionReport:
        report.error_code = code
        report.message = message
        report.phase = ExecutionPhase.FAILED
        recorded = await self.recorder.fail_before_claim(intent, report)
        if not recorded:
            report.status = None
        return report

    async def _release(
        self, intent: ReservationIntent, report: ExecutionReport, message: str
    ) -> ExecutionReport:
        """Timed out after the claim but before firing: back to pending."""
        report.phase = ExecutionPhase.FAILED
        report.error_code = "timeout-exceeded"
        report.message = message
        await self.recorder.release(intent, report)
        return report

    @staticmethod
    def _skip(report: ExecutionReport, message: str) -> ExecutionReport:
        report.phase = ExecutionPhase.DUPLICATE_SKIP
        report.message = message
        logger.info("%s Duplicate skip: %s", report.log_prefix, message)
        return report

    @staticmethod
    def _out_of_budget(report: ExecutionReport, message: str) -> ExecutionReport:
        """Leave the intent pending for the next trigger or sweep."""
        report.phase = ExecutionPhase.FAILED
        report.error_code = "timeout-exceeded"
        report.message = message
        logger.warning(
            "%s Intent %s left pending: %s", report.log_prefix, report.intent_id, message
        )
        return report
