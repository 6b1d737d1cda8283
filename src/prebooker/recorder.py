"""Reservation outcome recorder.

Persists the terminal transition of an attempt and dispatches the user
e-mail in the background. All writes are conditional on the status the
caller believes the intent is in:

- record():            firing  → confirmed | failed
- fail_before_claim(): pending → failed   (session missing, auth expired,
                                           refresh failed)
- release():           firing  → pending  (budget ran out before firing)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from prebooker.models import (
    IntentStatus,
    PrebookingFailureData,
    PrebookingSuccessData,
    ReservationIntent,
)
from prebooker.notifications import Notifier
from prebooker.state import ExecutionPhase, ExecutionReport
from prebooker.store import IntentStore

logger = logging.getLogger(__name__)

DISPLAY_TZ = ZoneInfo("Europe/Madrid")


def format_class_datetime(intent: ReservationIntent) -> str:
    if intent.class_label:
        return intent.class_label
    return intent.available_at.astimezone(DISPLAY_TZ).strftime("%d/%m/%Y %H:%M")


class OutcomeRecorder:
    """Writes attempt outcomes and owns the background e-mail tasks."""

    def __init__(self, intents: IntentStore, notifier: Notifier | None = None) -> None:
        self._intents = intents
        self._notifier = notifier
        self._tasks: set[asyncio.Task] = set()

    async def record(self, intent: ReservationIntent, report: ExecutionReport) -> bool:
        """firing → confirmed/failed. Returns False if the claim was lost."""
        return await self._finish(intent, report, [IntentStatus.FIRING])

    async def fail_before_claim(self, intent: ReservationIntent, report: ExecutionReport) -> bool:
        """pending → failed for attempts that never reached the claim."""
        report.status = IntentStatus.FAILED
        return await self._finish(intent, report, [IntentStatus.PENDING])

    async def release(self, intent: ReservationIntent, report: ExecutionReport) -> bool:
        """firing → pending so the next trigger or sweep can retry."""
        updated = await self._intents.transition(
            intent.id, [IntentStatus.FIRING], IntentStatus.PENDING
        )
        logger.warning(
            "%s Released intent %s back to pending: %s",
            report.log_prefix,
            intent.id,
            report.message,
        )
        return updated is not None

    async def _finish(
        self,
        intent: ReservationIntent,
        report: ExecutionReport,
        expected: list[IntentStatus],
    ) -> bool:
        status = report.status or IntentStatus.FAILED
        fields = {"result": report.result_payload()}
        if status == IntentStatus.FAILED:
            fields["error_code"] = report.error_code
            fields["error_message"] = report.message
        updated = await self._intents.transition(intent.id, expected, status, **fields)
        if updated is None:
            logger.warning(
                "%s Intent %s was no longer %s, outcome %s not recorded",
                report.log_prefix,
                intent.id,
                "/".join(s.value for s in expected),
                status.value,
            )
            return False

        report.status = status
        report.phase = (
            ExecutionPhase.RECORDED if status == IntentStatus.CONFIRMED else ExecutionPhase.FAILED
        )
        logger.info(
            "%s Intent %s → %s%s",
            report.log_prefix,
            intent.id,
            status.value,
            f" ({report.error_code}: {report.message})" if report.error_code else "",
        )
        self.notify(updated, report)
        return True

    # --- e-mail ---

    def notify(self, intent: ReservationIntent, report: ExecutionReport) -> None:
        """Send the outcome e-mail in the background."""
        if self._notifier is None:
            return
        task = asyncio.create_task(self._send(intent, report))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for pending e-mail tasks (shutdown, CLI and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _send(self, intent: ReservationIntent, report: ExecutionReport) -> None:
        try:
            await self._send_email(intent, report)
        except Exception:
            logger.exception("%s Outcome e-mail for %s failed", report.log_prefix, intent.id)

    async def _send_email(self, intent: ReservationIntent, report: ExecutionReport) -> None:
        assert self._notifier is not None
        formatted = format_class_datetime(intent)
        if report.status == IntentStatus.CONFIRMED:
            sent = await self._notifier.send_prebooking_success(
                PrebookingSuccessData(
                    user_email=intent.user_email,
                    class_type=intent.class_type or "Clase",
                    formatted_datetime=formatted,
                    box_name=intent.box_subdomain,
                    booking_id=report.booking_id,
                    confirmed_at=(report.responded_at or datetime.now(DISPLAY_TZ)).isoformat(),
                )
            )
        else:
            sent = await self._notifier.send_prebooking_failure(
                PrebookingFailureData(
                    user_email=intent.user_email,
                    class_type=intent.class_type or "Clase",
                    formatted_datetime=formatted,
                    box_name=intent.box_subdomain,
                    error_message=report.message or "Unknown error",
                    error_code=report.error_code,
                    execution_id=report.execution_id,
                    prepared_at=(report.prepared_at or datetime.now(DISPLAY_TZ)).isoformat(),
                    fired_at=report.fired_at.isoformat() if report.fired_at else None,
                    responded_at=report.responded_at.isoformat() if report.responded_at else None,
                    fire_latency_ms=report.fire_latency_ms,
                    technical_details={
                        "bookState": report.book_state,
                        "errorMssg": report.message,
                        "responseTimeMs": report.response_time_ms,
                    },
                )
            )
        if sent:
            await self._intents.transition(
                intent.id, [intent.status], intent.status, email_sent=True
            )
