"""Scheduling trigger: hand an intent to the delayed-delivery broker.

The broker delivers {prebookingId, boxSubdomain, boxAimharderId, executeAt,
securityToken} to the execution webhook `lead_time` before the slot opens.
An intent is never left pending without a dispatch handle: if the broker
refuses it, the intent is marked failed (`unschedulable`) for audit.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

from prebooker.errors import (
    IntentNotFoundError,
    IntentStateError,
    ScheduleError,
    ValidationError,
)
from prebooker.models import IntentCreate, IntentStatus, ReservationIntent
from prebooker.scheduler import PrecisionScheduler, calculate_available_at
from prebooker.security_token import generate_token
from prebooker.store import IntentStore

logger = logging.getLogger(__name__)


class Broker(Protocol):
    async def publish(self, url: str, body: dict, not_before: datetime) -> str: ...

    async def cancel(self, message_id: str) -> bool: ...


def resolve_available_at(data: IntentCreate) -> datetime:
    """Explicit available_at, or class start minus the platform's advance window."""
    if data.available_at is not None:
        available_at = data.available_at
    elif data.class_start is not None and data.early_booking_message:
        available_at = calculate_available_at(data.class_start, data.early_booking_message)
        if available_at is None:
            raise ValidationError(
                f"Could not read the booking window from: {data.early_booking_message!r}"
            )
    else:
        raise ValidationError(
            "Either available_at or class_start plus early_booking_message is required"
        )
    if available_at.tzinfo is None:
        raise ValidationError("available_at must carry a timezone")
    return available_at


class PrebookingTrigger:
    def __init__(
        self,
        intents: IntentStore,
        broker: Broker,
        scheduler: PrecisionScheduler,
        secret: str,
        callback_url: str,
    ) -> None:
        self.intents = intents
        self.broker = broker
        self.scheduler = scheduler
        self._secret = secret
        self.callback_url = callback_url

    def build_payload(self, intent: ReservationIntent) -> dict:
        return {
            "prebookingId": intent.id,
            "boxSubdomain": intent.box_subdomain,
            "boxAimharderId": intent.box_aimharder_id,
            "executeAt": str(intent.available_at_ms),
            "securityToken": generate_token(self._secret, intent.id, intent.available_at_ms),
        }

    async def schedule_intent(self, intent: ReservationIntent) -> str:
        """Publish the delayed trigger and store its message id on the intent."""
        dispatch_at = self.scheduler.dispatch_time(intent.available_at)
        message_id = await self.broker.publish(
            self.callback_url, self.build_payload(intent), not_before=dispatch_at
        )
        await self.intents.attach_dispatch(intent.id, message_id)
        logger.info(
            "Scheduled %s: dispatch %s for slot %s (message %s)",
            intent.id,
            dispatch_at.isoformat(),
            intent.available_at.isoformat(),
            message_id,
        )
        return message_id

    async def create_and_schedule(self, data: IntentCreate) -> ReservationIntent:
        available_at = resolve_available_at(data)
        intent = await self.intents.create(data, available_at)
        try:
            message_id = await self.schedule_intent(intent)
        except Exception as e:
            logger.error("Could not schedule %s: %s", intent.id, e)
            await self.intents.transition(
                intent.id,
                [IntentStatus.PENDING],
                IntentStatus.FAILED,
                error_code="unschedulable",
                error_message=str(e),
            )
            raise
        return intent.model_copy(update={"dispatch_id": message_id})

    async def cancel_intent(self, intent_id: str) -> ReservationIntent:
        """Cancel a pending intent and, best-effort, its broker message."""
        intent = await self.intents.get(intent_id)
        if intent is None:
            raise IntentNotFoundError(f"Prebooking {intent_id} not found")
        if intent.status != IntentStatus.PENDING:
            raise IntentStateError(f"Prebooking {intent_id} is {intent.status.value}")

        if intent.dispatch_id:
            try:
                await self.broker.cancel(intent.dispatch_id)
            except ScheduleError as e:
                logger.warning("Broker cancel for %s failed: %s", intent_id, e)

        cancelled = await self.intents.transition(
            intent_id, [IntentStatus.PENDING], IntentStatus.CANCELLED
        )
        if cancelled is None:
            raise IntentStateError(f"Prebooking {intent_id} started executing")
        logger.info("Cancelled %s", intent_id)
        return cancelled
