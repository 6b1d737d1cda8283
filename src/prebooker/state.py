"""Execution phases and per-attempt records.

Nothing here is persisted directly; the recorder folds an ExecutionReport
into the intent's `result` column.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from prebooker.models import IntentStatus


class ExecutionPhase(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    SESSION_READY = "session-ready"
    ARMED = "armed"
    FIRED = "fired"
    RECORDED = "recorded"
    FAILED = "failed"
    DUPLICATE_SKIP = "duplicate-skip"


def new_execution_id() -> str:
    return uuid.uuid4().hex[:8]


@dataclass
class ExecutionReport:
    """Outcome of one attempt at one intent.

    Timestamps are filled in as the attempt moves through its phases so a
    failure at any point still carries what happened before it.
    """

    intent_id: str
    execution_id: str = field(default_factory=new_execution_id)
    phase: ExecutionPhase = ExecutionPhase.RECEIVED
    status: IntentStatus | None = None
    message: str = ""
    error_code: str | None = None
    booking_id: str | None = None
    book_state: int | None = None
    prepared_at: datetime | None = None
    fired_at: datetime | None = None
    responded_at: datetime | None = None
    fire_latency_ms: float | None = None
    response_time_ms: float | None = None
    token_refreshed: bool = False

    @property
    def log_prefix(self) -> str:
        return f"[exec {self.execution_id}]"

    @property
    def success(self) -> bool:
        return self.phase in (ExecutionPhase.RECORDED, ExecutionPhase.DUPLICATE_SKIP) and (
            self.status != IntentStatus.FAILED
        )

    def result_payload(self) -> dict[str, Any]:
        """JSON stored in the intent's result column."""
        return {
            "executionId": self.execution_id,
            "bookingId": self.booking_id,
            "bookState": self.book_state,
            "message": self.message,
            "preparedAt": _iso(self.prepared_at),
            "firedAt": _iso(self.fired_at),
            "respondedAt": _iso(self.responded_at),
            "fireLatencyMs": self.fire_latency_ms,
            "responseTimeMs": self.response_time_ms,
            "tokenRefreshed": self.token_refreshed,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "intentId": self.intent_id,
            "phase": self.phase.value,
            "status": self.status.value if self.status else None,
            "errorCode": self.error_code,
            **self.result_payload(),
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
