"""Pydantic request/response schemas for the web API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from prebooker.models import ReservationIntent


class ApiResponse(BaseModel):
    success: bool
    message: str
    details: dict[str, Any] = {}


# ---------------------------------------------------------------------------
# Cron
# ---------------------------------------------------------------------------


class SweepRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_size: int | None = Field(default=None, alias="batchSize", ge=1, le=500)
    threshold_seconds: float = Field(default=0.0, alias="thresholdSeconds", ge=0)


# ---------------------------------------------------------------------------
# Prebookings
# ---------------------------------------------------------------------------


class PrebookingOut(BaseModel):
    id: str
    user_email: str
    box_subdomain: str
    class_type: str
    class_label: str
    available_at: str
    status: str
    dispatch_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    result: dict[str, Any] | None = None

    @classmethod
    def from_intent(cls, intent: ReservationIntent) -> PrebookingOut:
        return cls(
            id=intent.id,
            user_email=intent.user_email,
            box_subdomain=intent.box_subdomain,
            class_type=intent.class_type,
            class_label=intent.class_label,
            available_at=intent.available_at.isoformat(),
            status=intent.status.value,
            dispatch_id=intent.dispatch_id,
            error_code=intent.error_code,
            error_message=intent.error_message,
            result=intent.result,
        )


class PrebookingListResponse(BaseModel):
    prebookings: list[PrebookingOut]
