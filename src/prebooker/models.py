"""Pydantic models for domain objects and platform interactions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field

# Box subdomains are interpolated into the booking host name
BOX_SUBDOMAIN_PATTERN = r"^[a-z0-9-]+$"


# --- Sessions ---


class SessionType(str, Enum):
    DEVICE = "device"
    BACKGROUND = "background"


class AuthCookie(BaseModel):
    name: str
    value: str


class DeviceSession(BaseModel):
    """Authentication snapshot for one (user, fingerprint) pair."""

    user_email: str
    fingerprint: str
    token: str
    cookies: list[AuthCookie] = []
    session_type: SessionType = SessionType.DEVICE
    is_admin: bool = False
    token_update_count: int = 0
    last_token_update_date: datetime | None = None
    last_token_update_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# --- Intents ---


class IntentStatus(str, Enum):
    PENDING = "pending"
    FIRING = "firing"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BookingRequest(BaseModel):
    """Form fields the platform expects on /api/book."""

    model_config = ConfigDict(populate_by_name=True)

    day: str = Field(pattern=r"^\d{8}$")  # YYYYMMDD
    family_id: str = Field(default="", alias="familyId")
    class_id: str = Field(alias="id")
    insist: int = 0

    def as_form(self) -> dict[str, str]:
        return {
            "day": self.day,
            "familyId": self.family_id,
            "id": self.class_id,
            "insist": str(self.insist),
        }


class ReservationIntent(BaseModel):
    """A user's request to reserve a class slot once it opens."""

    id: str
    user_email: str
    fingerprint: str
    box_id: str | None = None
    box_subdomain: str = Field(pattern=BOX_SUBDOMAIN_PATTERN)
    box_aimharder_id: str
    booking_data: BookingRequest
    class_type: str = ""
    class_label: str = ""  # "Lunes 10 Feb 19:30"
    available_at: datetime
    status: IntentStatus = IntentStatus.PENDING
    created_at: datetime | None = None
    executed_at: datetime | None = None
    dispatch_id: str | None = None
    result: dict[str, Any] | None = None
    error_code: str | None = None
    error_message: str | None = None
    email_sent: bool = False

    @property
    def available_at_ms(self) -> int:
        return int(self.available_at.timestamp() * 1000)


class IntentCreate(BaseModel):
    """Input for a new intent. Either available_at or the platform's
    early-booking rejection message plus class_start must be provided."""

    user_email: str
    fingerprint: str
    box_id: str | None = None
    box_subdomain: str = Field(pattern=BOX_SUBDOMAIN_PATTERN)
    box_aimharder_id: str
    booking_data: BookingRequest
    class_type: str = ""
    class_label: str = ""
    available_at: datetime | None = None
    class_start: datetime | None = None
    early_booking_message: str | None = None


# --- Webhook payload ---


class TriggerPayload(BaseModel):
    """Body the broker delivers to the execution webhook."""

    model_config = ConfigDict(populate_by_name=True)

    prebooking_id: str = Field(alias="prebookingId", min_length=1)
    box_subdomain: str = Field(alias="boxSubdomain", pattern=BOX_SUBDOMAIN_PATTERN)
    box_aimharder_id: str = Field(alias="boxAimharderId", min_length=1)
    execute_at: str = Field(alias="executeAt", pattern=r"^\d+$")  # epoch ms as a string
    security_token: str = Field(alias="securityToken", min_length=1)

    @property
    def execute_at_ms(self) -> int:
        return int(self.execute_at)


# --- Platform responses (tagged results, decoded once at the boundary) ---


@dataclass(frozen=True)
class TokenRefreshed:
    new_token: str
    cookies: list[AuthCookie] = field(default_factory=list)


@dataclass(frozen=True)
class TokenLogout:
    message: str = "Session expired - logout required"


@dataclass(frozen=True)
class TokenRefreshError:
    message: str


TokenUpdateResult = Union[TokenRefreshed, TokenLogout, TokenRefreshError]


@dataclass(frozen=True)
class BookingConfirmed:
    booking_id: str | None
    book_state: int | None
    message: str = ""


@dataclass(frozen=True)
class BookingLogout:
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class BookingRejected:
    message: str
    book_state: int | None
    error_code: str = "booking_failed"
    message_lang: str | None = None


BookingOutcome = Union[BookingConfirmed, BookingLogout, BookingRejected]


# --- Notifications ---


class PrebookingSuccessData(BaseModel):
    user_email: str
    class_type: str
    formatted_datetime: str
    box_name: str | None = None
    booking_id: str | None = None
    confirmed_at: str


class PrebookingFailureData(BaseModel):
    user_email: str
    class_type: str
    formatted_datetime: str
    box_name: str | None = None
    error_message: str
    error_code: str | None = None
    execution_id: str | None = None
    prepared_at: str
    fired_at: str | None = None
    responded_at: str | None = None
    fire_latency_ms: float | None = None
    technical_details: dict[str, Any] = {}
