"""Precision timing for prebooking execution.

- Dispatch instant = available_at - lead time (broker wakes us early so the
  session fetch and token refresh happen before the slot opens)
- Exact-instant wait is a genuine asyncio.sleep, re-armed if woken early;
  serverless CPU is billed, so there is no busy-wait spin
- Per-invocation budget (ceiling - safety buffer) checked before firing
- NTP offset diagnostic for the CLI
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import ntplib

logger = logging.getLogger(__name__)

# "No puedes reservar clases con más de 4 días de antelación"
EARLY_BOOKING_PATTERN = re.compile(r"(\d+)\s+días?\s+de\s+antelación", re.IGNORECASE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_days_in_advance(message: str) -> int | None:
    """Extract N from the platform's early-booking rejection message."""
    match = EARLY_BOOKING_PATTERN.search(message or "")
    return int(match.group(1)) if match else None


def calculate_available_at(class_start: datetime, message: str) -> datetime | None:
    """
    Instant a class opens for booking, given its start and the platform's
    early-booking message.

    Example: class 2026-02-14 19:30, "...más de 4 días de antelación"
    → opens 2026-02-10 19:30
    """
    days = parse_days_in_advance(message)
    if days is None:
        return None
    return class_start - timedelta(days=days)


@dataclass
class ExecutionBudget:
    """Wall-clock budget for one invocation."""

    started_at: datetime
    max_seconds: float

    @property
    def deadline(self) -> datetime:
        return self.started_at + timedelta(seconds=self.max_seconds)

    def remaining(self, now: datetime) -> float:
        return (self.deadline - now).total_seconds()

    def can_fire(self, now: datetime, wait_seconds: float, fire_timeout: float) -> bool:
        """True if waiting until the target and a full fire still fit."""
        return max(wait_seconds, 0.0) + fire_timeout <= self.remaining(now)


class PrecisionScheduler:
    """
    Handles timing for prebooking execution.

    Clock and sleep are injectable so tests can drive time explicitly:

        scheduler = PrecisionScheduler(lead_time_seconds=4.0)
        scheduler.dispatch_time(intent.available_at)   # broker not-before
        lateness = await scheduler.wait_until(intent.available_at)
    """

    def __init__(
        self,
        lead_time_seconds: float = 4.0,
        now: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.lead_time = timedelta(seconds=lead_time_seconds)
        self._now_fn = now or self._now
        self._sleep = sleep or asyncio.sleep
        self._ntp_offset: float | None = None

    @staticmethod
    def _now() -> datetime:
        """Current UTC time. Extracted for testability."""
        return utcnow()

    def now(self) -> datetime:
        return self._now_fn()

    def dispatch_time(self, available_at: datetime) -> datetime:
        """When the broker should deliver: lead time before the slot opens.
        A dispatch instant already in the past means deliver immediately."""
        return max(available_at - self.lead_time, self.now())

    def seconds_until(self, target: datetime) -> float:
        return (target - self.now()).total_seconds()

    async def sleep(self, seconds: float) -> None:
        await self._sleep(seconds)

    async def wait_until(self, target: datetime) -> float:
        """Sleep until target. Returns how late we are past target (seconds, >= 0)."""
        remaining = self.seconds_until(target)
        if remaining <= 0:
            logger.info("Target already passed (%.0fms late), firing now", -remaining * 1000)
            return -remaining

        logger.info("Waiting %.3fs until %s", remaining, target.isoformat())
        while remaining > 0:
            await self._sleep(remaining)
            remaining = self.seconds_until(target)
        return -remaining

    @property
    def ntp_offset(self) -> float | None:
        return self._ntp_offset

    def check_ntp_offset(self, server: str = "pool.ntp.org") -> float | None:
        """Check system clock offset against NTP. Returns seconds offset or None."""
        try:
            client = ntplib.NTPClient()
            resp = client.request(server, version=3)
        except (ntplib.NTPException, OSError) as e:
            logger.warning("NTP check against %s failed: %s", server, e)
            return None
        self._ntp_offset = resp.offset
        return resp.offset
