"""Batch cron sweep: the safety net for missed or late broker deliveries.

Runs every ~60s. Finds pending intents that are due, launches them in FIFO
order staggered by a few ms, and runs each through the same executor path
as the webhook (so the claim keeps the two from double-booking).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from prebooker.executor import PrebookingExecutor
from prebooker.models import IntentStatus, ReservationIntent
from prebooker.scheduler import ExecutionBudget
from prebooker.state import ExecutionPhase, ExecutionReport

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    errors: list[str] = field(default_factory=list)
    items: list[dict[str, Any]] = field(default_factory=list)

    def add(self, report: ExecutionReport) -> None:
        if report.phase == ExecutionPhase.DUPLICATE_SKIP:
            self.skipped += 1
        elif report.status == IntentStatus.CONFIRMED:
            self.completed += 1
        elif report.status == IntentStatus.FAILED:
            self.failed += 1
            self.errors.append(f"{report.intent_id}: {report.error_code}: {report.message}")
        else:
            self.deferred += 1
        self.items.append(
            {
                "intentId": report.intent_id,
                "phase": report.phase.value,
                "status": report.status.value if report.status else IntentStatus.PENDING.value,
                "message": report.message,
            }
        )

    def defer(self, intent: ReservationIntent, reason: str) -> None:
        self.deferred += 1
        self.items.append(
            {
                "intentId": intent.id,
                "phase": "deferred",
                "status": IntentStatus.PENDING.value,
                "message": reason,
            }
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "deferred": self.deferred,
            "errors": self.errors,
            "items": self.items,
        }


class BatchSweep:
    def __init__(
        self,
        executor: PrebookingExecutor,
        lead_time_seconds: float = 4.0,
        stagger_ms: int = 50,
        batch_size: int = 25,
    ) -> None:
        self.executor = executor
        self.lead_time_seconds = lead_time_seconds
        self.stagger_ms = stagger_ms
        self.batch_size = batch_size

    async def run(
        self, batch_size: int | None = None, threshold_seconds: float = 0.0
    ) -> SweepReport:
        """One sweep pass. Never retries failed intents."""
        scheduler = self.executor.scheduler
        budget = self.executor.new_budget()
        now = scheduler.now()
        threshold = min(max(threshold_seconds, 0.0), self.lead_time_seconds)
        limit = batch_size or self.batch_size

        due = await self.executor.intents.find_due(now + timedelta(seconds=threshold), limit)
        report = SweepReport(total=len(due))
        if not due:
            logger.info("Sweep: nothing due")
            return report
        logger.info("Sweep: %d intent(s) due", len(due))

        launched: list[tuple[ReservationIntent, asyncio.Task]] = []
        for i, intent in enumerate(due):
            offset = i * self.stagger_ms / 1000
            wait = max(offset, (intent.available_at - now).total_seconds())
            if not budget.can_fire(now, wait, self.executor.fire_timeout):
                report.defer(intent, "Not enough budget left in this invocation")
                continue
            task = asyncio.create_task(self._launch(intent, offset, budget))
            launched.append((intent, task))

        results = await asyncio.gather(*(t for _, t in launched), return_exceptions=True)
        for (intent, _), result in zip(launched, results):
            if isinstance(result, BaseException):
                logger.error("Sweep: intent %s raised %r", intent.id, result)
                report.failed += 1
                report.errors.append(f"{intent.id}: {result}")
                continue
            report.add(result)

        logger.info(
            "Sweep done: %d completed, %d failed, %d skipped, %d deferred",
            report.completed,
            report.failed,
            report.skipped,
            report.deferred,
        )
        return report

    async def _launch(
        self, intent: ReservationIntent, offset: float, budget: ExecutionBudget
    ) -> ExecutionReport:
        if offset > 0:
            await self.executor.scheduler.sleep(offset)
        return await self.executor.execute(intent, budget)
