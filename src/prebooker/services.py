"""Capability wiring.

Every entry point (webhook, cron, client API, CLI) builds its executor,
trigger and sweep from one Services bundle. Network clients are opened per
invocation; the store and the recorder live for the process.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from prebooker.aimharder import AimharderClient
from prebooker.broker import QStashClient
from prebooker.config import Settings
from prebooker.executor import PrebookingExecutor
from prebooker.keepalive import SessionKeepAlive
from prebooker.notifications import Notifier, ResendNotifier
from prebooker.recorder import OutcomeRecorder
from prebooker.scheduler import PrecisionScheduler
from prebooker.store import (
    IntentStore,
    SessionStore,
    SupabaseIntentStore,
    SupabaseSessionStore,
    init_supabase,
)
from prebooker.sweep import BatchSweep
from prebooker.trigger import PrebookingTrigger

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    intents: IntentStore
    sessions: SessionStore
    recorder: OutcomeRecorder
    scheduler: PrecisionScheduler
    # Zero-arg callables returning async context managers
    platform_factory: Callable[[], Any]
    broker_factory: Callable[[], Any]

    @asynccontextmanager
    async def executor(self) -> AsyncIterator[PrebookingExecutor]:
        s = self.settings
        async with self.platform_factory() as platform:
            yield PrebookingExecutor(
                intents=self.intents,
                sessions=self.sessions,
                platform=platform,
                recorder=self.recorder,
                scheduler=self.scheduler,
                secret=s.prebooking_secret,
                refresh_threshold_minutes=s.refresh_threshold_minutes,
                fire_timeout=s.fire_timeout_seconds,
                max_execution_seconds=s.max_execution_seconds,
            )

    @asynccontextmanager
    async def trigger(self) -> AsyncIterator[PrebookingTrigger]:
        async with self.broker_factory() as broker:
            yield PrebookingTrigger(
                intents=self.intents,
                broker=broker,
                scheduler=self.scheduler,
                secret=self.settings.prebooking_secret,
                callback_url=self.settings.callback_url,
            )

    @asynccontextmanager
    async def keepalive(self) -> AsyncIterator[SessionKeepAlive]:
        async with self.platform_factory() as platform:
            yield SessionKeepAlive(
                sessions=self.sessions,
                platform=platform,
                threshold_minutes=self.settings.keepalive_threshold_minutes,
            )

    def sweep(self, executor: PrebookingExecutor) -> BatchSweep:
        s = self.settings
        return BatchSweep(
            executor,
            lead_time_seconds=s.lead_time_seconds,
            stagger_ms=s.sweep_stagger_ms,
            batch_size=s.sweep_batch_size,
        )


async def build_services(settings: Settings) -> Services:
    """Production wiring: Supabase stores, AimHarder, QStash, Resend."""
    settings.require("prebooking_secret", "supabase_url", "supabase_service_key")
    client = await init_supabase(settings.supabase_url, settings.supabase_service_key)

    notifier: Notifier | None = None
    if settings.resend_api_key:
        notifier = ResendNotifier(
            settings.resend_api_key, settings.email_from, settings.admin_email
        )
    else:
        logger.warning("RESEND_API_KEY not set, outcome e-mails disabled")

    intents = SupabaseIntentStore(client)
    return Services(
        settings=settings,
        intents=intents,
        sessions=SupabaseSessionStore(client),
        recorder=OutcomeRecorder(intents, notifier),
        scheduler=PrecisionScheduler(lead_time_seconds=settings.lead_time_seconds),
        platform_factory=lambda: AimharderClient(
            fire_timeout=settings.fire_timeout_seconds,
            refresh_timeout=settings.refresh_timeout_seconds,
        ),
        broker_factory=lambda: QStashClient(settings.qstash_token, settings.qstash_url),
    )
