"""FastAPI application factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from prebooker.config import load_dotenv, load_settings
from prebooker.errors import ConfigError
from prebooker.services import Services, build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "services", None) is None:
        load_dotenv()
        try:
            app.state.services = await build_services(load_settings())
        except ConfigError as e:
            logger.warning("Prebooker not configured: %s", e)
            logger.warning("Routes will answer 503 until env vars are set")
            app.state.services = None

    yield

    # Let in-flight outcome e-mails finish
    services = app.state.services
    if services is not None:
        await services.recorder.drain()


def create_app(services: Services | None = None) -> FastAPI:
    app = FastAPI(title="Prebooker", lifespan=lifespan)
    app.state.services = services

    from prebooker.web.routes import cron, execute, prebookings, refresh

    app.include_router(execute.router, prefix="/api/execute-prebooking")
    app.include_router(cron.router, prefix="/api/cron/prebooking-scheduler")
    app.include_router(refresh.router, prefix="/api/cron/refresh-tokens")
    app.include_router(prebookings.router, prefix="/api/prebookings")

    return app
