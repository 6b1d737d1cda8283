"""Cron-triggered session keep-alive."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from prebooker.services import Services
from prebooker.web.deps import get_services, require_cron
from prebooker.web.schemas import ApiResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", dependencies=[Depends(require_cron)])
async def refresh_tokens(services: Services = Depends(get_services)) -> ApiResponse:
    async with services.keepalive() as keepalive:
        report = await keepalive.run(services.scheduler.now())
    return ApiResponse(
        success=True,
        message=f"Refreshed {report.updated} of {report.total} session(s)",
        details=report.to_dict(),
    )
