"""Cron-triggered batch sweep (every ~60s) and its health check."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from prebooker.services import Services
from prebooker.web.deps import get_services, require_cron
from prebooker.web.schemas import SweepRequest

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", dependencies=[Depends(require_cron)])
async def run_sweep(request: Request, services: Services = Depends(get_services)):
    raw = await request.body()
    try:
        params = SweepRequest.model_validate_json(raw) if raw.strip() else SweepRequest()
    except PydanticValidationError as e:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "message": "Invalid sweep parameters",
                "details": {"errors": str(e)},
            },
        )

    async with services.executor() as executor:
        report = await services.sweep(executor).run(
            batch_size=params.batch_size, threshold_seconds=params.threshold_seconds
        )
    return {
        "success": True,
        "message": f"Processed {report.total} prebooking(s)",
        **report.to_dict(),
    }


@router.get("")
async def health(services: Services = Depends(get_services)):
    s = services.settings
    return {
        "status": "ok",
        "config": {
            "leadTimeSeconds": s.lead_time_seconds,
            "batchSize": s.sweep_batch_size,
            "staggerMs": s.sweep_stagger_ms,
            "maxExecutionSeconds": s.max_execution_seconds,
            "fireTimeoutSeconds": s.fire_timeout_seconds,
        },
    }
