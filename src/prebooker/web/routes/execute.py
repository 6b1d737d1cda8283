"""Broker webhook: execute one prebooking at its exact instant.

Status codes:
- 400 malformed payload, 401 bad security token, 404 unknown intent
- 200 confirmed, or already handled (duplicate-skip, success: true)
- 401 auth expired, 500 session missing, booking rejected or internal error
- 502 refresh/network failure, 504 out of budget
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from prebooker.errors import IntentNotFoundError, ValidationError
from prebooker.models import IntentStatus, TriggerPayload
from prebooker.services import Services
from prebooker.state import ExecutionPhase, ExecutionReport
from prebooker.web.deps import get_services
from prebooker.web.schemas import ApiResponse

logger = logging.getLogger(__name__)
router = APIRouter()

STATUS_BY_ERROR_CODE = {
    "auth-expired": 401,
    "session-not-found": 500,
    "refresh-failed": 502,
    "network-error": 502,
    "timeout-exceeded": 504,
}


def _respond(status_code: int, success: bool, message: str, details: dict | None = None):
    return JSONResponse(
        status_code=status_code,
        content=ApiResponse(success=success, message=message, details=details or {}).model_dump(),
    )


def status_for(report: ExecutionReport) -> int:
    if report.phase == ExecutionPhase.DUPLICATE_SKIP or report.status == IntentStatus.CONFIRMED:
        return 200
    # Rejections (class full, early booking...) carry the platform's own codes
    return STATUS_BY_ERROR_CODE.get(report.error_code or "", 500)


@router.post("")
async def execute_prebooking(request: Request, services: Services = Depends(get_services)):
    try:
        body = await request.json()
    except ValueError:
        return _respond(400, False, "Body must be JSON")
    try:
        payload = TriggerPayload.model_validate(body)
    except PydanticValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        return _respond(400, False, "Missing or invalid fields", {"fields": fields})

    try:
        async with services.executor() as executor:
            report = await executor.handle_trigger(payload)
    except ValidationError as e:
        return _respond(401, False, str(e))
    except IntentNotFoundError as e:
        return _respond(404, False, str(e))

    status_code = status_for(report)
    if report.phase == ExecutionPhase.DUPLICATE_SKIP:
        message = f"Already handled: {report.message}"
    elif status_code == 200:
        message = "Booking confirmed"
    else:
        message = report.message or "Booking failed"
    return _respond(status_code, status_code == 200, message, report.to_dict())
