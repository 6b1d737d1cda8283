"""Client entry point: create, list and cancel prebookings."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from prebooker.errors import IntentNotFoundError, IntentStateError, ScheduleError, ValidationError
from prebooker.models import IntentCreate
from prebooker.services import Services
from prebooker.web.deps import get_services, require_api_key
from prebooker.web.schemas import PrebookingListResponse, PrebookingOut

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(require_api_key)])


@router.post("", status_code=201, response_model=PrebookingOut)
async def create_prebooking(body: IntentCreate, services: Services = Depends(get_services)):
    try:
        async with services.trigger() as trigger:
            intent = await trigger.create_and_schedule(body)
    except ValidationError as e:
        raise HTTPException(400, str(e))
    except ScheduleError as e:
        raise HTTPException(502, f"Could not schedule prebooking: {e}")
    return PrebookingOut.from_intent(intent)


@router.get("", response_model=PrebookingListResponse)
async def list_prebookings(user_email: str, services: Services = Depends(get_services)):
    intents = await services.intents.list_for_user(user_email)
    return PrebookingListResponse(prebookings=[PrebookingOut.from_intent(i) for i in intents])


@router.post("/{prebooking_id}/cancel", response_model=PrebookingOut)
async def cancel_prebooking(prebooking_id: str, services: Services = Depends(get_services)):
    try:
        async with services.trigger() as trigger:
            intent = await trigger.cancel_intent(prebooking_id)
    except IntentNotFoundError as e:
        raise HTTPException(404, str(e))
    except IntentStateError as e:
        raise HTTPException(409, str(e))
    return PrebookingOut.from_intent(intent)
