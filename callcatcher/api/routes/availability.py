"""
Availability lookup endpoint.

Lets staff tools and the telephony side ask what is open, using the same
phrases callers use ("tomorrow morning", "friday at 2").
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from callcatcher.config import settings
from callcatcher.core.errors import ValidationError
from callcatcher.core.intelligence.intent.time_parser import parse_time_preference
from callcatcher.core.scheduling.availability import get_availability_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/businesses", tags=["Availability"])


class SlotResponse(BaseModel):
    """One open slot."""

    slot_id: str
    start: str = Field(..., description="UTC start (ISO-8601)")
    end: str = Field(..., description="UTC end (ISO-8601)")
    local_start: str = Field(..., description="Business-local start (ISO-8601)")
    local_end: str
    spoken: str = Field(..., examples=["Tuesday, March 3 at 9:00 AM"])


class AvailabilityResponse(BaseModel):
    """Open slots for a business."""

    business_id: str
    preference: str = Field(..., description="How the preference was understood")
    slots: list[SlotResponse]


@router.get(
    "/{business_id}/availability",
    response_model=AvailabilityResponse,
    summary="List open slots",
    responses={
        404: {"description": "Unknown business"},
        422: {"description": "Preference not understood"},
    },
)
async def availability(
    business_id: uuid.UUID,
    preference: Optional[str] = Query(
        default=None,
        max_length=200,
        description="Natural time phrase, e.g. 'tomorrow morning'",
    ),
    limit: int = Query(default=settings.proposal_limit, ge=1, le=50),
) -> AvailabilityResponse:
    """Earliest open slots matching an optional time phrase."""
    engine = get_availability_engine()

    try:
        today = await engine.local_today(business_id)
        parsed = None
        if preference:
            parsed = parse_time_preference(preference, today)
            if parsed is None:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"Could not understand preference: {preference}",
                )
        slots = await engine.find_available_slots(business_id, parsed, limit=limit)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return AvailabilityResponse(
        business_id=str(business_id),
        preference=parsed.describe() if parsed else "any time",
        slots=[SlotResponse(**slot.to_dict(), spoken=slot.spoken) for slot in slots],
    )
