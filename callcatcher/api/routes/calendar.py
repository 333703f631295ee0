"""Calendar generation endpoint."""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from callcatcher.core.errors import ValidationError
from callcatcher.core.scheduling.generator import get_slot_generator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/businesses", tags=["Calendar"])


class GenerateRequest(BaseModel):
    """Slot generation request."""

    horizon_days: Optional[int] = Field(
        default=None,
        ge=1,
        le=1000,
        description="Days ahead to generate (defaults to the business setting)",
        examples=[400],
    )


class GenerateResponse(BaseModel):
    """Reconciliation counts."""

    business_id: str
    range_start: str
    range_end: str
    created: int
    removed: int
    preserved: int
    kept: int


@router.post(
    "/{business_id}/calendar/generate",
    response_model=GenerateResponse,
    summary="Generate or reconcile slot inventory",
    responses={
        404: {"description": "Unknown business"},
        422: {"description": "Invalid hours, timezone or horizon"},
    },
)
async def generate_calendar(
    business_id: uuid.UUID,
    request: Optional[GenerateRequest] = None,
) -> GenerateResponse:
    """
    Build the business's slots from its weekly hours.

    Safe to re-run: matching slots are kept, booked ones preserved.
    """
    horizon = request.horizon_days if request else None
    try:
        report = await get_slot_generator().generate(business_id, horizon)
    except ValidationError as e:
        code = (
            status.HTTP_404_NOT_FOUND
            if e.field == "business_id"
            else status.HTTP_422_UNPROCESSABLE_ENTITY
        )
        logger.warning(f"Calendar generation rejected for {business_id}: {e}")
        raise HTTPException(status_code=code, detail=str(e))

    return GenerateResponse(**report.to_dict())
