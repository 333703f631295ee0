"""
Telephony webhook endpoints.

The telephony adapter posts one event per caller turn (speech already
transcribed) and speaks back the returned prompt. action=end means speak
the prompt, then hang up or transfer to transfer_to.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from callcatcher.core.errors import ValidationError
from callcatcher.core.scheduling.engine import get_conversation_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/voice", tags=["Voice"])


class CallEventRequest(BaseModel):
    """One telephony event."""

    call_id: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="Telephony provider's call identifier",
        examples=["CA1234567890abcdef"],
    )
    caller_number: Optional[str] = Field(
        default=None,
        max_length=32,
        description="Caller ID (E.164)",
        examples=["+15551234567"],
    )
    called_number: Optional[str] = Field(
        default=None,
        max_length=32,
        description="Number the caller dialled",
    )
    speech: Optional[str] = Field(
        default=None,
        max_length=2000,
        description="Recognised caller speech; empty or missing means silence",
        examples=["I'd like a haircut tomorrow morning"],
    )


class CallEventResponse(BaseModel):
    """What the telephony adapter should do next."""

    call_id: str
    prompt: str = Field(..., description="Text to speak to the caller")
    action: str = Field(..., description="continue or end")
    transfer_to: Optional[str] = Field(
        default=None,
        description="Number to transfer to when action is end",
    )
    stage: Optional[str] = None
    outcome: Optional[str] = None
    appointment_id: Optional[str] = None


class HangupResponse(BaseModel):
    """Hangup acknowledgement."""

    call_id: str
    ended: bool


class ErrorResponse(BaseModel):
    """Error response."""

    error: str
    detail: Optional[str] = None


@router.post(
    "/{business_id}/events",
    response_model=CallEventResponse,
    status_code=status.HTTP_200_OK,
    summary="Handle a caller turn",
    responses={
        404: {"model": ErrorResponse, "description": "Unknown or inactive business"},
    },
)
async def call_event(business_id: str, request: CallEventRequest) -> CallEventResponse:
    """
    Advance a call by one event.

    The first event for a call id starts it. Later events carry the
    caller's speech. Events for a call that already ended are answered
    with a short "call has ended" prompt.
    """
    engine = get_conversation_engine()
    try:
        result = await engine.handle_event(
            call_id=request.call_id,
            business_id=business_id,
            speech=request.speech,
            caller_number=request.caller_number,
            called_number=request.called_number,
        )
    except ValidationError as e:
        logger.warning(f"Rejected call {request.call_id} for business {business_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        )

    return CallEventResponse(**result.to_dict())


@router.post(
    "/{business_id}/events/{call_id}/hangup",
    response_model=HangupResponse,
    status_code=status.HTTP_200_OK,
    summary="Caller hung up",
)
async def hangup(business_id: str, call_id: str) -> HangupResponse:
    """Release the call's holds and retire its session."""
    engine = get_conversation_engine()
    ended = await engine.end_call(call_id)
    return HangupResponse(call_id=call_id, ended=ended)
