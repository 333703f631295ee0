"""
Call session data.

One CallSession per live phone call, owned by the conversation engine and
serialised as JSON into the session store between turns.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from callcatcher.core.scheduling.preferences import TimePreference
from .state import CallStage, can_transition, is_terminal_stage


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class InvalidTransition(Exception):
    """Raised when a stage change is not allowed."""
    pass


@dataclass
class CallSession:
    """
    Everything the engine knows about one call.

    Collected fields are filled in order service -> identity -> time and
    are never cleared by a misheard turn; only the time fields are reset
    when the caller asks for a different time.
    """

    # Identifiers
    call_id: str
    business_id: str
    caller_number: Optional[str] = None
    called_number: Optional[str] = None

    # Stage tracking
    stage: CallStage = CallStage.GREETING
    previous_stage: Optional[CallStage] = None

    # Collected data
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    time_preference: Optional[TimePreference] = None

    # Slot selection
    candidate_slot_id: Optional[str] = None
    candidate_start: Optional[str] = None  # ISO-8601 UTC
    candidate_end: Optional[str] = None
    candidate_spoken: Optional[str] = None
    hold_slot_id: Optional[str] = None
    excluded_slot_ids: list[str] = field(default_factory=list)
    widened: bool = False

    # Counters
    retry_count: int = 0
    silence_count: int = 0
    booking_attempts: int = 0

    # Outcome
    appointment_id: Optional[str] = None
    outcome: Optional[str] = None
    transfer_to: Optional[str] = None
    last_prompt: Optional[str] = None
    history: list[dict] = field(default_factory=list)
    max_history: int = 20

    # Metadata
    created_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        """Check if the call has reached an end state."""
        return is_terminal_stage(self.stage)

    def transition_to(self, stage: CallStage) -> None:
        """
        Move to a new stage.

        Raises:
            InvalidTransition: If the state machine forbids the move
        """
        if stage == self.stage:
            return
        if not can_transition(self.stage, stage):
            raise InvalidTransition(f"{self.stage.value} -> {stage.value}")
        self.previous_stage = self.stage
        self.stage = stage

    def touch(self, now: Optional[datetime] = None) -> None:
        """Record activity."""
        self.last_activity_at = now or _utcnow()

    def record_turn(self, caller_text: Optional[str], prompt: str) -> None:
        """Append one exchange to the rolling history."""
        if caller_text:
            self.history.append({"role": "caller", "content": caller_text})
        self.history.append({"role": "assistant", "content": prompt})
        if len(self.history) > self.max_history:
            self.history = self.history[-self.max_history:]
        self.last_prompt = prompt

    def clear_candidate(self) -> None:
        """Forget the proposed slot (hold release is the engine's job)."""
        self.candidate_slot_id = None
        self.candidate_start = None
        self.candidate_end = None
        self.candidate_spoken = None

    def idle_seconds(self, now: Optional[datetime] = None) -> float:
        """Seconds since the last event on this call."""
        return ((now or _utcnow()) - self.last_activity_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "call_id": self.call_id,
            "business_id": self.business_id,
            "caller_number": self.caller_number,
            "called_number": self.called_number,
            "stage": self.stage.value,
            "previous_stage": self.previous_stage.value if self.previous_stage else None,
            "service_id": self.service_id,
            "service_name": self.service_name,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "time_preference": self.time_preference.to_dict() if self.time_preference else None,
            "candidate_slot_id": self.candidate_slot_id,
            "candidate_start": self.candidate_start,
            "candidate_end": self.candidate_end,
            "candidate_spoken": self.candidate_spoken,
            "hold_slot_id": self.hold_slot_id,
            "excluded_slot_ids": self.excluded_slot_ids,
            "widened": self.widened,
            "retry_count": self.retry_count,
            "silence_count": self.silence_count,
            "booking_attempts": self.booking_attempts,
            "appointment_id": self.appointment_id,
            "outcome": self.outcome,
            "transfer_to": self.transfer_to,
            "last_prompt": self.last_prompt,
            "history": self.history,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CallSession":
        """Create from dictionary."""
        preference = data.get("time_preference")
        return cls(
            call_id=data["call_id"],
            business_id=data["business_id"],
            caller_number=data.get("caller_number"),
            called_number=data.get("called_number"),
            stage=CallStage(data.get("stage", CallStage.GREETING.value)),
            previous_stage=CallStage(data["previous_stage"]) if data.get("previous_stage") else None,
            service_id=data.get("service_id"),
            service_name=data.get("service_name"),
            customer_name=data.get("customer_name"),
            customer_phone=data.get("customer_phone"),
            time_preference=TimePreference.from_dict(preference) if preference else None,
            candidate_slot_id=data.get("candidate_slot_id"),
            candidate_start=data.get("candidate_start"),
            candidate_end=data.get("candidate_end"),
            candidate_spoken=data.get("candidate_spoken"),
            hold_slot_id=data.get("hold_slot_id"),
            excluded_slot_ids=data.get("excluded_slot_ids", []),
            widened=data.get("widened", False),
            retry_count=data.get("retry_count", 0),
            silence_count=data.get("silence_count", 0),
            booking_attempts=data.get("booking_attempts", 0),
            appointment_id=data.get("appointment_id"),
            outcome=data.get("outcome"),
            transfer_to=data.get("transfer_to"),
            last_prompt=data.get("last_prompt"),
            history=data.get("history", []),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else _utcnow(),
            last_activity_at=(
                datetime.fromisoformat(data["last_activity_at"])
                if data.get("last_activity_at") else _utcnow()
            ),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "CallSession":
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(json_str))
