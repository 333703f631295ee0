"""Call conversation state machine."""

from enum import Enum
from typing import Set


class CallStage(str, Enum):
    """Stages of a booking call."""

    GREETING = "greeting"

    # Information gathering
    COLLECTING_SERVICE = "collecting_service"
    COLLECTING_IDENTITY = "collecting_identity"
    COLLECTING_TIME = "collecting_time"

    # Slot selection
    PROPOSING_SLOT = "proposing_slot"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    BOOKING = "booking"

    # Terminal states
    SUCCESS = "success"
    FAILURE = "failure"
    HANDOFF = "handoff"


TERMINAL_STAGES = {CallStage.SUCCESS, CallStage.FAILURE, CallStage.HANDOFF}

# Position in the forward flow; re-ask transitions are listed explicitly below
STAGE_ORDER = [
    CallStage.GREETING,
    CallStage.COLLECTING_SERVICE,
    CallStage.COLLECTING_IDENTITY,
    CallStage.COLLECTING_TIME,
    CallStage.PROPOSING_SLOT,
    CallStage.AWAITING_CONFIRMATION,
    CallStage.BOOKING,
]

# Going back is only allowed to re-ask for a time or re-propose a slot
REASK_TRANSITIONS: dict[CallStage, Set[CallStage]] = {
    CallStage.PROPOSING_SLOT: {CallStage.COLLECTING_TIME},
    CallStage.AWAITING_CONFIRMATION: {
        CallStage.COLLECTING_TIME,
        CallStage.PROPOSING_SLOT,
    },
    CallStage.BOOKING: {CallStage.PROPOSING_SLOT, CallStage.COLLECTING_TIME},
}


def _build_transitions() -> dict[CallStage, Set[CallStage]]:
    transitions: dict[CallStage, Set[CallStage]] = {}
    for index, stage in enumerate(STAGE_ORDER):
        forward = set(STAGE_ORDER[index + 1:])
        transitions[stage] = forward | REASK_TRANSITIONS.get(stage, set()) | {
            CallStage.HANDOFF,
            CallStage.FAILURE,
        }
    # Only a commit can produce success
    for stage in STAGE_ORDER:
        transitions[stage].discard(CallStage.SUCCESS)
    transitions[CallStage.BOOKING].add(CallStage.SUCCESS)
    for stage in TERMINAL_STAGES:
        transitions[stage] = set()
    return transitions


# Valid state transitions
VALID_TRANSITIONS: dict[CallStage, Set[CallStage]] = _build_transitions()


def can_transition(from_stage: CallStage, to_stage: CallStage) -> bool:
    """Check if a stage transition is valid."""
    return to_stage in VALID_TRANSITIONS.get(from_stage, set())


def get_valid_transitions(stage: CallStage) -> Set[CallStage]:
    """Get all valid transitions from a stage."""
    return VALID_TRANSITIONS.get(stage, set())


def is_terminal_stage(stage: CallStage) -> bool:
    """Check if stage is terminal (no further transitions)."""
    return stage in TERMINAL_STAGES
