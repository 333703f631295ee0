"""Call session state machine, data and storage."""

from .state import CallStage, can_transition, get_valid_transitions, is_terminal_stage
from .models import CallSession, InvalidTransition
from .store import (
    InMemorySessionStore,
    RedisSessionStore,
    SessionStore,
    get_session_store,
)

__all__ = [
    # State
    "CallStage",
    "can_transition",
    "get_valid_transitions",
    "is_terminal_stage",
    # Data
    "CallSession",
    "InvalidTransition",
    # Storage
    "SessionStore",
    "InMemorySessionStore",
    "RedisSessionStore",
    "get_session_store",
]
