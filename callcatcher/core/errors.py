"""
Scheduling error taxonomy.

Each error maps to one recovery the conversation engine knows how to speak:

    InputAmbiguous       re-prompt
    NoAvailability       widen the search, then hand off
    SlotConflict         propose another slot
    ValidationError      clarify (e.g. unknown service)
    UpstreamUnavailable  apologise, offer a callback, end the call
    SessionExpired       tell a late caller the call has ended
"""

from typing import Optional


class SchedulingError(Exception):
    """Base class for recoverable scheduling failures."""

    def __init__(self, message: str = "", *, detail: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.detail = detail


class InputAmbiguous(SchedulingError):
    """Caller input could not be interpreted with enough confidence."""
    pass


class NoAvailability(SchedulingError):
    """No slot matches the caller's preference."""
    pass


class SlotConflict(SchedulingError):
    """The chosen slot was taken (or is held) by someone else."""

    def __init__(self, message: str = "", *, slot_id: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message, detail=detail)
        self.slot_id = slot_id


class ValidationError(SchedulingError):
    """Request refers to something that does not exist or is inconsistent."""

    def __init__(self, message: str = "", *, field: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message, detail=detail)
        self.field = field


class UpstreamUnavailable(SchedulingError):
    """A collaborator (language model, store) failed."""
    pass


class SessionExpired(SchedulingError):
    """Event arrived for a call whose session has already been retired."""
    pass
