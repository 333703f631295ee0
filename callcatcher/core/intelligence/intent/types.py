"""Intent types for caller speech interpretation."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from callcatcher.core.scheduling.preferences import TimePreference


class Intent(str, Enum):
    """Caller intent categories."""

    # Scheduling
    BOOK = "book"                      # Wants an appointment
    PROVIDE_INFO = "provide_info"      # Answering the assistant's question
    CONFIRMATION = "confirmation"      # Yes / no to a proposed slot
    CHANGE_TIME = "change_time"        # "Do you have anything later?"

    # Other
    HANDOFF = "handoff"                # Wants a human
    GOODBYE = "goodbye"                # Bye, never mind
    GREETING = "greeting"              # Hello, hi
    OUT_OF_SCOPE = "out_of_scope"      # Not about booking

    # Fallback
    UNKNOWN = "unknown"


class InterpretationSource(str, Enum):
    """Which interpreter produced a result."""

    MODEL = "model"
    KEYWORDS = "keywords"


@dataclass
class IntentResult:
    """Structured reading of one caller utterance."""

    intent: Intent
    confidence: float  # 0.0 - 1.0

    # Extracted fields; any may be missing
    service: Optional[str] = None
    customer_name: Optional[str] = None
    time_phrase: Optional[str] = None
    time_preference: Optional[TimePreference] = None
    confirmation: Optional[bool] = None

    # Raw LLM output for debugging
    raw_response: Optional[str] = None

    source: InterpretationSource = InterpretationSource.MODEL
    processing_time_ms: float = 0.0

    def is_confident(self, threshold: float) -> bool:
        """Check confidence against the configured threshold."""
        return self.confidence >= threshold

    @property
    def has_details(self) -> bool:
        """Check if anything bookable was extracted."""
        return any(
            value is not None
            for value in (self.service, self.customer_name, self.time_preference)
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "intent": self.intent.value,
            "confidence": self.confidence,
            "service": self.service,
            "customer_name": self.customer_name,
            "time_phrase": self.time_phrase,
            "time_preference": self.time_preference.to_dict() if self.time_preference else None,
            "confirmation": self.confirmation,
            "source": self.source.value,
            "processing_time_ms": self.processing_time_ms,
        }
