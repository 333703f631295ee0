"""
Deterministic keyword interpreter.

Used when the language model is unavailable or not configured. It reads
the same fields the model does (service, name, time, yes/no) from plain
pattern matching, so the state machine behaves the same either way.
"""

import re
import time
from datetime import date
from typing import Optional

from callcatcher.core.intelligence.session.state import CallStage
from callcatcher.core.scheduling.catalog import ServiceInfo, match_service
from .time_parser import parse_time_preference
from .types import Intent, IntentResult, InterpretationSource

HANDOFF_PATTERN = re.compile(
    r"\b(human|real person|a person|someone|representative|operator|receptionist|"
    r"agent|manager|staff|transfer me|speak to|talk to)\b"
)
GOODBYE_PATTERN = re.compile(
    r"\b(goodbye|bye|hang up|that's all|thats all|never ?mind|forget it)\b"
)
NEGATIVE_PATTERN = re.compile(
    r"\b(no|nope|nah|not|don't|doesn't|dont|doesnt|can't|cannot|won't|wrong|"
    r"different|another|other|later|earlier)\b"
)
AFFIRMATIVE_PATTERN = re.compile(
    r"\b(yes|yeah|yep|yup|sure|correct|right|ok|okay|perfect|great|confirm|"
    r"book it|do it|sounds good|works|that's fine|fine)\b"
)
BOOKING_PATTERN = re.compile(r"\b(book|appointment|schedule|reserve|come in|booking)\b")
GREETING_PATTERN = re.compile(r"^\s*(hi|hello|hey|good (morning|afternoon|evening))\b")

NAME_PATTERNS = [
    re.compile(r"(?:my name is|my name's|i'm|i am|this is|it's|call me|name is)\s+([a-z][a-z'\-]+(?:\s+[a-z][a-z'\-]+)?)"),
]

SKIP_WORDS = {
    "and", "the", "my", "phone", "number", "is", "at", "or", "for", "with", "to",
    "in", "on", "yes", "yeah", "no", "ok", "okay", "book", "booking", "appointment",
    "service", "today", "tomorrow", "monday", "tuesday", "wednesday", "thursday",
    "friday", "saturday", "sunday", "morning", "afternoon", "evening", "time",
    "available", "calling", "looking", "trying", "just", "here", "sure", "hi",
    "hello", "hey", "please", "thanks", "thank", "you", "a", "an", "want", "need",
    "would", "like", "interested", "wondering",
}


def extract_name(text: str, expecting_name: bool) -> Optional[str]:
    """
    Pull a caller's name out of speech.

    Introductions ("my name is ...") are always recognised. A bare short
    answer is accepted only when the assistant just asked for a name.
    """
    lowered = text.lower().strip(" .!?,")

    for pattern in NAME_PATTERNS:
        match = pattern.search(lowered)
        if match:
            words = [w for w in match.group(1).split() if w not in SKIP_WORDS]
            if words:
                return " ".join(w.title() for w in words[:2])

    if expecting_name:
        words = [w for w in re.findall(r"[a-z][a-z'\-]+", lowered) if w not in SKIP_WORDS]
        if 1 <= len(words) <= 3 and len(lowered.split()) <= 4:
            return " ".join(w.title() for w in words)

    return None


def read_confirmation(text: str) -> Optional[bool]:
    """Yes/no reading. Any negative wins over an affirmative."""
    lowered = text.lower()
    if NEGATIVE_PATTERN.search(lowered):
        return False
    if AFFIRMATIVE_PATTERN.search(lowered):
        return True
    return None


class KeywordInterpreter:
    """Pattern-based stand-in for the language model."""

    def interpret(
        self,
        message: str,
        *,
        today: date,
        stage: Optional[CallStage] = None,
        services: Optional[list[ServiceInfo]] = None,
    ) -> IntentResult:
        """
        Interpret one utterance.

        Args:
            message: Caller speech
            today: Business-local date for relative time phrases
            stage: Current stage, used to decide what a bare answer means
            services: Active catalog for service matching

        Returns:
            IntentResult (confidence 0.0 when nothing was understood)
        """
        start_time = time.time()
        lowered = message.lower().strip()

        result = IntentResult(
            intent=Intent.UNKNOWN,
            confidence=0.0,
            source=InterpretationSource.KEYWORDS,
        )

        if HANDOFF_PATTERN.search(lowered) and not BOOKING_PATTERN.search(lowered):
            result.intent = Intent.HANDOFF
            result.confidence = 0.9
        elif GOODBYE_PATTERN.search(lowered):
            result.intent = Intent.GOODBYE
            result.confidence = 0.9

        if result.intent == Intent.UNKNOWN:
            service = match_service(lowered, services or [])
            if service is not None:
                result.service = service.name

            result.customer_name = extract_name(
                message, expecting_name=stage == CallStage.COLLECTING_IDENTITY
            )

            preference = parse_time_preference(message, today)
            if preference is not None:
                result.time_preference = preference
                result.time_phrase = message.strip()

            if stage == CallStage.AWAITING_CONFIRMATION:
                result.confirmation = read_confirmation(lowered)

            if result.confirmation is not None:
                result.intent = Intent.CONFIRMATION
                if result.confirmation is False and result.time_preference is not None:
                    result.intent = Intent.CHANGE_TIME
                result.confidence = 0.85
            elif result.has_details:
                result.intent = Intent.PROVIDE_INFO
                result.confidence = 0.8
            elif BOOKING_PATTERN.search(lowered):
                result.intent = Intent.BOOK
                result.confidence = 0.8
            elif GREETING_PATTERN.search(lowered):
                result.intent = Intent.GREETING
                result.confidence = 0.8

        result.processing_time_ms = (time.time() - start_time) * 1000
        return result
