"""
LLM-based interpretation of caller speech using Claude.

The model extracts intent and booking fields as JSON. Malformed or
missing fields are tolerated. When the model cannot be reached the
deterministic keyword interpreter takes over, unless that fallback is
disabled, in which case UpstreamUnavailable is raised.
"""

import json
import logging
import time
from datetime import date, time as clock
from typing import Any, Optional

from callcatcher.config import settings
from callcatcher.core.errors import UpstreamUnavailable
from callcatcher.core.intelligence.session.state import CallStage
from callcatcher.core.scheduling.catalog import ServiceInfo
from callcatcher.core.scheduling.preferences import TimeBucket, TimePreference
from callcatcher.infra.claude import ClaudeClient, ClaudeClientError, get_claude_client
from .keywords import KeywordInterpreter
from .time_parser import parse_time_preference
from .types import Intent, IntentResult, InterpretationSource

logger = logging.getLogger(__name__)


INTERPRETATION_PROMPT = """You interpret what a caller says to the phone receptionist of {business_name}.

The receptionist books appointments. Extract what the caller said in THIS message.

## Intents
- book: caller wants an appointment but gave no details
- provide_info: caller gives a service, their name, or a time
- confirmation: caller answers YES or NO to a proposed time
- change_time: caller rejects the proposed time and asks for another
- handoff: caller wants a human / staff member
- goodbye: caller wants to end the call
- greeting: hello, hi
- out_of_scope: unrelated to booking
- unknown: cannot tell

## Services offered
{services}

## Conversation so far
{context}

## Today (business local date)
{today} ({weekday})

## Caller message
"{message}"

## Response
Respond with ONLY valid JSON:
{{
    "intent": "<intent>",
    "confidence": <0.0-1.0>,
    "service": "<service name from the list, or null>",
    "customer_name": "<caller's name if they gave it, else null>",
    "time_preference": "<the caller's time words verbatim, e.g. 'tomorrow morning', or null>",
    "date": "<YYYY-MM-DD if a specific day is clear, else null>",
    "time": "<HH:MM 24h if an exact time is clear, else null>",
    "part_of_day": "<morning/afternoon/evening or null>",
    "confirmation": <true/false/null>
}}"""


def _clean_str(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or value.lower() in {"null", "none", "unknown", "n/a"}:
        return None
    return value


def _coerce_confirmation(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"yes", "true", "y"}:
            return True
        if lowered in {"no", "false", "n"}:
            return False
    return None


def build_time_preference(data: dict, today: date) -> Optional[TimePreference]:
    """Combine the model's structured time fields with the phrase parser."""
    phrase = _clean_str(data.get("time_preference"))
    parsed = parse_time_preference(phrase, today) if phrase else None

    on_date = None
    raw_date = _clean_str(data.get("date"))
    if raw_date:
        try:
            on_date = date.fromisoformat(raw_date)
        except ValueError:
            on_date = None

    exact = None
    raw_time = _clean_str(data.get("time"))
    if raw_time:
        try:
            exact = clock.fromisoformat(raw_time)
        except ValueError:
            exact = None

    bucket = None
    raw_bucket = _clean_str(data.get("part_of_day"))
    if raw_bucket:
        try:
            bucket = TimeBucket(raw_bucket.lower())
        except ValueError:
            bucket = None

    if parsed is None and on_date is None and exact is None and bucket is None:
        return None

    preference = parsed or TimePreference(raw=phrase)
    if on_date is not None and on_date >= today:
        preference.on_date = on_date
        preference.weekday = None
    if exact is not None:
        preference.exact_time = exact
    if bucket is not None and preference.bucket is None:
        preference.bucket = bucket
    return preference


class IntentClassifier:
    """
    Interprets caller speech with Claude, falling back to keywords.

    Low-confidence results are returned as-is; the engine treats them as
    ask-again.
    """

    def __init__(
        self,
        claude_client: Optional[ClaudeClient] = None,
        keyword_interpreter: Optional[KeywordInterpreter] = None,
        fallback_enabled: Optional[bool] = None,
    ):
        """Initialize classifier.

        Args:
            claude_client: Optional Claude client (for testing)
            keyword_interpreter: Deterministic fallback
            fallback_enabled: Override settings.understanding_fallback_enabled
        """
        self._client = claude_client
        self._keywords = keyword_interpreter or KeywordInterpreter()
        self._fallback_enabled = (
            settings.understanding_fallback_enabled if fallback_enabled is None else fallback_enabled
        )

    async def _get_client(self) -> Optional[ClaudeClient]:
        """Get or create Claude client; None when no API key is configured."""
        if self._client is None and settings.anthropic_api_key:
            self._client = await get_claude_client()
        return self._client

    async def classify(
        self,
        message: str,
        *,
        today: date,
        stage: Optional[CallStage] = None,
        services: Optional[list[ServiceInfo]] = None,
        business_name: str = "the business",
        history: Optional[list[dict]] = None,
    ) -> IntentResult:
        """
        Interpret one caller utterance.

        Raises:
            UpstreamUnavailable: Model failed and fallback is disabled
        """
        message = message.strip()
        start_time = time.time()

        if not message:
            return IntentResult(intent=Intent.UNKNOWN, confidence=0.0)

        client = await self._get_client()
        if client is None:
            return self._fallback(message, today, stage, services, reason="no model configured")

        prompt = INTERPRETATION_PROMPT.format(
            business_name=business_name,
            services="\n".join(f"- {s.name}" for s in services or []) or "- (none listed)",
            context=self._build_context(stage, history),
            today=today.isoformat(),
            weekday=today.strftime("%A"),
            message=message,
        )

        try:
            response = await client.generate(
                prompt=prompt,
                max_tokens=250,
                temperature=0,
            )
        except ClaudeClientError as e:
            logger.error(f"Claude API error: {e}")
            return self._fallback(message, today, stage, services, reason=str(e))
        except Exception as e:
            logger.error(f"Interpretation failed: {e!r}")
            return self._fallback(message, today, stage, services, reason=repr(e))

        result = self._parse_response(response.content, today)
        result.processing_time_ms = (time.time() - start_time) * 1000
        logger.debug(
            f"Interpreted: {result.intent.value} (confidence: {result.confidence:.2f})"
        )
        return result

    def _fallback(
        self,
        message: str,
        today: date,
        stage: Optional[CallStage],
        services: Optional[list[ServiceInfo]],
        reason: str,
    ) -> IntentResult:
        if not self._fallback_enabled:
            raise UpstreamUnavailable("Language understanding unavailable", detail=reason)
        logger.info(f"Using keyword interpreter ({reason})")
        return self._keywords.interpret(message, today=today, stage=stage, services=services)

    def _build_context(self, stage: Optional[CallStage], history: Optional[list[dict]]) -> str:
        """Build context string for the prompt."""
        parts = []
        if stage is not None:
            parts.append(f"Current step: {stage.value}")
            if stage == CallStage.AWAITING_CONFIRMATION:
                parts.append("Receptionist is WAITING for YES/NO on a proposed time")
        for turn in (history or [])[-6:]:
            speaker = "Caller" if turn.get("role") == "caller" else "Receptionist"
            parts.append(f"{speaker}: {str(turn.get('content', ''))[:200]}")
        return "\n".join(parts) if parts else "New call, nothing said yet."

    def _parse_response(self, response: str, today: date) -> IntentResult:
        """Parse LLM JSON response."""
        # Clean markdown if present
        response = response.strip()
        if response.startswith("```"):
            lines = response.split("\n")[1:]
            if lines and lines[-1].strip() == "```":
                lines = lines[:-1]
            response = "\n".join(lines)
        response = response.strip()

        try:
            data = json.loads(response)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse: {e}\nResponse: {response}")
            return IntentResult(intent=Intent.UNKNOWN, confidence=0.0, raw_response=response)

        if not isinstance(data, dict):
            return IntentResult(intent=Intent.UNKNOWN, confidence=0.0, raw_response=response)

        try:
            intent = Intent(str(data.get("intent", "unknown")).lower())
        except ValueError:
            intent = Intent.UNKNOWN

        try:
            confidence = float(data.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.0

        preference = build_time_preference(data, today)

        return IntentResult(
            intent=intent,
            confidence=max(0.0, min(confidence, 1.0)),
            service=_clean_str(data.get("service")),
            customer_name=_clean_str(data.get("customer_name")),
            time_phrase=_clean_str(data.get("time_preference")),
            time_preference=preference,
            confirmation=_coerce_confirmation(data.get("confirmation")),
            raw_response=response,
            source=InterpretationSource.MODEL,
        )


# Singleton
_classifier: Optional[IntentClassifier] = None


async def get_intent_classifier() -> IntentClassifier:
    """Get singleton IntentClassifier."""
    global _classifier
    if _classifier is None:
        _classifier = IntentClassifier()
    return _classifier
