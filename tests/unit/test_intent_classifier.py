"""Tests for LLM intent classification."""

from dataclasses import dataclass
from datetime import date, time
from unittest.mock import AsyncMock

import pytest

from callcatcher.core.errors import UpstreamUnavailable
from callcatcher.core.intelligence.intent.classifier import IntentClassifier, build_time_preference
from callcatcher.core.intelligence.intent.types import Intent, InterpretationSource
from callcatcher.core.intelligence.session.state import CallStage
from callcatcher.core.scheduling.catalog import ServiceInfo
from callcatcher.core.scheduling.preferences import TimeBucket
from callcatcher.infra.claude import ClaudeClientError

TODAY = date(2026, 3, 1)  # Sunday

SERVICES = [
    ServiceInfo(id="svc-1", name="Haircut", duration_minutes=30, keywords=["haircut", "cut", "trim"]),
    ServiceInfo(id="svc-2", name="Hot Shave", duration_minutes=45, keywords=["shave", "beard"]),
]


@dataclass
class MockClaudeResponse:
    """Mock Claude response."""
    content: str
    model: str = "claude-3-5-haiku-20241022"
    input_tokens: int = 100
    output_tokens: int = 50
    stop_reason: str = "end_turn"
    latency_ms: float = 50.0


class TestIntentClassifier:
    """Test LLM-based intent classifier."""

    @pytest.fixture
    def mock_claude_client(self):
        """Mock Claude client."""
        client = AsyncMock()
        return client

    @pytest.fixture
    def classifier(self, mock_claude_client):
        """Create classifier with mock client."""
        return IntentClassifier(claude_client=mock_claude_client, fallback_enabled=True)

    def _mock_response(self, mock_client, json_response: str):
        """Helper to mock Claude response."""
        mock_client.generate.return_value = MockClaudeResponse(content=json_response)

    @pytest.mark.asyncio
    async def test_classify_provide_info(self, classifier, mock_claude_client):
        """Service, name and time in one utterance."""
        self._mock_response(
            mock_claude_client,
            '''
            {
                "intent": "provide_info",
                "confidence": 0.93,
                "service": "Haircut",
                "customer_name": "John Smith",
                "time_preference": "tomorrow morning",
                "date": null,
                "time": null,
                "part_of_day": "morning",
                "confirmation": null
            }
            ''',
        )

        result = await classifier.classify(
            "Hi, John Smith here, I need a haircut tomorrow morning",
            today=TODAY,
            services=SERVICES,
        )

        assert result.intent == Intent.PROVIDE_INFO
        assert result.service == "Haircut"
        assert result.customer_name == "John Smith"
        assert result.time_preference.on_date == date(2026, 3, 2)
        assert result.time_preference.bucket == TimeBucket.MORNING
        assert result.source == InterpretationSource.MODEL

    @pytest.mark.asyncio
    async def test_classify_confirmation_yes(self, classifier, mock_claude_client):
        """Test yes confirmation."""
        self._mock_response(
            mock_claude_client,
            '{"intent": "confirmation", "confidence": 0.98, "confirmation": "yes"}',
        )

        result = await classifier.classify(
            "Yes, book it", today=TODAY, stage=CallStage.AWAITING_CONFIRMATION
        )

        assert result.intent == Intent.CONFIRMATION
        assert result.confirmation is True

    @pytest.mark.asyncio
    async def test_prompt_mentions_pending_confirmation(self, classifier, mock_claude_client):
        self._mock_response(mock_claude_client, '{"intent": "unknown", "confidence": 0.2}')

        await classifier.classify(
            "hmm",
            today=TODAY,
            stage=CallStage.AWAITING_CONFIRMATION,
            services=SERVICES,
            business_name="Main Street Barbers",
            history=[{"role": "assistant", "content": "Does Monday at 8 work?"}],
        )

        prompt = mock_claude_client.generate.call_args.kwargs["prompt"]
        assert "Main Street Barbers" in prompt
        assert "- Hot Shave" in prompt
        assert "WAITING for YES/NO" in prompt
        assert "Receptionist: Does Monday at 8 work?" in prompt

    @pytest.mark.asyncio
    async def test_markdown_fences_stripped(self, classifier, mock_claude_client):
        self._mock_response(
            mock_claude_client,
            '```json\n{"intent": "handoff", "confidence": 0.9}\n```',
        )

        result = await classifier.classify("Can I talk to someone?", today=TODAY)

        assert result.intent == Intent.HANDOFF

    @pytest.mark.asyncio
    async def test_invalid_json(self, classifier, mock_claude_client):
        """Unparseable output becomes a zero-confidence unknown."""
        self._mock_response(mock_claude_client, "I think they want a haircut")

        result = await classifier.classify("haircut please", today=TODAY)

        assert result.intent == Intent.UNKNOWN
        assert result.confidence == 0.0
        assert result.raw_response == "I think they want a haircut"

    @pytest.mark.asyncio
    async def test_unknown_intent_and_bad_confidence(self, classifier, mock_claude_client):
        self._mock_response(
            mock_claude_client,
            '{"intent": "complaint", "confidence": "very", "service": "null"}',
        )

        result = await classifier.classify("this is terrible", today=TODAY)

        assert result.intent == Intent.UNKNOWN
        assert result.confidence == 0.0
        assert result.service is None

    @pytest.mark.asyncio
    async def test_empty_message_skips_model(self, classifier, mock_claude_client):
        result = await classifier.classify("   ", today=TODAY)

        assert result.intent == Intent.UNKNOWN
        mock_claude_client.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_api_error_falls_back_to_keywords(self, classifier, mock_claude_client):
        mock_claude_client.generate.side_effect = ClaudeClientError("API down")

        result = await classifier.classify("I'd like a beard shave", today=TODAY, services=SERVICES)

        assert result.source == InterpretationSource.KEYWORDS
        assert result.service == "Hot Shave"

    @pytest.mark.asyncio
    async def test_api_error_without_fallback_raises(self, mock_claude_client):
        mock_claude_client.generate.side_effect = ClaudeClientError("API down")
        classifier = IntentClassifier(claude_client=mock_claude_client, fallback_enabled=False)

        with pytest.raises(UpstreamUnavailable):
            await classifier.classify("haircut", today=TODAY)

    @pytest.mark.asyncio
    async def test_unexpected_client_failure_falls_back(self, classifier, mock_claude_client):
        mock_claude_client.generate.side_effect = IndexError("list index out of range")

        result = await classifier.classify("I'd like a beard shave", today=TODAY, services=SERVICES)

        assert result.source == InterpretationSource.KEYWORDS
        assert result.service == "Hot Shave"


class TestBuildTimePreference:
    """Merging the model's structured fields with the phrase parser."""

    def test_structured_date_overrides_weekday(self):
        preference = build_time_preference(
            {"time_preference": "tuesday", "date": "2026-03-10"}, TODAY
        )

        assert preference.on_date == date(2026, 3, 10)
        assert preference.weekday is None

    def test_past_date_ignored(self):
        preference = build_time_preference(
            {"time_preference": "tuesday", "date": "2025-03-10"}, TODAY
        )

        assert preference.on_date is None
        assert preference.weekday == 1

    def test_exact_time_only(self):
        preference = build_time_preference({"time": "15:30"}, TODAY)

        assert preference.exact_time == time(15, 30)

    def test_nothing_usable(self):
        assert build_time_preference({"time_preference": "null", "part_of_day": "brunch"}, TODAY) is None
