"""Tests for Conversation Flow Manager."""

from datetime import date

import pytest

from callcatcher.core.errors import InputAmbiguous, ValidationError
from callcatcher.core.intelligence.intent.types import Intent, IntentResult
from callcatcher.core.intelligence.session.models import CallSession
from callcatcher.core.intelligence.session.state import CallStage
from callcatcher.core.scheduling.catalog import BusinessProfile, ServiceInfo
from callcatcher.core.scheduling.flow import Action, ConversationFlow
from callcatcher.core.scheduling.preferences import TimeBucket, TimePreference

MORNING = TimePreference(on_date=date(2026, 3, 2), bucket=TimeBucket.MORNING)


class TestConversationFlow:
    """Test ConversationFlow state machine."""

    @pytest.fixture
    def flow(self):
        """Create flow manager."""
        return ConversationFlow(confidence_threshold=0.5)

    @pytest.fixture
    def profile(self):
        return BusinessProfile(
            id="biz-1",
            name="Main Street Barbers",
            timezone="America/New_York",
            transfer_number="+15550000000",
            services=[
                ServiceInfo(id="svc-1", name="Haircut", duration_minutes=30, keywords=["haircut", "cut"]),
                ServiceInfo(id="svc-2", name="Hot Shave", duration_minutes=45, keywords=["shave"]),
            ],
        )

    @pytest.fixture
    def session(self):
        """Create test session."""
        return CallSession(
            call_id="call-1",
            business_id="biz-1",
            caller_number="+15551234567",
            stage=CallStage.GREETING,
        )

    # === Intent Handling Tests ===

    def test_handoff_intent(self, flow, session, profile):
        """Handoff wins from any stage."""
        session.stage = CallStage.COLLECTING_TIME
        result = IntentResult(intent=Intent.HANDOFF, confidence=0.95)

        action = flow.process(session, result, profile, "let me talk to someone")

        assert action.action_type == Action.HANDOFF
        assert action.next_stage == CallStage.HANDOFF

    def test_goodbye_intent(self, flow, session, profile):
        result = IntentResult(intent=Intent.GOODBYE, confidence=0.95)

        action = flow.process(session, result, profile, "bye")

        assert action.action_type == Action.GOODBYE
        assert action.next_stage == CallStage.FAILURE

    def test_low_confidence_reprompts(self, flow, session, profile):
        session.stage = CallStage.COLLECTING_TIME
        result = IntentResult(intent=Intent.PROVIDE_INFO, confidence=0.3, time_preference=MORNING)

        action = flow.process(session, result, profile, "mumble morning")

        assert action.action_type == Action.REPROMPT
        assert action.is_retry
        assert isinstance(action.error, InputAmbiguous)
        assert session.time_preference is None

    def test_out_of_scope_flagged(self, flow, session, profile):
        session.stage = CallStage.COLLECTING_SERVICE
        result = IntentResult(intent=Intent.OUT_OF_SCOPE, confidence=0.9)

        action = flow.process(session, result, profile, "what's the weather")

        assert action.action_type == Action.REPROMPT
        assert action.off_topic is True
        assert action.next_stage == CallStage.COLLECTING_SERVICE

    # === Collection Order Tests ===

    def test_service_then_name(self, flow, session, profile):
        result = IntentResult(intent=Intent.PROVIDE_INFO, confidence=0.9, service="Haircut")

        action = flow.process(session, result, profile, "a haircut please")

        assert action.action_type == Action.ASK_NAME
        assert action.next_stage == CallStage.COLLECTING_IDENTITY
        assert session.service_id == "svc-1"
        assert session.customer_phone == "+15551234567"

    def test_service_matched_from_speech(self, flow, session, profile):
        """A bare 'book' intent still picks the service out of the words."""
        result = IntentResult(intent=Intent.BOOK, confidence=0.8)

        action = flow.process(session, result, profile, "I want to book a shave")

        assert session.service_name == "Hot Shave"
        assert action.action_type == Action.ASK_NAME

    def test_book_without_details_asks_service(self, flow, session, profile):
        result = IntentResult(intent=Intent.BOOK, confidence=0.8)

        action = flow.process(session, result, profile, "I'd like an appointment")

        assert action.action_type == Action.ASK_SERVICE
        assert action.next_stage == CallStage.COLLECTING_SERVICE

    def test_unknown_service_clarifies(self, flow, session, profile):
        session.stage = CallStage.COLLECTING_SERVICE
        result = IntentResult(intent=Intent.PROVIDE_INFO, confidence=0.9, service="Massage")

        action = flow.process(session, result, profile, "a massage")

        assert action.action_type == Action.CLARIFY_SERVICE
        assert action.is_retry
        assert isinstance(action.error, ValidationError)
        assert action.error.field == "service"
        assert session.service_id is None

    def test_volunteered_fields_skip_questions(self, flow, session, profile):
        """Service, name and time in one breath goes straight to search."""
        result = IntentResult(
            intent=Intent.PROVIDE_INFO,
            confidence=0.9,
            service="Haircut",
            customer_name="John Smith",
            time_preference=MORNING,
        )

        action = flow.process(session, result, profile, "John Smith, haircut tomorrow morning")

        assert action.action_type == Action.SEARCH
        assert action.next_stage == CallStage.PROPOSING_SLOT

    def test_name_overwritten_only_when_asked(self, flow, session, profile):
        session.stage = CallStage.COLLECTING_TIME
        session.service_id = "svc-1"
        session.customer_name = "John Smith"
        result = IntentResult(intent=Intent.PROVIDE_INFO, confidence=0.9, customer_name="Tuesday")

        action = flow.process(session, result, profile, "tuesday")

        assert session.customer_name == "John Smith"
        assert action.action_type == Action.REPROMPT

    def test_no_new_information_reprompts(self, flow, session, profile):
        session.stage = CallStage.COLLECTING_IDENTITY
        session.service_id = "svc-1"
        result = IntentResult(intent=Intent.BOOK, confidence=0.8)

        action = flow.process(session, result, profile, "I want to book")

        assert action.action_type == Action.REPROMPT
        assert action.next_stage == CallStage.COLLECTING_IDENTITY

    # === Confirmation Tests ===

    @pytest.fixture
    def awaiting(self, session):
        session.stage = CallStage.AWAITING_CONFIRMATION
        session.service_id = "svc-1"
        session.customer_name = "John Smith"
        session.time_preference = MORNING
        session.candidate_slot_id = "slot-1"
        return session

    def test_confirm_yes_books(self, flow, awaiting, profile):
        result = IntentResult(intent=Intent.CONFIRMATION, confidence=0.9, confirmation=True)

        action = flow.process(awaiting, result, profile, "yes")

        assert action.action_type == Action.BOOK
        assert action.next_stage == CallStage.BOOKING

    def test_confirm_no_declines(self, flow, awaiting, profile):
        result = IntentResult(intent=Intent.CONFIRMATION, confidence=0.9, confirmation=False)

        action = flow.process(awaiting, result, profile, "no")

        assert action.action_type == Action.DECLINE
        assert action.next_stage == CallStage.COLLECTING_TIME

    def test_new_time_while_awaiting_searches(self, flow, awaiting, profile):
        afternoon = TimePreference(on_date=date(2026, 3, 2), bucket=TimeBucket.AFTERNOON)
        awaiting.widened = True
        result = IntentResult(
            intent=Intent.CHANGE_TIME, confidence=0.9, confirmation=False, time_preference=afternoon
        )

        action = flow.process(awaiting, result, profile, "no, the afternoon")

        assert action.action_type == Action.SEARCH
        assert awaiting.time_preference == afternoon
        assert awaiting.widened is False

    def test_unclear_answer_reprompts(self, flow, awaiting, profile):
        result = IntentResult(intent=Intent.GREETING, confidence=0.8)

        action = flow.process(awaiting, result, profile, "hello?")

        assert action.action_type == Action.REPROMPT
        assert action.next_stage == CallStage.AWAITING_CONFIRMATION
