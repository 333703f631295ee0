"""Tests for spoken prompt templates."""

import pytest

from callcatcher.core.intelligence.session.state import CallStage
from callcatcher.core.scheduling.response import STILL_THERE, ResponseGenerator

SERVICES = ["Haircut", "Hot Shave", "Beard Trim"]


class TestResponseGenerator:
    """Test template responses."""

    @pytest.fixture
    def generator(self):
        return ResponseGenerator()

    def test_greeting_with_business_name(self, generator):
        response = generator.greeting("Main Street Barbers")

        assert "Main Street Barbers" in response
        assert response.endswith("?")

    def test_ask_service_lists_catalog(self, generator):
        response = generator.ask_service(SERVICES)

        assert "Haircut, Hot Shave or Beard Trim" in response

    def test_ask_service_without_catalog(self, generator):
        assert generator.ask_service([]) == "What would you like to come in for?"

    def test_ask_time_uses_name(self, generator):
        assert generator.ask_time("John").startswith("Thanks, John.")

    def test_propose_slot(self, generator):
        first = generator.propose_slot("Monday, March 2 at 8:00 AM")
        retry = generator.propose_slot("Monday, March 2 at 9:00 AM", retry=True)

        assert "Monday, March 2 at 8:00 AM" in first
        assert retry.startswith("How about Monday, March 2 at 9:00 AM?")

    def test_propose_after_conflict(self, generator):
        response = generator.propose_after_conflict("Monday, March 2 at 9:00 AM")

        assert "just taken" in response
        assert "9:00 AM" in response

    def test_reprompt_per_stage(self, generator):
        assert "name" in generator.reprompt(CallStage.COLLECTING_IDENTITY)
        assert "yes or no" in generator.reprompt(CallStage.AWAITING_CONFIRMATION)
        assert "Haircut" in generator.reprompt(CallStage.COLLECTING_SERVICE, SERVICES)

    def test_silence_does_not_nest(self, generator):
        once = generator.silence("When would you like to come in?")
        twice = generator.silence(once)

        assert once == f"{STILL_THERE} When would you like to come in?"
        assert twice == once

    def test_silence_without_prompt(self, generator):
        assert generator.silence(None) == STILL_THERE

    def test_booking_confirmed(self, generator):
        response = generator.booking_confirmed("Monday, March 2 at 8:00 AM", "John", "Haircut")

        assert response == "You're all set, John. We'll see you Monday, March 2 at 8:00 AM for your Haircut. Goodbye!"

    def test_handoff_with_and_without_transfer(self, generator):
        assert "connect you" in generator.handoff("+15550000000")
        assert "call you back" in generator.handoff(None)
