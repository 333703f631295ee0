"""
Conversation Flow Manager.

Decides what the engine should do next from the current stage and one
interpreted utterance. The flow merges extracted fields into the session
but performs no I/O; lookups, holds and bookings are the engine's job.

Fields are collected in order service -> identity -> time. Anything
volunteered early is kept, so later questions are skipped.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from callcatcher.config import settings
from callcatcher.core.errors import InputAmbiguous, SchedulingError, ValidationError
from callcatcher.core.intelligence.intent.types import Intent, IntentResult
from callcatcher.core.intelligence.session.models import CallSession
from callcatcher.core.intelligence.session.state import CallStage
from callcatcher.core.scheduling.catalog import BusinessProfile, match_service

logger = logging.getLogger(__name__)


class Action:
    """Action types returned by the flow."""

    REPROMPT = "reprompt"
    CLARIFY_SERVICE = "clarify_service"
    ASK_SERVICE = "ask_service"
    ASK_NAME = "ask_name"
    ASK_TIME = "ask_time"
    SEARCH = "search"
    BOOK = "book"
    DECLINE = "decline"
    HANDOFF = "handoff"
    GOODBYE = "goodbye"


@dataclass
class FlowAction:
    """Action determined by flow manager."""

    action_type: str
    next_stage: CallStage
    error: Optional[SchedulingError] = None
    off_topic: bool = False

    @property
    def is_retry(self) -> bool:
        """Check if this turn counts towards the retry limit."""
        return self.action_type in (Action.REPROMPT, Action.CLARIFY_SERVICE)


class ConversationFlow:
    """
    State machine manager for booking calls.

    Determines the next action based on:
    - Current stage
    - Interpreted intent and extracted fields
    - What information is still needed
    """

    def __init__(self, confidence_threshold: float = 0.5):
        self._threshold = confidence_threshold

    def process(
        self,
        session: CallSession,
        result: IntentResult,
        profile: BusinessProfile,
        speech: str,
    ) -> FlowAction:
        """Process one utterance and determine the next action.

        Args:
            session: Current call session (updated in place)
            result: Interpreted caller speech
            profile: Business with its service catalog
            speech: Raw recognised text

        Returns:
            FlowAction with next stage and action
        """
        stage = session.stage

        if result.intent == Intent.HANDOFF and result.is_confident(self._threshold):
            return FlowAction(Action.HANDOFF, CallStage.HANDOFF)

        if result.intent == Intent.GOODBYE and result.is_confident(self._threshold):
            return FlowAction(Action.GOODBYE, CallStage.FAILURE)

        if not result.is_confident(self._threshold) or self._is_empty(result):
            action = self._reprompt(stage, "Could not interpret caller input")
            action.off_topic = result.intent == Intent.OUT_OF_SCOPE
            return action

        progressed = False

        # Service
        service_error: Optional[ValidationError] = None
        wants_service = stage in (CallStage.GREETING, CallStage.COLLECTING_SERVICE)
        if result.service or (wants_service and session.service_id is None):
            service = match_service(result.service, profile.services) or match_service(
                speech, profile.services
            )
            if service is not None:
                if service.id != session.service_id:
                    session.service_id = service.id
                    session.service_name = service.name
                    progressed = True
            elif session.service_id is None and (result.service or stage == CallStage.COLLECTING_SERVICE):
                service_error = ValidationError(
                    f"Unrecognised service: {result.service or speech}", field="service"
                )

        # Identity
        if result.customer_name and (
            session.customer_name is None or stage == CallStage.COLLECTING_IDENTITY
        ):
            session.customer_name = result.customer_name
            progressed = True
        if session.customer_phone is None and session.caller_number:
            session.customer_phone = session.caller_number

        # Time
        time_changed = False
        if result.time_preference is not None:
            session.time_preference = result.time_preference
            session.widened = False
            time_changed = True
            progressed = True

        if stage == CallStage.AWAITING_CONFIRMATION:
            return self._confirmation(result, time_changed)

        if service_error is not None and not progressed:
            return FlowAction(Action.CLARIFY_SERVICE, stage, error=service_error)

        action = self._next_missing(session)
        if not progressed and action.next_stage == stage and stage != CallStage.GREETING:
            return self._reprompt(stage, "No new information")
        return action

    def _confirmation(self, result: IntentResult, time_changed: bool) -> FlowAction:
        """Handle yes / no / new time while a slot is on hold."""
        if time_changed:
            return FlowAction(Action.SEARCH, CallStage.PROPOSING_SLOT)
        if result.confirmation is True:
            return FlowAction(Action.BOOK, CallStage.BOOKING)
        if result.confirmation is False or result.intent == Intent.CHANGE_TIME:
            return FlowAction(Action.DECLINE, CallStage.COLLECTING_TIME)
        return self._reprompt(CallStage.AWAITING_CONFIRMATION, "Expected yes or no")

    def _next_missing(self, session: CallSession) -> FlowAction:
        """Ask for the first field still missing, or search when complete."""
        if session.service_id is None:
            return FlowAction(Action.ASK_SERVICE, CallStage.COLLECTING_SERVICE)
        if not session.customer_name:
            return FlowAction(Action.ASK_NAME, CallStage.COLLECTING_IDENTITY)
        if session.time_preference is None:
            return FlowAction(Action.ASK_TIME, CallStage.COLLECTING_TIME)
        return FlowAction(Action.SEARCH, CallStage.PROPOSING_SLOT)

    def _reprompt(self, stage: CallStage, reason: str) -> FlowAction:
        logger.debug(f"Re-prompt at {stage.value}: {reason}")
        return FlowAction(Action.REPROMPT, stage, error=InputAmbiguous(reason))

    @staticmethod
    def _is_empty(result: IntentResult) -> bool:
        return (
            result.intent in (Intent.UNKNOWN, Intent.OUT_OF_SCOPE)
            and not result.has_details
            and result.confirmation is None
        )


# Singleton
_flow: Optional[ConversationFlow] = None


def get_conversation_flow() -> ConversationFlow:
    """Get singleton ConversationFlow."""
    global _flow
    if _flow is None:
        _flow = ConversationFlow(confidence_threshold=settings.understanding_confidence_threshold)
    return _flow
