"""
Conversation Engine - call orchestrator.

Drives one phone call from greeting to a terminal outcome. Each telephony
event is handled under a per-call lock: the session is loaded, the caller's
speech interpreted, the flow consulted, side effects (holds, availability
lookups, bookings, notifications) executed and the session saved again.

Terminal outcomes:
- success: appointment committed
- handoff: transferred to staff or promised a callback
- failure: caller ended the call, or a collaborator failed
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from callcatcher.config import settings
from callcatcher.core.errors import (
    NoAvailability, SessionExpired, UpstreamUnavailable, ValidationError,
)
from callcatcher.core.intelligence.intent.classifier import (
    IntentClassifier,
    get_intent_classifier,
)
from callcatcher.core.intelligence.session.models import CallSession
from callcatcher.core.intelligence.session.state import CallStage
from callcatcher.core.intelligence.session.store import SessionStore, get_session_store
from callcatcher.core.scheduling.availability import (
    AvailabilityEngine,
    AvailableSlot,
    get_availability_engine,
)
from callcatcher.core.scheduling.booking import (
    BookingManager,
    BookingRequest,
    Customer,
    get_booking_manager,
)
from callcatcher.core.scheduling.catalog import (
    BusinessProfile,
    ServiceCatalog,
    get_service_catalog,
)
from callcatcher.core.scheduling.flow import (
    Action,
    ConversationFlow,
    FlowAction,
    get_conversation_flow,
)
from callcatcher.core.scheduling.holds import SlotHoldStore, get_slot_hold_store
from callcatcher.core.scheduling.preferences import TimePreference
from callcatcher.core.scheduling.response import (
    ResponseGenerator,
    get_response_generator,
)
from callcatcher.infra.notifications import (
    NotificationEvent,
    NotificationService,
    get_notification_service,
)

logger = logging.getLogger(__name__)


class Outcome:
    """Why a call ended."""

    BOOKED = "booked"
    HANDOFF = "handoff"
    CALLER_ENDED = "caller_ended"
    BOOKING_FAILED = "booking_failed"
    UPSTREAM_FAILURE = "upstream_failure"
    HUNG_UP = "hung_up"
    EXPIRED = "expired"


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class TurnResult:
    """What the telephony adapter should do after one event."""

    call_id: str
    prompt: str
    stage: Optional[CallStage] = None
    terminated: bool = False
    transfer_to: Optional[str] = None
    outcome: Optional[str] = None
    appointment_id: Optional[str] = None

    @property
    def action(self) -> str:
        """continue = speak and listen; end = speak and hang up (or transfer)."""
        return "end" if self.terminated else "continue"

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        result = {
            "call_id": self.call_id,
            "prompt": self.prompt,
            "action": self.action,
            "transfer_to": self.transfer_to,
        }
        if self.stage:
            result["stage"] = self.stage.value
        if self.outcome:
            result["outcome"] = self.outcome
        if self.appointment_id:
            result["appointment_id"] = self.appointment_id
        return result


class ConversationEngine:
    """
    Main orchestrator for booking calls.

    Coordinates:
    - Session storage and per-call locking
    - Speech interpretation
    - Conversation flow
    - Availability search and tentative holds
    - Booking commits
    - Notifications
    """

    def __init__(
        self,
        session_store: Optional[SessionStore] = None,
        hold_store: Optional[SlotHoldStore] = None,
        classifier: Optional[IntentClassifier] = None,
        catalog: Optional[ServiceCatalog] = None,
        availability: Optional[AvailabilityEngine] = None,
        booking: Optional[BookingManager] = None,
        notifier: Optional[NotificationService] = None,
        responses: Optional[ResponseGenerator] = None,
        flow: Optional[ConversationFlow] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize engine with optional dependencies.

        Args:
            session_store: Call session storage
            hold_store: Tentative slot holds
            classifier: Speech interpreter
            catalog: Business profile lookups
            availability: Slot search
            booking: Booking commits
            notifier: Notification webhook client
            responses: Prompt templates
            flow: Conversation flow manager
            clock: Current-time source (tests)
        """
        self._session_store = session_store
        self._hold_store = hold_store
        self._classifier = classifier
        self._catalog = catalog
        self._availability = availability
        self._booking = booking
        self._notifier = notifier
        self._responses = responses or get_response_generator()
        self._flow = flow or get_conversation_flow()
        self._clock = clock or _utcnow

        self.max_retries = settings.max_retries
        self.max_silent_prompts = settings.max_silent_prompts
        self.inactivity_timeout = settings.session_inactivity_timeout_seconds
        self.hold_ttl = settings.slot_hold_ttl_seconds

    async def _get_session_store(self) -> SessionStore:
        if self._session_store is None:
            self._session_store = await get_session_store()
        return self._session_store

    async def _get_hold_store(self) -> SlotHoldStore:
        if self._hold_store is None:
            self._hold_store = await get_slot_hold_store()
        return self._hold_store

    async def _get_classifier(self) -> IntentClassifier:
        if self._classifier is None:
            self._classifier = await get_intent_classifier()
        return self._classifier

    def _get_catalog(self) -> ServiceCatalog:
        if self._catalog is None:
            self._catalog = get_service_catalog()
        return self._catalog

    def _get_availability(self) -> AvailabilityEngine:
        if self._availability is None:
            self._availability = get_availability_engine()
        return self._availability

    def _get_booking(self) -> BookingManager:
        if self._booking is None:
            self._booking = get_booking_manager()
        return self._booking

    def _get_notifier(self) -> NotificationService:
        if self._notifier is None:
            self._notifier = get_notification_service()
        return self._notifier

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def begin(
        self,
        call_id: str,
        business_id: str,
        caller_number: Optional[str] = None,
        called_number: Optional[str] = None,
    ) -> TurnResult:
        """
        Start a call and return the greeting.

        Calling begin again for a live call returns its last prompt.

        Raises:
            ValidationError: Unknown or inactive business
        """
        store = await self._get_session_store()
        now = self._clock()

        try:
            async with store.lock(call_id):
                existing = await store.get(call_id)
                if existing is not None:
                    return self._result(existing, existing.last_prompt or "")
                if await store.is_expired(call_id):
                    return self._expired_result(call_id)

                profile = await self._load_profile(business_id)
                session = CallSession(
                    call_id=call_id,
                    business_id=profile.id,
                    caller_number=caller_number,
                    called_number=called_number,
                    customer_phone=caller_number,
                    created_at=now,
                    last_activity_at=now,
                )
                prompt = self._responses.greeting(profile.name)
                session.record_turn(None, prompt)
                await store.save(session)
        except UpstreamUnavailable as e:
            logger.error(f"Could not start call {call_id}: {e}")
            return TurnResult(
                call_id=call_id,
                prompt=self._responses.upstream_unavailable(),
                terminated=True,
                outcome=Outcome.UPSTREAM_FAILURE,
            )

        logger.info(f"Call {call_id} started for business {profile.id}")
        return self._result(session, prompt)

    async def advance(self, call_id: str, speech: Optional[str]) -> TurnResult:
        """
        Handle one caller utterance (None or blank for silence).

        Returns:
            TurnResult with the next prompt; terminated once the call ends
        """
        store = await self._get_session_store()
        now = self._clock()

        try:
            async with store.lock(call_id):
                try:
                    session = await self._require_session(store, call_id)
                except SessionExpired as e:
                    logger.info(f"{e}")
                    return self._expired_result(call_id)

                if session.is_terminal:
                    return self._result(session, session.last_prompt or "")

                text = (speech or "").strip()
                try:
                    prompt = await self._turn(session, text, now)
                except UpstreamUnavailable as e:
                    prompt = await self._fail_upstream(session, e)
                except ValidationError as e:
                    # Business removed or deactivated mid-call
                    prompt = await self._fail_upstream(session, e)

                session.record_turn(text or None, prompt)
                session.touch(now)
                await store.save(session)
        except UpstreamUnavailable as e:
            logger.error(f"Session store failure on call {call_id}: {e}")
            return TurnResult(
                call_id=call_id,
                prompt=self._responses.upstream_unavailable(),
                terminated=True,
                outcome=Outcome.UPSTREAM_FAILURE,
            )

        logger.debug(f"Call {call_id}: stage={session.stage.value} retries={session.retry_count}")
        return self._result(session, prompt)

    async def handle_event(
        self,
        call_id: str,
        business_id: str,
        speech: Optional[str] = None,
        caller_number: Optional[str] = None,
        called_number: Optional[str] = None,
    ) -> TurnResult:
        """
        Single entry point for telephony webhooks.

        The first event of a call starts it; if that event already carries
        speech, the speech is answered instead of the greeting.
        """
        store = await self._get_session_store()
        try:
            known = await store.get(call_id) is not None or await store.is_expired(call_id)
        except UpstreamUnavailable:
            known = True  # advance reports the failure

        if not known:
            started = await self.begin(call_id, business_id, caller_number, called_number)
            if started.terminated or not (speech or "").strip():
                return started
        return await self.advance(call_id, speech)

    async def end_call(self, call_id: str) -> bool:
        """
        Caller hung up: release holds and retire the session.

        Returns:
            True if a session was retired
        """
        store = await self._get_session_store()
        try:
            async with store.lock(call_id):
                session = await store.get(call_id)
                if session is None:
                    return False
                await self._retire(store, session, Outcome.HUNG_UP)
        except UpstreamUnavailable as e:
            logger.error(f"Could not end call {call_id}: {e}")
            return False
        logger.info(f"Call {call_id} ended by caller")
        return True

    async def expire(self, now: Optional[datetime] = None) -> int:
        """
        Retire idle and finished sessions.

        A session is retired when it is terminal or has been idle for
        the inactivity timeout. Holds are released and a tombstone is left
        so late events get the "call has ended" reply.

        Returns:
            Number of sessions retired
        """
        store = await self._get_session_store()
        now = now or self._clock()
        retired = 0

        for call_id in await store.list_ids():
            try:
                async with store.lock(call_id):
                    session = await store.get(call_id)
                    if session is None:
                        await store.delete(call_id)
                        continue
                    if not session.is_terminal and session.idle_seconds(now) < self.inactivity_timeout:
                        continue
                    await self._retire(store, session, Outcome.EXPIRED)
                    retired += 1
            except UpstreamUnavailable as e:
                logger.error(f"Could not sweep call {call_id}: {e}")

        if retired:
            logger.info(f"Retired {retired} call session(s)")
        return retired

    # ------------------------------------------------------------------
    # Turn handling
    # ------------------------------------------------------------------

    async def _require_session(self, store: SessionStore, call_id: str) -> CallSession:
        session = await store.get(call_id)
        if session is None:
            if await store.is_expired(call_id):
                raise SessionExpired(f"Late event for retired call {call_id}")
            raise SessionExpired(f"Event for unknown call {call_id}")
        return session

    async def _turn(self, session: CallSession, text: str, now: datetime) -> str:
        """Interpret one utterance and execute the resulting action."""
        if not text:
            return await self._silence(session)
        session.silence_count = 0

        profile = await self._load_profile(session.business_id)
        today = now.astimezone(profile.zone).date()

        classifier = await self._get_classifier()
        result = await classifier.classify(
            text,
            today=today,
            stage=session.stage,
            services=profile.services,
            business_name=profile.name,
            history=session.history,
        )

        action = self._flow.process(session, result, profile, text)
        logger.debug(
            f"Call {session.call_id}: {result.intent.value} ({result.confidence:.2f}, "
            f"{result.source.value}) -> {action.action_type}"
        )
        return await self._execute(session, profile, action, now, today)

    async def _execute(
        self,
        session: CallSession,
        profile: BusinessProfile,
        action: FlowAction,
        now: datetime,
        today: date,
    ) -> str:
        """Execute the determined action and return the prompt."""
        if action.is_retry:
            return await self._retry(session, profile, action)
        session.retry_count = 0

        if action.action_type == Action.HANDOFF:
            return await self._handoff(session, profile, reason="caller_request")

        if action.action_type == Action.GOODBYE:
            await self._release_hold(session)
            session.transition_to(CallStage.FAILURE)
            session.outcome = Outcome.CALLER_ENDED
            return self._responses.goodbye(session.customer_name)

        if action.action_type == Action.ASK_SERVICE:
            session.transition_to(action.next_stage)
            return self._responses.ask_service(profile.service_names())

        if action.action_type == Action.ASK_NAME:
            session.transition_to(action.next_stage)
            return self._responses.ask_name(session.service_name)

        if action.action_type == Action.ASK_TIME:
            session.transition_to(action.next_stage)
            return self._responses.ask_time(session.customer_name)

        if action.action_type == Action.DECLINE:
            if session.candidate_slot_id:
                session.excluded_slot_ids.append(session.candidate_slot_id)
            await self._release_hold(session)
            session.clear_candidate()
            session.time_preference = None
            session.widened = False
            session.transition_to(CallStage.COLLECTING_TIME)
            return self._responses.ask_time()

        if action.action_type == Action.BOOK:
            return await self._book(session, profile, now, today)

        return await self._propose(session, profile, now, today)

    async def _retry(self, session: CallSession, profile: BusinessProfile, action: FlowAction) -> str:
        session.retry_count += 1
        logger.info(
            f"Call {session.call_id}: {action.error} "
            f"(retry {session.retry_count}/{self.max_retries})"
        )
        if session.retry_count >= self.max_retries:
            return await self._handoff(session, profile, reason="unclear_input")
        await self._keep_hold(session)
        if action.action_type == Action.CLARIFY_SERVICE:
            return self._responses.clarify_service(profile.service_names())
        prompt = self._responses.reprompt(session.stage, profile.service_names())
        if action.off_topic:
            return f"{self._responses.out_of_scope()} {prompt}"
        return prompt

    async def _silence(self, session: CallSession) -> str:
        session.silence_count += 1
        logger.info(
            f"Call {session.call_id}: silent turn "
            f"({session.silence_count}/{self.max_silent_prompts})"
        )
        if session.silence_count >= self.max_silent_prompts:
            profile = await self._load_profile(session.business_id)
            return await self._handoff(session, profile, reason="no_response")
        await self._keep_hold(session)
        return self._responses.silence(session.last_prompt)

    # ------------------------------------------------------------------
    # Slot proposal and booking
    # ------------------------------------------------------------------

    async def _propose(
        self,
        session: CallSession,
        profile: BusinessProfile,
        now: datetime,
        today: date,
        after_conflict: bool = False,
    ) -> str:
        """Hold and offer the earliest matching slot, widening once if needed."""
        preference = session.time_preference or TimePreference()
        await self._release_hold(session)
        session.clear_candidate()
        session.transition_to(CallStage.PROPOSING_SLOT)

        slot = await self._hold_first_open(session, preference, now)
        if slot is not None:
            if after_conflict:
                prompt = self._responses.propose_after_conflict(slot.spoken)
            else:
                prompt = self._responses.propose_slot(slot.spoken, retry=bool(session.excluded_slot_ids))
        else:
            try:
                if session.widened:
                    raise NoAvailability(f"Nothing left after widening for {preference.describe()}")
                widened = preference.widened(today, settings.search_window_days)
                slot = await self._hold_first_open(session, widened, now)
                if slot is None:
                    raise NoAvailability(f"Nothing near {preference.describe()}")
            except NoAvailability as e:
                logger.info(f"Call {session.call_id}: {e}")
                return await self._handoff(session, profile, reason="no_availability")
            session.widened = True
            session.time_preference = widened
            prompt = self._responses.propose_widened(preference.describe(), slot.spoken)

        session.candidate_slot_id = slot.slot_id
        session.candidate_start = slot.start.isoformat()
        session.candidate_end = slot.end.isoformat()
        session.candidate_spoken = slot.spoken
        session.transition_to(CallStage.AWAITING_CONFIRMATION)
        return prompt

    async def _hold_first_open(
        self,
        session: CallSession,
        preference: TimePreference,
        now: datetime,
    ) -> Optional[AvailableSlot]:
        """
        First open slot this call can hold; slots held by other calls are skipped.

        A widened preference is tried nearest-first around the requested
        day, chronological among equals.
        """
        try:
            slots = await self._get_availability().find_available_slots(
                uuid.UUID(session.business_id),
                preference,
                now=now,
                exclude_slot_ids=session.excluded_slot_ids,
            )
        except SQLAlchemyError as e:
            raise UpstreamUnavailable("Availability lookup failed") from e
        if preference.near_date is not None or preference.near_time is not None:
            slots = sorted(slots, key=lambda slot: preference.distance(slot.local_start))

        holds = await self._get_hold_store()
        for slot in slots:
            if await holds.acquire(slot.slot_id, session.call_id, self.hold_ttl):
                session.hold_slot_id = slot.slot_id
                return slot
            logger.debug(f"Slot {slot.slot_id} held by another call, skipping")
        return None

    async def _book(
        self,
        session: CallSession,
        profile: BusinessProfile,
        now: datetime,
        today: date,
    ) -> str:
        """Commit the confirmed candidate."""
        slot_id = session.candidate_slot_id
        if slot_id is None:
            return await self._propose(session, profile, now, today)

        if not await self._keep_hold(session):
            logger.info(f"Call {session.call_id}: hold on slot {slot_id} went to another call, re-proposing")
            session.excluded_slot_ids.append(slot_id)
            return await self._propose(session, profile, now, today, after_conflict=True)

        session.transition_to(CallStage.BOOKING)
        session.booking_attempts += 1
        request = BookingRequest(
            call_id=session.call_id,
            business_id=session.business_id,
            service_id=session.service_id,
            customer=Customer(name=session.customer_name or "", phone=session.customer_phone),
            slot_id=slot_id,
            idempotency_token=f"{session.call_id}:{slot_id}",
        )

        try:
            result = await self._get_booking().book(request, now=now)
        except UpstreamUnavailable as e:
            logger.error(f"Call {session.call_id}: booking failed: {e}")
            await self._release_hold(session)
            session.transition_to(CallStage.FAILURE)
            session.outcome = Outcome.BOOKING_FAILED
            self._notify(session, "follow_up", reason="booking_store_unavailable")
            return self._responses.booking_failed()

        if result.committed:
            spoken = session.candidate_spoken or ""
            session.appointment_id = result.appointment_id
            await self._release_hold(session)
            session.transition_to(CallStage.SUCCESS)
            session.outcome = Outcome.BOOKED
            self._notify(session, "booked", start_time=session.candidate_start)
            logger.info(f"Call {session.call_id} booked appointment {result.appointment_id}")
            return self._responses.booking_confirmed(spoken, session.customer_name, session.service_name)

        error = result.error
        if result.conflict or (isinstance(error, ValidationError) and error.field == "slot_id"):
            logger.info(f"Call {session.call_id}: slot {slot_id} lost ({error}), re-proposing")
            session.excluded_slot_ids.append(slot_id)
            return await self._propose(session, profile, now, today, after_conflict=True)

        logger.warning(f"Call {session.call_id}: booking rejected: {error}")
        return await self._handoff(session, profile, reason="booking_rejected")

    # ------------------------------------------------------------------
    # Endings
    # ------------------------------------------------------------------

    async def _handoff(self, session: CallSession, profile: BusinessProfile, reason: str) -> str:
        await self._release_hold(session)
        session.transition_to(CallStage.HANDOFF)
        session.outcome = Outcome.HANDOFF
        session.transfer_to = profile.transfer_number
        self._notify(session, "follow_up", reason=reason)
        logger.info(f"Call {session.call_id} handed off ({reason})")
        return self._responses.handoff(profile.transfer_number)

    async def _fail_upstream(self, session: CallSession, error: Exception) -> str:
        logger.error(f"Call {session.call_id}: cannot continue: {error}")
        await self._release_hold(session)
        session.transition_to(CallStage.FAILURE)
        session.outcome = Outcome.UPSTREAM_FAILURE
        self._notify(session, "follow_up", reason="upstream_unavailable")
        return self._responses.upstream_unavailable()

    async def _retire(self, store: SessionStore, session: CallSession, outcome: str) -> None:
        """Release holds, delete the session and leave a tombstone."""
        await self._release_hold(session)
        if not session.is_terminal:
            session.outcome = outcome
            if session.service_id or session.customer_name:
                self._notify(session, "follow_up", reason=outcome)
        await store.delete(session.call_id)
        await store.mark_expired(session.call_id)
        logger.debug(f"Retired call {session.call_id} ({session.outcome})")

    async def _keep_hold(self, session: CallSession) -> bool:
        """
        Refresh the hold on the offered slot, re-taking it if it lapsed.

        Returns False when another call holds the slot now.
        """
        slot_id = session.candidate_slot_id
        if slot_id is None or session.stage != CallStage.AWAITING_CONFIRMATION:
            return True
        holds = await self._get_hold_store()
        if await holds.acquire(slot_id, session.call_id, self.hold_ttl):
            session.hold_slot_id = slot_id
            return True
        session.hold_slot_id = None
        return False

    async def _release_hold(self, session: CallSession) -> None:
        if session.hold_slot_id is None:
            return
        holds = await self._get_hold_store()
        await holds.release(session.hold_slot_id, session.call_id)
        session.hold_slot_id = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_profile(self, business_id: str) -> BusinessProfile:
        """Business profile; store failures surface as UpstreamUnavailable."""
        try:
            return await self._get_catalog().load_profile(business_id)
        except SQLAlchemyError as e:
            raise UpstreamUnavailable("Business profile unavailable") from e

    def _notify(
        self,
        session: CallSession,
        event: str,
        reason: Optional[str] = None,
        start_time: Optional[str] = None,
    ) -> None:
        self._get_notifier().dispatch(
            NotificationEvent(
                event=event,
                business_id=session.business_id,
                call_id=session.call_id,
                customer_name=session.customer_name,
                customer_phone=session.customer_phone,
                appointment_id=session.appointment_id,
                service_name=session.service_name,
                start_time=start_time,
                reason=reason,
            )
        )

    def _result(self, session: CallSession, prompt: str) -> TurnResult:
        return TurnResult(
            call_id=session.call_id,
            prompt=prompt,
            stage=session.stage,
            terminated=session.is_terminal,
            transfer_to=session.transfer_to if session.stage == CallStage.HANDOFF else None,
            outcome=session.outcome,
            appointment_id=session.appointment_id,
        )

    def _expired_result(self, call_id: str) -> TurnResult:
        return TurnResult(
            call_id=call_id,
            prompt=self._responses.session_expired(),
            terminated=True,
            outcome=Outcome.EXPIRED,
        )


# Singleton
_engine: Optional[ConversationEngine] = None


def get_conversation_engine() -> ConversationEngine:
    """Get singleton ConversationEngine."""
    global _engine
    if _engine is None:
        _engine = ConversationEngine()
    return _engine
