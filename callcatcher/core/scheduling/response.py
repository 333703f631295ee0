"""
Spoken prompt templates for the phone assistant.

Everything the caller hears comes from here, so wording stays consistent
and short enough for text-to-speech.
"""

from typing import Optional

from callcatcher.core.intelligence.session.state import CallStage

STILL_THERE = "Are you still there?"


def _join_names(names: list[str]) -> str:
    if not names:
        return ""
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + f" or {names[-1]}"


class ResponseGenerator:
    """Template-based prompt builder."""

    def greeting(self, business_name: Optional[str] = None) -> str:
        if business_name:
            return (
                f"Thanks for calling {business_name}. I can help you book an appointment. "
                "What can we do for you today?"
            )
        return "Thanks for calling. I can help you book an appointment. What can we do for you today?"

    def ask_service(self, services: list[str]) -> str:
        if services:
            return f"What service would you like to book? We offer {_join_names(services)}."
        return "What would you like to come in for?"

    def clarify_service(self, services: list[str]) -> str:
        """Unrecognised service: list what is on offer."""
        if services:
            return f"Sorry, I didn't recognise that service. We offer {_join_names(services)}. Which one would you like?"
        return "Sorry, I didn't catch which service you need. Could you say it again?"

    def ask_name(self, service_name: Optional[str] = None) -> str:
        if service_name:
            return f"Great, a {service_name}. Can I get your name for the booking?"
        return "Can I get your name for the booking?"

    def ask_time(self, customer_name: Optional[str] = None) -> str:
        prefix = f"Thanks, {customer_name}. " if customer_name else ""
        return f"{prefix}When would you like to come in? You can say something like tomorrow morning or Friday at 2."

    def propose_slot(self, spoken_slot: str, retry: bool = False) -> str:
        if retry:
            return f"How about {spoken_slot}? Does that work?"
        return f"I have {spoken_slot} available. Shall I book that for you?"

    def propose_after_conflict(self, spoken_slot: str) -> str:
        return (
            "Sorry, that time was just taken by another caller. "
            f"The next opening is {spoken_slot}. Would that work?"
        )

    def propose_widened(self, asked_for: str, spoken_slot: str) -> str:
        return f"I don't have anything {asked_for}. The closest opening is {spoken_slot}. Would that work?"

    def reprompt(self, stage: CallStage, services: Optional[list[str]] = None) -> str:
        """Ask the same question again after unclear input."""
        if stage in (CallStage.GREETING, CallStage.COLLECTING_SERVICE):
            base = "Sorry, I didn't quite get that."
            return f"{base} {self.ask_service(services or [])}"
        if stage == CallStage.COLLECTING_IDENTITY:
            return "Sorry, I didn't catch your name. Could you say it again?"
        if stage == CallStage.COLLECTING_TIME:
            return "Sorry, I didn't catch a day or time. For example, you can say Tuesday afternoon."
        if stage == CallStage.AWAITING_CONFIRMATION:
            return "Sorry, should I book that time for you? Please say yes or no."
        return "Sorry, could you say that again?"

    def silence(self, last_prompt: Optional[str]) -> str:
        """Repeat the last question after a silent turn."""
        base = (last_prompt or "").removeprefix(STILL_THERE).strip()
        if base:
            return f"{STILL_THERE} {base}"
        return STILL_THERE

    def booking_confirmed(self, spoken_slot: str, customer_name: Optional[str], service_name: Optional[str]) -> str:
        who = f", {customer_name}" if customer_name else ""
        what = f" for your {service_name}" if service_name else ""
        return f"You're all set{who}. We'll see you {spoken_slot}{what}. Goodbye!"

    def handoff(self, transfer_number: Optional[str]) -> str:
        if transfer_number:
            return "Let me connect you with someone from our team. One moment please."
        return (
            "I'm sorry I couldn't sort that out for you. "
            "Someone from our team will call you back shortly. Goodbye!"
        )

    def upstream_unavailable(self) -> str:
        return (
            "I'm sorry, I'm having trouble on my end right now. "
            "Someone from our team will call you back shortly. Goodbye!"
        )

    def booking_failed(self) -> str:
        return (
            "I'm sorry, I couldn't finish saving your booking. "
            "A member of our team will call you back to confirm it. Goodbye!"
        )

    def session_expired(self) -> str:
        return "This call has ended. Please call back if you still need an appointment. Goodbye!"

    def goodbye(self, customer_name: Optional[str] = None) -> str:
        if customer_name:
            return f"No problem, {customer_name}. Thanks for calling. Goodbye!"
        return "No problem. Thanks for calling. Goodbye!"

    def out_of_scope(self) -> str:
        return "I can only help with booking appointments."


# Singleton
_generator: Optional[ResponseGenerator] = None


def get_response_generator() -> ResponseGenerator:
    """Get singleton ResponseGenerator."""
    global _generator
    if _generator is None:
        _generator = ResponseGenerator()
    return _generator
