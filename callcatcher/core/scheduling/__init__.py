"""
Scheduling Module

Slot inventory, availability search, tentative holds, booking commits and
the conversation engine that drives a phone call through them.

Usage:
    from callcatcher.core.scheduling.engine import get_conversation_engine

    engine = get_conversation_engine()
    turn = await engine.handle_event(
        call_id="CA123",
        business_id="4f6c...",
        speech="I'd like a haircut tomorrow morning",
    )
    print(turn.prompt)  # What to say to the caller
    print(turn.action)  # continue / end
"""
