"""Caller speech interpretation module."""

from .types import Intent, IntentResult, InterpretationSource
from .keywords import KeywordInterpreter
from .classifier import IntentClassifier, get_intent_classifier

__all__ = [
    # Types
    "Intent",
    "IntentResult",
    "InterpretationSource",
    # Interpreters
    "KeywordInterpreter",
    "IntentClassifier",
    "get_intent_classifier",
]
