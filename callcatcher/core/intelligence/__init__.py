"""
Intelligence Layer Module

Caller speech interpretation (language model with a keyword fallback),
call session state and session storage.
"""
