"""
CallCatcher test suite.

Unit tests run against a temporary SQLite database (aiosqlite) and mocked
Redis / model clients, so no external services are needed:

    pytest tests/ -v
"""
