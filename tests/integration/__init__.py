"""Integration tests for the voting service and HTTP API.

This package contains:

- VotingService tests against the in-memory repository (races, retries,
  expiry, resets, notifications)
- API endpoint tests over an in-process ASGI client
- PostgreSQL repository tests (docker marker, need a live database)
"""
