"""Outbox consumer delivering vote notifications into participant inboxes."""
