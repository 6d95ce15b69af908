"""Billing event processing and subscription lifecycle."""
