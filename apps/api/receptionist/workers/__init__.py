"""Sidecar workers the outbox dispatches to."""
