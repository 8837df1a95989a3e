"""Typed clients for the external booking, telephony and messaging providers."""
