"""Multi-tenant voice receptionist gateway."""

__version__ = "0.1.0"
