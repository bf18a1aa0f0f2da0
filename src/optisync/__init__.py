"""Optimistic mutation reconciliation for backend-as-a-service clients."""

__version__ = "0.1.0"
