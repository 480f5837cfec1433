"""Xpend email transaction ingestion and reconciliation API."""

__version__ = "0.1.0"
