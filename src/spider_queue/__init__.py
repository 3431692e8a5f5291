"""Persistent single-worker job queue for external data-collection workers."""

__version__ = "0.1.0"
