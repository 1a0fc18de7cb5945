"""Canonical record storage for reconciled observations."""

from .record_store import RecordStore

__all__ = ["RecordStore"]
