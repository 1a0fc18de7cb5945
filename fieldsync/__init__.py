"""Offline-first synchronization of field observations."""

__version__ = "0.1.0"
