"""HTTP API for observation reconciliation.

Exposes the record store and batch reconciliation over FastAPI.
"""

from .app import create_app

__all__ = ["create_app"]
