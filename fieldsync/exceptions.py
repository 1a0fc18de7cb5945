"""Exception hierarchy for fieldsync."""


class FieldSyncError(Exception):
    """Base exception for all fieldsync errors."""


class ClientInputError(FieldSyncError):
    """Request rejected before touching the store (empty batch, missing identity)."""


class StoreError(FieldSyncError):
    """Record store unavailable or a write was rejected."""


class RecordNotFoundError(FieldSyncError):
    """No record exists for the requested identity."""

    def __init__(self, identity: object) -> None:
        self.identity = identity
        super().__init__(f"Observation not found: {identity}")


class NetworkUnavailableError(FieldSyncError):
    """Network fetch failed (connection refused, DNS, timeout)."""

    def __init__(self, message: str, *, url: str = "") -> None:
        self.url = url
        super().__init__(message)


class InstallError(FieldSyncError):
    """A cache generation could not be populated with its bootstrap manifest."""
