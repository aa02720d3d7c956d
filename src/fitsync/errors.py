"""Typed failures surfaced by the synchronisation core."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every failure raised to callers of the sync core."""


class AuthRequired(SyncError):
    """Raised when an operation needs an owner but no user is signed in."""

    def __init__(self, message: str = "User not authenticated") -> None:
        super().__init__(message)


class ValidationFailure(SyncError, ValueError):
    """Raised when caller-supplied arguments violate a precondition."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class NotFound(SyncError, LookupError):
    """Raised when an entity is absent from the remote store."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id!r} not found")


class AdapterFailure(SyncError):
    """Raised when a remote call fails after an optimistic write was applied."""

    __slots__ = ("entity_type", "operation")

    def __init__(self, entity_type: str, operation: str, message: str) -> None:
        self.entity_type = entity_type
        self.operation = operation
        super().__init__(f"{entity_type}.{operation} failed: {message}")


class ConfigurationError(SyncError, KeyError):
    """Raised when a required configuration entry is missing."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "configuration error"


__all__ = [
    "AdapterFailure",
    "AuthRequired",
    "ConfigurationError",
    "NotFound",
    "SyncError",
    "ValidationFailure",
]
