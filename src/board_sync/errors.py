"""
Error taxonomy for the board synchronization client.

FetchError and SubscriptionError describe degraded views (no data, no live
updates). MutationError is normally delivered through failure notices after
a rollback rather than raised. ConflictError is raised for duplicate invites
so callers can show a specific message.
"""

from typing import Any, Dict, Optional


class BoardSyncError(Exception):
    """Base class for all board sync failures."""

    def __init__(self, message: str, *, code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class FetchError(BoardSyncError):
    """Initial load of board data failed."""


class MutationError(BoardSyncError):
    """A create/update/delete was rejected or never confirmed by the store."""


class SubscriptionError(BoardSyncError):
    """A change-feed channel could not be established."""


class ConflictError(BoardSyncError):
    """Write collided with an existing row (e.g. user already invited)."""
