"""Error taxonomy for the dispatch core.

Every error here is local to the operation that raised it. Callers either
retry with a fresh read (``VersionConflict``) or report the failure upward.
"""

from typing import Any


class DispatchError(Exception):
    """Base class for dispatch core errors."""


class InvalidInput(DispatchError):
    """Raised when a request carries malformed coordinates or timestamps."""


class VersionConflict(DispatchError):
    """Raised when a record's version no longer matches the caller's."""

    def __init__(
        self,
        kind: str,
        entity_id: Any,
        expected: int | None = None,
        actual: int | None = None,
    ):
        self.kind = kind
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{kind} {entity_id} version conflict "
            f"(expected {expected}, found {actual})"
        )


class InvalidTransition(DispatchError):
    """Raised when a status change is not reachable from the current status."""

    def __init__(self, current: str, requested: str, detail: str | None = None):
        self.current = current
        self.requested = requested
        message = f"Cannot move from {current} to {requested}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class NotFound(DispatchError):
    """Raised for an unknown driver or order identifier."""


class DriverNotFound(NotFound):
    """Raised when a driver cannot be found."""


class OrderNotFound(NotFound):
    """Raised when an order cannot be found."""


class AlreadyTerminal(DispatchError):
    """Raised when an order is already delivered or cancelled."""
