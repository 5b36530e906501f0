"""Exceptions raised while reconciling a single VirtualMachine.

The controller's error policy dispatches on these classes; none of them ever
escapes a worker.
"""
from __future__ import annotations


class FinkError(Exception):
    """Base class for every operator error."""


# Resource store --------------------------------------------------------------
class StoreError(FinkError):
    """The API server failed in a way that is worth retrying later."""


class ConflictError(StoreError):
    """A conditional write was rejected because the resourceVersion is stale."""


class ResourceNotFoundError(StoreError):
    """The resource no longer exists."""


# Runtime driver --------------------------------------------------------------
class DriverError(FinkError):
    """Base class for runtime driver failures."""

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class DriverTimeoutError(DriverError):
    """A driver call did not return in time; the operation may still complete."""


class DriverUnavailableError(DriverError):
    """The runtime could not be reached."""


class DriverOperationError(DriverError):
    """The runtime reported that the requested operation failed."""


class CorruptStateError(DriverError):
    """``query_state`` returned something that maps to no known power state."""


# Resource content ------------------------------------------------------------
class InvalidResourceError(FinkError):
    """The stored object cannot be interpreted (bad spec)."""


class UnsupportedTransitionError(FinkError):
    """No allowed path leads from the observed state to the desired one."""
