"""Exception types for kryten-slots.

None of these escape the ledger or the spin pipeline: they are raised by the
store layer and the ledger internals, caught at the call site and answered
with a safe default.
"""

from __future__ import annotations


class SlotsError(Exception):
    """Base class for all kryten-slots errors."""


class TransientStoreError(SlotsError):
    """A get/put/delete/list against a backing store failed."""

    def __init__(self, operation: str, key: str, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.key = key
        self.cause = cause
        super().__init__(f"{operation} failed for {key!r}: {cause}")


class VerificationMismatch(SlotsError):
    """A write was not visible with the expected shape on re-read."""


class MalformedStoredState(SlotsError):
    """Stored value had the wrong shape or non-positive fields."""


class ConditionalUpdateRejected(SlotsError):
    """An increment-if-under-cap statement found the cap already reached."""
