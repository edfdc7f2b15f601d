"""Exception hierarchy shared by the store, provider and reconciler.

TransientError and its subclasses are retried with backoff. PermanentError,
NotFoundError and the resolved dependency states end up in the Accepted
condition instead. ConflictError never leaves the reconciler.
"""

from __future__ import annotations

from typing import List, Tuple


class ControllerError(Exception):
    """Base class for controller errors."""


class TransientError(ControllerError):
    """Network, timeout or rate-limit failure. Retrying may succeed."""


class PermanentError(ControllerError):
    """The provider rejected the request as invalid."""


class NotFoundError(ControllerError):
    """The referenced object does not exist."""


class ConflictError(ControllerError):
    """A write lost an optimistic concurrency race."""


class DeadlineExceededError(TransientError):
    """The reconcile deadline elapsed before the work finished."""


class SyncIncompleteError(ControllerError):
    """Endpoint synchronization finished with one or more failed calls."""

    def __init__(self, failures: List[Tuple[str, Exception]]):
        self.failures = failures
        names = ", ".join(name for name, _ in failures)
        super().__init__(f"{len(failures)} endpoint operation(s) failed: {names}")

    @property
    def permanent(self) -> bool:
        return bool(self.failures) and all(
            isinstance(err, PermanentError) for _, err in self.failures
        )
