"""Cancellation and deadline handling for one reconcile attempt."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field

from stack_reconciler._errors import ReconcileCancelledError


@dataclass(slots=True)
class ReconcileContext:
    """Caller-supplied cancellation signal for a reconcile attempt.

    Attributes
    ----------
    deadline
        ``time.monotonic()`` value after which the attempt is abandoned.
    cancelled
        Event the caller sets to abandon the attempt early.

    Examples
    --------
    >>> ctx = ReconcileContext.with_timeout(60)
    >>> ctx.timeout(300) <= 60
    True
    >>> ReconcileContext().timeout(None) is None
    True
    """

    deadline: float | None = None
    cancelled: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def with_timeout(cls, seconds: float | None) -> ReconcileContext:
        """Create a context that expires ``seconds`` from now."""
        if seconds is None:
            return cls()
        return cls(deadline=time.monotonic() + seconds)

    def remaining(self) -> float | None:
        """Return the seconds left before the deadline, if any."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        """Return whether the attempt was cancelled or ran out of time."""
        remaining = self.remaining()
        return self.cancelled.is_set() or (remaining is not None and remaining <= 0)

    def check(self, step: str) -> None:
        """Raise :class:`ReconcileCancelledError` if the attempt must stop."""
        if self.cancelled.is_set():
            msg = f"reconcile cancelled before {step}"
            raise ReconcileCancelledError(msg)
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            msg = f"reconcile deadline exceeded before {step}"
            raise ReconcileCancelledError(msg)

    def timeout(self, cap: float | None) -> float | None:
        """Return the tighter of ``cap`` and the remaining time."""
        remaining = self.remaining()
        if remaining is None:
            return cap
        if cap is None:
            return remaining
        return min(cap, remaining)
