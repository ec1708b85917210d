"""Pure reconcile entry point consumed by the controller loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from stack_reconciler._context import ReconcileContext
from stack_reconciler._lifecycle import LifecycleOutcome, ReconcileDeps, run_attempt
from stack_reconciler._models import StackResource, StackStatus
from stack_reconciler._status import record_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """Status to persist and whether the caller should run again.

    Attributes
    ----------
    status
        Status to store for the stack.
    requeue_after
        Seconds to wait before the next attempt; ``None`` when settled.
    outcome
        Lifecycle outcome that produced the result.
    """

    status: StackStatus
    requeue_after: float | None
    outcome: LifecycleOutcome

    @property
    def settled(self) -> bool:
        """Return whether no further attempt was requested."""
        return self.requeue_after is None


def reconcile(
    resource: StackResource,
    deps: ReconcileDeps,
    context: ReconcileContext | None = None,
) -> ReconcileResult:
    """Run one attempt for ``resource`` and compute its new status.

    When the attempt asks for a retry the previous status is returned
    unchanged, so status only moves on terminal outcomes.

    Raises
    ------
    ReconcileCancelledError
        When the attempt was cancelled; no status is produced.
    """
    outcome = run_attempt(resource, deps, context)
    if outcome.retry_requested:
        logger.info(
            "Stack %s: requeue in %ss after %s",
            resource.identity,
            deps.conflict_requeue_seconds,
            outcome.status.name,
        )
        return ReconcileResult(
            status=resource.status,
            requeue_after=deps.conflict_requeue_seconds,
            outcome=outcome,
        )
    return ReconcileResult(
        status=record_status(resource.status, outcome),
        requeue_after=None,
        outcome=outcome,
    )


__all__ = ["ReconcileResult", "reconcile"]
