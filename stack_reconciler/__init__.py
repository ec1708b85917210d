"""Reconcile declaratively specified Pulumi stacks."""

from __future__ import annotations

from stack_reconciler._controller_loop import StackReconcileLoop
from stack_reconciler._lifecycle import (
    LifecycleOutcome,
    LifecycleState,
    ReconcileDeps,
    run_attempt,
)
from stack_reconciler._models import (
    StackResource,
    StackSpec,
    StackStatus,
    StackUpdateStatus,
)
from stack_reconciler._reconcile import ReconcileResult, reconcile

__all__ = [
    "LifecycleOutcome",
    "LifecycleState",
    "ReconcileDeps",
    "ReconcileResult",
    "StackReconcileLoop",
    "StackResource",
    "StackSpec",
    "StackStatus",
    "StackUpdateStatus",
    "reconcile",
    "run_attempt",
]
