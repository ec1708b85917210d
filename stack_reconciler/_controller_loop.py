"""Caller-side reconcile loop: serialisation, requeue, and persistence."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from stack_reconciler._context import ReconcileContext
from stack_reconciler._errors import ReconcileInProgressError
from stack_reconciler._lifecycle import ReconcileDeps
from stack_reconciler._models import StackResource
from stack_reconciler._reconcile import ReconcileResult, reconcile
from stack_reconciler._status import record_status
from stack_reconciler._status_store import StatusStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


@dataclass(slots=True)
class StackReconcileLoop:
    """Drive reconcile attempts for a set of stacks.

    Attempts for one stack identity never overlap; distinct stacks may run
    on separate worker threads.

    Attributes
    ----------
    deps
        Collaborators passed to every attempt.
    store
        Status persistence.
    attempt_timeout
        Per-attempt deadline in seconds; unbounded when ``None``.
    sleep
        Called with the requested delay between requeued attempts.
    cancelled
        Set to abandon in-flight and future attempts.
    """

    deps: ReconcileDeps
    store: StatusStore
    attempt_timeout: float | None = None
    sleep: Callable[[float], None] = time.sleep
    cancelled: threading.Event = field(default_factory=threading.Event)
    _locks: dict[str, threading.Lock] = field(default_factory=dict, init=False, repr=False)
    _locks_guard: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    def _lock_for(self, identity: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(identity, threading.Lock())

    def _context(self) -> ReconcileContext:
        context = ReconcileContext.with_timeout(self.attempt_timeout)
        context.cancelled = self.cancelled
        return context

    def reconcile_once(self, resource: StackResource) -> ReconcileResult:
        """Run one attempt and persist its status when it settles.

        Raises
        ------
        ReconcileInProgressError
            When an attempt for the same stack is already running.
        ReconcileCancelledError
            When the attempt was cancelled; nothing is persisted.
        """
        identity = resource.identity
        lock = self._lock_for(identity)
        if not lock.acquire(blocking=False):
            msg = f"reconcile already in progress for {identity}"
            raise ReconcileInProgressError(msg)
        try:
            stored = self.store.get(identity)
            if stored.last_update is not None or stored.outputs:
                resource = dataclasses.replace(resource, status=stored)
            result = reconcile(resource, self.deps, self._context())
            if result.settled:
                self.store.update(identity, lambda _previous: result.status)
            return result
        finally:
            lock.release()

    def run_until_settled(
        self, resource: StackResource, max_attempts: int | None = None
    ) -> ReconcileResult:
        """Repeat attempts while a requeue is requested.

        Parameters
        ----------
        resource
            Stack to reconcile.
        max_attempts
            Upper bound on attempts; unbounded when ``None``.

        Returns
        -------
        ReconcileResult
            The settled result. When ``max_attempts`` runs out, the last
            outcome is recorded as failed and returned as settled.
        """
        if max_attempts is not None and max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)
        attempts = 0
        while True:
            attempts += 1
            result = self.reconcile_once(resource)
            if result.settled:
                logger.info(
                    "Stack %s settled after %d attempt(s): %s",
                    resource.identity,
                    attempts,
                    result.outcome.status.name,
                )
                return result
            if max_attempts is not None and attempts >= max_attempts:
                logger.warning(
                    "Stack %s still requeued after %d attempt(s); recording %s as failed",
                    resource.identity,
                    attempts,
                    result.outcome.status.name,
                )
                with self._lock_for(resource.identity):
                    status = self.store.update(
                        resource.identity,
                        lambda previous: record_status(previous, result.outcome),
                    )
                return ReconcileResult(
                    status=status, requeue_after=None, outcome=result.outcome
                )
            delay = result.requeue_after or 0.0
            logger.info("Stack %s: retrying in %ss", resource.identity, delay)
            self.sleep(delay)

    def run_all(
        self,
        resources: Iterable[StackResource],
        *,
        max_workers: int = DEFAULT_MAX_WORKERS,
        max_attempts: int | None = None,
    ) -> dict[str, ReconcileResult | Exception]:
        """Reconcile distinct stacks concurrently.

        Returns
        -------
        dict[str, ReconcileResult | Exception]
            Result, or the exception that ended the stack's run, per identity.
        """
        batch = list(resources)
        identities = [resource.identity for resource in batch]
        if len(set(identities)) != len(identities):
            msg = "run_all requires distinct stack identities"
            raise ValueError(msg)

        results: dict[str, ReconcileResult | Exception] = {}
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = {
                resource.identity: pool.submit(
                    self.run_until_settled, resource, max_attempts
                )
                for resource in batch
            }
            for identity, future in futures.items():
                try:
                    results[identity] = future.result()
                except Exception as exc:
                    logger.error("Stack %s: %s", identity, exc)
                    results[identity] = exc
        return results


__all__ = ["DEFAULT_MAX_WORKERS", "StackReconcileLoop"]
