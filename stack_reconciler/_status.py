"""Translate lifecycle outcomes into persisted stack status."""

from __future__ import annotations

from stack_reconciler._lifecycle import LifecycleOutcome
from stack_reconciler._models import (
    StackStatus,
    StackUpdateState,
    StackUpdateStateMessage,
)


def record_status(previous: StackStatus, outcome: LifecycleOutcome) -> StackStatus:
    """Return the status that reflects ``outcome``.

    ``lastSuccessfulCommit`` only moves on success; outputs are replaced by a
    successful update, cleared by a successful destroy, and kept otherwise.

    Parameters
    ----------
    previous
        Status recorded before the attempt.
    outcome
        Terminal outcome of the attempt.

    Returns
    -------
    StackStatus
        New status; ``previous`` is not modified.

    Examples
    --------
    >>> from stack_reconciler._lifecycle import LifecycleState
    >>> from stack_reconciler._models import StackUpdateStatus
    >>> prior = StackStatus(last_update=StackUpdateState(
    ...     StackUpdateStateMessage.SUCCEEDED, "abc", "abc"))
    >>> failed = LifecycleOutcome(StackUpdateStatus.FAILED, LifecycleState.CONFIG_APPLIED, "def")
    >>> update = record_status(prior, failed).last_update
    >>> (update.state.value, update.last_attempted_commit, update.last_successful_commit)
    ('failed', 'def', 'abc')
    """
    prior = previous.last_update
    prior_attempted = prior.last_attempted_commit if prior else ""
    prior_successful = prior.last_successful_commit if prior else ""

    if outcome.succeeded:
        state = StackUpdateStateMessage.SUCCEEDED
        successful = outcome.commit or prior_successful
    else:
        state = StackUpdateStateMessage.FAILED
        successful = prior_successful

    if outcome.succeeded and outcome.destroyed:
        outputs: dict[str, object] = {}
    elif outcome.succeeded and outcome.outputs is not None:
        outputs = dict(outcome.outputs)
    else:
        outputs = dict(previous.outputs)

    return StackStatus(
        outputs=outputs,
        last_update=StackUpdateState(
            state=state,
            last_attempted_commit=outcome.commit or prior_attempted,
            last_successful_commit=successful,
            permalink=outcome.permalink,
        ),
    )


__all__ = ["record_status"]
