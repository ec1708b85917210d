"""In-memory :class:`StackController` for exercising the lifecycle without an engine.

An :class:`InMemoryEngine` holds the scripted behaviour and the call log
shared by every attempt. Calling it with the factory arguments returns a fresh
:class:`InMemoryStackController`, so it plugs straight into
``ReconcileDeps.controller_factory``.

Examples
--------
>>> from stack_reconciler._models import StackUpdateStatus
>>> engine = InMemoryEngine(update_outcomes=[StackUpdateStatus.CONFLICT])
>>> engine.next_update_outcome()
<StackUpdateStatus.CONFLICT: 2>
>>> engine.next_update_outcome()
<StackUpdateStatus.SUCCEEDED: 0>
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from stack_reconciler._config_merge import MergedConfig
from stack_reconciler._context import ReconcileContext
from stack_reconciler._errors import (
    EngineConflictError,
    EngineFailedError,
    EnginePendingOperationsError,
    EngineStackNotFoundError,
    RefreshDriftError,
    StackReconcileError,
)
from stack_reconciler._models import StackOutputs, StackSpec, StackUpdateStatus
from stack_reconciler._secret_store import SecretStore
from stack_reconciler._source_checkout import SourceCheckout

_UPDATE_ERRORS = {
    StackUpdateStatus.FAILED: EngineFailedError,
    StackUpdateStatus.CONFLICT: EngineConflictError,
    StackUpdateStatus.PENDING_OPERATIONS: EnginePendingOperationsError,
    StackUpdateStatus.NOT_FOUND: EngineStackNotFoundError,
}


@dataclass(slots=True)
class InMemoryEngine:
    """Scripted engine state shared across attempts.

    Attributes
    ----------
    update_outcomes
        Statuses returned by successive updates; ``SUCCEEDED`` once exhausted.
    outputs
        Outputs reported after a successful update.
    refresh_has_changes
        Whether a refresh reports changes.
    install_error
        Error raised by dependency installation, if any.
    calls
        Ordered log of ``"<stack>:<operation>"`` entries.
    controllers
        Every controller handed out, one per attempt.
    """

    update_outcomes: Iterable[StackUpdateStatus] = ()
    outputs: dict[str, Any] = field(default_factory=dict)
    refresh_has_changes: bool = False
    install_error: StackReconcileError | None = None
    permalink_base: str = "https://app.pulumi.com/acme"
    calls: list[str] = field(default_factory=list)
    controllers: list[InMemoryStackController] = field(default_factory=list)
    _pending: deque[StackUpdateStatus] = field(init=False, repr=False)
    _serial: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        self._pending = deque(self.update_outcomes)

    def __call__(
        self,
        spec: StackSpec,
        secrets: SecretStore,
        context: ReconcileContext | None = None,
    ) -> InMemoryStackController:
        controller = InMemoryStackController(engine=self, spec=spec, secrets=secrets)
        self.controllers.append(controller)
        return controller

    def script_updates(self, *statuses: StackUpdateStatus) -> None:
        """Queue statuses for the next updates."""
        self._pending.extend(statuses)

    def next_update_outcome(self) -> StackUpdateStatus:
        """Pop the next scripted update status."""
        return self._pending.popleft() if self._pending else StackUpdateStatus.SUCCEEDED

    def next_permalink(self, stack: str) -> str:
        """Return a fresh permalink for ``stack``."""
        self._serial += 1
        return f"{self.permalink_base}/{stack}/updates/{self._serial}"

    def operations(self) -> list[str]:
        """Return the logged operation names without stack prefixes."""
        return [entry.split(":", 1)[1] for entry in self.calls]


@dataclass(slots=True)
class InMemoryStackController:
    """Controller that records calls against an :class:`InMemoryEngine`."""

    engine: InMemoryEngine
    spec: StackSpec
    secrets: SecretStore
    env: dict[str, str] = field(default_factory=dict)
    applied_config: MergedConfig | None = None
    secrets_provider: str | None = None
    checkout: SourceCheckout | None = None

    def _log(self, operation: str) -> None:
        self.engine.calls.append(f"{self.spec.stack}:{operation}")

    def set_envs(self, config_map_names: Sequence[str], namespace: str) -> None:
        for name in config_map_names:
            self.env.update(self.secrets.get_config_map(namespace, name))

    def set_secret_envs(self, secret_names: Sequence[str], namespace: str) -> None:
        for name in secret_names:
            self.env.update(self.secrets.get_secret(namespace, name))

    def add_env(self, name: str, value: str, *, secret: bool = False) -> None:
        self.env[name] = value

    def install_project_dependencies(self, checkout: SourceCheckout) -> None:
        self._log("install")
        self.checkout = checkout
        if self.engine.install_error is not None:
            raise self.engine.install_error

    def update_config(self, config: MergedConfig, secrets_provider: str | None) -> None:
        self._log("config")
        self.applied_config = config
        self.secrets_provider = secrets_provider

    def refresh_stack(self, expect_no_changes: bool) -> str | None:
        self._log("refresh")
        if expect_no_changes and self.engine.refresh_has_changes:
            msg = "no changes were expected but changes occurred"
            raise RefreshDriftError(msg)
        return self.engine.next_permalink(self.spec.stack)

    def update_stack(self) -> str | None:
        self._log("update")
        permalink = self.engine.next_permalink(self.spec.stack)
        status = self.engine.next_update_outcome()
        if status is StackUpdateStatus.SUCCEEDED:
            return permalink
        error = _UPDATE_ERRORS[status]
        raise error(f"scripted {status.name.lower()}", permalink=permalink)

    def get_stack_outputs(self) -> StackOutputs:
        self._log("outputs")
        return dict(self.engine.outputs)

    def destroy_stack(self) -> str | None:
        self._log("destroy")
        return self.engine.next_permalink(self.spec.stack)
