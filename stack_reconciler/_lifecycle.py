"""Lifecycle state machine for a single reconcile attempt.

One attempt walks a stack through::

    INITIALIZING -> DEPENDENCIES_INSTALLED -> CONFIG_APPLIED
        -> [REFRESHED] -> CONVERGED | DESTROYED

and ends in a :class:`LifecycleOutcome` carrying the terminal
:class:`StackUpdateStatus`. Failures from resolution, merging, or source
preparation end the attempt as ``FAILED`` with the error kind kept in the
message. Only a conflict on a stack that opts into retries asks the caller to
run the attempt again; the attempt itself never sleeps or loops.
"""

from __future__ import annotations

import enum
import logging
import os
from collections.abc import Callable, Mapping
from typing import TypeAlias
from dataclasses import dataclass, field, replace
from pathlib import Path

from stack_reconciler._config_merge import load_checked_in_config, merge_config
from stack_reconciler._context import ReconcileContext
from stack_reconciler._errors import (
    AccessDeniedError,
    EngineConflictError,
    EngineError,
    EnginePendingOperationsError,
    EngineStackNotFoundError,
    GitAuthError,
    ResourceNotFoundError,
    StackReconcileError,
)
from stack_reconciler._models import (
    StackOutputs,
    StackResource,
    StackSpec,
    StackUpdateStatus,
)
from stack_reconciler._pulumi import PulumiStackController, StackController
from stack_reconciler._resource_refs import resolve_resource_refs
from stack_reconciler._secret_store import SecretStore, bind_reconcile_context
from stack_reconciler._source_checkout import (
    SourceCheckout,
    SourceRequest,
    git_auth_env,
    git_auth_from_secret,
    prepare_source,
    validate_revision,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFLICT_REQUEUE_SECONDS = 30.0
ACCESS_TOKEN_KEY = "accessToken"

ControllerFactory: TypeAlias = Callable[
    [StackSpec, SecretStore, ReconcileContext], StackController
]


class LifecycleState(enum.StrEnum):
    """Furthest lifecycle state an attempt reached."""

    INITIALIZING = "Initializing"
    DEPENDENCIES_INSTALLED = "DependenciesInstalled"
    CONFIG_APPLIED = "ConfigApplied"
    REFRESHED = "Refreshed"
    CONVERGED = "Converged"
    DESTROYED = "Destroyed"


@dataclass(frozen=True, slots=True)
class LifecycleOutcome:
    """Terminal result of one attempt.

    Attributes
    ----------
    status
        Classification of the attempt.
    state
        Furthest state reached.
    commit
        Commit deployed or attempted; the requested revision when checkout
        never happened.
    permalink
        Engine link for the last update, refresh, or destroy run.
    outputs
        Stack outputs after a successful update; ``None`` otherwise.
    message
        ``"<kind>: <detail>"`` for failed attempts.
    destroyed
        Whether the attempt destroyed the stack.
    retry_requested
        Whether the caller should run a fresh attempt.
    """

    status: StackUpdateStatus
    state: LifecycleState
    commit: str = ""
    permalink: str = ""
    outputs: StackOutputs | None = None
    message: str = ""
    destroyed: bool = False
    retry_requested: bool = False

    @property
    def succeeded(self) -> bool:
        """Return whether the attempt converged successfully."""
        return self.status is StackUpdateStatus.SUCCEEDED


@dataclass(frozen=True, slots=True)
class ReconcileDeps:
    """Collaborators of a reconcile attempt.

    Attributes
    ----------
    secrets
        Backend for secret and config map lookups.
    workspace_root
        Directory under which each stack's checkout is prepared.
    controller_factory
        Builds a fresh engine controller per attempt.
    environ
        Environment for ``EnvRef`` resolution; the process environment when
        ``None``.
    conflict_requeue_seconds
        Delay requested after a retryable conflict.
    """

    secrets: SecretStore
    workspace_root: Path
    controller_factory: ControllerFactory = PulumiStackController
    environ: Mapping[str, str] | None = field(default=None, repr=False)
    conflict_requeue_seconds: float = DEFAULT_CONFLICT_REQUEUE_SECONDS

    def resolved_environ(self) -> Mapping[str, str]:
        """Return the environment attempts resolve against."""
        return os.environ if self.environ is None else self.environ


@dataclass(slots=True)
class _Attempt:
    """Mutable progress of the attempt in flight."""

    state: LifecycleState = LifecycleState.INITIALIZING
    commit: str = ""
    permalink: str = ""

    def advance(self, state: LifecycleState, stack: str) -> None:
        logger.info("Stack %s: %s -> %s", stack, self.state, state)
        self.state = state

    def note_permalink(self, permalink: str | None) -> None:
        if permalink:
            self.permalink = permalink


def _classify(exc: StackReconcileError) -> StackUpdateStatus:
    """Map an attempt-ending error to its terminal status.

    Examples
    --------
    >>> _classify(EngineConflictError("[409] Conflict"))
    <StackUpdateStatus.CONFLICT: 2>
    >>> from stack_reconciler._errors import ResourceNotFoundError
    >>> _classify(ResourceNotFoundError("secret default/x not found"))
    <StackUpdateStatus.FAILED: 1>
    """
    match exc:
        case EngineConflictError():
            return StackUpdateStatus.CONFLICT
        case EnginePendingOperationsError():
            return StackUpdateStatus.PENDING_OPERATIONS
        case EngineStackNotFoundError():
            return StackUpdateStatus.NOT_FOUND
        case _:
            return StackUpdateStatus.FAILED


def _populate_environment(
    controller: StackController,
    resource: StackResource,
    deps: ReconcileDeps,
) -> None:
    """Load every environment source the stack names into the run environment."""
    spec = resource.spec
    environ = deps.resolved_environ()
    controller.set_envs(spec.envs, resource.namespace)
    controller.set_secret_envs(spec.secret_envs, resource.namespace)
    for name, value in resolve_resource_refs(
        spec.env_refs, secrets=deps.secrets, environ=environ
    ).items():
        controller.add_env(name, value, secret=True)
    if spec.access_token_secret:
        data = deps.secrets.get_secret(resource.namespace, spec.access_token_secret)
        token = data.get(ACCESS_TOKEN_KEY)
        if not token:
            msg = (
                f"key {ACCESS_TOKEN_KEY!r} not found in secret "
                f"{resource.namespace}/{spec.access_token_secret}"
            )
            raise ResourceNotFoundError(msg)
        controller.add_env("PULUMI_ACCESS_TOKEN", token, secret=True)
    if spec.backend:
        controller.add_env("PULUMI_BACKEND_URL", spec.backend)


def _checkout_source(
    resource: StackResource,
    deps: ReconcileDeps,
    context: ReconcileContext,
) -> SourceCheckout:
    spec = resource.spec
    auth = None
    if spec.git_auth_secret:
        try:
            data = deps.secrets.get_secret(resource.namespace, spec.git_auth_secret)
        except (ResourceNotFoundError, AccessDeniedError) as exc:
            msg = f"git auth secret unavailable: {exc.describe()}"
            raise GitAuthError(msg) from exc
        auth = git_auth_from_secret(data)
    request = SourceRequest(
        repo_url=spec.project_repo,
        branch=spec.branch,
        commit=spec.commit,
        repo_dir=spec.repo_dir,
    )
    workdir = deps.workspace_root / resource.namespace / resource.name
    with git_auth_env(auth, deps.workspace_root / ".credentials") as auth_env:
        return prepare_source(request, workdir, auth_env=auth_env, context=context)


def _converge(
    controller: StackController,
    resource: StackResource,
    deps: ReconcileDeps,
    context: ReconcileContext,
    attempt: _Attempt,
) -> LifecycleOutcome:
    spec = resource.spec
    stack = spec.stack
    destroying = resource.deleting and spec.destroy_on_finalize

    context.check("environment population")
    _populate_environment(controller, resource, deps)

    context.check("source checkout")
    checkout = _checkout_source(resource, deps, context)
    attempt.commit = checkout.commit

    context.check("dependency install")
    controller.install_project_dependencies(checkout)
    attempt.advance(LifecycleState.DEPENDENCIES_INSTALLED, stack)

    context.check("config apply")
    environ = deps.resolved_environ()
    merged = merge_config(
        load_checked_in_config(checkout.project_dir, spec.stack_name),
        config=spec.config,
        secrets=spec.secrets,
        resolved_config=resolve_resource_refs(
            spec.config_refs, secrets=deps.secrets, environ=environ
        ),
        resolved_secrets=resolve_resource_refs(
            spec.secret_refs, secrets=deps.secrets, environ=environ
        ),
    )
    controller.update_config(merged, spec.secrets_provider)
    attempt.advance(LifecycleState.CONFIG_APPLIED, stack)

    if destroying:
        context.check("destroy")
        attempt.note_permalink(controller.destroy_stack())
        attempt.advance(LifecycleState.DESTROYED, stack)
        return LifecycleOutcome(
            status=StackUpdateStatus.SUCCEEDED,
            state=attempt.state,
            commit=attempt.commit,
            permalink=attempt.permalink,
            destroyed=True,
        )

    if spec.refresh:
        context.check("refresh")
        attempt.note_permalink(controller.refresh_stack(spec.expect_no_refresh_changes))
        attempt.advance(LifecycleState.REFRESHED, stack)
    else:
        logger.debug("Stack %s: refresh not requested", stack)

    context.check("update")
    attempt.note_permalink(controller.update_stack())
    outputs = controller.get_stack_outputs()
    attempt.advance(LifecycleState.CONVERGED, stack)
    return LifecycleOutcome(
        status=StackUpdateStatus.SUCCEEDED,
        state=attempt.state,
        commit=attempt.commit,
        permalink=attempt.permalink,
        outputs=outputs,
    )


def run_attempt(
    resource: StackResource,
    deps: ReconcileDeps,
    context: ReconcileContext | None = None,
) -> LifecycleOutcome:
    """Run one reconcile attempt for ``resource``.

    Parameters
    ----------
    resource
        Stack to reconcile, including its deletion flag.
    deps
        Secret backend, workspace, and controller factory.
    context
        Deadline and cancellation signal; unbounded when omitted.

    Returns
    -------
    LifecycleOutcome
        Terminal classification of the attempt.

    Raises
    ------
    ReconcileCancelledError
        When the attempt was cancelled or ran past its deadline.
    """
    ctx = context or ReconcileContext()
    deps = replace(deps, secrets=bind_reconcile_context(deps.secrets, ctx))
    spec = resource.spec
    attempt = _Attempt(commit=spec.requested_revision)

    try:
        validate_revision(SourceRequest(spec.project_repo, spec.branch, spec.commit))
        if resource.deleting and not spec.destroy_on_finalize:
            logger.info("Stack %s: deleting without destroy; nothing to do", spec.stack)
            return LifecycleOutcome(
                status=StackUpdateStatus.SUCCEEDED,
                state=LifecycleState.CONVERGED,
                commit=attempt.commit,
            )
        controller = deps.controller_factory(spec, deps.secrets, ctx)
        return _converge(controller, resource, deps, ctx, attempt)
    except StackReconcileError as exc:
        status = _classify(exc)
        if isinstance(exc, EngineError):
            attempt.note_permalink(exc.permalink)
        retry = status.retryable and spec.retry_on_update_conflict
        log = logger.warning if status.retryable else logger.error
        log(
            "Stack %s: attempt ended %s in state %s: %s",
            spec.stack,
            status.name,
            attempt.state,
            exc.describe(),
        )
        return LifecycleOutcome(
            status=status,
            state=attempt.state,
            commit=attempt.commit,
            permalink=attempt.permalink,
            message=exc.describe(),
            retry_requested=retry,
        )


__all__ = [
    "ControllerFactory",
    "LifecycleOutcome",
    "LifecycleState",
    "ReconcileDeps",
    "run_attempt",
]
