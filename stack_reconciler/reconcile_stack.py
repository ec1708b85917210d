#!/usr/bin/env -S uv run python
# /// script
# requires-python = ">=3.13"
# dependencies = ["cyclopts>=2.9", "plumbum", "pyyaml"]
# ///
"""Reconcile Pulumi stacks declared in YAML manifests.

This command:
- loads ``pulumi.com/v1alpha1`` Stack manifests;
- reconciles each stack (checkout, dependencies, config, refresh, update or
  destroy) on a worker pool, retrying conflicts when a stack opts in; and
- persists each stack's status as JSON under the state directory.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

from cyclopts import App, Parameter

from stack_reconciler._controller_loop import DEFAULT_MAX_WORKERS, StackReconcileLoop
from stack_reconciler._errors import StackReconcileError
from stack_reconciler._input_resolution import (
    InputResolution,
    parse_positive_int,
    parse_seconds,
    resolve_input,
)
from stack_reconciler._lifecycle import ReconcileDeps
from stack_reconciler._manifests import build_registry, load_manifests
from stack_reconciler._models import StackResource
from stack_reconciler._reconcile import ReconcileResult
from stack_reconciler._secret_store import (
    KubectlSecretStore,
    MappingSecretStore,
    SecretStore,
)
from stack_reconciler._status_store import StatusStore

app = App(help="Reconcile Pulumi stacks declared in YAML manifests.")
logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path(".stack-state")
DEFAULT_WORKSPACE_DIR = Path(".stack-workspaces")


@dataclass(frozen=True, slots=True)
class ReconcileInputs:
    """Resolved inputs for the ``reconcile`` command."""

    state_dir: Path
    workspace_dir: Path
    secrets_file: Path | None
    kube_context: str | None
    max_workers: int
    max_attempts: int | None
    attempt_timeout: float | None


@dataclass(frozen=True, slots=True)
class RawReconcileInputs:
    """Raw ``reconcile`` inputs from the CLI."""

    state_dir: Path | None = None
    workspace_dir: Path | None = None
    secrets_file: Path | None = None
    kube_context: str | None = None
    max_workers: str | None = None
    max_attempts: str | None = None
    attempt_timeout: str | None = None


def _as_path(value: str | Path | None) -> Path | None:
    if value is None:
        return None
    return value if isinstance(value, Path) else Path(value)


def resolve_reconcile_inputs(raw: RawReconcileInputs) -> ReconcileInputs:
    """Resolve ``reconcile`` inputs from the CLI, environment, and defaults."""
    state_dir = resolve_input(
        raw.state_dir,
        InputResolution(env_key="STACK_STATE_DIR", default=DEFAULT_STATE_DIR, as_path=True),
    )
    workspace_dir = resolve_input(
        raw.workspace_dir,
        InputResolution(
            env_key="STACK_WORKSPACE_DIR", default=DEFAULT_WORKSPACE_DIR, as_path=True
        ),
    )
    secrets_file = resolve_input(
        raw.secrets_file, InputResolution(env_key="STACK_SECRETS_FILE", as_path=True)
    )
    kube_context = resolve_input(raw.kube_context, InputResolution(env_key="KUBECTL_CONTEXT"))
    max_workers = resolve_input(raw.max_workers, InputResolution(env_key="STACK_MAX_WORKERS"))
    max_attempts = resolve_input(
        raw.max_attempts, InputResolution(env_key="STACK_MAX_ATTEMPTS")
    )
    attempt_timeout = resolve_input(
        raw.attempt_timeout, InputResolution(env_key="STACK_ATTEMPT_TIMEOUT")
    )

    return ReconcileInputs(
        state_dir=_as_path(state_dir) or DEFAULT_STATE_DIR,
        workspace_dir=_as_path(workspace_dir) or DEFAULT_WORKSPACE_DIR,
        secrets_file=_as_path(secrets_file),
        kube_context=str(kube_context) if kube_context else None,
        max_workers=parse_positive_int(
            str(max_workers) if max_workers else None, "STACK_MAX_WORKERS"
        )
        or DEFAULT_MAX_WORKERS,
        max_attempts=parse_positive_int(
            str(max_attempts) if max_attempts else None, "STACK_MAX_ATTEMPTS"
        ),
        attempt_timeout=parse_seconds(
            str(attempt_timeout) if attempt_timeout else None, "STACK_ATTEMPT_TIMEOUT"
        ),
    )


def configure_logging(level: str | None) -> None:
    """Configure root logging from ``LOG_LEVEL`` (default ``INFO``)."""
    resolved = str(resolve_input(level, InputResolution(env_key="LOG_LEVEL", default="INFO")))
    numeric = logging.getLevelName(resolved.upper())
    if not isinstance(numeric, int):
        msg = f"Unknown log level {resolved!r}"
        raise SystemExit(msg)
    logging.basicConfig(level=numeric, format="%(levelname)s %(name)s: %(message)s")


def build_secret_store(inputs: ReconcileInputs) -> SecretStore:
    """Use the secrets file when given, otherwise read secrets through kubectl."""
    if inputs.secrets_file is not None:
        return MappingSecretStore.from_yaml_file(inputs.secrets_file)
    return KubectlSecretStore(kube_context=inputs.kube_context)


def _load_all(manifests: tuple[Path, ...]) -> list[StackResource]:
    registry = build_registry()
    resources: list[StackResource] = []
    seen: set[str] = set()
    for path in manifests:
        for resource in load_manifests(path, registry):
            if resource.identity in seen:
                msg = f"stack {resource.identity} is declared more than once"
                raise StackReconcileError(msg)
            seen.add(resource.identity)
            resources.append(resource)
    return resources


def summarise(identity: str, result: ReconcileResult | Exception) -> bool:
    """Print one stack's result; return whether it succeeded."""
    if isinstance(result, Exception):
        print(f"{identity}: error: {result}", file=sys.stderr)
        return False
    outcome = result.outcome
    line = f"{identity}: {outcome.status.name.lower()} at {outcome.commit or 'unknown commit'}"
    if outcome.permalink:
        line += f" ({outcome.permalink})"
    if outcome.destroyed:
        line += " [destroyed]"
    if not result.settled:
        line += f" [requeue after {result.requeue_after}s]"
    if outcome.succeeded and result.settled:
        print(line)
        return True
    print(f"{line}: {outcome.message}" if outcome.message else line, file=sys.stderr)
    return False


@app.command(name="reconcile")
def reconcile_command(
    *manifests: Path,
    state_dir: Annotated[Path | None, Parameter()] = None,
    workspace_dir: Annotated[Path | None, Parameter()] = None,
    secrets_file: Annotated[Path | None, Parameter()] = None,
    kube_context: Annotated[str | None, Parameter()] = None,
    max_workers: Annotated[str | None, Parameter()] = None,
    max_attempts: Annotated[str | None, Parameter()] = None,
    attempt_timeout: Annotated[str | None, Parameter()] = None,
    log_level: Annotated[str | None, Parameter()] = None,
) -> int:
    """Reconcile every stack declared in the given manifest files.

    Returns 0 when every stack settled successfully, 1 otherwise.
    """
    configure_logging(log_level)
    if not manifests:
        print("error: at least one manifest is required", file=sys.stderr)
        return 2

    inputs = resolve_reconcile_inputs(
        RawReconcileInputs(
            state_dir=state_dir,
            workspace_dir=workspace_dir,
            secrets_file=secrets_file,
            kube_context=kube_context,
            max_workers=max_workers,
            max_attempts=max_attempts,
            attempt_timeout=attempt_timeout,
        )
    )
    try:
        resources = _load_all(manifests)
        secrets = build_secret_store(inputs)
    except StackReconcileError as exc:
        print(f"error: {exc.describe()}", file=sys.stderr)
        return 1

    print(f"Reconciling {len(resources)} stack(s)...")
    loop = StackReconcileLoop(
        deps=ReconcileDeps(secrets=secrets, workspace_root=inputs.workspace_dir.resolve()),
        store=StatusStore(inputs.state_dir),
        attempt_timeout=inputs.attempt_timeout,
    )
    results = loop.run_all(
        resources,
        max_workers=inputs.max_workers,
        max_attempts=inputs.max_attempts,
    )
    ok = [summarise(identity, results[identity]) for identity in sorted(results)]
    print(f"\n{sum(ok)}/{len(ok)} stack(s) reconciled.")
    return 0 if all(ok) else 1


@app.command(name="status")
def status_command(
    identity: str,
    *,
    state_dir: Annotated[Path | None, Parameter()] = None,
) -> int:
    """Print the recorded status of ``namespace/name`` as JSON."""
    resolved = _as_path(
        resolve_input(
            state_dir,
            InputResolution(
                env_key="STACK_STATE_DIR", default=DEFAULT_STATE_DIR, as_path=True
            ),
        )
    )
    store = StatusStore(resolved or DEFAULT_STATE_DIR)
    try:
        status = store.get(identity)
    except StackReconcileError as exc:
        print(f"error: {exc.describe()}", file=sys.stderr)
        return 1
    if status.last_update is None:
        print(f"error: no status recorded for {identity}", file=sys.stderr)
        return 1
    print(json.dumps(status.to_mapping(), indent=2, sort_keys=True))
    return 0


def run() -> None:
    """Console script entry point."""
    raise SystemExit(app())


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    run()
