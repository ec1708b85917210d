"""Engine adapter backed by the Pulumi CLI.

:class:`StackController` is the capability interface the lifecycle drives;
:class:`PulumiStackController` implements it by running ``pulumi`` (and the
project's package manager) through :func:`run_command`. Engine failures are
classified into the :mod:`stack_reconciler._errors` taxonomy from the CLI's
error text, with every known secret value redacted first.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol

import yaml

from stack_reconciler._commands import CommandContext, CommandFailedError, run_command
from stack_reconciler._config_merge import MergedConfig
from stack_reconciler._context import ReconcileContext
from stack_reconciler._errors import (
    ConfigError,
    DependencyInstallError,
    EngineConflictError,
    EngineError,
    EngineFailedError,
    EnginePendingOperationsError,
    EngineStackNotFoundError,
    RefreshDriftError,
)
from stack_reconciler._models import StackOutputs, StackSpec
from stack_reconciler._secret_store import SecretStore
from stack_reconciler._source_checkout import PROJECT_DESCRIPTORS, SourceCheckout

logger = logging.getLogger(__name__)

ENGINE_TIMEOUT_SECONDS = 3600
INSTALL_TIMEOUT_SECONDS = 1200

_PERMALINK_PATTERN = re.compile(r"View (?:Live|in Browser)[^:]*:\s*(\S+)")
_CONFLICT_PATTERN = re.compile(
    r"\[409\] Conflict|Another update is currently in progress|currently locked",
    re.IGNORECASE,
)
_PENDING_PATTERN = re.compile(r"pending operations", re.IGNORECASE)
_NOT_FOUND_PATTERN = re.compile(r"\[404\]|no stack named", re.IGNORECASE)
_DRIFT_PATTERN = re.compile(r"no changes were expected but changes occurred", re.IGNORECASE)


class StackController(Protocol):
    """Workspace operations the lifecycle needs from the provisioning engine."""

    def set_envs(self, config_map_names: Sequence[str], namespace: str) -> None:
        """Add every entry of the named config maps to the run environment."""
        ...

    def set_secret_envs(self, secret_names: Sequence[str], namespace: str) -> None:
        """Add every entry of the named secrets to the run environment."""
        ...

    def add_env(self, name: str, value: str, *, secret: bool = False) -> None:
        """Add one variable to the run environment."""
        ...

    def install_project_dependencies(self, checkout: SourceCheckout) -> None:
        """Bind the workspace and install the project's package dependencies."""
        ...

    def update_config(self, config: MergedConfig, secrets_provider: str | None) -> None:
        """Select or create the stack and write the configuration overrides."""
        ...

    def refresh_stack(self, expect_no_changes: bool) -> str | None:
        """Refresh engine state; return the permalink when one is reported."""
        ...

    def update_stack(self) -> str | None:
        """Deploy the stack; return the permalink when one is reported."""
        ...

    def get_stack_outputs(self) -> StackOutputs:
        """Return the stack outputs with secret values masked."""
        ...

    def destroy_stack(self) -> str | None:
        """Destroy the stack's resources and remove the stack."""
        ...


def parse_permalink(text: str) -> str | None:
    """Extract the update permalink from engine output.

    Examples
    --------
    >>> parse_permalink("View Live: https://app.pulumi.com/acme/p/dev/updates/3")
    'https://app.pulumi.com/acme/p/dev/updates/3'
    >>> parse_permalink("no link here") is None
    True
    """
    match = _PERMALINK_PATTERN.search(text)
    return match.group(1) if match else None


def classify_engine_error(message: str, *, permalink: str | None = None) -> EngineError:
    """Map engine error text onto the engine error taxonomy.

    Examples
    --------
    >>> type(classify_engine_error("error: [409] Conflict: Another update is currently in progress."))
    <class 'stack_reconciler._errors.EngineConflictError'>
    >>> classify_engine_error("error: no stack named 'dev' found").kind
    'NotFound'
    """
    if _CONFLICT_PATTERN.search(message):
        return EngineConflictError(message, permalink=permalink)
    if _PENDING_PATTERN.search(message):
        return EnginePendingOperationsError(message, permalink=permalink)
    if _NOT_FOUND_PATTERN.search(message):
        return EngineStackNotFoundError(message, permalink=permalink)
    return EngineFailedError(message, permalink=permalink)


def project_runtime(project_dir: Path) -> str:
    """Return the runtime name declared in the project descriptor.

    The ``runtime`` key is either a string or a mapping with a ``name`` key.
    """
    for descriptor in PROJECT_DESCRIPTORS:
        path = project_dir / descriptor
        if path.is_file():
            break
    else:
        msg = f"No project descriptor in {project_dir}"
        raise ConfigError(msg)
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        msg = f"Failed to parse {path.name}: {exc}"
        raise ConfigError(msg) from exc
    runtime = payload.get("runtime") if isinstance(payload, dict) else None
    if isinstance(runtime, dict):
        runtime = runtime.get("name")
    if not isinstance(runtime, str) or not runtime:
        msg = f"{path.name} must declare a runtime"
        raise ConfigError(msg)
    return runtime


class PulumiStackController:
    """Drive one stack through the ``pulumi`` CLI.

    Each instance serves a single reconcile attempt. The run environment
    starts from ``environ`` and grows through the ``set_*``/``add_env``
    calls; the process environment itself is never modified.

    Parameters
    ----------
    spec
        Stack being reconciled.
    secrets
        Backend for config map and secret environment sources.
    context
        Deadline and cancellation signal for the attempt.
    environ
        Base environment for engine commands (defaults to ``os.environ``).
    """

    def __init__(
        self,
        spec: StackSpec,
        secrets: SecretStore,
        context: ReconcileContext | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._spec = spec
        self._secrets = secrets
        self._context = context or ReconcileContext()
        self._env: dict[str, str] = dict(os.environ if environ is None else environ)
        self._env.setdefault("PULUMI_SKIP_UPDATE_CHECK", "true")
        self._sensitive: set[str] = set(spec.secrets.values())
        self._project_dir: Path | None = None

    @property
    def env(self) -> dict[str, str]:
        """Return a copy of the run environment."""
        return dict(self._env)

    def set_envs(self, config_map_names: Sequence[str], namespace: str) -> None:
        for name in config_map_names:
            data = self._secrets.get_config_map(namespace, name)
            self._env.update(data)
            logger.debug("Loaded %d env entries from config map %s/%s", len(data), namespace, name)

    def set_secret_envs(self, secret_names: Sequence[str], namespace: str) -> None:
        for name in secret_names:
            data = self._secrets.get_secret(namespace, name)
            self._env.update(data)
            self._sensitive.update(value for value in data.values() if value)
            logger.debug("Loaded %d env entries from secret %s/%s", len(data), namespace, name)

    def add_env(self, name: str, value: str, *, secret: bool = False) -> None:
        self._env[name] = value
        if secret and value:
            self._sensitive.add(value)

    def _workspace(self) -> Path:
        if self._project_dir is None:
            msg = "install_project_dependencies must run before engine operations"
            raise RuntimeError(msg)
        return self._project_dir

    def _redact(self, text: str) -> str:
        for value in sorted(self._sensitive, key=len, reverse=True):
            if len(value) >= 4:
                text = text.replace(value, "[secret]")
        return text

    def _run(
        self,
        command: str,
        *args: str,
        cwd: Path,
        stdin: str | None = None,
        timeout: float = ENGINE_TIMEOUT_SECONDS,
    ) -> str:
        return run_command(
            command,
            *args,
            context=CommandContext(
                env=self._env,
                cwd=cwd,
                stdin=stdin,
                timeout=timeout,
                reconcile=self._context,
            ),
        )

    def _pulumi(self, *args: str, stdin: str | None = None) -> str:
        try:
            return self._run(
                "pulumi",
                *args,
                "--stack",
                self._spec.stack,
                "--non-interactive",
                cwd=self._workspace(),
                stdin=stdin,
            )
        except CommandFailedError as exc:
            output = self._redact(f"{exc.stdout}\n{exc.stderr}")
            message = self._redact(exc.stderr.strip() or str(exc))
            if _DRIFT_PATTERN.search(output):
                raise RefreshDriftError(message) from exc
            raise classify_engine_error(message, permalink=parse_permalink(output)) from exc

    def install_project_dependencies(self, checkout: SourceCheckout) -> None:
        self._project_dir = checkout.project_dir
        runtime = project_runtime(checkout.project_dir)
        match runtime:
            case "nodejs":
                if (checkout.project_dir / "yarn.lock").exists():
                    steps = [("yarn", ("install",))]
                else:
                    steps = [("npm", ("install",))]
            case "python":
                steps = [("python3", ("-m", "venv", "venv"))]
                if (checkout.project_dir / "requirements.txt").exists():
                    pip = str(checkout.project_dir / "venv" / "bin" / "pip")
                    steps.append((pip, ("install", "-r", "requirements.txt")))
            case _:
                logger.debug("No dependency installation for runtime %s", runtime)
                return

        logger.info("Installing %s dependencies in %s", runtime, checkout.project_dir)
        for command, args in steps:
            try:
                self._run(
                    command,
                    *args,
                    cwd=checkout.project_dir,
                    timeout=INSTALL_TIMEOUT_SECONDS,
                )
            except CommandFailedError as exc:
                msg = self._redact(f"{command} {' '.join(args)} failed: {exc.stderr.strip() or exc}")
                raise DependencyInstallError(msg) from exc

    def update_config(self, config: MergedConfig, secrets_provider: str | None) -> None:
        select_args = ["stack", "select", "--create"]
        if secrets_provider:
            select_args += ["--secrets-provider", secrets_provider]
        self._pulumi(*select_args)

        overrides = config.overrides()
        for key, entry in overrides.items():
            if entry.secret and entry.value:
                self._sensitive.add(entry.value)
            visibility = "--secret" if entry.secret else "--plaintext"
            if key.startswith("-"):
                msg = f"config key {key!r} must not start with '-'"
                raise ConfigError(msg)
            self._pulumi("config", "set", visibility, key, stdin=entry.value)
        logger.info(
            "Applied %d config overrides to %s (%d secret)",
            len(overrides),
            self._spec.stack,
            sum(1 for entry in overrides.values() if entry.secret),
        )

    def refresh_stack(self, expect_no_changes: bool) -> str | None:
        args = ["refresh", "--yes", "--skip-preview"]
        if expect_no_changes:
            args.append("--expect-no-changes")
        return parse_permalink(self._pulumi(*args))

    def update_stack(self) -> str | None:
        return parse_permalink(self._pulumi("up", "--yes", "--skip-preview"))

    def get_stack_outputs(self) -> StackOutputs:
        stdout = self._pulumi("stack", "output", "--json")
        try:
            outputs = json.loads(stdout or "{}")
        except json.JSONDecodeError as exc:
            msg = f"pulumi stack output returned invalid JSON: {exc}"
            raise EngineFailedError(msg) from exc
        if not isinstance(outputs, dict):
            msg = "pulumi stack output must return a JSON object"
            raise EngineFailedError(msg)
        return outputs

    def destroy_stack(self) -> str | None:
        permalink = parse_permalink(self._pulumi("destroy", "--yes", "--skip-preview"))
        self._pulumi("stack", "rm", "--yes")
        return permalink


__all__ = [
    "PulumiStackController",
    "StackController",
    "classify_engine_error",
    "parse_permalink",
    "project_runtime",
]
