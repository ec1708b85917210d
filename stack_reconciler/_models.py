"""Data models for stack reconciliation.

These models provide a small, typed contract shared by the resolver, the
lifecycle controller, and the status recorder, keeping data flow explicit
across module boundaries.

Examples
--------
>>> spec = StackSpec(stack="acme/dev", project_repo="https://git.example/infra.git")
>>> spec.stack_name
'dev'
>>> StackUpdateStatus.CONFLICT.retryable
True
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, TypeAlias

DEFAULT_NAMESPACE = "default"


@dataclass(frozen=True, slots=True)
class LiteralRef:
    """A value embedded directly in the stack specification."""

    value: str = field(repr=False)


@dataclass(frozen=True, slots=True)
class EnvRef:
    """An environment variable of the reconciling process."""

    name: str


@dataclass(frozen=True, slots=True)
class FileRef:
    """A file on the reconciler's filesystem."""

    path: str


@dataclass(frozen=True, slots=True)
class SecretRef:
    """A single key of a namespaced secret.

    Attributes
    ----------
    name
        Secret name.
    key
        Key within the secret data.
    namespace
        Namespace holding the secret; ``"default"`` when omitted.
    """

    name: str
    key: str
    namespace: str = DEFAULT_NAMESPACE


ResourceRef: TypeAlias = LiteralRef | EnvRef | FileRef | SecretRef


@dataclass(frozen=True, slots=True)
class StackSpec:
    """Desired state of one stack, immutable for the duration of a reconcile.

    Attributes
    ----------
    stack
        Fully qualified stack name (``<org>/<stack>``).
    project_repo
        Git URL of the project source.
    backend
        Optional engine backend URL (``PULUMI_BACKEND_URL``).
    secrets_provider
        Optional secrets provider used when the stack is first created.
    branch, commit
        Revision to deploy; mutually exclusive. Neither means the default branch.
    repo_dir
        Subdirectory of the repository that holds ``Pulumi.yaml``.
    git_auth_secret
        Name of a secret holding git credentials.
    access_token_secret
        Name of a secret whose ``accessToken`` key becomes ``PULUMI_ACCESS_TOKEN``.
    config, secrets
        Inline plain and secret configuration.
    config_refs, secret_refs
        Configuration resolved from resource references.
    envs, secret_envs
        Names of config maps and secrets whose entries populate the run environment.
    env_refs
        Environment variables resolved from resource references.
    refresh, expect_no_refresh_changes, destroy_on_finalize, retry_on_update_conflict
        Lifecycle flags.
    """

    stack: str
    project_repo: str
    backend: str | None = None
    secrets_provider: str | None = None
    branch: str | None = None
    commit: str | None = None
    repo_dir: str | None = None
    git_auth_secret: str | None = None
    access_token_secret: str | None = None
    config: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict, repr=False)
    config_refs: dict[str, ResourceRef] = field(default_factory=dict)
    secret_refs: dict[str, ResourceRef] = field(default_factory=dict)
    envs: tuple[str, ...] = ()
    secret_envs: tuple[str, ...] = ()
    env_refs: dict[str, ResourceRef] = field(default_factory=dict)
    refresh: bool = False
    expect_no_refresh_changes: bool = False
    destroy_on_finalize: bool = False
    retry_on_update_conflict: bool = False

    @property
    def stack_name(self) -> str:
        """Return the final segment of the fully qualified stack name."""
        return self.stack.rsplit("/", 1)[-1]

    @property
    def requested_revision(self) -> str:
        """Return the commit or branch requested, or an empty string."""
        return self.commit or self.branch or ""


class StackUpdateStatus(enum.IntEnum):
    """Terminal classification of one update attempt."""

    SUCCEEDED = 0
    FAILED = 1
    CONFLICT = 2
    PENDING_OPERATIONS = 3
    NOT_FOUND = 4

    @property
    def retryable(self) -> bool:
        """Return whether this status may trigger an automatic retry."""
        return self is StackUpdateStatus.CONFLICT


class StackUpdateStateMessage(enum.StrEnum):
    """Persisted state of the last update."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


StackOutputs: TypeAlias = dict[str, Any]


@dataclass(frozen=True, slots=True)
class StackUpdateState:
    """Outcome record of the most recent reconcile attempt."""

    state: StackUpdateStateMessage
    last_attempted_commit: str = ""
    last_successful_commit: str = ""
    permalink: str = ""

    def to_mapping(self) -> dict[str, str]:
        """Return the persisted camelCase mapping.

        Examples
        --------
        >>> StackUpdateState(StackUpdateStateMessage.FAILED, "def", "abc").to_mapping()["state"]
        'failed'
        """
        return {
            "state": self.state.value,
            "lastAttemptedCommit": self.last_attempted_commit,
            "lastSuccessfulCommit": self.last_successful_commit,
            "permalink": self.permalink,
        }

    @classmethod
    def from_mapping(cls, payload: dict[str, Any]) -> StackUpdateState:
        """Build a state from its persisted mapping."""
        try:
            state = StackUpdateStateMessage(payload.get("state", ""))
        except ValueError as exc:
            msg = f"Unknown lastUpdate state {payload.get('state')!r}"
            raise ValueError(msg) from exc
        return cls(
            state=state,
            last_attempted_commit=str(payload.get("lastAttemptedCommit") or ""),
            last_successful_commit=str(payload.get("lastSuccessfulCommit") or ""),
            permalink=str(payload.get("permalink") or ""),
        )


@dataclass(frozen=True, slots=True)
class StackStatus:
    """Observed state of a stack; outlives any single attempt."""

    outputs: StackOutputs = field(default_factory=dict)
    last_update: StackUpdateState | None = None

    def to_mapping(self) -> dict[str, Any]:
        """Return the persisted mapping, omitting empty members."""
        payload: dict[str, Any] = {}
        if self.outputs:
            payload["outputs"] = dict(self.outputs)
        if self.last_update is not None:
            payload["lastUpdate"] = self.last_update.to_mapping()
        return payload

    @classmethod
    def from_mapping(cls, payload: dict[str, Any] | None) -> StackStatus:
        """Build a status from its persisted mapping.

        Examples
        --------
        >>> StackStatus.from_mapping(None)
        StackStatus(outputs={}, last_update=None)
        """
        if not payload:
            return cls()
        outputs = payload.get("outputs") or {}
        if not isinstance(outputs, dict):
            msg = "status.outputs must be a mapping"
            raise TypeError(msg)
        last_update_raw = payload.get("lastUpdate")
        last_update = (
            StackUpdateState.from_mapping(last_update_raw)
            if isinstance(last_update_raw, dict)
            else None
        )
        return cls(outputs=dict(outputs), last_update=last_update)


@dataclass(frozen=True, slots=True)
class StackResource:
    """A Stack object as held by the declarative store."""

    name: str
    spec: StackSpec
    namespace: str = DEFAULT_NAMESPACE
    status: StackStatus = field(default_factory=StackStatus)
    deleting: bool = False

    @property
    def identity(self) -> str:
        """Return the ``namespace/name`` key used by the store and the loop."""
        return f"{self.namespace}/{self.name}"
