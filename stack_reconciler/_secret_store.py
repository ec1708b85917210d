"""Namespaced secret and config-map backends.

Two stores are provided: :class:`KubectlSecretStore`, which reads live
objects through ``kubectl``, and :class:`MappingSecretStore`, which serves
values from memory or from a YAML file for local runs and tests.

Examples
--------
>>> store = MappingSecretStore(secrets={"default": {"git": {"accessToken": "t"}}})
>>> store.get_secret("default", "git")["accessToken"]
't'
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Protocol

import yaml

from stack_reconciler._commands import CommandContext, CommandFailedError, run_command
from stack_reconciler._context import ReconcileContext
from stack_reconciler._errors import (
    AccessDeniedError,
    ConfigError,
    ResourceNotFoundError,
    StackReconcileError,
)

logger = logging.getLogger(__name__)

KUBECTL_TIMEOUT_SECONDS = 60

_NOT_FOUND_PATTERN = re.compile(r"NotFound|not found", re.IGNORECASE)
_FORBIDDEN_PATTERN = re.compile(r"Forbidden|Unauthorized|cannot get resource", re.IGNORECASE)


class SecretStore(Protocol):
    """Read access to namespaced secrets and config maps."""

    def get_secret(self, namespace: str, name: str) -> Mapping[str, str]:
        """Return the decoded data of a secret."""
        ...

    def get_config_map(self, namespace: str, name: str) -> Mapping[str, str]:
        """Return the data of a config map."""
        ...


@dataclass(slots=True)
class MappingSecretStore:
    """Serve secrets and config maps from nested ``namespace -> name -> data`` maps."""

    secrets: dict[str, dict[str, dict[str, str]]] = field(default_factory=dict)
    config_maps: dict[str, dict[str, dict[str, str]]] = field(default_factory=dict)
    denied: frozenset[tuple[str, str]] = frozenset()

    @classmethod
    def from_yaml_file(cls, path: Path) -> MappingSecretStore:
        """Load a store from a YAML document with ``secrets`` and ``configMaps`` keys."""
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except OSError as exc:
            msg = f"Failed to read secrets file {path}: {exc}"
            raise ConfigError(msg) from exc
        except yaml.YAMLError as exc:
            msg = f"Failed to parse secrets file {path}: {exc}"
            raise ConfigError(msg) from exc
        if not isinstance(payload, dict):
            msg = f"Secrets file {path} must contain a mapping"
            raise ConfigError(msg)
        return cls(
            secrets=_validate_store_section(payload.get("secrets"), "secrets"),
            config_maps=_validate_store_section(payload.get("configMaps"), "configMaps"),
        )

    def get_secret(self, namespace: str, name: str) -> Mapping[str, str]:
        if (namespace, name) in self.denied:
            msg = f"access to secret {namespace}/{name} denied"
            raise AccessDeniedError(msg)
        try:
            return dict(self.secrets[namespace][name])
        except KeyError:
            msg = f"secret {namespace}/{name} not found"
            raise ResourceNotFoundError(msg) from None

    def get_config_map(self, namespace: str, name: str) -> Mapping[str, str]:
        try:
            return dict(self.config_maps[namespace][name])
        except KeyError:
            msg = f"config map {namespace}/{name} not found"
            raise ResourceNotFoundError(msg) from None


def _validate_store_section(
    value: Any, section: str
) -> dict[str, dict[str, dict[str, str]]]:
    """Validate a ``namespace -> name -> data`` section of a secrets file."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        msg = f"Secrets file section {section!r} must be a mapping"
        raise ConfigError(msg)
    validated: dict[str, dict[str, dict[str, str]]] = {}
    for namespace, objects in value.items():
        if not isinstance(objects, dict):
            msg = f"{section}.{namespace} must be a mapping"
            raise ConfigError(msg)
        validated[str(namespace)] = {}
        for name, data in objects.items():
            if not isinstance(data, dict):
                msg = f"{section}.{namespace}.{name} must be a mapping"
                raise ConfigError(msg)
            validated[str(namespace)][str(name)] = {
                str(key): str(item) for key, item in data.items()
            }
    return validated


@dataclass(slots=True)
class KubectlSecretStore:
    """Read secrets and config maps with ``kubectl get -o json``."""

    kube_context: str | None = None
    reconcile: ReconcileContext | None = None

    def _get_object(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        args = ["get", kind, name, "--namespace", namespace, "--output", "json"]
        if self.kube_context:
            args.extend(["--context", self.kube_context])
        try:
            stdout = run_command(
                "kubectl",
                *args,
                context=CommandContext(
                    timeout=KUBECTL_TIMEOUT_SECONDS, reconcile=self.reconcile
                ),
            )
        except CommandFailedError as exc:
            raise _classify_kubectl_error(kind, namespace, name, exc) from exc
        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError as exc:
            msg = f"kubectl returned invalid JSON for {kind} {namespace}/{name}: {exc}"
            raise StackReconcileError(msg) from exc
        if not isinstance(payload, dict):
            msg = f"kubectl JSON root for {kind} {namespace}/{name} must be an object"
            raise StackReconcileError(msg)
        return payload

    def get_secret(self, namespace: str, name: str) -> Mapping[str, str]:
        payload = self._get_object("secret", namespace, name)
        decoded: dict[str, str] = {}
        for key, value in (payload.get("data") or {}).items():
            try:
                decoded[key] = base64.b64decode(value, validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as exc:
                msg = f"secret {namespace}/{name} key {key!r} is not valid base64 text"
                raise StackReconcileError(msg) from exc
        for key, value in (payload.get("stringData") or {}).items():
            decoded[key] = str(value)
        logger.debug("Loaded secret %s/%s (%d keys)", namespace, name, len(decoded))
        return decoded

    def get_config_map(self, namespace: str, name: str) -> Mapping[str, str]:
        payload = self._get_object("configmap", namespace, name)
        data = {str(key): str(value) for key, value in (payload.get("data") or {}).items()}
        logger.debug("Loaded config map %s/%s (%d keys)", namespace, name, len(data))
        return data


def _classify_kubectl_error(
    kind: str, namespace: str, name: str, exc: CommandFailedError
) -> StackReconcileError:
    """Map a failed ``kubectl get`` onto the reconcile error taxonomy."""
    detail = exc.stderr.strip() or str(exc)
    if exc.return_code is None:
        return StackReconcileError(f"kubectl get {kind} {namespace}/{name} failed: {exc}")
    if _FORBIDDEN_PATTERN.search(detail):
        return AccessDeniedError(f"access to {kind} {namespace}/{name} denied: {detail}")
    if _NOT_FOUND_PATTERN.search(detail):
        return ResourceNotFoundError(f"{kind} {namespace}/{name} not found")
    return StackReconcileError(f"kubectl get {kind} {namespace}/{name} failed: {detail}")


def bind_reconcile_context(store: SecretStore, context: ReconcileContext) -> SecretStore:
    """Return ``store`` with its lookups bounded by ``context``.

    Only stores that run external commands are rebound; others are returned
    as they are.
    """
    if isinstance(store, KubectlSecretStore):
        return replace(store, reconcile=context)
    return store
