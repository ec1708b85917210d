"""Load Stack manifests through an explicit kind registry.

Manifests use the ``pulumi.com/v1alpha1`` wire form: camelCase spec fields,
``metadata.name``/``metadata.namespace``, an optional ``status`` block, and
``metadata.deletionTimestamp`` marking a stack that is being deleted. A
``StackList`` document expands to its ``items``.

Examples
--------
>>> registry = build_registry()
>>> doc = {
...     "apiVersion": "pulumi.com/v1alpha1",
...     "kind": "Stack",
...     "metadata": {"name": "dev"},
...     "spec": {"stack": "acme/dev", "projectRepo": "https://git.example/infra.git"},
... }
>>> registry.parse(doc)[0].identity
'default/dev'
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeAlias

import yaml

from stack_reconciler._errors import ConfigError
from stack_reconciler._models import (
    DEFAULT_NAMESPACE,
    StackResource,
    StackSpec,
    StackStatus,
)
from stack_reconciler._resource_refs import parse_resource_refs

logger = logging.getLogger(__name__)

API_VERSION = "pulumi.com/v1alpha1"

_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")

ManifestParser: TypeAlias = Callable[[Mapping[str, Any], "KindRegistry"], list[StackResource]]


@dataclass(slots=True)
class KindRegistry:
    """Map ``(apiVersion, kind)`` pairs to manifest parsers."""

    parsers: dict[tuple[str, str], ManifestParser] = field(default_factory=dict)

    def register(self, api_version: str, kind: str, parser: ManifestParser) -> None:
        """Register ``parser`` for documents of ``api_version``/``kind``."""
        key = (api_version, kind)
        if key in self.parsers:
            msg = f"{api_version}/{kind} is already registered"
            raise ValueError(msg)
        self.parsers[key] = parser

    def kinds(self) -> list[str]:
        """Return the registered ``apiVersion/kind`` names, sorted."""
        return sorted(f"{api}/{kind}" for api, kind in self.parsers)

    def parse(self, document: Any) -> list[StackResource]:
        """Parse one manifest document into stack resources."""
        if not isinstance(document, Mapping):
            msg = "manifest document must be a mapping"
            raise ConfigError(msg)
        key = (str(document.get("apiVersion", "")), str(document.get("kind", "")))
        parser = self.parsers.get(key)
        if parser is None:
            msg = f"unsupported manifest kind {key[0]}/{key[1]}; known: {', '.join(self.kinds())}"
            raise ConfigError(msg)
        return parser(document, self)


def _optional_str(spec: Mapping[str, Any], key: str) -> str | None:
    value = spec.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        msg = f"spec.{key} must be a string"
        raise ConfigError(msg)
    return value


def _required_str(spec: Mapping[str, Any], key: str, where: str = "spec") -> str:
    value = spec.get(key)
    if not isinstance(value, str) or not value:
        msg = f"{where}.{key} is required"
        raise ConfigError(msg)
    return value


def _str_map(spec: Mapping[str, Any], key: str) -> dict[str, str]:
    value = spec.get(key) or {}
    if not isinstance(value, Mapping):
        msg = f"spec.{key} must be a mapping"
        raise ConfigError(msg)
    return {str(name): "" if item is None else str(item) for name, item in value.items()}


def _str_list(spec: Mapping[str, Any], key: str) -> tuple[str, ...]:
    value = spec.get(key) or []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        msg = f"spec.{key} must be a list of strings"
        raise ConfigError(msg)
    return tuple(value)


def _flag(spec: Mapping[str, Any], key: str) -> bool:
    value = spec.get(key, False)
    if not isinstance(value, bool):
        msg = f"spec.{key} must be a boolean"
        raise ConfigError(msg)
    return value


def parse_stack_spec(spec: Any) -> StackSpec:
    """Build a :class:`StackSpec` from the manifest ``spec`` mapping.

    Raises
    ------
    ConfigError
        When a field has the wrong type, a required field is missing, or a
        resource reference is malformed.
    """
    if not isinstance(spec, Mapping):
        msg = "spec must be a mapping"
        raise ConfigError(msg)
    return StackSpec(
        stack=_required_str(spec, "stack"),
        project_repo=_required_str(spec, "projectRepo"),
        backend=_optional_str(spec, "backend"),
        secrets_provider=_optional_str(spec, "secretsProvider"),
        branch=_optional_str(spec, "branch"),
        commit=_optional_str(spec, "commit"),
        repo_dir=_optional_str(spec, "repoDir"),
        git_auth_secret=_optional_str(spec, "gitAuthSecret"),
        access_token_secret=_optional_str(spec, "accessTokenSecret"),
        config=_str_map(spec, "config"),
        secrets=_str_map(spec, "secrets"),
        config_refs=parse_resource_refs(spec.get("configRefs"), context="spec.configRefs"),
        secret_refs=parse_resource_refs(spec.get("secretsRef"), context="spec.secretsRef"),
        envs=_str_list(spec, "envs"),
        secret_envs=_str_list(spec, "envSecrets"),
        env_refs=parse_resource_refs(spec.get("envRefs"), context="spec.envRefs"),
        refresh=_flag(spec, "refresh"),
        expect_no_refresh_changes=_flag(spec, "expectNoRefreshChanges"),
        destroy_on_finalize=_flag(spec, "destroyOnFinalize"),
        retry_on_update_conflict=_flag(spec, "retryOnUpdateConflict"),
    )


def _validate_name(value: str, field_name: str) -> str:
    """Validate an object name or namespace.

    Examples
    --------
    >>> _validate_name("dev-stack", "metadata.name")
    'dev-stack'
    """
    if not _NAME_PATTERN.match(value) or len(value) > 253:
        msg = f"{field_name} {value!r} is not a valid object name"
        raise ConfigError(msg)
    return value


def parse_stack(document: Mapping[str, Any], registry: KindRegistry | None = None) -> list[StackResource]:
    """Parse a ``Stack`` document."""
    metadata = document.get("metadata") or {}
    if not isinstance(metadata, Mapping):
        msg = "metadata must be a mapping"
        raise ConfigError(msg)
    name = _validate_name(_required_str(metadata, "name", "metadata"), "metadata.name")
    namespace = _validate_name(
        str(metadata.get("namespace") or DEFAULT_NAMESPACE), "metadata.namespace"
    )
    status_raw = document.get("status")
    if status_raw is not None and not isinstance(status_raw, dict):
        msg = f"{namespace}/{name}: status must be a mapping"
        raise ConfigError(msg)
    try:
        status = StackStatus.from_mapping(status_raw)
    except (TypeError, ValueError) as exc:
        msg = f"{namespace}/{name}: invalid status: {exc}"
        raise ConfigError(msg) from exc
    try:
        spec = parse_stack_spec(document.get("spec"))
    except ConfigError as exc:
        msg = f"{namespace}/{name}: {exc}"
        raise ConfigError(msg) from exc
    return [
        StackResource(
            name=name,
            namespace=namespace,
            spec=spec,
            status=status,
            deleting=bool(metadata.get("deletionTimestamp")),
        )
    ]


def parse_stack_list(document: Mapping[str, Any], registry: KindRegistry) -> list[StackResource]:
    """Parse a ``StackList`` document by dispatching each item."""
    items = document.get("items") or []
    if not isinstance(items, list):
        msg = "StackList.items must be a list"
        raise ConfigError(msg)
    resources: list[StackResource] = []
    for item in items:
        if isinstance(item, Mapping):
            item = {"apiVersion": document.get("apiVersion"), "kind": "Stack", **item}
        resources.extend(registry.parse(item))
    return resources


def build_registry() -> KindRegistry:
    """Build the registry of supported manifest kinds."""
    registry = KindRegistry()
    registry.register(API_VERSION, "Stack", parse_stack)
    registry.register(API_VERSION, "StackList", parse_stack_list)
    return registry


def _iter_documents(path: Path) -> Iterable[Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Failed to read manifest {path}: {exc}"
        raise ConfigError(msg) from exc
    try:
        return [doc for doc in yaml.safe_load_all(text) if doc is not None]
    except yaml.YAMLError as exc:
        msg = f"Failed to parse manifest {path}: {exc}"
        raise ConfigError(msg) from exc


def load_manifests(path: Path, registry: KindRegistry) -> list[StackResource]:
    """Load every stack declared in a (multi-document) YAML file.

    Parameters
    ----------
    path
        Manifest file.
    registry
        Registry resolving document kinds.

    Returns
    -------
    list[StackResource]
        Stacks in document order.

    Raises
    ------
    ConfigError
        When the file cannot be read or parsed, a kind is unknown, or two
        documents declare the same stack identity.
    """
    resources: list[StackResource] = []
    seen: set[str] = set()
    for document in _iter_documents(path):
        for resource in registry.parse(document):
            if resource.identity in seen:
                msg = f"{path}: duplicate stack {resource.identity}"
                raise ConfigError(msg)
            seen.add(resource.identity)
            resources.append(resource)
    logger.debug("Loaded %d stack(s) from %s", len(resources), path)
    return resources


__all__ = [
    "API_VERSION",
    "KindRegistry",
    "build_registry",
    "load_manifests",
    "parse_stack",
    "parse_stack_spec",
]
