"""Parse and resolve resource references.

A resource reference names where a value lives: inline in the spec, in an
environment variable, in a file, or under a key of a namespaced secret. The
manifest form carries a ``type`` discriminant plus exactly one payload::

    {"type": "Secret", "secret": {"name": "db", "key": "password"}}

Examples
--------
>>> ref = parse_resource_ref({"type": "Env", "env": {"name": "TOKEN"}})
>>> resolve_resource_ref(ref, secrets=None, environ={"TOKEN": "v"})
'v'
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from stack_reconciler._errors import (
    ConfigError,
    ResourceNotFoundError,
    ResourceReadError,
)
from stack_reconciler._models import (
    DEFAULT_NAMESPACE,
    EnvRef,
    FileRef,
    LiteralRef,
    ResourceRef,
    SecretRef,
)
from stack_reconciler._secret_store import SecretStore

# Discriminant -> payload key in the manifest form.
_PAYLOAD_KEYS = {
    "Env": "env",
    "FS": "filesystem",
    "Secret": "secret",
    "Literal": "literal",
}


def _require_str(payload: Mapping[str, Any], key: str, context: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        msg = f"{context}.{key} must be a non-empty string"
        raise ConfigError(msg)
    return value


def parse_resource_ref(raw: Any, *, context: str = "resourceRef") -> ResourceRef:
    """Build a :data:`ResourceRef` from its manifest mapping.

    Parameters
    ----------
    raw
        Mapping with a ``type`` discriminant and one payload mapping.
    context
        Field path used in error messages.

    Returns
    -------
    ResourceRef
        The populated variant.

    Raises
    ------
    ConfigError
        When the discriminant is unknown, no payload or several payloads are
        populated, or the populated payload does not match the discriminant.

    Examples
    --------
    >>> parse_resource_ref({"type": "Env", "env": {"name": "TOKEN"}})
    EnvRef(name='TOKEN')
    >>> parse_resource_ref({"type": "Secret", "secret": {"name": "s", "key": "k"}}).namespace
    'default'
    """
    if not isinstance(raw, Mapping):
        msg = f"{context} must be a mapping"
        raise ConfigError(msg)
    selector = raw.get("type")
    if selector not in _PAYLOAD_KEYS:
        msg = f"{context}.type must be one of {sorted(_PAYLOAD_KEYS)}, got {selector!r}"
        raise ConfigError(msg)
    populated = [key for key in _PAYLOAD_KEYS.values() if raw.get(key) is not None]
    if len(populated) != 1:
        msg = f"{context} must populate exactly one selector, found {populated or 'none'}"
        raise ConfigError(msg)
    payload_key = _PAYLOAD_KEYS[selector]
    if populated[0] != payload_key:
        msg = f"{context}.type {selector!r} does not match populated selector {populated[0]!r}"
        raise ConfigError(msg)
    payload = raw[payload_key]
    if not isinstance(payload, Mapping):
        msg = f"{context}.{payload_key} must be a mapping"
        raise ConfigError(msg)

    where = f"{context}.{payload_key}"
    match selector:
        case "Env":
            return EnvRef(name=_require_str(payload, "name", where))
        case "FS":
            return FileRef(path=_require_str(payload, "path", where))
        case "Secret":
            namespace = payload.get("namespace") or DEFAULT_NAMESPACE
            if not isinstance(namespace, str):
                msg = f"{where}.namespace must be a string"
                raise ConfigError(msg)
            return SecretRef(
                name=_require_str(payload, "name", where),
                key=_require_str(payload, "key", where),
                namespace=namespace,
            )
        case _:
            value = payload.get("value")
            if not isinstance(value, str):
                msg = f"{where}.value must be a string"
                raise ConfigError(msg)
            return LiteralRef(value=value)


def parse_resource_refs(raw: Any, *, context: str) -> dict[str, ResourceRef]:
    """Parse a ``name -> resource ref`` mapping."""
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        msg = f"{context} must be a mapping"
        raise ConfigError(msg)
    return {
        str(name): parse_resource_ref(value, context=f"{context}.{name}")
        for name, value in raw.items()
    }


def resolve_resource_ref(
    ref: ResourceRef,
    *,
    secrets: SecretStore,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Resolve a reference to its string value.

    Parameters
    ----------
    ref
        Reference to resolve.
    secrets
        Backend for :class:`SecretRef` lookups.
    environ
        Process environment for :class:`EnvRef` lookups (defaults to ``os.environ``).

    Returns
    -------
    str
        The referenced value.

    Raises
    ------
    ResourceNotFoundError
        When the environment variable, secret, or secret key is absent.
    ResourceReadError
        When the referenced file is missing or unreadable.
    AccessDeniedError
        When the secret backend denies access.
    """
    match ref:
        case LiteralRef(value=value):
            return value
        case EnvRef(name=name):
            env = os.environ if environ is None else environ
            value = env.get(name)
            if value is None:
                msg = f"environment variable {name!r} is not set"
                raise ResourceNotFoundError(msg)
            return value
        case FileRef(path=path):
            try:
                return Path(path).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                msg = f"failed to read {path}: {exc}"
                raise ResourceReadError(msg) from exc
        case SecretRef(name=name, key=key, namespace=namespace):
            data = secrets.get_secret(namespace, name)
            if key not in data:
                msg = f"key {key!r} not found in secret {namespace}/{name}"
                raise ResourceNotFoundError(msg)
            return data[key]
    msg = f"unsupported resource ref {ref!r}"
    raise ConfigError(msg)


def resolve_resource_refs(
    refs: Mapping[str, ResourceRef],
    *,
    secrets: SecretStore,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Resolve every reference of a ``name -> ref`` mapping."""
    return {
        name: resolve_resource_ref(ref, secrets=secrets, environ=environ)
        for name, ref in refs.items()
    }


__all__ = [
    "parse_resource_ref",
    "parse_resource_refs",
    "resolve_resource_ref",
    "resolve_resource_refs",
]
