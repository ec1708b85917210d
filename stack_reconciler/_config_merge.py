"""Merge checked-in stack configuration with inline and referenced values.

Precedence, lowest to highest:

1. configuration checked into ``Pulumi.<stack>.yaml`` at the prepared revision;
2. inline ``config`` then inline (legacy) ``secrets``;
3. values resolved from ``configRefs`` then ``secretsRef``.

Examples
--------
>>> merged = merge_config({"a": ConfigValue("1"), "b": ConfigValue("2")},
...                       secrets={"b": "3"}, resolved_config={"a": "4"})
>>> {key: value.value for key, value in sorted(merged.items())}
{'a': '4', 'b': '3'}
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from stack_reconciler._errors import ConfigError


@dataclass(frozen=True, slots=True)
class ConfigValue:
    """One configuration value and whether the engine must encrypt it."""

    value: str = field(repr=False)
    secret: bool = False


@dataclass(frozen=True, slots=True)
class MergedConfig(Mapping[str, ConfigValue]):
    """Effective configuration for a run.

    Equality covers the key, value, and secret flag of every entry; the set of
    override keys is bookkeeping for the apply step and does not take part.
    """

    values: dict[str, ConfigValue] = field(default_factory=dict)
    override_keys: frozenset[str] = field(default=frozenset(), compare=False)

    def __getitem__(self, key: str) -> ConfigValue:
        return self.values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)

    def overrides(self) -> dict[str, ConfigValue]:
        """Return the entries contributed by inline or referenced sources."""
        return {key: self.values[key] for key in sorted(self.override_keys)}


def _encode_checked_in(key: str, raw: object) -> ConfigValue:
    """Translate one ``config:`` entry from a stack settings file."""
    if isinstance(raw, dict) and set(raw) == {"secure"}:
        return ConfigValue(str(raw["secure"]), secret=True)
    if isinstance(raw, str):
        return ConfigValue(raw)
    if isinstance(raw, bool):
        return ConfigValue("true" if raw else "false")
    if raw is None:
        return ConfigValue("")
    if isinstance(raw, (int, float)):
        return ConfigValue(str(raw))
    try:
        return ConfigValue(json.dumps(raw, sort_keys=True))
    except TypeError as exc:
        msg = f"checked-in config {key!r} is not JSON-serialisable: {exc}"
        raise ConfigError(msg) from exc


def stack_settings_path(project_dir: Path, stack_name: str) -> Path:
    """Return the stack settings file for ``stack_name``, preferring ``.yaml``."""
    yaml_path = project_dir / f"Pulumi.{stack_name}.yaml"
    if yaml_path.exists():
        return yaml_path
    yml_path = project_dir / f"Pulumi.{stack_name}.yml"
    if yml_path.exists():
        return yml_path
    return yaml_path


def load_checked_in_config(project_dir: Path, stack_name: str) -> dict[str, ConfigValue]:
    """Load the ``config:`` section of the checked-in stack settings file.

    Parameters
    ----------
    project_dir
        Directory holding ``Pulumi.yaml``.
    stack_name
        Short stack name (the segment after the organisation).

    Returns
    -------
    dict[str, ConfigValue]
        Checked-in values; empty when no settings file exists.

    Raises
    ------
    ConfigError
        When the file is not valid YAML or its ``config`` section is not a mapping.
    """
    path = stack_settings_path(project_dir, stack_name)
    if not path.exists():
        return {}
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        msg = f"Failed to parse {path.name}: {exc}"
        raise ConfigError(msg) from exc
    if not isinstance(payload, dict):
        msg = f"{path.name} must contain a mapping"
        raise ConfigError(msg)
    config = payload.get("config") or {}
    if not isinstance(config, dict):
        msg = f"{path.name}: config must be a mapping"
        raise ConfigError(msg)
    return {str(key): _encode_checked_in(str(key), raw) for key, raw in config.items()}


def merge_config(
    checked_in: Mapping[str, ConfigValue],
    *,
    config: Mapping[str, str] | None = None,
    secrets: Mapping[str, str] | None = None,
    resolved_config: Mapping[str, str] | None = None,
    resolved_secrets: Mapping[str, str] | None = None,
) -> MergedConfig:
    """Combine every configuration source into the effective configuration.

    Parameters
    ----------
    checked_in
        Values from the repository's stack settings file.
    config, secrets
        Inline plain and secret values from the stack spec.
    resolved_config, resolved_secrets
        Values resolved from resource references.

    Returns
    -------
    MergedConfig
        Effective configuration; later sources override earlier ones key by key.
    """
    values: dict[str, ConfigValue] = dict(checked_in)
    overrides: set[str] = set()
    layers: tuple[tuple[Mapping[str, str] | None, bool], ...] = (
        (config, False),
        (secrets, True),
        (resolved_config, False),
        (resolved_secrets, True),
    )
    for layer, secret in layers:
        for key, value in (layer or {}).items():
            values[key] = ConfigValue(value, secret=secret)
            overrides.add(key)
    return MergedConfig(values=values, override_keys=frozenset(overrides))
