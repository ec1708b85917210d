"""Resolve stack-reconciler CLI options against ``STACK_*`` environment variables."""

from __future__ import annotations

import os
from collections import abc as cabc
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class InputResolution:
    """How one input falls back when the CLI leaves it unset."""

    env_key: str
    default: str | Path | None = None
    as_path: bool = False


def resolve_input(
    param_value: str | Path | None,
    resolution: InputResolution,
    env: cabc.Mapping[str, str] | None = None,
) -> str | Path | None:
    """Resolve one ``reconcile``/``status`` option against ``STACK_*`` variables.

    A value passed on the command line wins. Otherwise the variable named by
    ``resolution.env_key`` is used; an empty variable counts as unset, so a
    blank ``STACK_STATE_DIR=`` in a CI job falls back to the default state
    directory instead of the working directory.

    Examples
    --------
    >>> resolve_input(None, InputResolution("STACK_STATE_DIR", as_path=True),
    ...               env={"STACK_STATE_DIR": "/var/lib/stacks"})
    PosixPath('/var/lib/stacks')
    """
    if param_value is not None:
        return param_value

    env_value = (os.environ if env is None else env).get(resolution.env_key)
    if env_value:
        return Path(env_value) if resolution.as_path else env_value

    return resolution.default


def parse_positive_int(value: str | int | None, name: str) -> int | None:
    """Parse an optional positive integer input.

    Examples
    --------
    >>> parse_positive_int("3", "STACK_MAX_ATTEMPTS")
    3
    >>> parse_positive_int(None, "STACK_MAX_ATTEMPTS") is None
    True
    """
    if value is None or value == "":
        return None
    try:
        parsed = int(value)
    except ValueError as exc:
        msg = f"{name} must be an integer, got {value!r}"
        raise SystemExit(msg) from exc
    if parsed < 1:
        msg = f"{name} must be at least 1, got {parsed}"
        raise SystemExit(msg)
    return parsed


def parse_seconds(value: str | float | None, name: str) -> float | None:
    """Parse an optional positive duration in seconds.

    Examples
    --------
    >>> parse_seconds("90", "STACK_ATTEMPT_TIMEOUT")
    90.0
    """
    if value is None or value == "":
        return None
    try:
        parsed = float(value)
    except ValueError as exc:
        msg = f"{name} must be a number of seconds, got {value!r}"
        raise SystemExit(msg) from exc
    if parsed <= 0:
        msg = f"{name} must be positive, got {parsed}"
        raise SystemExit(msg)
    return parsed
