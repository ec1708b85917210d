"""Command execution helpers for external CLIs (``pulumi``, ``kubectl``, package managers)."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from plumbum import local
from plumbum.commands.processes import (
    CommandNotFound,
    ProcessExecutionError,
    ProcessTimedOut,
)

from stack_reconciler._context import ReconcileContext
from stack_reconciler._errors import ReconcileCancelledError

COMMAND_TIMEOUT_SECONDS = 1800


class CommandFailedError(Exception):
    """Raised when an external command exits non-zero, times out, or is missing."""

    def __init__(
        self,
        message: str,
        *,
        stdout: str = "",
        stderr: str = "",
        return_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.return_code = return_code


@dataclass(slots=True)
class CommandContext:
    """Execution options for :func:`run_command`."""

    env: dict[str, str] | None = None
    cwd: Path | None = None
    stdin: str | None = None
    timeout: float | None = COMMAND_TIMEOUT_SECONDS
    reconcile: ReconcileContext | None = None


def _validate_command_args(args: tuple[str, ...]) -> None:
    """Validate CLI arguments for safe execution."""
    for arg in args:
        if not isinstance(arg, str):
            msg = f"Command argument must be a string, got {type(arg).__name__}"
            raise TypeError(msg)
        if any(char in arg for char in ("\x00", "\n", "\r")):
            msg = "Command argument contains an invalid control character"
            raise ValueError(msg)


def run_command(
    command: str,
    *args: str,
    context: CommandContext | None = None,
) -> str:
    """Execute an external command and return its standard output.

    Parameters
    ----------
    command
        Executable name resolved on ``PATH``.
    *args
        Command arguments.
    context
        Environment, working directory, stdin, and timeout options.

    Returns
    -------
    str
        Standard output of the command.

    Raises
    ------
    CommandFailedError
        When the command is missing, exits non-zero, or hits its own timeout.
    ReconcileCancelledError
        When the surrounding reconcile attempt was cancelled or its deadline passed.

    Examples
    --------
    >>> run_command("printf", "hello")
    'hello'
    """
    ctx = context or CommandContext()
    _validate_command_args(args)
    if ctx.reconcile is not None:
        ctx.reconcile.check(f"{command} {' '.join(args[:1])}".strip())
    timeout = ctx.reconcile.timeout(ctx.timeout) if ctx.reconcile else ctx.timeout
    options: dict[str, object] = {"env": ctx.env, "timeout": timeout}
    if ctx.cwd is not None:
        options["cwd"] = str(ctx.cwd)

    try:
        bound = local[command][list(args)]
        if ctx.stdin is None:
            _, stdout, _ = bound.run(**options)
        else:
            _, stdout, _ = (bound << ctx.stdin).run(**options)
    except CommandNotFound as exc:
        msg = f"Command {command!r} not found on PATH"
        raise CommandFailedError(msg) from exc
    except ProcessTimedOut as exc:
        if ctx.reconcile is not None and ctx.reconcile.expired():
            msg = f"{command} {' '.join(args[:1])} abandoned: reconcile deadline exceeded"
            raise ReconcileCancelledError(msg) from exc
        msg = f"Command {command!r} timed out after {timeout}s"
        raise CommandFailedError(msg) from exc
    except ProcessExecutionError as exc:
        stderr = (exc.stderr or "").strip()
        msg = f"Command {command!r} failed: {stderr}"
        raise CommandFailedError(
            msg,
            stdout=exc.stdout or "",
            stderr=exc.stderr or "",
            return_code=exc.retcode if isinstance(exc.retcode, int) else None,
        ) from exc
    return stdout
