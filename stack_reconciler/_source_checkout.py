"""Check out a stack's project source at a specific revision.

This module clones the project repository with the credentials named by the
stack, checks out the requested branch or commit, and locates the project
descriptor under the optional subdirectory. Credentials never appear on the
command line or in the clone URL: token and basic auth answer git through a
temporary ``GIT_ASKPASS`` helper, and SSH keys are written to a private
temporary file referenced from ``GIT_SSH_COMMAND``.

Examples
--------
>>> from pathlib import Path
>>> request = SourceRequest(repo_url="https://git.example/infra.git", branch="main")
>>> with git_auth_env(TokenAuth("token"), Path("/tmp")) as env:
...     checkout = prepare_source(request, Path("/tmp/work"), auth_env=env)
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import shutil
import subprocess
import tempfile
from collections.abc import Iterator, Mapping
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeAlias

from stack_reconciler._context import ReconcileContext
from stack_reconciler._errors import (
    ConfigError,
    GitAuthError,
    GitSourceError,
    ReconcileCancelledError,
)

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 300
PROJECT_DESCRIPTORS = ("Pulumi.yaml", "Pulumi.yml")

_AUTH_FAILURE_PATTERN = re.compile(
    r"Authentication failed|could not read (Username|Password)|Permission denied"
    r"|invalid credentials|HTTP Basic: Access denied|returned error: 40[13]\b",
    re.IGNORECASE,
)

_ASKPASS_SCRIPT = """#!/bin/sh
case "$1" in
  Username*|username*) printf '%s' "${GIT_AUTH_USERNAME}" ;;
  *) printf '%s' "${GIT_AUTH_PASSWORD}" ;;
esac
"""


@dataclass(frozen=True, slots=True)
class TokenAuth:
    """Personal access token used as the HTTPS password."""

    token: str = field(repr=False)


@dataclass(frozen=True, slots=True)
class SSHKeyAuth:
    """SSH private key with an optional passphrase."""

    private_key: str = field(repr=False)
    passphrase: str | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class BasicAuth:
    """HTTPS username and password."""

    username: str
    password: str = field(repr=False)


GitAuth: TypeAlias = TokenAuth | SSHKeyAuth | BasicAuth


@dataclass(frozen=True, slots=True)
class SourceRequest:
    """Location and revision of the project source.

    Attributes
    ----------
    repo_url
        Remote repository address.
    branch, commit
        Revision to check out; at most one may be set.
    repo_dir
        Subdirectory holding the project descriptor.
    """

    repo_url: str
    branch: str | None = None
    commit: str | None = None
    repo_dir: str | None = None


@dataclass(frozen=True, slots=True)
class SourceCheckout:
    """A local checkout ready for the engine."""

    root: Path
    project_dir: Path
    commit: str


def git_auth_from_secret(data: Mapping[str, str]) -> GitAuth:
    """Build git credentials from the keys of a git auth secret.

    Exactly one credential kind must be present: ``accessToken``;
    ``sshPrivateKey`` (with optional ``password`` passphrase); or ``username``
    with ``password``.

    Raises
    ------
    GitAuthError
        When no credential kind, or more than one, is usable.

    Examples
    --------
    >>> git_auth_from_secret({"username": "bot", "password": "pw"}).username
    'bot'
    """
    token = data.get("accessToken")
    ssh_key = data.get("sshPrivateKey")
    username = data.get("username")
    password = data.get("password")

    kinds = [name for name, present in (
        ("accessToken", bool(token)),
        ("sshPrivateKey", bool(ssh_key)),
        ("username", bool(username)),
    ) if present]
    if not kinds:
        msg = (
            "git auth secret must contain one of accessToken, sshPrivateKey, "
            "or username and password"
        )
        raise GitAuthError(msg)
    if len(kinds) > 1:
        msg = f"git auth secret is ambiguous: found {', '.join(kinds)}"
        raise GitAuthError(msg)

    if token:
        return TokenAuth(token=token)
    if ssh_key:
        return SSHKeyAuth(private_key=ssh_key, passphrase=password or None)
    if not password:
        msg = "git auth secret with username must also contain password"
        raise GitAuthError(msg)
    return BasicAuth(username=str(username), password=password)


def _write_private_file(base_dir: Path, prefix: str, content: str, mode: int) -> Path:
    with tempfile.NamedTemporaryFile(
        mode="w",
        delete=False,
        prefix=prefix,
        dir=base_dir,
        encoding="utf-8",
    ) as handle:
        handle.write(content)
        path = Path(handle.name)
    path.chmod(mode)
    return path


@contextmanager
def git_auth_env(auth: GitAuth | None, base_dir: Path) -> Iterator[dict[str, str]]:
    """Build environment overrides that authenticate git non-interactively.

    Temporary helper files are removed when the context exits.
    """
    env: dict[str, str] = {"GIT_TERMINAL_PROMPT": "0"}
    if auth is None:
        yield env
        return

    base_dir.mkdir(parents=True, exist_ok=True)
    with ExitStack() as cleanup:
        def _track(path: Path) -> Path:
            cleanup.callback(path.unlink, missing_ok=True)
            return path

        askpass = _track(_write_private_file(base_dir, "git-askpass-", _ASKPASS_SCRIPT, 0o700))
        match auth:
            case TokenAuth(token=token):
                env |= {
                    "GIT_ASKPASS": str(askpass),
                    "GIT_AUTH_USERNAME": "x-access-token",
                    "GIT_AUTH_PASSWORD": token,
                }
            case BasicAuth(username=username, password=password):
                env |= {
                    "GIT_ASKPASS": str(askpass),
                    "GIT_AUTH_USERNAME": username,
                    "GIT_AUTH_PASSWORD": password,
                }
            case SSHKeyAuth(private_key=private_key, passphrase=passphrase):
                key_text = private_key if private_key.endswith("\n") else f"{private_key}\n"
                key_path = _track(_write_private_file(base_dir, "git-ssh-key-", key_text, 0o600))
                env["GIT_SSH_COMMAND"] = (
                    f"ssh -i {shlex.quote(str(key_path))} -o IdentitiesOnly=yes "
                    "-o StrictHostKeyChecking=accept-new"
                )
                if passphrase:
                    env |= {
                        "SSH_ASKPASS": str(askpass),
                        "SSH_ASKPASS_REQUIRE": "force",
                        "GIT_AUTH_PASSWORD": passphrase,
                        "DISPLAY": os.environ.get("DISPLAY", ":0"),
                    }
        yield env


def _redact(text: str, env: Mapping[str, str]) -> str:
    for key in ("GIT_AUTH_PASSWORD",):
        secret = env.get(key)
        if secret:
            text = text.replace(secret, "***")
    return text


def run_git(
    args: list[str],
    cwd: Path,
    env: Mapping[str, str] | None = None,
    *,
    context: ReconcileContext | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the completed process.

    Parameters
    ----------
    args
        Git arguments (without the ``git`` prefix).
    cwd
        Directory to run the command in.
    env
        Environment overrides for the command.
    context
        Reconcile context bounding the command's timeout.

    Returns
    -------
    subprocess.CompletedProcess[str]
        Completed process; callers inspect ``returncode``.

    Raises
    ------
    GitSourceError
        When git cannot be started or times out on its own limit.
    ReconcileCancelledError
        When the reconcile deadline cut the command short.
    """
    if context is not None:
        context.check(f"git {args[0]}")
    timeout = context.timeout(GIT_TIMEOUT_SECONDS) if context else GIT_TIMEOUT_SECONDS
    merged_env = {**os.environ, **(env or {})}
    try:
        return subprocess.run(
            ["git", *args],
            cwd=cwd,
            env=merged_env,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        if context is not None and context.expired():
            msg = f"git {args[0]} abandoned: reconcile deadline exceeded"
            raise ReconcileCancelledError(msg) from exc
        msg = f"git {args[0]} timed out after {timeout}s"
        raise GitSourceError(msg) from exc
    except OSError as exc:
        msg = f"git {args[0]} could not be run: {exc}"
        raise GitSourceError(msg) from exc


def _strip_branch_ref(branch: str) -> str:
    """Return the short branch name for simple or fully qualified refs.

    Examples
    --------
    >>> _strip_branch_ref("refs/heads/main")
    'main'
    >>> _strip_branch_ref("release/1.x")
    'release/1.x'
    """
    return branch.removeprefix("refs/heads/")


def _clone_failure(repo_url: str, stderr: str) -> GitAuthError | GitSourceError:
    if _AUTH_FAILURE_PATTERN.search(stderr):
        return GitAuthError(f"git clone of {repo_url} was refused: {stderr}".strip())
    return GitSourceError(f"git clone of {repo_url} failed: {stderr}".strip())


def _resolve_project_dir(root: Path, repo_dir: str | None) -> Path:
    """Locate the project directory inside the checkout."""
    if not repo_dir:
        project_dir = root
    else:
        rel = Path(repo_dir)
        if rel.is_absolute() or ".." in rel.parts:
            msg = f"Refusing repo_dir outside the checkout: {repo_dir}"
            raise ConfigError(msg)
        project_dir = root / rel
        if not project_dir.resolve().is_relative_to(root.resolve()):
            msg = f"Refusing repo_dir outside the checkout: {repo_dir}"
            raise ConfigError(msg)
    if not any((project_dir / name).is_file() for name in PROJECT_DESCRIPTORS):
        msg = f"No Pulumi.yaml found in {repo_dir or 'repository root'}"
        raise GitSourceError(msg)
    return project_dir


def validate_revision(request: SourceRequest) -> None:
    """Reject requests that set both a branch and a commit."""
    if request.branch and request.commit:
        msg = "branch and commit are mutually exclusive"
        raise ConfigError(msg)


def prepare_source(
    request: SourceRequest,
    workdir: Path,
    *,
    auth_env: Mapping[str, str] | None = None,
    context: ReconcileContext | None = None,
) -> SourceCheckout:
    """Clone the project repository and check out the requested revision.

    Parameters
    ----------
    request
        Repository, revision, and subdirectory to prepare.
    workdir
        Destination for the clone; emptied when it already exists.
    auth_env
        Environment overrides from :func:`git_auth_env`.
    context
        Reconcile context bounding each git command.

    Returns
    -------
    SourceCheckout
        Checkout root, project directory, and the resolved commit SHA.

    Raises
    ------
    ConfigError
        When both branch and commit are set, or ``repo_dir`` escapes the checkout.
    GitAuthError
        When the remote rejects the credentials.
    GitSourceError
        When the revision or project descriptor cannot be found.
    """
    validate_revision(request)
    env = dict(auth_env or {"GIT_TERMINAL_PROMPT": "0"})

    try:
        if workdir.exists():
            shutil.rmtree(workdir)
        workdir.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        msg = f"Failed to reset workspace {workdir}: {exc}"
        raise GitSourceError(msg) from exc

    clone_args = ["clone", "--quiet"]
    if request.branch:
        branch = _strip_branch_ref(request.branch)
        clone_args += ["--depth", "1", "--single-branch", "--branch", branch]
        revision = f"branch {branch}"
    elif request.commit:
        revision = f"commit {request.commit}"
    else:
        clone_args += ["--depth", "1"]
        revision = "default branch"
    clone_args += ["--", request.repo_url, str(workdir)]

    logger.info("Cloning %s at %s", request.repo_url, revision)
    result = run_git(clone_args, workdir.parent, env, context=context)
    if result.returncode != 0:
        raise _clone_failure(request.repo_url, _redact(result.stderr, env))

    if request.commit:
        checkout = run_git(
            ["checkout", "--quiet", "--detach", request.commit],
            workdir,
            env,
            context=context,
        )
        if checkout.returncode != 0:
            msg = f"commit {request.commit} not found in {request.repo_url}: {checkout.stderr.strip()}"
            raise GitSourceError(msg)

    head = run_git(["rev-parse", "HEAD"], workdir, env, context=context)
    if head.returncode != 0:
        msg = f"git rev-parse HEAD failed: {head.stderr.strip()}"
        raise GitSourceError(msg)
    commit = head.stdout.strip()

    project_dir = _resolve_project_dir(workdir, request.repo_dir)
    logger.info("Checked out %s at %s", request.repo_url, commit)
    return SourceCheckout(root=workdir, project_dir=project_dir, commit=commit)
