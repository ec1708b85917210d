"""Tests for the reconcile_stack CLI."""

from __future__ import annotations

import functools
import json
from pathlib import Path

import pytest

from stack_reconciler._fake_controller import InMemoryEngine
from stack_reconciler._lifecycle import ReconcileDeps
from stack_reconciler._models import StackUpdateStatus
from stack_reconciler._secret_store import KubectlSecretStore, MappingSecretStore
from stack_reconciler.reconcile_stack import (
    DEFAULT_STATE_DIR,
    RawReconcileInputs,
    ReconcileInputs,
    build_secret_store,
    configure_logging,
    reconcile_command,
    resolve_reconcile_inputs,
    status_command,
)

MANIFEST = """\
apiVersion: pulumi.com/v1alpha1
kind: Stack
metadata:
  name: dev
  namespace: default
spec:
  stack: acme/dev
  projectRepo: https://git.example/acme/infra.git
  branch: main
  config:
    aws:region: eu-west-1
"""

INPUT_ENV_KEYS = (
    "STACK_STATE_DIR",
    "STACK_WORKSPACE_DIR",
    "STACK_SECRETS_FILE",
    "KUBECTL_CONTEXT",
    "STACK_MAX_WORKERS",
    "STACK_MAX_ATTEMPTS",
    "STACK_ATTEMPT_TIMEOUT",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in INPUT_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def cli_engine(monkeypatch: pytest.MonkeyPatch, checkouts) -> InMemoryEngine:
    """Route the CLI's controllers through an in-memory engine."""
    engine = InMemoryEngine(outputs={"url": "https://dev.example"})
    monkeypatch.setattr(
        "stack_reconciler.reconcile_stack.ReconcileDeps",
        functools.partial(ReconcileDeps, controller_factory=engine),
    )
    return engine


def _write_inputs(tmp_path: Path) -> tuple[Path, Path]:
    manifest = tmp_path / "stacks.yaml"
    manifest.write_text(MANIFEST, encoding="utf-8")
    secrets = tmp_path / "secrets.yaml"
    secrets.write_text("secrets: {}\nconfigMaps: {}\n", encoding="utf-8")
    return manifest, secrets


def test_inputs_default_when_unset() -> None:
    inputs = resolve_reconcile_inputs(RawReconcileInputs())

    assert inputs.state_dir == DEFAULT_STATE_DIR
    assert inputs.secrets_file is None
    assert inputs.max_workers == 4
    assert inputs.max_attempts is None
    assert inputs.attempt_timeout is None


def test_inputs_prefer_cli_over_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STACK_STATE_DIR", "/var/lib/stacks")
    monkeypatch.setenv("STACK_MAX_WORKERS", "8")
    monkeypatch.setenv("STACK_ATTEMPT_TIMEOUT", "90")

    inputs = resolve_reconcile_inputs(RawReconcileInputs(max_workers="2"))

    assert inputs.state_dir == Path("/var/lib/stacks")
    assert inputs.max_workers == 2
    assert inputs.attempt_timeout == 90.0


@pytest.mark.parametrize(
    ("raw", "fragment"),
    [
        (RawReconcileInputs(max_workers="many"), "STACK_MAX_WORKERS must be an integer"),
        (RawReconcileInputs(max_attempts="0"), "STACK_MAX_ATTEMPTS must be at least 1"),
        (RawReconcileInputs(attempt_timeout="-5"), "STACK_ATTEMPT_TIMEOUT must be positive"),
    ],
)
def test_invalid_numeric_inputs_exit(raw: RawReconcileInputs, fragment: str) -> None:
    with pytest.raises(SystemExit, match=fragment):
        resolve_reconcile_inputs(raw)


def test_unknown_log_level_exits() -> None:
    with pytest.raises(SystemExit, match="Unknown log level"):
        configure_logging("chatty")


def test_secret_store_selection(tmp_path: Path) -> None:
    secrets = tmp_path / "secrets.yaml"
    secrets.write_text("secrets: {}\n", encoding="utf-8")
    base = resolve_reconcile_inputs(RawReconcileInputs(kube_context="staging"))

    assert isinstance(build_secret_store(base), KubectlSecretStore)
    with_file = ReconcileInputs(
        state_dir=base.state_dir,
        workspace_dir=base.workspace_dir,
        secrets_file=secrets,
        kube_context=None,
        max_workers=1,
        max_attempts=None,
        attempt_timeout=None,
    )
    assert isinstance(build_secret_store(with_file), MappingSecretStore)


def test_reconcile_command_persists_status(
    tmp_path: Path, cli_engine: InMemoryEngine, capsys: pytest.CaptureFixture[str]
) -> None:
    manifest, secrets = _write_inputs(tmp_path)
    state_dir = tmp_path / "state"

    code = reconcile_command(
        manifest,
        state_dir=state_dir,
        workspace_dir=tmp_path / "work",
        secrets_file=secrets,
    )

    out = capsys.readouterr().out
    assert code == 0
    assert "default/dev: succeeded at 4f2c1e9a" in out
    assert "1/1 stack(s) reconciled." in out
    persisted = json.loads((state_dir / "default" / "dev.json").read_text(encoding="utf-8"))
    assert persisted["outputs"] == {"url": "https://dev.example"}
    assert persisted["lastUpdate"]["state"] == "succeeded"


def test_reconcile_command_reports_failures(
    tmp_path: Path, cli_engine: InMemoryEngine, capsys: pytest.CaptureFixture[str]
) -> None:
    manifest, secrets = _write_inputs(tmp_path)
    cli_engine.script_updates(StackUpdateStatus.FAILED)

    code = reconcile_command(
        manifest,
        state_dir=tmp_path / "state",
        workspace_dir=tmp_path / "work",
        secrets_file=secrets,
    )

    captured = capsys.readouterr()
    assert code == 1
    assert "default/dev: failed" in captured.err
    assert "0/1 stack(s) reconciled." in captured.out


def test_reconcile_command_requires_manifests(capsys: pytest.CaptureFixture[str]) -> None:
    assert reconcile_command() == 2
    assert "at least one manifest" in capsys.readouterr().err


def test_reconcile_command_rejects_invalid_manifest(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    manifest = tmp_path / "stacks.yaml"
    manifest.write_text("apiVersion: v1\nkind: Pod\nmetadata: {name: x}\n", encoding="utf-8")

    assert reconcile_command(manifest, state_dir=tmp_path / "state") == 1
    assert "unsupported manifest kind" in capsys.readouterr().err


def test_status_command_prints_recorded_status(
    tmp_path: Path, cli_engine: InMemoryEngine, capsys: pytest.CaptureFixture[str]
) -> None:
    manifest, secrets = _write_inputs(tmp_path)
    state_dir = tmp_path / "state"
    reconcile_command(
        manifest, state_dir=state_dir, workspace_dir=tmp_path / "work", secrets_file=secrets
    )
    capsys.readouterr()

    assert status_command("default/dev", state_dir=state_dir) == 0
    printed = json.loads(capsys.readouterr().out)
    assert printed["lastUpdate"]["lastSuccessfulCommit"].startswith("4f2c1e9a")


def test_status_command_without_record(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert status_command("default/missing", state_dir=tmp_path) == 1
    assert "no status recorded" in capsys.readouterr().err


def test_status_command_rejects_bad_identity(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert status_command("just-a-name", state_dir=tmp_path) == 1
    assert "namespace/name" in capsys.readouterr().err


def test_blank_environment_values_fall_back_to_defaults(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("STACK_STATE_DIR", "")
    monkeypatch.setenv("STACK_MAX_WORKERS", "")

    inputs = resolve_reconcile_inputs(RawReconcileInputs())

    assert inputs.state_dir == DEFAULT_STATE_DIR
    assert inputs.max_workers == 4
