"""Tests for the secret and config map backends."""

from __future__ import annotations

import base64
import json
from pathlib import Path

import pytest

from stack_reconciler._commands import CommandContext, CommandFailedError
from stack_reconciler._context import ReconcileContext
from stack_reconciler._errors import (
    AccessDeniedError,
    ConfigError,
    ResourceNotFoundError,
    StackReconcileError,
)
from stack_reconciler._secret_store import (
    KubectlSecretStore,
    MappingSecretStore,
    bind_reconcile_context,
)


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def test_mapping_store_from_yaml_file(tmp_path: Path) -> None:
    path = tmp_path / "secrets.yaml"
    path.write_text(
        "secrets:\n"
        "  default:\n"
        "    git-auth:\n"
        "      accessToken: ghp-token\n"
        "configMaps:\n"
        "  ops:\n"
        "    cloud-env:\n"
        "      AWS_REGION: eu-west-1\n"
        "      RETRIES: 3\n",
        encoding="utf-8",
    )

    store = MappingSecretStore.from_yaml_file(path)

    assert store.get_secret("default", "git-auth") == {"accessToken": "ghp-token"}
    assert store.get_config_map("ops", "cloud-env") == {
        "AWS_REGION": "eu-west-1",
        "RETRIES": "3",
    }


@pytest.mark.parametrize(
    ("content", "fragment"),
    [
        ("- a\n", "must contain a mapping"),
        ("secrets: [a]\n", "'secrets' must be a mapping"),
        ("secrets:\n  default:\n    git: token\n", r"secrets\.default\.git must be a mapping"),
    ],
)
def test_mapping_store_rejects_malformed_files(
    tmp_path: Path, content: str, fragment: str
) -> None:
    path = tmp_path / "secrets.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError, match=fragment):
        MappingSecretStore.from_yaml_file(path)


def test_mapping_store_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Failed to read"):
        MappingSecretStore.from_yaml_file(tmp_path / "absent.yaml")


def test_mapping_store_missing_config_map() -> None:
    with pytest.raises(ResourceNotFoundError, match="config map default/env"):
        MappingSecretStore().get_config_map("default", "env")


def test_kubectl_store_decodes_secret_data(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, tuple[str, ...]]] = []

    def fake_run_command(
        command: str, *args: str, context: CommandContext | None = None
    ) -> str:
        calls.append((command, args))
        return json.dumps(
            {
                "data": {"accessToken": _b64("ghp-token")},
                "stringData": {"username": "bot"},
            }
        )

    monkeypatch.setattr("stack_reconciler._secret_store.run_command", fake_run_command)

    data = KubectlSecretStore(kube_context="staging").get_secret("ops", "git-auth")

    assert data == {"accessToken": "ghp-token", "username": "bot"}
    assert calls == [
        (
            "kubectl",
            (
                "get",
                "secret",
                "git-auth",
                "--namespace",
                "ops",
                "--output",
                "json",
                "--context",
                "staging",
            ),
        )
    ]


def test_kubectl_store_reads_config_map(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "stack_reconciler._secret_store.run_command",
        lambda *_args, **_kwargs: json.dumps({"data": {"AWS_REGION": "eu-west-1"}}),
    )

    assert KubectlSecretStore().get_config_map("default", "cloud-env") == {
        "AWS_REGION": "eu-west-1"
    }


@pytest.mark.parametrize(
    ("stderr", "return_code", "expected"),
    [
        ('Error from server (NotFound): secrets "db" not found', 1, ResourceNotFoundError),
        (
            'Error from server (Forbidden): secrets "db" is forbidden: cannot get resource',
            1,
            AccessDeniedError,
        ),
        ("", None, StackReconcileError),
    ],
)
def test_kubectl_store_classifies_failures(
    monkeypatch: pytest.MonkeyPatch,
    stderr: str,
    return_code: int | None,
    expected: type[Exception],
) -> None:
    def failing_run_command(*_args: str, **_kwargs: object) -> str:
        raise CommandFailedError("kubectl failed", stderr=stderr, return_code=return_code)

    monkeypatch.setattr("stack_reconciler._secret_store.run_command", failing_run_command)

    with pytest.raises(expected) as excinfo:
        KubectlSecretStore().get_secret("default", "db")

    if expected is StackReconcileError:
        assert not isinstance(excinfo.value, (ResourceNotFoundError, AccessDeniedError))


def test_kubectl_store_rejects_invalid_base64(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "stack_reconciler._secret_store.run_command",
        lambda *_args, **_kwargs: json.dumps({"data": {"token": "not base64!"}}),
    )

    with pytest.raises(StackReconcileError, match="not valid base64"):
        KubectlSecretStore().get_secret("default", "db")


def test_bind_reconcile_context_only_rebinds_kubectl() -> None:
    ctx = ReconcileContext.with_timeout(30)
    kubectl = KubectlSecretStore(kube_context="staging")
    mapping = MappingSecretStore()

    bound = bind_reconcile_context(kubectl, ctx)

    assert isinstance(bound, KubectlSecretStore)
    assert bound.reconcile is ctx
    assert bound.kube_context == "staging"
    assert kubectl.reconcile is None
    assert bind_reconcile_context(mapping, ctx) is mapping
