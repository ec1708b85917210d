"""Tests for manifest loading and the kind registry."""

from __future__ import annotations

from pathlib import Path

import pytest

from stack_reconciler._errors import ConfigError
from stack_reconciler._manifests import (
    API_VERSION,
    KindRegistry,
    build_registry,
    load_manifests,
)
from stack_reconciler._models import EnvRef, SecretRef, StackUpdateStateMessage

FULL_STACK = """\
apiVersion: pulumi.com/v1alpha1
kind: Stack
metadata:
  name: network
  namespace: platform
  deletionTimestamp: "2024-05-01T10:00:00Z"
spec:
  stack: acme/network-prod
  projectRepo: https://git.example/acme/network.git
  commit: "9f8e7d6c"
  repoDir: stacks/network
  gitAuthSecret: git-auth
  accessTokenSecret: pulumi-token
  backend: https://api.pulumi.com
  secretsProvider: awskms://alias/stacks
  config:
    aws:region: eu-west-1
    infra:replicas: 3
  secrets:
    infra:legacy: hush
  secretsRef:
    infra:dbPassword:
      type: Secret
      secret:
        name: db
        key: password
  envRefs:
    DEPLOY_ENV:
      type: Env
      env:
        name: DEPLOY_ENV
  envs: [cloud-env]
  envSecrets: [cloud-creds]
  refresh: true
  expectNoRefreshChanges: true
  destroyOnFinalize: true
  retryOnUpdateConflict: true
status:
  outputs:
    vpcId: vpc-123
  lastUpdate:
    state: succeeded
    lastAttemptedCommit: "9f8e7d6c"
    lastSuccessfulCommit: "9f8e7d6c"
    permalink: https://app.pulumi.com/acme/network/prod/updates/4
"""

MINIMAL_STACK = """\
apiVersion: pulumi.com/v1alpha1
kind: Stack
metadata:
  name: dev
spec:
  stack: acme/dev
  projectRepo: https://git.example/acme/infra.git
  branch: main
"""


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "stacks.yaml"
    path.write_text(content, encoding="utf-8")
    return path


def test_full_stack_manifest(tmp_path: Path) -> None:
    [resource] = load_manifests(_write(tmp_path, FULL_STACK), build_registry())

    spec = resource.spec
    assert resource.identity == "platform/network"
    assert resource.deleting is True
    assert spec.stack_name == "network-prod"
    assert spec.commit == "9f8e7d6c"
    assert spec.branch is None
    assert spec.repo_dir == "stacks/network"
    assert spec.config == {"aws:region": "eu-west-1", "infra:replicas": "3"}
    assert spec.secrets == {"infra:legacy": "hush"}
    assert spec.secret_refs == {"infra:dbPassword": SecretRef(name="db", key="password")}
    assert spec.env_refs == {"DEPLOY_ENV": EnvRef("DEPLOY_ENV")}
    assert spec.envs == ("cloud-env",)
    assert spec.secret_envs == ("cloud-creds",)
    assert spec.refresh and spec.expect_no_refresh_changes
    assert spec.destroy_on_finalize and spec.retry_on_update_conflict
    assert resource.status.outputs == {"vpcId": "vpc-123"}
    assert resource.status.last_update is not None
    assert resource.status.last_update.state is StackUpdateStateMessage.SUCCEEDED


def test_multi_document_and_stack_list(tmp_path: Path) -> None:
    content = (
        MINIMAL_STACK
        + "---\n"
        + "apiVersion: pulumi.com/v1alpha1\n"
        + "kind: StackList\n"
        + "items:\n"
        + "  - metadata: {name: prod}\n"
        + '    spec: {stack: acme/prod, projectRepo: "https://git.example/acme/infra.git"}\n'
    )

    resources = load_manifests(_write(tmp_path, content), build_registry())

    assert [resource.identity for resource in resources] == ["default/dev", "default/prod"]
    assert resources[0].deleting is False


def test_duplicate_identity_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="duplicate stack default/dev"):
        load_manifests(_write(tmp_path, MINIMAL_STACK + "---\n" + MINIMAL_STACK), build_registry())


def test_unknown_kind_lists_registered_kinds(tmp_path: Path) -> None:
    content = "apiVersion: v1\nkind: ConfigMap\nmetadata: {name: x}\n"

    with pytest.raises(ConfigError, match="pulumi.com/v1alpha1/Stack"):
        load_manifests(_write(tmp_path, content), build_registry())


@pytest.mark.parametrize(
    ("replacement", "fragment"),
    [
        (("  branch: main\n", ""), None),
        (("  projectRepo: https://git.example/acme/infra.git\n", ""), "projectRepo is required"),
        (("  branch: main\n", "  branch: main\n  refresh: 'yes'\n"), "refresh must be a boolean"),
        (("  branch: main\n", "  branch: main\n  envs: cloud-env\n"), "envs must be a list"),
        (("name: dev", "name: Dev_Stack"), "not a valid object name"),
        (
            ("  branch: main\n", "  branch: main\n  envRefs:\n    X: {type: Env}\n"),
            r"spec\.envRefs\.X",
        ),
    ],
)
def test_invalid_manifests(
    tmp_path: Path, replacement: tuple[str, str], fragment: str | None
) -> None:
    content = MINIMAL_STACK.replace(*replacement)
    path = _write(tmp_path, content)

    if fragment is None:
        [resource] = load_manifests(path, build_registry())
        assert resource.spec.requested_revision == ""
        return
    with pytest.raises(ConfigError, match=fragment):
        load_manifests(path, build_registry())


def test_invalid_yaml(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Failed to parse manifest"):
        load_manifests(_write(tmp_path, "kind: [Stack\n"), build_registry())


def test_registry_refuses_duplicate_registration() -> None:
    registry = KindRegistry()
    registry.register(API_VERSION, "Stack", lambda document, reg: [])

    with pytest.raises(ValueError, match="already registered"):
        registry.register(API_VERSION, "Stack", lambda document, reg: [])


def test_registries_are_independent() -> None:
    first = build_registry()
    second = KindRegistry()

    assert first.kinds() == ["pulumi.com/v1alpha1/Stack", "pulumi.com/v1alpha1/StackList"]
    assert second.kinds() == []
