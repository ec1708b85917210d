from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from stack_reconciler._fake_controller import InMemoryEngine
from stack_reconciler._lifecycle import ReconcileDeps
from stack_reconciler._models import StackResource, StackSpec
from stack_reconciler._secret_store import MappingSecretStore
from stack_reconciler._source_checkout import SourceCheckout, SourceRequest


def _write_project(project_dir: Path, runtime: str = "python", stack_config: str = "") -> Path:
    project_dir.mkdir(parents=True, exist_ok=True)
    (project_dir / "Pulumi.yaml").write_text(
        f"name: infra\nruntime: {runtime}\n", encoding="utf-8"
    )
    if stack_config:
        (project_dir / "Pulumi.dev.yaml").write_text(stack_config, encoding="utf-8")
    return project_dir


@dataclass
class FakeCheckouts:
    """Record source requests and serve a local project instead of cloning."""

    commit: str = "4f2c1e9a7b3d5f60718293a4b5c6d7e8f9012345"
    stack_config: str = ""
    requests: list[SourceRequest] = field(default_factory=list)

    def prepare(
        self,
        request: SourceRequest,
        workdir: Path,
        *,
        auth_env: dict[str, str] | None = None,
        context: object | None = None,
    ) -> SourceCheckout:
        self.requests.append(request)
        project = _write_project(
            workdir / (request.repo_dir or ""), stack_config=self.stack_config
        )
        return SourceCheckout(root=workdir, project_dir=project, commit=self.commit)


@pytest.fixture
def write_project() -> Callable[..., Path]:
    return _write_project


@pytest.fixture
def secret_store() -> MappingSecretStore:
    return MappingSecretStore(
        secrets={
            "default": {
                "pulumi-token": {"accessToken": "pul-abc123"},
                "git-auth": {"accessToken": "ghp-token"},
                "db": {"password": "hunter2"},
                "cloud-creds": {"AWS_SECRET_ACCESS_KEY": "aws-secret"},
            }
        },
        config_maps={"default": {"cloud-env": {"AWS_REGION": "eu-west-1"}}},
    )


@pytest.fixture
def checkouts(monkeypatch: pytest.MonkeyPatch) -> FakeCheckouts:
    fake = FakeCheckouts()
    monkeypatch.setattr("stack_reconciler._lifecycle.prepare_source", fake.prepare)
    return fake


@pytest.fixture
def engine() -> InMemoryEngine:
    return InMemoryEngine(outputs={"url": "https://dev.example", "dbPassword": "[secret]"})


@pytest.fixture
def deps(
    tmp_path: Path, secret_store: MappingSecretStore, engine: InMemoryEngine
) -> ReconcileDeps:
    return ReconcileDeps(
        secrets=secret_store,
        workspace_root=tmp_path / "workspaces",
        controller_factory=engine,
        environ={"DEPLOY_ENV": "dev"},
    )


@pytest.fixture
def make_stack() -> Callable[..., StackResource]:
    def _make(*, deleting: bool = False, name: str = "dev", **spec_fields: object) -> StackResource:
        fields: dict[str, object] = {
            "stack": "acme/dev",
            "project_repo": "https://git.example/acme/infra.git",
            "branch": "main",
        }
        fields.update(spec_fields)
        return StackResource(name=name, spec=StackSpec(**fields), deleting=deleting)

    return _make
