"""Shared test configuration for pipelines-mcp tests.

Provides:
- A scripted in-memory sandbox (no processes are spawned)
- A recording approval collaborator
- A factory for run controllers wired to in-memory secrets
- Test secrets as PIPELINE_SECRET_* environment variables
"""

import os
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from test_utils import (
    TEST_SECRETS,
    RecordingApprovalCollaborator,
    ScriptedSandbox,
    workflow_from_yaml,
)

from pipelines_mcp.engine import (
    EnvironmentConfig,
    RunController,
    WorkflowSchema,
)
from pipelines_mcp.engine.secrets import InMemorySecretProvider, ScopedSecretResolver


@pytest.fixture(scope="session", autouse=True)
def setup_test_secrets() -> Iterator[None]:
    """Expose the test secrets as repository secrets in the environment.

    Secret values defined in test_utils.py (single source of truth).
    """
    for key, value in TEST_SECRETS.items():
        os.environ[f"PIPELINE_SECRET_{key}"] = value
    yield
    for key in TEST_SECRETS:
        os.environ.pop(f"PIPELINE_SECRET_{key}", None)


@pytest.fixture
def sandbox() -> ScriptedSandbox:
    return ScriptedSandbox()


@pytest.fixture
def collaborator() -> RecordingApprovalCollaborator:
    return RecordingApprovalCollaborator()


@pytest.fixture
def secrets() -> ScopedSecretResolver:
    """Repository secrets from TEST_SECRETS plus a production-scoped override."""
    return ScopedSecretResolver(
        InMemorySecretProvider(TEST_SECRETS),
        environments={"production": InMemorySecretProvider({"API_KEY": "prod-key-789"})},
        environment_factory=lambda _name: InMemorySecretProvider(),
    )


@pytest.fixture
def make_controller(
    sandbox: ScriptedSandbox,
    collaborator: RecordingApprovalCollaborator,
    secrets: ScopedSecretResolver,
) -> Callable[..., RunController]:
    """Factory building a RunController from YAML (or a schema) with test collaborators.

    Usage:
        controller = make_controller(yaml_text, environments={...}, trigger={...})
        result = await controller.execute()
    """

    def factory(
        workflow: str | WorkflowSchema,
        environments: dict[str, EnvironmentConfig] | None = None,
        **kwargs: Any,
    ) -> RunController:
        if isinstance(workflow, str):
            workflow = workflow_from_yaml(workflow)
        kwargs.setdefault("secrets", secrets)
        kwargs.setdefault("approval_collaborator", collaborator)
        kwargs.setdefault("retry_backoff", 0)
        return RunController(
            workflow,
            sandbox=sandbox,
            run_id="run-test",
            environments=environments,
            **kwargs,
        )

    return factory
