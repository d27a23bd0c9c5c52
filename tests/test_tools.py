"""Tests for the MCP tool functions.

Tools are called directly with a mocked MCP context whose
``request_context.lifespan_context`` is a real AppContext.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from test_utils import workflow_from_yaml

from pipelines_mcp.context import AppContext
from pipelines_mcp.engine import EnvironmentConfig, RunManager, WorkflowRegistry
from pipelines_mcp.server import get_max_parallel_jobs, load_environments
from pipelines_mcp.tools import (
    approve_deployment,
    cancel_run,
    get_run_status,
    get_workflow_info,
    list_pending_approvals,
    list_runs,
    list_workflows,
    reject_deployment,
    start_run,
    validate_workflow_yaml,
)

DEPLOY_WORKFLOW = """
name: test-deploy
description: Build then deploy to production
on: workflow_dispatch
jobs:
  build:
    steps:
      - id: meta
        run: set version=${{ inputs.version }}
    outputs:
      version: ${{ steps.meta.outputs.version }}
  deploy:
    needs: build
    if: github.ref == 'refs/heads/main'
    environment: production
    steps:
      - run: echo ${{ github.actor }} deploys ${{ needs.build.outputs.version }}
"""


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def mock_context(sandbox, secrets, collaborator):
    """Create mock MCP context with AppContext for unit testing MCP tools.

    - WorkflowRegistry with a build/deploy workflow
    - RunManager on the scripted sandbox with a protected production environment

    Returns:
        Mock context object with request_context.lifespan_context structure
    """
    registry = WorkflowRegistry()
    registry.register(workflow_from_yaml(DEPLOY_WORKFLOW))

    environments = {
        "production": EnvironmentConfig(
            name="production", required_reviewers=1, reviewers=["alice", "bob"]
        )
    }
    run_manager = RunManager(
        sandbox_factory=lambda: sandbox,
        environments=environments,
        secrets=secrets,
        approval_collaborator=collaborator,
    )

    app_context = AppContext(
        registry=registry,
        run_manager=run_manager,
        environments=environments,
    )

    mock_ctx = MagicMock()
    mock_ctx.request_context.lifespan_context = app_context

    return mock_ctx


async def wait_for_completion(mock_context, run_id: str) -> dict:
    run_manager = mock_context.request_context.lifespan_context.run_manager
    await asyncio.wait_for(run_manager.get(run_id).task, timeout=5)
    return await get_run_status(run_id=run_id, ctx=mock_context)


# =============================================================================
# Workflow Tools
# =============================================================================


class TestValidateWorkflowYaml:
    @pytest.mark.asyncio
    async def test_valid_workflow(self) -> None:
        result = await validate_workflow_yaml(yaml_content=DEPLOY_WORKFLOW)

        assert result["valid"] is True
        assert result["errors"] == []
        assert result["name"] == "test-deploy"
        assert result["jobs"] == ["build", "deploy"]
        assert result["waves"] == [["build"], ["deploy"]]

    @pytest.mark.asyncio
    async def test_cycle_is_reported(self) -> None:
        result = await validate_workflow_yaml(
            yaml_content=(
                "name: cyclic\njobs:\n  a:\n    needs: b\n    steps:\n      - run: x\n"
                "  b:\n    needs: a\n    steps:\n      - run: x\n"
            )
        )

        assert result["valid"] is False
        assert "Cyclic dependency" in result["errors"][0]

    @pytest.mark.asyncio
    async def test_warnings(self) -> None:
        result = await validate_workflow_yaml(
            yaml_content=(
                "name: quiet\njobs:\n  a:\n    outputs:\n      v: x\n"
                "    steps:\n      - run: echo hi\n"
            )
        )

        assert result["valid"] is True
        assert any("no 'on' triggers" in w for w in result["warnings"])
        assert any("Job 'a' declares outputs" in w for w in result["warnings"])


class TestWorkflowDiscovery:
    @pytest.mark.asyncio
    async def test_list_workflows_json(self, mock_context) -> None:
        result = await list_workflows(ctx=mock_context)

        assert result["total"] == 1
        assert result["workflows"][0]["name"] == "test-deploy"
        assert result["workflows"][0]["triggers"] == ["workflow_dispatch"]

    @pytest.mark.asyncio
    async def test_list_workflows_markdown(self, mock_context) -> None:
        result = await list_workflows(format="markdown", ctx=mock_context)

        assert isinstance(result, str)
        assert "**test-deploy**" in result
        assert "Jobs: build, deploy" in result

    @pytest.mark.asyncio
    async def test_get_workflow_info(self, mock_context) -> None:
        result = await get_workflow_info(workflow="test-deploy", ctx=mock_context)

        assert result["jobs"]["deploy"]["needs"] == ["build"]
        assert result["jobs"]["deploy"]["environment"] == "production"
        assert result["waves"] == [["build"], ["deploy"]]

        markdown = await get_workflow_info(
            workflow="test-deploy", format="markdown", ctx=mock_context
        )
        assert "# Workflow: test-deploy" in markdown
        assert "environment: production" in markdown

    @pytest.mark.asyncio
    async def test_get_workflow_info_not_found(self, mock_context) -> None:
        result = await get_workflow_info(workflow="missing", ctx=mock_context)

        assert result["status"] == "failure"
        assert "not found" in result["error"].lower()
        assert result["available_workflows"] == ["test-deploy"]


# =============================================================================
# Run Tools
# =============================================================================


class TestRunTools:
    @pytest.mark.asyncio
    async def test_start_run_not_found(self, mock_context) -> None:
        result = await start_run(workflow="non-existent-workflow", ctx=mock_context)

        assert result["status"] == "failure"
        assert "available_workflows" in result

    @pytest.mark.asyncio
    async def test_run_on_other_branch_skips_deploy(self, mock_context, collaborator) -> None:
        started = await start_run(
            workflow="test-deploy",
            inputs={"version": "3.0"},
            ref="refs/heads/feature",
            ctx=mock_context,
        )
        assert started["status"] == "queued"

        status = await wait_for_completion(mock_context, started["run_id"])

        assert status["status"] == "completed"
        assert status["conclusion"] == "success"
        assert status["jobs"]["build"]["outputs"] == {"version": "3.0"}
        assert status["jobs"]["deploy"]["conclusion"] == "skipped"
        assert collaborator.requests == []

    @pytest.mark.asyncio
    async def test_gated_run_approved_through_tools(
        self, mock_context, collaborator, sandbox
    ) -> None:
        started = await start_run(
            workflow="test-deploy", inputs={"version": "3.1"}, actor="ci-bot", ctx=mock_context
        )
        run_id = started["run_id"]
        await asyncio.wait_for(collaborator.requested.wait(), timeout=2)

        pending = await list_pending_approvals(ctx=mock_context)
        assert pending["total"] == 1
        assert pending["pending"][0]["job_id"] == "deploy"

        markdown = await get_run_status(run_id=run_id, format="markdown", ctx=mock_context)
        assert "## Waiting for Approval" in markdown

        denied = await approve_deployment(
            run_id=run_id, job_id="deploy", reviewer="mallory", ctx=mock_context
        )
        assert denied["status"] == "failure"
        assert "not a reviewer" in denied["error"]

        approved = await approve_deployment(
            run_id=run_id, job_id="deploy", reviewer="alice", ctx=mock_context
        )
        assert approved["status"] == "success"
        assert approved["released"] is True

        status = await wait_for_completion(mock_context, run_id)
        assert status["conclusion"] == "success"
        assert sandbox.first_call("deploy/").run == "echo ci-bot deploys 3.1"

    @pytest.mark.asyncio
    async def test_gated_run_rejected_through_tools(self, mock_context, collaborator) -> None:
        started = await start_run(workflow="test-deploy", ctx=mock_context)
        run_id = started["run_id"]
        await asyncio.wait_for(collaborator.requested.wait(), timeout=2)

        result = await reject_deployment(
            run_id=run_id, job_id="deploy", reviewer="bob", comment="not now", ctx=mock_context
        )
        assert result["status"] == "success"

        status = await wait_for_completion(mock_context, run_id)
        assert status["conclusion"] == "failure"
        assert status["jobs"]["deploy"]["cause"] == "DeploymentRejected"

    @pytest.mark.asyncio
    async def test_approve_job_that_is_not_waiting(self, mock_context) -> None:
        started = await start_run(
            workflow="test-deploy", ref="refs/heads/dev", ctx=mock_context
        )
        await wait_for_completion(mock_context, started["run_id"])

        result = await approve_deployment(
            run_id=started["run_id"], job_id="deploy", reviewer="alice", ctx=mock_context
        )

        assert result["status"] == "failure"
        assert "not waiting for approval" in result["error"]

    @pytest.mark.asyncio
    async def test_get_run_status_not_found(self, mock_context) -> None:
        result = await get_run_status(run_id="run_missing", ctx=mock_context)
        assert result["status"] == "failure"
        assert result["error"] == "Run not found"

        markdown = await get_run_status(run_id="run_missing", format="markdown", ctx=mock_context)
        assert "not found" in markdown

    @pytest.mark.asyncio
    async def test_get_run_status_with_logs_and_events(self, mock_context) -> None:
        started = await start_run(
            workflow="test-deploy", inputs={"version": "1"}, ref="refs/tags/v1", ctx=mock_context
        )
        await wait_for_completion(mock_context, started["run_id"])

        status = await get_run_status(
            run_id=started["run_id"], include_logs=True, include_events=True, ctx=mock_context
        )

        assert status["jobs"]["build"]["steps"][0]["lines"] == []
        assert status["events"][-1]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_cancel_and_list_runs(self, mock_context, collaborator) -> None:
        started = await start_run(workflow="test-deploy", ctx=mock_context)
        run_id = started["run_id"]
        await asyncio.wait_for(collaborator.requested.wait(), timeout=2)

        in_progress = await list_runs(status="in_progress", ctx=mock_context)
        assert [r["run_id"] for r in in_progress["runs"]] == [run_id]
        assert in_progress["runs"][0]["pending_approvals"] == ["deploy"]

        result = await cancel_run(run_id=run_id, ctx=mock_context)
        assert result["cancelled"] is True

        status = await wait_for_completion(mock_context, run_id)
        assert status["conclusion"] == "cancelled"

        again = await cancel_run(run_id=run_id, ctx=mock_context)
        assert again["cancelled"] is False

        completed = await list_runs(status="completed", ctx=mock_context)
        assert completed["total"] == 1
        assert completed["filtered"] == 1

    @pytest.mark.asyncio
    async def test_cancel_unknown_run(self, mock_context) -> None:
        result = await cancel_run(run_id="run_missing", ctx=mock_context)
        assert result["status"] == "failure"


# =============================================================================
# Server Configuration
# =============================================================================


class TestServerConfiguration:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("", None), ("0", None), ("4", 4), ("5000", 1000), ("abc", None)],
    )
    def test_max_parallel_jobs(self, monkeypatch, raw, expected) -> None:
        monkeypatch.setenv("PIPELINES_MAX_PARALLEL_JOBS", raw)
        assert get_max_parallel_jobs() == expected

    def test_load_environments_from_file(self, monkeypatch, tmp_path) -> None:
        path = tmp_path / "environments.yaml"
        path.write_text("production:\n  required_reviewers: 2\n")
        monkeypatch.setenv("PIPELINES_ENVIRONMENTS_FILE", str(path))

        environments = load_environments()

        assert environments["production"].required_reviewers == 2

    def test_load_environments_unset(self, monkeypatch) -> None:
        monkeypatch.delenv("PIPELINES_ENVIRONMENTS_FILE", raising=False)
        assert load_environments() == {}

    def test_load_environments_invalid_file(self, monkeypatch, tmp_path) -> None:
        monkeypatch.setenv("PIPELINES_ENVIRONMENTS_FILE", str(tmp_path / "missing.yaml"))
        with pytest.raises(RuntimeError):
            load_environments()
