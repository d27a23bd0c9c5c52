"""Tests for RunManager (background runs addressable by id)."""

import asyncio

import pytest
from test_utils import workflow_from_yaml

from pipelines_mcp.engine import EnvironmentConfig, RunManager, RunStatus

DEPLOY_WORKFLOW = """
name: deploy
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
    environment: production
    steps:
      - run: echo deploying ${{ needs.build.outputs.version }}
"""

SLOW_WORKFLOW = """
name: slow
on: push
jobs:
  wait:
    steps:
      - run: sleep 5
"""


@pytest.fixture
def run_manager(sandbox, secrets, collaborator):
    """RunManager whose runs share the scripted sandbox."""
    return RunManager(
        sandbox_factory=lambda: sandbox,
        environments={
            "production": EnvironmentConfig(name="production", required_reviewers=1)
        },
        secrets=secrets,
        approval_collaborator=collaborator,
    )


async def wait_for_run(manager: RunManager, run_id: str) -> dict:
    await asyncio.wait_for(manager.get(run_id).task, timeout=5)
    return manager.get_status(run_id)


@pytest.mark.asyncio
async def test_start_run_returns_immediately(run_manager):
    run_id = run_manager.start_run(workflow_from_yaml(SLOW_WORKFLOW))

    assert run_id.startswith("run_")
    assert run_manager.get_status(run_id)["status"] in ("queued", "in_progress")
    assert len(run_manager) == 1

    assert run_manager.cancel(run_id) is True
    status = await wait_for_run(run_manager, run_id)
    assert status["status"] == "completed"
    assert status["conclusion"] == "cancelled"
    assert run_manager.cancel(run_id) is False


@pytest.mark.asyncio
async def test_approval_flow(run_manager, collaborator, sandbox):
    run_id = run_manager.start_run(workflow_from_yaml(DEPLOY_WORKFLOW), inputs={"version": "2.1"})
    await asyncio.wait_for(collaborator.requested.wait(), timeout=2)

    pending = run_manager.pending_approvals()
    assert len(pending) == 1
    assert pending[0]["run_id"] == run_id
    assert pending[0]["job_id"] == "deploy"
    assert pending[0]["environment"] == "production"

    status = run_manager.get_status(run_id)
    assert status["jobs"]["deploy"]["state"] == "gated"
    assert status["pending_approvals"][0]["required_approvals"] == 1

    assert run_manager.approve(run_id, "deploy", reviewer="alice") is True
    status = await wait_for_run(run_manager, run_id)

    assert status["conclusion"] == "success"
    assert status["jobs"]["build"]["outputs"] == {"version": "2.1"}
    assert sandbox.first_call("deploy/").run == "echo deploying 2.1"
    assert run_manager.pending_approvals() == []


@pytest.mark.asyncio
async def test_reject_flow(run_manager, collaborator):
    run_id = run_manager.start_run(workflow_from_yaml(DEPLOY_WORKFLOW), inputs={"version": "1"})
    await asyncio.wait_for(collaborator.requested.wait(), timeout=2)

    run_manager.reject(run_id, "deploy", reviewer="bob", comment="freeze")
    status = await wait_for_run(run_manager, run_id)

    assert status["conclusion"] == "failure"
    assert status["jobs"]["deploy"]["cause"] == "DeploymentRejected"


@pytest.mark.asyncio
async def test_unknown_run_and_job_raise_key_error(run_manager):
    with pytest.raises(KeyError):
        run_manager.get_status("run_missing")
    with pytest.raises(KeyError):
        run_manager.cancel("run_missing")

    run_id = run_manager.start_run(workflow_from_yaml(SLOW_WORKFLOW))
    with pytest.raises(KeyError):
        run_manager.approve(run_id, "wait", reviewer="alice")
    run_manager.cancel(run_id)
    await wait_for_run(run_manager, run_id)


@pytest.mark.asyncio
async def test_status_logs_and_events(run_manager):
    workflow = workflow_from_yaml(
        """
name: logs
on: push
jobs:
  a:
    steps:
      - run: |
          echo token ${{ secrets.DEPLOY_TOKEN }}
          echo done
"""
    )
    run_id = run_manager.start_run(workflow)
    await wait_for_run(run_manager, run_id)

    without_logs = run_manager.get_status(run_id)
    with_logs = run_manager.get_status(run_id, include_logs=True)

    assert "lines" not in without_logs["jobs"]["a"]["steps"][0]
    assert with_logs["jobs"]["a"]["steps"][0]["lines"] == ["token ***", "done"]

    events = run_manager.get_events(run_id)
    assert events[0]["status"] == "in_progress"
    assert events[-1]["status"] == "completed"
    assert len(run_manager.get_events(run_id, limit=2)) == 2


@pytest.mark.asyncio
async def test_list_runs_filters_by_status(run_manager):
    unprotected = DEPLOY_WORKFLOW.replace("environment: production", "environment: preview")
    finished = run_manager.start_run(workflow_from_yaml(unprotected))
    await wait_for_run(run_manager, finished)
    active = run_manager.start_run(workflow_from_yaml(SLOW_WORKFLOW))

    all_runs = run_manager.list_runs()
    completed = run_manager.list_runs(status=RunStatus.COMPLETED)

    assert [r["run_id"] for r in all_runs] == [active, finished]
    assert [r["run_id"] for r in completed] == [finished]
    assert completed[0]["conclusion"] == "success"
    assert len(run_manager.list_runs(limit=1)) == 1

    run_manager.cancel(active)
    await wait_for_run(run_manager, active)


@pytest.mark.asyncio
async def test_cleanup_evicts_runs_beyond_history_limit(sandbox):
    manager = RunManager(sandbox_factory=lambda: sandbox, max_runs=1)
    workflow = workflow_from_yaml(
        "name: quick\non: push\njobs:\n  a:\n    steps:\n      - run: echo hi\n"
    )

    first = manager.start_run(workflow)
    await wait_for_run(manager, first)
    second = manager.start_run(workflow)
    await wait_for_run(manager, second)

    assert manager.cleanup() == 1
    assert len(manager) == 1
    with pytest.raises(KeyError):
        manager.get(first)
    assert manager.get(second).run_id == second


@pytest.mark.asyncio
async def test_shutdown_cancels_active_runs(run_manager):
    run_id = run_manager.start_run(workflow_from_yaml(SLOW_WORKFLOW))

    await run_manager.shutdown(grace_period=2)

    assert run_manager.get_status(run_id)["conclusion"] == "cancelled"
