"""MCP tool implementations for pipeline runs.

Every tool reads the shared AppContext from the request lifespan context.
Workflow tools validate and describe registered workflows. Run tools start
runs in the background, report their status and cancel them. Approval tools
act on jobs suspended at a protected environment.

Tools return dicts (or markdown when ``format="markdown"``). Failures come
back as ``{"status": "failure", "error": ...}`` instead of raising, so the
client always gets a structured answer.
"""

from typing import Annotated, Any, Literal

from mcp.types import ToolAnnotations
from pydantic import Field

from .context import AppContextType
from .engine import RunStatus, TriggerContext, load_workflow_from_yaml
from .formatting import (
    format_run_not_found_error,
    format_run_status_markdown,
    format_workflow_info_markdown,
    format_workflow_list_markdown,
    format_workflow_not_found_error,
)
from .server import mcp

# =============================================================================
# Workflow Tools
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Validate Workflow YAML",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def validate_workflow_yaml(
    yaml_content: Annotated[
        str,
        Field(
            description="Complete workflow YAML to validate",
            min_length=10,
            max_length=100000,
        ),
    ],
) -> dict[str, Any]:
    """Validate workflow YAML (structure, needs, cycles, expressions) without running it."""
    load_result = load_workflow_from_yaml(yaml_content, source="<validation>")

    if not load_result.is_success:
        return {
            "valid": False,
            "errors": [
                load_result.error,
                "Common issues: invalid YAML syntax, missing 'name' or 'jobs', a job "
                "without 'steps', 'needs' naming an undefined job, cyclic 'needs', "
                "or a malformed ${{ }} expression.",
            ],
            "warnings": [],
        }

    workflow = load_result.unwrap()
    warnings: list[str] = []
    if not workflow.trigger_events:
        warnings.append("Workflow declares no 'on' triggers")
    for job_id, job in workflow.jobs.items():
        if job.outputs and not job.step_ids:
            warnings.append(
                f"Job '{job_id}' declares outputs but none of its steps has an 'id'"
            )

    return {
        "valid": True,
        "errors": [],
        "warnings": warnings,
        "name": workflow.name,
        "jobs": list(workflow.jobs),
        "waves": workflow.job_graph.execution_waves(),
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Workflows",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_workflows(
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """List registered workflows with their triggers and jobs. Optional: format."""
    app_ctx = ctx.request_context.lifespan_context
    registry = app_ctx.registry

    workflows = [registry.get_workflow_summary(name) for name in registry.list_names()]

    if format == "markdown":
        return format_workflow_list_markdown(workflows)
    return {"workflows": workflows, "total": len(workflows)}


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Workflow Info",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def get_workflow_info(
    workflow: Annotated[
        str,
        Field(description="Workflow name to inspect", min_length=1, max_length=200),
    ],
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """Get workflow details (jobs, needs, environments, execution waves). Required: workflow."""
    app_ctx = ctx.request_context.lifespan_context
    registry = app_ctx.registry

    if workflow not in registry:
        return format_workflow_not_found_error(workflow, registry.list_names(), format)

    info = registry.get_workflow_summary(workflow)
    if format == "markdown":
        return format_workflow_info_markdown(info)
    return info


# =============================================================================
# Run Tools
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Start Run",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,  # Every call creates a new run
        openWorldHint=True,  # Steps run shell commands
    )
)
async def start_run(
    workflow: Annotated[
        str,
        Field(
            description="Workflow name (use list_workflows() to discover)",
            min_length=1,
            max_length=200,
        ),
    ],
    inputs: Annotated[
        dict[str, Any] | None,
        Field(description="Run inputs for ${{ inputs.* }}"),
    ] = None,
    ref: Annotated[
        str,
        Field(description="Git ref the run is for (checked against deployment branches)"),
    ] = "refs/heads/main",
    actor: Annotated[
        str,
        Field(description="Who triggered the run (github.actor)", max_length=200),
    ] = "",
    event_name: Annotated[
        str,
        Field(description="Trigger event name (github.event_name)", max_length=100),
    ] = "workflow_dispatch",
    sha: Annotated[str, Field(description="Commit SHA (github.sha)", max_length=64)] = "",
    repository: Annotated[
        str, Field(description="Repository (github.repository)", max_length=200)
    ] = "",
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Start a workflow run in the background. Required: workflow. Returns run_id."""
    app_ctx = ctx.request_context.lifespan_context
    registry = app_ctx.registry

    if workflow not in registry:
        result = format_workflow_not_found_error(workflow, registry.list_names())
        assert isinstance(result, dict)
        return result

    trigger = TriggerContext(
        event_name=event_name,
        ref=ref,
        sha=sha,
        actor=actor,
        repository=repository,
    )
    run_id = app_ctx.run_manager.start_run(registry.get(workflow), inputs=inputs, trigger=trigger)

    return {
        "run_id": run_id,
        "status": RunStatus.QUEUED.value,
        "workflow": workflow,
        "message": "Run started. Use get_run_status() to check progress.",
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Run Status",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def get_run_status(
    run_id: Annotated[str, Field(description="Run ID from start_run", min_length=1)],
    include_logs: Annotated[
        bool, Field(description="Include (masked) step output lines")
    ] = False,
    include_events: Annotated[
        bool, Field(description="Include the run's most recent events")
    ] = False,
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """Get run status, job states, outputs and conclusion. Required: run_id."""
    app_ctx = ctx.request_context.lifespan_context
    run_manager = app_ctx.run_manager

    try:
        status = run_manager.get_status(run_id, include_logs=include_logs)
    except KeyError:
        return format_run_not_found_error(run_id, format)

    if include_events:
        status["events"] = run_manager.get_events(run_id)

    if format == "markdown":
        return format_run_status_markdown(status)
    return status


@mcp.tool(
    annotations=ToolAnnotations(
        title="Cancel Run",
        readOnlyHint=False,
        destructiveHint=True,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def cancel_run(
    run_id: Annotated[str, Field(description="Run ID to cancel", min_length=1)],
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Cancel a running run; always() and cancelled() steps still run. Required: run_id."""
    app_ctx = ctx.request_context.lifespan_context

    try:
        cancelled = app_ctx.run_manager.cancel(run_id)
    except KeyError:
        result = format_run_not_found_error(run_id)
        assert isinstance(result, dict)
        return result

    return {
        "run_id": run_id,
        "cancelled": cancelled,
        "message": "Cancellation requested" if cancelled else "Run already completed",
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Runs",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_runs(
    status: Annotated[
        Literal["queued", "in_progress", "completed"] | None,
        Field(description="Filter by run status"),
    ] = None,
    limit: Annotated[int, Field(description="Maximum runs to return", ge=1, le=1000)] = 100,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """List runs, most recent first. Optional: status (filter), limit (default 100)."""
    app_ctx = ctx.request_context.lifespan_context
    run_manager = app_ctx.run_manager

    status_filter = RunStatus(status) if status else None
    runs = run_manager.list_runs(status=status_filter, limit=limit)
    return {"runs": runs, "total": len(run_manager), "filtered": len(runs)}


# =============================================================================
# Deployment Approval Tools
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Pending Approvals",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_pending_approvals(*, ctx: AppContextType) -> dict[str, Any]:
    """List jobs waiting for deployment approval across all runs. No parameters."""
    app_ctx = ctx.request_context.lifespan_context
    pending = app_ctx.run_manager.pending_approvals()
    return {"pending": pending, "total": len(pending)}


@mcp.tool(
    annotations=ToolAnnotations(
        title="Approve Deployment",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,  # Repeated approvals by one reviewer count once
        openWorldHint=False,
    )
)
async def approve_deployment(
    run_id: Annotated[str, Field(description="Run ID", min_length=1)],
    job_id: Annotated[str, Field(description="Gated job to approve", min_length=1)],
    reviewer: Annotated[str, Field(description="Approving reviewer", min_length=1)],
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Approve a gated job's deployment. Required: run_id, job_id, reviewer."""
    app_ctx = ctx.request_context.lifespan_context

    try:
        released = app_ctx.run_manager.approve(run_id, job_id, reviewer)
    except (KeyError, PermissionError) as e:
        return {
            "status": "failure",
            "run_id": run_id,
            "job_id": job_id,
            "error": str(e.args[0]) if e.args else str(e),
            "message": "Use list_pending_approvals() to see jobs waiting for approval.",
        }

    return {
        "status": "success",
        "run_id": run_id,
        "job_id": job_id,
        "released": released,
        "message": (
            "Deployment approved; the job will proceed"
            if released
            else "Approval recorded; more approvals are required"
        ),
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="Reject Deployment",
        readOnlyHint=False,
        destructiveHint=True,  # The gated job fails
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def reject_deployment(
    run_id: Annotated[str, Field(description="Run ID", min_length=1)],
    job_id: Annotated[str, Field(description="Gated job to reject", min_length=1)],
    reviewer: Annotated[str, Field(description="Rejecting reviewer", min_length=1)],
    comment: Annotated[
        str | None, Field(description="Reason for the rejection", max_length=2000)
    ] = None,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Reject a gated job's deployment; the job fails. Required: run_id, job_id, reviewer."""
    app_ctx = ctx.request_context.lifespan_context

    try:
        app_ctx.run_manager.reject(run_id, job_id, reviewer, comment)
    except (KeyError, PermissionError) as e:
        return {
            "status": "failure",
            "run_id": run_id,
            "job_id": job_id,
            "error": str(e.args[0]) if e.args else str(e),
            "message": "Use list_pending_approvals() to see jobs waiting for approval.",
        }

    return {
        "status": "success",
        "run_id": run_id,
        "job_id": job_id,
        "message": "Deployment rejected; the job fails with cause DeploymentRejected",
    }
