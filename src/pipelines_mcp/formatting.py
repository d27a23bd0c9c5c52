"""Shared formatting utilities for MCP tool responses.

All markdown rendering for tool responses lives here; tools return the JSON
(dict) form unless ``format="markdown"`` is requested.
"""

from typing import Any

# =============================================================================
# Markdown Formatting Utilities
# =============================================================================


def format_workflow_list_markdown(workflows: list[dict[str, Any]]) -> str:
    """Format workflow list as markdown.

    Args:
        workflows: Workflow summaries (name, description, triggers, jobs)

    Returns:
        Markdown-formatted workflow list with headers
    """
    if not workflows:
        return "No workflows found"

    lines = [f"## Available Workflows ({len(workflows)})", ""]
    for workflow in workflows:
        line = f"- **{workflow['name']}**"
        if workflow.get("description"):
            line += f": {workflow['description']}"
        lines.append(line)
        if workflow.get("triggers"):
            lines.append(f"  - Triggers: {', '.join(workflow['triggers'])}")
        lines.append(f"  - Jobs: {', '.join(workflow['jobs'])}")
    return "\n".join(lines)


def format_workflow_info_markdown(info: dict[str, Any]) -> str:
    """Format workflow info as markdown.

    Args:
        info: Workflow summary from ``WorkflowRegistry.get_workflow_summary``

    Returns:
        Markdown-formatted workflow information with sections
    """
    lines = [f"# Workflow: {info['name']}", ""]
    if info.get("description"):
        lines.extend([info["description"], ""])

    lines.append("## Configuration")
    lines.append(f"- **Triggers**: {', '.join(info['triggers']) or 'none'}")
    lines.append(f"- **Total Jobs**: {len(info['jobs'])}")
    if info.get("source"):
        lines.append(f"- **Source**: {info['source']}")

    lines.append("")
    lines.append("## Jobs")
    for job_id, job in info["jobs"].items():
        job_line = f"- **{job_id}** ({job['steps']} steps)"
        if job.get("needs"):
            job_line += f" - needs: {', '.join(job['needs'])}"
        if job.get("environment"):
            job_line += f" - environment: {job['environment']}"
        lines.append(job_line)
        if job.get("outputs"):
            lines.append(f"  - Outputs: {', '.join(job['outputs'])}")

    lines.append("")
    lines.append("## Execution Waves")
    for index, wave in enumerate(info["waves"], start=1):
        lines.append(f"{index}. {', '.join(wave)}")

    return "\n".join(lines)


def format_run_status_markdown(status: dict[str, Any]) -> str:
    """Format a run status response as markdown.

    Args:
        status: Response of ``RunManager.get_status``

    Returns:
        Markdown with one section per job
    """
    conclusion = status.get("conclusion") or "-"
    lines = [
        f"# Run: {status['run_id']}",
        "",
        f"**Workflow**: {status['workflow']}",
        f"**Status**: {status['status']}",
        f"**Conclusion**: {conclusion}",
    ]
    if status.get("error"):
        lines.append(f"**Error**: {status['error']}")

    pending = status.get("pending_approvals") or []
    if pending:
        lines.append("")
        lines.append("## Waiting for Approval")
        for approval in pending:
            lines.append(
                f"- **{approval['job_id']}** → {approval['environment']} "
                f"({len(approval['approvals'])}/{approval['required_approvals']} approvals)"
            )

    lines.append("")
    lines.append("## Jobs")
    for job_id, job in status["jobs"].items():
        job_line = f"- **{job_id}**: {job['state']}"
        if job.get("conclusion") and job["conclusion"] != job.get("outcome"):
            job_line += f" (outcome {job['outcome']}, conclusion {job['conclusion']})"
        if job.get("cause"):
            job_line += f" [{job['cause']}]"
        lines.append(job_line)
        if job.get("message"):
            lines.append(f"  - {job['message']}")
        for step in job.get("steps", []):
            lines.append(f"  - {step['name']}: {step['conclusion']}")
            for line in step.get("lines", []):
                lines.append(f"    > {line}")

    return "\n".join(lines)


# =============================================================================
# Error Formatting Utilities
# =============================================================================


def format_workflow_not_found_error(
    workflow_name: str, available: list[str], format_type: str = "json"
) -> dict[str, Any] | str:
    """Format workflow not found error with helpful guidance.

    Args:
        workflow_name: The workflow name that was not found
        available: List of available workflow names
        format_type: Response format ("json" or "markdown")

    Returns:
        Error message in requested format with available workflows
    """
    if format_type == "markdown":
        workflow_list = "\n".join(f"- {name}" for name in available)
        return (
            f"**Error**: Workflow not found: `{workflow_name}`\n\n"
            f"**Available workflows:**\n{workflow_list}"
        )
    else:
        return {
            "status": "failure",
            "error": f"Workflow not found: {workflow_name}",
            "available_workflows": available,
        }


def format_run_not_found_error(run_id: str, format_type: str = "json") -> dict[str, Any] | str:
    """Format run not found error."""
    if format_type == "markdown":
        return f"**Error**: Run `{run_id}` not found or expired"
    else:
        return {
            "status": "failure",
            "error": "Run not found",
            "run_id": run_id,
            "message": f"No run found with ID: {run_id}. Use list_runs() to see known runs.",
        }


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Markdown formatters
    "format_workflow_list_markdown",
    "format_workflow_info_markdown",
    "format_run_status_markdown",
    # Error formatters
    "format_workflow_not_found_error",
    "format_run_not_found_error",
]
