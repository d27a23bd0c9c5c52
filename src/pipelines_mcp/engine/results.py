"""
Result tree of a run: run -> jobs -> steps.

Results are pydantic models so MCP tools can serialize them directly.
``to_response()`` is the single place that shapes a result for a tool
response; everything in the tree has already been masked by the time it is
built.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from .status import FailureCause, JobState, Outcome, RunStatus, StepState


def _now() -> datetime:
    return datetime.now(UTC)


class StepResult(BaseModel):
    """Outcome of one step."""

    index: int = Field(description="Position of the step in its job")
    id: str | None = Field(default=None, description="Step id, if declared")
    name: str = Field(description="Display name")
    status: StepState = Field(default=StepState.PENDING)
    outcome: Outcome | None = Field(
        default=None, description="What happened (before continue-on-error)"
    )
    conclusion: Outcome | None = Field(
        default=None, description="What later steps see (after continue-on-error)"
    )
    cause: FailureCause | None = None
    message: str | None = None
    exit_code: int | None = None
    attempts: int = Field(default=0, description="Sandbox invocations (retries included)")
    outputs: dict[str, str] = Field(default_factory=dict)
    lines: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def skipped(cls, index: int, step_id: str | None, name: str) -> StepResult:
        now = _now()
        return cls(
            index=index,
            id=step_id,
            name=name,
            status=StepState.COMPLETED,
            outcome=Outcome.SKIPPED,
            conclusion=Outcome.SKIPPED,
            started_at=now,
            completed_at=now,
        )

    def to_response(self, include_logs: bool = False) -> dict[str, Any]:
        response: dict[str, Any] = {
            "index": self.index,
            "id": self.id,
            "name": self.name,
            "outcome": self.outcome.value if self.outcome else None,
            "conclusion": self.conclusion.value if self.conclusion else None,
        }
        if self.cause:
            response["cause"] = self.cause.value
        if self.message:
            response["message"] = self.message
        if self.exit_code is not None:
            response["exit_code"] = self.exit_code
        if self.attempts > 1:
            response["attempts"] = self.attempts
        if self.outputs:
            response["outputs"] = dict(self.outputs)
        if include_logs:
            response["lines"] = list(self.lines)
        return response


class JobResult(BaseModel):
    """Outcome of one job, including its steps."""

    job_id: str
    name: str
    state: JobState = Field(default=JobState.PENDING)
    outcome: Outcome | None = None
    conclusion: Outcome | None = None
    cause: FailureCause | None = None
    message: str | None = None
    environment: str | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    steps: list[StepResult] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def result(self) -> str:
        """Value dependents read as ``needs.<job>.result``."""
        if self.conclusion is None:
            return ""
        return self.conclusion.value

    def finish(
        self,
        state: JobState,
        outcome: Outcome,
        conclusion: Outcome | None = None,
        cause: FailureCause | None = None,
        message: str | None = None,
    ) -> None:
        """Record the terminal state of the job."""
        self.state = state
        self.outcome = outcome
        self.conclusion = conclusion or outcome
        self.cause = cause
        self.message = message
        self.completed_at = _now()

    def to_response(self, include_logs: bool = False) -> dict[str, Any]:
        response: dict[str, Any] = {
            "name": self.name,
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "conclusion": self.conclusion.value if self.conclusion else None,
        }
        if self.cause:
            response["cause"] = self.cause.value
        if self.message:
            response["message"] = self.message
        if self.environment:
            response["environment"] = self.environment
        if self.outputs:
            response["outputs"] = dict(self.outputs)
        if self.steps:
            response["steps"] = [step.to_response(include_logs) for step in self.steps]
        return response


class RunResult(BaseModel):
    """Aggregated outcome of a run."""

    run_id: str
    workflow: str
    status: RunStatus = Field(default=RunStatus.QUEUED)
    conclusion: Outcome | None = None
    jobs: dict[str, JobResult] = Field(default_factory=dict)
    error: str | None = Field(default=None, description="Run-level error (validation)")
    created_at: datetime = Field(default_factory=_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.status.is_completed()

    def to_response(self, include_logs: bool = False) -> dict[str, Any]:
        """Format for MCP tool responses."""
        response: dict[str, Any] = {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "status": self.status.value,
            "conclusion": self.conclusion.value if self.conclusion else None,
            "jobs": {job_id: job.to_response(include_logs) for job_id, job in self.jobs.items()},
        }
        if self.error:
            response["error"] = self.error
        if self.started_at:
            response["started_at"] = self.started_at.isoformat()
        if self.completed_at:
            response["completed_at"] = self.completed_at.isoformat()
        return response
