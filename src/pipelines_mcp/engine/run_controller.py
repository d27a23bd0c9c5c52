"""
Run controller: top-level driver of one workflow run.

Wires the collaborators of a run together (masker, output store, event
stream, step executor, job runner, environment gate, scheduler), seeds the
expression context from the trigger, drives the scheduler to completion and
computes the run conclusion:

    cancelled  if a cancel signal was observed before natural completion
    failure    else, if any job concluded failure
    success    otherwise

Usage:
    controller = RunController(workflow, sandbox=ShellSandbox())
    controller.start()
    ...
    controller.approve("deploy", reviewer="alice")
    result = await controller.wait()
"""

import asyncio
import logging
import platform
import tempfile
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .environments import (
    ApprovalCollaborator,
    EnvironmentConfig,
    EnvironmentGateCoordinator,
    PendingApproval,
    ref_name,
)
from .events import EventStream
from .exceptions import WorkflowValidationError
from .expressions import ExpressionContext
from .job_runner import JobRunner
from .output_store import OutputStore
from .results import RunResult
from .sandbox import Sandbox
from .scheduler import DependencyScheduler
from .schema import WorkflowSchema
from .secrets import EnvVarSecretProvider, ScopedSecretResolver, SecretMasker
from .status import Outcome, RunStatus
from .step_executor import DEFAULT_MAX_SANDBOX_RETRIES, StepExecutor

logger = logging.getLogger(__name__)


class TriggerContext(BaseModel):
    """What triggered the run; exposed to expressions as ``github.*``."""

    event_name: str = Field(default="workflow_dispatch")
    ref: str = Field(default="refs/heads/main")
    sha: str = Field(default="")
    actor: str = Field(default="")
    repository: str = Field(default="")
    run_number: int = Field(default=1, ge=1)
    event: dict[str, Any] = Field(default_factory=dict, description="Event payload")

    def to_github(self, run_id: str, workflow: str, inputs: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "event_name": self.event_name,
            "ref": self.ref,
            "ref_name": ref_name(self.ref),
            "sha": self.sha,
            "actor": self.actor,
            "repository": self.repository,
            "run_id": run_id,
            "run_number": self.run_number,
            "workflow": workflow,
            "event": {**self.event, "inputs": dict(inputs)},
        }


def _coerce_workflow(workflow: WorkflowSchema | Mapping[str, Any]) -> WorkflowSchema:
    """
    Raises:
        WorkflowValidationError: If the document is invalid
        CyclicDependencyError: If the needs relation contains a cycle
    """
    if isinstance(workflow, WorkflowSchema):
        return workflow
    try:
        return WorkflowSchema.model_validate(dict(workflow))
    except ValidationError as e:
        raise WorkflowValidationError(
            f"Invalid workflow: {e.error_count()} validation error(s)",
            [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
        ) from e


class RunController:
    """
    Owns the lifecycle of one run.

    Args:
        workflow: Validated workflow, or a raw document to validate
        sandbox: Where steps run
        run_id: Run id (generated when omitted)
        trigger: Trigger metadata (dict or TriggerContext)
        inputs: Run inputs (merged over workflow_dispatch input defaults)
        secrets: Scoped secret resolver (default: environment variables)
        environments: Environment protection rules by name
        approval_collaborator: Notified when a job needs approval
        max_parallel_jobs: Bound on concurrently running jobs
        max_sandbox_retries: Extra attempts after a SandboxError
        retry_backoff: Seconds before the first sandbox retry

    Raises:
        WorkflowValidationError: If ``workflow`` is an invalid raw document
        CyclicDependencyError: If the needs relation contains a cycle
    """

    def __init__(
        self,
        workflow: WorkflowSchema | Mapping[str, Any],
        sandbox: Sandbox,
        run_id: str | None = None,
        trigger: TriggerContext | Mapping[str, Any] | None = None,
        inputs: Mapping[str, Any] | None = None,
        secrets: ScopedSecretResolver | None = None,
        environments: Mapping[str, EnvironmentConfig] | None = None,
        approval_collaborator: ApprovalCollaborator | None = None,
        max_parallel_jobs: int | None = None,
        max_sandbox_retries: int = DEFAULT_MAX_SANDBOX_RETRIES,
        retry_backoff: float = 0.5,
    ):
        self.workflow = _coerce_workflow(workflow)
        self.graph = self.workflow.job_graph
        self.run_id = run_id or str(uuid.uuid4())
        if trigger is None:
            trigger = TriggerContext()
        elif not isinstance(trigger, TriggerContext):
            trigger = TriggerContext.model_validate(dict(trigger))
        self.trigger = trigger
        self.inputs: dict[str, Any] = {**self.workflow.input_defaults(), **dict(inputs or {})}

        self.masker = SecretMasker()
        self.cancel_event = asyncio.Event()
        self.output_store = OutputStore(self.masker)
        self.events = EventStream(self.run_id, self.masker)
        self.secrets = secrets or ScopedSecretResolver(EnvVarSecretProvider())
        self.gate = EnvironmentGateCoordinator(environments, approval_collaborator)

        self.executor = StepExecutor(
            sandbox,
            masker=self.masker,
            events=self.events,
            cancel_event=self.cancel_event,
            max_sandbox_retries=max_sandbox_retries,
            retry_backoff=retry_backoff,
        )
        self.job_runner = JobRunner(
            self.executor,
            self.output_store,
            workflow_env=self.workflow.env,
            workflow_defaults=self.workflow.defaults,
            secrets=self.secrets,
            masker=self.masker,
            events=self.events,
            cancel_event=self.cancel_event,
            run_id=self.run_id,
        )
        self.scheduler = DependencyScheduler(
            self.workflow,
            self.job_runner,
            self.output_store,
            base_context=self._base_context(),
            gate=self.gate,
            events=self.events,
            cancel_event=self.cancel_event,
            max_parallel_jobs=max_parallel_jobs,
            masker=self.masker,
            ref=self.trigger.ref,
            actor=self.trigger.actor,
        )

        self._result = RunResult(
            run_id=self.run_id,
            workflow=self.workflow.name,
            jobs=self.scheduler.results,
        )
        self._task: asyncio.Task[RunResult] | None = None
        self._cancel_observed = False

    def _base_context(self) -> ExpressionContext:
        return ExpressionContext(
            github=self.trigger.to_github(self.run_id, self.workflow.name, self.inputs),
            inputs=self.inputs,
            runner={
                "os": platform.system(),
                "arch": platform.machine(),
                "temp": tempfile.gettempdir(),
            },
        )

    @property
    def status(self) -> RunStatus:
        return self._result.status

    @property
    def is_completed(self) -> bool:
        return self._result.is_completed

    def start(self) -> asyncio.Task[RunResult]:
        """Start the run in the background (idempotent)."""
        if self._task is None:
            self._task = asyncio.create_task(self.execute(), name=f"run:{self.run_id}")
        return self._task

    async def wait(self) -> RunResult:
        """Wait for the run to finish (starting it if needed)."""
        return await self.start()

    async def execute(self) -> RunResult:
        """Run the workflow to completion and return the masked result tree."""
        if self._result.status != RunStatus.QUEUED:
            raise RuntimeError(f"Run {self.run_id} was already started")

        self._result.status = RunStatus.IN_PROGRESS
        self._result.started_at = datetime.now(UTC)
        self.events.publish(RunStatus.IN_PROGRESS.value, message=f"Run of '{self.workflow.name}'")
        logger.info(
            f"Run {self.run_id} of '{self.workflow.name}' started "
            f"({len(self.graph)} jobs, ref={self.trigger.ref})"
        )

        try:
            await self.scheduler.run()
        finally:
            self._result.jobs = self.scheduler.results
            self._result.conclusion = self._conclusion()
            self._result.status = RunStatus.COMPLETED
            self._result.completed_at = datetime.now(UTC)
            self.events.publish(
                RunStatus.COMPLETED.value,
                message=f"conclusion={self._result.conclusion.value}",
            )
            self.events.close()
            logger.info(
                f"Run {self.run_id} completed: conclusion={self._result.conclusion.value}"
            )

        return self.snapshot()

    def _conclusion(self) -> Outcome:
        if self._cancel_observed:
            return Outcome.CANCELLED
        if any(job.conclusion == Outcome.FAILURE for job in self.scheduler.results.values()):
            return Outcome.FAILURE
        return Outcome.SUCCESS

    def cancel(self) -> bool:
        """
        Request cancellation of the run.

        Returns:
            False if the run had already completed
        """
        if self.is_completed:
            return False
        if not self.cancel_event.is_set():
            logger.info(f"Cancelling run {self.run_id}")
            self._cancel_observed = True
            self.cancel_event.set()
            self.events.publish("cancelling", message="Cancellation requested")
        return True

    def approve(self, job_id: str, reviewer: str) -> bool:
        """
        Approve a gated job.

        Returns:
            True if the job now has enough approvals to proceed

        Raises:
            KeyError: If the job is not waiting for approval
            PermissionError: If the reviewer may not review the environment
        """
        return self.gate.approve(job_id, reviewer)

    def reject(self, job_id: str, reviewer: str, comment: str | None = None) -> None:
        """
        Reject a gated job; it fails with cause DeploymentRejected.

        Raises:
            KeyError: If the job is not waiting for approval
            PermissionError: If the reviewer may not review the environment
        """
        self.gate.reject(job_id, reviewer, comment)

    def pending_approvals(self) -> list[PendingApproval]:
        return self.gate.pending()

    def snapshot(self) -> RunResult:
        """Masked copy of the current result tree."""
        self._result.jobs = self.scheduler.results
        return RunResult.model_validate(self.masker.mask(self._result.model_dump()))
