"""Run manager for background pipeline runs.

Keeps every run started through the MCP tools addressable by id: start a run
and return immediately, query its status later, approve or reject its gated
jobs, cancel it. Finished runs are retained up to a count and an age limit.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .environments import ApprovalCollaborator, EnvironmentConfig
from .results import RunResult
from .run_controller import RunController, TriggerContext
from .sandbox import Sandbox
from .schema import WorkflowSchema
from .secrets import ScopedSecretResolver
from .status import RunStatus

logger = logging.getLogger(__name__)


@dataclass
class ManagedRun:
    """A run together with the task driving it."""

    controller: RunController
    task: asyncio.Task[RunResult]
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def run_id(self) -> str:
        return self.controller.run_id

    def summary(self) -> dict[str, Any]:
        result = self.controller.snapshot()
        return {
            "run_id": result.run_id,
            "workflow": result.workflow,
            "status": result.status.value,
            "conclusion": result.conclusion.value if result.conclusion else None,
            "created_at": self.created_at.isoformat(),
            "completed_at": result.completed_at.isoformat() if result.completed_at else None,
            "pending_approvals": [p.job_id for p in self.controller.pending_approvals()],
        }


class RunManager:
    """In-process registry of runs with bounded retention.

    Usage:
        manager = RunManager(sandbox_factory=ShellSandbox, environments=configs)
        run_id = manager.start_run(workflow, inputs={"version": "1.2"})

        # Later
        status = manager.get_status(run_id)
        manager.approve(run_id, "deploy", reviewer="alice")
    """

    def __init__(
        self,
        sandbox_factory: Callable[[], Sandbox],
        environments: Mapping[str, EnvironmentConfig] | None = None,
        secrets: ScopedSecretResolver | None = None,
        approval_collaborator: ApprovalCollaborator | None = None,
        max_parallel_jobs: int | None = None,
        max_runs: int = 1000,
        run_ttl: int = 86400,
    ):
        """Initialize run manager.

        Args:
            sandbox_factory: Creates the sandbox for each run
            environments: Environment protection rules shared by all runs
            secrets: Secret resolver shared by all runs
            approval_collaborator: Notified when a job needs approval
            max_parallel_jobs: Per-run bound on concurrently running jobs
            max_runs: Finished runs kept in history
            run_ttl: Seconds a finished run is kept
        """
        self._sandbox_factory = sandbox_factory
        self._environments = dict(environments or {})
        self._secrets = secrets
        self._approval_collaborator = approval_collaborator
        self._max_parallel_jobs = max_parallel_jobs
        self._max_runs = max_runs
        self._run_ttl = run_ttl
        self._runs: dict[str, ManagedRun] = {}

    def __len__(self) -> int:
        return len(self._runs)

    def start_run(
        self,
        workflow: WorkflowSchema,
        inputs: dict[str, Any] | None = None,
        trigger: TriggerContext | Mapping[str, Any] | None = None,
    ) -> str:
        """Start a run in the background.

        Returns:
            Run ID for status tracking

        Raises:
            RuntimeError: If called outside a running event loop
        """
        self.cleanup()

        run_id = f"run_{uuid.uuid4().hex[:8]}"
        controller = RunController(
            workflow,
            sandbox=self._sandbox_factory(),
            run_id=run_id,
            trigger=trigger,
            inputs=inputs,
            secrets=self._secrets,
            environments=self._environments,
            approval_collaborator=self._approval_collaborator,
            max_parallel_jobs=self._max_parallel_jobs,
        )
        task = controller.start()
        task.add_done_callback(self._log_completion)
        self._runs[run_id] = ManagedRun(controller=controller, task=task)

        logger.info(f"Run submitted: {run_id} (workflow={workflow.name})")
        return run_id

    def _log_completion(self, task: asyncio.Task[RunResult]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Run task {task.get_name()} failed: {error}", exc_info=error)

    def get(self, run_id: str) -> ManagedRun:
        """
        Raises:
            KeyError: If the run is unknown (or was evicted)
        """
        if run_id not in self._runs:
            raise KeyError(f"Run '{run_id}' not found")
        return self._runs[run_id]

    def get_status(self, run_id: str, include_logs: bool = False) -> dict[str, Any]:
        """Masked result tree of a run plus its pending approvals.

        Raises:
            KeyError: If the run is unknown
        """
        managed = self.get(run_id)
        response = managed.controller.snapshot().to_response(include_logs=include_logs)
        pending = managed.controller.pending_approvals()
        if pending:
            response["pending_approvals"] = [p.to_dict() for p in pending]
        return response

    def get_events(self, run_id: str, limit: int = 100) -> list[dict[str, Any]]:
        """Most recent events of a run (oldest first)."""
        events = self.get(run_id).controller.events.history[-limit:]
        return [event.model_dump(mode="json") for event in events]

    def list_runs(self, status: RunStatus | None = None, limit: int = 100) -> list[dict[str, Any]]:
        """Run summaries, most recent first."""
        runs = sorted(self._runs.values(), key=lambda r: r.created_at, reverse=True)
        if status is not None:
            runs = [r for r in runs if r.controller.status == status]
        return [r.summary() for r in runs[:limit]]

    def pending_approvals(self) -> list[dict[str, Any]]:
        """Gated jobs across all active runs."""
        pending: list[dict[str, Any]] = []
        for managed in self._runs.values():
            for approval in managed.controller.pending_approvals():
                pending.append({"run_id": managed.run_id, **approval.to_dict()})
        return pending

    def approve(self, run_id: str, job_id: str, reviewer: str) -> bool:
        """
        Raises:
            KeyError: If the run is unknown or the job is not waiting for approval
            PermissionError: If the reviewer may not review the environment
        """
        return self.get(run_id).controller.approve(job_id, reviewer)

    def reject(self, run_id: str, job_id: str, reviewer: str, comment: str | None = None) -> None:
        """
        Raises:
            KeyError: If the run is unknown or the job is not waiting for approval
            PermissionError: If the reviewer may not review the environment
        """
        self.get(run_id).controller.reject(job_id, reviewer, comment)

    def cancel(self, run_id: str) -> bool:
        """Cancel a run.

        Returns:
            True if cancellation was requested, False if the run already completed

        Raises:
            KeyError: If the run is unknown
        """
        return self.get(run_id).controller.cancel()

    def cleanup(self) -> int:
        """Evict finished runs older than the TTL or beyond the history limit.

        Returns:
            Number of runs removed
        """
        cutoff = datetime.now(UTC) - timedelta(seconds=self._run_ttl)
        finished = sorted(
            (r for r in self._runs.values() if r.controller.is_completed),
            key=lambda r: r.created_at,
            reverse=True,
        )

        to_delete: list[str] = []
        for idx, managed in enumerate(finished):
            completed_at = managed.controller.snapshot().completed_at
            if completed_at is not None and completed_at < cutoff:
                to_delete.append(managed.run_id)
            elif idx >= self._max_runs:
                to_delete.append(managed.run_id)

        for run_id in to_delete:
            del self._runs[run_id]

        if to_delete:
            logger.info(f"Run cleanup: removed {len(to_delete)} runs, remaining: {len(self._runs)}")
        return len(to_delete)

    async def shutdown(self, grace_period: float = 10.0) -> None:
        """Cancel active runs; tasks still running after the grace period are cancelled."""
        active = [r for r in self._runs.values() if not r.task.done()]
        for managed in active:
            managed.controller.cancel()
        if active:
            _, still_running = await asyncio.wait([r.task for r in active], timeout=grace_period)
            for task in still_running:
                task.cancel()
            await asyncio.gather(*(r.task for r in active), return_exceptions=True)
            logger.info(f"RunManager stopped: cancelled {len(active)} active runs")


__all__ = ["ManagedRun", "RunManager"]
