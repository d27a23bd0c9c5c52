"""
Dependency graph scheduler.

Drives every job of a run through its state machine:

    pending -> evaluating -> skipped
                          -> gated -> running
                          -> running -> succeeded | failed | cancelled

Jobs live in an arena indexed like the ``JobGraph`` nodes. Each record keeps
a counter of unfinished dependencies (Kahn). Roots start immediately; when a
job becomes terminal its dependents' counters are decremented and any that
reach zero are started as their own asyncio task. Independent jobs run
concurrently, bounded only by the optional ``max_parallel_jobs`` semaphore.

All bookkeeping happens on the event loop thread, so the counters need no
locks. A job's outputs are published before its terminal state is set, and
dependents are only started after that, so they always read complete output
sets.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from .dag import JobGraph
from .environments import EnvironmentGateCoordinator
from .events import EventStream
from .exceptions import (
    ApprovalTimeoutError,
    DeploymentRejectedError,
    EnvironmentRestrictedError,
    ExpressionEvaluationError,
)
from .expressions import (
    ExpressionContext,
    NeedsEntry,
    StatusSnapshot,
    evaluate_condition,
    parse_condition,
)
from .job_runner import CANCELLED_MESSAGE, JobRunner, job_state
from .output_store import OutputStore
from .results import JobResult
from .schema import JobDefinition, WorkflowSchema
from .secrets import SecretMasker
from .status import FailureCause, JobState, Outcome

logger = logging.getLogger(__name__)


@dataclass
class _JobRecord:
    """Arena entry for one job."""

    index: int
    job_id: str
    definition: JobDefinition
    result: JobResult
    remaining: int
    task: asyncio.Task[None] | None = None


class DependencyScheduler:
    """
    Schedules the jobs of one run.

    Args:
        workflow: Validated workflow
        job_runner: Runs the steps of eligible jobs
        output_store: Run's output store
        base_context: Run-level context (github, inputs, runner)
        gate: Environment gate coordinator (None means no protection rules)
        events: Run's event stream
        cancel_event: Run-wide cancellation signal
        max_parallel_jobs: Bound on concurrently running jobs (None: unbounded)
        masker: Run's secret masker
        ref: Ref the run was triggered for (deployment branch checks)
        actor: Who triggered the run (self-review checks)
        on_job_start: Called with the job id when a job enters ``running``
    """

    def __init__(
        self,
        workflow: WorkflowSchema,
        job_runner: JobRunner,
        output_store: OutputStore,
        base_context: ExpressionContext | None = None,
        gate: EnvironmentGateCoordinator | None = None,
        events: EventStream | None = None,
        cancel_event: asyncio.Event | None = None,
        max_parallel_jobs: int | None = None,
        masker: SecretMasker | None = None,
        ref: str = "",
        actor: str = "",
        on_job_start: Callable[[str], None] | None = None,
    ):
        self.workflow = workflow
        self.graph: JobGraph = workflow.job_graph
        self.job_runner = job_runner
        self.output_store = output_store
        self.base_context = base_context or ExpressionContext()
        self.gate = gate or EnvironmentGateCoordinator()
        self.events = events
        self.cancel_event = cancel_event or asyncio.Event()
        self.masker = masker or SecretMasker()
        self.ref = ref
        self.actor = actor
        self.on_job_start = on_job_start
        self._semaphore = asyncio.Semaphore(max_parallel_jobs) if max_parallel_jobs else None

        in_degrees = self.graph.in_degrees()
        self._records: list[_JobRecord] = [
            _JobRecord(
                index=index,
                job_id=job_id,
                definition=workflow.jobs[job_id],
                result=JobResult(
                    job_id=job_id,
                    name=workflow.jobs[job_id].name or job_id,
                    environment=(
                        workflow.jobs[job_id].environment.name
                        if workflow.jobs[job_id].environment
                        else None
                    ),
                ),
                remaining=in_degrees[index],
            )
            for index, job_id in enumerate(node.job_id for node in self.graph.nodes)
        ]
        self._unfinished = len(self._records)
        self._finished = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()
        self._stopping = False
        self.start_order: list[str] = []

    @property
    def results(self) -> dict[str, JobResult]:
        """Job results keyed by job id, in declaration order."""
        return {record.job_id: record.result for record in self._records}

    def _record(self, job_id: str) -> _JobRecord:
        return self._records[self.graph.index_of(job_id)]

    async def run(self) -> dict[str, JobResult]:
        """
        Run every job to a terminal state.

        Returns:
            Job results keyed by job id
        """
        if not self._records:
            return {}

        for job_id in self.graph.roots():
            self._spawn(job_id)

        try:
            await self._finished.wait()
        except asyncio.CancelledError:
            self._stopping = True
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            raise

        return self.results

    def _spawn(self, job_id: str) -> None:
        record = self._record(job_id)
        task = asyncio.create_task(self._drive(record), name=f"job:{job_id}")
        record.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drive(self, record: _JobRecord) -> None:
        try:
            await self._process(record)
        except Exception as e:
            logger.exception(f"Unexpected error in job '{record.job_id}'")
            if not record.result.state.is_terminal():
                self._finish(record, Outcome.FAILURE, None, f"Internal error: {e}")
        finally:
            if not record.result.state.is_terminal():
                self._finish(
                    record, Outcome.CANCELLED, FailureCause.CANCELLED, "Job task was cancelled"
                )
            self._on_terminal(record)

    async def _process(self, record: _JobRecord) -> None:
        job_id = record.job_id
        job = record.definition

        self._transition(record, JobState.EVALUATING)
        context = self._job_context(job_id)

        condition = parse_condition(job.condition)
        if self.cancel_event.is_set() and not condition.tolerates_cancellation():
            self._finish(record, Outcome.CANCELLED, FailureCause.CANCELLED, CANCELLED_MESSAGE)
            return

        try:
            should_run = evaluate_condition(condition, context)
        except ExpressionEvaluationError as e:
            self._finish(record, Outcome.FAILURE, FailureCause.EVAL_ERROR, str(e))
            return

        if not should_run:
            logger.info(f"Skipping job '{job_id}' (condition false)")
            self._finish(record, Outcome.SKIPPED)
            return

        if job.environment is not None:
            try:
                cleared = await self.gate.clear(
                    job_id,
                    job.environment.name,
                    ref=self.ref,
                    actor=self.actor,
                    cancel_event=self.cancel_event,
                    on_gated=lambda message: self._transition(record, JobState.GATED, message),
                )
            except EnvironmentRestrictedError as e:
                self._finish(record, Outcome.FAILURE, FailureCause.ENVIRONMENT_RESTRICTED, str(e))
                return
            except DeploymentRejectedError as e:
                self._finish(record, Outcome.FAILURE, FailureCause.DEPLOYMENT_REJECTED, str(e))
                return
            except ApprovalTimeoutError as e:
                self._finish(record, Outcome.FAILURE, FailureCause.APPROVAL_TIMEOUT, str(e))
                return
            if not cleared:
                self._finish(record, Outcome.CANCELLED, FailureCause.CANCELLED, CANCELLED_MESSAGE)
                return

        if self._semaphore is None:
            await self._run_job(record, context)
        else:
            async with self._semaphore:
                # the run may have been cancelled while this job waited for a slot
                if self.cancel_event.is_set() and not condition.tolerates_cancellation():
                    self._finish(
                        record, Outcome.CANCELLED, FailureCause.CANCELLED, CANCELLED_MESSAGE
                    )
                    return
                await self._run_job(record, context)

    async def _run_job(self, record: _JobRecord, context: ExpressionContext) -> None:
        self._transition(record, JobState.RUNNING)
        self.start_order.append(record.job_id)
        if self.on_job_start is not None:
            self.on_job_start(record.job_id)

        await self.job_runner.run(record.job_id, record.definition, context, record.result)
        self._emit(record, record.result.state.value, record.result.message)

    def _job_context(self, job_id: str) -> ExpressionContext:
        """Context for a job's ``if`` and steps: direct needs plus ancestor status."""
        needs = {
            dep: NeedsEntry(
                result=self._record(dep).result.result,
                outputs=self.output_store.get_job_outputs(dep),
            )
            for dep in self.graph.needs_of(job_id)
        }
        ancestors = [self._record(a).result for a in self.graph.ancestors(job_id)]
        status = StatusSnapshot(
            succeeded=all(r.conclusion == Outcome.SUCCESS for r in ancestors),
            failed=any(r.conclusion == Outcome.FAILURE for r in ancestors),
            cancelled=self.cancel_event.is_set(),
        )
        github = {**self.base_context.github, "job": job_id}
        return replace(self.base_context, github=github, needs=needs, status=status, steps=None)

    def _transition(self, record: _JobRecord, state: JobState, message: str | None = None) -> None:
        record.result.state = state
        if state == JobState.RUNNING and record.result.started_at is None:
            record.result.started_at = datetime.now(UTC)
        logger.debug(f"Job '{record.job_id}' -> {state.value}")
        self._emit(record, state.value, message)

    def _finish(
        self,
        record: _JobRecord,
        outcome: Outcome,
        cause: FailureCause | None = None,
        message: str | None = None,
    ) -> None:
        """Terminal transition for jobs that never reach the job runner."""
        record.result.outputs = dict(self.output_store.publish(record.job_id))
        conclusion = outcome
        if outcome == Outcome.FAILURE and record.definition.continue_on_error:
            conclusion = Outcome.SUCCESS
        record.result.finish(
            state=job_state(outcome),
            outcome=outcome,
            conclusion=conclusion,
            cause=cause,
            message=self.masker.mask(message) if message else None,
        )
        if outcome == Outcome.FAILURE:
            logger.warning(f"Job '{record.job_id}' failed: {record.result.message}")
        self._emit(record, record.result.state.value, record.result.message)

    def _on_terminal(self, record: _JobRecord) -> None:
        for dependent in self.graph.dependents_of(record.job_id):
            dependent_record = self._record(dependent)
            dependent_record.remaining -= 1
            if dependent_record.remaining == 0 and not self._stopping:
                self._spawn(dependent)

        self._unfinished -= 1
        if self._unfinished == 0:
            self._finished.set()

    def _emit(self, record: _JobRecord, status: str, message: str | None = None) -> None:
        if self.events is not None:
            self.events.publish(status, job_id=record.job_id, message=message)
