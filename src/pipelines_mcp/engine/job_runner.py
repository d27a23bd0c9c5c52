"""
Job runner: sequences the steps of one job.

Steps run strictly in order on the job's task. Each step receives a fresh
immutable context whose ``steps`` namespace holds the steps finished so far
and whose status snapshot reflects them:

- A step concluding ``failure`` marks the job as failed, so later steps with
  the default ``if`` are skipped; ``failure()`` and ``always()`` steps still run.
- Once the run is cancelled only ``always()`` and ``cancelled()`` steps run.

Before the first step, every ``secrets.<name>`` referenced anywhere in the job
is resolved (environment scope first) and registered with the masker. After the
last step, declared job outputs are evaluated against the final step context,
written to the output store and published.
"""

import asyncio
import logging
from collections.abc import Iterator, Mapping
from dataclasses import replace
from datetime import UTC, datetime

from .events import EventStream
from .exceptions import ExpressionEvaluationError
from .expressions import (
    ExpressionContext,
    ParsedExpression,
    StatusSnapshot,
    StepEntry,
    interpolate,
    parse_condition,
    template_expressions,
)
from .output_store import OutputStore
from .results import JobResult, StepResult
from .schema import Defaults, JobDefinition, RunDefaults
from .secrets import ScopedSecretResolver, SecretMasker
from .status import FailureCause, JobState, Outcome
from .step_executor import StepExecutor

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "The run was cancelled"


class JobRunner:
    """
    Runs jobs of one run.

    Args:
        executor: Step executor shared by all jobs of the run
        output_store: Run's output store
        workflow_env: Workflow-level ``env`` templates
        workflow_defaults: Workflow-level ``defaults``
        secrets: Scoped secret resolver (None means no secrets are available)
        masker: Run's secret masker
        events: Run's event stream
        cancel_event: Run-wide cancellation signal
        run_id: Run id for audit records
    """

    def __init__(
        self,
        executor: StepExecutor,
        output_store: OutputStore,
        workflow_env: Mapping[str, str] | None = None,
        workflow_defaults: Defaults | None = None,
        secrets: ScopedSecretResolver | None = None,
        masker: SecretMasker | None = None,
        events: EventStream | None = None,
        cancel_event: asyncio.Event | None = None,
        run_id: str = "",
    ):
        self.executor = executor
        self.output_store = output_store
        self.workflow_env = dict(workflow_env or {})
        self.workflow_defaults = workflow_defaults or Defaults()
        self.secrets = secrets
        self.masker = masker or executor.masker
        self.events = events
        self.cancel_event = cancel_event or asyncio.Event()
        self.run_id = run_id

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    async def run(
        self,
        job_id: str,
        job: JobDefinition,
        context: ExpressionContext,
        result: JobResult | None = None,
    ) -> JobResult:
        """
        Run a job's steps and publish its outputs.

        Args:
            job_id: Key of the job in ``jobs:``
            job: Job definition
            context: Job-scope context (github, inputs, needs, status of ancestors)
            result: Result record to fill (created when omitted)

        Returns:
            The finished JobResult. Its outputs are published before its
            terminal state is set.
        """
        result = result or JobResult(job_id=job_id, name=job.name or job_id)
        result.state = JobState.RUNNING
        result.started_at = result.started_at or datetime.now(UTC)

        environment = job.environment.name if job.environment else None
        try:
            secrets = await self._resolve_secrets(job_id, job, environment)
            job_context = replace(context, secrets=secrets, steps=None)
            job_context = replace(job_context, env=self._job_env(job, job_context))
        except ExpressionEvaluationError as e:
            return self._complete(
                job_id, job, result, Outcome.FAILURE, FailureCause.EVAL_ERROR, str(e)
            )

        defaults = self._defaults(job)
        entries: dict[str, StepEntry] = {}
        failed = False
        cancelled_mid_job = False

        for index, step in enumerate(job.steps):
            run_cancelled = self.cancelled
            step_context = replace(
                job_context,
                steps=entries,
                declared_steps=job.step_ids,
                status=StatusSnapshot(
                    succeeded=not failed and not run_cancelled,
                    failed=failed,
                    cancelled=run_cancelled,
                ),
            )

            if run_cancelled and not parse_condition(step.condition).tolerates_cancellation():
                cancelled_mid_job = True
                step_result = StepResult.skipped(index, step.id, step.display_name(index))
                if self.events is not None:
                    self.events.publish(
                        Outcome.SKIPPED.value,
                        job_id=job_id,
                        step_id=step.id or str(index),
                        message="Skipped because the run was cancelled",
                    )
            else:
                step_result = await self.executor.run(
                    step, step_context, index=index, job_id=job_id, defaults=defaults
                )

            result.steps.append(step_result)
            if step_result.outcome == Outcome.CANCELLED:
                cancelled_mid_job = True
            if step_result.conclusion == Outcome.FAILURE:
                failed = True

            if step.id:
                for key, value in step_result.outputs.items():
                    self.output_store.set_step_output(job_id, step.id, key, value)
                entries[step.id] = StepEntry(
                    outcome=step_result.outcome.value if step_result.outcome else "",
                    conclusion=step_result.conclusion.value if step_result.conclusion else "",
                    outputs=self.output_store.get_step_outputs(job_id, step.id),
                )

        final_context = replace(
            job_context,
            steps=entries,
            declared_steps=job.step_ids,
            status=StatusSnapshot(
                succeeded=not failed and not cancelled_mid_job,
                failed=failed,
                cancelled=self.cancelled,
            ),
        )
        output_error = self._stage_outputs(job_id, job, final_context)

        if failed:
            failing = next(
                step for step in result.steps if step.conclusion == Outcome.FAILURE
            )
            return self._complete(
                job_id,
                job,
                result,
                Outcome.FAILURE,
                FailureCause.STEP_FAILED,
                f"Step '{failing.name}' failed: {failing.message}",
            )
        if cancelled_mid_job:
            return self._complete(
                job_id, job, result, Outcome.CANCELLED, FailureCause.CANCELLED, CANCELLED_MESSAGE
            )
        if output_error is not None:
            return self._complete(
                job_id, job, result, Outcome.FAILURE, FailureCause.EVAL_ERROR, output_error
            )
        return self._complete(job_id, job, result, Outcome.SUCCESS)

    def _job_env(self, job: JobDefinition, context: ExpressionContext) -> dict[str, str]:
        """Workflow env, then job env; each value may read the layers before it."""
        env: dict[str, str] = {}
        for layer in (self.workflow_env, job.env):
            for key, value in layer.items():
                env[key] = interpolate(value, replace(context, env=env))
        return env

    def _defaults(self, job: JobDefinition) -> RunDefaults:
        workflow_run = self.workflow_defaults.run
        job_run = job.defaults.run
        return RunDefaults(
            shell=job_run.shell or workflow_run.shell,
            working_directory=job_run.working_directory or workflow_run.working_directory,
        )

    def _job_expressions(self, job: JobDefinition) -> Iterator[ParsedExpression]:
        templates: list[str] = [
            *self.workflow_env.values(),
            *job.env.values(),
            *job.outputs.values(),
        ]
        for step in job.steps:
            templates.append(step.run)
            templates.extend(step.env.values())
            if step.working_directory:
                templates.append(step.working_directory)
            yield parse_condition(step.condition)
        for template in templates:
            yield from template_expressions(template)

    async def _resolve_secrets(
        self, job_id: str, job: JobDefinition, environment: str | None
    ) -> dict[str, str]:
        names: set[str] = set()
        for expression in self._job_expressions(job):
            names |= expression.references("secrets")
        if not names or self.secrets is None:
            return {}

        resolved: dict[str, str] = {}
        for name in sorted(names):
            value, found = await self.secrets.resolve(
                environment, name, run_id=self.run_id, job_id=job_id
            )
            if not found or value is None:
                logger.warning(f"[{job_id}] Secret '{name}' not found; it resolves to ''")
                continue
            self.masker.add_secret(value)
            resolved[name] = value

        logger.debug(f"[{job_id}] Resolved {len(resolved)}/{len(names)} secrets")
        return resolved

    def _stage_outputs(
        self, job_id: str, job: JobDefinition, context: ExpressionContext
    ) -> str | None:
        """Evaluate declared outputs into the store. Returns an error message on failure."""
        for key, template in job.outputs.items():
            try:
                value = interpolate(template, context)
            except ExpressionEvaluationError as e:
                logger.warning(f"[{job_id}] Output '{key}' could not be evaluated: {e}")
                return f"Output '{key}': {e}"
            self.output_store.set_job_output(job_id, key, value)
        return None

    def _complete(
        self,
        job_id: str,
        job: JobDefinition,
        result: JobResult,
        outcome: Outcome,
        cause: FailureCause | None = None,
        message: str | None = None,
    ) -> JobResult:
        """Publish outputs, then set the terminal state."""
        result.outputs = dict(self.output_store.publish(job_id))

        conclusion = outcome
        if outcome == Outcome.FAILURE and job.continue_on_error:
            conclusion = Outcome.SUCCESS

        result.finish(
            state=job_state(outcome),
            outcome=outcome,
            conclusion=conclusion,
            cause=cause,
            message=self.masker.mask(message) if message else None,
        )
        log = logger.warning if outcome == Outcome.FAILURE else logger.info
        log(f"[{job_id}] Job finished: outcome={outcome.value}, conclusion={conclusion.value}")
        return result


def job_state(outcome: Outcome) -> JobState:
    """Terminal scheduler state for a job outcome."""
    return {
        Outcome.SUCCESS: JobState.SUCCEEDED,
        Outcome.FAILURE: JobState.FAILED,
        Outcome.CANCELLED: JobState.CANCELLED,
        Outcome.SKIPPED: JobState.SKIPPED,
    }[outcome]
