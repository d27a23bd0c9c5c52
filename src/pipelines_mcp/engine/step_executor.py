"""
Step executor: runs one step through the sandbox.

Lifecycle of a step:
    1. Evaluate ``if`` (implicit ``success() &&`` when no status function is
       used). False means the step is skipped and the sandbox is never called.
    2. Interpolate ``env``, ``run`` and ``working-directory`` against the
       step's context snapshot.
    3. Call the sandbox with ``timeout-minutes``; retry SandboxError a bounded
       number of times. Output errors are never retried since the process ran.
    4. Derive outcome and conclusion. ``continue-on-error`` turns a failure
       outcome into a success conclusion.

Captured lines and outputs are masked before they leave the executor.
Nothing here raises for a step-level failure: every failure becomes a
``StepResult`` with a ``FailureCause``.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import UTC, datetime

from .events import EventStream
from .exceptions import (
    ExpressionEvaluationError,
    SandboxError,
    StepOutputError,
    StepTimeoutError,
)
from .expressions import ExpressionContext, evaluate_condition, interpolate
from .results import StepResult
from .sandbox import Sandbox, SandboxRequest, SandboxResult
from .schema import RunDefaults, StepDefinition
from .secrets import SecretMasker
from .status import FailureCause, Outcome, StepState

logger = logging.getLogger(__name__)

DEFAULT_MAX_SANDBOX_RETRIES = 2


class StepExecutor:
    """
    Runs steps against a sandbox.

    Args:
        sandbox: Where steps run
        masker: Run's secret masker (applied to lines, outputs and messages)
        events: Run's event stream (step transitions are published here)
        cancel_event: Run-wide cancellation signal; a step that is running when
            it fires is terminated and recorded as cancelled
        max_sandbox_retries: Extra attempts after a SandboxError
        retry_backoff: Seconds to wait before the first retry (grows linearly)
    """

    def __init__(
        self,
        sandbox: Sandbox,
        masker: SecretMasker | None = None,
        events: EventStream | None = None,
        cancel_event: asyncio.Event | None = None,
        max_sandbox_retries: int = DEFAULT_MAX_SANDBOX_RETRIES,
        retry_backoff: float = 0.5,
    ):
        self.sandbox = sandbox
        self.masker = masker or SecretMasker()
        self.events = events
        self.cancel_event = cancel_event
        self.max_sandbox_retries = max(0, max_sandbox_retries)
        self.retry_backoff = retry_backoff

    async def run(
        self,
        step: StepDefinition,
        context: ExpressionContext,
        index: int = 0,
        job_id: str = "",
        defaults: RunDefaults | None = None,
    ) -> StepResult:
        """
        Run one step.

        Args:
            step: Step definition
            context: Snapshot with ``steps`` set to the steps finished so far
            index: Position of the step in its job
            job_id: Owning job (for events and logs)
            defaults: Job/workflow run defaults (shell, working-directory)

        Returns:
            StepResult with outcome, conclusion, masked lines and outputs
        """
        name = step.display_name(index)
        step_key = step.id or str(index)

        try:
            should_run = evaluate_condition(step.condition, context)
        except ExpressionEvaluationError as e:
            return self._finish_failed(step, index, name, job_id, FailureCause.EVAL_ERROR, str(e))

        if not should_run:
            logger.info(f"[{job_id}] Skipping step '{name}' (condition false)")
            result = StepResult.skipped(index, step.id, name)
            self._emit(job_id, step_key, Outcome.SKIPPED.value)
            return result

        result = StepResult(
            index=index,
            id=step.id,
            name=name,
            status=StepState.RUNNING,
            started_at=datetime.now(UTC),
        )
        self._emit(job_id, step_key, StepState.RUNNING.value)

        try:
            request = self._build_request(step, context, job_id, name, defaults)
        except ExpressionEvaluationError as e:
            return self._finish(
                step, result, job_id, Outcome.FAILURE, FailureCause.EVAL_ERROR, str(e)
            )

        logger.info(f"[{job_id}] Running step '{name}'")
        sandbox_result: SandboxResult | None = None
        for attempt in range(self.max_sandbox_retries + 1):
            result.attempts = attempt + 1
            try:
                sandbox_result = await self._execute_cancellable(request)
                break
            except StepTimeoutError as e:
                return self._finish(
                    step, result, job_id, Outcome.FAILURE, FailureCause.TIMEOUT, str(e)
                )
            except StepOutputError as e:
                return self._finish(
                    step, result, job_id, Outcome.FAILURE, FailureCause.OUTPUT_ERROR, str(e)
                )
            except SandboxError as e:
                if attempt >= self.max_sandbox_retries:
                    return self._finish(
                        step, result, job_id, Outcome.FAILURE, FailureCause.SANDBOX_ERROR, str(e)
                    )
                logger.warning(
                    f"[{job_id}] Sandbox error in step '{name}' "
                    f"(attempt {attempt + 1}/{self.max_sandbox_retries + 1}): {e}"
                )
                await asyncio.sleep(self.retry_backoff * (attempt + 1))

        if sandbox_result is None:
            return self._finish(
                step,
                result,
                job_id,
                Outcome.CANCELLED,
                FailureCause.CANCELLED,
                "The run was cancelled",
            )

        result.exit_code = sandbox_result.exit_code
        result.lines = self.masker.mask(list(sandbox_result.lines))
        result.outputs = self.masker.mask(dict(sandbox_result.outputs))

        if not sandbox_result.succeeded:
            return self._finish(
                step,
                result,
                job_id,
                Outcome.FAILURE,
                FailureCause.EXIT_CODE,
                f"Process completed with exit code {sandbox_result.exit_code}",
            )
        if sandbox_result.output_error is not None:
            return self._finish(
                step,
                result,
                job_id,
                Outcome.FAILURE,
                FailureCause.OUTPUT_ERROR,
                sandbox_result.output_error,
            )
        return self._finish(step, result, job_id, Outcome.SUCCESS)

    def _build_request(
        self,
        step: StepDefinition,
        context: ExpressionContext,
        job_id: str,
        name: str,
        defaults: RunDefaults | None,
    ) -> SandboxRequest:
        """Interpolate the step's env first so ``run`` can read ``env.*`` of its own step."""
        env: dict[str, str] = dict(context.env)
        for key, value in step.env.items():
            env[key] = interpolate(value, replace(context, env=env))
        step_context = replace(context, env=env)

        working_directory = step.working_directory
        if not working_directory and defaults is not None:
            working_directory = defaults.working_directory
        if working_directory:
            working_directory = interpolate(working_directory, step_context)

        return SandboxRequest(
            run=interpolate(step.run, step_context),
            env=env,
            working_directory=working_directory,
            shell=step.shell or (defaults.shell if defaults else None),
            timeout=step.timeout_minutes * 60,
            label=f"{job_id}/{name}" if job_id else name,
            on_line=lambda line: logger.debug(f"[{job_id}/{name}] {self.masker.mask(line)}"),
        )

    async def _execute_cancellable(self, request: SandboxRequest) -> SandboxResult | None:
        """
        Run the sandbox call, racing it against the run's cancel signal.

        A step that starts after cancellation (always() cleanup) is not
        raced. Returns None if the step was terminated because of cancellation.
        """
        if self.cancel_event is None or self.cancel_event.is_set():
            return await self.sandbox.execute(request)

        execution = asyncio.create_task(self.sandbox.execute(request))
        watcher = asyncio.create_task(self.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({execution, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            execution.cancel()
            watcher.cancel()
            await asyncio.gather(execution, watcher, return_exceptions=True)
            raise

        if execution in done:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
            return execution.result()

        execution.cancel()
        await asyncio.gather(execution, return_exceptions=True)
        return None

    def _finish(
        self,
        step: StepDefinition,
        result: StepResult,
        job_id: str,
        outcome: Outcome,
        cause: FailureCause | None = None,
        message: str | None = None,
    ) -> StepResult:
        result.status = StepState.COMPLETED
        result.outcome = outcome
        result.conclusion = _conclusion(outcome, step.continue_on_error)
        result.cause = cause
        result.message = self.masker.mask(message) if message else None
        result.completed_at = datetime.now(UTC)

        if outcome == Outcome.FAILURE:
            suffix = " (continue-on-error)" if step.continue_on_error else ""
            logger.warning(f"[{job_id}] Step '{result.name}' failed{suffix}: {result.message}")
        else:
            logger.info(f"[{job_id}] Step '{result.name}' finished: {outcome.value}")

        self._emit(job_id, step.id or str(result.index), outcome.value, result.message)
        return result

    def _finish_failed(
        self,
        step: StepDefinition,
        index: int,
        name: str,
        job_id: str,
        cause: FailureCause,
        message: str,
    ) -> StepResult:
        result = StepResult(index=index, id=step.id, name=name, started_at=datetime.now(UTC))
        return self._finish(step, result, job_id, Outcome.FAILURE, cause, message)

    def _emit(self, job_id: str, step_id: str, status: str, message: str | None = None) -> None:
        if self.events is not None:
            self.events.publish(status, job_id=job_id or None, step_id=step_id, message=message)


def _conclusion(outcome: Outcome, continue_on_error: bool) -> Outcome:
    if outcome == Outcome.FAILURE and continue_on_error:
        return Outcome.SUCCESS
    return outcome
