"""Tests for StepExecutor: conditions, outcomes, timeouts, retries and masking."""

import asyncio

import pytest
from test_utils import wait_until

from pipelines_mcp.engine import (
    EventStream,
    FailureCause,
    Outcome,
    StepDefinition,
    StepExecutor,
)
from pipelines_mcp.engine.expressions import ExpressionContext, StatusSnapshot
from pipelines_mcp.engine.schema import RunDefaults
from pipelines_mcp.engine.secrets import SecretMasker


def make_step(**fields) -> StepDefinition:
    return StepDefinition.model_validate(fields)


@pytest.fixture
def executor(sandbox) -> StepExecutor:
    return StepExecutor(sandbox, retry_backoff=0)


@pytest.mark.asyncio
async def test_successful_step(executor, sandbox):
    step = make_step(id="greet", run="echo hello\nset greeting=hi")

    result = await executor.run(step, ExpressionContext(), job_id="build")

    assert result.outcome == Outcome.SUCCESS
    assert result.conclusion == Outcome.SUCCESS
    assert result.exit_code == 0
    assert result.lines == ["hello"]
    assert result.outputs == {"greeting": "hi"}
    assert result.attempts == 1
    assert sandbox.labels() == ["build/greet"]


@pytest.mark.asyncio
async def test_false_condition_skips_without_calling_sandbox(executor, sandbox):
    step = make_step(run="echo never", **{"if": "inputs.go == 'yes'"})

    result = await executor.run(step, ExpressionContext(inputs={"go": "no"}))

    assert result.outcome == Outcome.SKIPPED
    assert result.conclusion == Outcome.SKIPPED
    assert sandbox.calls == []


@pytest.mark.asyncio
async def test_step_after_failure_is_skipped_unless_always(executor, sandbox):
    failed = ExpressionContext(status=StatusSnapshot(succeeded=False, failed=True))

    skipped = await executor.run(make_step(run="echo a"), failed)
    cleanup = await executor.run(make_step(run="echo b", **{"if": "always()"}), failed)

    assert skipped.outcome == Outcome.SKIPPED
    assert cleanup.outcome == Outcome.SUCCESS
    assert sandbox.runs() == ["echo b"]


@pytest.mark.asyncio
async def test_nonzero_exit_is_failure(executor):
    result = await executor.run(make_step(run="echo before\nexit 3"), ExpressionContext())

    assert result.outcome == Outcome.FAILURE
    assert result.conclusion == Outcome.FAILURE
    assert result.cause == FailureCause.EXIT_CODE
    assert result.exit_code == 3
    assert "exit code 3" in (result.message or "")


@pytest.mark.asyncio
async def test_continue_on_error_keeps_outcome_but_concludes_success(executor):
    step = make_step(run="exit 1", **{"continue-on-error": True})

    result = await executor.run(step, ExpressionContext())

    assert result.outcome == Outcome.FAILURE
    assert result.conclusion == Outcome.SUCCESS


@pytest.mark.asyncio
async def test_timeout(executor):
    step = make_step(run="sleep 1", **{"timeout-minutes": 0.001})

    result = await executor.run(step, ExpressionContext(), job_id="slow")

    assert result.outcome == Outcome.FAILURE
    assert result.cause == FailureCause.TIMEOUT


@pytest.mark.asyncio
async def test_transient_sandbox_errors_are_retried(executor, sandbox):
    result = await executor.run(make_step(id="net", run="flaky 2\necho ok"), ExpressionContext())

    assert result.outcome == Outcome.SUCCESS
    assert result.attempts == 3
    assert result.lines == ["ok"]
    assert len(sandbox.calls) == 3


@pytest.mark.asyncio
async def test_persistent_sandbox_error_fails_after_retries(executor, sandbox):
    result = await executor.run(make_step(run="sandbox-error"), ExpressionContext())

    assert result.outcome == Outcome.FAILURE
    assert result.cause == FailureCause.SANDBOX_ERROR
    assert result.attempts == 3
    assert len(sandbox.calls) == 3


@pytest.mark.asyncio
async def test_malformed_output_fails_without_rerunning_the_step(executor, sandbox):
    step = make_step(id="notes", run="echo publishing\nset version=1.0\nbad-output")

    result = await executor.run(step, ExpressionContext())

    assert result.outcome == Outcome.FAILURE
    assert result.cause == FailureCause.OUTPUT_ERROR
    assert result.attempts == 1
    assert result.exit_code == 0
    assert result.lines == ["publishing"]
    assert len(sandbox.calls) == 1


@pytest.mark.asyncio
async def test_nonzero_exit_takes_precedence_over_malformed_output(executor):
    result = await executor.run(make_step(run="bad-output\nexit 2"), ExpressionContext())

    assert result.cause == FailureCause.EXIT_CODE
    assert result.exit_code == 2


@pytest.mark.asyncio
async def test_unreadable_output_is_not_retried(executor, sandbox):
    result = await executor.run(make_step(run="echo a\nread-error"), ExpressionContext())

    assert result.outcome == Outcome.FAILURE
    assert result.cause == FailureCause.OUTPUT_ERROR
    assert result.attempts == 1
    assert len(sandbox.calls) == 1


@pytest.mark.asyncio
async def test_retries_can_be_disabled(sandbox):
    executor = StepExecutor(sandbox, max_sandbox_retries=0)

    result = await executor.run(make_step(run="sandbox-error"), ExpressionContext())

    assert result.cause == FailureCause.SANDBOX_ERROR
    assert len(sandbox.calls) == 1


@pytest.mark.asyncio
async def test_condition_evaluation_error(executor, sandbox):
    step = make_step(run="echo x", **{"if": "needs.ghost.result == 'success'"})

    result = await executor.run(step, ExpressionContext())

    assert result.outcome == Outcome.FAILURE
    assert result.cause == FailureCause.EVAL_ERROR
    assert sandbox.calls == []


@pytest.mark.asyncio
async def test_interpolation_error_in_run(executor, sandbox):
    step = make_step(run="echo ${{ fromJSON('nope') }}")

    result = await executor.run(step, ExpressionContext())

    assert result.cause == FailureCause.EVAL_ERROR
    assert sandbox.calls == []


@pytest.mark.asyncio
async def test_env_and_run_are_interpolated(executor, sandbox):
    step = make_step(
        run="echo ${{ env.TARGET }} ${{ inputs.version }}",
        env={"TARGET": "${{ inputs.target }}-${{ env.REGION }}"},
        **{"working-directory": "/srv/${{ inputs.target }}"},
    )
    context = ExpressionContext(
        inputs={"target": "staging", "version": "1.0"}, env={"REGION": "eu"}
    )

    await executor.run(step, context)

    call = sandbox.calls[0]
    assert call.run == "echo staging-eu 1.0"
    assert call.env == {"REGION": "eu", "TARGET": "staging-eu"}
    assert call.working_directory == "/srv/staging"


@pytest.mark.asyncio
async def test_defaults_apply_when_step_does_not_override(executor, sandbox):
    defaults = RunDefaults.model_validate({"shell": "sh", "working-directory": "/work"})

    await executor.run(make_step(run="echo a"), ExpressionContext(), defaults=defaults)
    await executor.run(
        make_step(run="echo b", shell="bash"), ExpressionContext(), defaults=defaults
    )

    assert (sandbox.calls[0].shell, sandbox.calls[0].working_directory) == ("sh", "/work")
    assert sandbox.calls[1].shell == "bash"


@pytest.mark.asyncio
async def test_secret_values_are_masked(sandbox):
    masker = SecretMasker()
    masker.add_secret("s3cr3t")
    events = EventStream("run-1", masker)
    executor = StepExecutor(sandbox, masker=masker, events=events)

    step = make_step(
        id="login",
        run="env TOKEN\nset token=s3cr3t\nexit 1",
        env={"TOKEN": "${{ secrets.DEPLOY_TOKEN }}"},
    )
    context = ExpressionContext(secrets={"DEPLOY_TOKEN": "s3cr3t"})

    result = await executor.run(step, context, job_id="deploy")

    assert sandbox.calls[0].env["TOKEN"] == "s3cr3t"
    assert result.lines == ["***"]
    assert result.outputs == {"token": "***"}
    assert all("s3cr3t" not in (e.message or "") for e in events.history)
    assert [e.status for e in events.history] == ["running", "failure"]


@pytest.mark.asyncio
async def test_running_step_is_cancelled(sandbox):
    cancel_event = asyncio.Event()
    executor = StepExecutor(sandbox, cancel_event=cancel_event)

    task = asyncio.create_task(executor.run(make_step(run="sleep 5"), ExpressionContext()))
    await wait_until(lambda: sandbox.active == 1)
    cancel_event.set()
    result = await asyncio.wait_for(task, timeout=1)

    assert result.outcome == Outcome.CANCELLED
    assert result.cause == FailureCause.CANCELLED
    assert sandbox.active == 0


def test_display_name_fallbacks():
    assert make_step(name="Build", id="b", run="make").display_name(0) == "Build"
    assert make_step(id="b", run="make").display_name(0) == "b"
    assert make_step(run="make all\nmake install").display_name(0) == "Run make all"
