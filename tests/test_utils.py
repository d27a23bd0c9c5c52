"""Shared test utilities for the pipelines-mcp test suite.

Provides:
- ScriptedSandbox: in-memory sandbox driven by a tiny command language
- RecordingApprovalCollaborator: records approval requests
- Workflow construction and polling helpers
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pipelines_mcp.engine import (
    Sandbox,
    SandboxError,
    SandboxRequest,
    SandboxResult,
    StepOutputError,
    StepTimeoutError,
    WorkflowSchema,
    load_workflow_from_yaml,
)

TEST_SECRETS = {
    "DEPLOY_TOKEN": "s3cr3t",
    "API_KEY": "sk-test-key-456",
}

TEMPLATES_DIR = Path(__file__).parent.parent / "src" / "pipelines_mcp" / "templates"


@dataclass
class SandboxCall:
    """One sandbox invocation seen by ScriptedSandbox."""

    label: str
    run: str
    env: dict[str, str]
    working_directory: str | None
    shell: str | None
    started_at: float
    finished_at: float | None = None


@dataclass
class ScriptedSandbox(Sandbox):
    """
    Sandbox that interprets each line of ``run`` as a scripted command:

        echo <text>          emit an output line
        env <NAME>           emit the value of an env variable
        set <key>=<value>    set a step output
        sleep <seconds>      await asyncio.sleep
        exit <code>          stop with the given exit code
        sandbox-error        raise SandboxError
        flaky <n>            raise SandboxError on the first n attempts of this step
        bad-output           report a malformed output file after running
        read-error           raise StepOutputError

    Unknown lines are echoed. Every call is recorded with its start time.
    """

    calls: list[SandboxCall] = field(default_factory=list)
    active: int = 0
    max_active: int = 0
    _attempts: dict[str, int] = field(default_factory=dict)

    async def execute(self, request: SandboxRequest) -> SandboxResult:
        call = SandboxCall(
            label=request.label,
            run=request.run,
            env=dict(request.env),
            working_directory=request.working_directory,
            shell=request.shell,
            started_at=time.monotonic(),
        )
        self.calls.append(call)
        self._attempts[request.label] = self._attempts.get(request.label, 0) + 1

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            return await asyncio.wait_for(self._interpret(request), timeout=request.timeout)
        except TimeoutError:
            raise StepTimeoutError(request.label, request.timeout) from None
        finally:
            self.active -= 1
            call.finished_at = time.monotonic()

    async def _interpret(self, request: SandboxRequest) -> SandboxResult:
        result = SandboxResult(exit_code=0)
        for raw in request.run.splitlines():
            line = raw.strip()
            if not line:
                continue
            command, _, argument = line.partition(" ")
            if command == "echo":
                result.lines.append(argument)
            elif command == "env":
                result.lines.append(request.env.get(argument, ""))
            elif command == "set":
                key, _, value = argument.partition("=")
                result.outputs[key] = value
            elif command == "sleep":
                await asyncio.sleep(float(argument))
            elif command == "exit":
                result.exit_code = int(argument)
                return result
            elif command == "sandbox-error":
                raise SandboxError(f"sandbox unavailable for {request.label}")
            elif command == "flaky":
                if self._attempts[request.label] <= int(argument):
                    raise SandboxError(f"transient failure in {request.label}")
            elif command == "bad-output":
                result.output_error = f"Output of {request.label} is malformed"
            elif command == "read-error":
                raise StepOutputError(f"Failed to read output of {request.label}")
            else:
                result.lines.append(line)
        return result

    def runs(self) -> list[str]:
        """Run strings in call order."""
        return [call.run for call in self.calls]

    def labels(self) -> list[str]:
        return [call.label for call in self.calls]

    def first_call(self, label_prefix: str) -> SandboxCall:
        return next(call for call in self.calls if call.label.startswith(label_prefix))


class RecordingApprovalCollaborator:
    """Approval collaborator that records requests and signals them."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, str, int]] = []
        self.requested = asyncio.Event()

    async def request_approval(self, job_id: str, environment: str, required_count: int) -> None:
        self.requests.append((job_id, environment, required_count))
        self.requested.set()


def workflow_from_yaml(yaml_content: str) -> WorkflowSchema:
    """Load a workflow, failing the test with the loader error if invalid."""
    result = load_workflow_from_yaml(yaml_content, source="<test>")
    assert result.is_success, result.error
    return result.unwrap()


def workflow_from_jobs(jobs: dict[str, Any], **extra: Any) -> WorkflowSchema:
    """Build a workflow from a ``jobs`` mapping."""
    return WorkflowSchema.model_validate({"name": "test", "on": "push", "jobs": jobs, **extra})


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)
