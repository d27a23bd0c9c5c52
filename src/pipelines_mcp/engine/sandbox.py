"""
Execution sandbox for run steps.

The engine treats the sandbox as a black box: it receives a run-spec, an
environment, a working directory and a timeout, and returns an exit status,
captured output lines and the outputs the step produced.

Output channel:
    ``ShellSandbox`` gives every step its own output file and exposes its
    path as ``$PIPELINE_OUTPUT``. Steps append ``name=value`` lines, or use a
    delimiter for multi-line values:

        echo "version=1.4.2" >> "$PIPELINE_OUTPUT"
        {
          echo "notes<<EOF"
          cat CHANGELOG.md
          echo "EOF"
        } >> "$PIPELINE_OUTPUT"

    The file is parsed after the process exits. Nothing is shared between
    steps except what the job runner threads through the steps context.

Errors:
    StepTimeoutError: The step exceeded its timeout (process group killed)
    SandboxError: The step could not be started (infrastructure failure)
    StepOutputError: The step ran but its output could not be read
    asyncio.CancelledError: Propagated after the process group is terminated
"""

import asyncio
import logging
import os
import shlex
import shutil
import signal
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .exceptions import SandboxError, StepOutputError, StepTimeoutError

logger = logging.getLogger(__name__)

OUTPUT_ENV_VAR = "PIPELINE_OUTPUT"
READ_CHUNK_SIZE = 64 * 1024

# Shell name -> command template ({0} is the script path)
SHELL_TEMPLATES: dict[str, str] = {
    "bash": "bash --noprofile --norc -eo pipefail {0}",
    "sh": "sh -e {0}",
    "python": "python {0}",
    "pwsh": "pwsh -command . '{0}'",
}


@dataclass
class SandboxRequest:
    """Everything a sandbox needs to run one step."""

    run: str
    env: dict[str, str] = field(default_factory=dict)
    working_directory: str | None = None
    shell: str | None = None
    timeout: float = 360 * 60
    label: str = "step"
    on_line: Callable[[str], None] | None = None


@dataclass
class SandboxResult:
    """What a sandbox reports back for one step."""

    exit_code: int
    lines: list[str] = field(default_factory=list)
    outputs: dict[str, str] = field(default_factory=dict)
    # set when the process ran but its output file was malformed
    output_error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class Sandbox(ABC):
    """Interface the step executor runs steps through."""

    @abstractmethod
    async def execute(self, request: SandboxRequest) -> SandboxResult:
        """
        Run a step.

        Raises:
            StepTimeoutError: If the step exceeds ``request.timeout``
            SandboxError: If the step cannot be run at all
            StepOutputError: If the step ran but its output could not be read
        """


def parse_output_file(content: str) -> dict[str, str]:
    """
    Parse ``name=value`` and ``name<<DELIM`` entries from an output file.

    Raises:
        StepOutputError: If a delimited value is never terminated
    """
    outputs: dict[str, str] = {}
    lines = content.splitlines()
    index = 0

    while index < len(lines):
        line = lines[index]
        index += 1
        if not line.strip():
            continue

        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, delimiter = line.split("<<", 1)
            value_lines: list[str] = []
            while index < len(lines) and lines[index] != delimiter:
                value_lines.append(lines[index])
                index += 1
            if index >= len(lines):
                raise StepOutputError(
                    f"Output '{name}' is missing its closing delimiter '{delimiter}'"
                )
            index += 1
            outputs[name.strip()] = "\n".join(value_lines)
        elif "=" in line:
            name, value = line.split("=", 1)
            outputs[name.strip()] = value
        else:
            logger.warning(f"Ignoring malformed output line: {line!r}")

    return outputs


class ShellSandbox(Sandbox):
    """
    Runs steps as local subprocesses.

    Each step's script is written to a private temp directory together with
    its output file. The process runs in its own session so a timeout or
    cancellation can signal the whole process group: SIGTERM first, SIGKILL
    after ``terminate_grace_seconds``.

    Args:
        default_shell: Shell used when a step doesn't set one (default: bash if
            available, else sh)
        base_env: Environment inherited by every step (default: os.environ)
        default_working_directory: cwd when a step doesn't set one
        terminate_grace_seconds: Time between SIGTERM and SIGKILL
    """

    def __init__(
        self,
        default_shell: str | None = None,
        base_env: dict[str, str] | None = None,
        default_working_directory: str | Path | None = None,
        terminate_grace_seconds: float = 5.0,
    ) -> None:
        self.default_shell = default_shell or ("bash" if shutil.which("bash") else "sh")
        self.base_env = dict(os.environ) if base_env is None else dict(base_env)
        self.default_working_directory = (
            str(default_working_directory) if default_working_directory else None
        )
        self.terminate_grace_seconds = terminate_grace_seconds

    def _command(self, shell: str | None, script: Path) -> list[str]:
        shell = shell or self.default_shell
        template = SHELL_TEMPLATES.get(shell, shell)
        if "{0}" in template:
            return shlex.split(template.replace("{0}", shlex.quote(str(script))))
        return [*shlex.split(template), str(script)]

    async def execute(self, request: SandboxRequest) -> SandboxResult:
        cwd = request.working_directory or self.default_working_directory or os.getcwd()
        if not Path(cwd).is_dir():
            raise SandboxError(f"Working directory does not exist: {cwd}")

        with tempfile.TemporaryDirectory(prefix="pipeline-step-") as temp_dir:
            script = Path(temp_dir) / "step.sh"
            output_file = Path(temp_dir) / "output"
            script.write_text(request.run, encoding="utf-8")
            output_file.touch()

            env = {**self.base_env, **request.env, OUTPUT_ENV_VAR: str(output_file)}
            command = self._command(request.shell, script)

            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=cwd,
                    env=env,
                    start_new_session=True,
                )
            except OSError as e:
                raise SandboxError(f"Failed to start '{command[0]}': {e}") from e

            lines: list[str] = []
            try:
                await asyncio.wait_for(
                    self._collect(process, lines, request.on_line), timeout=request.timeout
                )
            except TimeoutError:
                await self._terminate(process)
                raise StepTimeoutError(request.label, request.timeout) from None
            except asyncio.CancelledError:
                await self._terminate(process)
                raise
            except Exception as e:
                await self._terminate(process)
                raise StepOutputError(f"Failed to read output of {request.label}: {e}") from e

            exit_code = process.returncode if process.returncode is not None else -1
            try:
                outputs = parse_output_file(output_file.read_text(encoding="utf-8"))
            except StepOutputError as e:
                return SandboxResult(exit_code=exit_code, lines=lines, output_error=str(e))

        return SandboxResult(exit_code=exit_code, lines=lines, outputs=outputs)

    async def _collect(
        self,
        process: asyncio.subprocess.Process,
        lines: list[str],
        on_line: Callable[[str], None] | None,
    ) -> None:
        """Read stdout in chunks so a single line may exceed the stream buffer limit."""
        assert process.stdout is not None
        pending = bytearray()
        while True:
            chunk = await process.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            pending.extend(chunk)
            *complete, rest = pending.split(b"\n")
            pending = bytearray(rest)
            for raw in complete:
                self._add_line(bytes(raw), lines, on_line)
        if pending:
            self._add_line(bytes(pending), lines, on_line)
        await process.wait()

    @staticmethod
    def _add_line(raw: bytes, lines: list[str], on_line: Callable[[str], None] | None) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        lines.append(line)
        if on_line is not None:
            on_line(line)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, then SIGKILL after the grace period."""
        if process.returncode is not None:
            return

        self._signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(asyncio.shield(process.wait()), self.terminate_grace_seconds)
            return
        except TimeoutError:
            logger.warning(f"Process {process.pid} ignored SIGTERM, killing")

        self._signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
        await process.wait()

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: int) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, sig)
            else:
                process.send_signal(sig)
        except ProcessLookupError:
            pass
