"""Pipeline engine exceptions.

Exception Hierarchy:
    PipelineError (base)
    ├── WorkflowValidationError (document rejected before any job starts)
    │   └── CyclicDependencyError (needs graph contains a cycle)
    ├── ExpressionSyntaxError (malformed ${{ }} expression)
    ├── ExpressionEvaluationError (expression failed against the run context)
    ├── StepTimeoutError (sandbox exceeded timeout-minutes)
    ├── SandboxError (sandbox could not run the step)
    ├── StepOutputError (step ran but its output could not be collected)
    ├── EnvironmentRestrictedError (ref not allowed to deploy to environment)
    ├── DeploymentRejectedError (reviewer rejected a gated job)
    └── ApprovalTimeoutError (no decision within the approval window)

Job-local errors (everything below WorkflowValidationError) are caught by the
job runner and recorded as a failure cause on the job or step result. They never
abort independent jobs.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all pipeline engine errors."""


class WorkflowValidationError(PipelineError):
    """
    Workflow document rejected before execution.

    Raised for malformed documents, references to undefined jobs and malformed
    expressions. The whole run fails without starting any job.

    Attributes:
        errors: Individual validation problems, in discovery order
    """

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or [message]
        super().__init__(message)

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"WorkflowValidationError(errors={self.errors!r})"


class CyclicDependencyError(WorkflowValidationError):
    """
    The needs relation contains a cycle.

    Attributes:
        cycle: Job ids forming the cycle, first id repeated at the end
    """

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        path = " -> ".join(cycle)
        super().__init__(f"Cyclic dependency detected between jobs: {path}")

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"CyclicDependencyError(cycle={self.cycle!r})"


class ExpressionSyntaxError(PipelineError):
    """
    Expression could not be parsed.

    Attributes:
        expression: Source text of the expression
        position: Character offset of the problem (None if unknown)
        reason: Short description of what went wrong
    """

    def __init__(self, expression: str, reason: str, position: int | None = None):
        self.expression = expression
        self.reason = reason
        self.position = position

        location = f" at position {position}" if position is not None else ""
        super().__init__(f"Invalid expression{location}: {reason} (in '{expression}')")

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return (
            f"ExpressionSyntaxError(expression={self.expression!r}, "
            f"reason={self.reason!r}, position={self.position})"
        )


class ExpressionEvaluationError(PipelineError):
    """
    Expression failed at evaluation time.

    Typical causes are a reference to a job that is not listed in needs, a step
    id that the job never declares, or a function called with bad arguments.
    Fails the owning job only.
    """

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Error evaluating '{expression}': {reason}")

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"ExpressionEvaluationError(expression={self.expression!r}, reason={self.reason!r})"


class StepTimeoutError(PipelineError):
    """Step exceeded its timeout-minutes budget."""

    def __init__(self, step: str, timeout_seconds: float):
        self.step = step
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Step '{step}' timed out after {timeout_seconds:g} seconds")


class SandboxError(PipelineError):
    """
    Sandbox failed to run a step (infrastructure failure, not a non-zero exit).

    The step executor retries these a bounded number of times before recording
    the step as failed with cause SandboxError.
    """


class StepOutputError(PipelineError):
    """
    Step ran but its output could not be collected (malformed output file,
    unreadable stdout).

    Not retried: the process already ran, so running it again would repeat
    its side effects.
    """


class EnvironmentRestrictedError(PipelineError):
    """
    Run ref does not match the environment's deployment branch patterns.

    Attributes:
        environment: Environment name
        ref: Ref the run was triggered for
        allowed: Deployment branch patterns configured for the environment
    """

    def __init__(self, environment: str, ref: str, allowed: list[str]):
        self.environment = environment
        self.ref = ref
        self.allowed = allowed
        super().__init__(
            f"Ref '{ref}' is not allowed to deploy to environment '{environment}'. "
            f"Allowed branches: {', '.join(allowed)}"
        )

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"EnvironmentRestrictedError(environment={self.environment!r}, ref={self.ref!r})"


class DeploymentRejectedError(PipelineError):
    """A reviewer rejected the deployment of a gated job."""

    def __init__(self, job_id: str, environment: str, reviewer: str, comment: str | None = None):
        self.job_id = job_id
        self.environment = environment
        self.reviewer = reviewer
        self.comment = comment

        message = f"Deployment of job '{job_id}' to '{environment}' rejected by {reviewer}"
        if comment:
            message += f": {comment}"
        super().__init__(message)

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return (
            f"DeploymentRejectedError(job_id={self.job_id!r}, "
            f"environment={self.environment!r}, reviewer={self.reviewer!r})"
        )


class ApprovalTimeoutError(PipelineError):
    """No approval decision was made within the environment's approval window."""

    def __init__(self, job_id: str, environment: str, timeout_seconds: float):
        self.job_id = job_id
        self.environment = environment
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Approval for job '{job_id}' in environment '{environment}' "
            f"timed out after {timeout_seconds:g} seconds"
        )
