"""Run, job and step status enums."""

from enum import Enum


class RunStatus(str, Enum):
    """Run lifecycle (whether the run is still executing)."""

    QUEUED = "queued"
    """Created but not started."""

    IN_PROGRESS = "in_progress"
    """Jobs are being scheduled."""

    COMPLETED = "completed"
    """Every job reached a terminal state."""

    def is_completed(self) -> bool:
        """Check if the run has completed."""
        return self == RunStatus.COMPLETED


class Outcome(str, Enum):
    """
    Result of a step, job or run.

    Used for both outcome (what actually happened) and conclusion (what
    dependents see once continue-on-error has been applied).
    """

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    def is_success(self) -> bool:
        """Check if outcome is success."""
        return self == Outcome.SUCCESS

    def is_failure(self) -> bool:
        """Check if outcome is failure."""
        return self == Outcome.FAILURE

    def is_cancelled(self) -> bool:
        """Check if outcome is cancelled."""
        return self == Outcome.CANCELLED

    def is_skipped(self) -> bool:
        """Check if outcome is skipped."""
        return self == Outcome.SKIPPED


class JobState(str, Enum):
    """
    Per-job scheduler state machine.

    pending -> evaluating -> skipped
                          -> gated -> running
                          -> running -> succeeded | failed | cancelled

    evaluating and gated may also go straight to failed (expression error,
    rejected deployment) and pending or gated may go straight to cancelled.
    """

    PENDING = "pending"
    EVALUATING = "evaluating"
    GATED = "gated"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    def is_terminal(self) -> bool:
        """Check if no further transition is possible."""
        return self in (
            JobState.SUCCEEDED,
            JobState.FAILED,
            JobState.CANCELLED,
            JobState.SKIPPED,
        )

    def is_gated(self) -> bool:
        """Check if job is waiting on an environment gate."""
        return self == JobState.GATED

    def is_running(self) -> bool:
        """Check if job is running steps."""
        return self == JobState.RUNNING


class StepState(str, Enum):
    """Step lifecycle."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"


class FailureCause(str, Enum):
    """Reason recorded on a failed or cancelled step or job."""

    EXIT_CODE = "ExitCode"
    TIMEOUT = "Timeout"
    SANDBOX_ERROR = "SandboxError"
    OUTPUT_ERROR = "OutputError"
    EVAL_ERROR = "EvalError"
    STEP_FAILED = "StepFailed"
    ENVIRONMENT_RESTRICTED = "EnvironmentRestricted"
    DEPLOYMENT_REJECTED = "DeploymentRejected"
    APPROVAL_TIMEOUT = "ApprovalTimeout"
    CANCELLED = "Cancelled"
