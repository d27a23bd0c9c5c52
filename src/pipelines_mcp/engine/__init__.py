"""Pipeline engine core components.

Executes a workflow document as a graph of jobs made of ordered steps.

Key Components:

- Expression evaluator (``expressions``): ``if:`` conditions and ``${{ }}``
  interpolation over an immutable context
- OutputStore: step and job outputs, published on job completion
- StepExecutor: runs one step through a Sandbox
- JobRunner: sequences a job's steps, computes its outputs
- DependencyScheduler: job state machine driven by Kahn readiness counters
- EnvironmentGateCoordinator: approval / wait timer / branch protection gates
- RunController: owns one run and computes its conclusion
- RunManager: background runs addressable by id (used by the MCP tools)
- WorkflowSchema: Pydantic v2 schema for YAML validation
- WorkflowRegistry: named workflows loaded from directories
- LoadResult: error monad for loader/registry file operations

Architecture:
- Validation (structure, needs, cycles, expression syntax) happens at load
  time and never starts a job
- Job-local failures become a FailureCause on the result, never an exception
  that aborts independent jobs
- Everything leaving the engine (lines, outputs, events, results) passes
  through the run's SecretMasker
"""

from .dag import JobGraph, build_job_graph
from .environments import (
    ApprovalCollaborator,
    EnvironmentConfig,
    EnvironmentGateCoordinator,
    LoggingApprovalCollaborator,
    PendingApproval,
    load_environments_file,
    parse_environments,
)
from .events import EventStream, RunEvent
from .exceptions import (
    ApprovalTimeoutError,
    CyclicDependencyError,
    DeploymentRejectedError,
    EnvironmentRestrictedError,
    ExpressionEvaluationError,
    ExpressionSyntaxError,
    PipelineError,
    SandboxError,
    StepOutputError,
    StepTimeoutError,
    WorkflowValidationError,
)
from .job_runner import JobRunner
from .load_result import LoadResult
from .loader import discover_workflows, load_workflow_from_file, load_workflow_from_yaml
from .output_store import OutputStore
from .registry import WorkflowRegistry
from .results import JobResult, RunResult, StepResult
from .run_controller import RunController, TriggerContext
from .run_manager import ManagedRun, RunManager
from .sandbox import Sandbox, SandboxRequest, SandboxResult, ShellSandbox
from .scheduler import DependencyScheduler
from .schema import JobDefinition, StepDefinition, WorkflowSchema
from .status import FailureCause, JobState, Outcome, RunStatus, StepState
from .step_executor import StepExecutor

__all__ = [
    # Graph
    "JobGraph",
    "build_job_graph",
    # Environments
    "ApprovalCollaborator",
    "EnvironmentConfig",
    "EnvironmentGateCoordinator",
    "LoggingApprovalCollaborator",
    "PendingApproval",
    "load_environments_file",
    "parse_environments",
    # Events
    "EventStream",
    "RunEvent",
    # Exceptions
    "ApprovalTimeoutError",
    "CyclicDependencyError",
    "DeploymentRejectedError",
    "EnvironmentRestrictedError",
    "ExpressionEvaluationError",
    "ExpressionSyntaxError",
    "PipelineError",
    "SandboxError",
    "StepOutputError",
    "StepTimeoutError",
    "WorkflowValidationError",
    # Loading
    "LoadResult",
    "discover_workflows",
    "load_workflow_from_file",
    "load_workflow_from_yaml",
    "WorkflowRegistry",
    "JobDefinition",
    "StepDefinition",
    "WorkflowSchema",
    # Execution
    "OutputStore",
    "Sandbox",
    "SandboxRequest",
    "SandboxResult",
    "ShellSandbox",
    "StepExecutor",
    "JobRunner",
    "DependencyScheduler",
    "RunController",
    "TriggerContext",
    "ManagedRun",
    "RunManager",
    # Results
    "FailureCause",
    "JobResult",
    "JobState",
    "Outcome",
    "RunResult",
    "RunStatus",
    "StepResult",
    "StepState",
]
