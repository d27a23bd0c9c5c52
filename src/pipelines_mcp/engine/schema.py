"""
Workflow document schema with Pydantic v2 models.

Defines the structure of a pipeline workflow file:
- Workflow metadata (name, triggers, env, run defaults)
- Jobs keyed by id, with needs, if, environment, outputs and env
- Ordered steps with id, if, run, shell, working-directory, env,
  continue-on-error and timeout-minutes

The schema validates:
- YAML structure, required fields and types
- Job and step identifier syntax, unique step ids within a job
- needs references to existing jobs (WorkflowValidationError)
- Acyclic needs graph (CyclicDependencyError naming the cycle)
- Expression syntax in every if, run, env, output and working-directory value

Keys that YAML spells with dashes (``continue-on-error``) are exposed as
snake_case attributes through aliases.
"""

import re
from functools import cached_property
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .dag import JobGraph
from .exceptions import ExpressionSyntaxError
from .expressions import parse_condition, template_expressions
from .load_result import LoadResult

IDENTIFIER_PATTERN = r"^[A-Za-z_][A-Za-z0-9_-]*$"
DEFAULT_STEP_TIMEOUT_MINUTES = 360


def _stringify_env(value: Any) -> dict[str, str]:  # noqa: ANN401
    """Env values may be written as numbers or booleans in YAML."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("env must be a mapping of names to values")
    normalized: dict[str, str] = {}
    for key, item in value.items():
        if isinstance(item, bool):
            normalized[str(key)] = "true" if item else "false"
        elif item is None:
            normalized[str(key)] = ""
        else:
            normalized[str(key)] = str(item)
    return normalized


class RunDefaults(BaseModel):
    """Default shell and working directory for run steps."""

    shell: str | None = None
    working_directory: str | None = Field(default=None, alias="working-directory")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class Defaults(BaseModel):
    """``defaults:`` block at workflow or job level."""

    run: RunDefaults = Field(default_factory=RunDefaults)

    model_config = ConfigDict(extra="forbid")


class StepDefinition(BaseModel):
    """
    One step of a job.

    Example:
        steps:
          - id: version
            run: echo "tag=v1.2.3" >> "$PIPELINE_OUTPUT"
          - name: Publish
            if: steps.version.outputs.tag != ''
            run: ./publish.sh ${{ steps.version.outputs.tag }}
            continue-on-error: true
            timeout-minutes: 5
    """

    id: str | None = Field(default=None, pattern=IDENTIFIER_PATTERN, max_length=100)
    name: str | None = Field(default=None, description="Display name")
    if_: str | None = Field(default=None, alias="if", description="Step condition")
    run: str = Field(min_length=1, description="Command(s) passed to the sandbox")
    shell: str | None = Field(default=None, description="Shell override (default: bash -e)")
    working_directory: str | None = Field(default=None, alias="working-directory")
    env: dict[str, str] = Field(default_factory=dict)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout_minutes: float = Field(
        default=DEFAULT_STEP_TIMEOUT_MINUTES, gt=0, alias="timeout-minutes"
    )

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @field_validator("env", mode="before")
    @classmethod
    def normalize_env(cls, v: Any) -> dict[str, str]:  # noqa: ANN401
        return _stringify_env(v)

    @field_validator("if_", mode="before")
    @classmethod
    def normalize_condition(cls, v: Any) -> Any:  # noqa: ANN401
        """``if: true`` / ``if: false`` arrive as booleans from YAML."""
        if isinstance(v, bool):
            return "true" if v else "false"
        return v

    @property
    def condition(self) -> str | None:
        return self.if_

    def display_name(self, index: int) -> str:
        """Name for logs and results: name, id, or the first line of run."""
        if self.name:
            return self.name
        if self.id:
            return self.id
        first_line = self.run.strip().splitlines()[0] if self.run.strip() else ""
        return f"Run {first_line[:60]}" if first_line else f"step {index + 1}"


class EnvironmentBinding(BaseModel):
    """Deployment environment a job is bound to."""

    name: str = Field(min_length=1, max_length=255)
    url: str | None = None

    model_config = ConfigDict(extra="forbid")


class JobDefinition(BaseModel):
    """
    A named node in the job graph.

    Example:
        jobs:
          deploy:
            needs: [build, test]
            if: github.ref == 'refs/heads/main'
            environment: production
            outputs:
              url: ${{ steps.release.outputs.url }}
            steps:
              - id: release
                run: ./deploy.sh
    """

    name: str | None = Field(default=None, description="Display name")
    needs: list[str] = Field(default_factory=list)
    if_: str | None = Field(default=None, alias="if")
    runs_on: str | list[str] | None = Field(
        default=None,
        alias="runs-on",
        description="Accepted for compatibility; steps always run in the configured sandbox",
    )
    environment: EnvironmentBinding | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    defaults: Defaults = Field(default_factory=Defaults)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    steps: list[StepDefinition] = Field(min_length=1)

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @field_validator("env", mode="before")
    @classmethod
    def normalize_env(cls, v: Any) -> dict[str, str]:  # noqa: ANN401
        return _stringify_env(v)

    @field_validator("needs", mode="before")
    @classmethod
    def normalize_needs(cls, v: Any) -> list[str]:  # noqa: ANN401
        """Accept a single job id or a list; reject duplicates."""
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, list):
            raise ValueError("needs must be a job id or a list of job ids")

        seen: list[str] = []
        for item in v:
            if not isinstance(item, str):
                raise ValueError(f"Invalid needs entry: {item!r}. Must be a job id string")
            if item in seen:
                raise ValueError(f"Duplicate needs entry '{item}'")
            seen.append(item)
        return seen

    @field_validator("if_", mode="before")
    @classmethod
    def normalize_condition(cls, v: Any) -> Any:  # noqa: ANN401
        if isinstance(v, bool):
            return "true" if v else "false"
        return v

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v: Any) -> Any:  # noqa: ANN401
        """``environment: production`` is shorthand for ``{name: production}``."""
        if isinstance(v, str):
            return {"name": v}
        return v

    @field_validator("outputs", mode="before")
    @classmethod
    def stringify_outputs(cls, v: Any) -> Any:  # noqa: ANN401
        if isinstance(v, dict):
            return {str(k): "" if item is None else str(item) for k, item in v.items()}
        return v

    @field_validator("steps")
    @classmethod
    def validate_unique_step_ids(cls, v: list[StepDefinition]) -> list[StepDefinition]:
        step_ids = [step.id for step in v if step.id]
        duplicates = sorted({sid for sid in step_ids if step_ids.count(sid) > 1})
        if duplicates:
            raise ValueError(f"Duplicate step ids found: {duplicates}")
        return v

    @property
    def condition(self) -> str | None:
        return self.if_

    @property
    def step_ids(self) -> frozenset[str]:
        return frozenset(step.id for step in self.steps if step.id)


class WorkflowSchema(BaseModel):
    """
    Complete workflow document.

    Example YAML:
        name: ci
        on: [push]
        env:
          PYTHON_VERSION: "3.12"
        jobs:
          build:
            steps:
              - id: meta
                run: echo "version=1.0.${{ github.run_number }}" >> "$PIPELINE_OUTPUT"
            outputs:
              version: ${{ steps.meta.outputs.version }}
          test:
            needs: build
            steps:
              - run: make test VERSION=${{ needs.build.outputs.version }}
    """

    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    on: Any = Field(default=None, description="Trigger events (string, list or mapping)")
    env: dict[str, str] = Field(default_factory=dict)
    defaults: Defaults = Field(default_factory=Defaults)
    jobs: dict[str, JobDefinition] = Field(min_length=1)

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @field_validator("env", mode="before")
    @classmethod
    def normalize_env(cls, v: Any) -> dict[str, str]:  # noqa: ANN401
        return _stringify_env(v)

    @model_validator(mode="before")
    @classmethod
    def restore_on_key(cls, data: Any) -> Any:  # noqa: ANN401
        """YAML 1.1 parses a bare ``on:`` key as boolean True."""
        if isinstance(data, dict) and True in data:
            data = dict(data)
            data["on"] = data.pop(True)
        return data

    @field_validator("jobs")
    @classmethod
    def validate_job_ids(cls, v: dict[str, JobDefinition]) -> dict[str, JobDefinition]:
        pattern = re.compile(IDENTIFIER_PATTERN)
        invalid = [job_id for job_id in v if not pattern.match(job_id)]
        if invalid:
            raise ValueError(
                f"Invalid job ids {invalid}: must start with a letter or '_' and contain "
                "only letters, digits, '-' and '_'"
            )
        return v

    @model_validator(mode="after")
    def validate_job_graph(self) -> "WorkflowSchema":
        """Undefined needs and cycles raise WorkflowValidationError subclasses."""
        _ = self.job_graph
        return self

    @model_validator(mode="after")
    def validate_expression_syntax(self) -> "WorkflowSchema":
        """Parse every expression so malformed ones fail at load time."""
        errors: list[str] = []

        def check_template(value: str | None, location: str) -> None:
            if not value:
                return
            try:
                template_expressions(value)
            except ExpressionSyntaxError as e:
                errors.append(f"{location}: {e}")

        def check_condition(value: str | None, location: str) -> None:
            if value is None:
                return
            try:
                parse_condition(value)
            except ExpressionSyntaxError as e:
                errors.append(f"{location}: {e}")

        for key, value in self.env.items():
            check_template(value, f"env.{key}")

        for job_id, job in self.jobs.items():
            check_condition(job.condition, f"jobs.{job_id}.if")
            for key, value in job.env.items():
                check_template(value, f"jobs.{job_id}.env.{key}")
            for key, value in job.outputs.items():
                check_template(value, f"jobs.{job_id}.outputs.{key}")

            for index, step in enumerate(job.steps):
                where = f"jobs.{job_id}.steps[{index}]"
                check_condition(step.condition, f"{where}.if")
                check_template(step.run, f"{where}.run")
                check_template(step.working_directory, f"{where}.working-directory")
                for key, value in step.env.items():
                    check_template(value, f"{where}.env.{key}")

        if errors:
            raise ValueError("Invalid expressions:\n" + "\n".join(f"  - {e}" for e in errors))
        return self

    @cached_property
    def job_graph(self) -> JobGraph:
        """
        Dependency graph of the jobs (computed once).

        Raises:
            WorkflowValidationError: If a job needs an undefined job
            CyclicDependencyError: If the needs relation contains a cycle
        """
        return JobGraph(list(self.jobs), {job_id: job.needs for job_id, job in self.jobs.items()})

    @property
    def trigger_events(self) -> list[str]:
        """Event names from ``on:`` regardless of its shape."""
        if self.on is None:
            return []
        if isinstance(self.on, str):
            return [self.on]
        if isinstance(self.on, list):
            return [str(event) for event in self.on]
        if isinstance(self.on, dict):
            return [str(event) for event in self.on]
        return []

    def input_defaults(self) -> dict[str, Any]:
        """Defaults declared under ``on.workflow_dispatch.inputs``."""
        if not isinstance(self.on, dict):
            return {}
        dispatch = self.on.get("workflow_dispatch") or {}
        inputs = dispatch.get("inputs") if isinstance(dispatch, dict) else None
        if not isinstance(inputs, dict):
            return {}
        return {
            name: spec["default"]
            for name, spec in inputs.items()
            if isinstance(spec, dict) and "default" in spec
        }

    @staticmethod
    def validate_yaml_dict(data: dict[Any, Any]) -> LoadResult["WorkflowSchema"]:
        """
        Validate a parsed YAML document.

        Returns:
            LoadResult.success(WorkflowSchema) if valid
            LoadResult.failure(error_message) with validation errors
        """
        try:
            schema = WorkflowSchema.model_validate(data)
            return LoadResult.success(schema)
        except Exception as e:
            error_msg = str(e)
            return LoadResult.failure(
                f"Workflow validation failed:\n{error_msg}",
                metadata={"exception": type(e).__name__},
            )
