"""
Immutable evaluation context for expressions.

The context is an explicit snapshot: the job runner builds a new
``ExpressionContext`` for every step (via ``dataclasses.replace``) so that no
expression ever observes live, mutating engine state.

Namespaces:
    github.*                    trigger metadata (event_name, ref, sha, actor, ...)
    inputs.*                    run inputs
    env.*                       merged workflow/job/step env
    needs.<job>.outputs.<name>  published outputs of declared dependencies
    needs.<job>.result          conclusion of declared dependencies
    steps.<id>.outputs.<name>   outputs of earlier steps in the same job
    steps.<id>.outcome          outcome before continue-on-error
    steps.<id>.conclusion       outcome after continue-on-error
    secrets.<name>              values resolved for the job's scope
    job.status                  accumulated job status
    runner.*                    os, temp
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from ..exceptions import ExpressionEvaluationError

_RAISE = object()


class ContextObject(Mapping[str, Any]):
    """
    Read-only namespace with case-insensitive lookup.

    ``missing`` controls what a lookup of an absent key returns. Passing
    ``strict=True`` makes absent keys an evaluation error instead, unless
    they are listed in ``known`` (declared but not yet populated).
    """

    def __init__(
        self,
        label: str,
        data: Mapping[str, Any],
        missing: Any = None,  # noqa: ANN401
        strict: bool = False,
        known: frozenset[str] = frozenset(),
    ):
        self.label = label
        self._data = dict(data)
        self._folded = {key.casefold(): key for key in self._data}
        self._missing = missing
        self._strict = strict
        self._known = {key.casefold() for key in known}

    def __getitem__(self, key: str) -> Any:  # noqa: ANN401
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"ContextObject({self.label!r}, {self._data!r})"

    def lookup(self, key: str, expression: str) -> Any:  # noqa: ANN401
        """Resolve a property access against this namespace."""
        if key in self._data:
            return self._data[key]
        actual = self._folded.get(key.casefold())
        if actual is not None:
            return self._data[actual]
        if self._strict and key.casefold() not in self._known:
            raise ExpressionEvaluationError(expression, self._describe_missing(key))
        return self._missing

    def _describe_missing(self, key: str) -> str:
        if self.label == "needs":
            available = ", ".join(sorted(self._data)) or "none"
            return (
                f"job '{key}' is not listed in needs (available: {available})"
            )
        if self.label == "steps":
            return f"step id '{key}' is not declared in this job"
        return f"'{self.label}.{key}' is not defined"


@dataclass(frozen=True)
class StatusSnapshot:
    """
    Accumulated status read by success(), failure() and cancelled().

    In a step context this reflects earlier steps of the job; in a job
    context it reflects the job's transitive dependencies.
    """

    succeeded: bool = True
    failed: bool = False
    cancelled: bool = False

    @property
    def job_status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.failed:
            return "failure"
        return "success"


@dataclass(frozen=True)
class StepEntry:
    """What later steps can see about a finished step."""

    outcome: str
    conclusion: str
    outputs: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class NeedsEntry:
    """What a dependent job can see about a finished dependency."""

    result: str
    outputs: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ExpressionContext:
    """Snapshot of everything an expression may read."""

    github: Mapping[str, Any] = field(default_factory=dict)
    inputs: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    needs: Mapping[str, NeedsEntry] = field(default_factory=dict)
    steps: Mapping[str, StepEntry] | None = None
    declared_steps: frozenset[str] = frozenset()
    secrets: Mapping[str, str] = field(default_factory=dict)
    runner: Mapping[str, Any] = field(default_factory=dict)
    status: StatusSnapshot = field(default_factory=StatusSnapshot)

    def __post_init__(self) -> None:
        for name in ("github", "inputs", "env", "needs", "secrets", "runner"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))
        if self.steps is not None:
            object.__setattr__(self, "steps", MappingProxyType(dict(self.steps)))

    def namespace(self, name: str, expression: str) -> Any:  # noqa: ANN401
        """
        Resolve a top-level context name.

        Raises:
            ExpressionEvaluationError: For unknown names, or ``steps`` outside a job
        """
        if name == "github":
            return ContextObject("github", self.github)
        if name == "inputs":
            return ContextObject("inputs", self.inputs)
        if name == "env":
            return ContextObject("env", self.env)
        if name == "secrets":
            return ContextObject("secrets", self.secrets, missing="")
        if name == "runner":
            return ContextObject("runner", self.runner)
        if name == "job":
            return ContextObject("job", {"status": self.status.job_status})
        if name == "needs":
            return ContextObject(
                "needs",
                {
                    job_id: ContextObject(
                        f"needs.{job_id}",
                        {
                            "result": entry.result,
                            "outputs": ContextObject(
                                f"needs.{job_id}.outputs", entry.outputs, missing=""
                            ),
                        },
                    )
                    for job_id, entry in self.needs.items()
                },
                strict=True,
            )
        if name == "steps":
            if self.steps is None:
                raise ExpressionEvaluationError(
                    expression, "the steps context is only available inside a job"
                )
            return ContextObject(
                "steps",
                {
                    step_id: ContextObject(
                        f"steps.{step_id}",
                        {
                            "outcome": entry.outcome,
                            "conclusion": entry.conclusion,
                            "outputs": ContextObject(
                                f"steps.{step_id}.outputs", entry.outputs, missing=""
                            ),
                        },
                    )
                    for step_id, entry in self.steps.items()
                },
                strict=True,
                known=self.declared_steps,
            )
        raise ExpressionEvaluationError(expression, f"unrecognized named-value '{name}'")
