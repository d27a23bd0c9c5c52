"""Tests for the job dependency graph."""

import pytest

from pipelines_mcp.engine import (
    CyclicDependencyError,
    WorkflowValidationError,
    build_job_graph,
)


def test_topological_sort_respects_needs():
    graph = build_job_graph(
        {
            "deploy": ["build", "test"],
            "test": ["build"],
            "build": ["setup"],
            "setup": [],
        }
    )

    order = graph.topological_sort()
    position = {job: i for i, job in enumerate(order)}

    for job in order:
        for dep in graph.needs_of(job):
            assert position[dep] < position[job]
    assert order[0] == "setup"
    assert order[-1] == "deploy"


def test_roots_dependents_and_in_degrees():
    graph = build_job_graph({"a": [], "b": ["a"], "c": ["a"], "d": ["b", "c"]})

    assert graph.roots() == ["a"]
    assert graph.dependents_of("a") == ["b", "c"]
    assert graph.needs_of("d") == ["b", "c"]
    assert graph.in_degrees() == [0, 1, 1, 2]
    assert len(graph) == 4
    assert "d" in graph
    assert "z" not in graph


def test_ancestors_are_transitive():
    graph = build_job_graph({"a": [], "b": ["a"], "c": ["b"], "x": []})

    assert graph.ancestors("c") == ["a", "b"]
    assert graph.ancestors("a") == []
    assert graph.ancestors("x") == []


def test_execution_waves_group_fan_out():
    graph = build_job_graph(
        {
            "prepare": [],
            "p1": ["prepare"],
            "p2": ["prepare"],
            "p3": ["prepare"],
            "aggregate": ["p1", "p2", "p3"],
        }
    )

    assert graph.execution_waves() == [["prepare"], ["p1", "p2", "p3"], ["aggregate"]]


def test_cycle_is_rejected_with_path():
    with pytest.raises(CyclicDependencyError) as exc_info:
        build_job_graph({"a": ["c"], "b": ["a"], "c": ["b"]})

    cycle = exc_info.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert "Cyclic dependency" in str(exc_info.value)


def test_self_dependency_is_a_cycle():
    with pytest.raises(CyclicDependencyError) as exc_info:
        build_job_graph({"a": ["a"]})

    assert exc_info.value.cycle == ["a", "a"]


def test_cycle_error_is_a_validation_error():
    with pytest.raises(WorkflowValidationError):
        build_job_graph({"a": ["b"], "b": ["a"]})


def test_undefined_needs_is_rejected():
    with pytest.raises(WorkflowValidationError) as exc_info:
        build_job_graph({"a": [], "b": ["missing"]})

    assert exc_info.value.errors == ["Job 'b' needs undefined job 'missing'"]
