"""
Workflow registry for named pipeline definitions.

Holds validated ``WorkflowSchema`` instances loaded from one or more
directories so MCP tools can start runs by workflow name.

Features:
- Register workflows with duplicate detection
- Load from directories (recursive) with a duplicate policy
- Track the source directory of each workflow
- Summaries (jobs, needs, environments, triggers) for listing tools
"""

import logging
from pathlib import Path
from typing import Any, Literal

from .load_result import LoadResult
from .loader import load_workflow_from_file
from .schema import WorkflowSchema

logger = logging.getLogger(__name__)


class WorkflowRegistry:
    """
    Central registry of loaded workflows.

    Example:
        registry = WorkflowRegistry()
        registry.load_from_directory(".pipelines/")

        workflow = registry.get("release")
    """

    def __init__(self) -> None:
        self._workflows: dict[str, WorkflowSchema] = {}
        self._workflow_sources: dict[str, Path] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._workflows

    def __len__(self) -> int:
        return len(self._workflows)

    def register(
        self,
        workflow: WorkflowSchema,
        source_dir: Path | None = None,
        overwrite: bool = False,
    ) -> None:
        """
        Register a workflow.

        Raises:
            ValueError: If a workflow with the same name exists and overwrite is False
        """
        if workflow.name in self._workflows and not overwrite:
            raise ValueError(
                f"Workflow '{workflow.name}' already registered. Use unregister() first."
            )

        self._workflows[workflow.name] = workflow
        if source_dir is not None:
            self._workflow_sources[workflow.name] = source_dir

        logger.info(f"Registered workflow: {workflow.name}")

    def unregister(self, name: str) -> None:
        """
        Raises:
            KeyError: If workflow not found
        """
        if name not in self._workflows:
            raise KeyError(f"Workflow '{name}' not found in registry")

        del self._workflows[name]
        self._workflow_sources.pop(name, None)
        logger.info(f"Unregistered workflow: {name}")

    def get(self, name: str) -> WorkflowSchema:
        """
        Raises:
            KeyError: If workflow not found
        """
        if name not in self._workflows:
            available = sorted(self._workflows.keys())
            raise KeyError(f"Workflow '{name}' not found. Available workflows: {available}")
        return self._workflows[name]

    def list_names(self) -> list[str]:
        return sorted(self._workflows.keys())

    def get_workflow_source(self, name: str) -> Path | None:
        return self._workflow_sources.get(name)

    def get_workflow_summary(self, name: str) -> dict[str, Any]:
        """
        Describe a workflow for MCP tools.

        Returns:
            Dict with name, description, triggers, jobs (needs, environment,
            step count, declared outputs) and the execution waves
        """
        workflow = self.get(name)
        summary: dict[str, Any] = {
            "name": workflow.name,
            "description": workflow.description,
            "triggers": workflow.trigger_events,
            "jobs": {
                job_id: {
                    "name": job.name or job_id,
                    "needs": job.needs,
                    "environment": job.environment.name if job.environment else None,
                    "steps": len(job.steps),
                    "outputs": sorted(job.outputs),
                }
                for job_id, job in workflow.jobs.items()
            },
            "waves": workflow.job_graph.execution_waves(),
        }
        source = self.get_workflow_source(name)
        if source is not None:
            summary["source"] = str(source)
        return summary

    def load_from_directory(
        self,
        directory: str | Path,
        on_duplicate: Literal["skip", "overwrite", "error"] = "skip",
    ) -> LoadResult[int]:
        """
        Load all workflows from a directory (recursive).

        Invalid workflows are logged and skipped.

        Args:
            directory: Directory to search for ``*.yml``/``*.yaml`` files
            on_duplicate: What to do when a name is already registered

        Returns:
            LoadResult.success(count) with number of workflows loaded
            LoadResult.failure(error_message) if the directory is missing, or
            a duplicate is found with on_duplicate="error"
        """
        dir_path = Path(directory)
        logger.info(f"Loading workflows from directory: {dir_path}")

        if not dir_path.is_dir():
            error_msg = f"Directory not found: {dir_path}"
            logger.error(error_msg)
            return LoadResult.failure(error_msg)

        yaml_files = sorted([*dir_path.glob("**/*.yaml"), *dir_path.glob("**/*.yml")])

        loaded_count = 0
        for yaml_file in yaml_files:
            workflow_result = load_workflow_from_file(yaml_file)
            if not workflow_result.is_success:
                logger.warning(
                    f"Failed to load workflow from {yaml_file.name}: {workflow_result.error}"
                )
                continue

            workflow = workflow_result.unwrap()
            if workflow.name in self._workflows:
                if on_duplicate == "error":
                    return LoadResult.failure(
                        f"Duplicate workflow '{workflow.name}' in {yaml_file}"
                    )
                if on_duplicate == "skip":
                    logger.warning(f"Skipping duplicate workflow '{workflow.name}' ({yaml_file})")
                    continue

            self.register(workflow, source_dir=dir_path, overwrite=True)
            loaded_count += 1

        logger.info(f"Loaded {loaded_count} workflows from {dir_path}")
        return LoadResult.success(loaded_count)

    def load_from_directories(
        self,
        directories: list[str | Path],
        on_duplicate: Literal["skip", "overwrite", "error"] = "overwrite",
    ) -> LoadResult[dict[str, int]]:
        """
        Load from several directories in order (later directories win by default).

        Returns:
            LoadResult.success({directory: count})
        """
        counts: dict[str, int] = {}
        for directory in directories:
            result = self.load_from_directory(directory, on_duplicate=on_duplicate)
            if not result.is_success:
                return LoadResult.failure(result.error or f"Failed to load {directory}")
            counts[str(directory)] = result.unwrap_or(0)
        return LoadResult.success(counts)
