"""
YAML workflow loader.

Loads pipeline workflow documents from files or strings and validates them
against ``WorkflowSchema``. Loading never raises: every problem (missing file,
YAML syntax, schema violations, undefined needs, cycles, malformed
expressions) comes back as ``LoadResult.failure`` with a readable message.
"""

import logging
from pathlib import Path

import yaml

from .load_result import LoadResult
from .schema import WorkflowSchema

logger = logging.getLogger(__name__)


def load_workflow_from_file(file_path: str | Path) -> LoadResult[WorkflowSchema]:
    """
    Load and validate a workflow from a YAML file.

    Args:
        file_path: Path to YAML workflow file

    Returns:
        LoadResult.success(WorkflowSchema) if valid
        LoadResult.failure(error_message) with validation errors

    Example:
        result = load_workflow_from_file(".pipelines/ci.yml")
        if result.is_success:
            controller = RunController(result.value, sandbox=ShellSandbox())
    """
    path = Path(file_path)

    if not path.exists():
        return LoadResult.failure(f"Workflow file not found: {file_path}")

    if not path.is_file():
        return LoadResult.failure(f"Path is not a file: {file_path}")

    try:
        yaml_content = path.read_text(encoding="utf-8")
    except OSError as e:
        return LoadResult.failure(f"Failed to read file '{file_path}': {e}")

    return load_workflow_from_yaml(yaml_content, source=str(file_path))


def load_workflow_from_yaml(
    yaml_content: str, source: str = "<string>"
) -> LoadResult[WorkflowSchema]:
    """
    Load and validate a workflow from a YAML string.

    Args:
        yaml_content: YAML content as string
        source: Source identifier for error messages (default: "<string>")

    Example:
        yaml_str = '''
        name: hello
        on: push
        jobs:
          greet:
            steps:
              - run: echo "Hello"
        '''
        result = load_workflow_from_yaml(yaml_str)
    """
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        return LoadResult.failure(f"Invalid YAML syntax in {source}: {e}")

    if not isinstance(data, dict):
        return LoadResult.failure(
            f"Workflow {source} must be a YAML mapping, got {type(data).__name__}"
        )

    schema_result = WorkflowSchema.validate_yaml_dict(data)
    if not schema_result.is_success:
        return LoadResult.failure(
            f"Workflow validation failed in {source}:\n{schema_result.error}",
            metadata=schema_result.metadata,
        )

    return LoadResult.success(schema_result.unwrap(), metadata={"source": source})


def discover_workflows(directory: str | Path) -> LoadResult[list[WorkflowSchema]]:
    """
    Load every ``*.yml``/``*.yaml`` workflow in a directory (non-recursive).

    Invalid workflows are logged and skipped.

    Returns:
        LoadResult.success(list[WorkflowSchema]) with valid workflows
        LoadResult.failure(error_message) if the directory doesn't exist
    """
    dir_path = Path(directory)

    if not dir_path.is_dir():
        return LoadResult.failure(f"Directory not found: {directory}")

    workflows: list[WorkflowSchema] = []
    errors: list[str] = []

    for yaml_file in sorted([*dir_path.glob("*.yaml"), *dir_path.glob("*.yml")]):
        result = load_workflow_from_file(yaml_file)
        if result.is_success:
            workflows.append(result.unwrap())
        else:
            errors.append(f"{yaml_file.name}: {result.error}")

    if errors:
        logger.warning(f"{len(errors)} workflow(s) failed to load:")
        for error in errors:
            logger.warning(f"  - {error}")

    return LoadResult.success(workflows)
