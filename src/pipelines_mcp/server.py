"""FastMCP server initialization for pipelines-mcp.

This module initializes the MCP server and manages shared resources via lifespan context.
All tool implementations are in the tools module.

Following the official Anthropic Python SDK patterns:
- Lifespan context manager for resource initialization and cleanup
- Context injection for tool access to shared resources
- FastMCP server with stdio transport
"""

import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from .context import AppContext, AppContextType
from .engine import (
    EnvironmentConfig,
    RunManager,
    ShellSandbox,
    WorkflowRegistry,
    load_environments_file,
)
from .engine.secrets import EnvVarSecretProvider, ScopedSecretResolver, SecretAuditLog

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================


def _int_from_env(name: str, default: int, minimum: int, maximum: int) -> int:
    """Read an integer setting, clamped to [minimum, maximum]."""
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"Invalid {name}, using {default}")
        return default
    return max(minimum, min(maximum, value))


def get_max_parallel_jobs() -> int | None:
    """Get per-run concurrency limit from environment.

    Reads PIPELINES_MAX_PARALLEL_JOBS. 0 or missing means unbounded,
    otherwise clamped to 1-1000.
    """
    raw = os.getenv("PIPELINES_MAX_PARALLEL_JOBS", "0").strip()
    try:
        limit = int(raw or "0")
    except ValueError:
        logger.warning(f"Invalid PIPELINES_MAX_PARALLEL_JOBS '{raw}', running jobs unbounded")
        return None
    if limit <= 0:
        return None
    return max(1, min(1000, limit))


def load_workflows(registry: WorkflowRegistry) -> None:
    """Load workflows from built-in templates and optional user-provided directories.

    Priority: User workflows OVERRIDE built-in templates by name.

    Environment Variables:
        PIPELINES_WORKFLOW_PATHS: Comma-separated list of additional workflow directories.
            Paths can use ~ for home directory.

    Example:
        PIPELINES_WORKFLOW_PATHS="~/.pipelines,/opt/company-pipelines"
        # Load order:
        # 1. Built-in: src/pipelines_mcp/templates/
        # 2. User: ~/.pipelines (overrides built-in by name)
        # 3. User: /opt/company-pipelines (overrides both by name)
    """
    built_in_templates = Path(__file__).parent / "templates"
    if not built_in_templates.is_dir():
        raise RuntimeError(
            f"Built-in templates directory not found: {built_in_templates}\n"
            "This indicates a broken installation. Please reinstall pipelines-mcp."
        )

    user_paths: list[Path] = []
    for path_str in os.getenv("PIPELINES_WORKFLOW_PATHS", "").split(","):
        path_str = path_str.strip()
        if not path_str:
            continue
        expanded_path = Path(path_str).expanduser()
        if not expanded_path.is_dir():
            logger.warning(f"Workflow path is not a directory, skipping: {expanded_path}")
            continue
        user_paths.append(expanded_path)

    directories_to_load: list[Path | str] = [built_in_templates, *user_paths]
    logger.info(f"Loading workflows from {len(directories_to_load)} directories")

    result = registry.load_from_directories(directories_to_load, on_duplicate="overwrite")
    if not result.is_success:
        error_msg = f"Failed to load workflows: {result.error}"
        logger.error(error_msg)
        raise RuntimeError(error_msg)

    load_counts = result.unwrap()
    for directory, count in load_counts.items():
        logger.info(f"  {directory}: {count} workflows")
    logger.info(f"Successfully loaded {sum(load_counts.values())} total workflows into registry")


def load_environments() -> dict[str, EnvironmentConfig]:
    """Load environment protection rules from PIPELINES_ENVIRONMENTS_FILE (optional)."""
    file_path = os.getenv("PIPELINES_ENVIRONMENTS_FILE", "").strip()
    if not file_path:
        logger.info("No PIPELINES_ENVIRONMENTS_FILE set; environments are unprotected")
        return {}

    result = load_environments_file(Path(file_path).expanduser())
    if not result.is_success:
        raise RuntimeError(f"Failed to load environments: {result.error}")

    environments = result.unwrap()
    protected = sorted(name for name, config in environments.items() if config.is_protected)
    logger.info(f"Loaded {len(environments)} environments ({len(protected)} protected)")
    return environments


# =============================================================================
# Shared Resources and Lifespan Management
# =============================================================================


@asynccontextmanager
async def app_lifespan(_server: FastMCP) -> AsyncIterator[AppContext]:
    """Manage application lifecycle with resource initialization and cleanup.

    Environment Variables:
        PIPELINES_WORKFLOW_PATHS: Extra workflow directories
        PIPELINES_ENVIRONMENTS_FILE: Environment protection rules (YAML)
        PIPELINES_MAX_PARALLEL_JOBS: Per-run concurrency limit (0 = unbounded)
        PIPELINES_RUN_HISTORY_MAX / PIPELINES_RUN_HISTORY_TTL: Run retention
        PIPELINES_WORKDIR: Default working directory for steps
        PIPELINE_SECRET_*: Repository secrets
        PIPELINE_ENV_<ENV>_SECRET_*: Environment secrets
    """
    logger.info("Initializing MCP server resources...")

    repository_secrets = EnvVarSecretProvider()
    secret_keys = await repository_secrets.list_secret_keys()
    logger.info(f"Repository secrets available: {len(secret_keys)}")
    if secret_keys:
        # Keys only, never values
        logger.debug(f"Secret keys: {', '.join(sorted(secret_keys))}")

    secrets = ScopedSecretResolver(repository_secrets, audit_log=SecretAuditLog())
    environments = load_environments()

    workdir = os.getenv("PIPELINES_WORKDIR", "").strip() or None
    if workdir is not None:
        workdir = str(Path(workdir).expanduser())
        logger.info(f"Default step working directory: {workdir}")

    run_manager = RunManager(
        sandbox_factory=lambda: ShellSandbox(default_working_directory=workdir),
        environments=environments,
        secrets=secrets,
        max_parallel_jobs=get_max_parallel_jobs(),
        max_runs=_int_from_env("PIPELINES_RUN_HISTORY_MAX", 1000, 1, 100000),
        run_ttl=_int_from_env("PIPELINES_RUN_HISTORY_TTL", 86400, 60, 30 * 86400),
    )

    registry = WorkflowRegistry()
    load_workflows(registry)

    app_context = AppContext(
        registry=registry,
        run_manager=run_manager,
        environments=environments,
    )

    try:
        yield app_context
    finally:
        logger.info("Shutting down MCP server...")
        await run_manager.shutdown()


# Initialize MCP server with lifespan management
# Following Python MCP naming convention: {service}_mcp
mcp = FastMCP("pipelines_mcp", lifespan=app_lifespan)


# =============================================================================
# Server Entry Point
# =============================================================================


def main() -> None:
    """Entry point for running the MCP server.

    Called via ``python -m pipelines_mcp`` or the ``pipelines-mcp`` script.
    Defaults to stdio transport for MCP protocol communication.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    log_level_str = os.getenv("PIPELINES_LOG_LEVEL", "INFO").upper()

    if log_level_str not in valid_log_levels:
        print(
            f"Warning: Invalid PIPELINES_LOG_LEVEL '{log_level_str}'. "
            f"Valid levels: {', '.join(sorted(valid_log_levels))}. "
            "Using INFO.",
            file=sys.stderr,
        )
        log_level_str = "INFO"

    # Configure logging to stderr (MCP requirement)
    logging.basicConfig(
        level=getattr(logging, log_level_str),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    logger.info("Starting MCP server (press Ctrl+C to stop)...")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
    except Exception as e:
        logger.exception(f"Server error: {e}")
        sys.exit(1)

    logger.info("Server shutdown complete")


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Server infrastructure
    "mcp",
    "main",
    "AppContext",
    "AppContextType",
    # Configuration (exposed for testing)
    "get_max_parallel_jobs",
    "load_environments",
    "load_workflows",
]
