"""FastMCP server for skills-mcp.

The lifespan builds the execution stack once per process: installation
registry, SQLite execution store, work queue and SkillExecutor wired to the
HTTP workload engine. Tools (tools.py) reach it through AppContext.
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
    ExecutionConfig,
    ExecutionStore,
    HttpWorkloadEngine,
    InstallationRegistry,
    SkillExecutor,
    WorkQueue,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Shared Resources and Lifespan Management
# =============================================================================


def get_num_workers(env_var: str, default: int) -> int:
    """Get a worker pool size from an environment variable.

    Valid range: 1-64 (clamped automatically); unparsable values use the default.
    """
    try:
        workers = int(os.getenv(env_var, str(default)))
        return max(1, min(64, workers))
    except ValueError:
        return default


def get_owner_id() -> str | None:
    """Caller identity from SKILLS_OWNER_ID, or None to skip ownership checks."""
    return os.getenv("SKILLS_OWNER_ID", "").strip() or None


def load_installations(registry: InstallationRegistry) -> None:
    """Load installations from the directories listed in SKILLS_INSTALLATION_PATHS.

    Environment Variables:
        SKILLS_INSTALLATION_PATHS: Comma-separated list of installation directories.
            Paths can use ~ for home directory. Later directories override earlier
            ones by installation ID.

    Example:
        SKILLS_INSTALLATION_PATHS="~/.skills/installations,/opt/team-skills"
    """
    env_paths_str = os.getenv("SKILLS_INSTALLATION_PATHS", "")
    directories: list[str | Path] = []

    for path_str in env_paths_str.split(","):
        path_str = path_str.strip()
        if not path_str:
            continue
        expanded_path = Path(path_str).expanduser()
        if not expanded_path.is_dir():
            logger.warning(f"Installation path is not a directory, skipping: {expanded_path}")
            continue
        directories.append(expanded_path)

    if not directories:
        logger.warning(
            "No installation directories configured. "
            "Set SKILLS_INSTALLATION_PATHS to load installed skills."
        )
        return

    result = registry.load_from_directories(directories)
    if not result.is_success:
        raise RuntimeError(f"Failed to load installations: {result.error}")

    load_counts = result.value or {}
    for directory, count in load_counts.items():
        logger.info(f"  {directory}: {count} installations")
    logger.info(f"Successfully loaded {len(registry)} installations into registry")


@asynccontextmanager
async def app_lifespan(_server: FastMCP) -> AsyncIterator[AppContext]:
    """Manage application lifecycle with resource initialization and cleanup.

    This lifespan context manager:
    1. Reads execution configuration from SKILLS_* environment variables
    2. Opens the execution store and loads installations
    3. Wires the skill executor into a started work queue
    4. Yields context to make resources available to tools
    5. Stops the queue and closes the workload client on shutdown

    Environment Variables:
        SKILLS_WORKLOAD_URL: Workload service base URL (required)
        SKILLS_WORKLOAD_TOKEN: Workload service bearer token
        SKILLS_SKILL_WORKERS: Concurrent skill executions (default: 2)
        SKILLS_UNIT_WORKERS: Concurrent workflow units (default: 4)
        SKILLS_OWNER_ID: Caller identity; restricts tools to this owner's
            installations and executions
        SKILLS_INSTALLATION_PATHS: Installation YAML directories
        See engine.retry for retry and timeout variables.

    Args:
        _server: FastMCP server instance (unused, required by FastMCP signature)

    Yields:
        AppContext with initialized resources
    """
    logger.info("Initializing MCP server resources...")

    config = ExecutionConfig.from_env()
    logger.info(
        f"Retry policy: max_retries={config.retry_policy.max_retries}, "
        f"backoff={config.retry_policy.backoff_ms}ms x{config.retry_policy.backoff_multiplier} "
        f"(max {config.retry_policy.max_backoff_ms}ms)"
    )

    workload = HttpWorkloadEngine.from_env()
    if workload is None:
        raise RuntimeError(
            "SKILLS_WORKLOAD_URL is not set.\n"
            "Server cannot run skills without a workload service. Please set\n"
            "SKILLS_WORKLOAD_URL (and SKILLS_WORKLOAD_TOKEN if required)."
        )

    store = ExecutionStore()
    await store.init()
    logger.info(f"Execution state: {store.db_path}")

    registry = InstallationRegistry()
    load_installations(registry)

    work_queue = WorkQueue(
        skill_workers=get_num_workers("SKILLS_SKILL_WORKERS", 2),
        unit_workers=get_num_workers("SKILLS_UNIT_WORKERS", 4),
    )
    executor = SkillExecutor(store, work_queue, workload, registry=registry, config=config)
    executor.register_handlers()

    await work_queue.start()

    try:
        yield AppContext(
            registry=registry,
            store=store,
            work_queue=work_queue,
            executor=executor,
            owner_id=get_owner_id(),
        )
    finally:
        logger.info("Shutting down MCP server...")

        # In-flight jobs are dropped; rows keep their last persisted status
        await work_queue.stop(wait_for_completion=False)
        logger.info("Work queue stopped")

        await workload.close()


mcp = FastMCP("skills_mcp", lifespan=app_lifespan)


# =============================================================================
# Server Entry Point
# =============================================================================


def main() -> None:
    """Entry point for running the MCP server.

    This function is called when the server is run directly via:
    - python -m skills_mcp
    - skills-mcp (console script entry point)

    Defaults to stdio transport for MCP protocol communication.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    log_level_str = os.getenv("SKILLS_LOG_LEVEL", "INFO").upper()

    if log_level_str not in valid_log_levels:
        print(
            f"Warning: Invalid SKILLS_LOG_LEVEL '{log_level_str}'. "
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
    "mcp",
    "main",
    "AppContext",
    "AppContextType",
    "get_num_workers",
    "get_owner_id",
    "load_installations",
]
