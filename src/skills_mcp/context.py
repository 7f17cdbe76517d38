"""Shared context types for MCP server.

This module contains context types used across server and tools modules,
separated to avoid circular imports.
"""

from dataclasses import dataclass

from mcp.server.fastmcp import Context
from mcp.server.session import ServerSession

from .engine import ExecutionStore, InstallationRegistry, SkillExecutor, WorkQueue


@dataclass
class AppContext:
    """Application context containing shared resources for MCP tools.

    Created during server startup and made available to all tools via the
    Context parameter.
    """

    registry: InstallationRegistry
    store: ExecutionStore
    work_queue: WorkQueue
    executor: SkillExecutor
    # Caller identity (SKILLS_OWNER_ID); None disables ownership checks
    owner_id: str | None = None


# Type alias for MCP tool context parameter
AppContextType = Context[ServerSession, AppContext]


__all__ = ["AppContext", "AppContextType"]
