"""MCP tools for starting, inspecting and stopping skill executions.

Each tool takes flat Annotated parameters (validated by pydantic) and reads
shared resources from the lifespan AppContext. Tool docstrings double as the
tool descriptions shown to clients.

Engine errors are returned as {"ok": false, "error": {...}} envelopes
instead of being raised through the protocol.

When the server runs with SKILLS_OWNER_ID, every tool acts on behalf of that
owner: other owners' installations are hidden and their executions denied.
"""

from typing import Annotated, Any, Literal

from mcp.types import ToolAnnotations
from pydantic import Field

from .context import AppContextType
from .engine import SkillExecutionError, SkillExecutionStatus
from .formatting import format_execution_markdown, format_installation_list_markdown
from .server import mcp

# =============================================================================
# MCP Tools
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Start Skill Execution",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,  # Every call creates a new execution
        openWorldHint=True,  # Units run on the external workload service
    )
)
async def start_skill_execution(
    installation_id: Annotated[
        str,
        Field(
            description="Installation ID (use list_installations() to discover)",
            min_length=1,
            max_length=200,
        ),
    ],
    input: Annotated[  # noqa: A002
        dict[str, Any] | None,
        Field(description="Skill input shared by every workflow unit"),
    ] = None,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Start an installed skill asynchronously. Required: installation_id. Optional: input."""
    app_ctx = ctx.request_context.lifespan_context

    try:
        execution_id = await app_ctx.executor.start_by_id(
            installation_id, input or {}, owner_id=app_ctx.owner_id
        )
    except SkillExecutionError as e:
        return e.to_dict()

    return {
        "ok": True,
        "execution_id": execution_id,
        "installation_id": installation_id,
        "status": SkillExecutionStatus.PENDING.value,
        "message": "Skill execution started. Use get_skill_execution() to check progress.",
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Skill Execution",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def get_skill_execution(
    execution_id: Annotated[str, Field(description="Execution ID", min_length=1)],
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """Get skill execution status, output and per-unit statuses. Required: execution_id."""
    app_ctx = ctx.request_context.lifespan_context

    try:
        status = await app_ctx.executor.get_status(execution_id, owner_id=app_ctx.owner_id)
    except SkillExecutionError as e:
        return e.to_dict()

    if format == "markdown":
        return format_execution_markdown(status)
    return {"ok": True, **status}


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Skill Executions",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_skill_executions(
    skill_id: Annotated[str, Field(description="Skill ID", min_length=1)],
    status: Annotated[
        Literal["pending", "running", "success", "failed", "partial_failed", "cancelled"] | None,
        Field(description="Filter by execution status"),
    ] = None,
    page: Annotated[int, Field(description="Page number (1-based)", ge=1)] = 1,
    page_size: Annotated[int, Field(description="Items per page", ge=1, le=100)] = 20,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """List executions of a skill, newest first. Required: skill_id. Optional: status, page."""
    app_ctx = ctx.request_context.lifespan_context

    result = await app_ctx.executor.list_executions(
        skill_id,
        status=SkillExecutionStatus(status) if status else None,
        owner_id=app_ctx.owner_id,
        page=page,
        page_size=page_size,
    )
    return {"ok": True, **result}


@mcp.tool(
    annotations=ToolAnnotations(
        title="Stop Skill Executions",
        readOnlyHint=False,
        destructiveHint=True,
        idempotentHint=False,
        openWorldHint=True,  # Sends abort requests to the workload service
    )
)
async def stop_skill_executions(
    installation_id: Annotated[str, Field(description="Installation ID", min_length=1)],
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Cancel all pending or running executions of an installation. Required: installation_id."""
    app_ctx = ctx.request_context.lifespan_context

    try:
        result = await app_ctx.executor.stop_running_executions(
            installation_id, owner_id=app_ctx.owner_id
        )
    except SkillExecutionError as e:
        return e.to_dict()

    return {"ok": True, **result}


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Installations",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_installations(
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """List installed skills. Optional: format (json|markdown)."""
    app_ctx = ctx.request_context.lifespan_context
    installations = [
        installation
        for installation in app_ctx.registry.list_all()
        if app_ctx.owner_id is None or installation.owner_id == app_ctx.owner_id
    ]

    if format == "markdown":
        return format_installation_list_markdown(installations)

    return {
        "ok": True,
        "installations": [
            {
                "installation_id": installation.installation_id,
                "skill_id": installation.skill_id,
                "name": installation.name,
                "status": installation.status,
                "units": [unit.id for unit in installation.units],
                "unbound_units": [
                    unit.id
                    for unit in installation.units
                    if installation.resolve_target(unit.id) is None
                ],
            }
            for installation in installations
        ],
        "total": len(installations),
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Queue Statistics",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def get_queue_stats(
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Get work queue statistics. No parameters."""
    app_ctx = ctx.request_context.lifespan_context
    return {"ok": True, "work_queue": app_ctx.work_queue.get_stats()}


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "start_skill_execution",
    "get_skill_execution",
    "list_skill_executions",
    "stop_skill_executions",
    "list_installations",
    "get_queue_stats",
]
