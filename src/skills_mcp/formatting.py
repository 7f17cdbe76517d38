"""Markdown formatting for MCP tool responses.

JSON responses are returned as plain dicts by the tools; the helpers here
render the same data for humans.
"""

from typing import Any

from .engine import Installation


def format_installation_list_markdown(installations: list[Installation]) -> str:
    """Format installed skills as a markdown list."""
    if not installations:
        return "No installations found"

    lines = [f"## Installed Skills ({len(installations)})", ""]
    for installation in installations:
        bound = sum(1 for unit in installation.units if installation.resolve_target(unit.id))
        title = installation.name or installation.skill_id
        lines.append(
            f"- **{installation.installation_id}**: {title} "
            f"({installation.status}, {bound}/{len(installation.units)} units bound)"
        )
    return "\n".join(lines)


def format_execution_markdown(status: dict[str, Any]) -> str:
    """Format a skill execution status (SkillExecutor.get_status) as markdown.

    Args:
        status: Execution fields plus unit_statuses

    Returns:
        Markdown with a summary section and one line per unit
    """
    lines = [
        f"# Skill Execution: {status['execution_id']}",
        "",
        f"- **Skill**: {status['skill_id']}",
        f"- **Installation**: {status['installation_id']}",
        f"- **Status**: {status['status']}",
    ]
    if status.get("started_at"):
        lines.append(f"- **Started**: {status['started_at']}")
    if status.get("completed_at"):
        lines.append(f"- **Completed**: {status['completed_at']}")
    if status.get("error_message"):
        lines.append(f"- **Error**: {status['error_message']}")

    units = status.get("unit_statuses") or []
    if units:
        lines.append("")
        lines.append("## Units")
        for unit in units:
            line = f"- L{unit['execution_level']} **{unit['unit_id']}**: {unit['status']}"
            if unit.get("retry_count"):
                line += f" (retries: {unit['retry_count']})"
            if unit.get("error_message"):
                line += f" - {unit['error_message']}"
            lines.append(line)

    return "\n".join(lines)


__all__ = ["format_installation_list_markdown", "format_execution_markdown"]
