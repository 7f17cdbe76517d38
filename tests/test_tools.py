"""MCP tool tests.

Two layers:

1. **Tool functions** called directly with a mock MCP context whose
   lifespan_context is a real AppContext (SQLite store, work queue, executor
   with a fake workload engine)
2. **MCP protocol** smoke tests running `python -m skills_mcp` over stdio,
   the way an MCP client would
"""

import json
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from conftest import FakeWorkloadEngine, make_installation, wait_for_execution
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.types import TextContent

from skills_mcp.context import AppContext
from skills_mcp.engine import (
    ExecutionConfig,
    ExecutionStore,
    InstallationRegistry,
    SkillExecutor,
    WorkQueue,
)
from skills_mcp.server import get_num_workers, get_owner_id, load_installations
from skills_mcp.tools import (
    get_queue_stats,
    get_skill_execution,
    list_installations,
    list_skill_executions,
    start_skill_execution,
    stop_skill_executions,
)

INSTALLATION_YAML = """
installation_id: inst-cli
owner_id: user-1
skill_id: skill-cli
name: CLI skill
units:
  - id: only
unit_bindings:
  only: {target_id: wf-only}
"""


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
async def mock_context(
    store: ExecutionStore, workload: FakeWorkloadEngine, fast_config: ExecutionConfig
) -> AsyncIterator[MagicMock]:
    """Mock MCP context with a started AppContext.

    Registry contents:
    - inst-1: ready, units A -> B, both bound
    - inst-draft: still installing
    - inst-half: two units, only one bound
    """
    registry = InstallationRegistry()
    registry.register(
        make_installation(
            [{"id": "A"}, {"id": "B", "dependencies": [{"dependency_id": "A"}]}],
            name="Weekly report",
        )
    )
    registry.register(
        make_installation([{"id": "A"}], installation_id="inst-draft", status="installing")
    )
    registry.register(
        make_installation(
            [{"id": "A"}, {"id": "B"}], bindings={"A": "wf-A"}, installation_id="inst-half"
        )
    )

    work_queue = WorkQueue(skill_workers=2, unit_workers=2)
    executor = SkillExecutor(store, work_queue, workload, registry=registry, config=fast_config)
    executor.register_handlers()
    await work_queue.start()

    mock_ctx = MagicMock()
    mock_ctx.request_context.lifespan_context = AppContext(
        registry=registry, store=store, work_queue=work_queue, executor=executor
    )

    yield mock_ctx

    await work_queue.stop(wait_for_completion=False)


def executor_of(ctx: MagicMock) -> SkillExecutor:
    return ctx.request_context.lifespan_context.executor


# =============================================================================
# Tool functions
# =============================================================================


class TestStartAndGet:
    """start_skill_execution / get_skill_execution / list_skill_executions."""

    async def test_start_returns_execution_id(self, mock_context):
        result = await start_skill_execution(
            installation_id="inst-1", input={"week": 7}, ctx=mock_context
        )

        assert result["ok"] is True
        assert result["status"] == "pending"
        assert result["installation_id"] == "inst-1"
        assert result["execution_id"].startswith("sexec_")

        status = await wait_for_execution(executor_of(mock_context), result["execution_id"])
        assert status["status"] == "success"

    async def test_start_unknown_installation_returns_error(self, mock_context):
        result = await start_skill_execution(installation_id="inst-nope", ctx=mock_context)

        assert result["ok"] is False
        assert result["error"]["code"] == "INSTALLATION_NOT_FOUND"

    async def test_start_unready_installation_returns_error(self, mock_context):
        result = await start_skill_execution(installation_id="inst-draft", ctx=mock_context)

        assert result["ok"] is False
        assert result["error"]["code"] == "SKILL_NOT_READY"

    async def test_get_execution_json_and_markdown(self, mock_context):
        started = await start_skill_execution(installation_id="inst-1", ctx=mock_context)
        execution_id = started["execution_id"]
        await wait_for_execution(executor_of(mock_context), execution_id)

        result = await get_skill_execution(execution_id=execution_id, ctx=mock_context)
        markdown = await get_skill_execution(
            execution_id=execution_id, format="markdown", ctx=mock_context
        )

        assert result["ok"] is True
        assert result["status"] == "success"
        assert [u["unit_id"] for u in result["unit_statuses"]] == ["A", "B"]
        assert isinstance(markdown, str)
        assert f"# Skill Execution: {execution_id}" in markdown
        assert "- L1 **B**: success" in markdown

    async def test_get_missing_execution_returns_error(self, mock_context):
        result = await get_skill_execution(execution_id="sexec_missing", ctx=mock_context)

        assert result["ok"] is False
        assert result["error"]["code"] == "EXECUTION_NOT_FOUND"

    async def test_list_executions_filters_by_status(self, mock_context):
        started = await start_skill_execution(installation_id="inst-1", ctx=mock_context)
        await wait_for_execution(executor_of(mock_context), started["execution_id"])

        succeeded = await list_skill_executions(
            skill_id="skill-1", status="success", ctx=mock_context
        )
        failed = await list_skill_executions(skill_id="skill-1", status="failed", ctx=mock_context)

        assert succeeded["ok"] is True
        assert succeeded["total"] == 1
        assert succeeded["items"][0]["execution_id"] == started["execution_id"]
        assert failed["total"] == 0
        assert failed["total_pages"] == 0


class TestStop:
    """stop_skill_executions."""

    async def test_stop_without_running_executions(self, mock_context):
        result = await stop_skill_executions(installation_id="inst-1", ctx=mock_context)

        assert result["ok"] is False
        assert result["error"]["code"] == "NO_RUNNING_EXECUTIONS"

    async def test_stop_running_execution(self, mock_context, workload: FakeWorkloadEngine):
        workload.hold.add("wf-A")
        started = await start_skill_execution(installation_id="inst-1", ctx=mock_context)

        result = await stop_skill_executions(installation_id="inst-1", ctx=mock_context)

        assert result["ok"] is True
        assert result["message"] == "Stopped 1 running execution(s)"
        assert result["stopped_executions"][0]["execution_id"] == started["execution_id"]

        status = await wait_for_execution(executor_of(mock_context), started["execution_id"])
        assert status["status"] == "cancelled"


class TestOwnerScope:
    """Tools act on behalf of AppContext.owner_id when it is set."""

    async def test_other_owner_cannot_start_or_read(self, mock_context):
        started = await start_skill_execution(installation_id="inst-1", ctx=mock_context)
        await wait_for_execution(executor_of(mock_context), started["execution_id"])
        mock_context.request_context.lifespan_context.owner_id = "intruder"

        start = await start_skill_execution(installation_id="inst-1", ctx=mock_context)
        read = await get_skill_execution(execution_id=started["execution_id"], ctx=mock_context)
        stop = await stop_skill_executions(installation_id="inst-1", ctx=mock_context)

        assert start["error"]["code"] == "ACCESS_DENIED"
        assert read["error"]["code"] == "ACCESS_DENIED"
        assert stop["error"]["code"] == "NO_RUNNING_EXECUTIONS"

    async def test_other_owner_cannot_stop(self, mock_context, workload: FakeWorkloadEngine):
        workload.hold.add("wf-A")
        await start_skill_execution(installation_id="inst-1", ctx=mock_context)
        mock_context.request_context.lifespan_context.owner_id = "intruder"

        result = await stop_skill_executions(installation_id="inst-1", ctx=mock_context)

        assert result["ok"] is False
        assert result["error"]["code"] == "ACCESS_DENIED"

    async def test_listings_are_scoped_to_owner(self, mock_context):
        started = await start_skill_execution(installation_id="inst-1", ctx=mock_context)
        await wait_for_execution(executor_of(mock_context), started["execution_id"])
        app_ctx = mock_context.request_context.lifespan_context

        app_ctx.owner_id = "user-1"
        own = await list_skill_executions(skill_id="skill-1", ctx=mock_context)
        app_ctx.owner_id = "intruder"
        other = await list_skill_executions(skill_id="skill-1", ctx=mock_context)
        installations = await list_installations(ctx=mock_context)

        assert own["total"] == 1
        assert other["total"] == 0
        assert installations["total"] == 0


class TestDiscovery:
    """list_installations / get_queue_stats."""

    async def test_list_installations_json(self, mock_context):
        result = await list_installations(ctx=mock_context)

        assert result["ok"] is True
        assert result["total"] == 3
        by_id = {item["installation_id"]: item for item in result["installations"]}
        assert by_id["inst-1"]["name"] == "Weekly report"
        assert by_id["inst-1"]["units"] == ["A", "B"]
        assert by_id["inst-half"]["unbound_units"] == ["B"]
        assert by_id["inst-draft"]["status"] == "installing"

    async def test_list_installations_markdown(self, mock_context):
        result = await list_installations(format="markdown", ctx=mock_context)

        assert isinstance(result, str)
        assert "## Installed Skills (3)" in result
        assert "**inst-half**" in result
        assert "1/2 units bound" in result

    async def test_queue_stats(self, mock_context):
        result = await get_queue_stats(ctx=mock_context)

        assert result["ok"] is True
        assert result["work_queue"]["active_workers"] == 4
        assert result["work_queue"]["pools"]["execute-unit"]["workers"] == 2
        assert {"queue_size", "delayed_size", "processed_jobs", "failed_jobs"} <= set(
            result["work_queue"]
        )


# =============================================================================
# Server configuration
# =============================================================================


def test_load_installations_from_env(tmp_path: Path, monkeypatch):
    (tmp_path / "cli.yaml").write_text(INSTALLATION_YAML)
    monkeypatch.setenv("SKILLS_INSTALLATION_PATHS", f"{tmp_path}, {tmp_path / 'missing'}")

    registry = InstallationRegistry()
    load_installations(registry)

    assert "inst-cli" in registry


def test_load_installations_without_paths(monkeypatch):
    monkeypatch.delenv("SKILLS_INSTALLATION_PATHS", raising=False)

    registry = InstallationRegistry()
    load_installations(registry)

    assert len(registry) == 0


@pytest.mark.parametrize("value,expected", [("8", 8), ("0", 1), ("1000", 64), ("many", 4)])
def test_get_num_workers(monkeypatch, value, expected):
    monkeypatch.setenv("SKILLS_UNIT_WORKERS", value)
    assert get_num_workers("SKILLS_UNIT_WORKERS", 4) == expected


def test_get_num_workers_default(monkeypatch):
    monkeypatch.delenv("SKILLS_SKILL_WORKERS", raising=False)
    assert get_num_workers("SKILLS_SKILL_WORKERS", 2) == 2


def test_get_owner_id(monkeypatch):
    monkeypatch.setenv("SKILLS_OWNER_ID", " user-1 ")
    assert get_owner_id() == "user-1"
    monkeypatch.setenv("SKILLS_OWNER_ID", "")
    assert get_owner_id() is None


# =============================================================================
# MCP protocol
# =============================================================================


@asynccontextmanager
async def get_mcp_client(tmp_path: Path) -> AsyncIterator[ClientSession]:
    """MCP client session connected to `python -m skills_mcp` over stdio.

    The workload URL points at an unused port; these tests never run a unit.
    """
    installations_dir = tmp_path / "installations"
    installations_dir.mkdir()
    (installations_dir / "cli.yaml").write_text(INSTALLATION_YAML)

    server_params = StdioServerParameters(
        command=sys.executable,
        args=["-m", "skills_mcp"],
        env={
            **os.environ,
            "SKILLS_WORKLOAD_URL": "http://127.0.0.1:9",
            "SKILLS_INSTALLATION_PATHS": str(installations_dir),
            "SKILLS_STATE_DIR": str(tmp_path / "state"),
            "SKILLS_LOG_LEVEL": "WARNING",
        },
    )

    async with stdio_client(server_params) as (read, write):
        async with ClientSession(read, write) as session:
            await session.initialize()
            yield session


class TestMCPProtocol:
    """Server smoke tests through the MCP protocol."""

    async def test_server_exposes_tools(self, tmp_path: Path):
        async with get_mcp_client(tmp_path) as client:
            tools = await client.list_tools()

        assert {tool.name for tool in tools.tools} == {
            "start_skill_execution",
            "get_skill_execution",
            "list_skill_executions",
            "stop_skill_executions",
            "list_installations",
            "get_queue_stats",
        }

    async def test_list_installations_over_protocol(self, tmp_path: Path):
        async with get_mcp_client(tmp_path) as client:
            result = await client.call_tool("list_installations", {})

        assert not result.isError
        content = result.content[0]
        assert isinstance(content, TextContent)
        data = json.loads(content.text)
        assert data["ok"] is True
        assert [item["installation_id"] for item in data["installations"]] == ["inst-cli"]
