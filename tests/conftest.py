"""Shared test configuration for skills-mcp tests.

Provides:
- FakeWorkloadEngine: scripted in-memory workload engine
- Store/queue/executor fixtures wired with fast timings
- Helpers for building installations and waiting on executions
"""

import asyncio
import itertools
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from skills_mcp.engine import (
    ExecutionConfig,
    ExecutionStore,
    Installation,
    RetryPolicy,
    SkillExecutionStatus,
    SkillExecutor,
    WorkflowVariable,
    WorkloadEngine,
    WorkloadState,
    WorkloadStatus,
    WorkQueue,
)


def finished(output: dict[str, Any] | None = None) -> WorkloadState:
    return WorkloadState(status=WorkloadStatus.FINISHED, output=output or {})


def failed(error: str = "boom") -> WorkloadState:
    return WorkloadState(status=WorkloadStatus.FAILED, error=error)


class FakeWorkloadEngine(WorkloadEngine):
    """
    In-memory workload engine.

    Each target has a script of outcomes consumed one per initialize() call:
    a WorkloadState (reported by get_status) or an exception (raised by
    initialize). Targets without a script finish with {"target": target_id}.
    Targets listed in `hold` stay EXECUTING until release() is called.
    """

    def __init__(self) -> None:
        self.outcomes: dict[str, list[WorkloadState | Exception]] = {}
        self.variables: dict[str, list[WorkflowVariable]] = {}
        self.hold: set[str] = set()
        self.initialized: list[dict[str, Any]] = []
        self.aborted: list[str] = []
        self._runs: dict[str, WorkloadState] = {}
        self._run_targets: dict[str, str] = {}
        self._ids = itertools.count(1)

    def script(self, target_id: str, *outcomes: WorkloadState | Exception) -> None:
        self.outcomes.setdefault(target_id, []).extend(outcomes)

    def release(self, target_id: str, output: dict[str, Any] | None = None) -> None:
        for handle, target in self._run_targets.items():
            if target == target_id and self._runs[handle].status == WorkloadStatus.EXECUTING:
                self._runs[handle] = finished(output)

    def calls_for(self, target_id: str) -> list[dict[str, Any]]:
        return [call for call in self.initialized if call["target_id"] == target_id]

    async def get_variables(self, owner_id: str, target_id: str) -> list[WorkflowVariable]:
        return list(self.variables.get(target_id, []))

    async def initialize(
        self,
        owner_id: str,
        target_id: str,
        variables: list[WorkflowVariable],
        options: dict[str, Any] | None = None,
    ) -> str:
        self.initialized.append(
            {
                "owner_id": owner_id,
                "target_id": target_id,
                "variables": variables,
                "options": options or {},
            }
        )
        script = self.outcomes.get(target_id)
        outcome = script.pop(0) if script else finished({"target": target_id})
        if isinstance(outcome, Exception):
            raise outcome

        handle = f"run_{next(self._ids)}"
        self._run_targets[handle] = target_id
        if target_id in self.hold:
            self._runs[handle] = WorkloadState(status=WorkloadStatus.EXECUTING)
        else:
            self._runs[handle] = outcome
        return handle

    async def get_status(self, handle: str) -> WorkloadState:
        return self._runs[handle]

    async def abort(self, owner_id: str, handle: str) -> None:
        self.aborted.append(handle)
        self._runs[handle] = failed("aborted")


def make_installation(
    units: list[dict[str, Any]],
    bindings: dict[str, str] | None = None,
    **overrides: Any,
) -> Installation:
    """Build an installation; every unit is bound to 'wf-<unit id>' unless bindings is given."""
    if bindings is None:
        bindings = {unit["id"]: f"wf-{unit['id']}" for unit in units}
    data: dict[str, Any] = {
        "installation_id": "inst-1",
        "owner_id": "user-1",
        "skill_id": "skill-1",
        "status": "ready",
        "units": units,
        "unit_bindings": {unit_id: {"target_id": target} for unit_id, target in bindings.items()},
    }
    data.update(overrides)
    return Installation.model_validate(data)


async def wait_for_execution(
    executor: SkillExecutor, execution_id: str, timeout: float = 5.0
) -> dict[str, Any]:
    """Poll until the execution leaves pending/running."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        status = await executor.get_status(execution_id)
        if not SkillExecutionStatus(status["status"]).is_active():
            return status
        if loop.time() > deadline:
            raise AssertionError(f"Execution {execution_id} still {status['status']}")
        await asyncio.sleep(0.02)


@pytest.fixture
def fast_config() -> ExecutionConfig:
    return ExecutionConfig(
        retry_policy=RetryPolicy(max_retries=2, backoff_ms=10, max_backoff_ms=50),
        skill_timeout_ms=5000,
        workflow_timeout_ms=1000,
        poll_interval_ms=20,
    )


@pytest.fixture
async def store(tmp_path: Path) -> ExecutionStore:
    execution_store = ExecutionStore(tmp_path / "state.db")
    await execution_store.init()
    return execution_store


@pytest.fixture
def workload() -> FakeWorkloadEngine:
    return FakeWorkloadEngine()


@pytest.fixture
async def executor(
    store: ExecutionStore, workload: FakeWorkloadEngine, fast_config: ExecutionConfig
) -> AsyncIterator[SkillExecutor]:
    """SkillExecutor attached to a started queue (2 skill workers, 4 unit workers)."""
    queue = WorkQueue(skill_workers=2, unit_workers=4)
    skill_executor = SkillExecutor(store, queue, workload, config=fast_config)
    skill_executor.register_handlers()
    await queue.start()
    yield skill_executor
    await queue.stop(wait_for_completion=False)
