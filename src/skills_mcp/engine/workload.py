"""Workload engine collaborators.

The workload engine runs one concrete workflow (a unit's bound target) and
reports its status. The skill executor only talks to it through the
WorkloadEngine interface; HttpWorkloadEngine is the adapter for a remote
workload service.

HTTP contract (JSON bodies, bearer auth):
    GET  /workflows/{target_id}/variables   -> {"variables": [...]}
    POST /workflows/{target_id}/executions  -> {"execution_id": "..."}
    GET  /executions/{handle}               -> {"status": "...", "output": {...}, "error": "..."}
    POST /executions/{handle}/abort         -> 2xx
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Any

import httpx

from .exceptions import SkillExecutionError
from .models import WorkflowVariable, WorkloadState
from .status import WorkloadStatus

logger = logging.getLogger(__name__)


class WorkloadEngine(ABC):
    """Interface of the engine that executes a single workflow unit."""

    @abstractmethod
    async def get_variables(self, owner_id: str, target_id: str) -> list[WorkflowVariable]:
        """Variables currently declared by the target workflow."""

    @abstractmethod
    async def initialize(
        self,
        owner_id: str,
        target_id: str,
        variables: list[WorkflowVariable],
        options: dict[str, Any] | None = None,
    ) -> str:
        """Start a run of the target with the given variables; returns an opaque handle."""

    @abstractmethod
    async def get_status(self, handle: str) -> WorkloadState:
        """Current state of a run."""

    @abstractmethod
    async def abort(self, owner_id: str, handle: str) -> None:
        """Ask the engine to stop a run (advisory)."""

    async def close(self) -> None:  # noqa: B027 - optional hook
        """Release resources held by the engine."""


class HttpWorkloadEngine(WorkloadEngine):
    """WorkloadEngine backed by a remote HTTP workload service.

    Environment Variables:
        SKILLS_WORKLOAD_URL: Base URL of the workload service
        SKILLS_WORKLOAD_TOKEN: Bearer token (optional)
        SKILLS_WORKLOAD_HTTP_TIMEOUT: Per-request timeout in seconds (default: 30)
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_env(cls) -> HttpWorkloadEngine | None:
        """Create an engine from SKILLS_WORKLOAD_* variables, or None when unconfigured."""
        base_url = os.getenv("SKILLS_WORKLOAD_URL", "").strip()
        if not base_url:
            return None
        try:
            timeout = float(os.getenv("SKILLS_WORKLOAD_HTTP_TIMEOUT", "30"))
        except ValueError:
            timeout = 30.0
        return cls(base_url, token=os.getenv("SKILLS_WORKLOAD_TOKEN") or None, timeout=timeout)

    async def get_variables(self, owner_id: str, target_id: str) -> list[WorkflowVariable]:
        response = await self._client.get(
            f"/workflows/{target_id}/variables", headers={"X-Owner-Id": owner_id}
        )
        if response.status_code == 404:
            return []
        response.raise_for_status()
        data = response.json()
        return [WorkflowVariable.model_validate(v) for v in data.get("variables") or []]

    async def initialize(
        self,
        owner_id: str,
        target_id: str,
        variables: list[WorkflowVariable],
        options: dict[str, Any] | None = None,
    ) -> str:
        response = await self._client.post(
            f"/workflows/{target_id}/executions",
            headers={"X-Owner-Id": owner_id},
            json={
                "variables": [v.model_dump() for v in variables],
                "options": options or {},
            },
        )
        response.raise_for_status()
        handle = response.json().get("execution_id")
        if not handle:
            raise SkillExecutionError.workflow_failed(
                target_id, "Workload service returned no execution ID"
            )
        return str(handle)

    async def get_status(self, handle: str) -> WorkloadState:
        response = await self._client.get(f"/executions/{handle}")
        if response.status_code == 404:
            return WorkloadState(
                status=WorkloadStatus.FAILED, error="Workflow execution not found"
            )
        response.raise_for_status()
        data = response.json()
        status = str(data.get("status", "pending"))
        # Some services report "finish" instead of "finished"
        if status == "finish":
            status = WorkloadStatus.FINISHED.value
        return WorkloadState(
            status=WorkloadStatus(status),
            output=data.get("output"),
            error=data.get("error"),
        )

    async def abort(self, owner_id: str, handle: str) -> None:
        response = await self._client.post(
            f"/executions/{handle}/abort", headers={"X-Owner-Id": owner_id}
        )
        response.raise_for_status()
        logger.info(f"Abort requested for workload run {handle}")

    async def close(self) -> None:
        await self._client.aclose()


__all__ = ["WorkloadEngine", "HttpWorkloadEngine"]
