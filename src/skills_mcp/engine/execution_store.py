"""Persistent storage for skill executions using SQLite.

Architecture:
    - skill_executions: one row per skill run (audit record, never deleted)
    - skill_execution_units: one row per materialized plan entry
    - JSON columns for input/output payloads
    - WAL mode for concurrent access from several server instances
    - Write-through: every call is its own transaction, no in-memory cache

All blocking sqlite3 calls run in the default thread pool executor.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Callable, Collection, Iterable
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from .models import SkillExecution, SkillExecutionUnit
from .state_config import StateConfig
from .status import IN_FLIGHT_UNIT_STATUSES, SkillExecutionStatus, UnitStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EXECUTION_COLUMNS = (
    "execution_id",
    "installation_id",
    "skill_id",
    "owner_id",
    "status",
    "input",
    "output",
    "error_message",
    "started_at",
    "completed_at",
    "created_at",
)

_UNIT_COLUMNS = (
    "execution_unit_id",
    "execution_id",
    "unit_id",
    "target_unit_id",
    "execution_level",
    "status",
    "input",
    "output",
    "error_message",
    "retry_count",
    "workload_handle",
    "started_at",
    "completed_at",
    "created_at",
)

_JSON_COLUMNS = frozenset({"input", "output"})


def _to_column(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _JSON_COLUMNS:
        return json.dumps(value, default=str, ensure_ascii=False)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _from_row(row: sqlite3.Row) -> dict[str, Any]:
    data = dict(row)
    for name in _JSON_COLUMNS:
        if data.get(name) is not None:
            data[name] = json.loads(data[name])
    return data


def _values(names: Iterable[str], data: dict[str, Any]) -> tuple[Any, ...]:
    return tuple(_to_column(name, data.get(name)) for name in names)


class ExecutionStore:
    """SQLite store for SkillExecution and SkillExecutionUnit records.

    Example:
        store = ExecutionStore()
        await store.init()

        await store.create_execution(execution)
        await store.create_units(units)

        level_rows = await store.list_units(execution.execution_id, level=0)
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        """Initialize store.

        Args:
            db_path: SQLite file (default: StateConfig.get_db_path())
        """
        self._db_path = Path(db_path) if db_path else StateConfig.get_db_path()

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def init(self) -> None:
        """Create tables and indexes if they don't exist. Must be called before use."""
        await self._run_in_executor(self._init_db)
        logger.info(f"ExecutionStore initialized: db={self._db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS skill_executions (
                    execution_id TEXT PRIMARY KEY,
                    installation_id TEXT NOT NULL,
                    skill_id TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    input TEXT,
                    output TEXT,
                    error_message TEXT,
                    started_at TEXT,
                    completed_at TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS skill_execution_units (
                    execution_unit_id TEXT PRIMARY KEY,
                    execution_id TEXT NOT NULL,
                    unit_id TEXT NOT NULL,
                    target_unit_id TEXT NOT NULL,
                    execution_level INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    input TEXT,
                    output TEXT,
                    error_message TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    workload_handle TEXT,
                    started_at TEXT,
                    completed_at TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_exec_skill ON skill_executions(skill_id, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_exec_installation "
                "ON skill_executions(installation_id, status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_unit_level "
                "ON skill_execution_units(execution_id, execution_level)"
            )
            conn.commit()
        finally:
            conn.close()

        logger.debug("Execution store schema initialized with WAL mode")

    # =========================================================================
    # Skill executions
    # =========================================================================

    async def create_execution(self, execution: SkillExecution) -> None:
        data = execution.model_dump()

        def _write() -> None:
            conn = self._connect()
            try:
                placeholders = ", ".join("?" for _ in _EXECUTION_COLUMNS)
                conn.execute(
                    f"INSERT INTO skill_executions ({', '.join(_EXECUTION_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    _values(_EXECUTION_COLUMNS, data),
                )
                conn.commit()
            finally:
                conn.close()

        await self._run_in_executor(_write)

    async def get_execution(self, execution_id: str) -> SkillExecution | None:
        def _read() -> dict[str, Any] | None:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT * FROM skill_executions WHERE execution_id = ?", (execution_id,)
                ).fetchone()
                return _from_row(row) if row else None
            finally:
                conn.close()

        data = await self._run_in_executor(_read)
        return SkillExecution.model_validate(data) if data else None

    async def update_execution(
        self,
        execution_id: str,
        only_if_status: Collection[SkillExecutionStatus] | None = None,
        **fields: Any,
    ) -> bool:
        """Update columns of an execution row.

        Args:
            execution_id: Row to update
            only_if_status: Apply only while the row is in one of these statuses
            **fields: Column values (JSON/datetime/enum values are converted)

        Returns:
            True if a row was updated
        """
        return await self._update(
            "skill_executions", "execution_id", execution_id, _EXECUTION_COLUMNS,
            only_if_status, fields,
        )

    async def claim_execution(self, execution_id: str) -> bool:
        """Atomically move an execution from PENDING to RUNNING.

        Only one caller wins; duplicate deliveries of the top-level job lose.
        """
        return await self.update_execution(
            execution_id,
            only_if_status=[SkillExecutionStatus.PENDING],
            status=SkillExecutionStatus.RUNNING,
            started_at=datetime.now(),
        )

    async def find_executions(
        self,
        installation_id: str,
        statuses: Collection[SkillExecutionStatus] | None = None,
    ) -> list[SkillExecution]:
        """Executions of an installation, optionally filtered by status (oldest first)."""

        def _query() -> list[dict[str, Any]]:
            sql = "SELECT * FROM skill_executions WHERE installation_id = ?"
            params: list[Any] = [installation_id]
            if statuses:
                sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
                params.extend(_to_column("status", s) for s in statuses)
            sql += " ORDER BY created_at ASC"
            conn = self._connect()
            try:
                return [_from_row(row) for row in conn.execute(sql, params).fetchall()]
            finally:
                conn.close()

        rows = await self._run_in_executor(_query)
        return [SkillExecution.model_validate(row) for row in rows]

    async def list_executions(
        self,
        skill_id: str,
        status: SkillExecutionStatus | None = None,
        owner_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[SkillExecution], int]:
        """Page of executions for a skill, most recent first.

        Returns:
            (executions on this page, total matching executions)
        """

        def _query() -> tuple[list[dict[str, Any]], int]:
            where = "WHERE skill_id = ?"
            params: list[Any] = [skill_id]
            if status:
                where += " AND status = ?"
                params.append(_to_column("status", status))
            if owner_id:
                where += " AND owner_id = ?"
                params.append(owner_id)

            conn = self._connect()
            try:
                total = conn.execute(
                    f"SELECT COUNT(*) FROM skill_executions {where}", params
                ).fetchone()[0]
                rows = conn.execute(
                    f"SELECT * FROM skill_executions {where} "
                    "ORDER BY created_at DESC LIMIT ? OFFSET ?",
                    [*params, limit, offset],
                ).fetchall()
                return [_from_row(row) for row in rows], total
            finally:
                conn.close()

        rows, total = await self._run_in_executor(_query)
        return [SkillExecution.model_validate(row) for row in rows], total

    # =========================================================================
    # Unit executions
    # =========================================================================

    async def create_units(self, units: Iterable[SkillExecutionUnit]) -> None:
        """Insert unit rows in one transaction."""
        rows = [_values(_UNIT_COLUMNS, unit.model_dump()) for unit in units]
        if not rows:
            return

        def _write() -> None:
            conn = self._connect()
            try:
                placeholders = ", ".join("?" for _ in _UNIT_COLUMNS)
                conn.executemany(
                    f"INSERT INTO skill_execution_units ({', '.join(_UNIT_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    rows,
                )
                conn.commit()
            finally:
                conn.close()

        await self._run_in_executor(_write)

    async def update_unit(
        self,
        execution_unit_id: str,
        only_if_status: Collection[UnitStatus] | None = None,
        **fields: Any,
    ) -> bool:
        """Update columns of a unit row (see update_execution)."""
        return await self._update(
            "skill_execution_units", "execution_unit_id", execution_unit_id, _UNIT_COLUMNS,
            only_if_status, fields,
        )

    async def list_units(
        self,
        execution_id: str,
        level: int | None = None,
        statuses: Collection[UnitStatus] | None = None,
    ) -> list[SkillExecutionUnit]:
        """Unit rows of an execution ordered by level, optionally filtered."""

        def _query() -> list[dict[str, Any]]:
            sql = "SELECT * FROM skill_execution_units WHERE execution_id = ?"
            params: list[Any] = [execution_id]
            if level is not None:
                sql += " AND execution_level = ?"
                params.append(level)
            if statuses:
                sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
                params.extend(_to_column("status", s) for s in statuses)
            sql += " ORDER BY execution_level ASC, created_at ASC, rowid ASC"
            conn = self._connect()
            try:
                return [_from_row(row) for row in conn.execute(sql, params).fetchall()]
            finally:
                conn.close()

        rows = await self._run_in_executor(_query)
        return [SkillExecutionUnit.model_validate(row) for row in rows]

    async def list_active_units(self, execution_id: str) -> list[SkillExecutionUnit]:
        """Non-terminal unit rows (pending, queued, running)."""
        return await self.list_units(execution_id, statuses=IN_FLIGHT_UNIT_STATUSES)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _update(
        self,
        table: str,
        key_column: str,
        key: str,
        allowed_columns: Collection[str],
        only_if_status: Collection[Enum] | None,
        fields: dict[str, Any],
    ) -> bool:
        unknown = set(fields) - set(allowed_columns)
        if unknown or key_column in fields:
            raise ValueError(f"Cannot update columns on {table}: {sorted(unknown or {key_column})}")
        if not fields:
            return False

        assignments = ", ".join(f"{name} = ?" for name in fields)
        params: list[Any] = [_to_column(name, value) for name, value in fields.items()]
        sql = f"UPDATE {table} SET {assignments} WHERE {key_column} = ?"
        params.append(key)
        if only_if_status:
            sql += f" AND status IN ({', '.join('?' for _ in only_if_status)})"
            params.extend(_to_column("status", s) for s in only_if_status)

        def _write() -> int:
            conn = self._connect()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.rowcount
            finally:
                conn.close()

        return await self._run_in_executor(_write) > 0

    async def _run_in_executor(self, func: Callable[[], T]) -> T:
        """Run blocking function in thread pool executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func)


__all__ = ["ExecutionStore"]
