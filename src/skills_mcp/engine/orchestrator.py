"""Skill execution orchestrator.

SkillExecutor drives a skill run through its leveled execution plan:

1. start() validates the installation, builds the plan, persists the execution
   and one row per bound unit, then enqueues a single execute-skill job
2. process_execution() (execute-skill handler) walks the levels in order,
   computes each unit's input from its dependencies' outputs, enqueues one
   execute-unit job per unit and waits for the level to settle
3. process_workflow() (execute-unit handler) runs one unit on the workload
   engine, polls it to completion and records the result, rescheduling itself
   with backoff on retryable failures

Level completion is signalled in-process through an asyncio.Event per
execution; the store stays authoritative and is re-queried on every wake-up
and at least every poll interval.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from .exceptions import SkillExecutionError
from .execution_store import ExecutionStore
from .mapper import evaluate_condition, process_data_mapping
from .models import (
    Installation,
    JobType,
    SkillExecution,
    SkillExecutionJob,
    SkillExecutionUnit,
    SkillUnitJob,
    UnitDependency,
    WorkflowVariable,
)
from .plan import ExecutionPlan, build_plan, get_blocked_units
from .registry import InstallationRegistry
from .retry import ExecutionConfig, calculate_backoff, should_retry
from .status import IN_FLIGHT_UNIT_STATUSES, SkillExecutionStatus, UnitStatus, WorkloadStatus
from .work_queue import WorkQueue
from .workload import WorkloadEngine

logger = logging.getLogger(__name__)

RUNNABLE_INSTALLATION_STATUSES = frozenset({"ready", "partial_failed"})
CANCELLED_MESSAGE = "Cancelled by user"


def merge_variables(
    existing: Sequence[WorkflowVariable], input_data: Mapping[str, Any]
) -> list[WorkflowVariable]:
    """
    Merge a unit's computed input into the target workflow's declared variables.

    - Declared and in input: value replaced, variable ID and type kept
    - Declared only: kept unchanged
    - Input only: appended as a new variable
    """
    merged: list[WorkflowVariable] = []
    declared: set[str] = set()

    for variable in existing:
        declared.add(variable.name)
        if variable.name in input_data:
            replacement = WorkflowVariable.from_value(variable.name, input_data[variable.name])
            merged.append(variable.model_copy(update={"value": replacement.value}))
        else:
            merged.append(variable)

    for name, value in input_data.items():
        if name not in declared:
            merged.append(WorkflowVariable.from_value(name, value))

    return merged


class SkillExecutor:
    """
    Coordinates skill executions across the store, work queue and workload engine.

    Usage:
        executor = SkillExecutor(store, queue, workload, registry, config)
        executor.register_handlers()
        await queue.start()

        execution_id = await executor.start_by_id("inst-report", {"week": 42})
        status = await executor.get_status(execution_id)
    """

    def __init__(
        self,
        store: ExecutionStore,
        work_queue: WorkQueue,
        workload: WorkloadEngine,
        registry: InstallationRegistry | None = None,
        config: ExecutionConfig | None = None,
    ):
        self.store = store
        self.work_queue = work_queue
        self.workload = workload
        self.registry = registry or InstallationRegistry()
        self.config = config or ExecutionConfig()

        # Installations passed to start() directly; the registry is the fallback
        self._installations: dict[str, Installation] = {}
        self._level_events: dict[str, asyncio.Event] = {}

    def register_handlers(self) -> None:
        """Attach process_execution/process_workflow to the work queue."""
        self.work_queue.register_handler(JobType.EXECUTE_SKILL, self.process_execution)
        self.work_queue.register_handler(JobType.EXECUTE_UNIT, self.process_workflow)

    # =========================================================================
    # Start
    # =========================================================================

    async def start(
        self,
        installation: Installation,
        input_data: dict[str, Any] | None = None,
        owner_id: str | None = None,
    ) -> str:
        """
        Start a skill execution asynchronously.

        Args:
            installation: Installed skill to run
            input_data: Skill-level input shared by every unit
            owner_id: Caller identity; must own the installation when given

        Returns:
            Execution ID (the run continues in the work queue)

        Raises:
            SkillExecutionError: SKILL_NOT_READY, ACCESS_DENIED,
                CIRCULAR_DEPENDENCY or WORKFLOW_NOT_BOUND. Nothing is persisted
                when start() raises.
        """
        if installation.status not in RUNNABLE_INSTALLATION_STATUSES:
            raise SkillExecutionError.skill_not_ready(installation.skill_id, installation.status)
        if not installation.units:
            raise SkillExecutionError.skill_not_ready(
                installation.skill_id, installation.status, "skill has no workflow units"
            )
        if owner_id is not None and owner_id != installation.owner_id:
            raise SkillExecutionError.access_denied(installation.installation_id)

        plan = build_plan(installation.units)

        execution = SkillExecution(
            installation_id=installation.installation_id,
            skill_id=installation.skill_id,
            owner_id=installation.owner_id,
            input=dict(input_data or {}),
        )

        unit_rows: list[SkillExecutionUnit] = []
        unbound: list[str] = []
        for level in plan.levels:
            for unit in level.units:
                target_id = installation.resolve_target(unit.id)
                if target_id is None:
                    unbound.append(unit.id)
                    continue
                unit_rows.append(
                    SkillExecutionUnit(
                        execution_id=execution.execution_id,
                        unit_id=unit.id,
                        target_unit_id=target_id,
                        execution_level=level.level,
                    )
                )

        if not unit_rows:
            raise SkillExecutionError.workflow_not_bound(installation.skill_id, unbound)
        if unbound:
            logger.warning(
                f"Skill {installation.skill_id}: excluding unbound units from execution: "
                f"{', '.join(unbound)}"
            )

        await self.store.create_execution(execution)
        await self.store.create_units(unit_rows)
        self._installations[installation.installation_id] = installation

        job = SkillExecutionJob(
            execution_id=execution.execution_id,
            skill_id=installation.skill_id,
            installation_id=installation.installation_id,
            owner_id=installation.owner_id,
            input=execution.input,
        )
        await self.work_queue.enqueue(JobType.EXECUTE_SKILL, job.model_dump(mode="json"))

        logger.info(
            f"Started skill execution {execution.execution_id} "
            f"(skill={installation.skill_id}, levels={len(plan.levels)}, units={len(unit_rows)})"
        )
        return execution.execution_id

    async def start_by_id(
        self,
        installation_id: str,
        input_data: dict[str, Any] | None = None,
        owner_id: str | None = None,
    ) -> str:
        """Resolve an installation through the registry and start it."""
        installation = self.registry.get(installation_id)
        return await self.start(installation, input_data, owner_id=owner_id)

    # =========================================================================
    # execute-skill handler
    # =========================================================================

    async def process_execution(self, payload: dict[str, Any]) -> None:
        """
        Run a skill execution level by level (execute-skill job handler).

        Raises:
            SkillExecutionError: EXECUTION_NOT_FOUND when the record is missing.
                All unit-level failures are absorbed into the final status.
        """
        job = SkillExecutionJob.model_validate(payload)
        execution_id = job.execution_id

        if await self.store.get_execution(execution_id) is None:
            logger.error(f"Skill execution {execution_id} not found")
            raise SkillExecutionError.execution_not_found(execution_id)

        if not await self.store.claim_execution(execution_id):
            logger.info(f"Skill execution {execution_id} already claimed or stopped, skipping")
            return

        try:
            installation = self._resolve_installation(job.installation_id)
            plan = build_plan(installation.units)
        except SkillExecutionError as e:
            logger.error(f"Skill execution {execution_id} cannot run: {e}")
            await self.store.update_execution(
                execution_id,
                only_if_status=[SkillExecutionStatus.RUNNING],
                status=SkillExecutionStatus.FAILED,
                error_message=e.message,
                completed_at=datetime.now(),
            )
            return

        try:
            await self._run_levels(job, plan)
        finally:
            self._level_events.pop(execution_id, None)

    async def _run_levels(self, job: SkillExecutionJob, plan: ExecutionPlan) -> None:
        execution_id = job.execution_id
        rows = await self.store.list_units(execution_id)
        row_ids = {row.unit_id: row.execution_unit_id for row in rows}
        levels = sorted({row.execution_level for row in rows})

        outputs: dict[str, dict[str, Any]] = {}
        failed: list[str] = []
        blocked: list[str] = []
        unfinished: list[str] = []
        cancelled = False

        for level in levels:
            execution = await self.store.get_execution(execution_id)
            if execution is None or execution.status.is_cancelled():
                logger.info(f"Skill execution {execution_id} cancelled, stopping at level {level}")
                cancelled = True
                break

            level_rows = await self.store.list_units(execution_id, level=level)
            dispatched = 0
            for row in level_rows:
                if row.status.is_terminal():
                    continue
                if await self._dispatch_unit(job, plan, row, outputs):
                    dispatched += 1

            settled = True
            if dispatched:
                logger.debug(f"Execution {execution_id} level {level}: dispatched {dispatched}")
                settled = await self._wait_for_level(execution_id, level)

            for row in await self.store.list_units(execution_id, level=level):
                if row.status == UnitStatus.SUCCESS:
                    outputs[row.unit_id] = row.output or {}
                elif row.status == UnitStatus.FAILED:
                    failed.append(row.unit_id)
                    for dependent in get_blocked_units(plan, row.unit_id, blocked):
                        blocked.append(dependent)
                        execution_unit_id = row_ids.get(dependent)
                        if execution_unit_id is None:
                            continue
                        await self.store.update_unit(
                            execution_unit_id,
                            only_if_status=[UnitStatus.PENDING],
                            status=UnitStatus.BLOCKED,
                            error_message=f"Blocked by failed dependency: {row.unit_id}",
                            completed_at=datetime.now(),
                        )
                elif not settled and row.status in IN_FLIGHT_UNIT_STATUSES:
                    # Left as-is; a late result still lands on the row
                    unfinished.append(row.unit_id)

        if cancelled:
            return

        if not failed and not unfinished:
            status = SkillExecutionStatus.SUCCESS
        elif not outputs:
            status = SkillExecutionStatus.FAILED
        else:
            status = SkillExecutionStatus.PARTIAL_FAILED

        error_message = None
        if failed:
            error_message = f"Failed units: {', '.join(failed)}"
            blocked_rows = [unit_id for unit_id in blocked if unit_id in row_ids]
            if blocked_rows:
                error_message += f"; blocked units: {', '.join(blocked_rows)}"
        if unfinished:
            timed_out = f"Timed out units: {', '.join(unfinished)}"
            error_message = f"{error_message}; {timed_out}" if error_message else timed_out

        finalized = await self.store.update_execution(
            execution_id,
            only_if_status=[SkillExecutionStatus.RUNNING],
            status=status,
            output=outputs,
            error_message=error_message,
            completed_at=datetime.now(),
        )
        if finalized:
            logger.info(
                f"Skill execution {execution_id} finished: {status.value} "
                f"({len(outputs)} succeeded, {len(failed)} failed, {len(blocked)} blocked, "
                f"{len(unfinished)} timed out)"
            )
        else:
            logger.info(f"Skill execution {execution_id} was stopped before it finished")

    async def _dispatch_unit(
        self,
        job: SkillExecutionJob,
        plan: ExecutionPlan,
        row: SkillExecutionUnit,
        outputs: Mapping[str, dict[str, Any]],
    ) -> bool:
        """Evaluate conditions, compute input and enqueue one unit. Returns True if enqueued."""
        unit = plan.get_unit(row.unit_id)
        dependencies = unit.dependencies if unit else []

        try:
            unmet = self._unmet_condition(dependencies, outputs, job.input)
        except SkillExecutionError as e:
            logger.warning(f"Unit {row.unit_id} condition failed: {e}")
            await self._finish_unit(row, UnitStatus.FAILED, error_message=e.message)
            return False

        if unmet is not None:
            logger.info(f"Skipping unit {row.unit_id}: condition on {unmet} not met")
            await self._finish_unit(
                row, UnitStatus.SKIPPED, error_message=f"Condition on dependency {unmet} not met"
            )
            return False

        try:
            unit_input = process_data_mapping(row.unit_id, job.input, outputs, dependencies)
        except SkillExecutionError as e:
            logger.warning(f"Unit {row.unit_id} mapping failed: {e}")
            await self._finish_unit(row, UnitStatus.FAILED, error_message=e.message)
            return False

        queued = await self.store.update_unit(
            row.execution_unit_id,
            only_if_status=[UnitStatus.PENDING],
            status=UnitStatus.QUEUED,
            input=unit_input,
        )
        if not queued:
            return False

        unit_job = SkillUnitJob(
            execution_id=row.execution_id,
            execution_unit_id=row.execution_unit_id,
            unit_id=row.unit_id,
            target_unit_id=row.target_unit_id,
            input=unit_input,
            retry_count=row.retry_count,
        )
        await self.work_queue.enqueue(JobType.EXECUTE_UNIT, unit_job.model_dump(mode="json"))
        return True

    @staticmethod
    def _unmet_condition(
        dependencies: Sequence[UnitDependency],
        outputs: Mapping[str, dict[str, Any]],
        input_data: Mapping[str, Any],
    ) -> str | None:
        """Return the first dependency whose condition is not met, or None."""
        for dep in dependencies:
            if not dep.condition:
                continue
            # A dependency that produced no output cannot satisfy its condition
            if dep.dependency_id not in outputs:
                return dep.dependency_id
            context = {"output": outputs[dep.dependency_id], "input": input_data}
            if not evaluate_condition(dep.condition, context):
                return dep.dependency_id
        return None

    async def _finish_unit(
        self, row: SkillExecutionUnit, status: UnitStatus, error_message: str | None = None
    ) -> None:
        await self.store.update_unit(
            row.execution_unit_id,
            only_if_status=[UnitStatus.PENDING],
            status=status,
            error_message=error_message,
            completed_at=datetime.now(),
        )

    async def _wait_for_level(self, execution_id: str, level: int) -> bool:
        """
        Wait until no unit at this level is in flight.

        Returns:
            False if skill_timeout_ms elapsed first (the level is left as-is)
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.skill_timeout_ms / 1000
        poll_interval = self.config.poll_interval_ms / 1000
        event = self._level_events.setdefault(execution_id, asyncio.Event())

        while True:
            event.clear()
            in_flight = await self.store.list_units(
                execution_id, level=level, statuses=IN_FLIGHT_UNIT_STATUSES
            )
            if not in_flight:
                return True

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(
                    f"Execution {execution_id} level {level} timed out after "
                    f"{self.config.skill_timeout_ms}ms with {len(in_flight)} units in flight"
                )
                return False

            try:
                await asyncio.wait_for(event.wait(), timeout=min(poll_interval, remaining))
            except TimeoutError:
                pass

    def _signal_level(self, execution_id: str) -> None:
        event = self._level_events.get(execution_id)
        if event is not None:
            event.set()

    # =========================================================================
    # execute-unit handler
    # =========================================================================

    async def process_workflow(self, payload: dict[str, Any]) -> None:
        """
        Run one workflow unit on the workload engine (execute-unit job handler).

        Never raises for unit failures: the row ends as success, failed, or
        queued again with a delayed retry job.
        """
        job = SkillUnitJob.model_validate(payload)

        execution = await self.store.get_execution(job.execution_id)
        if execution is None or not execution.status.is_active():
            logger.info(f"Unit {job.unit_id} not started: execution {job.execution_id} not active")
            return

        started = await self.store.update_unit(
            job.execution_unit_id,
            only_if_status=[UnitStatus.QUEUED],
            status=UnitStatus.RUNNING,
            input=job.input,
            started_at=datetime.now(),
        )
        if not started:
            logger.info(f"Unit {job.execution_unit_id} no longer runnable, skipping")
            return

        try:
            output = await self._run_workload(execution.owner_id, job)
        except Exception as e:
            await self._handle_unit_failure(job, SkillExecutionError.wrap(e))
        else:
            await self.store.update_unit(
                job.execution_unit_id,
                only_if_status=[UnitStatus.RUNNING],
                status=UnitStatus.SUCCESS,
                output=output,
                error_message=None,
                completed_at=datetime.now(),
            )
            logger.info(f"Unit {job.unit_id} of execution {job.execution_id} succeeded")
        finally:
            self._signal_level(job.execution_id)

    async def _run_workload(self, owner_id: str, job: SkillUnitJob) -> dict[str, Any]:
        declared = await self.workload.get_variables(owner_id, job.target_unit_id)
        variables = merge_variables(declared, job.input)

        handle = await self.workload.initialize(
            owner_id,
            job.target_unit_id,
            variables,
            options={
                "skill_execution_id": job.execution_id,
                "execution_unit_id": job.execution_unit_id,
            },
        )
        await self.store.update_unit(job.execution_unit_id, workload_handle=handle)
        logger.debug(f"Unit {job.unit_id} started on workload engine: handle={handle}")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.workflow_timeout_ms / 1000
        poll_interval = self.config.poll_interval_ms / 1000

        while True:
            state = await self.workload.get_status(handle)
            if state.status == WorkloadStatus.FINISHED:
                return state.output or {}
            if state.status == WorkloadStatus.FAILED:
                raise SkillExecutionError.workflow_failed(job.target_unit_id, state.error)

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise SkillExecutionError.workflow_timeout(
                    job.target_unit_id, self.config.workflow_timeout_ms
                )
            await asyncio.sleep(min(poll_interval, remaining))

    async def _handle_unit_failure(self, job: SkillUnitJob, error: SkillExecutionError) -> None:
        policy = self.config.retry_policy

        if should_retry(error, job.retry_count, policy):
            delay_ms = calculate_backoff(job.retry_count, policy)
            retry_job = job.model_copy(update={"retry_count": job.retry_count + 1})
            requeued = await self.store.update_unit(
                job.execution_unit_id,
                only_if_status=[UnitStatus.RUNNING],
                status=UnitStatus.QUEUED,
                retry_count=retry_job.retry_count,
                error_message=error.message,
                workload_handle=None,
            )
            if not requeued:
                return
            try:
                await self.work_queue.enqueue(
                    JobType.EXECUTE_UNIT, retry_job.model_dump(mode="json"), delay_ms=delay_ms
                )
            except RuntimeError as e:
                logger.error(f"Could not reschedule unit {job.unit_id}: {e}")
                await self.store.update_unit(
                    job.execution_unit_id,
                    only_if_status=[UnitStatus.QUEUED],
                    status=UnitStatus.FAILED,
                    error_message=error.message,
                    completed_at=datetime.now(),
                )
                return
            logger.warning(
                f"Unit {job.unit_id} failed ({error.code.value}), retry "
                f"{retry_job.retry_count}/{policy.max_retries} in {delay_ms}ms: {error.message}"
            )
            return

        await self.store.update_unit(
            job.execution_unit_id,
            only_if_status=[UnitStatus.RUNNING],
            status=UnitStatus.FAILED,
            error_message=error.message,
            completed_at=datetime.now(),
        )
        logger.error(
            f"Unit {job.unit_id} of execution {job.execution_id} failed after "
            f"{job.retry_count} retries: {error}"
        )

    # =========================================================================
    # Queries and stop
    # =========================================================================

    async def get_status(self, execution_id: str, owner_id: str | None = None) -> dict[str, Any]:
        """
        Execution record plus per-unit statuses, inputs and outputs.

        Raises:
            SkillExecutionError: EXECUTION_NOT_FOUND, or ACCESS_DENIED when
                owner_id is given and does not own the execution
        """
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            raise SkillExecutionError.execution_not_found(execution_id)
        if owner_id is not None and owner_id != execution.owner_id:
            raise SkillExecutionError.access_denied(execution.installation_id)

        units = await self.store.list_units(execution_id)
        return {
            **execution.model_dump(mode="json"),
            "unit_statuses": [
                {
                    "execution_unit_id": unit.execution_unit_id,
                    "unit_id": unit.unit_id,
                    "target_unit_id": unit.target_unit_id,
                    "execution_level": unit.execution_level,
                    "status": unit.status.value,
                    "input": unit.input,
                    "output": unit.output,
                    "retry_count": unit.retry_count,
                    "error_message": unit.error_message,
                    "started_at": unit.started_at.isoformat() if unit.started_at else None,
                    "completed_at": unit.completed_at.isoformat() if unit.completed_at else None,
                }
                for unit in units
            ],
        }

    async def list_executions(
        self,
        skill_id: str,
        status: SkillExecutionStatus | None = None,
        owner_id: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        """Paginated executions of a skill, newest first."""
        page = max(page, 1)
        page_size = max(min(page_size, 100), 1)

        executions, total = await self.store.list_executions(
            skill_id,
            status=status,
            owner_id=owner_id,
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        return {
            "items": [execution.model_dump(mode="json") for execution in executions],
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": math.ceil(total / page_size) if total else 0,
            "has_more": page * page_size < total,
        }

    async def stop_running_executions(
        self, installation_id: str, owner_id: str | None = None
    ) -> dict[str, Any]:
        """
        Cancel every pending/running execution of an installation.

        In-flight units get a best-effort abort on the workload engine and are
        marked failed; handlers already running are not preempted.

        Raises:
            SkillExecutionError: ACCESS_DENIED when owner_id is given and does
                not own the executions, NO_RUNNING_EXECUTIONS
        """
        executions = await self.store.find_executions(
            installation_id,
            statuses=[SkillExecutionStatus.PENDING, SkillExecutionStatus.RUNNING],
        )
        if owner_id is not None and any(e.owner_id != owner_id for e in executions):
            raise SkillExecutionError.access_denied(installation_id)
        if not executions:
            raise SkillExecutionError.no_running_executions(installation_id)

        stopped: list[dict[str, Any]] = []
        for execution in executions:
            units_aborted = await self._abort_execution_units(execution)
            await self.store.update_execution(
                execution.execution_id,
                only_if_status=[SkillExecutionStatus.PENDING, SkillExecutionStatus.RUNNING],
                status=SkillExecutionStatus.CANCELLED,
                error_message=CANCELLED_MESSAGE,
                completed_at=datetime.now(),
            )
            self._signal_level(execution.execution_id)
            stopped.append({"execution_id": execution.execution_id, "units_aborted": units_aborted})
            logger.info(
                f"Stopped skill execution {execution.execution_id} ({units_aborted} units aborted)"
            )

        return {
            "installation_id": installation_id,
            "message": f"Stopped {len(stopped)} running execution(s)",
            "stopped_executions": stopped,
        }

    async def _abort_execution_units(self, execution: SkillExecution) -> int:
        units_aborted = 0
        for unit in await self.store.list_active_units(execution.execution_id):
            if unit.workload_handle:
                try:
                    await self.workload.abort(execution.owner_id, unit.workload_handle)
                except Exception as e:
                    logger.warning(
                        f"Failed to abort workload run {unit.workload_handle} "
                        f"for unit {unit.unit_id}: {e}"
                    )
            updated = await self.store.update_unit(
                unit.execution_unit_id,
                only_if_status=IN_FLIGHT_UNIT_STATUSES,
                status=UnitStatus.FAILED,
                error_message=CANCELLED_MESSAGE,
                completed_at=datetime.now(),
            )
            if updated:
                units_aborted += 1
        return units_aborted

    def _resolve_installation(self, installation_id: str) -> Installation:
        installation = self._installations.get(installation_id)
        if installation is not None:
            return installation
        return self.registry.get(installation_id)


__all__ = ["SkillExecutor", "merge_variables", "CANCELLED_MESSAGE"]
