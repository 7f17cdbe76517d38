"""Skill execution engine core components.

Key Components:

- SkillExecutor: Orchestrates skill executions (start, level dispatch, unit runs, stop)
- ExecutionPlan / build_plan: Leveled DAG via Kahn's algorithm
- Data mapper: Output selectors, input mappings, merge strategies, conditions
- RetryPolicy / ExecutionConfig: Backoff and timing configuration from environment
- ExecutionStore: SQLite (WAL) persistence for executions and unit rows
- WorkQueue: asyncio worker pool with execute-skill / execute-unit jobs
- WorkloadEngine / HttpWorkloadEngine: Collaborator that runs a single unit
- InstallationRegistry: Installed skills loaded from YAML
- LoadResult: Error monad for loader/registry safe file operations

Architecture:
- Plan building and data mapping are synchronous and pure
- Everything touching the store, queue or workload engine is async
- Engine errors are SkillExecutionError with a stable ErrorCode
"""

from .exceptions import ErrorCode, SkillExecutionError
from .execution_store import ExecutionStore
from .load_result import LoadResult
from .loader import load_installation_from_file, load_installation_from_yaml
from .mapper import (
    apply_input_mapping,
    apply_output_selector,
    evaluate_condition,
    get_value_by_path,
    merge_inputs,
    process_data_mapping,
    set_value_by_path,
)
from .models import (
    Installation,
    JobType,
    MergeStrategy,
    OutputSelector,
    SkillExecution,
    SkillExecutionJob,
    SkillExecutionUnit,
    SkillUnitJob,
    UnitBinding,
    UnitDependency,
    WorkflowUnitInfo,
    VariableValue,
    WorkflowVariable,
    WorkloadState,
)
from .orchestrator import SkillExecutor
from .plan import (
    ExecutionLevel,
    ExecutionPlan,
    build_plan,
    compute_levels,
    get_blocked_units,
    get_ready_units,
    is_complete,
)
from .registry import InstallationRegistry
from .retry import ExecutionConfig, RetryPolicy, calculate_backoff, should_retry
from .status import SkillExecutionStatus, UnitStatus, WorkloadStatus
from .work_queue import WorkQueue
from .workload import HttpWorkloadEngine, WorkloadEngine

__all__ = [
    # Orchestration
    "SkillExecutor",
    "WorkQueue",
    "ExecutionStore",
    "WorkloadEngine",
    "HttpWorkloadEngine",
    # Plan builder
    "ExecutionLevel",
    "ExecutionPlan",
    "compute_levels",
    "build_plan",
    "get_ready_units",
    "is_complete",
    "get_blocked_units",
    # Data mapper
    "get_value_by_path",
    "set_value_by_path",
    "apply_output_selector",
    "apply_input_mapping",
    "merge_inputs",
    "process_data_mapping",
    "evaluate_condition",
    # Retry
    "RetryPolicy",
    "ExecutionConfig",
    "calculate_backoff",
    "should_retry",
    # Models
    "Installation",
    "UnitBinding",
    "WorkflowUnitInfo",
    "UnitDependency",
    "OutputSelector",
    "MergeStrategy",
    "SkillExecution",
    "SkillExecutionUnit",
    "SkillExecutionJob",
    "SkillUnitJob",
    "JobType",
    "VariableValue",
    "WorkflowVariable",
    "WorkloadState",
    "SkillExecutionStatus",
    "UnitStatus",
    "WorkloadStatus",
    # Errors
    "ErrorCode",
    "SkillExecutionError",
    # Loading
    "InstallationRegistry",
    "LoadResult",
    "load_installation_from_file",
    "load_installation_from_yaml",
]
