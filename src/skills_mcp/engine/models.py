"""Pydantic models for skill definitions, installations, execution records and jobs."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .status import SkillExecutionStatus, UnitStatus, WorkloadStatus

logger = logging.getLogger(__name__)


def generate_id(prefix: str) -> str:
    """Generate a short unique ID with a readable prefix (e.g. ``sexec_1a2b3c4d5e6f``)."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# =============================================================================
# Skill definition
# =============================================================================


class MergeStrategy(str, Enum):
    """How dependency outputs are combined into a unit's input."""

    MERGE = "merge"
    OVERRIDE = "override"
    CUSTOM = "custom"


class OutputSelector(BaseModel):
    """Path expression extracting part of a dependency's output."""

    path: str = Field(default="", description="Dot-notation path, e.g. 'result.items[0]'")
    default: Any = Field(default=None, description="Value used when the path does not resolve")


def _parse_json_field(value: Any, field_name: str) -> Any:
    # Package definitions store selectors and mappings as JSON strings
    if isinstance(value, str):
        if not value.strip():
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring unparsable {field_name}: {value!r}")
            return None
    return value


class UnitDependency(BaseModel):
    """Edge from a workflow unit to one of the units it depends on."""

    dependency_id: str = Field(description="ID of the unit this unit depends on")
    condition: str | None = Field(
        default=None, description="Jinja2 boolean expression gating the dependent unit"
    )
    input_mapping: dict[str, str] | None = Field(
        default=None, description="targetKey -> sourcePath mapping applied to the output"
    )
    output_selector: OutputSelector | None = Field(
        default=None, description="Selects part of the dependency output"
    )
    merge_strategy: MergeStrategy | None = Field(default=None)

    @field_validator("input_mapping", mode="before")
    @classmethod
    def _parse_input_mapping(cls, v: Any) -> Any:
        return _parse_json_field(v, "input_mapping")

    @field_validator("output_selector", mode="before")
    @classmethod
    def _parse_output_selector(cls, v: Any) -> Any:
        return _parse_json_field(v, "output_selector")

    @field_validator("merge_strategy", mode="before")
    @classmethod
    def _empty_merge_strategy(cls, v: Any) -> Any:
        return v or None


class WorkflowUnitInfo(BaseModel):
    """One node in a skill's DAG, as supplied by the package definition."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unit ID, unique within the skill")
    name: str = Field(default="", description="Display name")
    dependencies: list[UnitDependency] = Field(default_factory=list)

    @property
    def dependency_ids(self) -> list[str]:
        return [dep.dependency_id for dep in self.dependencies]


# =============================================================================
# Installation
# =============================================================================


class UnitBinding(BaseModel):
    """Concrete workload target a unit was bound to at install time."""

    target_id: str | None = None
    status: str = "ready"


class Installation(BaseModel):
    """A user's installed instance of a skill."""

    installation_id: str
    owner_id: str
    skill_id: str
    name: str = ""
    status: str = "ready"
    units: list[WorkflowUnitInfo] = Field(default_factory=list)
    unit_bindings: dict[str, UnitBinding] = Field(default_factory=dict)

    def resolve_target(self, unit_id: str) -> str | None:
        """Return the bound target ID for a unit, or None when unbound."""
        binding = self.unit_bindings.get(unit_id)
        return binding.target_id if binding and binding.target_id else None


# =============================================================================
# Persisted execution records
# =============================================================================


class SkillExecution(BaseModel):
    """One run of an installed skill."""

    execution_id: str = Field(default_factory=lambda: generate_id("sexec"))
    installation_id: str
    skill_id: str
    owner_id: str
    status: SkillExecutionStatus = SkillExecutionStatus.PENDING
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.now)


class SkillExecutionUnit(BaseModel):
    """Execution record of one workflow unit inside a skill execution."""

    execution_unit_id: str = Field(default_factory=lambda: generate_id("sunit"))
    execution_id: str
    unit_id: str
    target_unit_id: str
    execution_level: int
    status: UnitStatus = UnitStatus.PENDING
    input: dict[str, Any] | None = None
    output: dict[str, Any] | None = None
    error_message: str | None = None
    retry_count: int = 0
    workload_handle: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.now)


# =============================================================================
# Workload engine payloads
# =============================================================================


class VariableValue(BaseModel):
    type: str = "text"
    text: str = ""


class WorkflowVariable(BaseModel):
    """Runtime variable passed to the workload engine."""

    variable_id: str = Field(default_factory=lambda: generate_id("var"))
    name: str
    variable_type: str = "string"
    value: list[VariableValue] = Field(default_factory=list)

    @classmethod
    def from_value(cls, name: str, value: Any, variable_id: str | None = None) -> WorkflowVariable:
        text = value if isinstance(value, str) else json.dumps(value, default=str)
        variable = cls(name=name, value=[VariableValue(text=text)])
        if variable_id:
            variable.variable_id = variable_id
        return variable


class WorkloadState(BaseModel):
    """Snapshot of a workload run."""

    status: WorkloadStatus
    output: dict[str, Any] | None = None
    error: str | None = None


# =============================================================================
# Jobs
# =============================================================================


class JobType(str, Enum):
    EXECUTE_SKILL = "execute-skill"
    EXECUTE_UNIT = "execute-unit"


class SkillExecutionJob(BaseModel):
    """Payload of the top-level job driving one skill execution."""

    execution_id: str
    skill_id: str
    installation_id: str
    owner_id: str
    input: dict[str, Any] = Field(default_factory=dict)


class SkillUnitJob(BaseModel):
    """Payload of the job running one workflow unit."""

    execution_id: str
    execution_unit_id: str
    unit_id: str
    target_unit_id: str
    input: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0


__all__ = [
    "generate_id",
    "MergeStrategy",
    "OutputSelector",
    "UnitDependency",
    "WorkflowUnitInfo",
    "UnitBinding",
    "Installation",
    "SkillExecution",
    "SkillExecutionUnit",
    "VariableValue",
    "WorkflowVariable",
    "WorkloadState",
    "JobType",
    "SkillExecutionJob",
    "SkillUnitJob",
]
