"""Skill execution error taxonomy.

Every failure the engine surfaces to callers is a SkillExecutionError carrying
an ErrorCode. Unknown exceptions raised while running a unit are classified
with SkillExecutionError.wrap() so the retry policy can decide between fatal
and transient failures.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import httpx


class ErrorCode(str, Enum):
    """Error codes shared by the engine, the retry policy and the tool layer."""

    EXECUTION_NOT_FOUND = "EXECUTION_NOT_FOUND"
    INSTALLATION_NOT_FOUND = "INSTALLATION_NOT_FOUND"
    SKILL_NOT_READY = "SKILL_NOT_READY"
    WORKFLOW_NOT_BOUND = "WORKFLOW_NOT_BOUND"
    WORKFLOW_TIMEOUT = "WORKFLOW_TIMEOUT"
    WORKFLOW_FAILED = "WORKFLOW_FAILED"
    CIRCULAR_DEPENDENCY = "CIRCULAR_DEPENDENCY"
    MAPPING_FAILED = "MAPPING_FAILED"
    CONDITION_EVAL_FAILED = "CONDITION_EVAL_FAILED"
    NO_RUNNING_EXECUTIONS = "NO_RUNNING_EXECUTIONS"
    ACCESS_DENIED = "ACCESS_DENIED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class SkillExecutionError(Exception):
    """
    Skill execution failure with a machine-readable code.

    Attributes:
        code: ErrorCode classifying the failure
        message: Human-readable description
        details: Structured context (IDs, statuses) for drill-down
        hint: Optional remediation hint for CLI/tool callers
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
        hint: str | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.hint = hint
        super().__init__(f"[{code.value}] {message}")

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"SkillExecutionError(code={self.code.value!r}, message={self.message!r})"

    def to_dict(self) -> dict[str, Any]:
        """Build the error envelope returned by the tool layer."""
        error: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.hint:
            error["hint"] = self.hint
        if self.details:
            error["details"] = self.details
        return {"ok": False, "error": error}

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def execution_not_found(cls, execution_id: str) -> SkillExecutionError:
        return cls(
            ErrorCode.EXECUTION_NOT_FOUND,
            f"Execution not found: {execution_id}",
            details={"execution_id": execution_id},
            hint="Check the execution ID and try again",
        )

    @classmethod
    def installation_not_found(cls, installation_id: str) -> SkillExecutionError:
        return cls(
            ErrorCode.INSTALLATION_NOT_FOUND,
            f"Installation not found: {installation_id}",
            details={"installation_id": installation_id},
            hint="Use list_installations() to see installed skills",
        )

    @classmethod
    def skill_not_ready(cls, skill_id: str, status: str, reason: str = "") -> SkillExecutionError:
        message = f"Skill {skill_id} is not ready to run (status: {status})"
        if reason:
            message = f"{message}: {reason}"
        return cls(
            ErrorCode.SKILL_NOT_READY,
            message,
            details={"skill_id": skill_id, "status": status},
            hint="Finish installing the skill before running it",
        )

    @classmethod
    def workflow_not_bound(cls, skill_id: str, unit_ids: list[str]) -> SkillExecutionError:
        return cls(
            ErrorCode.WORKFLOW_NOT_BOUND,
            f"No workflow unit of skill {skill_id} is bound to a target: {', '.join(unit_ids)}",
            details={"skill_id": skill_id, "unit_ids": unit_ids},
            hint="Reinstall the skill to bind its workflow units",
        )

    @classmethod
    def workflow_timeout(cls, target_id: str, timeout_ms: int) -> SkillExecutionError:
        return cls(
            ErrorCode.WORKFLOW_TIMEOUT,
            f"Workflow execution timed out after {timeout_ms}ms: {target_id}",
            details={"target_id": target_id, "timeout_ms": timeout_ms},
        )

    @classmethod
    def workflow_failed(cls, target_id: str, reason: str | None = None) -> SkillExecutionError:
        return cls(
            ErrorCode.WORKFLOW_FAILED,
            reason or "Workflow execution failed",
            details={"target_id": target_id},
        )

    @classmethod
    def circular_dependency(cls, unit_ids: list[str]) -> SkillExecutionError:
        return cls(
            ErrorCode.CIRCULAR_DEPENDENCY,
            f"Circular dependency detected among workflow units: {', '.join(unit_ids)}",
            details={"unit_ids": unit_ids},
            hint="Remove the dependency cycle from the skill definition",
        )

    @classmethod
    def mapping_failed(cls, unit_id: str, reason: str) -> SkillExecutionError:
        return cls(
            ErrorCode.MAPPING_FAILED,
            f"Data mapping failed for unit {unit_id}: {reason}",
            details={"unit_id": unit_id},
        )

    @classmethod
    def condition_eval_failed(cls, condition: str, reason: str) -> SkillExecutionError:
        return cls(
            ErrorCode.CONDITION_EVAL_FAILED,
            f"Condition evaluation failed for '{condition}': {reason}",
            details={"condition": condition},
        )

    @classmethod
    def no_running_executions(cls, installation_id: str) -> SkillExecutionError:
        return cls(
            ErrorCode.NO_RUNNING_EXECUTIONS,
            f"No running executions for installation {installation_id}",
            details={"installation_id": installation_id},
        )

    @classmethod
    def access_denied(cls, installation_id: str) -> SkillExecutionError:
        return cls(
            ErrorCode.ACCESS_DENIED,
            f"Access denied to installation {installation_id}",
            details={"installation_id": installation_id},
            hint="You do not have permission to access this resource",
        )

    @classmethod
    def wrap(cls, error: BaseException) -> SkillExecutionError:
        """Classify an arbitrary exception into the taxonomy."""
        if isinstance(error, SkillExecutionError):
            return error
        if isinstance(error, httpx.TimeoutException | TimeoutError):
            return cls(ErrorCode.WORKFLOW_TIMEOUT, str(error) or "Workload request timed out")
        if isinstance(error, httpx.HTTPError):
            return cls(ErrorCode.WORKFLOW_FAILED, str(error) or "Workload request failed")
        return cls(
            ErrorCode.INTERNAL_ERROR,
            str(error) or type(error).__name__,
            details={"type": type(error).__name__},
        )


__all__ = ["ErrorCode", "SkillExecutionError"]
