"""Retry policy and execution configuration.

Environment Variables:
    SKILLS_MAX_RETRIES: Retries per unit after the first attempt (default: 3)
    SKILLS_BACKOFF_MS: Delay before the first retry (default: 1000)
    SKILLS_BACKOFF_MULTIPLIER: Growth factor per retry (default: 2)
    SKILLS_MAX_BACKOFF_MS: Upper bound for any single delay (default: 30000)
    SKILLS_RETRYABLE_ERROR_CODES: Comma-separated error codes worth retrying
        (default: WORKFLOW_TIMEOUT,WORKFLOW_FAILED,INTERNAL_ERROR)
    SKILLS_SKILL_TIMEOUT_MS: Per-level wait bound for a skill run (default: 1800000)
    SKILLS_WORKFLOW_TIMEOUT_MS: Per-unit workload wait bound (default: 300000)
    SKILLS_POLL_INTERVAL_MS: Store/workload polling interval (default: 2000)
"""

from __future__ import annotations

import logging
import os

from pydantic import BaseModel, Field, field_validator

from .exceptions import ErrorCode, SkillExecutionError

logger = logging.getLogger(__name__)

DEFAULT_RETRYABLE_ERROR_CODES = [
    ErrorCode.WORKFLOW_TIMEOUT,
    ErrorCode.WORKFLOW_FAILED,
    ErrorCode.INTERNAL_ERROR,
]


class RetryPolicy(BaseModel):
    """Backoff parameters and the allow-list of retryable error codes."""

    max_retries: int = Field(default=3, ge=0)
    backoff_ms: int = Field(default=1000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_backoff_ms: int = Field(default=30000, ge=0)
    retryable_error_codes: list[ErrorCode] = Field(
        default_factory=lambda: list(DEFAULT_RETRYABLE_ERROR_CODES)
    )

    @field_validator("retryable_error_codes", mode="before")
    @classmethod
    def _split_codes(cls, v: object) -> object:
        if isinstance(v, str):
            return [code.strip().upper() for code in v.split(",") if code.strip()]
        return v


def calculate_backoff(retry_count: int, policy: RetryPolicy) -> int:
    """
    Delay in milliseconds before retry number retry_count + 1.

    min(backoff_ms * backoff_multiplier ** retry_count, max_backoff_ms)

    Example:
        >>> calculate_backoff(0, RetryPolicy())
        1000
        >>> calculate_backoff(10, RetryPolicy())
        30000
    """
    delay = policy.backoff_ms * policy.backoff_multiplier ** max(retry_count, 0)
    return int(min(delay, policy.max_backoff_ms))


def should_retry(error: SkillExecutionError, retry_count: int, policy: RetryPolicy) -> bool:
    """Retry only allow-listed codes, and only while retries remain."""
    if error.code not in policy.retryable_error_codes:
        return False
    return retry_count < policy.max_retries


class ExecutionConfig(BaseModel):
    """Engine-wide timing and retry configuration."""

    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    skill_timeout_ms: int = Field(default=30 * 60 * 1000, gt=0)
    workflow_timeout_ms: int = Field(default=5 * 60 * 1000, gt=0)
    poll_interval_ms: int = Field(default=2000, gt=0)

    @classmethod
    def from_env(cls) -> ExecutionConfig:
        """Build configuration from SKILLS_* environment variables."""
        retry_values: dict[str, object] = {}
        for field_name, env_name in (
            ("max_retries", "SKILLS_MAX_RETRIES"),
            ("backoff_ms", "SKILLS_BACKOFF_MS"),
            ("backoff_multiplier", "SKILLS_BACKOFF_MULTIPLIER"),
            ("max_backoff_ms", "SKILLS_MAX_BACKOFF_MS"),
            ("retryable_error_codes", "SKILLS_RETRYABLE_ERROR_CODES"),
        ):
            value = os.getenv(env_name)
            if value is not None and value.strip():
                retry_values[field_name] = value

        config_values: dict[str, object] = {}
        for field_name, env_name in (
            ("skill_timeout_ms", "SKILLS_SKILL_TIMEOUT_MS"),
            ("workflow_timeout_ms", "SKILLS_WORKFLOW_TIMEOUT_MS"),
            ("poll_interval_ms", "SKILLS_POLL_INTERVAL_MS"),
        ):
            value = os.getenv(env_name)
            if value is not None and value.strip():
                config_values[field_name] = value

        config = cls(retry_policy=RetryPolicy.model_validate(retry_values), **config_values)
        logger.debug(f"Execution config: {config.model_dump()}")
        return config


__all__ = [
    "DEFAULT_RETRYABLE_ERROR_CODES",
    "RetryPolicy",
    "ExecutionConfig",
    "calculate_backoff",
    "should_retry",
]
