"""Result type for installation loading.

Loader and registry functions return a LoadResult instead of raising, so one
broken installation file never aborts a directory scan. Skill execution does
not use it; the executor raises SkillExecutionError.
"""

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class LoadResult(Generic[T]):  # noqa: UP046
    """
    Either a loaded value or an error message, never both.

    `source` names the file or string the result came from, when known.

    Usage:
        result = load_installation_from_file(path)
        if result:
            registry.register(result.value, source=path)
        else:
            logger.warning(f"{result.source}: {result.error}")
    """

    value: T | None = None
    error: str | None = None
    source: str | None = None

    def __post_init__(self) -> None:
        if (self.value is None) == (self.error is None):
            raise ValueError("LoadResult needs exactly one of value or error")

    @property
    def is_success(self) -> bool:
        return self.error is None

    @property
    def is_failure(self) -> bool:
        return self.error is not None

    @classmethod
    def success(cls, value: T, source: str | None = None) -> "LoadResult[T]":
        return cls(value=value, source=source)

    @classmethod
    def failure(cls, error: str, source: str | None = None) -> "LoadResult[T]":
        return cls(error=error, source=source)

    def __bool__(self) -> bool:
        return self.is_success

    def unwrap(self) -> T:
        """Return the value, or raise ValueError carrying the load error."""
        if self.value is None:
            raise ValueError(f"Cannot unwrap failed result: {self.error}")
        return self.value


__all__ = ["LoadResult"]
