"""
Data mapping between dependent workflow units.

A dependency's raw output flows into the dependent unit's input in three steps:

    raw output
        ↓  output selector   (pick a sub-tree by path, default when missing)
        ↓  input mapping     (rename: targetKey <- sourcePath)
        ↓  merge strategy    (combine all dependencies with the base input)
    unit input

Mapping is best-effort: missing outputs and unresolved paths are logged and
skipped. Only malformed mapping targets (MAPPING_FAILED) and dependency
conditions (CONDITION_EVAL_FAILED) fail hard.

Paths use dot notation with bracket indexes: ``result.items[2].name``.
"""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Mapping, Sequence
from typing import Any

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from .exceptions import SkillExecutionError
from .models import MergeStrategy, OutputSelector, UnitDependency

logger = logging.getLogger(__name__)

_PATH_PART = re.compile(r"^([^\[\]]*)((?:\[\d+\])*)$")
_INDEX = re.compile(r"\[(\d+)\]")
_MISSING = object()

_condition_env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)


# =============================================================================
# Path helpers
# =============================================================================


def _split_path(path: str) -> list[str | int]:
    """Split 'a.b[2].c' into ['a', 'b', 2, 'c']."""
    tokens: list[str | int] = []
    for part in path.split("."):
        match = _PATH_PART.match(part)
        if not match:
            tokens.append(part)
            continue
        key, indexes = match.groups()
        if key:
            tokens.append(key)
        tokens.extend(int(i) for i in _INDEX.findall(indexes))
    return tokens


def _lookup(obj: Any, path: str) -> Any:
    current = obj
    for token in _split_path(path):
        if isinstance(token, int):
            if not isinstance(current, list) or token >= len(current):
                return _MISSING
            current = current[token]
        else:
            if not isinstance(current, Mapping) or token not in current:
                return _MISSING
            current = current[token]
    return current


def get_value_by_path(obj: Any, path: str) -> Any:
    """Resolve a dot/bracket path, returning None when any segment is missing."""
    value = _lookup(obj, path)
    return None if value is _MISSING else value


def set_value_by_path(obj: dict[str, Any], path: str, value: Any) -> None:
    """Write value at a dot path, creating intermediate dicts as needed."""
    parts = path.split(".")
    current = obj
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def deep_merge(target: Mapping[str, Any], source: Mapping[str, Any]) -> dict[str, Any]:
    """
    Recursively merge source into a copy of target.

    Keys holding dicts on both sides are merged; anything else (lists,
    scalars, None) is replaced wholesale by the source value.
    """
    result = dict(target)
    for key, source_value in source.items():
        target_value = result.get(key)
        if isinstance(target_value, Mapping) and isinstance(source_value, Mapping):
            result[key] = deep_merge(target_value, source_value)
        else:
            result[key] = source_value
    return result


# =============================================================================
# Mapping operations
# =============================================================================


def apply_output_selector(output: Any, selector: OutputSelector | None) -> Any:
    """
    Extract part of a dependency output.

    Never raises: an unresolvable path returns selector.default.
    """
    if selector is None or not selector.path:
        return output

    try:
        value = _lookup(output, selector.path)
    except Exception as e:
        logger.warning(f"Output selector failed for path '{selector.path}': {e}")
        return selector.default

    if value is _MISSING:
        logger.debug(f"Output selector path '{selector.path}' not found, using default")
        return selector.default
    return value


def apply_input_mapping(
    source_data: Mapping[str, Any], mapping: Mapping[str, str] | None
) -> dict[str, Any]:
    """
    Rename fields of source_data into a new input object.

    Args:
        source_data: Selected dependency output
        mapping: targetKey -> sourcePath; None passes source_data through

    Returns:
        New dict containing only the keys whose source path resolved
    """
    if not mapping:
        return dict(source_data)

    result: dict[str, Any] = {}
    for target_key, source_path in mapping.items():
        value = _lookup(source_data, source_path)
        if value is _MISSING:
            logger.warning(f"Input mapping skipped, '{source_path}' -> '{target_key}' not found")
            continue
        set_value_by_path(result, target_key, value)
    return result


def merge_inputs(
    base_input: Mapping[str, Any],
    dependency_outputs: Sequence[tuple[str, Mapping[str, Any]]],
    strategy: MergeStrategy = MergeStrategy.MERGE,
) -> dict[str, Any]:
    """
    Combine the base input with dependency outputs.

    Args:
        base_input: Skill-level input
        dependency_outputs: (unit_id, mapped output) pairs in dependency order
        strategy: MERGE deep-merges in order, OVERRIDE keeps only the last
            output, CUSTOM exposes everything under _base/_dependencies
    """
    if strategy == MergeStrategy.OVERRIDE:
        if not dependency_outputs:
            return dict(base_input)
        return dict(dependency_outputs[-1][1])

    if strategy == MergeStrategy.CUSTOM:
        return {
            "_base": dict(base_input),
            "_dependencies": {unit_id: dict(output) for unit_id, output in dependency_outputs},
        }

    merged = dict(base_input)
    for _, output in dependency_outputs:
        merged = deep_merge(merged, output)
    return merged


def process_data_mapping(
    unit_id: str,
    base_input: Mapping[str, Any],
    dependency_outputs: Mapping[str, Mapping[str, Any]],
    dependency_configs: Sequence[UnitDependency],
) -> dict[str, Any]:
    """
    Build a unit's input from the skill input and its dependencies' outputs.

    The merge strategy of the FIRST dependency config applies to the whole
    merge; strategies configured on later dependencies are ignored.

    Raises:
        SkillExecutionError: MAPPING_FAILED when an input mapping target path
            has an empty segment (e.g. "", "a..b", ".a")
    """
    mapped: list[tuple[str, Mapping[str, Any]]] = []

    for config in dependency_configs:
        raw_output = dependency_outputs.get(config.dependency_id)
        if raw_output is None:
            logger.warning(
                f"Missing output for dependency {config.dependency_id} of unit {unit_id}"
            )
            continue

        selected = apply_output_selector(copy.deepcopy(raw_output), config.output_selector)
        output_data = selected if isinstance(selected, Mapping) else {"value": selected}

        for target_key in config.input_mapping or {}:
            if not all(target_key.split(".")):
                raise SkillExecutionError.mapping_failed(
                    unit_id, f"invalid target path '{target_key}' for {config.dependency_id}"
                )

        mapped_input = apply_input_mapping(output_data, config.input_mapping)
        mapped.append((config.dependency_id, mapped_input))

    strategy = MergeStrategy.MERGE
    if dependency_configs and dependency_configs[0].merge_strategy:
        strategy = dependency_configs[0].merge_strategy

    return merge_inputs(base_input, mapped, strategy)


def evaluate_condition(condition: str, context: Mapping[str, Any]) -> bool:
    """
    Evaluate a dependency condition as a sandboxed Jinja2 expression.

    Accepts both ``{{ output.count > 0 }}`` and ``output.count > 0``.

    Raises:
        SkillExecutionError: CONDITION_EVAL_FAILED when the expression errors,
            references undefined names, or does not produce a boolean
    """
    expression = condition.strip()
    if expression.startswith("{{") and expression.endswith("}}"):
        expression = expression[2:-2].strip()

    try:
        compiled = _condition_env.compile_expression(expression, undefined_to_none=False)
        result = compiled(**context)
    except (TemplateError, TypeError, ValueError, ArithmeticError, LookupError) as e:
        raise SkillExecutionError.condition_eval_failed(condition, str(e)) from e

    if not isinstance(result, bool):
        raise SkillExecutionError.condition_eval_failed(
            condition, f"must evaluate to boolean, got {type(result).__name__}"
        )
    return result


__all__ = [
    "get_value_by_path",
    "set_value_by_path",
    "deep_merge",
    "apply_output_selector",
    "apply_input_mapping",
    "merge_inputs",
    "process_data_mapping",
    "evaluate_condition",
]
