"""
YAML loader for skill installations.

An installation file describes a skill's workflow units, their dependency
edges, and the concrete workload target each unit was bound to:

    installation_id: inst-report
    owner_id: user-1
    skill_id: skill-weekly-report
    status: ready
    units:
      - id: fetch
        name: Fetch data
      - id: summarize
        dependencies:
          - dependency_id: fetch
            output_selector: {path: "result.rows", default: []}
            input_mapping: {rows: "value"}
    unit_bindings:
      fetch: {target_id: wf-123}
      summarize: {target_id: wf-456}
"""

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .load_result import LoadResult
from .models import Installation

logger = logging.getLogger(__name__)


def load_installation_from_yaml(
    yaml_content: str, source: str = "<string>"
) -> LoadResult[Installation]:
    """
    Load and validate an installation from a YAML string.

    Args:
        yaml_content: YAML content as string
        source: Source identifier for error messages (default: "<string>")

    Returns:
        LoadResult.success(Installation) if valid
        LoadResult.failure(error_message) with validation errors
    """
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        return LoadResult.failure(f"Invalid YAML syntax in {source}: {e}", source)

    if not isinstance(data, dict):
        return LoadResult.failure(
            f"Installation {source} must be a YAML dictionary, got {type(data).__name__}",
            source,
        )

    try:
        installation = Installation.model_validate(data)
    except ValidationError as e:
        return LoadResult.failure(f"Installation validation failed in {source}:\n{e}", source)

    unit_ids = [unit.id for unit in installation.units]
    duplicates = sorted({uid for uid in unit_ids if unit_ids.count(uid) > 1})
    if duplicates:
        return LoadResult.failure(
            f"Duplicate unit IDs in {source}: {', '.join(duplicates)}", source
        )

    return LoadResult.success(installation, source=source)


def load_installation_from_file(file_path: str | Path) -> LoadResult[Installation]:
    """Load and validate an installation from a YAML file."""
    path = Path(file_path)
    source = str(file_path)

    if not path.exists():
        return LoadResult.failure(f"Installation file not found: {file_path}", source)

    if not path.is_file():
        return LoadResult.failure(f"Path is not a file: {file_path}", source)

    try:
        with open(path, encoding="utf-8") as f:
            yaml_content = f.read()
    except OSError as e:
        return LoadResult.failure(f"Failed to read file '{file_path}': {e}", source)

    return load_installation_from_yaml(yaml_content, source=source)
