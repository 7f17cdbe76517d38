"""Tests for installation YAML loading and the installation registry."""

from pathlib import Path

import pytest

from skills_mcp.engine import (
    ErrorCode,
    InstallationRegistry,
    LoadResult,
    MergeStrategy,
    SkillExecutionError,
    load_installation_from_file,
    load_installation_from_yaml,
)

REPORT_YAML = """
installation_id: inst-report
owner_id: user-1
skill_id: skill-weekly-report
name: Weekly report
units:
  - id: fetch
    name: Fetch data
  - id: summarize
    dependencies:
      - dependency_id: fetch
        condition: "{{ output.rows | length > 0 }}"
        output_selector: '{"path": "result.rows", "default": []}'
        input_mapping: '{"rows": "value"}'
        merge_strategy: merge
unit_bindings:
  fetch: {target_id: wf-123}
  summarize: {target_id: wf-456}
"""


def write_installation(directory: Path, name: str, installation_id: str, owner: str = "user-1"):
    directory.mkdir(parents=True, exist_ok=True)
    (directory / name).write_text(
        f"installation_id: {installation_id}\n"
        f"owner_id: {owner}\n"
        "skill_id: skill-1\n"
        "units:\n"
        "  - id: only\n"
        "unit_bindings:\n"
        "  only: {target_id: wf-1}\n"
    )


# =============================================================================
# Loader
# =============================================================================


def test_load_installation_from_yaml():
    result = load_installation_from_yaml(REPORT_YAML)

    assert result.is_success
    installation = result.unwrap()
    assert installation.installation_id == "inst-report"
    assert installation.status == "ready"
    assert [unit.id for unit in installation.units] == ["fetch", "summarize"]

    dep = installation.units[1].dependencies[0]
    assert dep.input_mapping == {"rows": "value"}
    assert dep.output_selector.path == "result.rows"
    assert dep.output_selector.default == []
    assert dep.merge_strategy == MergeStrategy.MERGE
    assert installation.resolve_target("summarize") == "wf-456"
    assert installation.resolve_target("missing") is None


def test_load_invalid_yaml_syntax():
    result = load_installation_from_yaml("units: [unclosed", source="broken.yaml")

    assert result.is_failure
    assert "Invalid YAML syntax in broken.yaml" in result.error


def test_load_non_dictionary_yaml():
    result = load_installation_from_yaml("- just\n- a list\n")

    assert not result
    assert "must be a YAML dictionary, got list" in result.error


def test_load_missing_required_fields():
    result = load_installation_from_yaml("installation_id: x\n")

    assert result.is_failure
    assert "validation failed" in result.error
    with pytest.raises(ValueError):
        result.unwrap()


def test_load_duplicate_unit_ids():
    result = load_installation_from_yaml(
        "installation_id: x\nowner_id: o\nskill_id: s\nunits:\n  - id: a\n  - id: a\n"
    )

    assert result.is_failure
    assert "Duplicate unit IDs" in result.error


def test_load_result_holds_value_or_error():
    assert LoadResult.success(0).is_success
    assert LoadResult.failure("boom", source="a.yaml").source == "a.yaml"
    with pytest.raises(ValueError):
        LoadResult(value=1, error="both")
    with pytest.raises(ValueError):
        LoadResult()


def test_load_installation_from_file(tmp_path: Path):
    path = tmp_path / "report.yaml"
    path.write_text(REPORT_YAML)

    loaded = load_installation_from_file(path)
    assert loaded.is_success
    assert loaded.source == str(path)
    assert "not found" in load_installation_from_file(tmp_path / "nope.yaml").error
    assert "not a file" in load_installation_from_file(tmp_path).error


# =============================================================================
# Registry
# =============================================================================


def test_register_and_get():
    registry = InstallationRegistry()
    installation = load_installation_from_yaml(REPORT_YAML).unwrap()

    registry.register(installation)

    assert "inst-report" in registry
    assert len(registry) == 1
    assert registry.get("inst-report") is installation
    with pytest.raises(ValueError):
        registry.register(installation)
    registry.register(installation, overwrite=True)


def test_get_unknown_installation():
    with pytest.raises(SkillExecutionError) as exc_info:
        InstallationRegistry().get("inst-missing")
    assert exc_info.value.code == ErrorCode.INSTALLATION_NOT_FOUND


def test_load_from_directory_skips_invalid_and_duplicates(tmp_path: Path):
    write_installation(tmp_path, "a.yaml", "inst-a")
    write_installation(tmp_path / "nested", "b.yml", "inst-b")
    write_installation(tmp_path / "nested", "a-again.yaml", "inst-a", owner="user-2")
    (tmp_path / "broken.yaml").write_text("installation_id: [")

    registry = InstallationRegistry()
    result = registry.load_from_directory(tmp_path)

    assert result.is_success
    assert result.value == 2
    assert [i.installation_id for i in registry.list_all()] == ["inst-a", "inst-b"]
    assert registry.get("inst-a").owner_id == "user-1"
    assert registry.get_source("inst-b") == tmp_path / "nested" / "b.yml"


def test_load_from_missing_directory(tmp_path: Path):
    result = InstallationRegistry().load_from_directory(tmp_path / "missing")
    assert result.is_failure
    assert "Directory not found" in result.error


def test_load_from_directories_later_overrides(tmp_path: Path):
    write_installation(tmp_path / "base", "a.yaml", "inst-a", owner="user-1")
    write_installation(tmp_path / "override", "a.yaml", "inst-a", owner="user-2")

    registry = InstallationRegistry()
    result = registry.load_from_directories(
        [tmp_path / "base", tmp_path / "override", tmp_path / "missing"]
    )

    assert result.is_success
    assert result.value == {
        str(tmp_path / "base"): 1,
        str(tmp_path / "override"): 1,
        str(tmp_path / "missing"): 0,
    }
    assert registry.get("inst-a").owner_id == "user-2"


def test_load_from_no_directories():
    assert InstallationRegistry().load_from_directories([]).is_failure
