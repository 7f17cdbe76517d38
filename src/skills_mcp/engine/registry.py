"""
Installation registry.

Central lookup for installed skills. Installations are registered directly
or loaded from directories of YAML files (see loader.py).

Features:
- Register installations with duplicate detection
- Retrieve installations by ID
- Load from multiple directories in priority order (later directories override)
- Track the source file of each installation
"""

import logging
from pathlib import Path
from typing import Literal

from .exceptions import SkillExecutionError
from .load_result import LoadResult
from .loader import load_installation_from_file
from .models import Installation

logger = logging.getLogger(__name__)


class InstallationRegistry:
    """
    Registry of skill installations keyed by installation ID.

    Example:
        registry = InstallationRegistry()
        registry.load_from_directories(["~/.skills/installations"])

        installation = registry.get("inst-report")
    """

    def __init__(self) -> None:
        self._installations: dict[str, Installation] = {}
        self._sources: dict[str, Path] = {}

    def register(
        self,
        installation: Installation,
        source: Path | None = None,
        overwrite: bool = False,
    ) -> None:
        """
        Register an installation.

        Raises:
            ValueError: If the ID is already registered and overwrite is False
        """
        installation_id = installation.installation_id
        if installation_id in self._installations and not overwrite:
            raise ValueError(f"Installation '{installation_id}' already registered")

        self._installations[installation_id] = installation
        if source is not None:
            self._sources[installation_id] = source

        logger.info(
            f"Registered installation: {installation_id} "
            f"(skill={installation.skill_id}, units={len(installation.units)})"
        )

    def get(self, installation_id: str) -> Installation:
        """
        Get installation by ID.

        Raises:
            SkillExecutionError: INSTALLATION_NOT_FOUND
        """
        installation = self._installations.get(installation_id)
        if installation is None:
            raise SkillExecutionError.installation_not_found(installation_id)
        return installation

    def list_all(self) -> list[Installation]:
        return [self._installations[key] for key in sorted(self._installations)]

    def get_source(self, installation_id: str) -> Path | None:
        return self._sources.get(installation_id)

    def load_from_directory(
        self,
        directory: str | Path,
        on_duplicate: Literal["skip", "overwrite"] = "skip",
    ) -> LoadResult[int]:
        """
        Load all installation YAML files from a directory (recursive).

        Invalid files are logged and skipped.

        Returns:
            LoadResult.success(count) with number of installations loaded
            LoadResult.failure(error_message) if the directory doesn't exist
        """
        dir_path = Path(directory).expanduser()

        if not dir_path.exists():
            return LoadResult.failure(f"Directory not found: {dir_path}")
        if not dir_path.is_dir():
            return LoadResult.failure(f"Not a directory: {dir_path}")

        yaml_files = sorted(dir_path.glob("**/*.yaml")) + sorted(dir_path.glob("**/*.yml"))

        loaded_count = 0
        for yaml_file in yaml_files:
            result = load_installation_from_file(yaml_file)
            if not result.is_success or result.value is None:
                logger.warning(f"Skipping {result.source}: {result.error}")
                continue

            try:
                self.register(
                    result.value, source=yaml_file, overwrite=on_duplicate == "overwrite"
                )
                loaded_count += 1
            except ValueError as e:
                logger.warning(f"Skipping duplicate installation: {e}")

        logger.info(
            f"Loaded {loaded_count} installations from {dir_path} "
            f"({len(yaml_files)} YAML files found)"
        )
        return LoadResult.success(loaded_count)

    def load_from_directories(
        self, directories: list[str | Path]
    ) -> LoadResult[dict[str, int]]:
        """
        Load installations from several directories; later directories override earlier ones.

        Missing directories are logged and counted as 0.
        """
        if not directories:
            return LoadResult.failure("No directories provided")

        results: dict[str, int] = {}
        for directory in directories:
            result = self.load_from_directory(directory, on_duplicate="overwrite")
            if result.is_success and result.value is not None:
                results[str(directory)] = result.value
            else:
                logger.warning(result.error)
                results[str(directory)] = 0

        return LoadResult.success(results)

    def __len__(self) -> int:
        return len(self._installations)

    def __contains__(self, installation_id: str) -> bool:
        return installation_id in self._installations

    def __repr__(self) -> str:
        return f"InstallationRegistry(installations={len(self._installations)})"


__all__ = ["InstallationRegistry"]
