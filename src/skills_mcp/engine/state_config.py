"""State directory configuration.

Uses SHA256 hash of CWD for path-based isolation across different projects.

Architecture:
    ~/.skills/
      states/
        <hash-of-cwd>/
          state.db          # SQLite database for skill and unit executions

SKILLS_STATE_DIR overrides the base directory (~/.skills).
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path


class StateConfig:
    """State directory configuration for the skills MCP server.

    Multiple server instances started from the same directory share the same
    state, so one instance can observe executions started by another.
    """

    @staticmethod
    def get_base_dir() -> Path:
        """Base directory for all state (SKILLS_STATE_DIR or ~/.skills)."""
        override = os.getenv("SKILLS_STATE_DIR", "").strip()
        if override:
            return Path(override).expanduser()
        return Path.home() / ".skills"

    @staticmethod
    def get_state_dir() -> Path:
        """Get state directory for current working directory.

        Creates directory structure if it doesn't exist.

        Returns:
            Path to state directory: <base>/states/<hash-of-cwd>/
        """
        cwd_hash = hashlib.sha256(str(Path.cwd()).encode()).hexdigest()[:16]
        state_dir = StateConfig.get_base_dir() / "states" / cwd_hash
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir

    @staticmethod
    def get_db_path() -> Path:
        """Get SQLite database path: <base>/states/<hash-of-cwd>/state.db"""
        return StateConfig.get_state_dir() / "state.db"


__all__ = ["StateConfig"]
