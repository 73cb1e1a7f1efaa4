# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""
EchoVault Paths — single source of truth for all data file locations.

Resolution order:
  1. ECHOVAULT_DATA_DIR environment variable
  2. Default: ~/.echovault/

Usage:
    from core.paths import get_paths
    p = get_paths()
    p.store_dir         # ~/.echovault/store/
    p.config_file       # ~/.echovault/insights-config.json

For tests:
    from core.paths import configure
    configure(tmp_path)  # all paths now rooted under tmp_path
"""

import os
from pathlib import Path
from typing import Optional


class InsightsPaths:
    """Central registry of every file and directory the insight engine uses."""

    def __init__(self, data_dir: Optional[Path] = None):
        if data_dir is not None:
            self._root = Path(data_dir)
        else:
            env = os.environ.get("ECHOVAULT_DATA_DIR")
            if env:
                self._root = Path(env).expanduser()
            else:
                self._root = Path.home() / ".echovault"

    # ------------------------------------------------------------------
    # Root
    # ------------------------------------------------------------------
    @property
    def data_dir(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # Document store (per-user collections live under users/<id>/)
    # ------------------------------------------------------------------
    @property
    def store_dir(self) -> Path:
        return self._root / "store"

    # ------------------------------------------------------------------
    # Config & logs
    # ------------------------------------------------------------------
    @property
    def config_file(self) -> Path:
        return self._root / "insights-config.json"

    @property
    def log_dir(self) -> Path:
        return self._root / "logs"

    @property
    def log_file(self) -> Path:
        return self.log_dir / "insights.log"

    @property
    def scheduler_state(self) -> Path:
        return self._root / "scheduler-state.json"

    # ------------------------------------------------------------------
    # Directory creation
    # ------------------------------------------------------------------
    def ensure_dirs(self) -> None:
        """Create all required directories."""
        for d in (self.data_dir, self.store_dir, self.log_dir):
            d.mkdir(parents=True, exist_ok=True)


# ===========================================================================
# Singleton
# ===========================================================================

_instance: Optional[InsightsPaths] = None


def get_paths() -> InsightsPaths:
    """Return the global InsightsPaths singleton (lazy-init)."""
    global _instance
    if _instance is None:
        _instance = InsightsPaths()
    return _instance


def configure(data_dir: Path) -> InsightsPaths:
    """
    Override the global paths singleton. Used by tests and CLI --data-dir.

    Returns the new instance for convenience.
    """
    global _instance
    _instance = InsightsPaths(data_dir=data_dir)
    return _instance


def reset() -> None:
    """Reset singleton so next get_paths() re-reads env."""
    global _instance
    _instance = None
