# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""
Insights config — tunables, logging setup.

Defaults live on InsightsConfig. A user file at
<data_dir>/insights-config.json overrides individual keys:

    {"pattern_window": 300, "sweep_hour": "04:30"}
"""

import json
import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.paths import get_paths

logger = logging.getLogger("echovault.config")


class InsightsConfig(BaseModel):
    """Engine tunables. Algorithm constants stay in their modules."""
    model_config = ConfigDict(extra="ignore")

    # Pattern engine
    pattern_window: int = Field(default=200, ge=1)
    min_pattern_entries: int = Field(default=5, ge=1)
    activity_top_n: int = Field(default=50, ge=1)
    summary_max: int = Field(default=5, ge=1)

    # Goals
    goal_stale_days: int = 14
    goal_stale_high_days: int = 30
    implicit_match_min_token: int = Field(default=4, ge=1)
    max_state_history: int = Field(default=20, ge=2)
    upsert_retries: int = Field(default=3, ge=1)

    # Burnout
    burnout_window: int = Field(default=14, ge=1)
    min_burnout_entries: int = Field(default=3, ge=1)

    # Exclusions
    exclusion_default_days: int = Field(default=30, ge=1)

    # Scheduler
    sweep_delay_seconds: float = Field(default=0.1, ge=0)
    sweep_hour: str = "03:00"
    poll_interval_seconds: int = 60

    log_level: str = "INFO"


def load_config() -> InsightsConfig:
    """Load insights config. Unreadable files and invalid keys fall back to defaults."""
    config_file = get_paths().config_file
    overrides = {}
    if config_file.exists():
        try:
            data = json.loads(config_file.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable config %s: %s", config_file, e)
            data = {}
        if isinstance(data, dict):
            overrides = data
        else:
            logger.warning("Ignoring config %s: expected a JSON object", config_file)

    try:
        return InsightsConfig.model_validate(overrides)
    except ValidationError as e:
        bad = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        logger.warning("Invalid config values for %s in %s, using defaults", ", ".join(bad), config_file)
        return InsightsConfig.model_validate({k: v for k, v in overrides.items() if k not in bad})


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Configure engine logging to file + stderr."""
    paths = get_paths()
    paths.log_dir.mkdir(parents=True, exist_ok=True)
    level = (level or load_config().log_level).upper()

    root = logging.getLogger("echovault")
    root.setLevel(level)
    if root.handlers:
        return root

    # File handler — append to insights.log
    fh = logging.FileHandler(str(paths.log_file), mode="a")
    fh.setLevel(level)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    root.addHandler(fh)

    # Stderr handler for when running in foreground
    sh = logging.StreamHandler()
    sh.setLevel(level)
    sh.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    root.addHandler(sh)

    return root
