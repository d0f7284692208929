"""Engine configuration loaded from YAML.

Search order: an explicit path, then ``./.flowrunner/config.yaml``, then
``~/.flowrunner/config.yaml``. The first existing file wins; with none, the
defaults apply.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from flowrunner.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

NotificationLevel = Literal["info", "success", "warning", "error"]
NotificationCategory = Literal["run", "node", "validation", "user"]

_PATH_KEYS = ("history_path", "flows_dir")


class NotificationConfig(BaseModel):
    """Which notifications to drop before they reach the user"""

    model_config = ConfigDict(extra="forbid")

    suppress_levels: list[NotificationLevel] = Field(default_factory=list)
    suppress_categories: list[NotificationCategory] = Field(default_factory=list)


class EngineConfig(BaseModel):
    """Runtime knobs for FlowEngine"""

    model_config = ConfigDict(extra="forbid")

    # Per-node executor timeout in seconds (None = no limit)
    node_timeout: float | None = Field(default=None, gt=0)
    # Hard cap on iterations of a single loop execution
    max_loop_iterations: int = Field(default=10_000, ge=1)
    # Deepest allowed sub-flow nesting (0 = sub-flows disabled)
    max_flow_depth: int = Field(default=10, ge=0)
    # Directory sub-flows are looked up in (None = working directory)
    flows_dir: Path | None = None
    history_size: int = Field(default=50, ge=0)
    # SQLite file for run history (None = history disabled)
    history_path: Path | None = None
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)


def default_search_paths(cwd: Path | None = None) -> list[Path]:
    base = cwd or Path.cwd()
    return [base / ".flowrunner/config.yaml", Path.home() / ".flowrunner/config.yaml"]


def load_config(path: Path | str | None = None, search_paths: list[Path] | None = None) -> EngineConfig:
    """Load the engine configuration.

    Args:
        path: Explicit config file; must exist when given
        search_paths: Override the default search order (used by tests)

    Raises:
        ConfigError: If the file is unreadable, not YAML, or fails validation
    """
    if path is not None:
        candidates = [Path(path)]
        if not candidates[0].exists():
            raise ConfigError(f"Config file not found: {path}")
    else:
        candidates = search_paths if search_paths is not None else default_search_paths()

    for candidate in candidates:
        if not candidate.exists():
            continue
        try:
            with open(candidate, encoding="utf-8") as f:
                raw = yaml.safe_load(f)
        except (yaml.YAMLError, OSError) as e:
            raise ConfigError(f"Invalid config in {candidate}: {e}")

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError(f"Config in {candidate} must be a mapping, got {type(raw).__name__}")

        for key in _PATH_KEYS:
            value = raw.get(key)
            if isinstance(value, str):
                # Relative paths are relative to the config file
                resolved = Path(value).expanduser()
                if not resolved.is_absolute():
                    resolved = candidate.parent / resolved
                raw = {**raw, key: resolved}

        try:
            config = EngineConfig.model_validate(raw)
        except ValidationError as e:
            raise ConfigError(f"Invalid config in {candidate}: {e}")
        logger.debug(f"Loaded engine config from {candidate}")
        return config

    return EngineConfig()
