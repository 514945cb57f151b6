"""
live/config.py

Knobs for the live loop, and where to read them from.
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
import logging

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "configs" / "default.yaml"

SAMPLING_MODES = ("recent", "prioritized")


@dataclass
class LiveConfig:
    """Configuration for the live decision loop."""
    seed: int = 42
    population_size: int = 3
    ticks_per_second: int = 10
    deterministic: bool = True         # Round-robin agent selection
    rolling_seconds: int = 20          # Replay frames kept for bookmarks
    replay_capacity: int = 20000
    max_objects: int = 120             # Population controller cap

    def __post_init__(self):
        if self.ticks_per_second <= 0:
            raise ValueError(f"ticks_per_second must be positive, got {self.ticks_per_second}")
        if self.population_size < 1:
            raise ValueError(f"population_size must be at least 1, got {self.population_size}")
        if self.replay_capacity < 1:
            raise ValueError(f"replay_capacity must be at least 1, got {self.replay_capacity}")


@dataclass
class TrainingConfig:
    """Configuration for rate-limited online training."""
    batch_size: int = 32
    max_train_ms_per_second: float = 40.0
    steps_per_tick: int = 1
    sampling: str = "recent"           # "recent" or "prioritized"
    priority_alpha: float = 0.6

    def __post_init__(self):
        if self.sampling not in SAMPLING_MODES:
            raise ValueError(f"Unknown sampling mode: {self.sampling}")


def _build(cls, section: Optional[Dict[str, Any]], name: str):
    section = section or {}
    if not isinstance(section, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise ValueError(f"Unknown keys in '{name}' config: {', '.join(unknown)}")
    return cls(**section)


def load_config(config_path: Optional[str] = None) -> Tuple[LiveConfig, TrainingConfig]:
    """Load live and training configuration from a YAML file."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    unknown = sorted(set(data) - {"live", "training"})
    if unknown:
        raise ValueError(f"Unknown config sections: {', '.join(unknown)}")

    live = _build(LiveConfig, data.get("live"), "live")
    training = _build(TrainingConfig, data.get("training"), "training")
    logger.info(f"Loaded config from {config_path}")
    return live, training
