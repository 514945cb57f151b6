"""
live/persistence.py

Snapshots to and from disk.

Plain JSON, written the same way checkpoints are elsewhere. No
promise is made about the format beyond reading back what was
written.
"""

from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Union
import json
import logging

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("seed", "tick", "sim_time", "metrics", "agents", "world", "manufacturing", "model_state")
MODEL_STATE_KEYS = ("outcome_model", "perception", "embedding")


def validate_snapshot(data: Any) -> Dict[str, Any]:
    """Raise ValueError naming the first missing key."""
    if not isinstance(data, dict):
        raise ValueError("Snapshot must be a JSON object")
    for key in REQUIRED_KEYS:
        if key not in data:
            raise ValueError(f"Snapshot is missing key: {key}")
    for key in MODEL_STATE_KEYS:
        if key not in data["model_state"]:
            raise ValueError(f"Snapshot is missing key: model_state.{key}")
    return data


def save_snapshot(path: Union[str, Path], snapshot: Dict[str, Any]) -> Path:
    path = Path(path)
    validate_snapshot(snapshot)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(snapshot, f, indent=2)
    logger.info(f"Snapshot saved to {path} (tick {snapshot['tick']})")
    return path


def load_snapshot(path: Union[str, Path]) -> Dict[str, Any]:
    path = Path(path)
    with open(path) as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Snapshot {path} is not valid JSON: {e}") from e
    validate_snapshot(data)
    logger.info(f"Snapshot loaded from {path} (tick {data['tick']})")
    return data
