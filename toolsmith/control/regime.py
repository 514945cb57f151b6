"""
control/regime.py

First play, then work, then craft.

The agent's macro mode. It leaves exploration once its model
stops being surprised, and settles into manufacture once the
world's yield and its own discoveries have gone quiet. There is
no way back.

Inspired by:
- Developmental stages (Piaget)
- Explore/exploit schedules in foraging
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple
import logging

import numpy as np

logger = logging.getLogger(__name__)

SERIES_LIMIT = 1024


class Regime(Enum):
    EXPLORE = "explore"
    EXPLOIT = "exploit"
    MANUFACTURE = "manufacture"


# Allowed forward moves; nothing leads back
TRANSITIONS = {
    Regime.EXPLORE: (Regime.EXPLOIT, Regime.MANUFACTURE),
    Regime.EXPLOIT: (Regime.MANUFACTURE,),
    Regime.MANUFACTURE: (),
}


@dataclass(frozen=True)
class RegimeThresholds:
    explore_min_seconds: float = 25.0
    explore_max_error: float = 0.22
    manufacture_window_seconds: float = 30.0
    manufacture_min_dwell: float = 20.0
    manufacture_max_novelty_per_min: float = 8.0
    manufacture_max_prediction_error: float = 0.20
    manufacture_max_resource_variance: float = 120.0


REGIME_THRESHOLDS = RegimeThresholds()


def _mean(values: List[float]) -> float:
    return float(np.mean(values)) if values else 0.0


def _variance(values: List[float]) -> float:
    return float(np.var(values)) if len(values) >= 2 else 0.0


class RegimeMachine:
    """
    One-directional explore -> exploit -> manufacture state machine.

    Fed once per tick with rolling statistics; evaluated at the start
    of the next tick.
    """

    def __init__(self, ticks_per_second: float = 10, thresholds: RegimeThresholds = REGIME_THRESHOLDS):
        self.ticks_per_second = ticks_per_second
        self.thresholds = thresholds
        self.regime = Regime.EXPLORE
        self.since = 0.0
        self.last_reason = ""
        self.history: List[Tuple[float, Regime, Regime, str]] = []

        self.novelty_rates: Deque[float] = deque(maxlen=SERIES_LIMIT)
        self.prediction_errors: Deque[float] = deque(maxlen=SERIES_LIMIT)
        self.resource_rates: Deque[float] = deque(maxlen=SERIES_LIMIT)

    @property
    def window_size(self) -> int:
        return max(10, round(self.thresholds.manufacture_window_seconds * max(1, self.ticks_per_second)))

    def time_in_regime(self, sim_time: float) -> float:
        return max(0.0, sim_time - self.since)

    def record_prediction_error(self, value: float) -> None:
        self.prediction_errors.append(float(value))

    def record_rates(self, novelty_per_min: float, resource_per_min: float) -> None:
        self.novelty_rates.append(float(novelty_per_min))
        self.resource_rates.append(float(resource_per_min))

    def _tail(self, series: Deque[float]) -> List[float]:
        n = self.window_size
        return list(series)[-n:]

    def _shift(self, target: Regime, sim_time: float, reason: str) -> None:
        if target not in TRANSITIONS[self.regime]:
            return
        previous = self.regime
        self.regime = target
        self.since = sim_time
        self.last_reason = f"t={sim_time:.1f} {reason}"
        self.history.append((sim_time, previous, target, self.last_reason))
        logger.info(f"Regime {previous.value} -> {target.value}: {self.last_reason}")

    def evaluate(self, sim_time: float, model_error: float) -> Optional[Regime]:
        """Apply any due transition. Returns the new regime if one fired."""
        th = self.thresholds
        start = self.regime

        if (
            self.regime is Regime.EXPLORE
            and sim_time >= th.explore_min_seconds
            and model_error <= th.explore_max_error
        ):
            self._shift(Regime.EXPLOIT, sim_time, f"prediction error stabilized ({model_error:.3f})")

        if self.regime is not Regime.MANUFACTURE and self.time_in_regime(sim_time) > th.manufacture_min_dwell:
            novelty = self._tail(self.novelty_rates)
            errors = self._tail(self.prediction_errors)
            resource = self._tail(self.resource_rates)
            novelty_avg = _mean(novelty)
            error_avg = _mean(errors)
            resource_var = _variance(resource)
            if (
                len(novelty) >= self.window_size
                and novelty_avg < th.manufacture_max_novelty_per_min
                and error_avg < th.manufacture_max_prediction_error
                and resource_var < th.manufacture_max_resource_variance
            ):
                self._shift(
                    Regime.MANUFACTURE,
                    sim_time,
                    f"novel/min={novelty_avg:.2f} pred={error_avg:.3f} resourceVar={resource_var:.2f}",
                )

        return self.regime if self.regime is not start else None

    def snapshot(self, sim_time: float) -> Dict[str, Any]:
        return {
            "regime": self.regime.value,
            "since": self.since,
            "time_in_regime": self.time_in_regime(sim_time),
            "last_reason": self.last_reason,
            "history": [
                [t, a.value, b.value, reason] for t, a, b, reason in self.history
            ],
        }

    def __repr__(self) -> str:
        return f"RegimeMachine(regime={self.regime.value}, since={self.since:.1f})"
