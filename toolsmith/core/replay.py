"""
core/replay.py

Experience, kept briefly.

A fixed-capacity ring of past transitions. The oldest memory
makes room for the newest. Training reads from the recent end
by default, or samples by surprise when asked to.

Inspired by:
- Hippocampal replay during rest
- Prioritized experience replay (Schaul et al.)
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, List, Optional
import numpy as np


PRIORITY_EPS = 1e-6
RECENCY_BOOST = 0.5  # newest item weighs up to 1.5x


@dataclass
class Transition:
    """
    One recorded experience.

    Immutable once pushed, except `priority`, which may be
    backfilled on the most recent item only.
    """
    input: Any                      # FeatureInput that produced the action
    outcome: Any                    # Observed Outcome
    action: Any                     # Verb taken
    reward: float = 0.0
    tool_id: Optional[int] = None
    priority: Optional[float] = None

    def weight_basis(self) -> float:
        """Priority if set, otherwise reward magnitude."""
        if self.priority is not None:
            return max(0.0, float(self.priority))
        return abs(float(self.reward))


class ReplayBuffer:
    """
    FIFO-evicting buffer of transitions.

    Sampling never mutates the stored data; callers get
    references to the stored Transition objects.
    """

    def __init__(self, capacity: int, rng: Optional[np.random.Generator] = None):
        if capacity < 1:
            raise ValueError(f"Replay capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.rng = rng if rng is not None else np.random.default_rng()
        self._data: Deque[Transition] = deque(maxlen=capacity)

    def push(self, item: Transition) -> None:
        """Append a transition, evicting the oldest when full."""
        self._data.append(item)

    def sample_last(self, n: int) -> List[Transition]:
        """The most recent n transitions, oldest first."""
        if n <= 0:
            return []
        start = max(0, len(self._data) - n)
        return [self._data[i] for i in range(start, len(self._data))]

    def sample_prioritized(
        self,
        n: int,
        alpha: float = 0.6,
        rng: Optional[np.random.Generator] = None,
    ) -> List[Transition]:
        """
        Weighted sampling without replacement.

        weight = (priority_or_|reward| + eps)^alpha * recency boost,
        where the boost rises linearly from 1.0 (oldest) to 1.5 (newest).
        Falls back to sample_last when every weight is zero.
        """
        size = len(self._data)
        if size == 0 or n <= 0:
            return []
        n = min(n, size)
        rng = rng if rng is not None else self.rng

        basis = np.array([t.weight_basis() for t in self._data], dtype=np.float64)
        weights = np.power(basis + PRIORITY_EPS, alpha)
        if size > 1:
            weights *= 1.0 + RECENCY_BOOST * (np.arange(size) / (size - 1))
        else:
            weights *= 1.0 + RECENCY_BOOST

        total = float(weights.sum())
        if not np.isfinite(total) or total <= 0.0:
            return self.sample_last(n)

        indices = rng.choice(size, size=n, replace=False, p=weights / total)
        return [self._data[int(i)] for i in indices]

    def update_last_priority(self, priority: float) -> None:
        """Overwrite the newest transition's priority. No-op when empty."""
        if not self._data:
            return
        self._data[-1].priority = max(0.0, float(priority))

    def items(self) -> List[Transition]:
        """All stored transitions in push order."""
        return list(self._data)

    def clear(self) -> None:
        self._data.clear()

    @property
    def size(self) -> int:
        return len(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"ReplayBuffer(size={len(self._data)}, capacity={self.capacity})"
