"""
control/stall.py

Noticing when you are going in circles.

A per-agent loop detector. Flat reward with nobody new touched,
or the same verb over and over, means the agent is stuck. The
response is not punishment but a short spell of forced
exploration.

Inspired by:
- Boredom as an exploration drive
- Perseveration in prefrontal damage
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional
import logging

from toolsmith.core.verbs import Verb

logger = logging.getLogger(__name__)


@dataclass
class StallConfig:
    """Configuration for loop detection."""
    window_size: int = 40              # Ticks to look back
    reward_eps: float = 0.005          # Min reward delta to count as progress
    min_targets: int = 1               # Min distinct targets touched in window
    repeat_threshold: int = 15         # Max consecutive identical verbs
    forced_explore_ticks: int = 10     # Cooldown after a stall
    min_samples: int = 5


@dataclass
class StallWindow:
    """Rolling activity record for one agent. Reset on stall, never deleted."""
    rewards: Deque[float]
    actions: Deque[Verb]
    targets_touched: Dict[int, None] = field(default_factory=dict)  # Insertion ordered, newest last
    objects_used: Dict[int, None] = field(default_factory=dict)
    window_start: int = 0
    stall_events: int = 0
    stall_ticks: int = 0
    total_ticks: int = 0
    forced_explore_ticks: int = 0

    def clear(self) -> None:
        self.rewards.clear()
        self.actions.clear()
        self.targets_touched.clear()
        self.objects_used.clear()

    def tail_repeats(self) -> int:
        """How many times the newest verb repeats at the end of the window."""
        if not self.actions:
            return 0
        last = self.actions[-1]
        count = 0
        for verb in reversed(self.actions):
            if verb is not last:
                break
            count += 1
        return count


def _touch(ids: Dict[int, None], key: int, limit: int) -> None:
    """Move key to the newest end, dropping the oldest ids past limit."""
    ids.pop(key, None)
    ids[key] = None
    while len(ids) > limit:
        del ids[next(iter(ids))]


@dataclass
class StallMetrics:
    stall_events_per_min: float
    time_in_stall_pct: float
    is_stalled: bool


class StallDetector:
    """
    Flags behavioural loops and arms a forced-exploration cooldown.

    A stall is declared when either
    - the reward delta across the window is below eps AND fewer than
      min_targets distinct targets were touched, or
    - the newest verb repeats at least repeat_threshold times in a row.
    """

    def __init__(self, config: Optional[StallConfig] = None):
        self.config = config or StallConfig()
        self.windows: Dict[int, StallWindow] = {}

    def window_for(self, agent_id: int, tick: int = 0) -> StallWindow:
        window = self.windows.get(agent_id)
        if window is None:
            size = self.config.window_size
            window = StallWindow(
                rewards=deque(maxlen=size),
                actions=deque(maxlen=size),
                window_start=tick,
            )
            self.windows[agent_id] = window
        return window

    def record(
        self,
        agent_id: int,
        tick: int,
        verb: Verb,
        reward: float,
        target_id: Optional[int] = None,
        object_id: Optional[int] = None,
    ) -> bool:
        """Record one tick of activity. Returns True when a stall is declared."""
        cfg = self.config
        window = self.window_for(agent_id, tick)
        window.total_ticks += 1
        window.rewards.append(reward)
        window.actions.append(verb)
        if target_id is not None:
            _touch(window.targets_touched, target_id, cfg.window_size)
        if object_id is not None:
            _touch(window.objects_used, object_id, cfg.window_size)

        if window.forced_explore_ticks > 0:
            window.forced_explore_ticks -= 1
            return False

        if len(window.rewards) < cfg.min_samples:
            return False

        reward_delta = abs(window.rewards[-1] - window.rewards[0])
        flat = reward_delta < cfg.reward_eps and len(window.targets_touched) < cfg.min_targets
        repeating = window.tail_repeats() >= cfg.repeat_threshold

        if not (flat or repeating):
            return False

        window.stall_events += 1
        window.stall_ticks += 1
        window.forced_explore_ticks = cfg.forced_explore_ticks
        window.window_start = tick
        reason = "flat reward" if flat else f"{verb.value} repeated"
        logger.info(f"Agent {agent_id} stalled at tick {tick} ({reason}); forcing exploration")
        window.clear()
        return True

    def is_in_forced_explore(self, agent_id: int) -> bool:
        window = self.windows.get(agent_id)
        return window is not None and window.forced_explore_ticks > 0

    def metrics(self, elapsed_minutes: float) -> StallMetrics:
        events = sum(w.stall_events for w in self.windows.values())
        stall_ticks = sum(w.stall_ticks for w in self.windows.values())
        total_ticks = sum(w.total_ticks for w in self.windows.values())
        return StallMetrics(
            stall_events_per_min=events / max(1 / 60, elapsed_minutes),
            time_in_stall_pct=(stall_ticks / total_ticks * 100) if total_ticks > 0 else 0.0,
            is_stalled=any(w.forced_explore_ticks > 0 for w in self.windows.values()),
        )

    def __repr__(self) -> str:
        events = sum(w.stall_events for w in self.windows.values())
        return f"StallDetector(agents={len(self.windows)}, events={events})"
