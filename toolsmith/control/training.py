"""
control/training.py

Learning on a budget.

Bookkeeping for the online retraining of the outcome model:
what state training is in, how many steps ran recently, how
long they took, and a smoothed view of loss and action
diversity. The loop asks it before spending time.
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Optional, Tuple
import logging
import math

logger = logging.getLogger(__name__)

LOG_SECONDS = 90.0
SMOOTHING = 0.05


class TrainingState(Enum):
    OFF = "off"
    COLLECTING = "collecting"
    TRAINING = "training"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


@dataclass
class TrainingMetrics:
    """Windowed training statistics."""
    steps_total: int
    steps_last_60s: int
    train_ms_last_1s: float
    train_ms_last_60s: float
    replay_size: int
    batch_loss: float
    policy_entropy: float
    state: TrainingState
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        data = dict(vars(self))
        data["state"] = self.state.value
        return data


class TrainingScheduler:
    """
    Lifecycle and windowed metrics for rate-limited training.

    off -> collecting -> training <-> rate_limited; error is sticky
    until start() is called again.
    """

    def __init__(self):
        self._state = TrainingState.OFF
        self._last_error: Optional[str] = None
        self._steps_total = 0
        self._step_log: Deque[Tuple[float, float, float]] = deque()  # (sim_time, ms, loss)
        self._loss = 0.0
        self._entropy = 0.5

    @property
    def state(self) -> TrainingState:
        return self._state

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def start(self) -> None:
        self._state = TrainingState.COLLECTING
        self._last_error = None

    def stop(self) -> None:
        self._state = TrainingState.OFF

    def record_step(self, duration_ms: float, loss: float, entropy: float, sim_time: float) -> None:
        # An error only clears on start()
        if self._state in (TrainingState.OFF, TrainingState.ERROR):
            return
        if not math.isfinite(loss):
            self.record_error(f"non-finite loss {loss}")
            return

        self._steps_total += 1
        self._loss += (loss - self._loss) * SMOOTHING
        self._entropy += (entropy - self._entropy) * SMOOTHING
        self._step_log.append((sim_time, duration_ms, loss))
        while self._step_log and self._step_log[0][0] < sim_time - LOG_SECONDS:
            self._step_log.popleft()
        self._state = TrainingState.TRAINING

    def record_rate_limited(self) -> None:
        if self._state is TrainingState.OFF:
            return
        if self._state is not TrainingState.RATE_LIMITED:
            logger.debug("Training rate limited for this second")
        self._state = TrainingState.RATE_LIMITED

    def record_error(self, message: str) -> None:
        logger.warning(f"Training error: {message}")
        self._state = TrainingState.ERROR
        self._last_error = message

    def set_collecting(self) -> None:
        if self._state in (TrainingState.OFF, TrainingState.ERROR):
            return
        self._state = TrainingState.COLLECTING

    def accepts_work(self) -> bool:
        return self._state not in (TrainingState.OFF, TrainingState.ERROR)

    def metrics(self, now: float, replay_size: int) -> TrainingMetrics:
        last_60 = [(t, ms) for t, ms, _ in self._step_log if t >= now - 60]
        last_1 = [ms for t, ms in last_60 if t >= now - 1]
        return TrainingMetrics(
            steps_total=self._steps_total,
            steps_last_60s=len(last_60),
            train_ms_last_1s=float(sum(last_1)),
            train_ms_last_60s=float(sum(ms for _, ms in last_60)),
            replay_size=replay_size,
            batch_loss=self._loss,
            policy_entropy=self._entropy,
            state=self._state,
            last_error=self._last_error,
        )

    def __repr__(self) -> str:
        return (
            f"TrainingScheduler(state={self._state.value}, "
            f"steps={self._steps_total}, "
            f"loss={self._loss:.3f})"
        )
