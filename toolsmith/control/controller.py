"""
control/controller.py

Turn the knob, look, turn it again.

A single-parameter hill climber for manufacturing. It picks the
process that moves a metric (grinding for flatness, heat for
grain order, soaking for purity), nudges its intensity, measures,
and reverses direction when things got worse.

Inspired by:
- Extremum-seeking control
- A machinist's feel for feed rate
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Dict, NamedTuple, Optional
import logging
import math

from toolsmith.core.verbs import Verb
from toolsmith.environments.base import (
    EnvAction,
    Environment,
    MeasurementResult,
    Metric,
    PrecisionState,
)

logger = logging.getLogger(__name__)

COARSE_STEP = 0.15
FINE_STEP = 0.06
COARSE_ERROR = 0.2
CONVERGED_ERROR = 0.08

METRIC_VERBS = {
    Metric.SURFACE_PLANARITY: Verb.GRIND,
    Metric.MICROSTRUCTURE_ORDER: Verb.HEAT,
    Metric.IMPURITY_LEVEL: Verb.SOAK,
}

# Verbs that consume a second object
NEEDS_COUNTERPART = (Verb.GRIND,)


class ControllerPhase(Enum):
    IDLE = "idle"
    SELECTING_TARGET = "selecting_target"
    TUNING = "tuning"
    EVALUATING = "evaluating"
    CONVERGED = "converged"
    BLOCKED = "blocked"


@dataclass
class ControllerTarget:
    metric: Metric
    target: float


class ControllerKey(NamedTuple):
    object_id: int
    metric: Metric
    target: float


@dataclass
class ControllerState:
    """Search state for one (object, metric, target)."""
    param: float = 0.5
    direction: int = 1
    best_error: float = math.inf
    last_error: Optional[float] = None
    steps: int = 0


@dataclass
class ControllerStep:
    """Result of one controller step."""
    verb: Verb
    intensity: float
    measured: Optional[MeasurementResult]
    achieved: float
    error: float
    applied: bool
    phase: ControllerPhase


def target_for(precision: PrecisionState) -> ControllerTarget:
    """Pick the weakest quality to work on next."""
    if precision.surface_planarity < 0.78:
        return ControllerTarget(Metric.SURFACE_PLANARITY, 0.82)
    if precision.microstructure_order < 0.75:
        return ControllerTarget(Metric.MICROSTRUCTURE_ORDER, 0.80)
    return ControllerTarget(Metric.IMPURITY_LEVEL, 0.25)


class ClosedLoopController:
    """
    Per-key hill climbing over a process intensity in [0, 1].

    State is created lazily on the first step for a key and is
    never deleted; a new target value gets a new key.
    """

    def __init__(self):
        self.states: Dict[ControllerKey, ControllerState] = {}
        self._phase = ControllerPhase.IDLE

    @property
    def phase(self) -> ControllerPhase:
        return self._phase

    def set_idle(self) -> None:
        self._phase = ControllerPhase.IDLE

    def state_for(self, key: ControllerKey) -> Optional[ControllerState]:
        return self.states.get(key)

    @staticmethod
    def key_for(object_id: int, target: ControllerTarget) -> ControllerKey:
        return ControllerKey(object_id, target.metric, round(target.target, 3))

    def _find_counterpart(self, env: Environment, object_id: int) -> Optional[int]:
        origin = env.agent_position
        best = None
        for other_id in env.nearby_object_ids():
            if other_id == object_id:
                continue
            other = env.get(other_id)
            if other is None:
                continue
            distance = float(((other.position - origin) ** 2).sum())
            if best is None or distance < best[0]:
                best = (distance, other_id)
        return best[1] if best else None

    def _blocked(
        self,
        verb: Verb,
        state: ControllerState,
        measured: Optional[MeasurementResult],
        achieved: float,
        error: float,
    ) -> ControllerStep:
        self._phase = ControllerPhase.BLOCKED
        return ControllerStep(
            verb=verb,
            intensity=state.param,
            measured=measured,
            achieved=achieved,
            error=error,
            applied=False,
            phase=self._phase,
        )

    def step(self, env: Environment, object_id: int, target: ControllerTarget) -> ControllerStep:
        key = self.key_for(object_id, target)
        verb = METRIC_VERBS[target.metric]
        state = self.states.get(key)
        if state is None:
            state = ControllerState()
            self.states[key] = state
            self._phase = ControllerPhase.SELECTING_TARGET

        before = env.measure(object_id, target.metric)
        if before is None:
            logger.debug(f"Controller blocked: object {object_id} is gone")
            return self._blocked(verb, state, None, 0.0, abs(target.target))

        error_before = abs(target.target - before.value)
        if state.last_error is not None and error_before > state.last_error:
            state.direction = -state.direction

        step_size = COARSE_STEP if error_before > COARSE_ERROR else FINE_STEP
        state.param = min(1.0, max(0.0, state.param + state.direction * step_size))
        self._phase = ControllerPhase.TUNING

        action = EnvAction(verb=verb, intensity=state.param)
        if verb in NEEDS_COUNTERPART:
            counterpart = self._find_counterpart(env, object_id)
            if counterpart is None:
                logger.debug(f"Controller blocked: no abrasive near object {object_id}")
                return self._blocked(verb, state, before, before.value, error_before)
            action.object_id = counterpart
        env.apply(action)

        after = env.measure(object_id, target.metric)
        measured = after if after is not None else before
        error = abs(target.target - measured.value)
        state.last_error = error
        state.best_error = min(state.best_error, error)
        state.steps += 1

        if error <= CONVERGED_ERROR:
            logger.debug(f"Controller converged on {key} after {state.steps} steps")
            self._phase = ControllerPhase.CONVERGED
        elif error <= COARSE_ERROR:
            self._phase = ControllerPhase.EVALUATING
        else:
            self._phase = ControllerPhase.TUNING

        return ControllerStep(
            verb=verb,
            intensity=state.param,
            measured=measured,
            achieved=measured.value,
            error=error,
            applied=True,
            phase=self._phase,
        )

    def __repr__(self) -> str:
        return f"ClosedLoopController(keys={len(self.states)}, phase={self._phase.value})"
