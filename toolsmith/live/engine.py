"""
live/engine.py

The loop that ties it together.

Once per tick: nudge the world's population, reconsider the
regime, let one agent look around, score what it could do, do
it, and learn from what happened. Training runs alongside on a
wall-clock budget.

Inspired by:
- Sense-plan-act cycles in robotics
- Sleep-wake consolidation (act now, replay later)
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple
import copy
import logging
import time

import numpy as np

from toolsmith.control.controller import (
    ClosedLoopController,
    ControllerPhase,
    ControllerStep,
    ControllerTarget,
    target_for,
)
from toolsmith.control.population import (
    PopulationBands,
    PopulationController,
    PopulationMetrics,
)
from toolsmith.control.regime import Regime, RegimeMachine
from toolsmith.control.stall import StallDetector, StallMetrics
from toolsmith.control.training import TrainingMetrics, TrainingScheduler
from toolsmith.core.embedding import ToolEffectEmbedding
from toolsmith.core.perception import Observation, PerceptionHead
from toolsmith.core.replay import ReplayBuffer, Transition
from toolsmith.core.verbs import EXPLORATORY_VERBS, Verb
from toolsmith.core.world_model import OutcomeModel, clamp01
from toolsmith.environments.base import (
    EnvAction,
    Environment,
    InteractionOutcome,
    MeasurementResult,
    Metric,
    WorldObject,
)
from toolsmith.environments.workbench import Workbench

from .candidates import (
    CandidateAction,
    NoveltyWindow,
    action_cost,
    build_model_input,
    choose_candidate,
    rank_by_perception,
)
from .config import LiveConfig, TrainingConfig

logger = logging.getLogger(__name__)

ENERGY_REPLENISH = 0.018
ENERGY_FLOOR = 0.05

ANCHOR_EVERY_TICKS = 1
CONTROL_EVERY_TICKS = 3

CONTROL_PRECISION_FLOOR = 0.65

RESOURCE_WEIGHT = {
    Regime.EXPLORE: 0.8,
    Regime.EXPLOIT: 0.45,
    Regime.MANUFACTURE: 0.15,
}

MEASUREMENT_USEFUL_REWARD = 0.12
MEASUREMENT_FREE_REPEATS = 3
MEASUREMENT_EARLY_REWARD = 0.02
MEASUREMENT_PENALTY_STEP = 0.01
MEASUREMENT_MAX_PENALTY = 0.08
EFFECTIVENESS_FLOOR = -0.2

MEMORY_LENGTH = 32
GOOD_TOOL_SCORE = 0.25
GOOD_TOOL_LIMIT = 8
STRIKE_HISTORY = 10
PROCESS_CHAIN_LENGTH = 12
BOOKMARK_LIMIT = 16


@dataclass
class AgentMemory:
    """What one agent remembers of its recent life."""
    id: int
    energy: float = 1.0
    observations: Deque[Observation] = field(default_factory=lambda: deque(maxlen=MEMORY_LENGTH))
    actions: Deque[Verb] = field(default_factory=lambda: deque(maxlen=MEMORY_LENGTH))
    outcomes: Deque[float] = field(default_factory=lambda: deque(maxlen=MEMORY_LENGTH))
    good_tools: List[int] = field(default_factory=list)
    good_locations: List[Tuple[float, float, float]] = field(default_factory=list)

    def remember_good_tool(self, tool_id: int, position: np.ndarray, score: float) -> None:
        self.good_tools = [tool_id] + [t for t in self.good_tools if t != tool_id]
        del self.good_tools[GOOD_TOOL_LIMIT:]
        self.good_locations.insert(0, (float(position[0]), float(position[1]), score))
        del self.good_locations[GOOD_TOOL_LIMIT:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "energy": self.energy,
            "observations": [o.to_dict() for o in self.observations],
            "actions": [v.value for v in self.actions],
            "outcomes": list(self.outcomes),
            "good_tools": list(self.good_tools),
            "good_locations": [list(loc) for loc in self.good_locations],
        }


@dataclass
class SegmentFrame:
    tick: int
    sim_time: float
    verb: Verb
    signature: Tuple[int, str, Optional[str], float]
    object_ids: List[int]


@dataclass
class Bookmark:
    id: str
    tick: int
    sim_time: float
    frames: List[SegmentFrame]


@dataclass
class ApplyResult:
    """What happened when the chosen candidate hit the world."""
    outcome: Optional[InteractionOutcome] = None
    transformed_ids: List[int] = field(default_factory=list)
    controller_step: Optional[ControllerStep] = None
    controller_target: Optional[ControllerTarget] = None
    controller_delta: Optional[float] = None


@dataclass
class TickResult:
    """Everything one tick reports to its observers."""
    tick: int
    sim_time: float
    agent_id: int
    verb: Verb
    regime: Regime
    time_in_regime: float
    regime_reason: str
    effectiveness: float
    prediction_error: float
    prediction_error_mean: float
    resource_per_minute: float
    novel_interactions_per_minute: float
    composite_discovery_rate: float
    embedding_clusters: int
    repeatability: float
    precision: float
    controller_phase: ControllerPhase
    controller_target: Optional[Dict[str, Any]]
    measurements: List[MeasurementResult]
    measurement_useful: bool
    measurement_spam_penalty: float
    stall_triggered: bool
    training: TrainingMetrics
    stall: StallMetrics
    population: PopulationMetrics


class LiveModeEngine:
    """
    Owns every piece of mutable state in a run.

    The environment owns the single runtime random stream; the
    engine borrows it (self.rng) for agent selection, forced
    exploration and prioritized sampling.
    """

    def __init__(self, config: Optional[LiveConfig] = None, env: Optional[Environment] = None):
        self.config = config or LiveConfig()
        self.seed = self.config.seed
        self.env = env if env is not None else Workbench(seed=self.config.seed)
        self.rng = self.env.rng

        self.model = OutcomeModel()
        self.embedding = ToolEffectEmbedding()
        self.perception = PerceptionHead(seed=self.config.seed + 97)
        self.replay = ReplayBuffer(self.config.replay_capacity, rng=self.rng)
        self.controller = ClosedLoopController()
        self.stall = StallDetector()
        self.population = PopulationController(PopulationBands(max_objects=self.config.max_objects))
        self.training = TrainingScheduler()
        self.regime_machine = RegimeMachine(self.config.ticks_per_second)
        self.novelty_window = NoveltyWindow()

        self.memories = [AgentMemory(id=i + 1) for i in range(self.config.population_size)]

        self.tick_count = 0
        self.sim_time = 0.0
        self.composite_count = 0
        self.repeatability = 0.0
        self.precision = 0.0
        self.controller_steps = 0
        self.manufacturing_improvements = 0
        self.idle_ticks = 0
        self.total_actions = 0
        self.measurement_total = 0
        self.measurement_useful_count = 0

        max_frames = max(1, round(self.config.rolling_seconds * self.config.ticks_per_second))
        self.rolling_frames: Deque[SegmentFrame] = deque(maxlen=max_frames)
        self.bookmarks: List[Bookmark] = []

        self._recent_strike_damage: Deque[float] = deque(maxlen=STRIKE_HISTORY)
        self._process_chain: Deque[Verb] = deque(maxlen=PROCESS_CHAIN_LENGTH)
        self._last_transformed: Dict[int, int] = {}
        self._last_measured: Dict[int, int] = {}
        self._measurement_repeats: Dict[int, int] = {}
        self._train_second = 0
        self._train_ms_this_second = 0.0

        self._dispatch: Dict[Verb, Callable[[CandidateAction], ApplyResult]] = {
            Verb.MOVE_TO: self._do_move_to,
            Verb.PICK_UP: self._do_pick_up,
            Verb.DROP: self._do_drop,
            Verb.BIND_TO: self._do_bind_to,
            Verb.STRIKE_WITH: self._do_strike_with,
            Verb.GRIND: self._do_grind,
            Verb.HEAT: self._do_process,
            Verb.SOAK: self._do_process,
            Verb.ANCHOR: self._do_anchor,
            Verb.CONTROL: self._do_control,
            Verb.REST: self._do_rest,
        }

        self.training.start()
        logger.info(
            f"Live engine initialized: seed={self.seed}, agents={len(self.memories)}, "
            f"tps={self.config.ticks_per_second}"
        )

    @property
    def regime(self) -> Regime:
        return self.regime_machine.regime

    @property
    def elapsed_minutes(self) -> float:
        return max(1 / 60, self.sim_time / 60)

    # ==================== Pressure ====================

    def _apply_pressure(self) -> None:
        decision = self.population.evaluate(self.env.population())
        self.env.apply_pressure(decision.spawn_probability)
        if decision.debris_to_clean > 0:
            protected: Set[int] = set()
            if self.env.held_object_id is not None:
                protected.add(self.env.held_object_id)
            self.env.remove_debris(decision.debris_to_clean, protected)

    # ==================== Candidates ====================

    def _create_candidates(self, held: Optional[WorldObject]) -> List[CandidateAction]:
        candidates: List[CandidateAction] = []
        target_id = self.env.best_target_id()
        target = self.env.get(target_id) if target_id is not None else None

        if held is None:
            for obj in rank_by_perception(self.env, self.perception)[:3]:
                candidates.append(CandidateAction(Verb.PICK_UP, object_id=obj.id, score=0.05))
            if not candidates and target is not None:
                candidates.append(CandidateAction(
                    Verb.MOVE_TO,
                    object_id=target.id,
                    destination=(float(target.position[0]), float(target.position[1])),
                    score=0.04,
                ))
            return candidates

        if target is not None and target.id != held.id:
            strike_input = build_model_input(self.env, self.perception, Verb.STRIKE_WITH, held, target)
            candidates.append(CandidateAction(
                Verb.STRIKE_WITH,
                target_id=target.id,
                model_input=strike_input,
                predicted=self.model.predict(strike_input),
            ))

        nearby = rank_by_perception(self.env, self.perception, avoid=[held.id])[:2]
        for obj in nearby:
            for verb in (Verb.BIND_TO, Verb.GRIND):
                model_input = build_model_input(self.env, self.perception, verb, held, obj)
                candidates.append(CandidateAction(
                    verb,
                    object_id=obj.id,
                    model_input=model_input,
                    predicted=self.model.predict(model_input),
                ))

        precision = held.precision
        if (
            self.regime is Regime.MANUFACTURE
            or precision.surface_planarity < CONTROL_PRECISION_FLOOR
            or precision.microstructure_order < CONTROL_PRECISION_FLOOR
        ):
            candidates.append(CandidateAction(
                Verb.CONTROL,
                object_id=held.id,
                score=0.55 + (1 - precision.surface_planarity) * 0.2,
            ))

        if not held.anchored and self.regime is not Regime.EXPLORE:
            if self.regime is Regime.MANUFACTURE:
                anchor_score = 0.72
            else:
                anchor_score = 0.35 if held.constituents > 1 else 0.18
            candidates.append(CandidateAction(Verb.ANCHOR, object_id=held.id, score=anchor_score))

        candidates.append(CandidateAction(Verb.DROP, object_id=held.id, score=0.02))

        if not nearby and target is not None and target.id != held.id:
            candidates.append(CandidateAction(
                Verb.MOVE_TO,
                object_id=target.id,
                destination=(float(target.position[0]), float(target.position[1])),
                score=0.04,
            ))
        return candidates

    def _select(self, memory: AgentMemory, held: Optional[WorldObject]) -> CandidateAction:
        rest = CandidateAction(Verb.REST, score=0.0)
        if memory.energy < ENERGY_FLOOR:
            return rest

        candidates = self._create_candidates(held)
        selected = choose_candidate(candidates, self.model, self.novelty_window, self.regime)
        chosen = selected or rest

        if self.regime is Regime.MANUFACTURE:
            if self.env.station_count == 0:
                anchor = next((c for c in candidates if c.verb is Verb.ANCHOR), None)
                if anchor is not None and self.tick_count % ANCHOR_EVERY_TICKS == 0:
                    chosen = anchor
            elif held is not None:
                control = next((c for c in candidates if c.verb is Verb.CONTROL), None)
                due = self.tick_count % CONTROL_EVERY_TICKS == 0
                if control is not None and (due or (selected is not None and selected.verb is Verb.STRIKE_WITH)):
                    chosen = control

        if self.regime is not Regime.MANUFACTURE and self.stall.is_in_forced_explore(memory.id):
            pool = [c for c in candidates if c.verb in EXPLORATORY_VERBS] or candidates
            if pool:
                chosen = pool[int(self.rng.integers(len(pool)))]

        return chosen

    # ==================== Verb handlers ====================

    def _held_id(self) -> Optional[int]:
        return self.env.held_object_id

    def _apply(self, action: EnvAction) -> Optional[InteractionOutcome]:
        self.env.apply(action)
        return self.env.last_outcome

    def _do_move_to(self, c: CandidateAction) -> ApplyResult:
        destination = c.destination
        if destination is None and c.object_id is not None:
            obj = self.env.get(c.object_id)
            if obj is not None:
                destination = (float(obj.position[0]), float(obj.position[1]))
        if destination is None:
            return ApplyResult()
        return ApplyResult(outcome=self._apply(EnvAction(Verb.MOVE_TO, destination=destination)))

    def _do_pick_up(self, c: CandidateAction) -> ApplyResult:
        return ApplyResult(outcome=self._apply(EnvAction(Verb.PICK_UP, object_id=c.object_id)))

    def _do_drop(self, c: CandidateAction) -> ApplyResult:
        before = self._held_id()
        outcome = self._apply(EnvAction(Verb.DROP))
        return ApplyResult(outcome=outcome, transformed_ids=[before] if before is not None else [])

    def _do_bind_to(self, c: CandidateAction) -> ApplyResult:
        before = self._held_id()
        outcome = self._apply(EnvAction(Verb.BIND_TO, object_id=c.object_id))
        ids = [i for i in (before, c.object_id, self._held_id()) if i is not None]
        return ApplyResult(outcome=outcome, transformed_ids=ids if before is not None else [])

    def _do_strike_with(self, c: CandidateAction) -> ApplyResult:
        outcome = self._apply(EnvAction(Verb.STRIKE_WITH, object_id=c.target_id))
        return ApplyResult(outcome=outcome, transformed_ids=[c.target_id] if c.target_id is not None else [])

    def _do_grind(self, c: CandidateAction) -> ApplyResult:
        outcome = self._apply(EnvAction(Verb.GRIND, object_id=c.object_id, intensity=c.intensity))
        held = self._held_id()
        return ApplyResult(outcome=outcome, transformed_ids=[held] if held is not None else [])

    def _do_process(self, c: CandidateAction) -> ApplyResult:
        outcome = self._apply(EnvAction(c.verb, intensity=c.intensity))
        held = self._held_id()
        return ApplyResult(outcome=outcome, transformed_ids=[held] if held is not None else [])

    def _do_anchor(self, c: CandidateAction) -> ApplyResult:
        before = self._held_id()
        outcome = self._apply(EnvAction(Verb.ANCHOR))
        return ApplyResult(outcome=outcome, transformed_ids=[before] if before is not None else [])

    def _do_control(self, c: CandidateAction) -> ApplyResult:
        held = self.env.get(self._held_id()) if self._held_id() is not None else None
        if held is None:
            return ApplyResult()
        target = target_for(held.precision)
        before = held.precision.get(target.metric)
        self.env.last_outcome = None
        step = self.controller.step(self.env, held.id, target)
        after = step.achieved
        delta = after - before
        # Lower impurity is better
        if target.metric is Metric.IMPURITY_LEVEL:
            delta = -delta
        return ApplyResult(
            outcome=self.env.last_outcome,
            transformed_ids=[held.id],
            controller_step=step,
            controller_target=target if step.applied else None,
            controller_delta=delta,
        )

    def _do_rest(self, c: CandidateAction) -> ApplyResult:
        return ApplyResult()

    # ==================== Scoring helpers ====================

    def _update_repeatability(self) -> None:
        damages = list(self._recent_strike_damage)
        var = float(np.var(damages)) if len(damages) >= 2 else 0.0
        self.repeatability = 1.0 / (1.0 + var)

    def _effectiveness(self, outcome: Optional[InteractionOutcome]) -> float:
        base = 0.0
        if outcome is not None:
            base = outcome.damage + outcome.fragments * 0.4 - outcome.tool_wear * 0.3
        w_res = RESOURCE_WEIGHT[self.regime]
        w_q = 0.65 if self.regime is Regime.MANUFACTURE else 0.35
        return base * w_res + self.repeatability * w_q * 0.3 + self.precision * w_q * 0.35

    def _measurement_reward(self, object_id: int, useful: bool) -> Tuple[float, float]:
        """(reward, penalty) for measuring an object again."""
        repeats = self._measurement_repeats.get(object_id, 0) + 1
        self._measurement_repeats[object_id] = repeats
        if useful:
            return MEASUREMENT_USEFUL_REWARD, 0.0
        if repeats <= MEASUREMENT_FREE_REPEATS:
            return MEASUREMENT_EARLY_REWARD, 0.0
        penalty = min(
            MEASUREMENT_MAX_PENALTY,
            (repeats - MEASUREMENT_FREE_REPEATS) * MEASUREMENT_PENALTY_STEP,
        )
        return 0.0, penalty

    def measurement_spam_series(self, object_id: int, repeats: int) -> List[float]:
        """Net reward of measuring the same untouched object over and over."""
        series = []
        for _ in range(repeats):
            reward, penalty = self._measurement_reward(object_id, useful=False)
            series.append(reward - penalty)
        return series

    def _process_chain_variety(self) -> int:
        return len(set(list(self._process_chain)[-6:]))

    def _forget_removed_objects(self) -> None:
        """Drop per-object bookkeeping for ids the world no longer has."""
        for ledger in (self._last_transformed, self._last_measured, self._measurement_repeats):
            for object_id in [i for i in ledger if self.env.get(i) is None]:
                del ledger[object_id]

    # ==================== Core Loop ====================

    def tick(self) -> TickResult:
        """Run one full decision-and-learning cycle."""
        self.tick_count += 1
        self.sim_time = self.tick_count / self.config.ticks_per_second
        self._apply_pressure()
        self.regime_machine.evaluate(self.sim_time, self.model.mean_prediction_error())

        if self.config.deterministic:
            memory = self.memories[self.tick_count % len(self.memories)]
        else:
            memory = self.memories[int(self.rng.integers(len(self.memories)))]
        memory.energy = min(1.0, memory.energy + ENERGY_REPLENISH)

        held_id = self.env.held_object_id
        held = self.env.get(held_id) if held_id is not None else None
        chosen = self._select(memory, held)

        cost = action_cost(chosen.verb)
        if chosen.verb is not Verb.REST and memory.energy < cost:
            chosen = CandidateAction(Verb.REST, score=0.0)

        result = self._dispatch[chosen.verb](chosen)
        outcome = result.outcome
        if chosen.verb is Verb.REST:
            self.idle_ticks += 1
        else:
            memory.energy = max(0.0, memory.energy - cost)
            self.total_actions += 1

        for object_id in result.transformed_ids:
            self._last_transformed[object_id] = self.tick_count
            self._measurement_repeats[object_id] = 0

        if chosen.verb is Verb.BIND_TO and outcome is not None:
            self.composite_count += 1
        if chosen.verb is Verb.CONTROL:
            if result.controller_step is not None and result.controller_step.applied:
                self.controller_steps += 1
            if (result.controller_delta or 0.0) > 0:
                self.manufacturing_improvements += 1
        else:
            self.controller.set_idle()

        if chosen.verb is Verb.STRIKE_WITH and outcome is not None:
            self._recent_strike_damage.append(outcome.damage)
        self._update_repeatability()

        held_after_id = self.env.held_object_id
        held_after = self.env.get(held_after_id) if held_after_id is not None else None
        self.precision = held_after.precision.score() if held_after is not None else 0.0
        self._process_chain.append(chosen.verb)

        effectiveness = self._effectiveness(outcome)

        prediction_error = 0.0
        if chosen.model_input is not None and outcome is not None:
            predicted = chosen.predicted or self.model.predict(chosen.model_input)
            prediction_error = float(np.mean(np.abs(
                predicted.to_array()[:3] - outcome.outcome.to_array()[:3]
            )))
            self.replay.push(Transition(
                input=chosen.model_input,
                outcome=outcome.outcome,
                action=chosen.verb,
                reward=effectiveness,
                tool_id=outcome.tool_id,
                priority=prediction_error,
            ))
        self.regime_machine.record_prediction_error(self.model.mean_prediction_error())

        measurements: List[MeasurementResult] = []
        measurement_useful = False
        spam_penalty = 0.0
        if held_after is not None:
            measurements = self.env.measure_object(held_after.id)
        if held_after is not None and measurements:
            self.measurement_total += 1
            last_measured = self._last_measured.get(held_after.id, -1)
            transformed_since = self._last_transformed.get(held_after.id, -1) > last_measured
            measurement_useful = (
                result.controller_target is not None
                or transformed_since
                or self._process_chain_variety() >= 3
            )
            reward, spam_penalty = self._measurement_reward(held_after.id, measurement_useful)
            effectiveness = max(EFFECTIVENESS_FLOOR, effectiveness + reward - spam_penalty)
            if measurement_useful:
                self.measurement_useful_count += 1
            self._last_measured[held_after.id] = self.tick_count

        if outcome is not None and outcome.tool_id is not None:
            tool = self.env.get(outcome.tool_id)
            if tool is not None:
                observed = self.perception.observe(tool, self.rng)
                self.perception.train(observed, tool.props, clamp01(effectiveness))

        self._ingest_memory(memory, chosen.verb, effectiveness, held_after)

        stall_triggered = self.stall.record(
            memory.id,
            self.tick_count,
            chosen.verb,
            effectiveness,
            outcome.target_id if outcome is not None else None,
            outcome.tool_id if outcome is not None else None,
        )

        self._push_frame(chosen.verb, outcome)
        self._forget_removed_objects()

        elapsed = self.elapsed_minutes
        resource_per_minute = self.env.resource_gained / elapsed
        novel_per_minute = self.embedding.novel_interaction_count() / elapsed
        self.regime_machine.record_rates(novel_per_minute, resource_per_minute)

        controller_target = None
        if result.controller_target is not None and result.controller_step is not None:
            controller_target = {
                "metric": result.controller_target.metric.value,
                "target": result.controller_target.target,
                "achieved": result.controller_step.achieved,
            }

        return TickResult(
            tick=self.tick_count,
            sim_time=self.sim_time,
            agent_id=memory.id,
            verb=chosen.verb,
            regime=self.regime,
            time_in_regime=self.regime_machine.time_in_regime(self.sim_time),
            regime_reason=self.regime_machine.last_reason,
            effectiveness=effectiveness,
            prediction_error=prediction_error,
            prediction_error_mean=self.model.mean_prediction_error(),
            resource_per_minute=resource_per_minute,
            novel_interactions_per_minute=novel_per_minute,
            composite_discovery_rate=self.composite_count / max(1, self.tick_count),
            embedding_clusters=self.embedding.cluster_count(),
            repeatability=self.repeatability,
            precision=self.precision,
            controller_phase=self.controller.phase,
            controller_target=controller_target,
            measurements=measurements,
            measurement_useful=measurement_useful,
            measurement_spam_penalty=spam_penalty,
            stall_triggered=stall_triggered,
            training=self.training.metrics(self.sim_time, self.replay.size),
            stall=self.stall.metrics(elapsed),
            population=self.population.metrics(),
        )

    def _ingest_memory(
        self,
        memory: AgentMemory,
        verb: Verb,
        score: float,
        held: Optional[WorldObject],
    ) -> None:
        memory.actions.append(verb)
        memory.outcomes.append(score)
        if held is None:
            return
        memory.observations.append(self.perception.observe(held, self.rng))
        if score > GOOD_TOOL_SCORE:
            memory.remember_good_tool(held.id, held.position, score)

    def _push_frame(self, verb: Verb, outcome: Optional[InteractionOutcome]) -> None:
        damage = round(outcome.damage, 4) if outcome is not None else 0.0
        signature = (self.tick_count, verb.value, outcome.verb.value if outcome else None, damage)
        object_ids = []
        if outcome is not None:
            object_ids = [i for i in (outcome.tool_id, outcome.target_id) if i is not None]
        self.rolling_frames.append(SegmentFrame(
            tick=self.tick_count,
            sim_time=self.sim_time,
            verb=verb,
            signature=signature,
            object_ids=object_ids,
        ))

    # ==================== Training ====================

    def train_chunk(
        self,
        config: Optional[TrainingConfig] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> int:
        """
        Run up to steps_per_tick training steps within this second's budget.

        Returns the number of steps taken.
        """
        config = config or TrainingConfig()
        second = int(self.sim_time)
        if second != self._train_second:
            self._train_second = second
            self._train_ms_this_second = 0.0

        if not self.training.accepts_work():
            return 0
        if self.replay.size == 0:
            self.training.set_collecting()
            return 0

        budget = max(1.0, config.max_train_ms_per_second)
        max_steps = max(1, config.steps_per_tick)
        if self._train_ms_this_second >= budget:
            self.training.record_rate_limited()
            return 0

        chunk_started = clock()
        steps = 0
        while steps < max_steps and self._train_ms_this_second < budget:
            started = clock()
            batch_size = max(1, config.batch_size)
            if config.sampling == "prioritized":
                samples = self.replay.sample_prioritized(batch_size, config.priority_alpha, self.rng)
            else:
                samples = self.replay.sample_last(batch_size)
            if not samples:
                break

            losses = []
            for sample in samples:
                losses.append(self.model.update(sample.input, sample.outcome))
                if sample.tool_id is not None:
                    self.embedding.update(sample.tool_id, sample.outcome)

            duration_ms = (clock() - started) * 1000.0
            loss = float(np.mean(losses))
            diversity = len({s.action for s in samples}) / len(samples)
            self.training.record_step(duration_ms, loss, diversity, self.sim_time)
            if not self.training.accepts_work():
                break

            steps += 1
            self._train_ms_this_second += duration_ms
            if (clock() - chunk_started) * 1000.0 > budget:
                self.training.record_rate_limited()
                break
        return steps

    def run(self, ticks: int, training_config: Optional[TrainingConfig] = None) -> List[TickResult]:
        """Tick repeatedly, training after each tick when a config is given."""
        logger.info(f"Starting live run for {ticks} ticks")
        results = []
        for _ in range(ticks):
            results.append(self.tick())
            if training_config is not None:
                self.train_chunk(training_config)
            if self.tick_count % 100 == 0:
                logger.debug(
                    f"Tick {self.tick_count}: regime={self.regime.value} "
                    f"pred_err={self.model.mean_prediction_error():.3f} "
                    f"resource={self.env.resource_gained}"
                )
        logger.info(
            f"Run finished at tick {self.tick_count}: regime={self.regime.value}, "
            f"resource={self.env.resource_gained}, replay={self.replay.size}"
        )
        return results

    # ==================== Bookmarks & Snapshots ====================

    def bookmark(self, prefix: str = "bookmark") -> Bookmark:
        mark = Bookmark(
            id=f"{prefix}-{self.tick_count}",
            tick=self.tick_count,
            sim_time=self.sim_time,
            frames=copy.deepcopy(list(self.rolling_frames)),
        )
        self.bookmarks.insert(0, mark)
        del self.bookmarks[BOOKMARK_LIMIT:]
        return mark

    def replay_bookmark(self, bookmark_id: str) -> List[SegmentFrame]:
        for mark in self.bookmarks:
            if mark.id == bookmark_id:
                return copy.deepcopy(mark.frames)
        return []

    def create_snapshot(self) -> Dict[str, Any]:
        """A JSON-safe copy of the run's state. Shares nothing with the engine."""
        elapsed = self.elapsed_minutes
        snapshot = {
            "seed": self.seed,
            "tick": self.tick_count,
            "sim_time": self.sim_time,
            "metrics": {
                "resource_per_minute": self.env.resource_gained / elapsed,
                "prediction_error_mean": self.model.mean_prediction_error(),
                "novel_interactions_per_minute": self.embedding.novel_interaction_count() / elapsed,
                "composite_discovery_rate": self.composite_count / max(1, self.tick_count),
                "embedding_clusters": self.embedding.cluster_count(),
            },
            "agents": [memory.to_dict() for memory in self.memories],
            "world": {
                "resource_gained": self.env.resource_gained,
                "objects": self.env.snapshot_objects(),
            },
            "manufacturing": {
                "repeatability": self.repeatability,
                "precision": self.precision,
                "station_count": self.env.station_count,
                "controller_steps": self.controller_steps,
                "improvements": self.manufacturing_improvements,
                "regime": self.regime.value,
                "time_in_regime": self.regime_machine.time_in_regime(self.sim_time),
            },
            "model_state": {
                "outcome_model": self.model.snapshot(),
                "perception": self.perception.snapshot(),
                "embedding": self.embedding.snapshot(),
            },
            "regime": self.regime_machine.snapshot(self.sim_time),
            "training": self.training.metrics(self.sim_time, self.replay.size).to_dict(),
        }
        return copy.deepcopy(snapshot)

    def __repr__(self) -> str:
        return (
            f"LiveModeEngine(tick={self.tick_count}, "
            f"regime={self.regime.value}, "
            f"agents={len(self.memories)}, "
            f"replay={self.replay.size})"
        )
