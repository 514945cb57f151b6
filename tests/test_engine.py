"""
Tests for live/engine.py

The full tick loop on the reference workbench.
"""

import json

import numpy as np
import pytest

from toolsmith.control.regime import Regime
from toolsmith.control.training import TrainingState
from toolsmith.core.replay import Transition
from toolsmith.core.verbs import EXPLORATORY_VERBS, Verb
from toolsmith.core.world_model import FeatureInput, ObjectFeatures, Outcome
from toolsmith.environments.base import EnvAction, ObjectFamily, PrecisionState
from toolsmith.environments.workbench import Workbench
from toolsmith.live.candidates import CandidateAction
from toolsmith.live.config import LiveConfig, TrainingConfig
from toolsmith.live.engine import BOOKMARK_LIMIT, LiveModeEngine


class FakeClock:
    """Advances by a fixed step every time it is read."""

    def __init__(self, step_seconds):
        self.now = 0.0
        self.step = step_seconds

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


def hold_apart(engine, neighbours=0):
    """Pick up a polished loose object in a corner, with `neighbours` loose objects beside it."""
    env = engine.env
    loose = [o for o in env.objects.values() if o.family is ObjectFamily.LOOSE]
    held = loose[0]
    env.apply(EnvAction(Verb.MOVE_TO, object_id=held.id))
    env.apply(EnvAction(Verb.PICK_UP, object_id=held.id))
    env.apply(EnvAction(Verb.MOVE_TO, destination=(1.0, 1.0)))
    for obj in env.objects.values():
        if obj.id != held.id:
            obj.position = np.array([9.0, 9.0])
    for obj in loose[1:1 + neighbours]:
        obj.position = np.array([1.0, 1.0])
    held.precision = PrecisionState(surface_planarity=0.9, microstructure_order=0.9, impurity_level=0.1)
    return held


def add_station(engine, held):
    station = next(
        o for o in engine.env.objects.values()
        if o.family is ObjectFamily.LOOSE and o.id != held.id
    )
    station.anchored = True
    return station


def fill_replay(engine, count=10):
    for i in range(count):
        engine.replay.push(Transition(
            input=FeatureInput(
                object_a=ObjectFeatures(mass=0.6, length=0.5),
                object_b=ObjectFeatures(mass=0.4),
                verb=Verb.STRIKE_WITH if i % 2 else Verb.GRIND,
                geometry=0.3,
            ),
            outcome=Outcome(damage=0.5, tool_wear=0.1),
            action=Verb.STRIKE_WITH if i % 2 else Verb.GRIND,
            tool_id=1 + i % 3,
        ))


class TestEngineSetup:
    """Tests for engine construction."""

    def test_defaults(self):
        engine = LiveModeEngine()
        assert isinstance(engine.env, Workbench)
        assert engine.rng is engine.env.rng
        assert engine.regime is Regime.EXPLORE
        assert len(engine.memories) == 3
        assert engine.training.state is TrainingState.COLLECTING

    def test_every_verb_is_dispatched(self):
        engine = LiveModeEngine()
        assert set(engine._dispatch) == set(Verb)

    def test_rejects_bad_config(self):
        with pytest.raises(ValueError):
            LiveConfig(ticks_per_second=0)
        with pytest.raises(ValueError):
            LiveConfig(population_size=0)


class TestTick:
    """Tests for the tick loop."""

    def test_tick_advances_time(self):
        engine = LiveModeEngine(LiveConfig(ticks_per_second=10))
        result = engine.tick()
        assert result.tick == 1
        assert result.sim_time == pytest.approx(0.1)
        assert result.regime is Regime.EXPLORE

    def test_round_robin_agents(self):
        engine = LiveModeEngine(LiveConfig(population_size=3))
        agents = [engine.tick().agent_id for _ in range(6)]
        assert agents == [2, 3, 1, 2, 3, 1]

    def test_same_seed_same_run(self):
        a = LiveModeEngine(LiveConfig(seed=42))
        b = LiveModeEngine(LiveConfig(seed=42))
        run_a = [(r.verb, r.regime, r.effectiveness) for r in a.run(50)]
        run_b = [(r.verb, r.regime, r.effectiveness) for r in b.run(50)]
        assert run_a == run_b
        assert a.env.snapshot_objects() == b.env.snapshot_objects()

    def test_run_does_things(self):
        engine = LiveModeEngine(LiveConfig(seed=7))
        results = engine.run(60)
        verbs = {r.verb for r in results}
        assert Verb.PICK_UP in verbs
        assert len(verbs) > 1
        assert engine.total_actions + engine.idle_ticks == 60

    def test_effectiveness_has_floor(self):
        engine = LiveModeEngine(LiveConfig(seed=3))
        for result in engine.run(80):
            assert result.effectiveness >= -0.2

    def test_energy_stays_in_range(self):
        engine = LiveModeEngine(LiveConfig(seed=5))
        engine.run(100)
        for memory in engine.memories:
            assert 0.0 <= memory.energy <= 1.0

    def test_exhausted_agent_rests(self):
        engine = LiveModeEngine(LiveConfig(population_size=1))
        engine.memories[0].energy = 0.0
        result = engine.tick()
        assert result.verb is Verb.REST

    def test_population_cap_only_removes_debris(self):
        engine = LiveModeEngine(LiveConfig(seed=11, max_objects=30))
        for result in engine.run(150):
            assert result.population.purged_non_debris == 0
        assert engine.env.best_target_id() is not None

    def test_held_object_candidates(self):
        engine = LiveModeEngine()
        held = hold_apart(engine, neighbours=3)
        candidates = engine._create_candidates(held)
        verbs = [c.verb for c in candidates]

        strike = candidates[0]
        assert strike.verb is Verb.STRIKE_WITH
        assert strike.target_id == engine.env.best_target_id()
        assert strike.model_input is not None and strike.predicted is not None

        binds = [c for c in candidates if c.verb is Verb.BIND_TO]
        grinds = [c for c in candidates if c.verb is Verb.GRIND]
        assert len(binds) == 2 and len(grinds) == 2
        assert {c.object_id for c in binds} == {c.object_id for c in grinds}
        assert held.id not in {c.object_id for c in binds}
        assert all(c.model_input is not None for c in binds + grinds)

        assert Verb.DROP in verbs
        assert Verb.MOVE_TO not in verbs
        assert Verb.ANCHOR not in verbs
        assert Verb.CONTROL not in verbs

    def test_held_object_alone_moves_toward_target(self):
        engine = LiveModeEngine()
        held = hold_apart(engine)
        candidates = engine._create_candidates(held)
        assert not any(c.verb in (Verb.BIND_TO, Verb.GRIND) for c in candidates)
        move = next(c for c in candidates if c.verb is Verb.MOVE_TO)
        assert move.object_id == engine.env.best_target_id()

    def test_manufacture_anchors_first_station(self):
        engine = LiveModeEngine()
        engine.regime_machine.regime = Regime.MANUFACTURE
        held = hold_apart(engine)
        assert engine.env.station_count == 0

        engine.tick_count = 1
        chosen = engine._select(engine.memories[0], held)
        assert chosen.verb is Verb.ANCHOR
        assert chosen.object_id == held.id

    def test_manufacture_controls_on_cadence(self):
        engine = LiveModeEngine()
        engine.regime_machine.regime = Regime.MANUFACTURE
        held = hold_apart(engine)
        add_station(engine, held)

        engine.tick_count = 3
        chosen = engine._select(engine.memories[0], held)
        assert chosen.verb is Verb.CONTROL
        assert chosen.object_id == held.id

    def test_manufacture_controls_instead_of_striking(self):
        engine = LiveModeEngine()
        engine.regime_machine.regime = Regime.MANUFACTURE
        held = hold_apart(engine)
        add_station(engine, held)

        engine.tick_count = 1
        assert engine._select(engine.memories[0], held).verb is Verb.CONTROL

    def test_manufacture_off_cadence_keeps_choice(self, monkeypatch):
        engine = LiveModeEngine()
        engine.regime_machine.regime = Regime.MANUFACTURE
        held = hold_apart(engine)
        add_station(engine, held)
        monkeypatch.setattr(
            "toolsmith.live.engine.choose_candidate",
            lambda candidates, *args: next(c for c in candidates if c.verb is Verb.DROP),
        )

        engine.tick_count = 1
        assert engine._select(engine.memories[0], held).verb is Verb.DROP

    def test_forced_explore_picks_exploratory_verbs(self):
        engine = LiveModeEngine()
        held = hold_apart(engine)
        stalled, calm = engine.memories[0], engine.memories[1]
        engine.stall.window_for(stalled.id).forced_explore_ticks = 5

        assert engine._select(calm, held).verb is Verb.STRIKE_WITH
        picks = {engine._select(stalled, held).verb for _ in range(20)}
        assert picks <= set(EXPLORATORY_VERBS)

    def test_forced_explore_falls_back_to_any_candidate(self, monkeypatch):
        engine = LiveModeEngine()
        held = hold_apart(engine)
        memory = engine.memories[0]
        heuristics = [
            CandidateAction(Verb.ANCHOR, object_id=held.id, score=0.9),
            CandidateAction(Verb.CONTROL, object_id=held.id, score=0.5),
        ]
        monkeypatch.setattr(engine, "_create_candidates", lambda held: heuristics)

        assert engine._select(memory, held).verb is Verb.ANCHOR
        engine.stall.window_for(memory.id).forced_explore_ticks = 5
        picks = {engine._select(memory, held).verb for _ in range(30)}
        assert picks == {Verb.ANCHOR, Verb.CONTROL}

    def test_manufacture_ignores_forced_explore(self):
        engine = LiveModeEngine()
        engine.regime_machine.regime = Regime.MANUFACTURE
        held = hold_apart(engine)
        memory = engine.memories[0]
        engine.stall.window_for(memory.id).forced_explore_ticks = 5

        engine.tick_count = 1
        for _ in range(10):
            assert engine._select(memory, held).verb is Verb.ANCHOR

    def test_vanished_reference_records_no_transition(self, monkeypatch):
        engine = LiveModeEngine(LiveConfig(population_size=1))
        hold_apart(engine)
        model_input = FeatureInput(
            object_a=ObjectFeatures(mass=0.5),
            object_b=ObjectFeatures(mass=0.5),
            verb=Verb.STRIKE_WITH,
        )
        ghost = CandidateAction(
            Verb.STRIKE_WITH,
            target_id=9999,
            model_input=model_input,
            predicted=engine.model.predict(model_input),
        )
        monkeypatch.setattr(engine, "_select", lambda memory, held: ghost)

        result = engine.tick()
        assert result.verb is Verb.STRIKE_WITH
        assert result.prediction_error == 0.0
        assert engine.replay.size == 0
        assert 9999 not in engine._last_transformed
        assert 9999 not in engine._measurement_repeats

    def test_removed_objects_are_forgotten(self):
        engine = LiveModeEngine(LiveConfig(population_size=1))
        oid = next(oid for oid, o in engine.env.objects.items() if o.family is ObjectFamily.LOOSE)
        engine._last_transformed[oid] = 1
        engine._last_measured[oid] = 1
        engine._measurement_repeats[oid] = 4
        engine.env.get(oid).family = ObjectFamily.DEBRIS
        engine.env.remove_debris(1, protected=set())

        engine.tick()
        assert oid not in engine._last_transformed
        assert oid not in engine._last_measured
        assert oid not in engine._measurement_repeats


class TestMeasurementReward:
    """Tests for the repeated-measurement penalty."""

    def test_spam_series(self):
        engine = LiveModeEngine()
        series = engine.measurement_spam_series(object_id=1, repeats=14)
        expected = [0.02, 0.02, 0.02, -0.01, -0.02, -0.03, -0.04, -0.05, -0.06, -0.07, -0.08, -0.08, -0.08, -0.08]
        assert series == pytest.approx(expected)

    def test_useful_measurement_rewarded(self):
        engine = LiveModeEngine()
        reward, penalty = engine._measurement_reward(1, useful=True)
        assert reward == 0.12
        assert penalty == 0.0


class TestTrainChunk:
    """Tests for rate-limited training."""

    def test_empty_replay_collects(self):
        engine = LiveModeEngine()
        assert engine.train_chunk(TrainingConfig(), clock=FakeClock(0.001)) == 0
        assert engine.training.state is TrainingState.COLLECTING

    def test_trains_on_replay(self):
        engine = LiveModeEngine()
        fill_replay(engine)
        steps = engine.train_chunk(TrainingConfig(batch_size=8), clock=FakeClock(0.001))
        assert steps == 1
        assert engine.model.update_count == 8
        assert engine.training.state is TrainingState.TRAINING
        assert len(engine.embedding) > 0

    def test_prioritized_sampling(self):
        engine = LiveModeEngine()
        fill_replay(engine)
        config = TrainingConfig(batch_size=4, sampling="prioritized")
        assert engine.train_chunk(config, clock=FakeClock(0.001)) == 1
        assert engine.model.update_count == 4

    def test_chunk_budget(self):
        engine = LiveModeEngine()
        fill_replay(engine)
        config = TrainingConfig(batch_size=2, steps_per_tick=100, max_train_ms_per_second=5.0)
        steps = engine.train_chunk(config, clock=FakeClock(0.001))
        assert steps == 2
        assert engine.training.state is TrainingState.RATE_LIMITED

    def test_second_budget(self):
        engine = LiveModeEngine()
        fill_replay(engine)
        config = TrainingConfig(batch_size=2, max_train_ms_per_second=40.0)
        clock = FakeClock(0.05)
        assert engine.train_chunk(config, clock=clock) == 1
        assert engine.training.state is TrainingState.RATE_LIMITED
        assert engine.train_chunk(config, clock=clock) == 0

        # A new simulated second resets the budget
        engine.sim_time = 1.0
        assert engine.train_chunk(config, clock=clock) == 1

    def test_stopped_training_does_nothing(self):
        engine = LiveModeEngine()
        fill_replay(engine)
        engine.training.stop()
        assert engine.train_chunk(TrainingConfig(), clock=FakeClock(0.001)) == 0
        assert engine.model.update_count == 0

    def test_run_with_training(self):
        engine = LiveModeEngine(LiveConfig(seed=2))
        results = engine.run(40, TrainingConfig())
        assert len(results) == 40
        assert results[-1].training.replay_size == engine.replay.size


class TestBookmarks:
    """Tests for rolling-frame bookmarks."""

    def test_bookmark_and_replay(self):
        engine = LiveModeEngine()
        engine.run(10)
        mark = engine.bookmark("clip")
        assert mark.id == "clip-10"
        frames = engine.replay_bookmark("clip-10")
        assert [f.tick for f in frames] == list(range(1, 11))

        engine.run(5)
        assert len(engine.replay_bookmark("clip-10")) == 10

    def test_unknown_bookmark(self):
        assert LiveModeEngine().replay_bookmark("nope") == []

    def test_bookmarks_bounded(self):
        engine = LiveModeEngine()
        for _ in range(BOOKMARK_LIMIT + 4):
            engine.tick()
            engine.bookmark()
        assert len(engine.bookmarks) == BOOKMARK_LIMIT
        assert engine.bookmarks[0].tick == engine.tick_count

    def test_rolling_frames_bounded(self):
        engine = LiveModeEngine(LiveConfig(ticks_per_second=1, rolling_seconds=5))
        engine.run(12)
        assert len(engine.rolling_frames) == 5


class TestSnapshot:
    """Tests for create_snapshot."""

    def test_snapshot_keys(self):
        engine = LiveModeEngine()
        engine.run(20)
        snap = engine.create_snapshot()
        for key in ("seed", "tick", "sim_time", "metrics", "agents", "world",
                    "manufacturing", "model_state", "regime", "training"):
            assert key in snap
        assert snap["tick"] == 20
        assert set(snap["model_state"]) == {"outcome_model", "perception", "embedding"}

    def test_snapshot_is_json_safe(self):
        engine = LiveModeEngine()
        engine.run(30, TrainingConfig())
        snap = engine.create_snapshot()
        assert json.loads(json.dumps(snap)) == snap

    def test_snapshot_shares_nothing(self):
        engine = LiveModeEngine()
        engine.run(10)
        snap = engine.create_snapshot()
        snap["world"]["objects"].clear()
        snap["model_state"]["outcome_model"]["weights"][0][0] = 99.0
        assert engine.env.snapshot_objects() != []
        assert engine.model.weights[0, 0] != 99.0
