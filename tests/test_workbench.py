"""
Tests for environments/workbench.py
"""

import numpy as np
import pytest

from toolsmith.core.verbs import Verb
from toolsmith.environments.base import EnvAction, Metric, ObjectFamily
from toolsmith.environments.workbench import Workbench, WorkbenchConfig


def hold_first_loose(env):
    """Walk to the first loose object and pick it up."""
    tool_id = next(oid for oid, o in env.objects.items() if o.family is ObjectFamily.LOOSE)
    env.apply(EnvAction(Verb.MOVE_TO, object_id=tool_id))
    env.apply(EnvAction(Verb.PICK_UP, object_id=tool_id))
    return tool_id


def loose_neighbour(env, exclude):
    other_id = next(
        oid for oid, o in env.objects.items()
        if o.family is ObjectFamily.LOOSE and oid != exclude
    )
    env.get(other_id).position = env.agent_position.copy()
    return other_id


class TestWorkbenchSetup:
    """Tests for initial world generation."""

    def test_initial_population(self):
        env = Workbench(seed=42)
        families = [o.family for o in env.objects.values()]
        assert families.count(ObjectFamily.TARGET) == 1
        assert families.count(ObjectFamily.LOOSE) == 11
        assert env.held_object_id is None

    def test_same_seed_same_world(self):
        a = Workbench(seed=9)
        b = Workbench(seed=9)
        assert a.snapshot_objects() == b.snapshot_objects()

    def test_different_seed_different_world(self):
        a = Workbench(seed=9)
        b = Workbench(seed=10)
        assert a.snapshot_objects() != b.snapshot_objects()

    def test_every_verb_has_a_handler(self):
        env = Workbench()
        assert set(env._handlers) == set(Verb)


class TestWorkbenchActions:
    """Tests for action handling."""

    def test_unknown_object_is_a_no_op(self):
        env = Workbench(seed=1)
        before = env.snapshot_objects()
        for verb in (Verb.PICK_UP, Verb.STRIKE_WITH, Verb.GRIND, Verb.BIND_TO, Verb.MOVE_TO):
            env.apply(EnvAction(verb, object_id=9999))
            assert env.last_outcome is None
        assert env.snapshot_objects() == before
        assert env.held_object_id is None

    def test_move_to_clips_to_world(self):
        env = Workbench(seed=1)
        env.apply(EnvAction(Verb.MOVE_TO, destination=(50.0, -3.0)))
        np.testing.assert_array_equal(env.agent_position, [10.0, 0.0])

    def test_held_object_follows_agent(self):
        env = Workbench(seed=1)
        tool_id = hold_first_loose(env)
        env.apply(EnvAction(Verb.MOVE_TO, destination=(1.0, 1.0)))
        np.testing.assert_array_equal(env.get(tool_id).position, [1.0, 1.0])

    def test_drop_releases(self):
        env = Workbench(seed=1)
        hold_first_loose(env)
        env.apply(EnvAction(Verb.DROP))
        assert env.held_object_id is None

    def test_strike_reports_outcome(self):
        env = Workbench(seed=2)
        tool_id = hold_first_loose(env)
        target_id = env.best_target_id()
        integrity_before = env.get(target_id).integrity

        env.apply(EnvAction(Verb.STRIKE_WITH, object_id=target_id))
        outcome = env.last_outcome
        assert outcome is not None
        assert outcome.verb is Verb.STRIKE_WITH
        assert outcome.tool_id == tool_id
        assert outcome.target_id == target_id
        assert 0.0 <= outcome.damage <= 1.0
        assert env.get(target_id).integrity < integrity_before

    def test_repeated_strikes_yield_resource(self):
        env = Workbench(seed=2)
        hold_first_loose(env)
        for _ in range(200):
            if env.held_object_id is None:
                hold_first_loose(env)
            env.apply(EnvAction(Verb.STRIKE_WITH, object_id=env.best_target_id()))
            if env.resource_gained:
                break
        assert env.resource_gained >= 1
        assert env.best_target_id() is not None
        assert any(o.family is ObjectFamily.FRAGMENT for o in env.objects.values())

    def test_bind_creates_held_composite(self):
        env = Workbench(seed=3)
        tool_id = hold_first_loose(env)
        other_id = loose_neighbour(env, tool_id)

        env.apply(EnvAction(Verb.BIND_TO, object_id=other_id))
        composite = env.held_object()
        assert composite is not None
        assert composite.family is ObjectFamily.COMPOSITE
        assert composite.constituents == 2
        assert tool_id not in env.objects and other_id not in env.objects
        assert env.last_outcome.verb is Verb.BIND_TO
        assert 0.0 <= env.last_outcome.property_changes <= 1.0

    def test_grind_changes_planarity(self):
        env = Workbench(seed=4)
        tool_id = hold_first_loose(env)
        other_id = loose_neighbour(env, tool_id)
        env.get(tool_id).precision.surface_planarity = 0.2

        env.apply(EnvAction(Verb.GRIND, object_id=other_id, intensity=1.0))
        assert env.get(tool_id).precision.surface_planarity > 0.2
        assert env.last_outcome.property_changes > 0.0

    def test_grind_rejects_non_finite_intensity(self):
        env = Workbench(seed=4)
        tool_id = hold_first_loose(env)
        other_id = loose_neighbour(env, tool_id)
        env.apply(EnvAction(Verb.GRIND, object_id=other_id, intensity=float("nan")))
        assert env.last_outcome is None

    def test_heat_and_soak(self):
        env = Workbench(seed=5)
        tool_id = hold_first_loose(env)
        precision = env.get(tool_id).precision
        precision.microstructure_order = 0.3
        precision.impurity_level = 0.6

        env.apply(EnvAction(Verb.HEAT, intensity=1.0))
        env.apply(EnvAction(Verb.SOAK, intensity=1.0))
        assert precision.microstructure_order > 0.3
        assert precision.impurity_level < 0.6

    def test_anchor_creates_station(self):
        env = Workbench(seed=6)
        tool_id = hold_first_loose(env)
        env.apply(EnvAction(Verb.ANCHOR))
        assert env.station_count == 1
        assert env.station_ids() == [tool_id]
        assert env.held_object_id is None

        env.apply(EnvAction(Verb.PICK_UP, object_id=tool_id))
        assert env.held_object_id is None


class TestWorkbenchMeasurement:
    """Tests for instrument readings."""

    def test_missing_object(self):
        env = Workbench()
        assert env.measure(9999, Metric.SURFACE_PLANARITY) is None

    def test_exact_instruments(self):
        env = Workbench(config=WorkbenchConfig(measurement_noise=0.0))
        oid = env.object_ids()[0]
        truth = env.get(oid).precision.surface_planarity
        result = env.measure(oid, Metric.SURFACE_PLANARITY)
        assert result.value == pytest.approx(truth)
        assert result.sigma == 0.0

    def test_sigma_shrinks_with_samples(self):
        env = Workbench(seed=7)
        oid = env.object_ids()[0]
        first = env.measure(oid, Metric.IMPURITY_LEVEL)
        for _ in range(40):
            last = env.measure(oid, Metric.IMPURITY_LEVEL)
        assert first.sample_count == 1
        assert last.sample_count == 41
        assert last.sigma < first.sigma

    def test_instruments_keep_separate_statistics(self):
        env = Workbench(seed=7)
        oid = env.object_ids()[0]
        env.measure(oid, Metric.IMPURITY_LEVEL)
        env.measure(oid, Metric.IMPURITY_LEVEL)
        result = env.measure(oid, Metric.IMPURITY_LEVEL, instrument_id=3)
        assert result.sample_count == 1
        assert result.instrument_id == 3

    def test_measure_object_covers_all_metrics(self):
        env = Workbench()
        results = env.measure_object(env.object_ids()[0])
        assert {r.metric for r in results} == set(Metric)


class TestWorkbenchEcology:
    """Tests for world pressure."""

    def test_target_always_respawns(self):
        env = Workbench(seed=8)
        env.objects.pop(env.best_target_id())
        env.apply_pressure(spawn_probability=0.0)
        assert env.best_target_id() is not None

    def test_loose_material_replenished(self):
        env = Workbench(seed=8)
        before = len(env.objects)
        env.apply_pressure(spawn_probability=1.0)
        assert len(env.objects) >= before + 1

    def test_population_counts(self):
        env = Workbench(seed=8)
        state = env.population()
        assert state.targets_alive == 1
        assert state.objects_total == len(env.objects)
        assert state.fragments_total == 0


class TestMeasurementHistoryForgotten:
    """Removed objects take their measurement history with them."""

    def measured_ids(self, env):
        return {key[0] for key in env._measurements}

    def test_cleaned_debris(self):
        env = Workbench(seed=5)
        oid = next(oid for oid, o in env.objects.items() if o.family is ObjectFamily.LOOSE)
        env.get(oid).family = ObjectFamily.DEBRIS
        env.measure_object(oid)
        env.measure(oid, Metric.IMPURITY_LEVEL, instrument_id=2)
        assert oid in self.measured_ids(env)

        assert env.remove_debris(1, protected=set()) == 1
        assert oid not in env.objects
        assert oid not in self.measured_ids(env)

    def test_bound_parts(self):
        env = Workbench(seed=3)
        tool_id = hold_first_loose(env)
        other_id = loose_neighbour(env, tool_id)
        env.measure_object(tool_id)
        env.measure_object(other_id)
        kept_id = env.object_ids()[-1]
        env.measure_object(kept_id)

        env.apply(EnvAction(Verb.BIND_TO, object_id=other_id))
        measured = self.measured_ids(env)
        assert tool_id not in measured and other_id not in measured
        assert kept_id in measured

    def test_broken_target(self):
        env = Workbench(seed=2)
        hold_first_loose(env)
        target_id = env.best_target_id()
        env.measure_object(target_id)
        env.get(target_id).integrity = 0.001
        env.apply(EnvAction(Verb.STRIKE_WITH, object_id=target_id))
        assert target_id not in env.objects
        assert target_id not in self.measured_ids(env)
