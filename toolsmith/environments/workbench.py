"""
environments/workbench.py

A small table of sticks, stones and one stubborn target.

The reference environment for the live loop. Its physics are
plain on purpose: enough structure for a linear model to find,
enough noise that it never finds all of it.

Inspired by:
- Primate tool-use experiments
- Materials bench testing
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import logging
import math

import numpy as np

from toolsmith.control.population import PopulationState
from toolsmith.core.verbs import Verb
from toolsmith.core.world_model import Outcome

from .base import (
    DEBRIS_FAMILIES,
    EnvAction,
    InteractionOutcome,
    MaterialProps,
    MeasurementResult,
    Metric,
    ObjectFamily,
    PrecisionState,
    WorldObject,
)

logger = logging.getLogger(__name__)

SHAPES = ("sphere", "rod", "shard", "plate")
SHAPE_THRESHOLDS = (0.28, 0.62, 0.82)

MEASUREMENT_SIGMA = {
    Metric.SURFACE_PLANARITY: 0.05,
    Metric.MICROSTRUCTURE_ORDER: 0.07,
    Metric.IMPURITY_LEVEL: 0.08,
}

MeasurementKey = Tuple[int, Metric, Optional[int]]


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return float(min(high, max(low, value)))


@dataclass
class WorkbenchConfig:
    """Configuration for the reference workbench."""
    size: float = 10.0
    initial_objects: int = 10
    reach: float = 2.5
    min_loose_objects: int = 18
    target_spawn_chance: float = 0.01
    measurement_noise: float = 1.0        # scales instrument sigma; 0 = exact
    debris_decay: float = 0.002           # integrity lost per tick by debris


@dataclass
class _RunningStats:
    count: int = 0
    mean: float = 0.0
    m2: float = 0.0

    def push(self, sample: float) -> None:
        self.count += 1
        delta = sample - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (sample - self.mean)


class Workbench:
    """
    2D tabletop environment implementing the Environment surface.

    Owns the single seeded random stream; the decision loop draws
    from env.rng too, so a run is reproducible from its seed.
    """

    def __init__(self, seed: int = 42, config: Optional[WorkbenchConfig] = None):
        self.config = config or WorkbenchConfig()
        self.seed = seed
        self.rng = np.random.default_rng(seed)
        self.objects: Dict[int, WorldObject] = {}
        self.agent_position = np.array([self.config.size / 2, self.config.size / 2])
        self.held_object_id: Optional[int] = None
        self.last_outcome: Optional[InteractionOutcome] = None
        self.resource_gained = 0
        self.logs: List[str] = []
        self._next_id = 1
        self._measurements: Dict[MeasurementKey, _RunningStats] = {}
        self._handlers: Dict[Verb, Callable[[EnvAction], None]] = {
            Verb.MOVE_TO: self._move_to,
            Verb.PICK_UP: self._pick_up,
            Verb.DROP: self._drop,
            Verb.BIND_TO: self._bind_to,
            Verb.STRIKE_WITH: self._strike_with,
            Verb.GRIND: self._grind,
            Verb.HEAT: self._heat,
            Verb.SOAK: self._soak,
            Verb.ANCHOR: self._anchor,
            Verb.CONTROL: self._noop,
            Verb.REST: self._noop,
        }
        self._populate()

    # ==================== Spawning ====================

    def _populate(self) -> None:
        center = self.config.size / 2
        for _ in range(self.config.initial_objects):
            self.spawn_loose_object()
        self._add(WorldObject(
            id=0,
            position=self.rng.uniform(center - 0.8, center + 0.8, size=2),
            shape="rod",
            length=1.9,
            thickness=0.22,
            radius=0.22,
            com_offset=np.array([0.08, 0.0]),
            integrity=0.94,
            props=self._sample_props(),
            family=ObjectFamily.LOOSE,
        ))
        self.spawn_target()

    def _add(self, obj: WorldObject) -> int:
        obj.id = self._next_id
        self._next_id += 1
        self.objects[obj.id] = obj
        return obj.id

    def _discard(self, object_id: int) -> None:
        """Remove an object along with its measurement history."""
        self.objects.pop(object_id, None)
        for key in [k for k in self._measurements if k[0] == object_id]:
            del self._measurements[key]

    def _sample_shape(self) -> str:
        roll = self.rng.random()
        for shape, threshold in zip(SHAPES, SHAPE_THRESHOLDS):
            if roll < threshold:
                return shape
        return SHAPES[-1]

    def _sample_props(self) -> MaterialProps:
        values = self.rng.uniform(0.1, 0.9, size=7)
        return MaterialProps(*[float(v) for v in values])

    def spawn_loose_object(self) -> int:
        center = self.config.size / 2
        return self._add(WorldObject(
            id=0,
            position=self.rng.uniform(center - 1.5, center + 1.5, size=2),
            shape=self._sample_shape(),
            length=float(self.rng.uniform(0.2, 2.0)),
            thickness=float(self.rng.uniform(0.12, 0.45)),
            radius=float(self.rng.uniform(0.12, 0.34)),
            com_offset=self.rng.normal(0.0, [0.08, 0.04]),
            integrity=float(self.rng.uniform(0.55, 1.0)),
            props=self._sample_props(),
            precision=PrecisionState(*[float(v) for v in self.rng.uniform(0.3, 0.7, size=3)]),
        ))

    def spawn_target(self) -> int:
        center = self.config.size / 2
        props = MaterialProps(
            mass=float(self.rng.uniform(0.5, 0.8)),
            hardness=float(self.rng.uniform(0.3, 0.5)),
            brittleness=float(self.rng.uniform(0.2, 0.5)),
            sharpness=0.1,
            roughness=float(self.rng.uniform(0.5, 0.8)),
            friction=0.6,
            toughness=float(self.rng.uniform(0.6, 0.9)),
        )
        return self._add(WorldObject(
            id=0,
            position=self.rng.uniform(center - 0.6, center + 0.6, size=2),
            shape="plate",
            length=float(self.rng.uniform(1.2, 1.8)),
            thickness=float(self.rng.uniform(0.3, 0.55)),
            radius=0.42,
            com_offset=self.rng.normal(0.0, 0.04, size=2),
            integrity=1.0,
            props=props,
            family=ObjectFamily.TARGET,
        ))

    # ==================== Queries ====================

    def get(self, object_id: Optional[int]) -> Optional[WorldObject]:
        if object_id is None:
            return None
        return self.objects.get(object_id)

    def object_ids(self) -> List[int]:
        return list(self.objects.keys())

    def held_object(self) -> Optional[WorldObject]:
        return self.get(self.held_object_id)

    def nearby_object_ids(self, radius: Optional[float] = None) -> List[int]:
        radius = self.config.reach if radius is None else radius
        return [
            oid for oid, obj in self.objects.items()
            if float(np.linalg.norm(obj.position - self.agent_position)) <= radius
        ]

    def best_target_id(self) -> Optional[int]:
        best: Optional[Tuple[float, int]] = None
        for obj in self.objects.values():
            if obj.family is not ObjectFamily.TARGET:
                continue
            score = obj.props.toughness * obj.integrity
            if best is None or score > best[0]:
                best = (score, obj.id)
        return best[1] if best else None

    @property
    def station_count(self) -> int:
        return sum(1 for obj in self.objects.values() if obj.anchored)

    def station_ids(self) -> List[int]:
        return [oid for oid, obj in self.objects.items() if obj.anchored]

    def population(self) -> PopulationState:
        targets = sum(1 for o in self.objects.values() if o.family is ObjectFamily.TARGET)
        fragments = sum(1 for o in self.objects.values() if o.family in DEBRIS_FAMILIES)
        return PopulationState(
            targets_alive=targets,
            objects_total=len(self.objects),
            fragments_total=fragments,
        )

    # ==================== Actions ====================

    def apply(self, action: EnvAction) -> None:
        """Apply one action. Unresolvable references are silent no-ops."""
        self.last_outcome = None
        self._handlers[action.verb](action)

    def _noop(self, action: EnvAction) -> None:
        pass

    def _move_to(self, action: EnvAction) -> None:
        if action.destination is not None:
            destination = np.asarray(action.destination, dtype=np.float64)
        else:
            obj = self.get(action.object_id)
            if obj is None:
                return
            destination = obj.position.copy()
        if not np.all(np.isfinite(destination)):
            return
        self.agent_position = np.clip(destination, 0.0, self.config.size)
        held = self.held_object()
        if held is not None:
            held.position = self.agent_position.copy()

    def _pick_up(self, action: EnvAction) -> None:
        obj = self.get(action.object_id)
        if obj is None or obj.anchored:
            return
        self.held_object_id = obj.id
        obj.position = self.agent_position.copy()

    def _drop(self, action: EnvAction) -> None:
        held = self.held_object()
        self.held_object_id = None
        if held is not None:
            held.position = self.agent_position + self.rng.normal(0.0, 0.1, size=2)

    def _pair(self, other_id: Optional[int]) -> Optional[Tuple[WorldObject, WorldObject]]:
        held = self.held_object()
        other = self.get(other_id)
        if held is None or other is None or held.id == other.id:
            return None
        return held, other

    def _strike_with(self, action: EnvAction) -> None:
        pair = self._pair(action.object_id)
        if pair is None:
            return
        tool, target = pair
        p = tool.props
        impact = p.mass * 0.45 + p.hardness * 0.3 + p.sharpness * 0.25
        resistance = 0.6 + target.props.toughness * 0.4 - target.props.brittleness * 0.3
        noise = float(self.rng.normal(1.0, 0.06))
        damage = clamp(impact / max(0.2, resistance) * 0.35 * tool.integrity * noise)
        wear = clamp(damage * (1.0 - p.hardness) * 0.25 + p.brittleness * 0.02)
        integrity_before = target.integrity

        target.integrity = clamp(target.integrity - damage * 0.45)
        tool.integrity = clamp(tool.integrity - wear)

        fragment_ids: List[int] = []
        if target.integrity <= 0.0:
            count = 2 + int(self.rng.integers(0, 3))
            for _ in range(count):
                fragment_ids.append(self._spawn_fragment(target))
            self._discard(target.id)
            self.resource_gained += 1
            self.spawn_target()
            self._log(f"STRIKE {tool.id} -> target {target.id} dmg={damage:.2f} resource+1")
        else:
            self._log(f"STRIKE {tool.id} -> target {target.id} dmg={damage:.2f}")

        if tool.integrity <= 0.0:
            self._shatter_held(tool)

        self.last_outcome = InteractionOutcome(
            verb=Verb.STRIKE_WITH,
            tool_id=tool.id,
            target_id=target.id,
            outcome=Outcome(
                damage=damage,
                tool_wear=wear,
                fragments=float(len(fragment_ids)),
                property_changes=abs(integrity_before - target.integrity),
            ),
        )

    def _spawn_fragment(self, parent: WorldObject) -> int:
        jitter = self.rng.normal(0.0, 0.25, size=2)
        props = MaterialProps(**{
            k: clamp(v + float(self.rng.normal(0.0, 0.05))) for k, v in vars(parent.props).items()
        })
        props.mass = clamp(props.mass * 0.3)
        return self._add(WorldObject(
            id=0,
            position=np.clip(parent.position + jitter, 0.0, self.config.size),
            shape="shard",
            length=clamp(parent.length * float(self.rng.uniform(0.15, 0.4)), 0.05, 2.5),
            thickness=clamp(parent.thickness * 0.5, 0.05, 1.0),
            radius=0.08,
            integrity=float(self.rng.uniform(0.2, 0.6)),
            props=props,
            family=ObjectFamily.FRAGMENT,
        ))

    def _shatter_held(self, tool: WorldObject) -> None:
        self.held_object_id = None
        tool.family = ObjectFamily.DEBRIS
        tool.integrity = 0.0
        self._log(f"TOOL {tool.id} shattered")

    def _grind(self, action: EnvAction) -> None:
        pair = self._pair(action.object_id)
        if pair is None:
            return
        held, abrasive = pair
        intensity = action.intensity
        if not math.isfinite(intensity):
            return
        intensity = clamp(intensity)
        grit = abrasive.props.roughness * 0.6 + abrasive.props.hardness * 0.4
        sharpness_before = held.props.sharpness
        planarity_before = held.precision.surface_planarity

        held.props.sharpness = clamp(sharpness_before + grit * 0.15 * intensity * (1 - sharpness_before))
        goal = clamp(0.25 + 0.75 * intensity * (0.6 + 0.4 * grit))
        held.precision.set(
            Metric.SURFACE_PLANARITY, planarity_before + 0.6 * (goal - planarity_before)
        )
        wear = clamp(grit * 0.08 * intensity * (1 - held.props.hardness * 0.5))
        held.integrity = clamp(held.integrity - wear)
        abrasive.integrity = clamp(abrasive.integrity - wear * 0.5)

        self.last_outcome = InteractionOutcome(
            verb=Verb.GRIND,
            tool_id=held.id,
            target_id=abrasive.id,
            outcome=Outcome(
                damage=0.0,
                tool_wear=wear,
                fragments=0.0,
                property_changes=abs(held.props.sharpness - sharpness_before)
                + abs(held.precision.surface_planarity - planarity_before),
            ),
        )

    def _bind_to(self, action: EnvAction) -> None:
        pair = self._pair(action.object_id)
        if pair is None:
            return
        held, other = pair
        if other.anchored:
            return
        friction = (held.props.friction + other.props.friction) / 2
        fit = 1.0 - abs(held.thickness - other.thickness) / max(held.thickness, other.thickness)
        quality = clamp(friction * 0.5 + fit * 0.4 + float(self.rng.normal(0.0, 0.05)))

        a, b = vars(held.props), vars(other.props)
        props = MaterialProps(**{k: clamp((a[k] + b[k]) / 2) for k in a})
        props.mass = clamp(held.props.mass + other.props.mass * 0.6)
        longer, shorter = (held, other) if held.length >= other.length else (other, held)
        composite = WorldObject(
            id=0,
            position=self.agent_position.copy(),
            shape="rod",
            length=clamp(longer.length + shorter.length * 0.5, 0.1, 3.0),
            thickness=max(held.thickness, other.thickness),
            radius=max(held.radius, other.radius),
            com_offset=(held.com_offset + other.com_offset) / 2,
            integrity=clamp(min(held.integrity, other.integrity) * (0.5 + 0.5 * quality)),
            props=props,
            precision=PrecisionState(
                surface_planarity=min(held.precision.surface_planarity, other.precision.surface_planarity),
                microstructure_order=(held.precision.microstructure_order + other.precision.microstructure_order) / 2,
                impurity_level=max(held.precision.impurity_level, other.precision.impurity_level),
            ),
            family=ObjectFamily.COMPOSITE,
            constituents=held.constituents + other.constituents,
        )
        self._discard(held.id)
        self._discard(other.id)
        composite_id = self._add(composite)
        self.held_object_id = composite_id
        self._log(f"BIND {held.id}+{other.id} -> {composite_id} (q={quality:.2f})")

        self.last_outcome = InteractionOutcome(
            verb=Verb.BIND_TO,
            tool_id=composite_id,
            target_id=other.id,
            outcome=Outcome(
                damage=0.0,
                tool_wear=max(0.0, 1.0 - composite.integrity),
                fragments=0.0,
                property_changes=quality,
            ),
        )

    def _thermal(self, action: EnvAction, metric: Metric, goal_fn: Callable[[float], float]) -> None:
        held = self.held_object()
        if held is None or not math.isfinite(action.intensity):
            return
        intensity = clamp(action.intensity)
        before = held.precision.get(metric)
        held.precision.set(metric, before + 0.6 * (goal_fn(intensity) - before))
        if metric is Metric.MICROSTRUCTURE_ORDER:
            held.props.brittleness = clamp(held.props.brittleness + 0.02 * intensity - 0.01)

    def _heat(self, action: EnvAction) -> None:
        self._thermal(action, Metric.MICROSTRUCTURE_ORDER, lambda i: 0.3 + 0.65 * i)

    def _soak(self, action: EnvAction) -> None:
        self._thermal(action, Metric.IMPURITY_LEVEL, lambda i: 0.65 - 0.6 * i)

    def _anchor(self, action: EnvAction) -> None:
        held = self.held_object()
        if held is None:
            return
        held.anchored = True
        held.position = self.agent_position.copy()
        self.held_object_id = None
        self._log(f"ANCHOR {held.id} as station")

    # ==================== Measurement ====================

    def measure(
        self,
        object_id: int,
        metric: Metric,
        instrument_id: Optional[int] = None,
    ) -> Optional[MeasurementResult]:
        obj = self.get(object_id)
        if obj is None:
            return None
        sigma = MEASUREMENT_SIGMA[metric] * self.config.measurement_noise
        noise = float(self.rng.normal(0.0, sigma)) if sigma > 0 else 0.0
        value = clamp(obj.precision.get(metric) + noise)

        key = (object_id, metric, instrument_id)
        stats = self._measurements.setdefault(key, _RunningStats())
        stats.push(value)
        variance = stats.m2 / (stats.count - 1) if stats.count > 1 else sigma ** 2
        return MeasurementResult(
            metric=metric,
            object_id=object_id,
            value=value,
            sigma=math.sqrt(variance / stats.count),
            sample_count=stats.count,
            instrument_id=instrument_id,
        )

    def measure_object(self, object_id: int) -> List[MeasurementResult]:
        results = [self.measure(object_id, metric) for metric in Metric]
        return [r for r in results if r is not None]

    # ==================== Ecology ====================

    def apply_pressure(self, spawn_probability: float) -> None:
        """Decay debris, keep loose material and targets available."""
        for obj in self.objects.values():
            if obj.family in DEBRIS_FAMILIES and obj.id != self.held_object_id:
                obj.integrity = clamp(obj.integrity - self.config.debris_decay)

        loose = sum(1 for o in self.objects.values() if o.family is not ObjectFamily.TARGET)
        if loose < self.config.min_loose_objects and self.rng.random() < spawn_probability:
            self.spawn_loose_object()
        if self.best_target_id() is None:
            self.spawn_target()
        elif self.rng.random() < self.config.target_spawn_chance * spawn_probability:
            self.spawn_target()

    def remove_debris(self, count: int, protected: Set[int]) -> int:
        """Remove up to count fragment/debris objects, weakest first."""
        if count <= 0:
            return 0
        removable = sorted(
            (o for o in self.objects.values()
             if o.family in DEBRIS_FAMILIES and o.id not in protected and o.id != self.held_object_id),
            key=lambda o: (o.integrity, o.id),
        )
        removed = 0
        for obj in removable[:count]:
            self._discard(obj.id)
            removed += 1
        return removed

    # ==================== Bookkeeping ====================

    def _log(self, message: str) -> None:
        self.logs.insert(0, message)
        del self.logs[200:]
        logger.debug(message)

    def snapshot_objects(self) -> List[Dict[str, Any]]:
        return [obj.to_dict() for obj in self.objects.values()]

    def __repr__(self) -> str:
        return (
            f"Workbench(objects={len(self.objects)}, "
            f"held={self.held_object_id}, "
            f"stations={self.station_count}, "
            f"resource={self.resource_gained})"
        )
