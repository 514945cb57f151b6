"""
environments/base.py

The world, seen through a keyhole.

The decision loop never computes physics. It hands an action to
an environment and reads back a handful of numbers. This module
names that keyhole: the objects, the actions, the outcomes and
the measurements that cross it.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Set, Tuple
import numpy as np

from toolsmith.core.verbs import Verb
from toolsmith.core.world_model import Outcome

if TYPE_CHECKING:
    from toolsmith.control.population import PopulationState


class ObjectFamily(Enum):
    """Coarse provenance of an object; governs what may be cleaned up."""
    LOOSE = "loose"
    TARGET = "target"
    FRAGMENT = "fragment"
    DEBRIS = "debris"
    COMPOSITE = "composite"


DEBRIS_FAMILIES = (ObjectFamily.FRAGMENT, ObjectFamily.DEBRIS)


class Metric(Enum):
    """Latent precision quantities an instrument can measure."""
    SURFACE_PLANARITY = "surface_planarity"
    MICROSTRUCTURE_ORDER = "microstructure_order"
    IMPURITY_LEVEL = "impurity_level"


@dataclass
class MaterialProps:
    """Continuous material properties, each in [0, 1]."""
    mass: float = 0.5
    hardness: float = 0.5
    brittleness: float = 0.5
    sharpness: float = 0.5
    roughness: float = 0.5
    friction: float = 0.5
    toughness: float = 0.5


@dataclass
class PrecisionState:
    """Hidden manufacturing quality of an object."""
    surface_planarity: float = 0.5
    microstructure_order: float = 0.5
    impurity_level: float = 0.5

    def get(self, metric: Metric) -> float:
        return float(getattr(self, metric.value))

    def set(self, metric: Metric, value: float) -> None:
        setattr(self, metric.value, float(min(1.0, max(0.0, value))))

    def score(self) -> float:
        """Mean precision; impurity counts against."""
        return (self.surface_planarity + self.microstructure_order + (1 - self.impurity_level)) / 3


@dataclass
class WorldObject:
    """A physical thing in the world."""
    id: int
    position: np.ndarray
    shape: str = "rod"                    # sphere | rod | shard | plate
    length: float = 1.0
    thickness: float = 0.2
    radius: float = 0.2
    com_offset: np.ndarray = field(default_factory=lambda: np.zeros(2))
    integrity: float = 1.0
    props: MaterialProps = field(default_factory=MaterialProps)
    precision: PrecisionState = field(default_factory=PrecisionState)
    family: ObjectFamily = ObjectFamily.LOOSE
    anchored: bool = False
    constituents: int = 1

    def __post_init__(self):
        self.position = np.asarray(self.position, dtype=np.float64)
        self.com_offset = np.asarray(self.com_offset, dtype=np.float64)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "position": self.position.tolist(),
            "shape": self.shape,
            "length": self.length,
            "thickness": self.thickness,
            "radius": self.radius,
            "com_offset": self.com_offset.tolist(),
            "integrity": self.integrity,
            "props": dict(vars(self.props)),
            "precision": dict(vars(self.precision)),
            "family": self.family.value,
            "anchored": self.anchored,
            "constituents": self.constituents,
        }


@dataclass
class EnvAction:
    """An action handed to the environment."""
    verb: Verb
    object_id: Optional[int] = None
    intensity: float = 0.5
    destination: Optional[Tuple[float, float]] = None


@dataclass
class InteractionOutcome:
    """What a tool interaction did, as reported by the environment."""
    verb: Verb
    outcome: Outcome
    tool_id: Optional[int] = None
    target_id: Optional[int] = None

    @property
    def damage(self) -> float:
        return self.outcome.damage

    @property
    def tool_wear(self) -> float:
        return self.outcome.tool_wear

    @property
    def fragments(self) -> float:
        return self.outcome.fragments

    @property
    def property_changes(self) -> float:
        return self.outcome.property_changes


@dataclass
class MeasurementResult:
    """A noisy instrument reading with its running uncertainty."""
    metric: Metric
    object_id: int
    value: float
    sigma: float
    sample_count: int
    instrument_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric.value,
            "object_id": self.object_id,
            "value": self.value,
            "sigma": self.sigma,
            "sample_count": self.sample_count,
            "instrument_id": self.instrument_id,
        }


class Environment(Protocol):
    """
    Capability surface the decision loop consumes.

    Missing object references are silent no-ops: apply() leaves
    last_outcome as None and changes nothing.
    """

    rng: np.random.Generator
    last_outcome: Optional[InteractionOutcome]
    held_object_id: Optional[int]
    agent_position: np.ndarray
    resource_gained: int

    @property
    def station_count(self) -> int: ...

    def get(self, object_id: int) -> Optional[WorldObject]: ...

    def object_ids(self) -> List[int]: ...

    def nearby_object_ids(self, radius: float = 2.5) -> List[int]: ...

    def best_target_id(self) -> Optional[int]: ...

    def apply(self, action: EnvAction) -> None: ...

    def measure(
        self,
        object_id: int,
        metric: Metric,
        instrument_id: Optional[int] = None,
    ) -> Optional[MeasurementResult]: ...

    def measure_object(self, object_id: int) -> List[MeasurementResult]: ...

    def apply_pressure(self, spawn_probability: float) -> None: ...

    def population(self) -> PopulationState: ...

    def remove_debris(self, count: int, protected: Set[int]) -> int: ...

    def snapshot_objects(self) -> List[Dict[str, Any]]: ...
