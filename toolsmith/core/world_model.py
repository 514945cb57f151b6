"""
core/world_model.py

What will happen if I do this?

A fixed-shape linear regressor from a pair of perceived objects
and a verb to an expected outcome. Learning is online, one sample
at a time. Rarely visited situations learn faster; familiar ones
settle.

Inspired by:
- Forward models in motor control
- Count-based exploration bonuses
- Rescorla-Wagner prediction-error learning
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple
import numpy as np

from .verbs import MODEL_VERBS, Verb


FEATURE_SIZE = 15
OUTPUT_SIZE = 4
QUANT_LEVELS = 6

NoveltyKey = Tuple[str, int, int, int]


def clamp01(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


@dataclass
class ObjectFeatures:
    """Five perceptual scalars describing one participant object."""
    visual: float = 0.0
    mass: float = 0.0
    length: float = 0.0
    texture: float = 0.0
    feedback_history: float = 0.0

    def __post_init__(self):
        self.visual = clamp01(self.visual)
        self.mass = clamp01(self.mass)
        self.length = clamp01(self.length)
        self.texture = clamp01(self.texture)
        self.feedback_history = clamp01(self.feedback_history)

    def as_list(self) -> List[float]:
        return [self.visual, self.mass, self.length, self.texture, self.feedback_history]


@dataclass
class FeatureInput:
    """
    The model's view of one candidate interaction.

    Two objects, a geometry scalar, a relative-position scalar
    and the verb. Scalars are clamped into [0, 1] on construction.
    """
    object_a: ObjectFeatures
    object_b: ObjectFeatures
    verb: Verb
    geometry: float = 0.0
    relative_position: float = 0.0

    def __post_init__(self):
        if self.verb not in MODEL_VERBS:
            raise ValueError(f"Verb {self.verb} is not encoded by the outcome model")
        self.geometry = clamp01(self.geometry)
        self.relative_position = clamp01(self.relative_position)

    def one_hot(self) -> List[float]:
        return [1.0 if self.verb is v else 0.0 for v in MODEL_VERBS]

    def to_vector(self) -> np.ndarray:
        return np.array(
            self.object_a.as_list()
            + self.object_b.as_list()
            + [self.geometry, self.relative_position]
            + self.one_hot(),
            dtype=np.float64,
        )

    def novelty_key(self) -> NoveltyKey:
        """Coarse bucket: verb plus quantized masses and geometry."""
        def q(v: float) -> int:
            return int(round(clamp01(v) * QUANT_LEVELS))
        return (self.verb.value, q(self.object_a.mass), q(self.object_b.mass), q(self.geometry))


@dataclass
class Outcome:
    """Four non-negative outcome magnitudes, predicted or observed."""
    damage: float = 0.0
    tool_wear: float = 0.0
    fragments: float = 0.0
    property_changes: float = 0.0

    def to_array(self) -> np.ndarray:
        return np.array(
            [self.damage, self.tool_wear, self.fragments, self.property_changes],
            dtype=np.float64,
        )

    @classmethod
    def from_array(cls, values: np.ndarray) -> "Outcome":
        v = np.maximum(0.0, np.asarray(values, dtype=np.float64))
        return cls(float(v[0]), float(v[1]), float(v[2]), float(v[3]))

    def to_dict(self) -> Dict[str, float]:
        return {
            "damage": self.damage,
            "tool_wear": self.tool_wear,
            "fragments": self.fragments,
            "property_changes": self.property_changes,
        }


class OutcomeModel:
    """
    Online linear outcome predictor with a visitation-count novelty signal.

    One weight row per outcome coordinate. Predictions are
    ReLU-clamped; there are no negative outcomes.

    When frozen, update() still measures and records error but
    leaves weights and visit counts untouched, so predictions stop
    improving while they keep being queried.
    """

    def __init__(self):
        self.weights = np.zeros((OUTPUT_SIZE, FEATURE_SIZE), dtype=np.float64)
        self.bias = np.zeros(OUTPUT_SIZE, dtype=np.float64)
        self._visits: Dict[NoveltyKey, int] = {}
        self._running_error = 0.0
        self._updates = 0
        self._frozen = False

    # ==================== Queries ====================

    def _predict_vector(self, x: np.ndarray) -> np.ndarray:
        return np.maximum(0.0, self.weights @ x + self.bias)

    def predict(self, feature_input: FeatureInput) -> Outcome:
        return Outcome.from_array(self._predict_vector(feature_input.to_vector()))

    def visits(self, feature_input: FeatureInput) -> int:
        return self._visits.get(feature_input.novelty_key(), 0)

    def novelty(self, feature_input: FeatureInput) -> float:
        """1/sqrt(visits+1); an unseen bucket gives 1."""
        return float(1.0 / np.sqrt(self.visits(feature_input) + 1))

    def mean_prediction_error(self) -> float:
        return self._running_error

    @property
    def update_count(self) -> int:
        return self._updates

    @property
    def frozen(self) -> bool:
        return self._frozen

    def set_frozen(self, frozen: bool) -> None:
        self._frozen = bool(frozen)

    # ==================== Learning ====================

    def update(self, feature_input: FeatureInput, actual: Outcome, lr: float = 0.12) -> float:
        """
        One gradient step toward the observed outcome.

        Returns the mean absolute error of the prediction made
        before the step.
        """
        x = feature_input.to_vector()
        predicted = self._predict_vector(x)
        target = actual.to_array()
        prediction_error = float(np.mean(np.abs(target - predicted)))
        scaled_lr = lr * (0.4 + 0.6 * self.novelty(feature_input))

        if not self._frozen:
            diff = target - predicted
            self.weights += scaled_lr * np.outer(diff, x)
            self.bias += scaled_lr * diff
            key = feature_input.novelty_key()
            self._visits[key] = self._visits.get(key, 0) + 1

        self._updates += 1
        self._running_error += (prediction_error - self._running_error) / self._updates
        return prediction_error

    # ==================== Persistence ====================

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy of the learned state, JSON-safe."""
        return {
            "weights": self.weights.tolist(),
            "bias": self.bias.tolist(),
            "visits": [[*key, count] for key, count in self._visits.items()],
            "running_error": self._running_error,
            "updates": self._updates,
            "frozen": self._frozen,
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "OutcomeModel":
        model = cls()
        weights = np.array(data["weights"], dtype=np.float64)
        bias = np.array(data["bias"], dtype=np.float64)
        if weights.shape != (OUTPUT_SIZE, FEATURE_SIZE) or bias.shape != (OUTPUT_SIZE,):
            raise ValueError(f"Outcome model snapshot has wrong shape: {weights.shape}, {bias.shape}")
        model.weights = weights
        model.bias = bias
        model._visits = {
            (str(v), int(a), int(b), int(g)): int(count)
            for v, a, b, g, count in data.get("visits", [])
        }
        model._running_error = float(data.get("running_error", 0.0))
        model._updates = int(data.get("updates", 0))
        model._frozen = bool(data.get("frozen", False))
        return model

    def __repr__(self) -> str:
        return (
            f"OutcomeModel(updates={self._updates}, "
            f"buckets={len(self._visits)}, "
            f"mean_error={self._running_error:.3f}, "
            f"frozen={self._frozen})"
        )
