"""
core/perception.py

Guessing what a thing is made of by looking at it.

Turns a world object into six noisy observation scalars and
estimates the hidden material properties behind them. The noise
shrinks as the agent gains hands-on experience.

Inspired by:
- Intuitive physics in infants
- Active touch and haptic exploration
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List
import math

import numpy as np

from toolsmith.environments.base import MaterialProps, WorldObject

from .world_model import ObjectFeatures, clamp01

SHAPE_ASYMMETRY = {"shard": 0.25, "rod": 0.1}
OBSERVATION_SIZE = 6
HIDDEN_SIZE = 3


@dataclass
class Observation:
    """What an agent sees and feels of one object, each in [0, 1]."""
    length: float
    mass_estimate: float
    symmetry: float
    contact_area: float
    texture: float
    feedback_history: float

    def as_array(self) -> np.ndarray:
        return np.array(
            [self.length, self.mass_estimate, self.symmetry,
             self.contact_area, self.texture, self.feedback_history],
            dtype=np.float64,
        )

    def to_features(self) -> ObjectFeatures:
        """Collapse into the outcome model's five-scalar view."""
        return ObjectFeatures(
            visual=(self.symmetry + self.contact_area) * 0.5,
            mass=self.mass_estimate,
            length=self.length,
            texture=self.texture,
            feedback_history=self.feedback_history,
        )

    def to_dict(self) -> Dict[str, float]:
        return dict(vars(self))


@dataclass
class HiddenEstimate:
    hardness: float
    brittleness: float
    sharpness: float
    uncertainty: float


class PerceptionHead:
    """
    Linear estimator from observations to hardness, brittleness and sharpness.

    Weights are drawn once at construction from a generator seeded
    independently of the world; every later draw (observation noise)
    comes from the caller's generator.
    """

    def __init__(self, seed: int = 123):
        init_rng = np.random.default_rng(seed)
        self.weights = init_rng.uniform(-0.1, 0.1, size=(HIDDEN_SIZE, OBSERVATION_SIZE))
        self.bias = np.zeros(HIDDEN_SIZE)
        self.experience = 0

    def noise_scale(self) -> float:
        return max(0.02, 0.15 / math.sqrt(self.experience + 1))

    def observe(self, obj: WorldObject, rng: np.random.Generator) -> Observation:
        noise = self.noise_scale()
        max_offset = max(0.1, obj.length * 0.5 + obj.thickness * 0.5)
        offset = float(np.hypot(obj.com_offset[0], obj.com_offset[1]))
        asymmetry = SHAPE_ASYMMETRY.get(obj.shape, 0.05)
        return Observation(
            length=clamp01(obj.length / 2.2 + rng.normal(0, noise * 0.8)),
            mass_estimate=clamp01(obj.props.mass * 0.8 + obj.thickness * 0.2 + rng.normal(0, noise)),
            symmetry=clamp01(1 - offset / max_offset - asymmetry + rng.normal(0, noise * 0.7)),
            contact_area=clamp01(
                (obj.length * obj.thickness + math.pi * obj.radius ** 2) / 3 + rng.normal(0, noise)
            ),
            texture=clamp01(
                obj.props.roughness * 0.7 + obj.props.friction * 0.3 + rng.normal(0, noise * 0.5)
            ),
            feedback_history=clamp01(self.experience / (self.experience + 12)),
        )

    def predict(self, obs: Observation) -> HiddenEstimate:
        out = np.clip(self.weights @ obs.as_array() + self.bias, 0.0, 1.0)
        return HiddenEstimate(
            hardness=float(out[0]),
            brittleness=float(out[1]),
            sharpness=float(out[2]),
            uncertainty=1.0 / math.sqrt(self.experience + 1),
        )

    def train(self, obs: Observation, truth: MaterialProps, outcome_signal: float, lr: float = 0.08) -> None:
        """One step toward the true properties, faster when the outcome mattered."""
        x = obs.as_array()
        y = np.array([truth.hardness, truth.brittleness, truth.sharpness])
        estimate = self.predict(obs)
        predicted = np.array([estimate.hardness, estimate.brittleness, estimate.sharpness])
        scaled_lr = lr * (0.3 + clamp01(outcome_signal) * 0.7)

        error = predicted - y
        self.weights -= scaled_lr * np.outer(error, x)
        self.bias -= scaled_lr * error
        self.experience += 1

    def desirability(self, obj: WorldObject, rng: np.random.Generator) -> float:
        """How promising an object looks as a tool."""
        obs = self.observe(obj, rng)
        hidden = self.predict(obs)
        return (
            hidden.hardness * 0.25
            + obs.length * obs.mass_estimate * (1.2 - obs.symmetry)
            + obs.contact_area * 0.1
        )

    def hardness_error(self, objects: List[WorldObject], rng: np.random.Generator) -> float:
        if not objects:
            return 0.0
        errors = [abs(self.predict(self.observe(o, rng)).hardness - o.props.hardness) for o in objects]
        return float(np.mean(errors))

    def snapshot(self) -> Dict[str, Any]:
        return {
            "weights": self.weights.tolist(),
            "bias": self.bias.tolist(),
            "experience": self.experience,
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "PerceptionHead":
        head = cls()
        weights = np.array(data["weights"], dtype=np.float64)
        if weights.shape != (HIDDEN_SIZE, OBSERVATION_SIZE):
            raise ValueError(f"Perception snapshot has wrong shape: {weights.shape}")
        head.weights = weights
        head.bias = np.array(data["bias"], dtype=np.float64)
        head.experience = int(data.get("experience", 0))
        return head

    def __repr__(self) -> str:
        return f"PerceptionHead(experience={self.experience}, noise={self.noise_scale():.3f})"
