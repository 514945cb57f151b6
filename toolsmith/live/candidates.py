"""
live/candidates.py

What could I do right now, and how much do I want to?

Per-tick candidate actions and the curiosity + utility score that
ranks them. Candidates are built fresh every tick and thrown away
afterwards.
"""

from __future__ import annotations
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple
import math

import numpy as np

from toolsmith.control.regime import Regime
from toolsmith.core.perception import PerceptionHead
from toolsmith.core.verbs import Verb
from toolsmith.core.world_model import FeatureInput, Outcome, OutcomeModel, clamp01
from toolsmith.environments.base import Environment, WorldObject


UTILITY_WEIGHTS = {
    "damage": 0.40,
    "fragments": 0.25,
    "property_changes": 0.20,
    "tool_wear": 0.15,
}

MANUFACTURE_STRIKE_SCALE = 0.45

ENERGY_COSTS = {
    Verb.MOVE_TO: 0.02,
    Verb.STRIKE_WITH: 0.16,
    Verb.GRIND: 0.10,
    Verb.BIND_TO: 0.09,
    Verb.HEAT: 0.08,
    Verb.SOAK: 0.08,
    Verb.ANCHOR: 0.09,
    Verb.CONTROL: 0.11,
    Verb.PICK_UP: 0.04,
    Verb.DROP: 0.02,
}
DEFAULT_ENERGY_COST = 0.03

NoveltyKey = Tuple[Verb, int]


def action_cost(verb: Verb) -> float:
    return ENERGY_COSTS.get(verb, DEFAULT_ENERGY_COST)


@dataclass
class CandidateAction:
    """One possible action this tick. Never kept across ticks."""
    verb: Verb
    object_id: Optional[int] = None
    target_id: Optional[int] = None
    destination: Optional[Tuple[float, float]] = None
    model_input: Optional[FeatureInput] = None
    predicted: Optional[Outcome] = None
    intensity: float = 0.5
    score: float = -math.inf

    @property
    def subject_id(self) -> int:
        """The object this candidate acts on, 0 when none."""
        if self.object_id is not None:
            return self.object_id
        if self.target_id is not None:
            return self.target_id
        return 0


class NoveltyWindow:
    """
    Short-horizon count of recently chosen (verb, object) pairs.

    Independent of the outcome model's own visit counter. Oldest
    keys are dropped once more than max_keys are tracked.
    """

    def __init__(self, max_keys: int = 256):
        self.max_keys = max_keys
        self._counts: "OrderedDict[NoveltyKey, int]" = OrderedDict()

    def seen(self, key: NoveltyKey) -> int:
        return self._counts.get(key, 0)

    def add(self, key: NoveltyKey) -> None:
        self._counts[key] = self._counts.get(key, 0) + 1
        self._counts.move_to_end(key)
        while len(self._counts) > self.max_keys:
            self._counts.popitem(last=False)

    def __len__(self) -> int:
        return len(self._counts)


def utility(predicted: Outcome) -> float:
    w = UTILITY_WEIGHTS
    return (
        predicted.damage * w["damage"]
        + predicted.fragments * w["fragments"]
        + predicted.property_changes * w["property_changes"]
        - predicted.tool_wear * w["tool_wear"]
    )


def choose_candidate(
    candidates: Sequence[CandidateAction],
    model: OutcomeModel,
    window: NoveltyWindow,
    regime: Regime,
) -> Optional[CandidateAction]:
    """
    Score every model-backed candidate and return the best.

    Candidates without a model input keep their heuristic score and
    only win when they come first. Ties keep the earlier candidate.
    """
    if not candidates:
        return None

    best = candidates[0]
    for candidate in candidates:
        if candidate.model_input is None or candidate.predicted is None:
            continue
        key = (candidate.model_input.verb, candidate.subject_id)
        curiosity = model.novelty(candidate.model_input) * max(0.2, 1 - window.seen(key) * 0.15)
        scale = (
            MANUFACTURE_STRIKE_SCALE
            if regime is Regime.MANUFACTURE and candidate.verb is Verb.STRIKE_WITH
            else 1.0
        )
        candidate.score = curiosity + utility(candidate.predicted) * scale
        if candidate.score > best.score:
            best = candidate

    if best.model_input is not None:
        window.add((best.model_input.verb, best.subject_id))
    return best


def build_model_input(
    env: Environment,
    perception: PerceptionHead,
    verb: Verb,
    a: WorldObject,
    b: WorldObject,
) -> FeatureInput:
    """Perceive both objects and encode the pair for the outcome model."""
    obs_a = perception.observe(a, env.rng)
    obs_b = perception.observe(b, env.rng)
    dx, dy = b.position - a.position
    slenderness = a.length / max(0.1, a.thickness) + b.length / max(0.1, b.thickness)
    return FeatureInput(
        object_a=obs_a.to_features(),
        object_b=obs_b.to_features(),
        verb=verb,
        geometry=clamp01(slenderness / 12),
        relative_position=clamp01(math.hypot(dx, dy) / 3),
    )


def rank_by_perception(
    env: Environment,
    perception: PerceptionHead,
    avoid: Iterable[int] = (),
) -> List[WorldObject]:
    """Nearby objects, most promising-looking first."""
    skip = set(avoid)
    objects = [env.get(oid) for oid in env.nearby_object_ids() if oid not in skip]
    objects = [obj for obj in objects if obj is not None]
    scores = np.array([perception.desirability(obj, env.rng) for obj in objects])
    # Stable descending sort
    order = np.argsort(-scores, kind="stable") if len(objects) else []
    return [objects[int(i)] for i in order]
