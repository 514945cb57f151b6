"""
Core learning components.

- verbs: The closed action vocabulary
- world_model: Online linear outcome model with novelty counts
- replay: Bounded experience buffer
- embedding: Tool-effect vectors for diversity bookkeeping
- perception: Observation and hidden-property estimates (import directly)
"""

from .verbs import Verb, MODEL_VERBS, EXPLORATORY_VERBS
from .world_model import FeatureInput, ObjectFeatures, Outcome, OutcomeModel
from .replay import ReplayBuffer, Transition
from .embedding import ToolEffectEmbedding

__all__ = [
    "Verb",
    "MODEL_VERBS",
    "EXPLORATORY_VERBS",
    "FeatureInput",
    "ObjectFeatures",
    "Outcome",
    "OutcomeModel",
    "ReplayBuffer",
    "Transition",
    "ToolEffectEmbedding",
]
