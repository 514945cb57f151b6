"""
core/embedding.py

A tool is what it does.

Each tool id carries a smoothed, unit-length vector of the effects
it produced. Tools that behave alike point the same way, whatever
they are made of.
"""

from __future__ import annotations
from typing import Any, Dict, List, Set, Tuple
import numpy as np

from .world_model import Outcome


EffectBin = Tuple[int, int, int, int]


def _normalize(effect: np.ndarray) -> np.ndarray:
    magnitude = float(np.linalg.norm(effect))
    return effect / (magnitude if magnitude > 0 else 1.0)


class ToolEffectEmbedding:
    """
    Exponential moving average of normalized effect vectors per tool.

    Used for diversity bookkeeping: how many behaviourally distinct
    tools exist, and how many distinct interaction outcomes have
    been seen at all.
    """

    def __init__(self, keep: float = 0.7):
        self.keep = keep
        self._vectors: Dict[int, np.ndarray] = {}
        self._bins: Set[EffectBin] = set()

    def update(self, tool_id: int, effect: Outcome) -> None:
        raw = effect.to_array()
        incoming = _normalize(raw)
        existing = self._vectors.get(tool_id)
        if existing is None:
            self._vectors[tool_id] = incoming
        else:
            self._vectors[tool_id] = existing * self.keep + incoming * (1 - self.keep)

        self._bins.add(tuple(int(round(v * 4)) for v in raw))

    def similarity(self, tool_a: int, tool_b: int) -> float:
        a = self._vectors.get(tool_a)
        b = self._vectors.get(tool_b)
        if a is None or b is None:
            return 0.0
        return float(np.dot(a, b))

    def cluster_count(self, similarity_threshold: float = 0.92) -> int:
        """Greedy leader clustering by cosine similarity."""
        centers: List[np.ndarray] = []
        for vec in self._vectors.values():
            if not any(float(np.dot(vec, c)) >= similarity_threshold for c in centers):
                centers.append(vec)
        return len(centers)

    def novel_interaction_count(self) -> int:
        return len(self._bins)

    def tool_ids(self) -> List[int]:
        return list(self._vectors.keys())

    def snapshot(self) -> Dict[str, Any]:
        return {
            "keep": self.keep,
            "vectors": {str(k): v.tolist() for k, v in self._vectors.items()},
            "bins": sorted(list(b) for b in self._bins),
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "ToolEffectEmbedding":
        embedding = cls(keep=float(data.get("keep", 0.7)))
        embedding._vectors = {
            int(k): np.array(v, dtype=np.float64) for k, v in data.get("vectors", {}).items()
        }
        embedding._bins = {tuple(int(x) for x in b) for b in data.get("bins", [])}
        return embedding

    def __len__(self) -> int:
        return len(self._vectors)

    def __repr__(self) -> str:
        return (
            f"ToolEffectEmbedding(tools={len(self._vectors)}, "
            f"clusters={self.cluster_count()}, "
            f"bins={len(self._bins)})"
        )
