"""
control/population.py

Neither a desert nor a landfill.

A feedback controller that keeps the world's object counts in a
healthy band: spawning slows as the world fills up, targets are
never allowed to go extinct, and only debris is ever cleaned up.

Inspired by:
- Predator-prey equilibria
- Carrying capacity in ecology
"""

from __future__ import annotations
from dataclasses import dataclass
import math


@dataclass
class PopulationBands:
    """Static population targets."""
    min_targets: int = 10
    max_targets: int = 40
    min_objects: int = 20
    max_objects: int = 400
    max_fragment_ratio: float = 0.40

    def __post_init__(self):
        if self.max_targets <= 0 or self.max_objects <= 0:
            raise ValueError("Population maxima must be positive")


@dataclass
class PopulationState:
    """Counts observed in the world this tick."""
    targets_alive: int
    objects_total: int
    fragments_total: int


@dataclass
class PopulationDecision:
    spawn_probability: float
    debris_to_clean: int


@dataclass
class PopulationMetrics:
    spawn_throttle: float
    debris_cleanup_rate: int
    purged_non_debris: int


class PopulationController:
    """
    Computes a spawn throttle and a debris cleanup count.

    Cleanup is expressed as a number of fragments to remove; the
    controller has no way to ask for anything else to be removed.
    """

    def __init__(self, bands: PopulationBands | None = None):
        self.bands = bands or PopulationBands()
        self._spawn_throttle = 1.0
        self._debris_cleanup_rate = 0
        self._purged_non_debris = 0

    def evaluate(self, state: PopulationState) -> PopulationDecision:
        bands = self.bands

        # Throttle ramps down as either population nears its maximum
        object_fraction = state.objects_total / bands.max_objects
        target_fraction = state.targets_alive / bands.max_targets
        throttle = min(1.0, max(0.0, 1.0 - max(object_fraction, target_fraction)))

        # Extinction guard
        if state.targets_alive < bands.min_targets:
            throttle = 1.0

        debris = 0
        fragment_ratio = (
            state.fragments_total / state.objects_total if state.objects_total > 0 else 0.0
        )
        if state.objects_total > bands.max_objects:
            debris = min(state.fragments_total, state.objects_total - bands.max_objects)
        elif fragment_ratio > bands.max_fragment_ratio:
            # Cleaning k fragments also shrinks the total: (F - k) / (N - k) <= r
            ratio = bands.max_fragment_ratio
            excess = state.fragments_total - ratio * state.objects_total
            debris = math.ceil(excess / (1.0 - ratio) - 1e-9)
        debris = max(0, min(debris, state.fragments_total))

        self._spawn_throttle = throttle
        self._debris_cleanup_rate = debris
        return PopulationDecision(spawn_probability=throttle, debris_to_clean=debris)

    def metrics(self) -> PopulationMetrics:
        return PopulationMetrics(
            spawn_throttle=self._spawn_throttle,
            debris_cleanup_rate=self._debris_cleanup_rate,
            purged_non_debris=self._purged_non_debris,
        )

    def __repr__(self) -> str:
        return (
            f"PopulationController(throttle={self._spawn_throttle:.2f}, "
            f"cleanup={self._debris_cleanup_rate})"
        )
