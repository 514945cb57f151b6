"""
Control layers around the learning core.

- regime: explore -> exploit -> manufacture
- controller: Hill-climbing process tuner
- stall: Loop detection and forced exploration
- population: Spawn throttle and debris cleanup
- training: Budgeted online training bookkeeping
"""

from .regime import Regime, RegimeMachine
from .controller import ClosedLoopController, ControllerPhase, ControllerTarget
from .stall import StallDetector
from .population import PopulationBands, PopulationController, PopulationState
from .training import TrainingScheduler, TrainingState

__all__ = [
    "Regime",
    "RegimeMachine",
    "ClosedLoopController",
    "ControllerPhase",
    "ControllerTarget",
    "StallDetector",
    "PopulationBands",
    "PopulationController",
    "PopulationState",
    "TrainingScheduler",
    "TrainingState",
]
