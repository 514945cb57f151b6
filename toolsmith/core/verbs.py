"""
core/verbs.py

The closed vocabulary of things an agent can do.

Every verb the loop can choose is listed here. Adding one means
adding it to every dispatch table that matches on Verb.
"""

from enum import Enum


class Verb(Enum):
    """Action verbs available to an agent."""
    MOVE_TO = "MOVE_TO"
    PICK_UP = "PICK_UP"
    DROP = "DROP"
    BIND_TO = "BIND_TO"
    STRIKE_WITH = "STRIKE_WITH"
    GRIND = "GRIND"
    HEAT = "HEAT"
    SOAK = "SOAK"
    ANCHOR = "ANCHOR"
    CONTROL = "CONTROL"
    REST = "REST"


# Verbs the outcome model encodes, in one-hot slot order.
MODEL_VERBS = (Verb.STRIKE_WITH, Verb.GRIND, Verb.BIND_TO)

# Verbs allowed while a stall cooldown forces exploration.
EXPLORATORY_VERBS = (Verb.PICK_UP, Verb.MOVE_TO, Verb.DROP)
