from dataclasses import dataclass
from enum import Enum
from typing import Optional
import random

from .models import Node, ByzantinePolicy, ByzantineProbabilities

class Behavior(Enum):
    HONEST = "honest"
    FLIP = "flip"
    RANDOM = "random"
    SILENT = "silent"

@dataclass(frozen=True)
class ByzantineDecision:
    behavior: Behavior
    value: Optional[int] # None when silent

    @property
    def silent(self) -> bool:
        return self.behavior == Behavior.SILENT

class ByzantineBehavior:
    """
    Decides what a sender transmits in a phase.
    Honest senders pass the reference value through; Byzantine senders
    flip it, replace it with a random bit or stay silent, depending on
    their strategy. Every call draws afresh, nothing is remembered
    between phases.
    """

    def __init__(self, rng: random.Random, probabilities: Optional[ByzantineProbabilities] = None):
        self.rng = rng
        self.probabilities = probabilities or ByzantineProbabilities()

    def decide(self, node: Node, honest_value: int, policy: Optional[ByzantinePolicy] = None) -> ByzantineDecision:
        if not node.is_byzantine:
            return ByzantineDecision(Behavior.HONEST, honest_value)

        strategy = policy or node.byzantine_strategy or ByzantinePolicy.FLIP

        if strategy == ByzantinePolicy.FLIP:
            return ByzantineDecision(Behavior.FLIP, 1 - honest_value)

        elif strategy == ByzantinePolicy.RANDOM:
            return ByzantineDecision(Behavior.RANDOM, self.rng.randint(0, 1))

        elif strategy == ByzantinePolicy.SILENT:
            return ByzantineDecision(Behavior.SILENT, None)

        # Probabilistic: three fixed cumulative buckets
        draw = self.rng.random()
        if draw < self.probabilities.flip:
            return ByzantineDecision(Behavior.FLIP, 1 - honest_value)
        elif draw < self.probabilities.flip + self.probabilities.random:
            return ByzantineDecision(Behavior.RANDOM, self.rng.randint(0, 1))
        return ByzantineDecision(Behavior.SILENT, None)
