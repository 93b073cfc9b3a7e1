from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Sequence

# (tags, priority, context) -> integer reward amount.
RewardCalculator = Callable[[Sequence[str], str, Mapping[str, Any]], int]

PRIORITY_MULTIPLIERS: Dict[str, float] = {
    "normal": 1.0,
    "high": 1.5,
    "milestone": 2.0,
    "experimental": 0.8,
}


@dataclass
class TieredRewardCalculator:
    """Randomised tiered base amount scaled by the priority multiplier.

    Tiers:
      - 95.0%: 50_000 .. 59_999
      -  2.5%: 60_000 .. 99_999
      -  2.5%: 100_000 .. 998_999
    """

    rng: random.Random = field(default_factory=random.Random)
    multipliers: Dict[str, float] = field(default_factory=lambda: dict(PRIORITY_MULTIPLIERS))

    def base_amount(self) -> int:
        roll = self.rng.random()
        if roll < 0.95:
            return 50_000 + self.rng.randrange(10_000)
        if roll < 0.975:
            return 60_000 + self.rng.randrange(40_000)
        return 100_000 + self.rng.randrange(899_000)

    def __call__(self, tags: Sequence[str], priority: str, context: Mapping[str, Any]) -> int:
        multiplier = self.multipliers.get(str(priority or "normal"), 1.0)
        return int(self.base_amount() * multiplier)


@dataclass(frozen=True)
class FixedRewardCalculator:
    """Same amount for every commit, ignoring tags and priority."""

    amount: int

    def __call__(self, tags: Sequence[str], priority: str, context: Mapping[str, Any]) -> int:
        return int(self.amount)
