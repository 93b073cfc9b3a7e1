from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from actionflow.runtime.config import PipelineConfig, default_pipeline_config
from actionflow.runtime.errors import UnknownActionKind
from actionflow.runtime.rewards import RewardCalculator
from actionflow.runtime.strategies.base import ActionStrategy
from actionflow.runtime.strategies.commit import CommitStrategy
from actionflow.runtime.strategies.staking import ClaimStrategy, StakeStrategy, UnstakeStrategy


class StrategyRegistry:
    """Closed, construction-time map from action kind to strategy.

    There is no dynamic lookup: a kind that was not registered here fails
    with UnknownActionKind.
    """

    def __init__(self, strategies: Iterable[ActionStrategy]) -> None:
        table: Dict[str, ActionStrategy] = {}
        for s in strategies:
            k = str(s.kind or "").strip().lower()
            if not k:
                raise ValueError(f"strategy {type(s).__name__} has no kind")
            if k in table:
                raise ValueError(f"duplicate strategy for kind: {k}")
            table[k] = s
        self._table: Mapping[str, ActionStrategy] = MappingProxyType(table)

    def resolve(self, kind: str) -> ActionStrategy:
        k = str(kind or "").strip().lower()
        s = self._table.get(k)
        if s is None:
            raise UnknownActionKind.for_kind(k, list(self._table.keys()))
        return s

    def kinds(self) -> List[str]:
        return sorted(self._table.keys())

    def __contains__(self, kind: object) -> bool:
        return isinstance(kind, str) and kind.strip().lower() in self._table

    def __len__(self) -> int:
        return len(self._table)


def build_default_registry(
    cfg: Optional[PipelineConfig] = None,
    *,
    reward_calculator: Optional[RewardCalculator] = None,
) -> StrategyRegistry:
    c = cfg or default_pipeline_config()
    staking_kw = dict(
        confirmation_window_ms=c.confirmation_window_ms,
        yield_window_days=c.yield_window_days,
        yield_cap_pct=c.yield_cap_pct,
        top_stakers_limit=c.top_stakers_limit,
    )
    return StrategyRegistry(
        [
            StakeStrategy(**staking_kw),
            UnstakeStrategy(**staking_kw),
            ClaimStrategy(**staking_kw),
            CommitStrategy(
                reward_calculator=reward_calculator,
                daily_cap=c.commit_daily_cap,
                rank_window=c.rank_window,
                leaderboard_limit=c.leaderboard_limit,
            ),
        ]
    )
