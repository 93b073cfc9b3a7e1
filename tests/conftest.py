from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, List

import pytest

# Ensure local "src/" takes precedence over any globally-installed "actionflow" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from actionflow.runtime import metrics  # noqa: E402
from actionflow.runtime.config import PipelineConfig, default_pipeline_config  # noqa: E402
from actionflow.runtime.context import PipelineContext, build_context  # noqa: E402

DAY_MS = 24 * 60 * 60 * 1000

# 2026-01-15T12:00:00Z
NOON_MS = 20_468 * DAY_MS + 12 * 60 * 60 * 1000


class FakeClock:
    def __init__(self, start_ms: int = NOON_MS) -> None:
        self.now = int(start_ms)

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += int(ms)
        return self.now


class RecordingDispatcher:
    def __init__(self) -> None:
        self.messages: List[Any] = []

    def dispatch(self, message: Any) -> None:
        self.messages.append(message)

    def of_type(self, t: str) -> List[Any]:
        return [m for m in self.messages if m.type == t]


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    metrics.reset()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture()
def make_cfg(tmp_path: Path) -> Callable[..., PipelineConfig]:
    def _make(**overrides: Any) -> PipelineConfig:
        return replace(default_pipeline_config(), db_path=str(tmp_path / "actionflow.db"), **overrides)

    return _make


@pytest.fixture()
def make_ctx(make_cfg, clock: FakeClock, dispatcher: RecordingDispatcher) -> Callable[..., PipelineContext]:
    made: List[PipelineContext] = []

    def _make(*, cfg: PipelineConfig | None = None, **kw: Any) -> PipelineContext:
        kw.setdefault("dispatcher", dispatcher)
        kw.setdefault("now_ms", clock)
        ctx = build_context(cfg or make_cfg(), **kw)
        made.append(ctx)
        return ctx

    yield _make

    for ctx in made:
        ctx.close()
