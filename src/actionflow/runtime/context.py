# src/actionflow/runtime/context.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from actionflow.env import load_dotenv_if_present
from actionflow.runtime.action_ledger import ActionLedger
from actionflow.runtime.broadcast import BackgroundDispatcher, Dispatcher, RoomBroadcaster
from actionflow.runtime.config import PipelineConfig, load_pipeline_config
from actionflow.runtime.orchestrator import ActionOrchestrator
from actionflow.runtime.registry import StrategyRegistry, build_default_registry
from actionflow.runtime.rewards import RewardCalculator
from actionflow.runtime.sqlite_db import SqliteDB
from actionflow.runtime.structured_logging import configure_structured_logging, log_event
from actionflow.runtime.verification_queue import VerificationScheduler

log = logging.getLogger("actionflow.context")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PipelineContext:
    """Everything an entry point needs, built once at startup and passed around."""

    cfg: PipelineConfig
    db: SqliteDB
    ledger: ActionLedger
    registry: StrategyRegistry
    scheduler: VerificationScheduler
    dispatcher: Dispatcher
    orchestrator: ActionOrchestrator
    now_ms: Callable[[], int]

    def close(self) -> None:
        if isinstance(self.dispatcher, BackgroundDispatcher):
            self.dispatcher.stop()


def build_context(
    cfg: Optional[PipelineConfig] = None,
    *,
    dispatcher: Optional[Dispatcher] = None,
    reward_calculator: Optional[RewardCalculator] = None,
    registry: Optional[StrategyRegistry] = None,
    now_ms: Optional[Callable[[], int]] = None,
    background_broadcast: bool = False,
) -> PipelineContext:
    """Wire the pipeline.

    - cfg defaults to load_pipeline_config() (ACTIONFLOW_CONFIG_PATH or defaults)
    - dispatcher defaults to an in-process RoomBroadcaster
    - background_broadcast=True moves dispatch onto a bounded worker thread
    """
    c = cfg or load_pipeline_config()
    clock = now_ms or _now_ms

    db = SqliteDB(path=c.db_path, mode=c.mode)
    db.init_schema()

    ledger = ActionLedger(db=db)
    reg = registry or build_default_registry(c, reward_calculator=reward_calculator)
    scheduler = VerificationScheduler(
        db=db,
        default_delay_ms=c.verification_delay_ms,
        max_attempts=c.verification_max_attempts,
        now_ms=clock,
    )

    disp: Dispatcher = dispatcher or RoomBroadcaster()
    if background_broadcast:
        bg = BackgroundDispatcher(disp, max_queue=c.broadcast_queue_size)
        bg.start()
        disp = bg

    orch = ActionOrchestrator(
        db=db,
        ledger=ledger,
        registry=reg,
        scheduler=scheduler,
        dispatcher=disp,
        cfg=c,
        now_ms=clock,
    )

    log_event(log, "pipeline_ready", mode=c.mode, db_path=c.db_path, kinds=reg.kinds())
    return PipelineContext(
        cfg=c,
        db=db,
        ledger=ledger,
        registry=reg,
        scheduler=scheduler,
        dispatcher=disp,
        orchestrator=orch,
        now_ms=clock,
    )


def boot_context(*, config_path: Optional[str] = None, dotenv_path: Optional[str] = None, **kw) -> PipelineContext:
    """Process startup: .env, then config, then logging, then wiring.

    The .env file is loaded first so ACTIONFLOW_* variables exist before
    anything reads them.
    """
    load_dotenv_if_present(dotenv_path)
    cfg = load_pipeline_config(config_path=config_path)
    configure_structured_logging(cfg.log_level)
    return build_context(cfg, **kw)
