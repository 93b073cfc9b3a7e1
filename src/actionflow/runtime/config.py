# src/actionflow/runtime/config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

Json = Dict[str, Any]


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except Exception:
        return int(default)


def _as_float(v: Any, default: float) -> float:
    try:
        return float(v)
    except Exception:
        return float(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


@dataclass(frozen=True)
class PipelineConfig:
    mode: str  # "dev" | "prod"

    # Single SQLite file for the action log, verification queue and positions.
    db_path: str

    # Default delay before the external verifier should look at a settlement.
    verification_delay_ms: int
    # Shown to users as the estimated confirmation time on staking positions.
    confirmation_window_ms: int

    commit_daily_cap: int
    rank_window: int
    leaderboard_limit: int
    top_stakers_limit: int

    yield_window_days: int
    yield_cap_pct: float

    verification_max_attempts: int
    verification_retry_ms: int
    verifier_poll_ms: int
    verifier_batch_size: int

    broadcast_queue_size: int

    log_level: str


_ALLOWED_MODES = {"dev", "prod"}


def validate_pipeline_config(cfg: PipelineConfig) -> None:
    """Fail-fast validation for operator config."""

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {_ALLOWED_MODES}; got: {cfg.mode!r}")

    if not isinstance(cfg.db_path, str) or not cfg.db_path.strip():
        raise ValueError("db_path must be a non-empty string")

    for name in ("verification_delay_ms", "confirmation_window_ms", "verification_retry_ms", "verifier_poll_ms"):
        if int(getattr(cfg, name)) <= 0:
            raise ValueError(f"{name} must be > 0; got: {getattr(cfg, name)}")

    if int(cfg.commit_daily_cap) < 0:
        raise ValueError(f"commit_daily_cap must be >= 0; got: {cfg.commit_daily_cap}")

    if int(cfg.rank_window) < 0:
        raise ValueError(f"rank_window must be >= 0; got: {cfg.rank_window}")

    for name in ("leaderboard_limit", "top_stakers_limit", "verifier_batch_size", "broadcast_queue_size"):
        if int(getattr(cfg, name)) <= 0:
            raise ValueError(f"{name} must be > 0; got: {getattr(cfg, name)}")

    if int(cfg.yield_window_days) < 1:
        raise ValueError(f"yield_window_days must be >= 1; got: {cfg.yield_window_days}")

    if float(cfg.yield_cap_pct) <= 0:
        raise ValueError(f"yield_cap_pct must be > 0; got: {cfg.yield_cap_pct}")

    if int(cfg.verification_max_attempts) < 1:
        raise ValueError(f"verification_max_attempts must be >= 1; got: {cfg.verification_max_attempts}")


def default_pipeline_config() -> PipelineConfig:
    return PipelineConfig(
        mode="prod",
        db_path="./data/actionflow.db",
        verification_delay_ms=30_000,
        confirmation_window_ms=30_000,
        commit_daily_cap=10,
        rank_window=3,
        leaderboard_limit=20,
        top_stakers_limit=10,
        yield_window_days=7,
        yield_cap_pct=9999.0,
        verification_max_attempts=5,
        verification_retry_ms=15_000,
        verifier_poll_ms=15_000,
        verifier_batch_size=10,
        broadcast_queue_size=1_000,
        log_level="INFO",
    )


def pipeline_config_from_dict(raw: Json) -> PipelineConfig:
    d = default_pipeline_config()
    cfg = PipelineConfig(
        mode=_as_str(raw.get("mode"), d.mode).strip().lower(),
        db_path=_as_str(raw.get("db_path"), d.db_path),
        verification_delay_ms=_as_int(raw.get("verification_delay_ms"), d.verification_delay_ms),
        confirmation_window_ms=_as_int(raw.get("confirmation_window_ms"), d.confirmation_window_ms),
        commit_daily_cap=_as_int(raw.get("commit_daily_cap"), d.commit_daily_cap),
        rank_window=_as_int(raw.get("rank_window"), d.rank_window),
        leaderboard_limit=_as_int(raw.get("leaderboard_limit"), d.leaderboard_limit),
        top_stakers_limit=_as_int(raw.get("top_stakers_limit"), d.top_stakers_limit),
        yield_window_days=_as_int(raw.get("yield_window_days"), d.yield_window_days),
        yield_cap_pct=_as_float(raw.get("yield_cap_pct"), d.yield_cap_pct),
        verification_max_attempts=_as_int(raw.get("verification_max_attempts"), d.verification_max_attempts),
        verification_retry_ms=_as_int(raw.get("verification_retry_ms"), d.verification_retry_ms),
        verifier_poll_ms=_as_int(raw.get("verifier_poll_ms"), d.verifier_poll_ms),
        verifier_batch_size=_as_int(raw.get("verifier_batch_size"), d.verifier_batch_size),
        broadcast_queue_size=_as_int(raw.get("broadcast_queue_size"), d.broadcast_queue_size),
        log_level=_as_str(raw.get("log_level"), d.log_level).strip().upper(),
    )
    validate_pipeline_config(cfg)
    return cfg


def read_pipeline_config_file(path: str) -> PipelineConfig:
    p = Path(path)
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() in {".yaml", ".yml"}:
        raw = yaml.safe_load(text)
    else:
        raw = json.loads(text)
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("pipeline config must be a mapping")
    return pipeline_config_from_dict(raw)


def load_pipeline_config(*, config_path: Optional[str] = None) -> PipelineConfig:
    p = config_path or os.environ.get("ACTIONFLOW_CONFIG_PATH")
    if p:
        return read_pipeline_config_file(p)

    cfg = default_pipeline_config()
    validate_pipeline_config(cfg)
    return cfg
