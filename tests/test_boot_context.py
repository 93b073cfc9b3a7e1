from __future__ import annotations

import os
from pathlib import Path
from typing import List

import pytest

import actionflow.env as af_env
from actionflow.runtime import context as context_mod
from actionflow.runtime.broadcast import RoomBroadcaster
from actionflow.runtime.context import boot_context


def test_boot_context_reads_dotenv_then_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / "data" / "boot.db"
    cfg_path = tmp_path / "pipeline.yaml"
    cfg_path.write_text(f"db_path: {db_path}\nlog_level: debug\nrank_window: 2\n", encoding="utf-8")
    dotenv = tmp_path / ".env"
    dotenv.write_text(f"ACTIONFLOW_CONFIG_PATH={cfg_path}\n", encoding="utf-8")

    monkeypatch.delenv("ACTIONFLOW_CONFIG_PATH", raising=False)
    monkeypatch.setattr(af_env, "_LOADED", False)
    levels: List[str] = []
    monkeypatch.setattr(context_mod, "configure_structured_logging", lambda level: levels.append(level))

    ctx = boot_context(dotenv_path=str(dotenv))
    try:
        assert ctx.cfg.db_path == str(db_path)
        assert ctx.cfg.rank_window == 2
        assert levels == ["DEBUG"]
        assert db_path.is_file()
        assert isinstance(ctx.dispatcher, RoomBroadcaster)
        assert ctx.registry.kinds() == ["claim", "commit", "stake", "unstake"]
    finally:
        ctx.close()


def test_dotenv_is_loaded_once_and_env_wins(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    dotenv = tmp_path / ".env"
    dotenv.write_text("ACTIONFLOW_MARKER=from-file\n", encoding="utf-8")

    monkeypatch.setenv("ACTIONFLOW_MARKER", "from-env")
    monkeypatch.setattr(af_env, "_LOADED", False)
    assert af_env.load_dotenv_if_present(str(dotenv)) is True
    assert af_env.load_dotenv_if_present(str(dotenv)) is False

    assert os.environ["ACTIONFLOW_MARKER"] == "from-env"


def test_missing_dotenv_is_not_an_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(af_env, "_LOADED", False)
    assert af_env.load_dotenv_if_present(str(tmp_path / "absent.env")) is False
