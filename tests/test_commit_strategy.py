from __future__ import annotations

from typing import Any, Dict

import pytest

from actionflow.runtime.errors import ActionProcessingFailed, DuplicateAction
from actionflow.runtime.rewards import FixedRewardCalculator
from actionflow.runtime.strategies.commit import (
    commits_for_actor,
    daily_limit_status,
    leaderboard,
    rank_of,
)

from conftest import DAY_MS


def _commit(h: str, *, actor: str = "dev", **payload: Any) -> Dict[str, Any]:
    return {"kind": "commit", "actor_key": actor, "payload": {"commit_hash": h, **payload}}


def _scalar(ctx, sql: str, *args: Any) -> Any:
    with ctx.db.connection() as con:
        return con.execute(sql, args).fetchone()[0]


def test_duplicate_commit_is_already_processed(make_ctx) -> None:
    ctx = make_ctx(reward_calculator=FixedRewardCalculator(1000))
    first = ctx.orchestrator.process(_commit("deadbeef"))
    assert first.domain_result["reward_amount"] == 1000

    with pytest.raises(ActionProcessingFailed) as e:
        ctx.orchestrator.process(_commit("deadbeef"))

    cause = e.value.cause
    assert isinstance(cause, DuplicateAction)
    assert cause.reason == "already_processed"
    assert "already processed" in cause.details["message"]

    assert _scalar(ctx, "SELECT COUNT(1) FROM commits;") == 1
    assert _scalar(ctx, "SELECT total_rewards FROM contributors WHERE actor_key='dev';") == 1000
    assert _scalar(ctx, "SELECT COUNT(1) FROM action_log;") == 1


def test_duplicate_commit_from_another_actor_is_also_rejected(make_ctx) -> None:
    ctx = make_ctx(reward_calculator=FixedRewardCalculator(1000))
    ctx.orchestrator.process(_commit("cafe", actor="alice"))
    with pytest.raises(ActionProcessingFailed):
        ctx.orchestrator.process(_commit("cafe", actor="bob"))
    assert _scalar(ctx, "SELECT COUNT(1) FROM contributors WHERE actor_key='bob';") == 0


def test_daily_cap_records_the_eleventh_commit_with_zero_reward(make_ctx, clock) -> None:
    ctx = make_ctx(reward_calculator=FixedRewardCalculator(1000))
    results = []
    for i in range(11):
        results.append(ctx.orchestrator.process(_commit(f"h{i}")).domain_result)
        clock.advance(60_000)

    for i, r in enumerate(results[:10]):
        assert r["reward_amount"] == 1000
        assert r["is_at_daily_limit"] is False
        assert r["current_daily_commits"] == i + 1

    last = results[10]
    assert last["reward_amount"] == 0
    assert last["is_at_daily_limit"] is True
    assert last["current_daily_commits"] == 11
    assert last["commit"]["commit_hash"] == "h10"

    assert _scalar(ctx, "SELECT COUNT(1) FROM commits WHERE actor_key='dev';") == 11
    assert _scalar(ctx, "SELECT commit_count FROM daily_commit_stats WHERE actor_key='dev';") == 11
    assert _scalar(ctx, "SELECT total_rewards FROM daily_commit_stats WHERE actor_key='dev';") == 10_000
    # The capped commit earns nothing, so the totals stay as of the tenth commit.
    assert _scalar(ctx, "SELECT total_commits FROM contributors WHERE actor_key='dev';") == 10
    assert _scalar(ctx, "SELECT total_rewards FROM contributors WHERE actor_key='dev';") == 10_000

    with ctx.db.connection() as con:
        st = daily_limit_status(con, "dev", clock.now, cap=10)
    assert st == {"day": "2026-01-15", "current_count": 11, "limit": 10, "is_at_limit": True, "remaining": 0}


def test_daily_cap_resets_on_next_utc_day(make_ctx, clock) -> None:
    ctx = make_ctx(reward_calculator=FixedRewardCalculator(5))
    for i in range(ctx.cfg.commit_daily_cap):
        ctx.orchestrator.process(_commit(f"d1-{i}"))

    clock.advance(DAY_MS)
    res = ctx.orchestrator.process(_commit("d2-0")).domain_result
    assert res["reward_amount"] == 5
    assert res["current_daily_commits"] == 1
    assert _scalar(ctx, "SELECT COUNT(1) FROM daily_commit_stats WHERE actor_key='dev';") == 2


def test_next_rewarded_commit_recounts_capped_commits(make_ctx, clock) -> None:
    ctx = make_ctx(reward_calculator=FixedRewardCalculator(1000))
    for i in range(11):
        ctx.orchestrator.process(_commit(f"h{i}"))

    clock.advance(DAY_MS)
    res = ctx.orchestrator.process(_commit("next-day")).domain_result
    assert res["reward_amount"] == 1000

    assert _scalar(ctx, "SELECT COUNT(1) FROM commits WHERE actor_key='dev';") == 12
    assert _scalar(ctx, "SELECT total_commits FROM contributors WHERE actor_key='dev';") == 12
    assert _scalar(ctx, "SELECT total_rewards FROM contributors WHERE actor_key='dev';") == 11_000
    assert res["contributor"]["total_commits"] == 12


def test_zero_cap_never_rewards(make_ctx, make_cfg) -> None:
    ctx = make_ctx(cfg=make_cfg(commit_daily_cap=0), reward_calculator=FixedRewardCalculator(5))
    res = ctx.orchestrator.process(_commit("x")).domain_result
    assert res["reward_amount"] == 0
    assert res["is_at_daily_limit"] is True


def test_calculator_receives_tags_priority_and_context(make_ctx) -> None:
    seen = []

    def calc(tags, priority, context):
        seen.append((list(tags), priority, dict(context)))
        return 77

    ctx = make_ctx(reward_calculator=calc)
    res = ctx.orchestrator.process(
        _commit("t1", tags=["Docs", " "], priority="Milestone", repository="org/repo")
    ).domain_result

    assert res["reward_amount"] == 77
    assert res["commit"]["tags"] == ["docs"]
    assert res["commit"]["priority"] == "milestone"
    (tags, priority, context) = seen[0]
    assert tags == ["docs"]
    assert priority == "milestone"
    assert context["repository"] == "org/repo"
    assert context["daily_count"] == 0


def test_unknown_priority_is_rejected(make_ctx) -> None:
    ctx = make_ctx(reward_calculator=FixedRewardCalculator(1))
    with pytest.raises(ActionProcessingFailed) as e:
        ctx.orchestrator.process(_commit("p", priority="urgent"))
    assert e.value.cause.code == "invalid_payload"


def test_rank_neighbourhood_is_exactly_three_either_side(make_ctx, dispatcher, clock) -> None:
    ctx = make_ctx(reward_calculator=FixedRewardCalculator(5500))
    with ctx.db.write_tx() as con:
        for i in range(10):
            con.execute(
                """
                INSERT INTO contributors(actor_key, total_commits, total_rewards, created_ms, updated_ms)
                VALUES(?, 1, ?, ?, ?);
                """,
                (f"a{i}", 1000 * (10 - i), clock.now, clock.now),
            )

    ctx.orchestrator.process(_commit("climb", actor="a9"))

    (msg,) = dispatcher.of_type("commit_update")
    # a9 moves from rank 10 to rank 5 with 6500.
    assert msg.data["affected_users"] == ["a1", "a2", "a3", "a9", "a4", "a5", "a6"]
    assert msg.rooms == ["global", "leaderboard", "user:a9"]
    assert msg.data["reward_amount"] == 5500

    with ctx.db.connection() as con:
        assert rank_of(con, "a9") == 5
        top = leaderboard(con, limit=3)
    assert [r["actor_key"] for r in top] == ["a0", "a1", "a2"]


def test_rank_neighbourhood_is_clipped_at_the_top(make_ctx, dispatcher) -> None:
    ctx = make_ctx(reward_calculator=FixedRewardCalculator(100))
    ctx.orchestrator.process(_commit("only"))
    (msg,) = dispatcher.of_type("commit_update")
    assert msg.data["affected_users"] == ["dev"]


def test_contributor_username_is_refreshed(make_ctx) -> None:
    ctx = make_ctx(reward_calculator=FixedRewardCalculator(1))
    ctx.orchestrator.process(_commit("u1", github_username="old-name"))
    ctx.orchestrator.process(_commit("u2", github_username="new-name"))
    assert _scalar(ctx, "SELECT github_username FROM contributors WHERE actor_key='dev';") == "new-name"
    assert _scalar(ctx, "SELECT display_name FROM contributors WHERE actor_key='dev';") == "old-name"


def test_commits_for_actor_newest_first(make_ctx, clock) -> None:
    ctx = make_ctx(reward_calculator=FixedRewardCalculator(1))
    ctx.orchestrator.process(_commit("c1", commit_message="first", tags=["a"]))
    clock.advance(10)
    ctx.orchestrator.process(_commit("c2", commit_message="second"))

    with ctx.db.connection() as con:
        rows = commits_for_actor(con, "dev")
    assert [r["commit_hash"] for r in rows] == ["c2", "c1"]
    assert rows[1]["tags"] == ["a"]


def test_hashtags_in_message_drive_the_reward(make_ctx) -> None:
    seen = []

    def calc(tags, priority, context):
        seen.append((list(tags), priority))
        return 100

    ctx = make_ctx(reward_calculator=calc)
    res = ctx.orchestrator.process(_commit("m1", commit_message="Release v1 #milestone")).domain_result

    assert seen == [(["milestone"], "milestone")]
    assert res["commit"]["priority"] == "milestone"
    assert res["commit"]["commit_message"] == "Release v1"
