from __future__ import annotations

from typing import Any, Dict

import pytest

from actionflow.runtime import metrics
from actionflow.runtime.action_types import ActionRequest, ActionStatus
from actionflow.runtime.errors import (
    ActionNotFound,
    ActionProcessingFailed,
    CompensationFailed,
    InvalidTransition,
    RollbackUnsupported,
    TransactionError,
    UnknownActionKind,
    ValidationError,
)
from actionflow.runtime.registry import StrategyRegistry
from actionflow.runtime.rewards import FixedRewardCalculator
from actionflow.runtime.strategies.commit import CommitStrategy
from actionflow.runtime.strategies.staking import StakeStrategy, get_position


def _stake(amount: int = 1000, *, actor: str = "0xX", ref: str = "0xA") -> Dict[str, Any]:
    return {"kind": "stake", "actor_key": actor, "payload": {"amount": amount}, "external_ref": ref}


def _count(ctx, table: str) -> int:
    with ctx.db.connection() as con:
        return int(con.execute(f"SELECT COUNT(1) AS n FROM {table};").fetchone()["n"])


def _position(ctx, actor: str):
    with ctx.db.connection() as con:
        return get_position(con, actor)


def test_stake_then_reverted_settlement_rolls_back(make_ctx, dispatcher) -> None:
    ctx = make_ctx()
    orch = ctx.orchestrator

    res = orch.process(_stake(1000, actor="0xX", ref="0xA"))
    pos = _position(ctx, "0xX")
    assert pos["locked_amount"] == 1000
    assert pos["status"] == "pending_confirmation"
    assert orch.get(res.id).status == ActionStatus.PENDING

    rec = orch.rollback(res.id, "tx_reverted")
    assert rec.status == ActionStatus.FAILED
    assert rec.verification_result == {"error": "tx_reverted"}

    pos = _position(ctx, "0xX")
    assert pos["locked_amount"] == 0
    assert pos["status"] == "failed"

    (msg,) = dispatcher.of_type("staking_rollback")
    assert msg.data["message"] == "stake transaction failed and has been rolled back"
    assert msg.action_id == res.id
    assert msg.rooms == ["global", "staking", "user:0xX"]


def test_process_records_pending_action_and_schedules_verification(make_ctx, dispatcher, clock) -> None:
    ctx = make_ctx()
    res = ctx.orchestrator.process(_stake(250))

    assert res.kind == "stake"
    assert res.verification_scheduled is True
    assert res.domain_result["amount"] == 250

    rec = ctx.ledger.fetch(res.id)
    assert rec is not None
    assert rec.optimistic_applied is True
    assert rec.payload == {"amount": 250}
    assert rec.external_ref == "0xA"
    assert rec.created_ms == clock.now

    task = ctx.scheduler.get_for_action(res.id)
    assert task is not None
    assert task.scheduled_for_ms == clock.now + ctx.cfg.verification_delay_ms
    assert task.status == "pending"

    (msg,) = dispatcher.of_type("staking_update")
    assert msg.to_json()["actionId"] == res.id
    assert metrics.counter("actions_processed_total") == 1


def test_process_accepts_action_request_objects(make_ctx) -> None:
    ctx = make_ctx()
    req = ActionRequest(kind="stake", actor_key="0xY", payload={"amount": 5}, external_ref="0xB")
    res = ctx.orchestrator.process(req)
    assert _position(ctx, "0xY")["locked_amount"] == 5
    assert res.verification_scheduled


def test_apply_failure_leaves_nothing_behind(make_ctx) -> None:
    class ExplodingStake(StakeStrategy):
        def apply(self, scope, action):
            super().apply(scope, action)
            raise RuntimeError("disk on fire")

    ctx = make_ctx(registry=StrategyRegistry([ExplodingStake()]))

    with pytest.raises(ActionProcessingFailed) as e:
        ctx.orchestrator.process(_stake(1000))

    err = e.value
    assert err.kind == "stake"
    assert isinstance(err.cause, RuntimeError)
    assert err.__cause__ is err.cause
    assert _count(ctx, "action_log") == 0
    assert _count(ctx, "staker_positions") == 0
    assert _count(ctx, "yield_calculations") == 0
    assert _count(ctx, "verification_queue") == 0
    assert metrics.counter("actions_failed_total") == 1


def test_broadcast_preparation_failure_also_aborts(make_ctx, dispatcher) -> None:
    class BadBroadcast(StakeStrategy):
        def prepare_broadcast(self, scope, action, result):
            raise KeyError("rooms")

    ctx = make_ctx(registry=StrategyRegistry([BadBroadcast()]))
    with pytest.raises(ActionProcessingFailed):
        ctx.orchestrator.process(_stake(1000))
    assert _count(ctx, "action_log") == 0
    assert _count(ctx, "staker_positions") == 0
    assert dispatcher.messages == []


def test_storage_error_is_reported_as_transaction_error(make_ctx) -> None:
    class BrokenSql(StakeStrategy):
        def apply(self, scope, action):
            scope.con.execute("INSERT INTO no_such_table VALUES(1);")
            return {}

    ctx = make_ctx(registry=StrategyRegistry([BrokenSql()]))
    with pytest.raises(ActionProcessingFailed) as e:
        ctx.orchestrator.process(_stake(1))
    assert isinstance(e.value.cause, TransactionError)
    assert e.value.reason == "transaction_error"
    assert _count(ctx, "action_log") == 0


def test_unknown_kind_is_rejected_without_side_effects(make_ctx) -> None:
    ctx = make_ctx()
    with pytest.raises(ActionProcessingFailed) as e:
        ctx.orchestrator.process({"kind": "mint", "actor_key": "0xX", "payload": {}})
    assert isinstance(e.value.cause, UnknownActionKind)
    assert e.value.kind == "mint"
    assert _count(ctx, "action_log") == 0


@pytest.mark.parametrize(
    "request_body",
    [
        "not-an-object",
        {"kind": "stake", "actor_key": "   ", "payload": {"amount": 1}, "external_ref": "0x"},
        {"kind": "stake", "actor_key": "0xX", "payload": {"amount": 1}, "external_ref": "0x", "extra": 1},
    ],
)
def test_malformed_requests_are_validation_failures(make_ctx, request_body) -> None:
    ctx = make_ctx()
    with pytest.raises(ActionProcessingFailed) as e:
        ctx.orchestrator.process(request_body)
    assert isinstance(e.value.cause, ValidationError)
    assert _count(ctx, "action_log") == 0


def test_staking_without_external_ref_is_rejected(make_ctx) -> None:
    ctx = make_ctx()
    with pytest.raises(ActionProcessingFailed) as e:
        ctx.orchestrator.process({"kind": "stake", "actor_key": "0xX", "payload": {"amount": 1}})
    assert e.value.cause.reason == "external_ref_required"


def test_commit_with_external_ref_is_rejected(make_ctx) -> None:
    ctx = make_ctx(reward_calculator=FixedRewardCalculator(10))
    body = {"kind": "commit", "actor_key": "dev", "payload": {"commit_hash": "abc"}, "external_ref": "0xA"}
    with pytest.raises(ActionProcessingFailed) as e:
        ctx.orchestrator.process(body)
    assert e.value.cause.reason == "external_ref_not_allowed"
    assert _count(ctx, "commits") == 0


def test_commit_is_never_scheduled_and_cannot_be_rolled_back(make_ctx) -> None:
    ctx = make_ctx(reward_calculator=FixedRewardCalculator(10))
    res = ctx.orchestrator.process({"kind": "commit", "actor_key": "dev", "payload": {"commit_hash": "abc"}})
    assert res.verification_scheduled is False
    assert _count(ctx, "verification_queue") == 0

    with pytest.raises(RollbackUnsupported):
        ctx.orchestrator.rollback(res.id, "tx_reverted")

    assert ctx.orchestrator.get(res.id).status == ActionStatus.PENDING
    with ctx.db.connection() as con:
        row = con.execute("SELECT total_rewards FROM contributors WHERE actor_key='dev';").fetchone()
    assert row["total_rewards"] == 10


def test_confirm_does_not_touch_domain_state(make_ctx, clock) -> None:
    ctx = make_ctx()
    res = ctx.orchestrator.process(_stake(1000))
    before = _position(ctx, "0xX")

    clock.advance(40_000)
    rec = ctx.orchestrator.confirm(res.id, {"block": 12, "confirmations": 3})
    assert rec.status == ActionStatus.CONFIRMED
    assert rec.confirmed_ms == clock.now
    assert rec.verification_result == {"block": 12, "confirmations": 3}
    assert _position(ctx, "0xX") == before


def test_terminal_actions_reject_further_transitions(make_ctx) -> None:
    ctx = make_ctx()
    orch = ctx.orchestrator
    res = orch.process(_stake(1000))
    orch.confirm(res.id)

    with pytest.raises(InvalidTransition):
        orch.confirm(res.id)
    with pytest.raises(InvalidTransition):
        orch.rollback(res.id, "tx_reverted")
    assert _position(ctx, "0xX")["locked_amount"] == 1000

    res2 = orch.process(_stake(500, actor="0xZ", ref="0xB"))
    orch.rollback(res2.id, "tx_reverted")
    with pytest.raises(InvalidTransition):
        orch.rollback(res2.id, "tx_reverted")
    assert _position(ctx, "0xZ")["locked_amount"] == 0


def test_unknown_action_id(make_ctx) -> None:
    ctx = make_ctx()
    with pytest.raises(ActionNotFound):
        ctx.orchestrator.confirm("nope")
    with pytest.raises(ActionNotFound):
        ctx.orchestrator.rollback("nope", "tx_reverted")
    with pytest.raises(ActionNotFound):
        ctx.orchestrator.get("nope")


def test_compensation_failure_is_fatal_and_changes_nothing(make_ctx, dispatcher, caplog) -> None:
    ctx = make_ctx()
    res = ctx.orchestrator.process(_stake(1000))
    with ctx.db.write_tx() as con:
        con.execute("DELETE FROM staker_positions WHERE actor_key='0xX';")

    with caplog.at_level("CRITICAL", logger="actionflow.orchestrator"):
        with pytest.raises(CompensationFailed) as e:
            ctx.orchestrator.rollback(res.id, "tx_reverted")

    assert e.value.reason == "compensation"
    assert ctx.orchestrator.get(res.id).status == ActionStatus.PENDING
    assert metrics.counter("compensation_failed_total") == 1
    assert any("compensation_failed" in r.getMessage() for r in caplog.records if r.levelname == "CRITICAL")
    assert dispatcher.of_type("staking_rollback") == []


def test_dispatcher_failure_does_not_affect_the_action(make_ctx) -> None:
    class Broken:
        def dispatch(self, message):
            raise ConnectionError("socket closed")

    ctx = make_ctx(dispatcher=Broken())
    res = ctx.orchestrator.process(_stake(1000))
    assert ctx.orchestrator.get(res.id).status == ActionStatus.PENDING
    assert _position(ctx, "0xX")["locked_amount"] == 1000
    assert res.verification_scheduled
    assert metrics.counter("broadcast_failed_total") == 1

    rec = ctx.orchestrator.rollback(res.id, "tx_reverted")
    assert rec.status == ActionStatus.FAILED
    assert metrics.counter("broadcast_failed_total") == 2


def test_scheduler_failure_does_not_affect_the_action(make_ctx, monkeypatch) -> None:
    ctx = make_ctx()

    def boom(*a, **kw):
        raise RuntimeError("queue unavailable")

    monkeypatch.setattr(ctx.scheduler, "schedule", boom)
    res = ctx.orchestrator.process(_stake(1000))
    assert res.verification_scheduled is False
    assert ctx.orchestrator.get(res.id).status == ActionStatus.PENDING
    assert metrics.counter("verification_schedule_failed_total") == 1


def test_ledger_listing_and_counts(make_ctx, clock) -> None:
    ctx = make_ctx()
    orch = ctx.orchestrator
    a = orch.process(_stake(1, ref="0x1"))
    clock.advance(1)
    b = orch.process(_stake(2, ref="0x2"))
    orch.confirm(a.id)

    listed = ctx.ledger.list_for_actor("0xX")
    assert [r.id for r in listed] == [b.id, a.id]
    assert ctx.ledger.count_by_status() == {"pending": 1, "confirmed": 1, "failed": 0}


def test_custom_registry_with_commit_only(make_ctx) -> None:
    ctx = make_ctx(registry=StrategyRegistry([CommitStrategy(reward_calculator=FixedRewardCalculator(1))]))
    with pytest.raises(ActionProcessingFailed) as e:
        ctx.orchestrator.process(_stake(1))
    assert isinstance(e.value.cause, UnknownActionKind)
