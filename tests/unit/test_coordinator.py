"""Unit tests for settlement orchestration"""

import pytest
from unittest.mock import AsyncMock
from sqlalchemy.orm import Session
from settlement_engine.services.coordinator import SettlementCoordinator
from settlement_engine.services.reconciler import Reconciler
from settlement_engine.infrastructure.database.models import OutboxEvent
from settlement_engine.infrastructure.database.repositories import SettlementStore
from settlement_engine.infrastructure.realtime.events import BalanceChanged, SettlementStatusChanged
from settlement_engine.infrastructure.realtime.notifier import RealtimeNotifier
from settlement_engine.domain.models import ChargeResult, SettlementPlan, SettlementStatus, Transfer
from settlement_engine.domain.exceptions import (
    ExcessiveSettlementAmountError,
    InvalidTransitionError,
    SettlementInFlightError,
    StalePlanError,
)


async def drain(subscription) -> list:
    events = []
    while subscription.pending():
        events.append(await subscription.get())
    return events


async def test_initiate_success_settles_and_notifies(
    coordinator: SettlementCoordinator, processor: AsyncMock, notifier: RealtimeNotifier, seed_group, db: Session
):
    group_id = seed_group([("alice", "bob", 5000)])
    watcher = notifier.subscribe(group_id, "carol")

    handle = await coordinator.initiate(group_id, "alice", "bob", 5000, "upi")

    assert handle.status == SettlementStatus.COMPLETED
    assert handle.transaction_ref == "txn_test_1"
    processor.charge.assert_awaited_once_with(
        amount_minor=5000,
        currency="INR",
        method="upi",
        idempotency_key=handle.settlement_id,
    )
    assert all(b.net_balance == 0 for b in coordinator.balances(group_id))

    events = await drain(watcher)
    statuses = [e.status for e in events if isinstance(e, SettlementStatusChanged)]
    assert statuses == ["processing", "completed"]
    assert isinstance(events[-1], BalanceChanged)

    outbox = db.query(OutboxEvent).one()
    assert outbox.status == "delivered"


async def test_partial_payment_leaves_remainder(coordinator: SettlementCoordinator, seed_group):
    group_id = seed_group([("alice", "bob", 5000)])

    await coordinator.initiate(group_id, "alice", "bob", 2000, "upi")

    alice = coordinator.balances(group_id)[0]
    assert alice.net_balance == -3000


async def test_initiate_rejects_amount_above_debt(
    coordinator: SettlementCoordinator, processor: AsyncMock, seed_group, db: Session
):
    group_id = seed_group([("alice", "bob", 5000)])

    with pytest.raises(ExcessiveSettlementAmountError):
        await coordinator.initiate(group_id, "alice", "bob", 5001, "upi")

    processor.charge.assert_not_awaited()
    assert SettlementStore(db).list(group_id)[1] == 0


async def test_initiate_rejects_payment_against_debt_direction(coordinator: SettlementCoordinator, seed_group):
    group_id = seed_group([("alice", "bob", 5000)])

    with pytest.raises(ExcessiveSettlementAmountError):
        await coordinator.initiate(group_id, "bob", "alice", 100, "upi")


async def test_initiate_rejects_pair_in_flight(coordinator: SettlementCoordinator, seed_group, db: Session):
    group_id = seed_group([("alice", "bob", 5000)])
    SettlementStore(db).create(group_id, "alice", "bob", 1000, "upi")
    db.commit()

    with pytest.raises(SettlementInFlightError):
        await coordinator.initiate(group_id, "alice", "bob", 1000, "upi")


async def test_failure_notifies_only_initiator(
    coordinator: SettlementCoordinator, processor: AsyncMock, notifier: RealtimeNotifier, seed_group
):
    processor.charge.return_value = ChargeResult.failed("card declined")
    group_id = seed_group([("alice", "bob", 5000)])
    alice = notifier.subscribe(group_id, "alice")
    bob = notifier.subscribe(group_id, "bob")

    handle = await coordinator.initiate(group_id, "alice", "bob", 5000, "upi")

    assert handle.status == SettlementStatus.FAILED
    assert handle.failure_reason == "card declined"
    assert [e.status for e in await drain(alice)] == ["processing", "failed"]
    assert [e.status for e in await drain(bob)] == ["processing"]
    # A failed payment moves no money
    assert coordinator.balances(group_id)[0].net_balance == -5000


async def test_success_after_sweep_does_not_resurrect(
    coordinator: SettlementCoordinator, processor: AsyncMock, seed_group, db: Session
):
    """Test a charge that lands after the settlement was already failed"""
    group_id = seed_group([("alice", "bob", 5000)])

    async def charge_after_sweep(**kwargs):
        SettlementStore(db).fail(kwargs["idempotency_key"], "settlement deadline exceeded")
        db.commit()
        return ChargeResult.succeeded("txn_late")

    processor.charge.side_effect = charge_after_sweep

    handle = await coordinator.initiate(group_id, "alice", "bob", 5000, "upi")

    assert handle.status == SettlementStatus.FAILED
    assert coordinator.balances(group_id)[0].net_balance == -5000


def test_optimize_uses_live_balances(coordinator: SettlementCoordinator, seed_group):
    group_id = seed_group([("A", "B", 500), ("B", "C", 500)])

    plan = coordinator.optimize(group_id)

    assert plan.transfers == [Transfer("A", "C", 500)]
    assert plan.savings_percent == 50


async def test_apply_plan_simplifies_then_pays(
    coordinator: SettlementCoordinator, processor: AsyncMock, seed_group
):
    group_id = seed_group([("A", "B", 500), ("B", "C", 500)])
    plan = coordinator.optimize(group_id)

    handles = await coordinator.apply_plan(group_id, plan, "upi")

    assert [(h.from_member_id, h.to_member_id, h.status) for h in handles] == [
        ("A", "C", SettlementStatus.COMPLETED)
    ]
    assert processor.charge.await_count == 1
    assert all(b.net_balance == 0 for b in coordinator.balances(group_id))


async def test_apply_plan_rejects_stale_plan(coordinator: SettlementCoordinator, seed_group, db: Session):
    group_id = seed_group([("A", "B", 500), ("B", "C", 500)])
    plan = coordinator.optimize(group_id)
    seed_group([("A", "C", 100)])

    with pytest.raises(StalePlanError):
        await coordinator.apply_plan(group_id, plan, "upi")


async def test_apply_plan_rejects_while_payment_in_flight(
    coordinator: SettlementCoordinator, seed_group, db: Session
):
    group_id = seed_group([("A", "B", 500)])
    SettlementStore(db).create(group_id, "A", "B", 100, "upi")
    db.commit()
    plan = SettlementPlan([Transfer("A", "B", 500)], 1, 1, 0)

    with pytest.raises(SettlementInFlightError):
        await coordinator.apply_plan(group_id, plan, "upi")


async def test_cancel_pending(coordinator: SettlementCoordinator, notifier: RealtimeNotifier, seed_group, db: Session):
    group_id = seed_group([("alice", "bob", 5000)])
    settlement = SettlementStore(db).create(group_id, "alice", "bob", 1000, "upi")
    db.commit()
    watcher = notifier.subscribe(group_id)

    handle = await coordinator.cancel(settlement.id, "changed my mind")

    assert handle.status == SettlementStatus.CANCELLED
    assert [e.status for e in await drain(watcher)] == ["cancelled"]


async def test_retry_failed_settlement_creates_new_attempt(
    coordinator: SettlementCoordinator, processor: AsyncMock, seed_group
):
    group_id = seed_group([("alice", "bob", 5000)])
    processor.charge.return_value = ChargeResult.failed("card declined")
    failed = await coordinator.initiate(group_id, "alice", "bob", 5000, "card")

    processor.charge.return_value = ChargeResult.succeeded("txn_retry")
    retried = await coordinator.retry(failed.settlement_id, payment_method="upi")

    assert retried.settlement_id != failed.settlement_id
    assert retried.status == SettlementStatus.COMPLETED
    assert processor.charge.await_args.kwargs["method"] == "upi"


async def test_retry_requires_failed_settlement(coordinator: SettlementCoordinator, seed_group):
    group_id = seed_group([("alice", "bob", 5000)])
    completed = await coordinator.initiate(group_id, "alice", "bob", 1000, "upi")

    with pytest.raises(InvalidTransitionError):
        await coordinator.retry(completed.settlement_id)


async def test_coalesced_balance_event_keeps_outbox_pending(
    processor: AsyncMock, seed_group, db: Session, session_factory
):
    """Test the outbox row is only delivered once the buffered event reaches subscribers"""
    notifier = RealtimeNotifier(coalesce_window_seconds=10)
    coordinator = SettlementCoordinator(db, processor, notifier)
    group_id = seed_group([("alice", "bob", 5000)])
    watcher = notifier.subscribe(group_id)

    await coordinator.initiate(group_id, "alice", "bob", 5000, "upi")

    assert db.query(OutboxEvent).one().status == "pending"
    assert not any(isinstance(e, BalanceChanged) for e in await drain(watcher))

    await notifier.flush()
    assert await Reconciler(session_factory, notifier, processor).redeliver_outbox(db) == 1

    db.expire_all()
    assert db.query(OutboxEvent).one().status == "delivered"
    assert [type(e) for e in await drain(watcher)] == [BalanceChanged]


async def test_verify_completes_processing_settlement(
    coordinator: SettlementCoordinator, processor: AsyncMock, seed_group, db: Session
):
    group_id = seed_group([("alice", "bob", 5000)])
    store = SettlementStore(db)
    settlement = store.create(group_id, "alice", "bob", 2000, "upi")
    store.transition_to_processing(settlement.id)
    db.commit()

    handle = await coordinator.verify(settlement.id)

    assert handle.status == SettlementStatus.COMPLETED
    assert processor.charge.await_args.kwargs["idempotency_key"] == str(settlement.id)
    assert coordinator.balances(group_id)[0].net_balance == -3000


async def test_verify_leaves_other_statuses_alone(
    coordinator: SettlementCoordinator, processor: AsyncMock, seed_group, db: Session
):
    group_id = seed_group([("alice", "bob", 5000)])
    settlement = SettlementStore(db).create(group_id, "alice", "bob", 2000, "upi")
    db.commit()

    handle = await coordinator.verify(settlement.id)

    assert handle.status == SettlementStatus.PENDING
    processor.charge.assert_not_awaited()
