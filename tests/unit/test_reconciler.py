"""Unit tests for the background reconciler"""

from unittest.mock import AsyncMock
from sqlalchemy.orm import Session
from settlement_engine.services.reconciler import DEADLINE_REASON, Reconciler
from settlement_engine.domain.models import ChargeResult
from settlement_engine.infrastructure.database.models import GroupDebt, OutboxEvent, Settlement
from settlement_engine.infrastructure.database.repositories import OutboxRepository, SettlementStore
from settlement_engine.infrastructure.realtime.events import BalanceChanged
from settlement_engine.infrastructure.realtime.notifier import RealtimeNotifier
from settlement_engine.utils.time_utils import seconds_ago


def age(db: Session, settlement_id, seconds: int) -> None:
    db.query(Settlement).filter(Settlement.id == settlement_id).update(
        {Settlement.updated_at: seconds_ago(seconds)}, synchronize_session=False
    )
    db.commit()


def stuck_processing(db: Session, seconds: int = 3600):
    store = SettlementStore(db)
    stuck = store.create("trip", "alice", "bob", 100, "upi")
    store.transition_to_processing(stuck.id)
    db.commit()
    stuck_id = stuck.id
    age(db, stuck_id, seconds)
    return stuck_id


async def test_sweep_fails_expired_pending(
    db: Session, session_factory, processor: AsyncMock, notifier: RealtimeNotifier
):
    store = SettlementStore(db)
    stuck = store.create("trip", "alice", "bob", 100, "upi")
    fresh = store.create("trip", "carol", "bob", 100, "upi")
    db.commit()
    stuck_id, fresh_id = stuck.id, fresh.id
    age(db, stuck_id, 3600)
    alice = notifier.subscribe("trip", "alice")

    swept = await Reconciler(session_factory, notifier, processor, deadline_seconds=900).sweep_expired(db)

    assert [s.id for s in swept] == [stuck_id]
    assert store.get(stuck_id).status == "failed"
    assert store.get(stuck_id).failure_reason == DEADLINE_REASON
    assert store.get(fresh_id).status == "pending"
    processor.charge.assert_not_awaited()
    event = await alice.get()
    assert event.status == "failed"


async def test_sweep_requeries_expired_processing(
    db: Session, session_factory, processor: AsyncMock, notifier: RealtimeNotifier
):
    """Test a charge the processor already took completes the stuck settlement"""
    stuck_id = stuck_processing(db)

    swept = await Reconciler(session_factory, notifier, processor, deadline_seconds=900).sweep_expired(db)

    assert [s.id for s in swept] == [stuck_id]
    settlement = SettlementStore(db).get(stuck_id)
    assert settlement.status == "completed"
    assert settlement.transaction_ref == "txn_test_1"
    assert processor.charge.await_args.kwargs["idempotency_key"] == str(stuck_id)
    offset = db.query(GroupDebt).filter(GroupDebt.kind == "settlement").one()
    assert (offset.from_member_id, offset.to_member_id, offset.amount_minor) == ("bob", "alice", 100)


async def test_sweep_fails_processing_the_processor_declines(
    db: Session, session_factory, processor: AsyncMock, notifier: RealtimeNotifier
):
    processor.charge.return_value = ChargeResult.failed("card declined")
    stuck_id = stuck_processing(db)

    swept = await Reconciler(session_factory, notifier, processor, deadline_seconds=900).sweep_expired(db)

    assert [s.status for s in swept] == ["failed"]
    assert SettlementStore(db).get(stuck_id).failure_reason == "card declined"


async def test_sweep_fails_processing_when_requery_fails(
    db: Session, session_factory, processor: AsyncMock, notifier: RealtimeNotifier
):
    processor.charge.return_value = ChargeResult.failed("processor unreachable: ConnectError")
    stuck_id = stuck_processing(db)

    await Reconciler(session_factory, notifier, processor, deadline_seconds=900).sweep_expired(db)

    settlement = SettlementStore(db).get(stuck_id)
    assert settlement.status == "failed"
    assert settlement.failure_reason.startswith("processor unreachable")
    assert db.query(GroupDebt).filter(GroupDebt.kind == "settlement").count() == 0


async def test_sweep_ignores_terminal_settlements(
    db: Session, session_factory, processor: AsyncMock, notifier: RealtimeNotifier
):
    store = SettlementStore(db)
    cancelled = store.create("trip", "alice", "bob", 100, "upi")
    store.cancel(cancelled.id)
    db.commit()
    cancelled_id = cancelled.id
    age(db, cancelled_id, 3600)

    swept = await Reconciler(session_factory, notifier, processor, deadline_seconds=900).sweep_expired(db)

    assert swept == []
    assert store.get(cancelled_id).status == "cancelled"


async def test_zero_deadline_is_not_replaced_by_default(
    db: Session, session_factory, processor: AsyncMock, notifier: RealtimeNotifier
):
    fresh = SettlementStore(db).create("trip", "alice", "bob", 100, "upi")
    db.commit()
    fresh_id = fresh.id
    age(db, fresh_id, 1)

    reconciler = Reconciler(session_factory, notifier, processor, deadline_seconds=0)
    swept = await reconciler.sweep_expired(db)

    assert reconciler.deadline_seconds == 0
    assert [s.id for s in swept] == [fresh_id]


async def test_redeliver_outbox_publishes_once(
    db: Session, session_factory, processor: AsyncMock, notifier: RealtimeNotifier
):
    event = BalanceChanged(group_id="trip")
    OutboxRepository(db).add("trip", event.event_type, event.to_payload())
    db.commit()
    watcher = notifier.subscribe("trip")
    reconciler = Reconciler(session_factory, notifier, processor)

    assert await reconciler.redeliver_outbox(db) == 1
    assert await reconciler.redeliver_outbox(db) == 0

    delivered = await watcher.get()
    assert isinstance(delivered, BalanceChanged)
    assert delivered.event_id == event.event_id
    assert db.query(OutboxEvent).one().status == "delivered"


async def test_redeliver_outbox_waits_for_coalesced_fan_out(
    db: Session, session_factory, processor: AsyncMock
):
    notifier = RealtimeNotifier(coalesce_window_seconds=10)
    event = BalanceChanged(group_id="trip")
    OutboxRepository(db).add("trip", event.event_type, event.to_payload())
    db.commit()
    reconciler = Reconciler(session_factory, notifier, processor)

    assert await reconciler.redeliver_outbox(db) == 0
    assert db.query(OutboxEvent).one().status == "pending"

    await notifier.flush()
    assert await reconciler.redeliver_outbox(db) == 1
    assert db.query(OutboxEvent).one().status == "delivered"


async def test_run_once_uses_its_own_session(
    db: Session, session_factory, processor: AsyncMock, notifier: RealtimeNotifier
):
    stuck = SettlementStore(db).create("trip", "alice", "bob", 100, "upi")
    db.commit()
    stuck_id = stuck.id
    age(db, stuck_id, 3600)

    await Reconciler(session_factory, notifier, processor, deadline_seconds=900).run_once()

    assert SettlementStore(db).get(stuck_id).status == "failed"
