"""Data access layer for the group ledger, settlements, and the event outbox"""

import uuid
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from settlement_engine.config import settings
from settlement_engine.infrastructure.database.models import (
    GroupMember,
    GroupDebt,
    Settlement,
    SettlementStatusHistory,
    OutboxEvent,
)
from settlement_engine.domain.balances import aggregate, validate_debts
from settlement_engine.domain.lifecycle import can_transition
from settlement_engine.domain.models import (
    BalanceDetail,
    Debt,
    Transfer,
    SettlementStatus,
    SettlementSummary,
    SettlementStats,
    StatsPeriod,
    MethodShare,
    DailyVolume,
    MemberActivity,
    IN_FLIGHT_STATUSES,
)
from settlement_engine.domain.exceptions import (
    InvalidTransitionError,
    InvalidSettlementError,
    SettlementInFlightError,
    SettlementNotFoundError,
)
from settlement_engine.utils.time_utils import as_naive_utc, seconds_ago, utcnow


def parse_settlement_id(settlement_id) -> uuid.UUID:
    """Accept UUIDs or their string form; anything else cannot exist"""
    if isinstance(settlement_id, uuid.UUID):
        return settlement_id
    try:
        return uuid.UUID(str(settlement_id))
    except ValueError:
        raise SettlementNotFoundError(f"Settlement {settlement_id} not found")


class GroupRepository:
    """Repository for group rosters"""

    def __init__(self, db: Session):
        self.db = db

    def add_member(self, group_id: str, member_id: str, display_name: Optional[str] = None) -> GroupMember:
        """Add a member to the roster; re-adding updates the display name"""
        member = (
            self.db.query(GroupMember)
            .filter(GroupMember.group_id == group_id, GroupMember.member_id == member_id)
            .first()
        )
        if member is None:
            member = GroupMember(group_id=group_id, member_id=member_id, display_name=display_name)
            self.db.add(member)
        elif display_name:
            member.display_name = display_name
        self.db.flush()
        return member

    def list_members(self, group_id: str) -> List[GroupMember]:
        return (
            self.db.query(GroupMember)
            .filter(GroupMember.group_id == group_id)
            .order_by(GroupMember.member_id)
            .all()
        )


class LedgerRepository:
    """
    Repository for the group debt ledger.

    Balances are never stored; group_balances() recomputes them from active
    ledger rows on every read.
    """

    def __init__(self, db: Session):
        self.db = db

    def record_debts(self, group_id: str, debts: List[Debt], currency: Optional[str] = None) -> List[GroupDebt]:
        """
        Append a batch of debts, all or nothing.

        Raises:
            InvalidDebtError: if any debt in the batch is malformed
        """
        validate_debts(debts)
        rows = [
            GroupDebt(
                group_id=group_id,
                from_member_id=debt.from_member_id,
                to_member_id=debt.to_member_id,
                amount_minor=debt.amount_minor,
                currency=currency or settings.default_currency,
                kind="debt",
            )
            for debt in debts
        ]
        self.db.add_all(rows)
        self.db.flush()
        return rows

    def record_settlement(self, settlement: Settlement) -> GroupDebt:
        """Offset a completed payment: the payee now 'owes' the payer the paid amount"""
        row = GroupDebt(
            group_id=settlement.group_id,
            from_member_id=settlement.to_member_id,
            to_member_id=settlement.from_member_id,
            amount_minor=settlement.amount_minor,
            currency=settlement.currency,
            kind="settlement",
            settlement_id=settlement.id,
        )
        self.db.add(row)
        return row

    def active_debts(self, group_id: str) -> List[Debt]:
        rows = (
            self.db.query(GroupDebt)
            .filter(GroupDebt.group_id == group_id, GroupDebt.superseded_at.is_(None))
            .order_by(GroupDebt.created_at, GroupDebt.id)
            .all()
        )
        return [Debt(r.from_member_id, r.to_member_id, r.amount_minor) for r in rows]

    def group_balances(self, group_id: str) -> List[BalanceDetail]:
        """Canonical balance read path: aggregate active ledger rows over the roster"""
        roster = [m.member_id for m in GroupRepository(self.db).list_members(group_id)]
        return aggregate(self.active_debts(group_id), roster)

    def supersede_with(self, group_id: str, transfers: List[Transfer], currency: Optional[str] = None) -> int:
        """
        Replace the group's active ledger with simplified transfers.

        Old rows are kept for history with superseded_at set. Returns the number
        of rows superseded.
        """
        now = utcnow()
        superseded = (
            self.db.query(GroupDebt)
            .filter(GroupDebt.group_id == group_id, GroupDebt.superseded_at.is_(None))
            .update({GroupDebt.superseded_at: now}, synchronize_session=False)
        )
        self.db.add_all(
            [
                GroupDebt(
                    group_id=group_id,
                    from_member_id=t.from_member_id,
                    to_member_id=t.to_member_id,
                    amount_minor=t.amount_minor,
                    currency=currency or settings.default_currency,
                    kind="simplified",
                    created_at=now,
                )
                for t in transfers
            ]
        )
        self.db.flush()
        return superseded


class SettlementStore:
    """
    Repository and state machine for settlements.

    Every transition is a compare-and-set UPDATE on the current status, so two
    racing requests on the same settlement resolve to exactly one winner; the
    loser gets InvalidTransitionError. Methods flush but never commit.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        group_id: str,
        from_member_id: str,
        to_member_id: str,
        amount_minor: int,
        payment_method: str,
        currency: Optional[str] = None,
    ) -> Settlement:
        """
        Insert a pending settlement.

        The partial unique index on in-flight (group, from, to) makes this a
        conditional insert. On conflict only the insert savepoint is rolled back;
        earlier uncommitted work in the session survives.

        Raises:
            InvalidSettlementError: non-positive amount or self-payment
            SettlementInFlightError: a pending/processing settlement exists for the pair
        """
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
            raise InvalidSettlementError(f"Settlement amount must be a positive integer, got {amount_minor}")
        if from_member_id == to_member_id:
            raise InvalidSettlementError("Settlement payer and payee must differ")
        if not payment_method:
            raise InvalidSettlementError("Payment method is required")

        now = utcnow()
        settlement = Settlement(
            id=uuid.uuid4(),
            group_id=group_id,
            from_member_id=from_member_id,
            to_member_id=to_member_id,
            amount_minor=amount_minor,
            currency=currency or settings.default_currency,
            status=SettlementStatus.PENDING.value,
            payment_method=payment_method,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.db.begin_nested():
                self.db.add(settlement)
                self.db.add(
                    SettlementStatusHistory(
                        settlement_id=settlement.id,
                        from_status=None,
                        to_status=SettlementStatus.PENDING.value,
                        changed_at=now,
                    )
                )
        except IntegrityError as e:
            raise SettlementInFlightError(group_id, from_member_id, to_member_id) from e

        return settlement

    def get(self, settlement_id) -> Settlement:
        sid = parse_settlement_id(settlement_id)
        settlement = self.db.get(Settlement, sid, populate_existing=True)
        if settlement is None:
            raise SettlementNotFoundError(f"Settlement {settlement_id} not found")
        return settlement

    def _transition(
        self,
        settlement_id,
        target: SettlementStatus,
        reason: Optional[str] = None,
        **values,
    ) -> Settlement:
        settlement = self.get(settlement_id)
        current = SettlementStatus(settlement.status)
        if not can_transition(current, target):
            raise InvalidTransitionError(str(settlement.id), current.value, target.value)

        now = utcnow()
        result = self.db.execute(
            update(Settlement)
            .where(Settlement.id == settlement.id, Settlement.status == current.value)
            .values(status=target.value, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Lost the race: someone else moved it first
            winner = self.get(settlement.id)
            raise InvalidTransitionError(str(settlement.id), winner.status, target.value)

        self.db.add(
            SettlementStatusHistory(
                settlement_id=settlement.id,
                from_status=current.value,
                to_status=target.value,
                reason=reason,
                changed_at=now,
            )
        )
        self.db.flush()
        return self.get(settlement.id)

    def transition_to_processing(self, settlement_id) -> Settlement:
        return self._transition(settlement_id, SettlementStatus.PROCESSING)

    def complete(self, settlement_id, transaction_ref: str) -> Settlement:
        """Mark a processing settlement completed and offset it in the ledger"""
        settlement = self._transition(
            settlement_id,
            SettlementStatus.COMPLETED,
            transaction_ref=transaction_ref,
            completed_at=utcnow(),
        )
        LedgerRepository(self.db).record_settlement(settlement)
        self.db.flush()
        return settlement

    def fail(self, settlement_id, reason: str) -> Settlement:
        """
        Fail a pending or processing settlement.

        Repeating the call with the same reason on an already-failed settlement is
        a no-op, so duplicate failure notifications are harmless.
        """
        settlement = self.get(settlement_id)
        if settlement.status == SettlementStatus.FAILED.value and settlement.failure_reason == reason:
            return settlement
        return self._transition(settlement_id, SettlementStatus.FAILED, reason=reason, failure_reason=reason)

    def cancel(self, settlement_id, reason: Optional[str] = None) -> Settlement:
        return self._transition(settlement_id, SettlementStatus.CANCELLED, reason=reason)

    def annotate_failure(self, settlement_id, reason: str) -> Settlement:
        """Administrative correction of a failed settlement's reason"""
        settlement = self.get(settlement_id)
        if settlement.status != SettlementStatus.FAILED.value:
            raise InvalidTransitionError(str(settlement.id), settlement.status, SettlementStatus.FAILED.value)
        settlement.failure_reason = reason
        settlement.updated_at = utcnow()
        self.db.flush()
        return settlement

    def history(self, settlement_id) -> List[SettlementStatusHistory]:
        sid = parse_settlement_id(settlement_id)
        return (
            self.db.query(SettlementStatusHistory)
            .filter(SettlementStatusHistory.settlement_id == sid)
            .order_by(SettlementStatusHistory.id)
            .all()
        )

    def list(
        self,
        group_id: str,
        status: Optional[SettlementStatus] = None,
        member_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Settlement], int]:
        """Page through a group's settlements, newest first"""
        query = self.db.query(Settlement).filter(Settlement.group_id == group_id)
        if status is not None:
            query = query.filter(Settlement.status == SettlementStatus(status).value)
        if member_id is not None:
            query = query.filter(
                (Settlement.from_member_id == member_id) | (Settlement.to_member_id == member_id)
            )

        total = query.count()
        page = max(page, 1)
        items = (
            query.order_by(Settlement.created_at.desc(), Settlement.id)
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def summary(self, group_id: str, recent_limit: int = 5) -> SettlementSummary:
        rows = (
            self.db.query(Settlement.status, func.count(Settlement.id))
            .filter(Settlement.group_id == group_id)
            .group_by(Settlement.status)
            .all()
        )
        counts = {status.value: 0 for status in SettlementStatus}
        for status, count in rows:
            counts[status] = count

        completed_amount = (
            self.db.query(func.coalesce(func.sum(Settlement.amount_minor), 0))
            .filter(
                Settlement.group_id == group_id,
                Settlement.status == SettlementStatus.COMPLETED.value,
            )
            .scalar()
        )
        recent, _ = self.list(group_id, limit=recent_limit)

        return SettlementSummary(
            group_id=group_id,
            total_settlements=sum(counts.values()),
            counts_by_status=counts,
            completed_amount_minor=int(completed_amount),
            recent=recent,
            generated_at=utcnow(),
        )

    def export_rows(
        self,
        group_id: str,
        status: Optional[SettlementStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> List[Settlement]:
        """Settlements created in [date_from, date_to], oldest first"""
        query = self.db.query(Settlement).filter(Settlement.group_id == group_id)
        if status is not None:
            query = query.filter(Settlement.status == SettlementStatus(status).value)
        if date_from is not None:
            query = query.filter(Settlement.created_at >= as_naive_utc(date_from))
        if date_to is not None:
            query = query.filter(Settlement.created_at <= as_naive_utc(date_to))
        return query.order_by(Settlement.created_at, Settlement.id).all()

    def stats(self, group_id: str, period: StatsPeriod = StatsPeriod.MONTH) -> SettlementStats:
        """Volume, success rate, payment methods and member activity over a period"""
        period = StatsPeriod(period)
        since = seconds_ago(period.days * 86400)
        rows = self.export_rows(group_id, date_from=since)

        completed = [s for s in rows if s.status == SettlementStatus.COMPLETED.value]
        finished = [s for s in rows if SettlementStatus(s.status).is_terminal]
        volume = sum(s.amount_minor for s in completed)

        method_counts = Counter(s.payment_method for s in rows)
        methods = [
            MethodShare(method, count, _percent(count, len(rows)))
            for method, count in sorted(method_counts.items(), key=lambda item: (-item[1], item[0]))
        ]

        daily: Dict[str, DailyVolume] = {}
        members: Dict[str, MemberActivity] = {}
        for s in completed:
            day = (s.completed_at or s.updated_at).date().isoformat()
            bucket = daily.setdefault(day, DailyVolume(day, 0, 0))
            bucket.volume_minor += s.amount_minor
            bucket.count += 1

            payer = members.setdefault(s.from_member_id, MemberActivity(s.from_member_id))
            payer.sent_count += 1
            payer.total_volume_minor += s.amount_minor
            payee = members.setdefault(s.to_member_id, MemberActivity(s.to_member_id))
            payee.received_count += 1
            payee.total_volume_minor += s.amount_minor

        return SettlementStats(
            group_id=group_id,
            period=period,
            since=since,
            total_volume_minor=volume,
            transaction_count=len(rows),
            average_transaction_minor=_half_up_div(volume, len(completed)),
            success_rate_percent=_percent(len(completed), len(finished)),
            payment_methods=methods,
            daily=[daily[day] for day in sorted(daily)],
            members=sorted(members.values(), key=lambda m: (-m.total_volume_minor, m.member_id)),
        )

    def in_flight_count(self, group_id: str) -> int:
        return (
            self.db.query(Settlement)
            .filter(
                Settlement.group_id == group_id,
                Settlement.status.in_([s.value for s in IN_FLIGHT_STATUSES]),
            )
            .count()
        )

    def expired_in_flight(self, cutoff) -> List[Settlement]:
        """Non-terminal settlements untouched since before cutoff"""
        return (
            self.db.query(Settlement)
            .filter(
                Settlement.status.in_([s.value for s in IN_FLIGHT_STATUSES]),
                Settlement.updated_at < cutoff,
            )
            .order_by(Settlement.updated_at)
            .all()
        )


class OutboxRepository:
    """Repository for undelivered realtime events"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, group_id: str, event_type: str, payload: dict) -> OutboxEvent:
        event = OutboxEvent(group_id=group_id, event_type=event_type, payload=payload)
        self.db.add(event)
        self.db.flush()
        return event

    def pending(self, limit: int = 100) -> List[OutboxEvent]:
        return (
            self.db.query(OutboxEvent)
            .filter(OutboxEvent.status == "pending")
            .order_by(OutboxEvent.created_at)
            .limit(limit)
            .all()
        )

    def mark_delivered(self, event_id: uuid.UUID) -> None:
        self.db.query(OutboxEvent).filter(OutboxEvent.id == event_id).update(
            {
                OutboxEvent.status: "delivered",
                OutboxEvent.last_attempt_at: utcnow(),
                OutboxEvent.attempts: OutboxEvent.attempts + 1,
            },
            synchronize_session=False,
        )


def _half_up_div(numerator: int, denominator: int) -> int:
    if denominator == 0:
        return 0
    return (2 * numerator + denominator) // (2 * denominator)


def _percent(part: int, whole: int) -> int:
    return _half_up_div(100 * part, whole)
