"""Settlement orchestration - validate, charge, record, recompute, notify"""

import logging
import time
from typing import List, Optional
from sqlalchemy.orm import Session

from settlement_engine.domain.balances import net_balance_vector
from settlement_engine.domain.netting import optimize, apply_transfers
from settlement_engine.domain.models import (
    BalanceDetail,
    SettlementHandle,
    SettlementPlan,
    SettlementStatus,
)
from settlement_engine.domain.exceptions import (
    ExcessiveSettlementAmountError,
    InvalidTransitionError,
    SettlementInFlightError,
    StalePlanError,
)
from settlement_engine.infrastructure.clients.processor import PaymentProcessorClient
from settlement_engine.infrastructure.database.models import Settlement
from settlement_engine.infrastructure.database.repositories import (
    LedgerRepository,
    OutboxRepository,
    SettlementStore,
)
from settlement_engine.infrastructure.observability.logging import log_plan, log_settlement_outcome
from settlement_engine.infrastructure.observability.metrics import (
    plan_savings_histogram,
    record_outstanding,
    record_settlement,
)
from settlement_engine.infrastructure.realtime.events import BalanceChanged, SettlementStatusChanged
from settlement_engine.infrastructure.realtime.notifier import RealtimeNotifier

logger = logging.getLogger(__name__)


def to_handle(settlement: Settlement) -> SettlementHandle:
    return SettlementHandle(
        settlement_id=str(settlement.id),
        group_id=settlement.group_id,
        from_member_id=settlement.from_member_id,
        to_member_id=settlement.to_member_id,
        amount_minor=settlement.amount_minor,
        status=SettlementStatus(settlement.status),
        transaction_ref=settlement.transaction_ref,
        failure_reason=settlement.failure_reason,
    )


def status_event(settlement: Settlement) -> SettlementStatusChanged:
    return SettlementStatusChanged(
        group_id=settlement.group_id,
        settlement_id=str(settlement.id),
        status=settlement.status,
        member_id=settlement.from_member_id,
    )


class SettlementCoordinator:
    """
    Drives one settlement from request to terminal state.

    The coordinator performs no money movement itself; the processor does. It
    owns the commit boundaries: each state change is committed before the next
    external step so a crash never leaves an uncommitted in-flight record.
    """

    def __init__(self, db: Session, processor: PaymentProcessorClient, notifier: RealtimeNotifier):
        self.db = db
        self.processor = processor
        self.notifier = notifier
        self.store = SettlementStore(db)
        self.ledger = LedgerRepository(db)
        self.outbox = OutboxRepository(db)

    def balances(self, group_id: str) -> List[BalanceDetail]:
        return self.ledger.group_balances(group_id)

    def optimize(self, group_id: str) -> SettlementPlan:
        """Plan settlements for a group from its live balances"""
        plan = optimize(self.balances(group_id))
        plan_savings_histogram.observe(plan.savings_percent)
        log_plan(group_id, plan.transaction_count_after, plan.transaction_count_before, plan.savings_percent)
        return plan

    async def initiate(
        self,
        group_id: str,
        from_member_id: str,
        to_member_id: str,
        amount_minor: int,
        payment_method: str,
        currency: Optional[str] = None,
    ) -> SettlementHandle:
        """
        Pay part or all of what from_member owes to_member.

        Flow:
        1. Check the amount against live balances (not a cached plan)
        2. Create the pending settlement (conditional insert)
        3. Move to processing and call the processor
        4. Apply the outcome, recompute, notify

        Raises:
            ExcessiveSettlementAmountError: amount above the current debt
            SettlementInFlightError: another attempt for the pair is in flight
            InvalidSettlementError: malformed request
        """
        owed = self._owed(group_id, from_member_id, to_member_id)
        if amount_minor > owed:
            raise ExcessiveSettlementAmountError(
                f"{from_member_id} owes {to_member_id} {owed}, cannot settle {amount_minor}"
            )

        settlement = self.store.create(
            group_id, from_member_id, to_member_id, amount_minor, payment_method, currency
        )
        self.db.commit()
        return await self._process(settlement)

    def _owed(self, group_id: str, from_member_id: str, to_member_id: str) -> int:
        for balance in self.balances(group_id):
            if balance.member_id == from_member_id:
                return balance.owed_to(to_member_id)
        return 0

    async def _process(self, settlement: Settlement) -> SettlementHandle:
        settlement = self.store.transition_to_processing(settlement.id)
        self.db.commit()
        record_settlement(settlement.status, settlement.amount_minor)
        await self.notifier.publish(settlement.group_id, status_event(settlement))
        return await self._charge(settlement)

    async def _charge(self, settlement: Settlement) -> SettlementHandle:
        """Ask the processor to move the money and apply its answer"""
        start_time = time.time()
        result = await self.processor.charge(
            amount_minor=settlement.amount_minor,
            currency=settlement.currency,
            method=settlement.payment_method,
            idempotency_key=str(settlement.id),
        )

        if result.success:
            settlement = await self._on_success(settlement, result.transaction_ref)
        else:
            settlement = await self._on_failure(settlement, result.reason)

        duration_ms = (time.time() - start_time) * 1000
        log_settlement_outcome(
            str(settlement.id),
            settlement.group_id,
            settlement.status,
            settlement.amount_minor,
            duration_ms,
            settlement.failure_reason,
        )
        return to_handle(settlement)

    async def verify(self, settlement_id) -> SettlementHandle:
        """
        Re-query the processor for a settlement stuck in processing.

        The charge is replayed with the settlement id as idempotency key, so a
        payment the processor already took is reported back, never taken twice.
        Settlements in any other status are returned unchanged.
        """
        settlement = self.store.get(settlement_id)
        if settlement.status != SettlementStatus.PROCESSING.value:
            return to_handle(settlement)
        return await self._charge(settlement)

    async def _on_success(self, settlement: Settlement, transaction_ref: str) -> Settlement:
        try:
            settlement = self.store.complete(settlement.id, transaction_ref)
        except InvalidTransitionError:
            # The reconciler swept it while the charge was running
            self.db.rollback()
            logger.error(
                "Charge succeeded for a settlement that is no longer processing",
                extra={"settlement_id": str(settlement.id), "transaction_ref": transaction_ref},
            )
            return self.store.get(settlement.id)

        balance_event = BalanceChanged(group_id=settlement.group_id)
        outbox_row = self.outbox.add(settlement.group_id, balance_event.event_type, balance_event.to_payload())
        self.db.commit()
        record_settlement(settlement.status, settlement.amount_minor)

        balances = self.balances(settlement.group_id)
        record_outstanding(settlement.group_id, balances)

        await self.notifier.publish(settlement.group_id, status_event(settlement))
        # A buffered event keeps its outbox row pending for the reconciler
        if await self.notifier.publish(settlement.group_id, balance_event):
            self.outbox.mark_delivered(outbox_row.id)
            self.db.commit()
        return settlement

    async def _on_failure(self, settlement: Settlement, reason: Optional[str]) -> Settlement:
        try:
            settlement = self.store.fail(settlement.id, reason or "payment failed")
        except InvalidTransitionError:
            self.db.rollback()
            return self.store.get(settlement.id)
        self.db.commit()
        record_settlement(settlement.status, settlement.amount_minor)
        await self.notifier.publish_to_member(settlement.from_member_id, status_event(settlement))
        return settlement

    async def apply_plan(
        self,
        group_id: str,
        plan: SettlementPlan,
        payment_method: str,
        currency: Optional[str] = None,
    ) -> List[SettlementHandle]:
        """
        Simplify the group's debts to the plan's transfers, then pay each one.

        Raises:
            SettlementInFlightError: a payment in the group is still in flight
            StalePlanError: the plan no longer nets the group's live balances to zero
        """
        if self.store.in_flight_count(group_id):
            raise SettlementInFlightError(group_id, "*", "*")

        live = net_balance_vector(self.balances(group_id))
        if apply_transfers(plan.transfers) != live:
            raise StalePlanError(f"Plan for group {group_id} does not match live balances")

        self.ledger.supersede_with(group_id, plan.transfers, currency)
        self.db.commit()
        await self.notifier.publish(group_id, BalanceChanged(group_id=group_id))

        handles = []
        for transfer in plan.transfers:
            handle = await self.initiate(
                group_id,
                transfer.from_member_id,
                transfer.to_member_id,
                transfer.amount_minor,
                payment_method,
                currency,
            )
            handles.append(handle)
        return handles

    async def cancel(self, settlement_id, reason: Optional[str] = None) -> SettlementHandle:
        """User cancel; only honored while pending"""
        settlement = self.store.cancel(settlement_id, reason)
        self.db.commit()
        record_settlement(settlement.status, settlement.amount_minor)
        await self.notifier.publish(settlement.group_id, status_event(settlement))
        return to_handle(settlement)

    async def retry(self, settlement_id, payment_method: Optional[str] = None) -> SettlementHandle:
        """Fresh attempt for a failed settlement; the failed record stays as is"""
        failed = self.store.get(settlement_id)
        if failed.status != SettlementStatus.FAILED.value:
            raise InvalidTransitionError(str(failed.id), failed.status, SettlementStatus.PENDING.value)
        return await self.initiate(
            failed.group_id,
            failed.from_member_id,
            failed.to_member_id,
            failed.amount_minor,
            payment_method or failed.payment_method,
            failed.currency,
        )
