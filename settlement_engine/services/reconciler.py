"""Background reconciliation: resolve stuck settlements, republish undelivered events"""

import asyncio
import logging
from typing import Callable, List
from sqlalchemy.orm import Session

from settlement_engine.config import settings
from settlement_engine.domain.exceptions import InvalidTransitionError
from settlement_engine.domain.models import SettlementStatus
from settlement_engine.infrastructure.clients.processor import PaymentProcessorClient
from settlement_engine.infrastructure.database.models import Settlement
from settlement_engine.infrastructure.database.repositories import OutboxRepository, SettlementStore
from settlement_engine.infrastructure.observability.metrics import (
    outbox_redelivery_counter,
    record_settlement,
    swept_settlement_counter,
)
from settlement_engine.infrastructure.realtime.events import event_from_payload
from settlement_engine.infrastructure.realtime.notifier import RealtimeNotifier
from settlement_engine.services.coordinator import SettlementCoordinator, status_event
from settlement_engine.utils.time_utils import seconds_ago

logger = logging.getLogger(__name__)

DEADLINE_REASON = "settlement deadline exceeded"


class Reconciler:
    """
    Periodic backstop for the coordinator.

    - Pending settlements older than the deadline never reached the processor
      and are failed
    - Processing settlements older than the deadline are re-queried with their
      original idempotency key and completed or failed on the answer
    - Outbox events that never reached the notifier are published again
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        notifier: RealtimeNotifier,
        processor: PaymentProcessorClient,
        deadline_seconds: int | None = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.processor = processor
        self.deadline_seconds = (
            settings.settlement_deadline_seconds if deadline_seconds is None else deadline_seconds
        )

    async def sweep_expired(self, db: Session) -> List[Settlement]:
        """Resolve every in-flight settlement past its deadline"""
        store = SettlementStore(db)
        coordinator = SettlementCoordinator(db, self.processor, self.notifier)
        swept = []
        for stale in store.expired_in_flight(seconds_ago(self.deadline_seconds)):
            stale_id = stale.id
            if stale.status == SettlementStatus.PROCESSING.value:
                await coordinator.verify(stale_id)
                settlement = store.get(stale_id)
            else:
                try:
                    settlement = store.fail(stale_id, DEADLINE_REASON)
                except InvalidTransitionError:
                    # Reached a terminal state on its own since the query
                    continue
                db.commit()
                record_settlement(settlement.status, settlement.amount_minor)
                await self.notifier.publish_to_member(settlement.from_member_id, status_event(settlement))

            swept.append(settlement)
            swept_settlement_counter.inc()
            logger.warning(
                "Settlement expired",
                extra={
                    "settlement_id": str(settlement.id),
                    "group_id": settlement.group_id,
                    "outcome": settlement.status,
                },
            )
        return swept

    async def redeliver_outbox(self, db: Session) -> int:
        """Publish pending outbox events; returns how many were delivered"""
        outbox = OutboxRepository(db)
        delivered = 0
        for row in outbox.pending():
            event = event_from_payload(row.payload)
            if not await self.notifier.publish(row.group_id, event):
                continue
            outbox.mark_delivered(row.id)
            db.commit()
            delivered += 1
            outbox_redelivery_counter.inc()
        return delivered

    async def run_once(self) -> None:
        db = self.session_factory()
        try:
            await self.sweep_expired(db)
            await self.redeliver_outbox(db)
        finally:
            db.close()

    async def run_forever(self, interval_seconds: float | None = None) -> None:
        interval = settings.reconcile_interval_seconds if interval_seconds is None else interval_seconds
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Reconciliation pass failed: {e}")
            await asyncio.sleep(interval)
