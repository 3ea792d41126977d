"""In-process fan-out of balance and settlement events to group subscribers"""

import asyncio
import logging
from collections import OrderedDict
from typing import Dict, Iterable, Optional, Set
from settlement_engine.config import settings
from settlement_engine.infrastructure.realtime.events import Event, BalanceChanged
from settlement_engine.infrastructure.observability.metrics import coalesced_event_counter

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """
    Scoped event handle for one member's view of one group.

    Use as an async context manager or call close(); either way the handle is
    removed from the notifier and a pending iteration ends.
    """

    def __init__(self, notifier: "RealtimeNotifier", group_id: str, member_id: Optional[str], max_queue: int):
        self.notifier = notifier
        self.group_id = group_id
        self.member_id = member_id
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)

    def deliver(self, item) -> None:
        if self.closed and item is not _CLOSED:
            return
        if self._queue.full():
            # Slow consumer: drop the oldest cue, receivers re-fetch state anyway
            self._queue.get_nowait()
            logger.warning("Subscriber queue full", extra={"group_id": self.group_id, "member_id": self.member_id})
        self._queue.put_nowait(item)

    async def get(self) -> Event:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.notifier._unsubscribe(self)
        self.deliver(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        return await self.get()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class RealtimeNotifier:
    """
    Publish/subscribe keyed by group id.

    BalanceChanged events for the same group inside the coalescing window are
    collapsed so only the latest is delivered. Events already seen (same
    event_id) are dropped, which absorbs at-least-once redelivery.
    """

    def __init__(self, coalesce_window_seconds: float | None = None, dedupe_size: int = 1024, max_queue: int = 100):
        self.coalesce_window = (
            settings.coalesce_window_seconds if coalesce_window_seconds is None else coalesce_window_seconds
        )
        self.dedupe_size = dedupe_size
        self.max_queue = max_queue
        self._by_group: Dict[str, Set[Subscription]] = {}
        self._by_member: Dict[str, Set[Subscription]] = {}
        self._pending_balance: Dict[str, BalanceChanged] = {}
        self._flush_tasks: Dict[str, asyncio.Task] = {}
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def subscribe(self, group_id: str, member_id: Optional[str] = None) -> Subscription:
        subscription = Subscription(self, group_id, member_id, self.max_queue)
        self._by_group.setdefault(group_id, set()).add(subscription)
        if member_id is not None:
            self._by_member.setdefault(member_id, set()).add(subscription)
        return subscription

    def subscriber_count(self, group_id: str) -> int:
        return len(self._by_group.get(group_id, ()))

    def _unsubscribe(self, subscription: Subscription) -> None:
        group_subs = self._by_group.get(subscription.group_id)
        if group_subs is not None:
            group_subs.discard(subscription)
            if not group_subs:
                del self._by_group[subscription.group_id]
        if subscription.member_id is not None:
            member_subs = self._by_member.get(subscription.member_id)
            if member_subs is not None:
                member_subs.discard(subscription)
                if not member_subs:
                    del self._by_member[subscription.member_id]

    def _is_duplicate(self, event: Event) -> bool:
        if event.event_id in self._seen:
            return True
        self._seen[event.event_id] = None
        if len(self._seen) > self.dedupe_size:
            self._seen.popitem(last=False)
        return False

    @staticmethod
    def _fan_out(subscriptions: Iterable[Subscription], event: Event) -> None:
        for subscription in list(subscriptions):
            subscription.deliver(event)

    async def publish(self, group_id: str, event: Event) -> bool:
        """
        Broadcast to every subscriber of the group.

        Returns True once the event has been fanned out, False while it waits in
        the coalescing window. Callers keep outbox rows pending until True.
        """
        if self._is_duplicate(event):
            return not self._is_buffered(group_id, event)

        if isinstance(event, BalanceChanged) and self.coalesce_window > 0:
            if group_id in self._pending_balance:
                coalesced_event_counter.inc()
            self._pending_balance[group_id] = event
            if group_id not in self._flush_tasks:
                self._flush_tasks[group_id] = asyncio.create_task(self._flush_later(group_id))
            return False

        self._fan_out(self._by_group.get(group_id, ()), event)
        return True

    def _is_buffered(self, group_id: str, event: Event) -> bool:
        pending = self._pending_balance.get(group_id)
        return pending is not None and pending.event_id == event.event_id

    async def publish_to_member(self, member_id: str, event: Event) -> None:
        """Deliver to one member's subscriptions for the event's group only"""
        if self._is_duplicate(event):
            return
        targets = [s for s in self._by_member.get(member_id, ()) if s.group_id == event.group_id]
        self._fan_out(targets, event)

    async def _flush_later(self, group_id: str) -> None:
        await asyncio.sleep(self.coalesce_window)
        self._flush_tasks.pop(group_id, None)
        self._deliver_pending(group_id)

    def _deliver_pending(self, group_id: str) -> None:
        event = self._pending_balance.pop(group_id, None)
        if event is not None:
            self._fan_out(self._by_group.get(group_id, ()), event)

    async def flush(self) -> None:
        """Deliver coalesced events immediately"""
        for group_id in list(self._flush_tasks):
            self._flush_tasks.pop(group_id).cancel()
        for group_id in list(self._pending_balance):
            self._deliver_pending(group_id)

    async def close(self) -> None:
        """Flush pending events and end every subscription"""
        await self.flush()
        for subscriptions in list(self._by_group.values()):
            for subscription in list(subscriptions):
                subscription.close()
