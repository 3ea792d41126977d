"""Realtime events - cues for clients to re-fetch authoritative state"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
from settlement_engine.utils.time_utils import utcnow


@dataclass
class Event:
    group_id: str
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=utcnow)

    event_type = "event"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.event_type,
            "event_id": self.event_id,
            "group_id": self.group_id,
            "occurred_at": self.occurred_at.isoformat(),
        }


@dataclass
class BalanceChanged(Event):
    """Group balances changed; carries no amounts on purpose"""

    event_type = "balance_changed"


@dataclass
class SettlementStatusChanged(Event):
    settlement_id: str = ""
    status: str = ""
    member_id: Optional[str] = None  # initiating member

    event_type = "settlement_status_changed"

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload.update(settlement_id=self.settlement_id, status=self.status, member_id=self.member_id)
        return payload


EVENT_TYPES = {cls.event_type: cls for cls in (BalanceChanged, SettlementStatusChanged)}


def event_from_payload(payload: Dict[str, Any]) -> Event:
    """Rebuild an event stored in the outbox, keeping its id for deduplication"""
    cls = EVENT_TYPES[payload["type"]]
    kwargs = {
        "group_id": payload["group_id"],
        "event_id": payload["event_id"],
        "occurred_at": datetime.fromisoformat(payload["occurred_at"]),
    }
    if cls is SettlementStatusChanged:
        kwargs.update(
            settlement_id=payload.get("settlement_id", ""),
            status=payload.get("status", ""),
            member_id=payload.get("member_id"),
        )
    return cls(**kwargs)
