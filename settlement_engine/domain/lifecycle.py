"""Settlement state machine - legal transitions between lifecycle states"""

from typing import Dict, FrozenSet
from settlement_engine.domain.models import SettlementStatus

# target status -> statuses it may be entered from
ALLOWED_SOURCES: Dict[SettlementStatus, FrozenSet[SettlementStatus]] = {
    SettlementStatus.PROCESSING: frozenset({SettlementStatus.PENDING}),
    SettlementStatus.COMPLETED: frozenset({SettlementStatus.PROCESSING}),
    SettlementStatus.FAILED: frozenset({SettlementStatus.PENDING, SettlementStatus.PROCESSING}),
    SettlementStatus.CANCELLED: frozenset({SettlementStatus.PENDING}),
}


def can_transition(current: SettlementStatus, target: SettlementStatus) -> bool:
    """True if target is reachable from current in one step"""
    return current in ALLOWED_SOURCES.get(target, frozenset())
