"""Domain models - pure Python dataclasses representing business entities"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


class SettlementStatus(str, enum.Enum):
    """Lifecycle states of a settlement attempt"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SettlementStatus.COMPLETED, SettlementStatus.FAILED, SettlementStatus.CANCELLED}
)
IN_FLIGHT_STATUSES = frozenset({SettlementStatus.PENDING, SettlementStatus.PROCESSING})


@dataclass(frozen=True)
class Debt:
    """Directed obligation: from_member owes to_member"""

    from_member_id: str
    to_member_id: str
    amount_minor: int


@dataclass(frozen=True)
class CounterpartAmount:
    """One line of a member's owes/owed breakdown"""

    member_id: str
    amount_minor: int


@dataclass
class BalanceDetail:
    """Per-member net position within a group"""

    member_id: str
    net_balance: int  # positive: group owes member, negative: member owes group
    owes_to: List[CounterpartAmount] = field(default_factory=list)
    owed_by: List[CounterpartAmount] = field(default_factory=list)

    def owed_to(self, member_id: str) -> int:
        """Amount this member currently owes the given counterpart"""
        for line in self.owes_to:
            if line.member_id == member_id:
                return line.amount_minor
        return 0


@dataclass(frozen=True)
class Transfer:
    """Single payment in a settlement plan"""

    from_member_id: str
    to_member_id: str
    amount_minor: int


@dataclass
class SettlementPlan:
    """Output of netting: transfers that re-zero every balance"""

    transfers: List[Transfer]
    transaction_count_before: int
    transaction_count_after: int
    savings_percent: int


@dataclass
class SettlementHandle:
    """Outcome of initiating a settlement, returned to callers"""

    settlement_id: str
    group_id: str
    from_member_id: str
    to_member_id: str
    amount_minor: int
    status: SettlementStatus
    transaction_ref: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass
class ChargeResult:
    """Payment processor outcome"""

    success: bool
    transaction_ref: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def succeeded(cls, transaction_ref: str) -> "ChargeResult":
        return cls(success=True, transaction_ref=transaction_ref)

    @classmethod
    def failed(cls, reason: str) -> "ChargeResult":
        return cls(success=False, reason=reason)


@dataclass
class MemberProfile:
    """Display information from the member directory"""

    member_id: str
    display_name: str
    avatar_ref: Optional[str] = None


@dataclass
class SettlementSummary:
    """Group-level settlement statistics"""

    group_id: str
    total_settlements: int
    counts_by_status: dict
    completed_amount_minor: int
    recent: list
    generated_at: datetime


class StatsPeriod(str, enum.Enum):
    """Look-back window for settlement analytics"""

    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"

    @property
    def days(self) -> int:
        return PERIOD_DAYS[self]


PERIOD_DAYS = {
    StatsPeriod.WEEK: 7,
    StatsPeriod.MONTH: 30,
    StatsPeriod.QUARTER: 90,
    StatsPeriod.YEAR: 365,
}


@dataclass
class MethodShare:
    method: str
    count: int
    percentage: int


@dataclass
class DailyVolume:
    day: str
    volume_minor: int
    count: int


@dataclass
class MemberActivity:
    member_id: str
    sent_count: int = 0
    received_count: int = 0
    total_volume_minor: int = 0


@dataclass
class SettlementStats:
    """
    Settlement analytics for one group over a period.

    Volume, averages and activity count completed settlements only;
    transaction_count and payment method shares count every attempt.
    """

    group_id: str
    period: StatsPeriod
    since: datetime
    total_volume_minor: int
    transaction_count: int
    average_transaction_minor: int
    success_rate_percent: int
    payment_methods: List[MethodShare] = field(default_factory=list)
    daily: List[DailyVolume] = field(default_factory=list)
    members: List[MemberActivity] = field(default_factory=list)
