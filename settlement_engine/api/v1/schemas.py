"""Pydantic schemas for API request/response validation"""

from pydantic import BaseModel, Field
from typing import Dict, List, Optional


class MemberRequest(BaseModel):
    """Request body for POST /v1/groups/{group_id}/members"""

    member_id: str = Field(..., min_length=1, description="Member identifier")
    display_name: Optional[str] = None


class MemberResponse(BaseModel):
    group_id: str
    member_id: str
    display_name: Optional[str] = None


class DebtSchema(BaseModel):
    """Single debt: from_member owes to_member"""

    from_member_id: str = Field(..., min_length=1)
    to_member_id: str = Field(..., min_length=1)
    amount_minor: int = Field(..., gt=0, description="Amount in minor currency units")


class DebtBatchRequest(BaseModel):
    """Request body for POST /v1/groups/{group_id}/debts"""

    debts: List[DebtSchema] = Field(..., min_length=1)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class DebtBatchResponse(BaseModel):
    group_id: str
    recorded: int


class CounterpartSchema(BaseModel):
    member_id: str
    amount_minor: int


class BalanceSchema(BaseModel):
    member_id: str
    net_balance: int
    owes_to: List[CounterpartSchema]
    owed_by: List[CounterpartSchema]


class BalancesResponse(BaseModel):
    """Response for GET /v1/groups/{group_id}/balances"""

    group_id: str
    balances: List[BalanceSchema]


class TransferSchema(BaseModel):
    from_member_id: str
    to_member_id: str
    amount_minor: int = Field(..., gt=0)
    from_display_name: Optional[str] = None
    to_display_name: Optional[str] = None


class PlanResponse(BaseModel):
    """Response for POST /v1/groups/{group_id}/optimize"""

    group_id: str
    transfers: List[TransferSchema]
    transaction_count_before: int
    transaction_count_after: int
    savings_percent: int


class ApplyPlanRequest(BaseModel):
    """Request body for POST /v1/groups/{group_id}/plan/apply"""

    transfers: List[TransferSchema]
    payment_method: str = Field(..., min_length=1)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class SettlementRequest(BaseModel):
    """Request body for POST /v1/groups/{group_id}/settlements"""

    from_member_id: str = Field(..., min_length=1)
    to_member_id: str = Field(..., min_length=1)
    amount_minor: int = Field(..., gt=0, description="Amount in minor currency units")
    payment_method: str = Field(..., min_length=1)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class SettlementHandleResponse(BaseModel):
    settlement_id: str
    group_id: str
    from_member_id: str
    to_member_id: str
    amount_minor: int
    status: str
    transaction_ref: Optional[str] = None
    failure_reason: Optional[str] = None


class SettlementSchema(BaseModel):
    """Persisted settlement record"""

    settlement_id: str
    group_id: str
    from_member_id: str
    to_member_id: str
    amount_minor: int
    currency: str
    status: str
    payment_method: str
    transaction_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: str
    completed_at: Optional[str] = None


class StatusHistorySchema(BaseModel):
    from_status: Optional[str] = None
    to_status: str
    reason: Optional[str] = None
    changed_at: str


class SettlementDetailResponse(BaseModel):
    """Response for GET /v1/settlements/{settlement_id}"""

    settlement: SettlementSchema
    history: List[StatusHistorySchema]


class SettlementListResponse(BaseModel):
    """Response for GET /v1/groups/{group_id}/settlements"""

    group_id: str
    items: List[SettlementSchema]
    total: int
    page: int
    limit: int


class SettlementSummaryResponse(BaseModel):
    """Response for GET /v1/groups/{group_id}/settlements/summary"""

    group_id: str
    total_settlements: int
    counts_by_status: Dict[str, int]
    completed_amount_minor: int
    recent: List[SettlementSchema]
    generated_at: str


class MethodShareSchema(BaseModel):
    method: str
    count: int
    percentage: int


class DailyVolumeSchema(BaseModel):
    day: str
    volume_minor: int
    count: int


class MemberActivitySchema(BaseModel):
    member_id: str
    sent_count: int
    received_count: int
    total_volume_minor: int


class SettlementStatsResponse(BaseModel):
    """Response for GET /v1/groups/{group_id}/settlements/stats"""

    group_id: str
    period: str
    since: str
    total_volume_minor: int
    transaction_count: int
    average_transaction_minor: int
    success_rate_percent: int
    payment_methods: List[MethodShareSchema]
    daily: List[DailyVolumeSchema]
    members: List[MemberActivitySchema]


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RetryRequest(BaseModel):
    payment_method: Optional[str] = None
