"""Settlement endpoints - initiate, inspect, cancel, retry, verify, export"""

import csv
import io
from dataclasses import asdict
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.orm import Session

from settlement_engine.api.v1.schemas import (
    CancelRequest,
    DailyVolumeSchema,
    MemberActivitySchema,
    MethodShareSchema,
    RetryRequest,
    SettlementDetailResponse,
    SettlementHandleResponse,
    SettlementListResponse,
    SettlementRequest,
    SettlementSchema,
    SettlementStatsResponse,
    SettlementSummaryResponse,
    StatusHistorySchema,
)
from settlement_engine.api.v1.errors import to_http_exception
from settlement_engine.api.dependencies import get_coordinator, get_request_id
from settlement_engine.infrastructure.database.session import get_db
from settlement_engine.infrastructure.database.models import Settlement
from settlement_engine.infrastructure.database.repositories import SettlementStore
from settlement_engine.domain.models import SettlementHandle, SettlementStatus, StatsPeriod
from settlement_engine.domain.exceptions import DomainException
from settlement_engine.services.coordinator import SettlementCoordinator

router = APIRouter()


def handle_to_response(handle: SettlementHandle) -> SettlementHandleResponse:
    return SettlementHandleResponse(
        settlement_id=handle.settlement_id,
        group_id=handle.group_id,
        from_member_id=handle.from_member_id,
        to_member_id=handle.to_member_id,
        amount_minor=handle.amount_minor,
        status=handle.status.value,
        transaction_ref=handle.transaction_ref,
        failure_reason=handle.failure_reason,
    )


def settlement_to_schema(s: Settlement) -> SettlementSchema:
    return SettlementSchema(
        settlement_id=str(s.id),
        group_id=s.group_id,
        from_member_id=s.from_member_id,
        to_member_id=s.to_member_id,
        amount_minor=s.amount_minor,
        currency=s.currency,
        status=s.status,
        payment_method=s.payment_method,
        transaction_ref=s.transaction_ref,
        failure_reason=s.failure_reason,
        created_at=s.created_at.isoformat(),
        completed_at=s.completed_at.isoformat() if s.completed_at else None,
    )


@router.post("/groups/{group_id}/settlements", response_model=SettlementHandleResponse)
async def initiate_settlement(
    group_id: str,
    request_body: SettlementRequest,
    request: Request,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    """
    Pay a member directly ("Pay Now").

    Flow:
    1. Validate the amount against live balances
    2. Create the settlement; duplicates for the same pair are rejected (409)
    3. Charge through the payment processor
    4. Return the settlement's terminal status
    """
    try:
        handle = await coordinator.initiate(
            group_id,
            request_body.from_member_id,
            request_body.to_member_id,
            request_body.amount_minor,
            request_body.payment_method,
            request_body.currency,
        )
    except DomainException as e:
        coordinator.db.rollback()
        raise to_http_exception(e, get_request_id(request))

    return handle_to_response(handle)


@router.get("/groups/{group_id}/settlements", response_model=SettlementListResponse)
def list_settlements(
    group_id: str,
    request: Request,
    status: Optional[SettlementStatus] = Query(None, description="Filter by status"),
    member_id: Optional[str] = Query(None, description="Only settlements paid or received by this member"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    items, total = SettlementStore(db).list(group_id, status=status, member_id=member_id, page=page, limit=limit)
    return SettlementListResponse(
        group_id=group_id,
        items=[settlement_to_schema(s) for s in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/groups/{group_id}/settlements/summary", response_model=SettlementSummaryResponse)
def get_settlement_summary(group_id: str, db: Session = Depends(get_db)):
    """
    Settlement statistics for a group.

    Returns:
        Counts per status, completed volume, and the most recent settlements
    """
    summary = SettlementStore(db).summary(group_id)
    return SettlementSummaryResponse(
        group_id=group_id,
        total_settlements=summary.total_settlements,
        counts_by_status=summary.counts_by_status,
        completed_amount_minor=summary.completed_amount_minor,
        recent=[settlement_to_schema(s) for s in summary.recent],
        generated_at=summary.generated_at.isoformat(),
    )


EXPORT_COLUMNS = [
    "settlement_id",
    "created_at",
    "completed_at",
    "from_member_id",
    "to_member_id",
    "amount_minor",
    "currency",
    "status",
    "payment_method",
    "transaction_ref",
    "failure_reason",
]


@router.get("/groups/{group_id}/settlements/export")
def export_settlements(
    group_id: str,
    status: Optional[SettlementStatus] = Query(None, description="Filter by status"),
    date_from: Optional[datetime] = Query(None, description="Created at or after (ISO 8601)"),
    date_to: Optional[datetime] = Query(None, description="Created at or before (ISO 8601)"),
    db: Session = Depends(get_db),
):
    """Settlement history as CSV, oldest first"""
    rows = SettlementStore(db).export_rows(group_id, status=status, date_from=date_from, date_to=date_to)

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    for s in rows:
        writer.writerow(
            [
                str(s.id),
                s.created_at.isoformat(),
                s.completed_at.isoformat() if s.completed_at else "",
                s.from_member_id,
                s.to_member_id,
                s.amount_minor,
                s.currency,
                s.status,
                s.payment_method,
                s.transaction_ref or "",
                s.failure_reason or "",
            ]
        )

    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="settlements-{group_id}.csv"'},
    )


@router.get("/groups/{group_id}/settlements/stats", response_model=SettlementStatsResponse)
def get_settlement_stats(
    group_id: str,
    period: StatsPeriod = Query(StatsPeriod.MONTH, description="week, month, quarter or year"),
    db: Session = Depends(get_db),
):
    stats = SettlementStore(db).stats(group_id, period)
    return SettlementStatsResponse(
        group_id=group_id,
        period=stats.period.value,
        since=stats.since.isoformat(),
        total_volume_minor=stats.total_volume_minor,
        transaction_count=stats.transaction_count,
        average_transaction_minor=stats.average_transaction_minor,
        success_rate_percent=stats.success_rate_percent,
        payment_methods=[MethodShareSchema(**asdict(m)) for m in stats.payment_methods],
        daily=[DailyVolumeSchema(**asdict(d)) for d in stats.daily],
        members=[MemberActivitySchema(**asdict(m)) for m in stats.members],
    )


@router.get("/settlements/{settlement_id}", response_model=SettlementDetailResponse)
def get_settlement(settlement_id: str, request: Request, db: Session = Depends(get_db)):
    store = SettlementStore(db)
    try:
        settlement = store.get(settlement_id)
    except DomainException as e:
        raise to_http_exception(e, get_request_id(request))

    return SettlementDetailResponse(
        settlement=settlement_to_schema(settlement),
        history=[
            StatusHistorySchema(
                from_status=h.from_status,
                to_status=h.to_status,
                reason=h.reason,
                changed_at=h.changed_at.isoformat(),
            )
            for h in store.history(settlement.id)
        ],
    )


@router.post("/settlements/{settlement_id}/cancel", response_model=SettlementHandleResponse)
async def cancel_settlement(
    settlement_id: str,
    request_body: CancelRequest,
    request: Request,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    """Cancel a settlement that has not reached the processor yet"""
    try:
        handle = await coordinator.cancel(settlement_id, request_body.reason)
    except DomainException as e:
        coordinator.db.rollback()
        raise to_http_exception(e, get_request_id(request))

    return handle_to_response(handle)


@router.post("/settlements/{settlement_id}/retry", response_model=SettlementHandleResponse)
async def retry_settlement(
    settlement_id: str,
    request_body: RetryRequest,
    request: Request,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    """Start a fresh attempt for a failed settlement"""
    try:
        handle = await coordinator.retry(settlement_id, request_body.payment_method)
    except DomainException as e:
        coordinator.db.rollback()
        raise to_http_exception(e, get_request_id(request))

    return handle_to_response(handle)


@router.post("/settlements/{settlement_id}/verify", response_model=SettlementHandleResponse)
async def verify_settlement(
    settlement_id: str,
    request: Request,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    """
    Re-query the processor for a settlement stuck in processing.

    Completes or fails it on the processor's answer; other statuses are
    returned as they are.
    """
    try:
        handle = await coordinator.verify(settlement_id)
    except DomainException as e:
        coordinator.db.rollback()
        raise to_http_exception(e, get_request_id(request))

    return handle_to_response(handle)
