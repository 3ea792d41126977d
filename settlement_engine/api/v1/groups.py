"""Group ledger endpoints - roster, debts, balances, optimization"""

import logging
from typing import Dict, List
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from settlement_engine.api.v1.schemas import (
    ApplyPlanRequest,
    BalanceSchema,
    BalancesResponse,
    CounterpartSchema,
    DebtBatchRequest,
    DebtBatchResponse,
    MemberRequest,
    MemberResponse,
    PlanResponse,
    SettlementHandleResponse,
    TransferSchema,
)
from settlement_engine.api.v1.errors import to_http_exception
from settlement_engine.api.v1.settlements import handle_to_response
from settlement_engine.api.dependencies import get_coordinator, get_directory_client, get_request_id
from settlement_engine.infrastructure.database.session import get_db
from settlement_engine.infrastructure.database.repositories import GroupRepository, LedgerRepository
from settlement_engine.infrastructure.clients.directory import MemberDirectoryClient
from settlement_engine.domain.models import Debt, SettlementPlan, Transfer
from settlement_engine.domain.exceptions import DomainException, MemberDirectoryError
from settlement_engine.services.coordinator import SettlementCoordinator

router = APIRouter()


@router.post("/groups/{group_id}/members", response_model=MemberResponse)
def add_member(group_id: str, request_body: MemberRequest, db: Session = Depends(get_db)):
    member = GroupRepository(db).add_member(group_id, request_body.member_id, request_body.display_name)
    db.commit()
    return MemberResponse(group_id=group_id, member_id=member.member_id, display_name=member.display_name)


@router.post("/groups/{group_id}/debts", response_model=DebtBatchResponse)
def record_debts(
    group_id: str,
    request_body: DebtBatchRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Record a batch of debts. The batch is rejected as a whole if any debt is invalid.
    """
    debts = [Debt(d.from_member_id, d.to_member_id, d.amount_minor) for d in request_body.debts]
    try:
        rows = LedgerRepository(db).record_debts(group_id, debts, request_body.currency)
        db.commit()
    except DomainException as e:
        db.rollback()
        raise to_http_exception(e, get_request_id(request))

    return DebtBatchResponse(group_id=group_id, recorded=len(rows))


@router.get("/groups/{group_id}/balances", response_model=BalancesResponse)
def get_balances(
    group_id: str,
    request: Request,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    """
    Net balances recomputed from the live ledger.

    Returns:
        One entry per member, including settled members with empty breakdowns
    """
    try:
        balances = coordinator.balances(group_id)
    except DomainException as e:
        raise to_http_exception(e, get_request_id(request))

    return BalancesResponse(
        group_id=group_id,
        balances=[
            BalanceSchema(
                member_id=b.member_id,
                net_balance=b.net_balance,
                owes_to=[CounterpartSchema(member_id=c.member_id, amount_minor=c.amount_minor) for c in b.owes_to],
                owed_by=[CounterpartSchema(member_id=c.member_id, amount_minor=c.amount_minor) for c in b.owed_by],
            )
            for b in balances
        ],
    )


async def _display_names(
    group_id: str,
    member_ids: List[str],
    db: Session,
    directory: MemberDirectoryClient,
) -> Dict[str, str]:
    """Directory names first, then the local roster, then the raw id"""
    roster = {m.member_id: m.display_name for m in GroupRepository(db).list_members(group_id)}
    names = {}
    for member_id in member_ids:
        try:
            names[member_id] = (await directory.get_member(member_id)).display_name
        except MemberDirectoryError as e:
            logging.warning(f"Member directory lookup failed: {e}", extra={"member_id": member_id})
            names[member_id] = roster.get(member_id) or member_id
    return names


@router.post("/groups/{group_id}/optimize", response_model=PlanResponse)
async def optimize_group(
    group_id: str,
    request: Request,
    db: Session = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
    directory: MemberDirectoryClient = Depends(get_directory_client),
):
    """
    Compute the settlement plan for a group.

    Returns:
        Transfers that zero every balance, with transaction-count savings
    """
    try:
        plan = coordinator.optimize(group_id)
    except DomainException as e:
        raise to_http_exception(e, get_request_id(request))

    member_ids = sorted({t.from_member_id for t in plan.transfers} | {t.to_member_id for t in plan.transfers})
    names = await _display_names(group_id, member_ids, db, directory)

    return PlanResponse(
        group_id=group_id,
        transfers=[
            TransferSchema(
                from_member_id=t.from_member_id,
                to_member_id=t.to_member_id,
                amount_minor=t.amount_minor,
                from_display_name=names.get(t.from_member_id),
                to_display_name=names.get(t.to_member_id),
            )
            for t in plan.transfers
        ],
        transaction_count_before=plan.transaction_count_before,
        transaction_count_after=plan.transaction_count_after,
        savings_percent=plan.savings_percent,
    )


@router.post("/groups/{group_id}/plan/apply", response_model=List[SettlementHandleResponse])
async def apply_plan(
    group_id: str,
    request_body: ApplyPlanRequest,
    request: Request,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    """
    Replace the group's debts with the plan's transfers and pay each one.

    A plan computed before another payment landed is rejected (409), so the
    client re-runs optimize instead of replaying stale amounts.
    """
    transfers = [Transfer(t.from_member_id, t.to_member_id, t.amount_minor) for t in request_body.transfers]
    plan = SettlementPlan(
        transfers=transfers,
        transaction_count_before=0,
        transaction_count_after=len(transfers),
        savings_percent=0,
    )
    try:
        handles = await coordinator.apply_plan(group_id, plan, request_body.payment_method, request_body.currency)
    except DomainException as e:
        coordinator.db.rollback()
        raise to_http_exception(e, get_request_id(request))

    return [handle_to_response(h) for h in handles]
