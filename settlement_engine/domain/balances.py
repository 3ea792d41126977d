"""Balance aggregation - raw pairwise debts to per-member net positions"""

from typing import Dict, Iterable, List, Tuple
from settlement_engine.domain.models import Debt, BalanceDetail, CounterpartAmount
from settlement_engine.domain.exceptions import InvalidDebtError


def validate_debts(debts: Iterable[Debt]) -> None:
    """
    Reject the whole batch if any debt is malformed.

    Raises:
        InvalidDebtError: self-debt, missing member id, or non-positive / non-integer amount
    """
    for index, debt in enumerate(debts):
        if not debt.from_member_id or not debt.to_member_id:
            raise InvalidDebtError(f"Debt #{index} is missing a member id")
        if debt.from_member_id == debt.to_member_id:
            raise InvalidDebtError(f"Debt #{index} is a self-debt for member {debt.from_member_id}")
        # bool is an int subclass; amounts must be real minor-unit integers
        if isinstance(debt.amount_minor, bool) or not isinstance(debt.amount_minor, int):
            raise InvalidDebtError(f"Debt #{index} amount must be integer minor units")
        if debt.amount_minor <= 0:
            raise InvalidDebtError(f"Debt #{index} amount must be positive, got {debt.amount_minor}")


def net_pairwise(debts: Iterable[Debt]) -> Dict[Tuple[str, str], int]:
    """
    Collapse debts to one signed amount per unordered pair.

    Key is (lower_id, higher_id); a positive value means lower_id owes higher_id.
    Pairs that cancel out exactly are dropped.
    """
    pair_totals: Dict[Tuple[str, str], int] = {}
    for debt in debts:
        if debt.from_member_id < debt.to_member_id:
            key = (debt.from_member_id, debt.to_member_id)
            signed = debt.amount_minor
        else:
            key = (debt.to_member_id, debt.from_member_id)
            signed = -debt.amount_minor
        pair_totals[key] = pair_totals.get(key, 0) + signed

    return {pair: amount for pair, amount in pair_totals.items() if amount != 0}


def aggregate(debts: List[Debt], members: Iterable[str] = ()) -> List[BalanceDetail]:
    """
    Turn raw debts into per-member balance details.

    Requirements:
    - Opposing debts between the same pair net to a single edge
    - Members without debts are reported as settled (zero balance, empty lists)
    - Output is sorted by member id; owes_to / owed_by by counterpart id

    Raises:
        InvalidDebtError: if any debt in the batch is malformed
    """
    debts = list(debts)
    validate_debts(debts)

    owes: Dict[str, List[CounterpartAmount]] = {}
    owed: Dict[str, List[CounterpartAmount]] = {}
    all_members = set(members)

    for (low, high), amount in net_pairwise(debts).items():
        debtor, creditor = (low, high) if amount > 0 else (high, low)
        magnitude = abs(amount)
        owes.setdefault(debtor, []).append(CounterpartAmount(creditor, magnitude))
        owed.setdefault(creditor, []).append(CounterpartAmount(debtor, magnitude))

    for debt in debts:
        all_members.add(debt.from_member_id)
        all_members.add(debt.to_member_id)

    details = []
    for member_id in sorted(all_members):
        owes_to = sorted(owes.get(member_id, []), key=lambda line: line.member_id)
        owed_by = sorted(owed.get(member_id, []), key=lambda line: line.member_id)
        net = sum(line.amount_minor for line in owed_by) - sum(line.amount_minor for line in owes_to)
        details.append(
            BalanceDetail(member_id=member_id, net_balance=net, owes_to=owes_to, owed_by=owed_by)
        )

    return details


def net_balance_vector(balances: Iterable[BalanceDetail]) -> Dict[str, int]:
    """Map of member id to net balance, omitting settled members"""
    return {b.member_id: b.net_balance for b in balances if b.net_balance != 0}
