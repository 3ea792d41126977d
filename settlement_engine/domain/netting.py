"""Settlement optimization - greedy netting of group balances into transfers"""

import logging
from typing import List, Tuple
from settlement_engine.domain.models import BalanceDetail, SettlementPlan, Transfer
from settlement_engine.domain.exceptions import ImbalancedLedgerError

logger = logging.getLogger(__name__)


def _sorted_by_magnitude(entries: List[Tuple[str, int]]) -> List[Tuple[str, int]]:
    """Largest amount first, ties broken by member id ascending"""
    return sorted(entries, key=lambda entry: (-entry[1], entry[0]))


def calculate_savings_percent(before: int, after: int) -> int:
    """
    Percentage of transactions removed by netting, rounded half up.

    A fully settled group (before == 0) has nothing to save and reports 0.
    """
    if before == 0:
        return 0
    # Integer half-up rounding of 100 * (before - after) / before
    return (200 * (before - after) + before) // (2 * before)


def count_pairwise_debts(balances: List[BalanceDetail]) -> int:
    """Number of nonzero netted pairwise debts; each edge appears once in owes_to"""
    return sum(len(b.owes_to) for b in balances)


def pairwise_transfers(balances: List[BalanceDetail]) -> List[Transfer]:
    """The netted pairwise debts themselves, paid as they stand"""
    return [
        Transfer(from_member_id=b.member_id, to_member_id=line.member_id, amount_minor=line.amount_minor)
        for b in balances
        for line in b.owes_to
    ]


def minimize_transfers(balances: List[BalanceDetail]) -> List[Transfer]:
    """
    Match the largest remaining debtor with the largest remaining creditor.

    Algorithm:
    1. Sort creditors (net > 0) and debtors (net < 0) once by magnitude
    2. Pay min(creditor, debtor) from the current debtor to the current creditor
    3. Advance past whichever side reached zero; the other stays current
    4. Stop when either list is exhausted; both must run out together

    Known limitation: this greedy heuristic usually, but not provably, finds the
    fewest transfers. Exact min-cash-flow is NP-hard in general.

    Raises:
        ImbalancedLedgerError: net balances do not sum to zero
    """
    creditors = _sorted_by_magnitude([(b.member_id, b.net_balance) for b in balances if b.net_balance > 0])
    debtors = _sorted_by_magnitude([(b.member_id, -b.net_balance) for b in balances if b.net_balance < 0])

    transfers: List[Transfer] = []
    i = j = 0
    credit = creditors[0][1] if creditors else 0
    debt = debtors[0][1] if debtors else 0

    while i < len(creditors) and j < len(debtors):
        creditor_id = creditors[i][0]
        debtor_id = debtors[j][0]

        amount = min(credit, debt)
        transfers.append(Transfer(from_member_id=debtor_id, to_member_id=creditor_id, amount_minor=amount))
        credit -= amount
        debt -= amount

        if credit == 0:
            i += 1
            credit = creditors[i][1] if i < len(creditors) else 0
        if debt == 0:
            j += 1
            debt = debtors[j][1] if j < len(debtors) else 0

    if i < len(creditors) or j < len(debtors):
        unmatched_credit = credit + sum(amount for _, amount in creditors[i + 1:])
        unmatched_debt = debt + sum(amount for _, amount in debtors[j + 1:])
        logger.error(
            "Imbalanced ledger",
            extra={"unmatched_credit_minor": unmatched_credit, "unmatched_debt_minor": unmatched_debt},
        )
        raise ImbalancedLedgerError(
            f"Balances do not sum to zero: {unmatched_credit} unmatched credit, "
            f"{unmatched_debt} unmatched debt"
        )

    return transfers


def optimize(balances: List[BalanceDetail]) -> SettlementPlan:
    """
    Main entry point: compute the settlement plan and its savings.

    Returns an empty plan for a settled group rather than raising. When the
    greedy sweep would need more transfers than the group already has netted
    debts, the netted debts are the plan, so a plan never adds transactions.
    """
    transfers = minimize_transfers(balances)
    before = count_pairwise_debts(balances)
    if 0 < before < len(transfers):
        transfers = pairwise_transfers(balances)
    after = len(transfers)

    return SettlementPlan(
        transfers=transfers,
        transaction_count_before=before,
        transaction_count_after=after,
        savings_percent=calculate_savings_percent(before, after),
    )


def apply_transfers(transfers: List[Transfer]) -> dict:
    """
    Net effect of transfers per member (+received, -paid).

    A plan is balance-preserving when this equals the input net balance vector.
    """
    effect = {}
    for transfer in transfers:
        effect[transfer.to_member_id] = effect.get(transfer.to_member_id, 0) + transfer.amount_minor
        effect[transfer.from_member_id] = effect.get(transfer.from_member_id, 0) - transfer.amount_minor
    return {member_id: amount for member_id, amount in effect.items() if amount != 0}
