"""Unit tests for settlement netting"""

import pytest
from settlement_engine.domain.balances import aggregate, net_balance_vector
from settlement_engine.domain.netting import (
    apply_transfers,
    calculate_savings_percent,
    optimize,
)
from settlement_engine.domain.models import BalanceDetail, CounterpartAmount, Debt, Transfer
from settlement_engine.domain.exceptions import ImbalancedLedgerError


def test_optimize_cycle_needs_no_transfers():
    """Test a debt cycle: 3 debts before, nothing to pay after"""
    balances = aggregate([Debt("A", "B", 100), Debt("B", "C", 100), Debt("C", "A", 100)])
    plan = optimize(balances)

    assert plan.transfers == []
    assert plan.transaction_count_before == 3
    assert plan.transaction_count_after == 0
    assert plan.savings_percent == 100


def test_optimize_matches_largest_debtor_first():
    """Test A:+300, B:-100, C:-200 settles as C→A 200 then B→A 100"""
    balances = [
        BalanceDetail("A", 300, owed_by=[CounterpartAmount("B", 100), CounterpartAmount("C", 200)]),
        BalanceDetail("B", -100, owes_to=[CounterpartAmount("A", 100)]),
        BalanceDetail("C", -200, owes_to=[CounterpartAmount("A", 200)]),
    ]
    plan = optimize(balances)

    assert plan.transfers == [Transfer("C", "A", 200), Transfer("B", "A", 100)]
    assert plan.transaction_count_before == 2
    assert plan.transaction_count_after == 2
    assert plan.savings_percent == 0


def test_optimize_collapses_debt_chain():
    """Test A owes B, B owes C the same amount: one direct payment A→C"""
    plan = optimize(aggregate([Debt("A", "B", 500), Debt("B", "C", 500)]))

    assert plan.transfers == [Transfer("A", "C", 500)]
    assert plan.transaction_count_before == 2
    assert plan.savings_percent == 50


def test_optimize_rejects_imbalanced_ledger():
    """Test balances that don't sum to zero fail loudly"""
    balances = [BalanceDetail("A", 50), BalanceDetail("B", -40)]

    with pytest.raises(ImbalancedLedgerError):
        optimize(balances)


def test_optimize_rejects_credit_without_debtors():
    with pytest.raises(ImbalancedLedgerError):
        optimize([BalanceDetail("A", 10)])


def test_optimize_empty_input_returns_empty_plan():
    plan = optimize([])

    assert plan.transfers == []
    assert plan.transaction_count_before == 0
    assert plan.transaction_count_after == 0
    assert plan.savings_percent == 0


def test_optimize_settled_members_only():
    plan = optimize([BalanceDetail("A", 0), BalanceDetail("B", 0)])
    assert plan.transfers == []
    assert plan.savings_percent == 0


def test_optimize_breaks_ties_by_member_id():
    """Test equal amounts are matched in member id order"""
    balances = [
        BalanceDetail("B", 100),
        BalanceDetail("A", 100),
        BalanceDetail("D", -100),
        BalanceDetail("C", -100),
    ]
    plan = optimize(balances)

    assert plan.transfers == [Transfer("C", "A", 100), Transfer("D", "B", 100)]


def test_optimize_preserves_net_balances():
    """Test applying the plan reproduces every member's net balance exactly"""
    debts = [
        Debt("ana", "ben", 1234),
        Debt("ben", "cai", 999),
        Debt("cai", "ana", 1),
        Debt("dev", "ana", 45000),
        Debt("ana", "dev", 12000),
        Debt("eve", "ben", 7),
        Debt("fay", "cai", 333),
        Debt("dev", "fay", 10),
    ]
    balances = aggregate(debts)
    plan = optimize(balances)

    assert apply_transfers(plan.transfers) == net_balance_vector(balances)
    assert all(t.amount_minor > 0 for t in plan.transfers)


@pytest.mark.parametrize(
    "debts",
    [
        [Debt("A", "B", 10)],
        [Debt("A", "B", 10), Debt("A", "C", 10)],
        [Debt("A", "B", 10), Debt("C", "D", 7)],
        [Debt("A", "B", 6), Debt("C", "B", 4), Debt("E", "D", 10)],
        [Debt("A", "B", 30), Debt("B", "C", 20), Debt("C", "D", 10), Debt("D", "A", 5)],
        [Debt("A", "X", 5), Debt("B", "Y", 4), Debt("C", "Y", 3)],
    ],
)
def test_optimize_never_increases_transaction_count(debts):
    balances = aggregate(debts)
    plan = optimize(balances)

    assert plan.transaction_count_after <= plan.transaction_count_before
    assert plan.savings_percent >= 0
    assert apply_transfers(plan.transfers) == net_balance_vector(balances)


def test_optimize_keeps_netted_debts_when_greedy_would_add_transfers():
    """Test the greedy sweep needs 4 transfers here, the group only has 3 debts"""
    plan = optimize(aggregate([Debt("A", "X", 5), Debt("B", "Y", 4), Debt("C", "Y", 3)]))

    assert plan.transfers == [Transfer("A", "X", 5), Transfer("B", "Y", 4), Transfer("C", "Y", 3)]
    assert plan.transaction_count_before == plan.transaction_count_after == 3
    assert plan.savings_percent == 0


def test_optimize_keeps_current_creditor_until_paid_off():
    """Test a partially paid creditor stays at the front instead of being re-ranked"""
    balances = [
        BalanceDetail("A", 100),
        BalanceDetail("B", 90),
        BalanceDetail("C", -60),
        BalanceDetail("D", -60),
        BalanceDetail("E", -70),
    ]
    plan = optimize(balances)

    assert plan.transfers == [
        Transfer("E", "A", 70),
        Transfer("C", "A", 30),
        Transfer("C", "B", 30),
        Transfer("D", "B", 60),
    ]


def test_optimize_single_pair_is_already_minimal():
    plan = optimize(aggregate([Debt("A", "B", 10)]))
    assert plan.transaction_count_after == plan.transaction_count_before == 1


@pytest.mark.parametrize(
    "before,after,expected",
    [
        (0, 0, 0),
        (3, 0, 100),
        (3, 2, 33),
        (8, 7, 13),  # 12.5 rounds half up
        (4, 4, 0),
    ],
)
def test_calculate_savings_percent(before, after, expected):
    assert calculate_savings_percent(before, after) == expected
