"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class InvalidDebtError(DomainException):
    """Debt batch is malformed (self-debt, non-positive amount, missing member)"""

    pass


class ImbalancedLedgerError(DomainException):
    """Net balances do not sum to zero"""

    pass


class InvalidTransitionError(DomainException):
    """Requested status change is not legal from the settlement's current status"""

    def __init__(self, settlement_id: str, current_status: str, target_status: str):
        self.settlement_id = settlement_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Settlement {settlement_id} cannot move from {current_status} to {target_status}"
        )


class SettlementInFlightError(DomainException):
    """A non-terminal settlement already exists for this member pair"""

    def __init__(self, group_id: str, from_member_id: str, to_member_id: str):
        self.group_id = group_id
        self.from_member_id = from_member_id
        self.to_member_id = to_member_id
        super().__init__(
            f"Payment from {from_member_id} to {to_member_id} already in progress in group {group_id}"
        )


class InvalidSettlementError(DomainException):
    """Settlement request arguments are invalid"""

    pass


class ExcessiveSettlementAmountError(DomainException):
    """Settlement amount exceeds what the payer currently owes the payee"""

    pass


class StalePlanError(DomainException):
    """Settlement plan no longer matches the group's live balances"""

    pass


class SettlementNotFoundError(DomainException):
    """No settlement with the given id"""

    pass


class MemberDirectoryError(DomainException):
    """Member directory returned an error or is unavailable"""

    pass
