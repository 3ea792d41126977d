"""Translate domain exceptions into HTTP errors"""

import logging
from fastapi import HTTPException
from settlement_engine.domain.exceptions import (
    DomainException,
    ExcessiveSettlementAmountError,
    ImbalancedLedgerError,
    InvalidDebtError,
    InvalidSettlementError,
    InvalidTransitionError,
    SettlementInFlightError,
    SettlementNotFoundError,
    StalePlanError,
)

STATUS_CODES = {
    InvalidDebtError: 422,
    InvalidSettlementError: 422,
    ExcessiveSettlementAmountError: 422,
    SettlementNotFoundError: 404,
    InvalidTransitionError: 409,
    SettlementInFlightError: 409,
    StalePlanError: 409,
    ImbalancedLedgerError: 409,
}


def to_http_exception(error: DomainException, request_id: str = "unknown") -> HTTPException:
    status_code = STATUS_CODES.get(type(error), 500)

    if isinstance(error, SettlementInFlightError):
        detail = "Payment already in progress"
    elif isinstance(error, InvalidTransitionError):
        detail = f"Settlement is {error.current_status}; refresh and try again"
    elif status_code == 500:
        detail = "Internal server error"
    else:
        detail = str(error)

    if isinstance(error, ImbalancedLedgerError) or status_code == 500:
        logging.error(f"Ledger error: {error}", extra={"request_id": request_id})
    else:
        logging.warning(f"Request rejected: {error}", extra={"request_id": request_id})

    return HTTPException(status_code=status_code, detail=detail)
