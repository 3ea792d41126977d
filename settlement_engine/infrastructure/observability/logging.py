"""Structured JSON logging for production observability"""

import logging
import sys
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger
from settlement_engine.config import settings
from settlement_engine.utils.time_utils import utcnow


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = utcnow().isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_settlement_outcome(
    settlement_id: str,
    group_id: str,
    status: str,
    amount_minor: int,
    duration_ms: float,
    failure_reason: Optional[str] = None,
) -> None:
    """Log structured settlement outcome for analysis"""
    logging.info(
        "Settlement finished",
        extra={
            "settlement_id": settlement_id,
            "group_id": group_id,
            "step": "settlement_complete",
            "outcome": status,
            "amount_minor": amount_minor,
            "failure_reason": failure_reason,
            "duration_ms": duration_ms,
        },
    )


def log_plan(group_id: str, transfers: int, before: int, savings_percent: int) -> None:
    """Log a computed settlement plan"""
    logging.info(
        "Settlement plan computed",
        extra={
            "group_id": group_id,
            "step": "optimize",
            "transfers": transfers,
            "transaction_count_before": before,
            "savings_percent": savings_percent,
        },
    )
