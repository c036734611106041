"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict
from pythonjsonlogger.json import JsonFormatter
from auction_gateway.config import settings


class CustomJsonFormatter(JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_bid_outcome(
    request_id: str,
    auction_id: str,
    bidder_id: str,
    amount: int,
    outcome: str,
    duration_ms: float,
) -> None:
    """Log structured bid outcome for analysis"""
    logging.info(
        "Bid processed",
        extra={
            "request_id": request_id,
            "auction_id": auction_id,
            "user_id": bidder_id,
            "step": "bid_complete",
            "amount": amount,
            "outcome": outcome,
            "duration_ms": duration_ms,
        },
    )


def log_payment_decision(
    user_id: str,
    amount: int,
    allowed: bool,
    fraud_score: int,
    risk_level: str,
    flags: list,
    errors: list,
) -> None:
    """Full screening detail goes to the log only, never to the caller"""
    logging.info(
        "Payment screening completed",
        extra={
            "user_id": user_id,
            "step": "payment_screening",
            "amount": amount,
            "outcome": "allowed" if allowed else "denied",
            "fraud_score": fraud_score,
            "risk_level": risk_level,
            "flags": flags,
            "errors": errors,
        },
    )


def log_settlement(transaction_id: str, outcome: str, user_id: str | None = None, amount: int | None = None) -> None:
    logging.info(
        "Settlement processed",
        extra={
            "transaction_id": transaction_id,
            "user_id": user_id,
            "step": "settlement",
            "outcome": outcome,
            "amount": amount,
        },
    )
