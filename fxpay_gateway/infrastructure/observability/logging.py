"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict
from pythonjsonlogger import jsonlogger


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = "fxpay-gateway"


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


def log_payment_created(
    transaction_id: str,
    merchant_id: str,
    status: str,
    risk_score: int,
    duration_ms: float,
) -> None:
    """Log structured creation outcome for analysis"""
    logging.getLogger("fxpay_gateway.payments").info(
        "Payment created",
        extra={
            "transaction_id": transaction_id,
            "merchant_id": merchant_id,
            "step": "payment_created",
            "status": status,
            "risk_score": risk_score,
            "duration_ms": duration_ms,
        },
    )


def log_settlement_event(settlement_id: str, merchant_id: str, step: str, **fields: Any) -> None:
    """Log a settlement lifecycle step"""
    logging.getLogger("fxpay_gateway.settlements").info(
        f"Settlement {step}",
        extra={"settlement_id": settlement_id, "merchant_id": merchant_id, "step": step, **fields},
    )
