"""Structured JSON logging for production observability"""

import logging
import sys
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from fairpay_gateway.config import settings
from fairpay_gateway.utils.date_utils import utcnow


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

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_webhook_event(
    request_id: str,
    event_id: str,
    event_type: str,
    outcome: str,
    duration_ms: float,
) -> None:
    """Log structured webhook outcome (handled | duplicate | ignored | failed)"""
    logging.getLogger("fairpay_gateway.webhook").info(
        "Webhook processed",
        extra={
            "request_id": request_id,
            "event_id": event_id,
            "event_type": event_type,
            "step": "webhook_complete",
            "outcome": outcome,
            "duration_ms": duration_ms,
        },
    )


def log_payment_retry(
    request_id: str,
    user_id: str,
    payment_id: str,
    payment_intent_id: Optional[str],
    original_payment_intent_id: Optional[str],
) -> None:
    """Log structured retry outcome for support follow-up"""
    logging.getLogger("fairpay_gateway.retry").info(
        "Payment retry initiated",
        extra={
            "request_id": request_id,
            "user_id": user_id,
            "payment_id": payment_id,
            "step": "retry_initiated",
            "payment_intent_id": payment_intent_id,
            "original_payment_intent_id": original_payment_intent_id,
        },
    )
