"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from peerloan_gateway.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
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


def log_offer_resolution(
    offer_id: str,
    loan_id: str,
    status: str,
    actor_id: Optional[str] = None,
    next_offer_id: Optional[str] = None,
) -> None:
    """Log structured offer outcome for analysis"""
    logging.getLogger("peerloan_gateway.offers").info(
        "Offer resolved",
        extra={
            "step": "offer_resolved",
            "offer_id": offer_id,
            "loan_id": loan_id,
            "offer_status": status,
            "actor_id": actor_id,
            "next_offer_id": next_offer_id,
        },
    )


def log_sweep(offers_expired: int, cascaded: int, no_match: int, errors: int, duration_ms: float) -> None:
    logging.getLogger("peerloan_gateway.cascade").info(
        "Expiry sweep completed",
        extra={
            "step": "sweep_complete",
            "offers_expired": offers_expired,
            "cascaded": cascaded,
            "no_match": no_match,
            "errors": errors,
            "duration_ms": duration_ms,
        },
    )


def log_consequences(event: str, borrower_id: str, loan_id: str, notified: int, locked: int, errors: int) -> None:
    logging.getLogger("peerloan_gateway.accountability").info(
        "Backer consequences processed",
        extra={
            "step": "consequences_complete",
            "outcome_event": event,
            "borrower_id": borrower_id,
            "loan_id": loan_id,
            "backers_notified": notified,
            "backers_locked": locked,
            "errors": errors,
        },
    )
