"""Standalone offer expiry sweep, for cron or a scheduler without the HTTP trigger"""

import asyncio
import logging
import sys

from peerloan_gateway.config import settings_provider
from peerloan_gateway.infrastructure.clients.dispatcher import NotificationDispatcher
from peerloan_gateway.infrastructure.clients.notifications import HttpNotificationSink
from peerloan_gateway.infrastructure.database.session import session_scope
from peerloan_gateway.infrastructure.observability.logging import setup_logging
from peerloan_gateway.services.offers import OfferStateMachine

logger = logging.getLogger(__name__)


def run_sweep() -> int:
    """Run one sweep and deliver its notifications; returns the number of failed loans"""
    config = settings_provider.get()
    with session_scope() as db:
        dispatcher = NotificationDispatcher(
            HttpNotificationSink(config=config), max_pending=config.notification_queue_size
        ).bind(db)
        report = OfferStateMachine(db, dispatcher, settings=settings_provider).cascade.sweep()
    asyncio.run(dispatcher.flush())
    return len(report.errors)


def main() -> None:
    setup_logging(settings_provider.get().log_level)
    failures = run_sweep()
    if failures:
        logger.error("Sweep finished with failed loans", extra={"failed_loans": failures})
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
