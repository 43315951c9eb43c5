"""Best-effort notification dispatch bound to the database transaction"""

import logging
from collections import deque
from typing import Deque, List, Set

from sqlalchemy import event
from sqlalchemy.orm import Session

from peerloan_gateway.domain.models import Notification
from peerloan_gateway.infrastructure.clients.notifications import NotificationSink
from peerloan_gateway.infrastructure.observability.metrics import notification_dropped_counter

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    Bounded outbox between the engines and the notification sink.

    dispatch() never raises and never waits on delivery. Notifications raised
    inside a bound session's transaction are staged, released to the ready
    queue when that transaction commits and discarded when it rolls back, so
    nobody is told about a change that did not persist. flush() delivers the
    ready queue and only logs failures.
    """

    def __init__(self, sink: NotificationSink, max_pending: int = 1000):
        self.sink = sink
        self.max_pending = max_pending
        self._staged: List[Notification] = []
        self._ready: Deque[Notification] = deque()
        self._bound: Set[int] = set()

    def bind(self, session: Session) -> "NotificationDispatcher":
        if id(session) not in self._bound:
            event.listen(session, "after_commit", self._on_commit)
            event.listen(session, "after_rollback", self._on_rollback)
            self._bound.add(id(session))
        return self

    @property
    def ready(self) -> List[Notification]:
        return list(self._ready)

    @property
    def staged(self) -> List[Notification]:
        return list(self._staged)

    def dispatch(self, notification: Notification) -> None:
        if len(self._staged) + len(self._ready) >= self.max_pending:
            notification_dropped_counter.inc()
            logger.warning(
                "Notification outbox full, dropping notification",
                extra={"kind": notification.kind, "recipient_id": notification.recipient_id},
            )
            return
        if self._bound:
            self._staged.append(notification)
        else:
            self._ready.append(notification)

    def _on_commit(self, session: Session) -> None:
        self._ready.extend(self._staged)
        self._staged.clear()

    def _on_rollback(self, session: Session) -> None:
        if self._staged:
            logger.info("Discarding notifications of rolled back transaction", extra={"count": len(self._staged)})
        self._staged.clear()

    async def flush(self) -> int:
        """Deliver every ready notification; returns how many were delivered"""
        delivered = 0
        while self._ready:
            notification = self._ready.popleft()
            try:
                await self.sink.deliver(notification)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Notification delivery failed: {e}",
                    extra={"kind": notification.kind, "recipient_id": notification.recipient_id},
                )
        return delivered
