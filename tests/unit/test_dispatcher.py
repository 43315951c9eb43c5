"""Unit tests for the transaction-aware notification outbox"""

import asyncio
from sqlalchemy import text
from sqlalchemy.orm import Session

from peerloan_gateway.domain.models import Notification
from peerloan_gateway.infrastructure.clients.dispatcher import NotificationDispatcher


def _note(kind: str = "loan_offer") -> Notification:
    return Notification(recipient_id="alice", kind=kind, title="t", message="m")


def test_unbound_dispatch_is_ready_immediately(sink):
    dispatcher = NotificationDispatcher(sink)
    dispatcher.dispatch(_note())

    assert len(dispatcher.ready) == 1
    assert asyncio.run(dispatcher.flush()) == 1
    assert sink.kinds() == ["loan_offer"]


def test_bound_dispatch_waits_for_commit(db: Session, sink):
    dispatcher = NotificationDispatcher(sink).bind(db)
    dispatcher.dispatch(_note())

    assert dispatcher.ready == []
    assert len(dispatcher.staged) == 1

    db.commit()
    assert dispatcher.staged == []
    assert len(dispatcher.ready) == 1


def test_rollback_discards_staged(db: Session, sink):
    dispatcher = NotificationDispatcher(sink).bind(db)
    db.execute(text("SELECT 1"))
    dispatcher.dispatch(_note())
    db.rollback()

    assert dispatcher.staged == []
    assert asyncio.run(dispatcher.flush()) == 0
    assert sink.delivered == []


def test_full_outbox_drops_instead_of_raising(sink):
    dispatcher = NotificationDispatcher(sink, max_pending=2)
    for _ in range(3):
        dispatcher.dispatch(_note())

    assert len(dispatcher.ready) == 2


def test_flush_swallows_delivery_failures(sink):
    sink.failing_kinds = {"broken"}
    dispatcher = NotificationDispatcher(sink)
    dispatcher.dispatch(_note("broken"))
    dispatcher.dispatch(_note("loan_matched"))

    assert asyncio.run(dispatcher.flush()) == 1
    assert sink.kinds() == ["loan_matched"]
    assert dispatcher.ready == []


def test_bind_is_idempotent(db: Session, sink):
    dispatcher = NotificationDispatcher(sink).bind(db).bind(db)
    dispatcher.dispatch(_note())
    db.commit()

    assert len(dispatcher.ready) == 1
