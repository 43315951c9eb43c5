"""Dependency injection for FastAPI endpoints"""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from peerloan_gateway.config import SettingsProvider, settings_provider
from peerloan_gateway.infrastructure.clients.dispatcher import NotificationDispatcher
from peerloan_gateway.infrastructure.clients.notifications import HttpNotificationSink, NotificationSink
from peerloan_gateway.infrastructure.database.session import get_db
from peerloan_gateway.services.accountability import AccountabilityEngine
from peerloan_gateway.services.matching import MatchingService
from peerloan_gateway.services.offers import OfferStateMachine
from peerloan_gateway.services.servicing import LoanOutcomeService
from peerloan_gateway.utils.date_utils import Clock, utcnow


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_settings_provider() -> SettingsProvider:
    return settings_provider


def get_clock() -> Clock:
    return utcnow


def get_notification_sink(provider: SettingsProvider = Depends(get_settings_provider)) -> NotificationSink:
    """Provide notification service client instance"""
    return HttpNotificationSink(config=provider.get())


def get_dispatcher(
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
    provider: SettingsProvider = Depends(get_settings_provider),
) -> NotificationDispatcher:
    """Per-request outbox bound to the request's session"""
    return NotificationDispatcher(sink, max_pending=provider.get().notification_queue_size).bind(db)


def get_offer_machine(
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    provider: SettingsProvider = Depends(get_settings_provider),
    clock: Clock = Depends(get_clock),
) -> OfferStateMachine:
    return OfferStateMachine(db, dispatcher, settings=provider, clock=clock)


def get_matching_service(machine: OfferStateMachine = Depends(get_offer_machine)) -> MatchingService:
    return MatchingService(machine)


def get_accountability_engine(
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    provider: SettingsProvider = Depends(get_settings_provider),
    clock: Clock = Depends(get_clock),
) -> AccountabilityEngine:
    return AccountabilityEngine(db, dispatcher, settings=provider, clock=clock)


def get_outcome_service(engine: AccountabilityEngine = Depends(get_accountability_engine)) -> LoanOutcomeService:
    return LoanOutcomeService(engine)


def get_actor_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity, set by the authenticating proxy"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail={"error": "Unauthorized", "message": "Missing X-User-Id header"})
    return x_user_id


def require_service_secret(
    authorization: Optional[str] = Header(None),
    provider: SettingsProvider = Depends(get_settings_provider),
) -> None:
    """Bearer shared secret for the scheduler and loan-servicing callers; closed when unset"""
    secret = provider.get().cron_secret
    scheme, _, token = (authorization or "").partition(" ")
    token = token.strip()
    if not secret or scheme != "Bearer" or not token or not hmac.compare_digest(token.encode(), secret.encode()):
        raise HTTPException(status_code=401, detail={"error": "Unauthorized", "message": "Invalid service secret"})
