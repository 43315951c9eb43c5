"""Pytest fixtures for testing"""

import pytest
from datetime import datetime, timedelta
from typing import Generator, List, Optional
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from peerloan_gateway.api.dependencies import get_clock, get_notification_sink, get_settings_provider
from peerloan_gateway.api.main import create_app
from peerloan_gateway.config import Settings, SettingsProvider
from peerloan_gateway.domain.models import Candidate, IndividualCandidate, Notification, OrganizationCandidate
from peerloan_gateway.domain.exceptions import NotificationDeliveryError
from peerloan_gateway.infrastructure.clients.dispatcher import NotificationDispatcher
from peerloan_gateway.infrastructure.database.models import (
    Backing,
    Base,
    LenderPreference,
    LenderTierRate,
    LoanRequest,
    Organization,
    UserProfile,
)
from peerloan_gateway.infrastructure.database.session import engine_options, get_db
from peerloan_gateway.services.accountability import AccountabilityEngine
from peerloan_gateway.services.matching import MatchingService
from peerloan_gateway.services.offers import OfferStateMachine
from peerloan_gateway.services.servicing import LoanOutcomeService


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, **engine_options(TEST_DATABASE_URL))
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

CRON_SECRET = "test-cron-secret"
START = datetime(2026, 3, 2, 9, 0, 0)


class FrozenClock:
    """Clock that only moves when a test moves it"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, hours: float = 0, days: float = 0) -> datetime:
        self.now = self.now + timedelta(hours=hours, days=days)
        return self.now


class RecordingSink:
    """Notification sink that keeps what it was asked to deliver"""

    def __init__(self, failing_kinds: Optional[set] = None):
        self.delivered: List[Notification] = []
        self.failing_kinds = failing_kinds or set()

    async def deliver(self, notification: Notification) -> None:
        if notification.kind in self.failing_kinds:
            raise NotificationDeliveryError(f"{notification.kind} rejected")
        self.delivered.append(notification)

    def kinds(self) -> List[str]:
        return [n.kind for n in self.delivered]


class Factory:
    """Row builders for the scenarios under test"""

    def __init__(self, db: Session, clock: FrozenClock):
        self.db = db
        self.clock = clock

    def user(
        self,
        user_id: str,
        display_name: Optional[str] = None,
        age_days: int = 30,
        **fields,
    ) -> UserProfile:
        user = UserProfile(
            id=user_id,
            display_name=display_name if display_name is not None else user_id.title(),
            email=f"{user_id}@example.com",
            created_at=self.clock() - timedelta(days=age_days),
            **fields,
        )
        self.db.add(user)
        self.db.commit()
        return user

    def organization(self, organization_id: str, owner_id: str, name: str = "Acme Lending") -> Organization:
        organization = Organization(id=organization_id, owner_user_id=owner_id, name=name)
        self.db.add(organization)
        self.db.commit()
        return organization

    def lender(
        self,
        candidate: Candidate,
        capital_pool_cents: int = 1_000_000,
        auto_accept: bool = False,
        interest_rate: Optional[float] = 12.0,
        tier_rates: Optional[dict] = None,
        **fields,
    ) -> LenderPreference:
        if isinstance(candidate, IndividualCandidate) and self.db.get(UserProfile, candidate.user_id) is None:
            self.user(candidate.user_id)
        preference = LenderPreference(
            candidate_kind=candidate.kind.value,
            candidate_id=candidate.identity,
            capital_pool_cents=capital_pool_cents,
            auto_accept=auto_accept,
            interest_rate=interest_rate,
            **fields,
        )
        self.db.add(preference)
        self.db.flush()
        for tier_id, rate in (tier_rates or {}).items():
            self.db.add(LenderTierRate(preference_id=preference.id, tier_id=tier_id, interest_rate=rate))
        self.db.commit()
        return preference

    def loan(self, borrower_id: str = "borrower", amount_cents: int = 10_000, **fields) -> LoanRequest:
        fields.setdefault("status", "pending")
        loan = LoanRequest(borrower_id=borrower_id, amount_cents=amount_cents, **fields)
        self.db.add(loan)
        self.db.commit()
        return loan

    def backing(self, backer_id: str, borrower_id: str, strength: int = 8, **fields) -> Backing:
        if self.db.get(UserProfile, backer_id) is None:
            self.user(backer_id)
        fields.setdefault("status", "active")
        backing = Backing(backer_id=backer_id, borrower_id=borrower_id, strength=strength, **fields)
        self.db.add(backing)
        self.db.commit()
        return backing


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings_provider() -> SettingsProvider:
    return SettingsProvider.fixed(
        Settings(
            database_url=TEST_DATABASE_URL,
            cron_secret=CRON_SECRET,
            offer_ttl_hours=24,
            default_interest_rate=10.0,
            lock_threshold=2,
            min_account_age_days=7,
        )
    )


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def dispatcher(db: Session, sink: RecordingSink) -> NotificationDispatcher:
    return NotificationDispatcher(sink, max_pending=100).bind(db)


@pytest.fixture
def machine(db, dispatcher, settings_provider, clock) -> OfferStateMachine:
    return OfferStateMachine(db, dispatcher, settings=settings_provider, clock=clock)


@pytest.fixture
def matching(machine: OfferStateMachine) -> MatchingService:
    return MatchingService(machine)


@pytest.fixture
def accountability(db, dispatcher, settings_provider, clock) -> AccountabilityEngine:
    return AccountabilityEngine(db, dispatcher, settings=settings_provider, clock=clock)


@pytest.fixture
def outcomes(accountability: AccountabilityEngine) -> LoanOutcomeService:
    return LoanOutcomeService(accountability)


@pytest.fixture
def factory(db: Session, clock: FrozenClock) -> Factory:
    return Factory(db, clock)


@pytest.fixture
def alice() -> IndividualCandidate:
    return IndividualCandidate(user_id="alice")


@pytest.fixture
def bob() -> IndividualCandidate:
    return IndividualCandidate(user_id="bob")


@pytest.fixture
def acme() -> OrganizationCandidate:
    return OrganizationCandidate(organization_id="acme")


@pytest.fixture
def client(db: Session, sink: RecordingSink, settings_provider: SettingsProvider, clock: FrozenClock) -> TestClient:
    """Create FastAPI test client with test database"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_sink] = lambda: sink
    app.dependency_overrides[get_settings_provider] = lambda: settings_provider
    app.dependency_overrides[get_clock] = lambda: clock
    return TestClient(app)


@pytest.fixture
def service_headers() -> dict:
    return {"Authorization": f"Bearer {CRON_SECRET}"}
