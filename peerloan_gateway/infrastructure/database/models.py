"""SQLAlchemy ORM models for matching and accountability"""

import uuid
from sqlalchemy import (
    Column,
    String,
    BigInteger,
    Boolean,
    Float,
    DateTime,
    Date,
    Integer,
    ForeignKey,
    Text,
    JSON,
    Index,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

from peerloan_gateway.domain.models import make_candidate, Candidate
from peerloan_gateway.utils.date_utils import utcnow

Base = declarative_base()


class UserProfile(Base):
    """Platform user: borrower, individual lender and/or backer"""

    __tablename__ = "user_profile"

    id = Column(Text, primary_key=True)
    display_name = Column(Text, nullable=True)
    email = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Backer standing, written only by the accountability engine
    active_default_count = Column(Integer, nullable=False, default=0)
    locked = Column(Boolean, nullable=False, default=False)
    locked_reason = Column(Text, nullable=True)
    locked_at = Column(DateTime, nullable=True)
    success_rate = Column(Float, nullable=False, default=100.0)
    backings_completed_total = Column(Integer, nullable=False, default=0)
    backings_defaulted_total = Column(Integer, nullable=False, default=0)


class Organization(Base):
    """Business lender, acted for by its owner"""

    __tablename__ = "organization"

    id = Column(Text, primary_key=True)
    name = Column(Text, nullable=False)
    contact_email = Column(Text, nullable=True)
    owner_user_id = Column(Text, ForeignKey("user_profile.id"), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class LoanRequest(Base):
    """Borrower's request for a loan; terminalized, never deleted"""

    __tablename__ = "loan_request"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    borrower_id = Column(Text, nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    borrower_tier = Column(Text, nullable=True)
    total_installments = Column(Integer, nullable=False, default=1)
    repayment_frequency = Column(Text, nullable=False, default="monthly")
    status = Column(Text, nullable=False, default="pending", index=True)

    current_offer_id = Column(Uuid(as_uuid=True), nullable=True)
    lender_kind = Column(Text, nullable=True)
    lender_id = Column(Text, nullable=True)
    matched_at = Column(DateTime, nullable=True)
    auto_matched = Column(Boolean, nullable=False, default=False)
    match_attempts = Column(Integer, nullable=False, default=0)

    interest_rate = Column(Float, nullable=True)
    total_interest_cents = Column(BigInteger, nullable=True)
    total_amount_cents = Column(BigInteger, nullable=True)
    repayment_amount_cents = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    offers = relationship("LoanOffer", back_populates="loan", order_by="LoanOffer.rank")
    installments = relationship(
        "RepaymentInstallment",
        back_populates="loan",
        cascade="all, delete-orphan",
        order_by="RepaymentInstallment.due_date",
    )

    @property
    def lender(self) -> Candidate | None:
        if self.lender_kind is None:
            return None
        return make_candidate(self.lender_kind, self.lender_id)


class RepaymentInstallment(Base):
    """Individual installment within an accepted loan's schedule"""

    __tablename__ = "repayment_installment"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(Uuid(as_uuid=True), ForeignKey("loan_request.id", ondelete="CASCADE"), nullable=False)
    due_date = Column(Date, nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    principal_cents = Column(BigInteger, nullable=False)
    interest_cents = Column(BigInteger, nullable=False)
    status = Column(Text, nullable=False, default="scheduled")

    loan = relationship("LoanRequest", back_populates="installments")


class LoanOffer(Base):
    """One ranked candidate lender for one loan"""

    __tablename__ = "loan_offer"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(Uuid(as_uuid=True), ForeignKey("loan_request.id"), nullable=False)
    candidate_kind = Column(Text, nullable=False)
    candidate_id = Column(Text, nullable=False)
    rank = Column(Integer, nullable=False)
    score = Column(Float, nullable=False, default=0.0)
    status = Column(Text, nullable=False, default="pending")
    offered_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)  # Stamped when presented
    responded_at = Column(DateTime, nullable=True)
    decline_reason = Column(Text, nullable=True)
    was_auto_accepted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    loan = relationship("LoanRequest", back_populates="offers")

    __table_args__ = (
        Index("ix_loan_offer_loan_status_rank", "loan_id", "status", "rank"),
        Index("ix_loan_offer_status_expires", "status", "expires_at"),
        # At most one accepting offer per loan
        Index(
            "uq_loan_offer_single_acceptance",
            "loan_id",
            unique=True,
            sqlite_where=text("status IN ('accepted', 'auto_accepted')"),
            postgresql_where=text("status IN ('accepted', 'auto_accepted')"),
        ),
    )

    @property
    def candidate(self) -> Candidate:
        return make_candidate(self.candidate_kind, self.candidate_id)


class LenderPreference(Base):
    """Per-lender policy, capital and reliability statistics"""

    __tablename__ = "lender_preference"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    candidate_kind = Column(Text, nullable=False)
    candidate_id = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    capital_pool_cents = Column(BigInteger, nullable=False, default=0)
    capital_reserved_cents = Column(BigInteger, nullable=False, default=0)
    min_amount_cents = Column(BigInteger, nullable=False, default=0)
    max_amount_cents = Column(BigInteger, nullable=True)
    interest_rate = Column(Float, nullable=True)
    auto_accept = Column(Boolean, nullable=False, default=False)

    acceptance_rate = Column(Float, nullable=False, default=100.0)
    total_loans_funded = Column(Integer, nullable=False, default=0)
    total_amount_funded_cents = Column(BigInteger, nullable=False, default=0)
    offers_declined = Column(Integer, nullable=False, default=0)
    offers_expired = Column(Integer, nullable=False, default=0)
    last_loan_assigned_at = Column(DateTime, nullable=True)

    tier_rates = relationship("LenderTierRate", back_populates="preference", cascade="all, delete-orphan")

    __table_args__ = (UniqueConstraint("candidate_kind", "candidate_id", name="uq_lender_preference_candidate"),)

    @property
    def available_capital_cents(self) -> int:
        return (self.capital_pool_cents or 0) - (self.capital_reserved_cents or 0)


class LenderTierRate(Base):
    """Interest-rate override for one borrower trust tier"""

    __tablename__ = "lender_tier_rate"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    preference_id = Column(Uuid(as_uuid=True), ForeignKey("lender_preference.id", ondelete="CASCADE"), nullable=False)
    tier_id = Column(Text, nullable=False)
    interest_rate = Column(Float, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    preference = relationship("LenderPreference", back_populates="tier_rates")

    __table_args__ = (UniqueConstraint("preference_id", "tier_id", name="uq_lender_tier_rate"),)


class Backing(Base):
    """Reputation stake of a backer on a borrower; never hard-deleted"""

    __tablename__ = "backing"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    backer_id = Column(Text, ForeignKey("user_profile.id"), nullable=False, index=True)
    borrower_id = Column(Text, nullable=False, index=True)
    status = Column(Text, nullable=False, default="active")
    strength = Column(Integer, nullable=False, default=5)
    loans_completed = Column(Integer, nullable=False, default=0)
    loans_defaulted = Column(Integer, nullable=False, default=0)
    loans_active = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class BackingLoanOutcome(Base):
    """Where one backed loan stands for one backing; guards against double-counting"""

    __tablename__ = "backing_loan_outcome"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    backing_id = Column(Uuid(as_uuid=True), ForeignKey("backing.id"), nullable=False)
    loan_id = Column(Uuid(as_uuid=True), nullable=False)
    outcome = Column(Text, nullable=False, default="active")
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("backing_id", "loan_id", name="uq_backing_loan_outcome"),)


class TrustEvent(Base):
    """Append-only explanation of one score change"""

    __tablename__ = "trust_event"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subject_id = Column(Text, nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    category = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False)
    loan_id = Column(Uuid(as_uuid=True), nullable=True)
    backing_id = Column(Uuid(as_uuid=True), nullable=True)
    other_user_id = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
