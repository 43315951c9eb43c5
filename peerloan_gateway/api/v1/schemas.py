"""Pydantic schemas for API request/response validation"""

from pydantic import BaseModel, Field
from datetime import date
from typing import List, Literal, Optional

from peerloan_gateway.domain.models import CandidateKind, RepaymentFrequency


class RespondRequest(BaseModel):
    """Request body for POST /v1/offers/{offer_id}/respond"""

    action: Literal["accept", "decline"]
    reason: Optional[str] = Field(None, max_length=500, description="Optional decline reason")


class InstallmentSchema(BaseModel):
    """Single installment in a repayment schedule"""

    due_date: date
    amount_cents: int
    principal_cents: int
    interest_cents: int
    status: str = "scheduled"


class TermsSchema(BaseModel):
    interest_rate: float
    total_interest_cents: int
    total_amount_cents: int
    repayment_amount_cents: int
    installments: List[InstallmentSchema]


class OfferOutcomeResponse(BaseModel):
    """Resulting state after an accept/decline"""

    offer_id: str
    loan_id: str
    status: str
    loan_status: str
    next_offer_id: Optional[str] = None
    terms: Optional[TermsSchema] = None


class LoanCreateRequest(BaseModel):
    """Request body for POST /v1/loans"""

    amount_cents: int = Field(..., gt=0, description="Requested amount in cents")
    currency: str = Field("USD", min_length=3, max_length=3)
    borrower_tier: Optional[str] = Field(None, description="Borrower trust tier, used for tier-specific rates")
    total_installments: int = Field(1, ge=1, le=52)
    repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY


class LoanResponse(BaseModel):
    loan_id: str
    borrower_id: str
    status: str
    amount_cents: int
    currency: str
    borrower_tier: Optional[str] = None
    total_installments: int
    repayment_frequency: str
    current_offer_id: Optional[str] = None
    lender_kind: Optional[str] = None
    lender_id: Optional[str] = None
    auto_matched: bool
    match_attempts: int
    interest_rate: Optional[float] = None
    total_amount_cents: Optional[int] = None
    repayment_amount_cents: Optional[int] = None
    installments: List[InstallmentSchema] = []
    created_at: str


class OfferItem(BaseModel):
    """Single ranked offer of a loan"""

    offer_id: str
    candidate_kind: str
    candidate_id: str
    rank: int
    score: float
    status: str
    offered_at: Optional[str] = None
    expires_at: Optional[str] = None
    responded_at: Optional[str] = None
    was_auto_accepted: bool


class LoanOffersResponse(BaseModel):
    """Response for GET /v1/loans/{loan_id}/offers"""

    loan: LoanResponse
    offers: List[OfferItem]


class CandidateSchema(BaseModel):
    kind: CandidateKind
    id: str = Field(..., min_length=1)


class RankedCandidateSchema(CandidateSchema):
    score: float = 0.0


class StartMatchingRequest(BaseModel):
    """Ranked candidates, best first"""

    candidates: List[RankedCandidateSchema]


class StartMatchingResponse(BaseModel):
    loan_id: str
    result: str
    loan_status: str
    current_offer_id: Optional[str] = None


class SelfSelectRequest(BaseModel):
    """Request body for POST /v1/loans/{loan_id}/self-select"""

    lender: CandidateSchema
    action: Literal["accept", "decline"] = "accept"
    reason: Optional[str] = Field(None, max_length=500)


class OutcomeRequest(BaseModel):
    """Loan-servicing outcome for POST /v1/loans/{loan_id}/outcome"""

    event: Literal["started", "completed", "defaulted", "default_resolved"]


class ConsequenceResponse(BaseModel):
    loan_id: str
    event: str
    backers_notified: int
    backers_locked: int
    backers_unlocked: int
    trust_events_recorded: int
    skipped: int
    errors: List[str]


class SweepError(BaseModel):
    loan_id: str
    error: str


class SweepResponse(BaseModel):
    """Response for POST /v1/jobs/offer-expiry"""

    offers_expired: int
    cascaded: int
    auto_accepted: int
    no_match: int
    errors: List[SweepError]


class EligibilityResponse(BaseModel):
    backer_id: str
    eligible: bool
    code: str
    reason: Optional[str] = None


class BackingCreateRequest(BaseModel):
    """Request body for POST /v1/backings; the caller is the backer"""

    borrower_id: str = Field(..., min_length=1)
    base_strength: int = Field(5, ge=1, le=10)


class BackingResponse(BaseModel):
    backing_id: str
    backer_id: str
    borrower_id: str
    status: str
    strength: int
    loans_completed: int
    loans_defaulted: int
    loans_active: int
    created_at: str


class TrustEventItem(BaseModel):
    event_id: str
    delta: int
    category: str
    title: str
    description: str
    loan_id: Optional[str] = None
    other_user_id: Optional[str] = None
    created_at: str


class TrustEventsResponse(BaseModel):
    """Response for GET /v1/users/{user_id}/trust-events"""

    user_id: str
    events: List[TrustEventItem]
