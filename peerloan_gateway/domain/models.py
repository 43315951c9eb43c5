"""Domain models - pure Python dataclasses representing business entities"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Union


class OfferStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    AUTO_ACCEPTED = "auto_accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    SKIPPED = "skipped"


ACCEPTING_STATUSES = (OfferStatus.ACCEPTED, OfferStatus.AUTO_ACCEPTED)


class LoanStatus(str, enum.Enum):
    PENDING = "pending"
    MATCHING = "matching"
    ACTIVE = "active"
    NO_MATCH = "no_match"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"


# Loans a lender can still be matched to
OPEN_LOAN_STATUSES = (LoanStatus.PENDING, LoanStatus.MATCHING, LoanStatus.NO_MATCH)


class CandidateKind(str, enum.Enum):
    INDIVIDUAL = "individual"
    ORGANIZATION = "organization"


@dataclass(frozen=True)
class IndividualCandidate:
    """A person lending from their own capital pool"""

    user_id: str

    @property
    def kind(self) -> CandidateKind:
        return CandidateKind.INDIVIDUAL

    @property
    def identity(self) -> str:
        return self.user_id


@dataclass(frozen=True)
class OrganizationCandidate:
    """A business lender; acted for by the organization's owner"""

    organization_id: str

    @property
    def kind(self) -> CandidateKind:
        return CandidateKind.ORGANIZATION

    @property
    def identity(self) -> str:
        return self.organization_id


Candidate = Union[IndividualCandidate, OrganizationCandidate]


def make_candidate(kind: Union[CandidateKind, str], identity: str) -> Candidate:
    """Build the candidate variant from its stored discriminator and id"""
    kind = CandidateKind(kind)
    if kind is CandidateKind.INDIVIDUAL:
        return IndividualCandidate(user_id=identity)
    return OrganizationCandidate(organization_id=identity)


@dataclass
class RankedCandidate:
    """One entry of the ranking produced when a loan enters matching"""

    candidate: Candidate
    score: float = 0.0


class RepaymentFrequency(str, enum.Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"

    @property
    def interval_days(self) -> int:
        return {"weekly": 7, "biweekly": 14, "monthly": 30}[self.value]


@dataclass
class Installment:
    """Single payment in a repayment schedule"""

    due_date: date
    amount_cents: int
    principal_cents: int = 0
    interest_cents: int = 0


@dataclass
class LoanTerms:
    """Effective terms fixed when a lender accepts"""

    interest_rate: float
    total_interest_cents: int
    total_amount_cents: int
    repayment_amount_cents: int
    installments: List[Installment] = field(default_factory=list)


class NonAcceptance(str, enum.Enum):
    """How an offer ended without acceptance, for reliability purposes"""

    DECLINED = "declined"
    NO_RESPONSE = "no_response"


class NotificationChannel(str, enum.Enum):
    EMAIL = "email"
    IN_APP = "in_app"


class Urgency(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    URGENT = "urgent"


@dataclass
class Notification:
    """A delivery request handed to the notification sink"""

    recipient_id: str
    kind: str
    title: str
    message: str
    channels: List[NotificationChannel] = field(default_factory=lambda: [NotificationChannel.IN_APP])
    urgency: Urgency = Urgency.NORMAL
    loan_id: Optional[uuid.UUID] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "kind": self.kind,
            "title": self.title,
            "message": self.message,
            "channels": [c.value for c in self.channels],
            "urgency": self.urgency.value,
            "loan_id": str(self.loan_id) if self.loan_id else None,
            "data": self.data,
        }


@dataclass
class OfferOutcome:
    """Result of an accept/decline on one offer"""

    offer_id: uuid.UUID
    loan_id: uuid.UUID
    status: OfferStatus
    loan_status: LoanStatus
    next_offer_id: Optional[uuid.UUID] = None
    terms: Optional[LoanTerms] = None


class CascadeResult(str, enum.Enum):
    NOOP = "noop"
    PRESENTED = "presented"
    AUTO_ACCEPTED = "auto_accepted"
    NO_MATCH = "no_match"


@dataclass
class SweepReport:
    """Counts returned by one expiry sweep"""

    offers_expired: int = 0
    cascaded: int = 0
    auto_accepted: int = 0
    no_match: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class ConsequenceResult:
    """What one loan-outcome event did to the borrower's backers"""

    backers_notified: int = 0
    backers_locked: int = 0
    backers_unlocked: int = 0
    trust_events_recorded: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


class EligibilityCode(str, enum.Enum):
    OK = "ok"
    ACCOUNT_TOO_NEW = "account_too_new"
    PROFILE_INCOMPLETE = "profile_incomplete"
    BACKING_LOCKED = "backing_locked"


@dataclass
class BackingEligibility:
    eligible: bool
    code: EligibilityCode
    reason: Optional[str] = None
