"""
Offer state machine.

pending -> accepted | auto_accepted | declined | expired | skipped

Every non-pending state is terminal. Each transition is a conditional update
on "status is still pending", so a manual response racing a sweep has exactly
one winner and the loser sees AlreadyResolved. Accepting also claims the loan
with a conditional update and skips every pending sibling, which keeps at most
one accepting offer per loan.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy.orm import Session

from peerloan_gateway.config import SettingsProvider, settings_provider
from peerloan_gateway.domain.exceptions import AlreadyResolved, Forbidden, LoanNotFound, OfferExpired, OfferNotFound
from peerloan_gateway.domain.models import (
    LoanStatus,
    LoanTerms,
    NonAcceptance,
    Notification,
    NotificationChannel,
    OfferOutcome,
    OfferStatus,
    RepaymentFrequency,
    Urgency,
)
from peerloan_gateway.domain.terms import compute_loan_terms, select_interest_rate
from peerloan_gateway.infrastructure.clients.dispatcher import NotificationDispatcher
from peerloan_gateway.infrastructure.database.models import LoanOffer, LoanRequest
from peerloan_gateway.infrastructure.database.repositories import (
    LenderPreferenceRepository,
    LoanRepository,
    OfferRepository,
    ProfileRepository,
    TrustEventRepository,
)
from peerloan_gateway.infrastructure.observability.logging import log_offer_resolution
from peerloan_gateway.infrastructure.observability.metrics import record_offer_resolution
from peerloan_gateway.services.cascade import CascadeScheduler
from peerloan_gateway.services.reliability import LenderReliabilityTracker
from peerloan_gateway.utils.date_utils import Clock, utcnow

logger = logging.getLogger(__name__)


class OfferStateMachine:
    """Accept, decline and expire offers; the single acceptance path"""

    def __init__(
        self,
        db: Session,
        dispatcher: NotificationDispatcher,
        settings: SettingsProvider = settings_provider,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.settings = settings
        self.clock = clock
        self.loans = LoanRepository(db)
        self.offers = OfferRepository(db)
        self.preferences = LenderPreferenceRepository(db)
        self.profiles = ProfileRepository(db)
        self.trust_events = TrustEventRepository(db)
        self.reliability = LenderReliabilityTracker(db)
        self.cascade = CascadeScheduler(self)

    def accept(self, offer_id: uuid.UUID, actor_id: str) -> OfferOutcome:
        offer = self._load_for_actor(offer_id, actor_id)
        now = self.clock()
        self._ensure_actionable(offer, now)
        return self._complete_acceptance(offer, now, auto=False, actor_id=actor_id)

    def decline(self, offer_id: uuid.UUID, actor_id: str, reason: Optional[str] = None) -> OfferOutcome:
        """Decline, then cascade the loan to its next ranked candidate right away"""
        offer = self._load_for_actor(offer_id, actor_id)
        now = self.clock()
        self._ensure_actionable(offer, now)

        if not self.offers.resolve(offer.id, OfferStatus.DECLINED, now, decline_reason=reason, unexpired_at=now):
            raise AlreadyResolved(self.offers.refresh(offer).status)

        record_offer_resolution(OfferStatus.DECLINED.value)
        self.reliability.record_non_acceptance(offer.candidate, NonAcceptance.DECLINED)

        _, next_offer = self.cascade.advance(offer.loan_id, trigger="decline")
        loan = self.loans.get(offer.loan_id)
        next_offer_id = next_offer.id if next_offer is not None else None

        log_offer_resolution(str(offer.id), str(offer.loan_id), OfferStatus.DECLINED.value, actor_id, str(next_offer_id))
        return OfferOutcome(
            offer_id=offer.id,
            loan_id=offer.loan_id,
            status=OfferStatus.DECLINED,
            loan_status=LoanStatus(loan.status),
            next_offer_id=next_offer_id,
        )

    def auto_accept(self, offer: LoanOffer) -> OfferOutcome:
        """Acceptance on behalf of a lender whose preferences say auto_accept"""
        return self._complete_acceptance(offer, self.clock(), auto=True)

    def expire(self, offer: LoanOffer, now: datetime) -> bool:
        """Close a pending offer whose clock ran out; False if already resolved"""
        if not self.offers.resolve(offer.id, OfferStatus.EXPIRED, now):
            return False
        record_offer_resolution(OfferStatus.EXPIRED.value)
        self.reliability.record_non_acceptance(offer.candidate, NonAcceptance.NO_RESPONSE)
        log_offer_resolution(str(offer.id), str(offer.loan_id), OfferStatus.EXPIRED.value)
        return True

    def _load_for_actor(self, offer_id: uuid.UUID, actor_id: str) -> LoanOffer:
        offer = self.offers.get(offer_id)
        if offer is None:
            raise OfferNotFound(f"Offer {offer_id} not found")
        if not self.profiles.is_authorized(offer.candidate, actor_id):
            raise Forbidden("Not authorized for this offer")
        return offer

    def _ensure_actionable(self, offer: LoanOffer, now: datetime) -> None:
        if offer.status != OfferStatus.PENDING.value:
            raise AlreadyResolved(offer.status)
        if offer.expires_at is not None and offer.expires_at < now:
            if not self.expire(offer, now):
                raise AlreadyResolved(self.offers.refresh(offer).status)
            self.cascade.advance(offer.loan_id, trigger="expiry")
            raise OfferExpired(f"Offer {offer.id} expired at {offer.expires_at.isoformat()}")

    def _terms_for(self, loan: LoanRequest, offer: LoanOffer, now: datetime) -> LoanTerms:
        preference = self.preferences.get_for(offer.candidate)
        tier_rate = self.preferences.tier_rate(preference.id, loan.borrower_tier) if preference else None
        rate = select_interest_rate(
            tier_rate,
            preference.interest_rate if preference else None,
            self.settings.get().default_interest_rate,
        )
        frequency = RepaymentFrequency(loan.repayment_frequency)
        return compute_loan_terms(
            amount_cents=loan.amount_cents,
            interest_rate=rate,
            total_installments=loan.total_installments,
            frequency=frequency,
            start_date=now.date() + timedelta(days=frequency.interval_days),
        )

    def _complete_acceptance(
        self,
        offer: LoanOffer,
        now: datetime,
        auto: bool,
        actor_id: Optional[str] = None,
    ) -> OfferOutcome:
        loan = self.loans.get(offer.loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {offer.loan_id} not found")

        status = OfferStatus.AUTO_ACCEPTED if auto else OfferStatus.ACCEPTED
        if not self.offers.resolve(offer.id, status, now, unexpired_at=now):
            raise AlreadyResolved(self.offers.refresh(offer).status)

        candidate = offer.candidate
        terms = self._terms_for(loan, offer, now)
        if not self.loans.assign_lender(loan.id, offer.id, candidate, terms, now, auto_matched=auto):
            raise AlreadyResolved(OfferStatus.SKIPPED.value, "Loan already has a lender")

        skipped = self.offers.skip_siblings(loan.id, offer.id)
        self.loans.replace_installments(loan.id, terms)
        self.reliability.record_acceptance(candidate, loan.amount_cents, now)

        recipient_id, lender_name, _ = self.profiles.contact(candidate)
        amount = f"{loan.currency} {loan.amount_cents / 100:,.2f}"
        self.trust_events.record(
            subject_id=loan.borrower_id,
            delta=0,
            category="loan_matched",
            title="Loan matched with a lender",
            description=f"{lender_name} {'automatically ' if auto else ''}accepted your {amount} loan request.",
            loan_id=loan.id,
            details={"offer_id": str(offer.id), "interest_rate": terms.interest_rate, "auto_accepted": auto},
        )

        self.dispatcher.dispatch(
            Notification(
                recipient_id=loan.borrower_id,
                kind="loan_matched",
                title="Loan Matched!" if auto else "Loan Accepted!",
                message=f"Your loan of {amount} has been matched with {lender_name}.",
                channels=[NotificationChannel.EMAIL, NotificationChannel.IN_APP],
                loan_id=loan.id,
                data={"interest_rate": terms.interest_rate, "total_amount_cents": terms.total_amount_cents},
            )
        )
        if recipient_id is not None:
            self.dispatcher.dispatch(
                Notification(
                    recipient_id=recipient_id,
                    kind="loan_auto_accepted" if auto else "offer_accepted",
                    title="Loan assigned to you" if auto else "You accepted a loan",
                    message=f"{amount} at {terms.interest_rate}% is now yours to fund.",
                    channels=[NotificationChannel.EMAIL],
                    urgency=Urgency.NORMAL,
                    loan_id=loan.id,
                    data={"offer_id": str(offer.id)},
                )
            )

        record_offer_resolution(status.value)
        record_offer_resolution(OfferStatus.SKIPPED.value, skipped)
        log_offer_resolution(str(offer.id), str(loan.id), status.value, actor_id)

        return OfferOutcome(
            offer_id=offer.id,
            loan_id=loan.id,
            status=status,
            loan_status=LoanStatus.ACTIVE,
            terms=terms,
        )
