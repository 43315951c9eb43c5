"""Matching entry points - starting a ranked cascade and lender self-selection"""

import logging
import uuid
from typing import List, Optional

from peerloan_gateway.domain.exceptions import Forbidden, LoanNotFound, LoanNotOpen, OfferNotEligible, ValidationError
from peerloan_gateway.domain.models import (
    OPEN_LOAN_STATUSES,
    Candidate,
    CascadeResult,
    IndividualCandidate,
    LoanStatus,
    Notification,
    OfferOutcome,
    OfferStatus,
    RankedCandidate,
    Urgency,
)
from peerloan_gateway.infrastructure.database.models import LoanOffer, LoanRequest
from peerloan_gateway.services.offers import OfferStateMachine

logger = logging.getLogger(__name__)


class MatchingService:
    """Puts loans into matching and lets lenders pick loans themselves"""

    def __init__(self, machine: OfferStateMachine):
        self.machine = machine

    def start_matching(self, loan_id: uuid.UUID, ranked: List[RankedCandidate]) -> CascadeResult:
        """
        Queue one offer per ranked candidate and present the first.

        Ranks continue after any earlier round so a rematch never reuses a
        rank. An empty ranking ends straight in no_match.
        """
        m = self.machine
        identities = [(r.candidate.kind, r.candidate.identity) for r in ranked]
        if len(set(identities)) != len(identities):
            raise ValidationError("Ranked candidates must be unique")

        loan = m.loans.get(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        own = [r.candidate.identity for r in ranked if self._is_own_loan(loan, r.candidate)]
        if own:
            raise ValidationError(f"Borrower cannot be ranked as a lender on their own loan: {', '.join(own)}")
        if not m.loans.mark_matching(loan_id):
            raise LoanNotOpen(m.loans.refresh(loan).status)

        m.offers.create_offers(loan_id, ranked, start_rank=m.offers.max_rank(loan_id) + 1)
        result, _ = m.cascade.advance(loan_id, trigger="start")

        if result is CascadeResult.PRESENTED:
            m.dispatcher.dispatch(
                Notification(
                    recipient_id=loan.borrower_id,
                    kind="loan_in_review",
                    title="Your loan request is with lenders",
                    message="We found lenders for your request and are asking them now.",
                    urgency=Urgency.LOW,
                    loan_id=loan_id,
                )
            )
        logger.info(
            "Matching started",
            extra={"loan_id": str(loan_id), "candidates": len(ranked), "result": result.value},
        )
        return result

    def self_select(
        self,
        loan_id: uuid.UUID,
        candidate: Candidate,
        actor_id: str,
        action: str = "accept",
        reason: Optional[str] = None,
    ) -> OfferOutcome:
        """A lender picks an open loan; runs through the regular accept/decline path"""
        m = self.machine
        if not m.profiles.is_authorized(candidate, actor_id):
            raise Forbidden("Not authorized for this lender")

        loan = m.loans.get(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")

        self._check_eligible(loan, candidate)

        offer = self._pending_offer(loan, candidate)
        if action == "accept":
            return m.accept(offer.id, actor_id)
        return m.decline(offer.id, actor_id, reason)

    def _check_eligible(self, loan: LoanRequest, candidate: Candidate) -> None:
        m = self.machine
        if loan.lender_kind is not None or LoanStatus(loan.status) not in OPEN_LOAN_STATUSES:
            raise OfferNotEligible("loan_unavailable", "Loan is no longer open for lenders")

        preference = m.preferences.get_for(candidate)
        if preference is None or not preference.is_active:
            raise OfferNotEligible("lender_inactive", "Lender preferences are missing or inactive")

        if self._is_own_loan(loan, candidate):
            raise OfferNotEligible("own_loan", "Lenders cannot fund their own loan")

        if loan.amount_cents < (preference.min_amount_cents or 0) or (
            preference.max_amount_cents is not None and loan.amount_cents > preference.max_amount_cents
        ):
            raise OfferNotEligible("amount_out_of_range", "Loan amount is outside the lender's range")

        if preference.available_capital_cents < loan.amount_cents:
            raise OfferNotEligible("insufficient_capital", "Not enough available capital for this loan")

        previous = m.offers.for_candidate(loan.id, candidate)
        if any(o.status == OfferStatus.DECLINED.value for o in previous):
            raise OfferNotEligible("previously_declined", "Lender already declined this loan")

    def _pending_offer(self, loan: LoanRequest, candidate: Candidate) -> LoanOffer:
        """Reuse the candidate's pending offer, else add one after the ranked batch"""
        m = self.machine
        for offer in m.offers.for_candidate(loan.id, candidate):
            if offer.status == OfferStatus.PENDING.value:
                return offer
        rank = m.offers.max_rank(loan.id) + 1
        (offer,) = m.offers.create_offers(loan.id, [RankedCandidate(candidate=candidate)], start_rank=rank)
        return offer

    def _is_own_loan(self, loan: LoanRequest, candidate: Candidate) -> bool:
        """The borrower themselves, or an organization the borrower owns"""
        if isinstance(candidate, IndividualCandidate):
            return candidate.user_id == loan.borrower_id
        organization = self.machine.profiles.get_organization(candidate.organization_id)
        return organization is not None and organization.owner_user_id == loan.borrower_id
