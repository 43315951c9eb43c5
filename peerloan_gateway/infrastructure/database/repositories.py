"""Data access layer for loans, offers, lenders, backings and trust events"""

import uuid
from datetime import datetime
from typing import Iterable, List, Optional, Tuple
from sqlalchemy import and_, case, func, or_
from sqlalchemy.orm import Session
from peerloan_gateway.infrastructure.database.models import (
    Backing,
    BackingLoanOutcome,
    LenderPreference,
    LenderTierRate,
    LoanOffer,
    LoanRequest,
    Organization,
    RepaymentInstallment,
    TrustEvent,
    UserProfile,
)
from peerloan_gateway.domain.models import (
    ACCEPTING_STATUSES,
    OPEN_LOAN_STATUSES,
    Candidate,
    IndividualCandidate,
    LoanStatus,
    LoanTerms,
    NonAcceptance,
    OfferStatus,
    RankedCandidate,
)

PENDING = OfferStatus.PENDING.value
_OPEN = [s.value for s in OPEN_LOAN_STATUSES]


def _decrement_floor_zero(column, amount=1):
    return case((column > amount, column - amount), else_=0)


class LoanRepository:
    """Repository for loan requests"""

    def __init__(self, db: Session):
        self.db = db

    def create_loan(
        self,
        borrower_id: str,
        amount_cents: int,
        currency: str = "USD",
        borrower_tier: Optional[str] = None,
        total_installments: int = 1,
        repayment_frequency: str = "monthly",
    ) -> LoanRequest:
        """Persist a new loan request"""
        loan = LoanRequest(
            borrower_id=borrower_id,
            amount_cents=amount_cents,
            currency=currency,
            borrower_tier=borrower_tier,
            total_installments=total_installments,
            repayment_frequency=repayment_frequency,
            status=LoanStatus.PENDING.value,
        )
        self.db.add(loan)
        self.db.flush()  # Get ID without committing
        return loan

    def get(self, loan_id: uuid.UUID) -> Optional[LoanRequest]:
        return self.db.query(LoanRequest).filter(LoanRequest.id == loan_id).first()

    def refresh(self, loan: LoanRequest) -> LoanRequest:
        self.db.refresh(loan)
        return loan

    def _unassigned(self, loan_id: uuid.UUID, statuses: Iterable[str]):
        return self.db.query(LoanRequest).filter(
            LoanRequest.id == loan_id,
            LoanRequest.lender_kind.is_(None),
            LoanRequest.status.in_(list(statuses)),
        )

    def mark_matching(self, loan_id: uuid.UUID) -> bool:
        """Open a matching round; only from pending or a previous no_match"""
        updated = self._unassigned(loan_id, [LoanStatus.PENDING.value, LoanStatus.NO_MATCH.value]).update(
            {
                LoanRequest.status: LoanStatus.MATCHING.value,
                LoanRequest.match_attempts: LoanRequest.match_attempts + 1,
            },
            synchronize_session="fetch",
        )
        return updated == 1

    def set_current_offer(self, loan_id: uuid.UUID, offer_id: uuid.UUID) -> bool:
        updated = self._unassigned(loan_id, [LoanStatus.MATCHING.value]).update(
            {LoanRequest.current_offer_id: offer_id},
            synchronize_session="fetch",
        )
        return updated == 1

    def mark_no_match(self, loan_id: uuid.UUID) -> bool:
        updated = self._unassigned(loan_id, [LoanStatus.MATCHING.value, LoanStatus.PENDING.value]).update(
            {LoanRequest.status: LoanStatus.NO_MATCH.value, LoanRequest.current_offer_id: None},
            synchronize_session="fetch",
        )
        return updated == 1

    def assign_lender(
        self,
        loan_id: uuid.UUID,
        offer_id: uuid.UUID,
        candidate: Candidate,
        terms: LoanTerms,
        now: datetime,
        auto_matched: bool,
    ) -> bool:
        """Claim the loan for a lender; fails if another acceptance got there first"""
        updated = self._unassigned(loan_id, _OPEN).update(
            {
                LoanRequest.status: LoanStatus.ACTIVE.value,
                LoanRequest.lender_kind: candidate.kind.value,
                LoanRequest.lender_id: candidate.identity,
                LoanRequest.current_offer_id: offer_id,
                LoanRequest.matched_at: now,
                LoanRequest.auto_matched: auto_matched,
                LoanRequest.interest_rate: terms.interest_rate,
                LoanRequest.total_interest_cents: terms.total_interest_cents,
                LoanRequest.total_amount_cents: terms.total_amount_cents,
                LoanRequest.repayment_amount_cents: terms.repayment_amount_cents,
            },
            synchronize_session="fetch",
        )
        return updated == 1

    def replace_installments(self, loan_id: uuid.UUID, terms: LoanTerms) -> None:
        """Regenerate the repayment schedule from accepted terms"""
        self.db.query(RepaymentInstallment).filter(RepaymentInstallment.loan_id == loan_id).delete(
            synchronize_session="fetch"
        )
        for inst in terms.installments:
            self.db.add(
                RepaymentInstallment(
                    loan_id=loan_id,
                    due_date=inst.due_date,
                    amount_cents=inst.amount_cents,
                    principal_cents=inst.principal_cents,
                    interest_cents=inst.interest_cents,
                )
            )
        self.db.flush()

    def transition_status(self, loan_id: uuid.UUID, to_status: str, from_statuses: List[str]) -> bool:
        """Move a loan between lifecycle states (loan-servicing outcomes)"""
        updated = (
            self.db.query(LoanRequest)
            .filter(LoanRequest.id == loan_id, LoanRequest.status.in_(from_statuses))
            .update({LoanRequest.status: to_status}, synchronize_session="fetch")
        )
        return updated == 1


class OfferRepository:
    """Ranking store: ordered candidate offers per loan"""

    def __init__(self, db: Session):
        self.db = db

    def create_offers(
        self,
        loan_id: uuid.UUID,
        ranked: List[RankedCandidate],
        start_rank: int = 1,
    ) -> List[LoanOffer]:
        """Insert one pending offer per candidate, rank following list order"""
        offers = []
        for position, entry in enumerate(ranked):
            offer = LoanOffer(
                loan_id=loan_id,
                candidate_kind=entry.candidate.kind.value,
                candidate_id=entry.candidate.identity,
                rank=start_rank + position,
                score=entry.score,
                status=PENDING,
            )
            self.db.add(offer)
            offers.append(offer)
        self.db.flush()
        return offers

    def get(self, offer_id: uuid.UUID) -> Optional[LoanOffer]:
        return self.db.query(LoanOffer).filter(LoanOffer.id == offer_id).first()

    def refresh(self, offer: LoanOffer) -> LoanOffer:
        self.db.refresh(offer)
        return offer

    def list_for_loan(self, loan_id: uuid.UUID) -> List[LoanOffer]:
        return (
            self.db.query(LoanOffer)
            .filter(LoanOffer.loan_id == loan_id)
            .order_by(LoanOffer.rank.asc(), LoanOffer.created_at.asc(), LoanOffer.id.asc())
            .all()
        )

    def next_pending(self, loan_id: uuid.UUID) -> Optional[LoanOffer]:
        """Lowest surviving rank; ties broken by creation order then id"""
        return (
            self.db.query(LoanOffer)
            .filter(LoanOffer.loan_id == loan_id, LoanOffer.status == PENDING)
            .order_by(LoanOffer.rank.asc(), LoanOffer.created_at.asc(), LoanOffer.id.asc())
            .first()
        )

    def expired_pending(self, now: datetime) -> List[LoanOffer]:
        return (
            self.db.query(LoanOffer)
            .filter(
                LoanOffer.status == PENDING,
                LoanOffer.expires_at.isnot(None),
                LoanOffer.expires_at < now,
            )
            .order_by(LoanOffer.loan_id, LoanOffer.rank.asc())
            .all()
        )

    def max_rank(self, loan_id: uuid.UUID) -> int:
        value = self.db.query(func.max(LoanOffer.rank)).filter(LoanOffer.loan_id == loan_id).scalar()
        return value or 0

    def for_candidate(self, loan_id: uuid.UUID, candidate: Candidate) -> List[LoanOffer]:
        return (
            self.db.query(LoanOffer)
            .filter(
                LoanOffer.loan_id == loan_id,
                LoanOffer.candidate_kind == candidate.kind.value,
                LoanOffer.candidate_id == candidate.identity,
            )
            .all()
        )

    def count_accepting(self, loan_id: uuid.UUID) -> int:
        return (
            self.db.query(func.count(LoanOffer.id))
            .filter(LoanOffer.loan_id == loan_id, LoanOffer.status.in_([s.value for s in ACCEPTING_STATUSES]))
            .scalar()
        )

    def present(self, offer_id: uuid.UUID, now: datetime, expires_at: datetime) -> bool:
        """Start the response clock on a pending offer"""
        updated = (
            self.db.query(LoanOffer)
            .filter(LoanOffer.id == offer_id, LoanOffer.status == PENDING)
            .update(
                {LoanOffer.offered_at: now, LoanOffer.expires_at: expires_at},
                synchronize_session="fetch",
            )
        )
        return updated == 1

    def resolve(
        self,
        offer_id: uuid.UUID,
        to_status: OfferStatus,
        now: datetime,
        decline_reason: Optional[str] = None,
        unexpired_at: Optional[datetime] = None,
    ) -> bool:
        """
        Conditional transition out of pending.

        Returns False when another action resolved the offer first. With
        unexpired_at set, the update also requires the expiry not to have
        passed at that instant; an offer is still open at its exact expiry.
        """
        query = self.db.query(LoanOffer).filter(LoanOffer.id == offer_id, LoanOffer.status == PENDING)
        if unexpired_at is not None:
            query = query.filter(or_(LoanOffer.expires_at.is_(None), LoanOffer.expires_at >= unexpired_at))

        values = {LoanOffer.status: to_status.value}
        if to_status is not OfferStatus.EXPIRED:
            values[LoanOffer.responded_at] = now
        if to_status is OfferStatus.DECLINED:
            values[LoanOffer.decline_reason] = decline_reason
        if to_status is OfferStatus.AUTO_ACCEPTED:
            values[LoanOffer.was_auto_accepted] = True

        return query.update(values, synchronize_session="fetch") == 1

    def skip_siblings(self, loan_id: uuid.UUID, winner_id: uuid.UUID) -> int:
        """Force every other pending offer of the loan to skipped"""
        return (
            self.db.query(LoanOffer)
            .filter(LoanOffer.loan_id == loan_id, LoanOffer.id != winner_id, LoanOffer.status == PENDING)
            .update({LoanOffer.status: OfferStatus.SKIPPED.value}, synchronize_session="fetch")
        )


class LenderPreferenceRepository:
    """Repository for lender policy and reliability statistics"""

    def __init__(self, db: Session):
        self.db = db

    def _by_candidate(self, candidate: Candidate):
        return self.db.query(LenderPreference).filter(
            LenderPreference.candidate_kind == candidate.kind.value,
            LenderPreference.candidate_id == candidate.identity,
        )

    def get_for(self, candidate: Candidate) -> Optional[LenderPreference]:
        return self._by_candidate(candidate).first()

    def tier_rate(self, preference_id: uuid.UUID, tier_id: Optional[str]) -> Optional[float]:
        if tier_id is None:
            return None
        row = (
            self.db.query(LenderTierRate)
            .filter(
                LenderTierRate.preference_id == preference_id,
                LenderTierRate.tier_id == tier_id,
                LenderTierRate.is_active.is_(True),
            )
            .first()
        )
        return row.interest_rate if row else None

    def record_acceptance(self, candidate: Candidate, amount_cents: int, now: datetime) -> bool:
        """Reserve capital and bump funded counters atomically"""
        updated = self._by_candidate(candidate).update(
            {
                LenderPreference.capital_reserved_cents: LenderPreference.capital_reserved_cents + amount_cents,
                LenderPreference.total_loans_funded: LenderPreference.total_loans_funded + 1,
                LenderPreference.total_amount_funded_cents: LenderPreference.total_amount_funded_cents
                + amount_cents,
                LenderPreference.last_loan_assigned_at: now,
            },
            synchronize_session="fetch",
        )
        return updated == 1

    def record_non_acceptance(self, candidate: Candidate, kind: NonAcceptance) -> bool:
        """
        Dilute the acceptance rate toward zero.

        new_rate = old_rate * prior / (prior + 1), prior = loans funded so far,
        computed in the UPDATE itself so concurrent resolutions never overwrite
        each other.
        """
        prior = LenderPreference.total_loans_funded
        counter = LenderPreference.offers_declined if kind is NonAcceptance.DECLINED else LenderPreference.offers_expired
        updated = self._by_candidate(candidate).update(
            {
                LenderPreference.acceptance_rate: LenderPreference.acceptance_rate * prior / (prior + 1.0),
                counter: counter + 1,
            },
            synchronize_session="fetch",
        )
        return updated == 1

    def release_capital(self, candidate: Candidate, amount_cents: int) -> bool:
        updated = self._by_candidate(candidate).update(
            {
                LenderPreference.capital_reserved_cents: _decrement_floor_zero(
                    LenderPreference.capital_reserved_cents, amount_cents
                ),
            },
            synchronize_session="fetch",
        )
        return updated == 1


class ProfileRepository:
    """Repository for users and organizations"""

    def __init__(self, db: Session):
        self.db = db

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        return self.db.query(UserProfile).filter(UserProfile.id == user_id).first()

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        return self.db.query(Organization).filter(Organization.id == organization_id).first()

    def refresh(self, profile: UserProfile) -> UserProfile:
        self.db.refresh(profile)
        return profile

    def is_authorized(self, candidate: Candidate, actor_id: str) -> bool:
        """Individuals act for themselves, organizations through their owner"""
        if isinstance(candidate, IndividualCandidate):
            return candidate.user_id == actor_id
        organization = self.get_organization(candidate.organization_id)
        return organization is not None and organization.owner_user_id == actor_id

    def contact(self, candidate: Candidate) -> Tuple[Optional[str], str, Optional[str]]:
        """(recipient user id, display name, email) for a lender candidate"""
        if isinstance(candidate, IndividualCandidate):
            user = self.get_user(candidate.user_id)
            if user is None:
                return candidate.user_id, "Lender", None
            return user.id, user.display_name or "Lender", user.email
        organization = self.get_organization(candidate.organization_id)
        if organization is None:
            return None, "Lender", None
        return organization.owner_user_id, organization.name or "Lender", organization.contact_email

    def update_success_rate(self, user_id: str, success_rate: float, completed: int, defaulted: int) -> None:
        self.db.query(UserProfile).filter(UserProfile.id == user_id).update(
            {
                UserProfile.success_rate: success_rate,
                UserProfile.backings_completed_total: completed,
                UserProfile.backings_defaulted_total: defaulted,
            },
            synchronize_session="fetch",
        )

    def _active_defaults(self, user_id: str) -> int:
        value = self.db.query(UserProfile.active_default_count).filter(UserProfile.id == user_id).scalar()
        return value or 0

    def increment_active_defaults(self, user_id: str) -> int:
        self.db.query(UserProfile).filter(UserProfile.id == user_id).update(
            {UserProfile.active_default_count: UserProfile.active_default_count + 1},
            synchronize_session="fetch",
        )
        return self._active_defaults(user_id)

    def decrement_active_defaults(self, user_id: str) -> int:
        self.db.query(UserProfile).filter(UserProfile.id == user_id).update(
            {UserProfile.active_default_count: _decrement_floor_zero(UserProfile.active_default_count)},
            synchronize_session="fetch",
        )
        return self._active_defaults(user_id)

    def lock_if_at_threshold(self, user_id: str, threshold: int, reason: str, now: datetime) -> bool:
        """Lock only an unlocked backer whose active defaults reached the threshold"""
        updated = (
            self.db.query(UserProfile)
            .filter(
                UserProfile.id == user_id,
                UserProfile.locked.is_(False),
                UserProfile.active_default_count >= threshold,
            )
            .update(
                {UserProfile.locked: True, UserProfile.locked_reason: reason, UserProfile.locked_at: now},
                synchronize_session="fetch",
            )
        )
        return updated == 1

    def unlock_if_below_threshold(self, user_id: str, threshold: int) -> bool:
        updated = (
            self.db.query(UserProfile)
            .filter(
                UserProfile.id == user_id,
                UserProfile.locked.is_(True),
                UserProfile.active_default_count < threshold,
            )
            .update(
                {UserProfile.locked: False, UserProfile.locked_reason: None, UserProfile.locked_at: None},
                synchronize_session="fetch",
            )
        )
        return updated == 1


class BackingRepository:
    """Repository for backings and their per-loan outcomes"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, backing_id: uuid.UUID) -> Optional[Backing]:
        return self.db.query(Backing).filter(Backing.id == backing_id).first()

    def refresh(self, backing: Backing) -> Backing:
        self.db.refresh(backing)
        return backing

    def active_for_borrower(self, borrower_id: str) -> List[Backing]:
        return (
            self.db.query(Backing)
            .filter(Backing.borrower_id == borrower_id, Backing.status == "active")
            .order_by(Backing.created_at.asc(), Backing.id.asc())
            .all()
        )

    def find_active(self, backer_id: str, borrower_id: str) -> Optional[Backing]:
        return (
            self.db.query(Backing)
            .filter(Backing.backer_id == backer_id, Backing.borrower_id == borrower_id, Backing.status == "active")
            .first()
        )

    def create_backing(self, backer_id: str, borrower_id: str, strength: int) -> Backing:
        backing = Backing(backer_id=backer_id, borrower_id=borrower_id, strength=strength, status="active")
        self.db.add(backing)
        self.db.flush()
        return backing

    def revoke(self, backing_id: uuid.UUID) -> bool:
        updated = (
            self.db.query(Backing)
            .filter(Backing.id == backing_id, Backing.status == "active")
            .update({Backing.status: "revoked"}, synchronize_session="fetch")
        )
        return updated == 1

    def outcome_totals(self, backer_id: str) -> Tuple[int, int]:
        """(completed, defaulted) summed across every backing the backer ever gave"""
        completed, defaulted = (
            self.db.query(
                func.coalesce(func.sum(Backing.loans_completed), 0),
                func.coalesce(func.sum(Backing.loans_defaulted), 0),
            )
            .filter(Backing.backer_id == backer_id)
            .one()
        )
        return int(completed), int(defaulted)

    def claim_outcome(
        self,
        backing_id: uuid.UUID,
        loan_id: uuid.UUID,
        outcome: str,
        allowed_from: List[str],
        create_if_missing: bool = True,
    ) -> bool:
        """
        Move this backing's record of the loan to outcome.

        Returns False when the loan is already past that point for this
        backing, which makes a re-delivered outcome a no-op for counters.
        """
        row_filter = and_(BackingLoanOutcome.backing_id == backing_id, BackingLoanOutcome.loan_id == loan_id)
        if allowed_from:
            updated = (
                self.db.query(BackingLoanOutcome)
                .filter(row_filter, BackingLoanOutcome.outcome.in_(allowed_from))
                .update({BackingLoanOutcome.outcome: outcome}, synchronize_session="fetch")
            )
            if updated:
                return True

        existing = self.db.query(BackingLoanOutcome.id).filter(row_filter).first()
        if existing is not None or not create_if_missing:
            return False

        self.db.add(BackingLoanOutcome(backing_id=backing_id, loan_id=loan_id, outcome=outcome))
        self.db.flush()
        return True

    def bump_counters(self, backing_id: uuid.UUID, completed: int = 0, defaulted: int = 0, active: int = 0) -> None:
        values = {
            Backing.loans_completed: Backing.loans_completed + completed,
            Backing.loans_defaulted: Backing.loans_defaulted + defaulted,
        }
        if active > 0:
            values[Backing.loans_active] = Backing.loans_active + active
        elif active < 0:
            values[Backing.loans_active] = _decrement_floor_zero(Backing.loans_active, -active)
        self.db.query(Backing).filter(Backing.id == backing_id).update(values, synchronize_session="fetch")

    def set_strength(self, backing_id: uuid.UUID, expected: int, strength: int) -> bool:
        """Compare-and-set on strength so concurrent decays never lose an update"""
        updated = (
            self.db.query(Backing)
            .filter(Backing.id == backing_id, Backing.strength == expected)
            .update({Backing.strength: strength}, synchronize_session="fetch")
        )
        return updated == 1


class TrustEventRepository:
    """Append-only trust ledger"""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        subject_id: str,
        delta: int,
        category: str,
        title: str,
        description: str,
        loan_id: Optional[uuid.UUID] = None,
        backing_id: Optional[uuid.UUID] = None,
        other_user_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> TrustEvent:
        event = TrustEvent(
            subject_id=subject_id,
            delta=delta,
            category=category,
            title=title,
            description=description,
            loan_id=loan_id,
            backing_id=backing_id,
            other_user_id=other_user_id,
            details=details,
        )
        self.db.add(event)
        self.db.flush()
        return event

    def for_subject(self, subject_id: str, limit: int = 50) -> List[TrustEvent]:
        return (
            self.db.query(TrustEvent)
            .filter(TrustEvent.subject_id == subject_id)
            .order_by(TrustEvent.created_at.desc())
            .limit(limit)
            .all()
        )
