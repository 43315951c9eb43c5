"""
Accountability propagation - loan outcomes flowing back to the people who backed the borrower.

Every entry point walks the borrower's active backings and commits once per
backing. A failure for one backer is rolled back, logged and reported in
ConsequenceResult.errors; it never stops the other backers. Counters move
only through the per-(backing, loan) outcome row, so a re-delivered outcome
event is a no-op for them.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional, Tuple
from sqlalchemy.orm import Session

from peerloan_gateway.config import SettingsProvider, settings_provider
from peerloan_gateway.domain.accountability import (
    COMPLETION_DELTA,
    DEFAULT_DELTA,
    apply_success_rate_multiplier,
    calculate_success_rate,
    check_backing_eligibility,
    lock_reason,
)
from peerloan_gateway.domain.exceptions import BackingNotAllowed, BackingNotFound, Forbidden
from peerloan_gateway.domain.models import (
    BackingEligibility,
    ConsequenceResult,
    EligibilityCode,
    Notification,
    NotificationChannel,
    Urgency,
)
from peerloan_gateway.infrastructure.clients.dispatcher import NotificationDispatcher
from peerloan_gateway.infrastructure.database.models import Backing
from peerloan_gateway.infrastructure.database.repositories import (
    BackingRepository,
    ProfileRepository,
    TrustEventRepository,
)
from peerloan_gateway.infrastructure.observability.logging import log_consequences
from peerloan_gateway.infrastructure.observability.metrics import backer_consequence_counter, backer_lock_counter
from peerloan_gateway.utils.date_utils import Clock, utcnow

logger = logging.getLogger(__name__)

STRENGTH_UPDATE_ATTEMPTS = 3

# Per-(backing, loan) outcome states
ACTIVE = "active"
COMPLETED = "completed"
DEFAULTED = "defaulted"
DEFAULT_RESOLVED = "default_resolved"

BackingHandler = Callable[[uuid.UUID, str, str, uuid.UUID], ConsequenceResult]


class AccountabilityEngine:
    """Backing gate plus the consequence handlers for each loan outcome"""

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
        self.backings = BackingRepository(db)
        self.profiles = ProfileRepository(db)
        self.trust_events = TrustEventRepository(db)

    # Backing gate

    def check_eligibility(self, backer_id: str) -> BackingEligibility:
        profile = self.profiles.get_user(backer_id)
        if profile is None:
            return BackingEligibility(
                eligible=False,
                code=EligibilityCode.PROFILE_INCOMPLETE,
                reason="Please complete your profile before backing others.",
            )
        config = self.settings.get()
        return check_backing_eligibility(
            created_at=profile.created_at,
            display_name=profile.display_name,
            locked=profile.locked,
            locked_reason=profile.locked_reason,
            active_default_count=profile.active_default_count,
            now=self.clock(),
            min_account_age_days=config.min_account_age_days,
            lock_threshold=config.lock_threshold,
        )

    def create_backing(self, backer_id: str, borrower_id: str, base_strength: int = 5) -> Backing:
        """Vouch for a borrower; strength starts decayed by the backer's record"""
        eligibility = self.check_eligibility(backer_id)
        if not eligibility.eligible:
            raise BackingNotAllowed(eligibility.code.value, eligibility.reason)
        if backer_id == borrower_id:
            raise BackingNotAllowed("self_backing", "You cannot back yourself.")
        if self.backings.find_active(backer_id, borrower_id) is not None:
            raise BackingNotAllowed("already_backing", "You are already backing this person.")

        profile = self.profiles.get_user(backer_id)
        strength = apply_success_rate_multiplier(base_strength, profile.success_rate)
        backing = self.backings.create_backing(backer_id, borrower_id, strength)
        logger.info(
            "Backing created",
            extra={"backing_id": str(backing.id), "backer_id": backer_id, "borrower_id": borrower_id, "strength": strength},
        )
        return backing

    def revoke_backing(self, backing_id: uuid.UUID, actor_id: str) -> Backing:
        backing = self.backings.get(backing_id)
        if backing is None:
            raise BackingNotFound(f"Backing {backing_id} not found")
        if backing.backer_id != actor_id:
            raise Forbidden("Only the backer can revoke a backing")
        if not self.backings.revoke(backing_id):
            raise BackingNotAllowed("not_active", "Backing is no longer active.")
        return self.backings.refresh(backing)

    # Loan outcome entry points

    def on_loan_started(self, borrower_id: str, loan_id: uuid.UUID) -> ConsequenceResult:
        return self._for_each_backing("started", borrower_id, loan_id, self._started)

    def on_loan_completed(self, borrower_id: str, loan_id: uuid.UUID) -> ConsequenceResult:
        return self._for_each_backing("completed", borrower_id, loan_id, self._completed)

    def on_loan_defaulted(self, borrower_id: str, loan_id: uuid.UUID) -> ConsequenceResult:
        return self._for_each_backing("defaulted", borrower_id, loan_id, self._defaulted)

    def on_default_resolved(self, borrower_id: str, loan_id: uuid.UUID) -> ConsequenceResult:
        return self._for_each_backing("default_resolved", borrower_id, loan_id, self._default_resolved)

    def _for_each_backing(
        self, event: str, borrower_id: str, loan_id: uuid.UUID, handler: BackingHandler
    ) -> ConsequenceResult:
        result = ConsequenceResult()
        targets: List[Tuple[uuid.UUID, str]] = [
            (b.id, b.backer_id) for b in self.backings.active_for_borrower(borrower_id)
        ]

        for backing_id, backer_id in targets:
            try:
                partial = handler(backing_id, backer_id, borrower_id, loan_id)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.exception(
                    "Backer consequence failed",
                    extra={"outcome_event": event, "backer_id": backer_id, "loan_id": str(loan_id)},
                )
                result.errors.append(f"backer {backer_id}: {e}")
                continue

            result.backers_notified += partial.backers_notified
            result.backers_locked += partial.backers_locked
            result.backers_unlocked += partial.backers_unlocked
            result.trust_events_recorded += partial.trust_events_recorded
            result.skipped += partial.skipped
            if not partial.skipped:
                backer_consequence_counter.labels(event=event).inc()
            if partial.backers_locked:
                backer_lock_counter.labels(change="locked").inc()
            if partial.backers_unlocked:
                backer_lock_counter.labels(change="unlocked").inc()

        log_consequences(
            event, borrower_id, str(loan_id), result.backers_notified, result.backers_locked, len(result.errors)
        )
        return result

    def _claim(self, backing_id: uuid.UUID, loan_id: uuid.UUID, outcome: str) -> Tuple[bool, bool]:
        """(claimed, was_active) for moving this backing's view of the loan to outcome"""
        if self.backings.claim_outcome(backing_id, loan_id, outcome, allowed_from=[ACTIVE], create_if_missing=False):
            return True, True
        # Loan started before the backing existed
        return self.backings.claim_outcome(backing_id, loan_id, outcome, allowed_from=[]), False

    def _refresh_success_rate(self, backer_id: str) -> float:
        completed, defaulted = self.backings.outcome_totals(backer_id)
        rate = calculate_success_rate(completed, defaulted)
        self.profiles.update_success_rate(backer_id, rate, completed, defaulted)
        return rate

    def _decay_strength(self, backing_id: uuid.UUID, success_rate: float) -> Optional[int]:
        for _ in range(STRENGTH_UPDATE_ATTEMPTS):
            backing = self.backings.refresh(self.backings.get(backing_id))
            strength = apply_success_rate_multiplier(backing.strength, success_rate)
            if strength == backing.strength or self.backings.set_strength(backing_id, backing.strength, strength):
                return strength
        raise RuntimeError(f"Backing {backing_id} strength kept changing during decay")

    def _borrower_name(self, borrower_id: str) -> str:
        borrower = self.profiles.get_user(borrower_id)
        return (borrower.display_name if borrower else None) or "Someone you backed"

    def _started(self, backing_id: uuid.UUID, backer_id: str, borrower_id: str, loan_id: uuid.UUID) -> ConsequenceResult:
        if not self.backings.claim_outcome(backing_id, loan_id, ACTIVE, allowed_from=[]):
            return ConsequenceResult(skipped=1)
        self.backings.bump_counters(backing_id, active=1)
        return ConsequenceResult()

    def _completed(
        self, backing_id: uuid.UUID, backer_id: str, borrower_id: str, loan_id: uuid.UUID
    ) -> ConsequenceResult:
        claimed, was_active = self._claim(backing_id, loan_id, COMPLETED)
        if not claimed:
            return ConsequenceResult(skipped=1)

        self.backings.bump_counters(backing_id, completed=1, active=-1 if was_active else 0)
        rate = self._refresh_success_rate(backer_id)
        name = self._borrower_name(borrower_id)

        self.trust_events.record(
            subject_id=backer_id,
            delta=COMPLETION_DELTA,
            category="backed_loan_completed",
            title="Someone you backed repaid a loan",
            description=f"{name} repaid a loan you backed. Your backing record improves.",
            loan_id=loan_id,
            backing_id=backing_id,
            other_user_id=borrower_id,
            details={"success_rate": rate},
        )
        self.dispatcher.dispatch(
            Notification(
                recipient_id=backer_id,
                kind="backed_loan_completed",
                title="Someone you backed repaid their loan",
                message=f"{name} fully repaid a loan you backed. Your success rate is now {rate:g}%.",
                channels=[NotificationChannel.IN_APP],
                urgency=Urgency.LOW,
                loan_id=loan_id,
            )
        )
        return ConsequenceResult(backers_notified=1, trust_events_recorded=1)

    def _defaulted(
        self, backing_id: uuid.UUID, backer_id: str, borrower_id: str, loan_id: uuid.UUID
    ) -> ConsequenceResult:
        claimed, was_active = self._claim(backing_id, loan_id, DEFAULTED)
        if not claimed:
            return ConsequenceResult(skipped=1)

        self.backings.bump_counters(backing_id, defaulted=1, active=-1 if was_active else 0)
        rate = self._refresh_success_rate(backer_id)
        strength = self._decay_strength(backing_id, rate)
        name = self._borrower_name(borrower_id)

        self.trust_events.record(
            subject_id=backer_id,
            delta=DEFAULT_DELTA,
            category="backed_loan_defaulted",
            title="Someone you backed defaulted on a loan",
            description=f"{name} defaulted on a loan you backed.",
            loan_id=loan_id,
            backing_id=backing_id,
            other_user_id=borrower_id,
            details={"success_rate": rate, "strength": strength},
        )

        now = self.clock()
        threshold = self.settings.get().lock_threshold
        active_defaults = self.profiles.increment_active_defaults(backer_id)
        locked = self.profiles.lock_if_at_threshold(backer_id, threshold, lock_reason(active_defaults), now)
        if locked:
            logger.warning(
                "Backer locked",
                extra={"backer_id": backer_id, "active_defaults": active_defaults, "loan_id": str(loan_id)},
            )

        message = f"{name} has defaulted on a loan you backed. Your success rate is now {rate:g}%."
        if locked:
            message += f" {lock_reason(active_defaults)}"
        self.dispatcher.dispatch(
            Notification(
                recipient_id=backer_id,
                kind="backed_loan_defaulted",
                title="Someone you backed defaulted",
                message=message,
                channels=[NotificationChannel.EMAIL, NotificationChannel.IN_APP],
                urgency=Urgency.URGENT,
                loan_id=loan_id,
                data={"active_defaults": active_defaults, "locked": locked, "success_rate": rate},
            )
        )
        return ConsequenceResult(backers_notified=1, backers_locked=int(locked), trust_events_recorded=1)

    def _default_resolved(
        self, backing_id: uuid.UUID, backer_id: str, borrower_id: str, loan_id: uuid.UUID
    ) -> ConsequenceResult:
        if not self.backings.claim_outcome(
            backing_id, loan_id, DEFAULT_RESOLVED, allowed_from=[DEFAULTED], create_if_missing=False
        ):
            return ConsequenceResult(skipped=1)

        self.profiles.decrement_active_defaults(backer_id)
        unlocked = self.profiles.unlock_if_below_threshold(backer_id, self.settings.get().lock_threshold)
        if not unlocked:
            return ConsequenceResult()

        logger.info("Backer unlocked", extra={"backer_id": backer_id, "loan_id": str(loan_id)})
        self.dispatcher.dispatch(
            Notification(
                recipient_id=backer_id,
                kind="backing_unlocked",
                title="Backing ability restored",
                message="A previously defaulted borrower you backed has resolved their debt. You can back others again.",
                channels=[NotificationChannel.IN_APP],
                loan_id=loan_id,
            )
        )
        return ConsequenceResult(backers_notified=1, backers_unlocked=1)
