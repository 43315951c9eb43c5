"""Lender reliability tracking - acceptance rate and committed capital"""

import logging
from datetime import datetime
from sqlalchemy.orm import Session

from peerloan_gateway.domain.models import Candidate, NonAcceptance
from peerloan_gateway.infrastructure.database.repositories import LenderPreferenceRepository

logger = logging.getLogger(__name__)


class LenderReliabilityTracker:
    """Applies every offer resolution to the lender's preference row"""

    def __init__(self, db: Session):
        self.preferences = LenderPreferenceRepository(db)

    def record_acceptance(self, candidate: Candidate, amount_cents: int, now: datetime) -> None:
        if not self.preferences.record_acceptance(candidate, amount_cents, now):
            logger.warning(
                "No lender preferences to reserve capital against",
                extra={"candidate_kind": candidate.kind.value, "candidate_id": candidate.identity},
            )

    def record_non_acceptance(self, candidate: Candidate, kind: NonAcceptance) -> None:
        """Decline and silent expiry both dilute the acceptance rate the same way"""
        if not self.preferences.record_non_acceptance(candidate, kind):
            logger.warning(
                "No lender preferences to penalize",
                extra={"candidate_kind": candidate.kind.value, "candidate_id": candidate.identity},
            )

    def release_capital(self, candidate: Candidate, amount_cents: int) -> None:
        """Return reserved capital once the loan completes or is written off"""
        if not self.preferences.release_capital(candidate, amount_cents):
            logger.warning(
                "No lender preferences to release capital from",
                extra={"candidate_kind": candidate.kind.value, "candidate_id": candidate.identity},
            )
