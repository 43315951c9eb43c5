"""Loan-servicing hook - applies repayment outcomes to the loan, its lender and its backers"""

import logging
import uuid

from peerloan_gateway.domain.exceptions import LoanNotFound, ValidationError
from peerloan_gateway.domain.models import ConsequenceResult, LoanStatus
from peerloan_gateway.infrastructure.database.repositories import LoanRepository
from peerloan_gateway.services.accountability import AccountabilityEngine
from peerloan_gateway.services.reliability import LenderReliabilityTracker

logger = logging.getLogger(__name__)

OUTCOME_EVENTS = ("started", "completed", "defaulted", "default_resolved")

# Events that close the loan, with the status they close it into
_TERMINAL = {
    "completed": LoanStatus.COMPLETED,
    "defaulted": LoanStatus.DEFAULTED,
}


class LoanOutcomeService:
    def __init__(self, engine: AccountabilityEngine):
        self.engine = engine
        self.db = engine.db
        self.loans = LoanRepository(self.db)
        self.reliability = LenderReliabilityTracker(self.db)

    def apply(self, loan_id: uuid.UUID, event: str) -> ConsequenceResult:
        """
        Record a loan outcome reported by loan servicing.

        completed/defaulted move an active loan to its terminal status and
        return the lender's reserved capital; that part is committed before
        the backers are processed, each in their own transaction.
        """
        if event not in OUTCOME_EVENTS:
            raise ValidationError(f"Unknown outcome event: {event}")

        loan = self.loans.get(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        borrower_id = loan.borrower_id

        if event in _TERMINAL:
            closed = self.loans.transition_status(loan_id, _TERMINAL[event].value, [LoanStatus.ACTIVE.value])
            if closed and loan.lender is not None:
                self.reliability.release_capital(loan.lender, loan.amount_cents)
            logger.info("Loan outcome applied", extra={"loan_id": str(loan_id), "event": event, "closed": closed})
        self.db.commit()

        if event == "started":
            return self.engine.on_loan_started(borrower_id, loan_id)
        if event == "completed":
            return self.engine.on_loan_completed(borrower_id, loan_id)
        if event == "defaulted":
            return self.engine.on_loan_defaulted(borrower_id, loan_id)
        return self.engine.on_default_resolved(borrower_id, loan_id)
