"""Cascade scheduler - moves a loan down its ranked offers and sweeps expired ones"""

import logging
import time
import uuid
from collections import OrderedDict
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from peerloan_gateway.domain.models import (
    CascadeResult,
    LoanStatus,
    Notification,
    NotificationChannel,
    SweepReport,
    Urgency,
)
from peerloan_gateway.infrastructure.database.models import LoanOffer
from peerloan_gateway.infrastructure.observability.logging import log_sweep
from peerloan_gateway.infrastructure.observability.metrics import record_cascade, sweep_error_counter
from peerloan_gateway.utils.date_utils import add_hours

if TYPE_CHECKING:
    from peerloan_gateway.services.offers import OfferStateMachine

logger = logging.getLogger(__name__)


class CascadeScheduler:
    """
    Drives the pending -> next candidate progression for loans in matching.

    advance() is safe to call repeatedly: a loan that is assigned, terminal or
    already showing an unexpired current offer is left alone.
    """

    def __init__(self, machine: "OfferStateMachine"):
        self.machine = machine

    def advance(self, loan_id: uuid.UUID, trigger: str) -> Tuple[CascadeResult, Optional[LoanOffer]]:
        """Present the next surviving offer, auto-accept it, or end in no_match"""
        m = self.machine
        loan = m.loans.get(loan_id)
        if loan is None or loan.lender_kind is not None or loan.status != LoanStatus.MATCHING.value:
            return CascadeResult.NOOP, None

        offer = m.offers.next_pending(loan_id)
        if offer is None:
            if not m.loans.mark_no_match(loan_id):
                return CascadeResult.NOOP, None
            m.dispatcher.dispatch(
                Notification(
                    recipient_id=loan.borrower_id,
                    kind="loan_no_match",
                    title="No lender found",
                    message="None of the matched lenders took your loan request. You can adjust it and try again.",
                    channels=[NotificationChannel.EMAIL, NotificationChannel.IN_APP],
                    loan_id=loan_id,
                )
            )
            record_cascade(trigger, CascadeResult.NO_MATCH.value)
            return CascadeResult.NO_MATCH, None

        # Already presented and still running its clock
        if offer.expires_at is not None:
            return CascadeResult.NOOP, offer

        preference = m.preferences.get_for(offer.candidate)
        if preference is not None and preference.is_active and preference.auto_accept:
            m.auto_accept(offer)
            record_cascade(trigger, CascadeResult.AUTO_ACCEPTED.value)
            return CascadeResult.AUTO_ACCEPTED, offer

        now = m.clock()
        expires_at = add_hours(now, m.settings.get().offer_ttl_hours)
        if not m.offers.present(offer.id, now, expires_at):
            return CascadeResult.NOOP, None
        m.loans.set_current_offer(loan_id, offer.id)

        recipient_id, _, _ = m.profiles.contact(offer.candidate)
        if recipient_id is not None:
            m.dispatcher.dispatch(
                Notification(
                    recipient_id=recipient_id,
                    kind="loan_offer",
                    title="New loan request for you",
                    message=(
                        f"A borrower is asking for {loan.currency} {loan.amount_cents / 100:,.2f}. "
                        f"Respond within {m.settings.get().offer_ttl_hours} hours."
                    ),
                    channels=[NotificationChannel.EMAIL, NotificationChannel.IN_APP],
                    urgency=Urgency.URGENT,
                    loan_id=loan_id,
                    data={"offer_id": str(offer.id), "expires_at": expires_at.isoformat()},
                )
            )
        record_cascade(trigger, CascadeResult.PRESENTED.value)
        return CascadeResult.PRESENTED, offer

    def sweep(self) -> SweepReport:
        """
        Expire every pending offer whose clock ran out and cascade its loan.

        Each loan is its own unit of work. A failing loan is rolled back and
        reported in errors; the rest of the sweep continues. Offers resolved
        concurrently by a lender are skipped, so re-running is harmless.
        """
        m = self.machine
        started = time.perf_counter()
        now = m.clock()
        report = SweepReport()

        by_loan: Dict[uuid.UUID, List[LoanOffer]] = OrderedDict()
        for offer in m.offers.expired_pending(now):
            by_loan.setdefault(offer.loan_id, []).append(offer)

        for loan_id, offers in by_loan.items():
            try:
                expired = sum(1 for offer in offers if m.expire(offer, now))
                result = CascadeResult.NOOP
                if expired:
                    result, _ = self.advance(loan_id, trigger="sweep")
                m.db.commit()
            except Exception as e:
                m.db.rollback()
                sweep_error_counter.inc()
                logger.exception("Cascade failed for loan", extra={"loan_id": str(loan_id)})
                report.errors.append({"loan_id": str(loan_id), "error": str(e)})
                continue

            report.offers_expired += expired
            if result in (CascadeResult.PRESENTED, CascadeResult.AUTO_ACCEPTED):
                report.cascaded += 1
            if result is CascadeResult.AUTO_ACCEPTED:
                report.auto_accepted += 1
            if result is CascadeResult.NO_MATCH:
                report.no_match += 1

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        log_sweep(report.offers_expired, report.cascaded, report.no_match, len(report.errors), duration_ms)
        return report
