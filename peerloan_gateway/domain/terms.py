"""Loan terms fixed at acceptance - rate selection and repayment totals"""

from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from peerloan_gateway.domain.models import LoanTerms, RepaymentFrequency
from peerloan_gateway.domain.installments import generate_installment_plan, split_evenly


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero"""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def select_interest_rate(
    tier_rate: Optional[float],
    lender_rate: Optional[float],
    default_rate: float,
) -> float:
    """Tier override wins, then the lender's own rate, then the platform default"""
    if tier_rate is not None:
        return tier_rate
    if lender_rate is not None:
        return lender_rate
    return default_rate


def compute_loan_terms(
    amount_cents: int,
    interest_rate: float,
    total_installments: int,
    frequency: RepaymentFrequency,
    start_date: date | None = None,
) -> LoanTerms:
    """
    Compute repayment totals for a flat-rate loan.

    Interest is flat over the life of the loan: 20% on $100 is $20 regardless
    of term. Per-installment amount is the even share of the total, the
    schedule's last installment absorbs the remainder.
    """
    installments_count = max(total_installments, 1)
    total_interest = round_half_up(amount_cents * interest_rate / 100)
    total_amount = amount_cents + total_interest

    schedule = generate_installment_plan(
        principal_cents=amount_cents,
        interest_cents=total_interest,
        num_installments=installments_count,
        interval_days=frequency.interval_days,
        start_date=start_date,
    )

    return LoanTerms(
        interest_rate=interest_rate,
        total_interest_cents=total_interest,
        total_amount_cents=total_amount,
        repayment_amount_cents=split_evenly(total_amount, installments_count)[0],
        installments=schedule,
    )
