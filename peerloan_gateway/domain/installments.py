"""Installment schedule generation for accepted loans"""

from datetime import date, timedelta
from typing import List
from peerloan_gateway.domain.models import Installment


def split_evenly(amount_cents: int, parts: int) -> List[int]:
    """Split an amount into equal parts, last part absorbing the remainder"""
    if parts <= 0:
        return []
    base_amount = amount_cents // parts
    remainder = amount_cents % parts
    return [base_amount + (remainder if i == parts - 1 else 0) for i in range(parts)]


def generate_installment_plan(
    principal_cents: int,
    interest_cents: int,
    num_installments: int,
    interval_days: int,
    start_date: date | None = None,
) -> List[Installment]:
    """
    Generate equal repayment installments for an accepted loan.

    Requirements:
    - Principal and interest are each split evenly across installments
    - Installments are interval_days apart
    - Last installment absorbs rounding remainders so totals are exact

    Args:
        principal_cents: Loan amount being repaid
        interest_cents: Total flat interest over the loan
        num_installments: Number of payments
        interval_days: Days between payments (7, 14 or 30)
        start_date: First due date (default: today + interval_days)

    Example:
        $100.00 at 10% over 3 monthly payments
        principal 10000 -> [3333, 3333, 3334]
        interest   1000 -> [333, 333, 334]
        amounts         -> [3666, 3666, 3668]
    """
    if principal_cents <= 0 or num_installments <= 0:
        return []

    if start_date is None:
        start_date = date.today() + timedelta(days=interval_days)

    principal_parts = split_evenly(principal_cents, num_installments)
    interest_parts = split_evenly(interest_cents, num_installments)

    installments = []
    for i in range(num_installments):
        installments.append(
            Installment(
                due_date=start_date + timedelta(days=i * interval_days),
                amount_cents=principal_parts[i] + interest_parts[i],
                principal_cents=principal_parts[i],
                interest_cents=interest_parts[i],
            )
        )

    return installments
