"""Backer accountability policy - success rate, strength decay and the backing gate"""

import math
from datetime import datetime
from typing import Optional
from peerloan_gateway.domain.models import BackingEligibility, EligibilityCode
from peerloan_gateway.domain.terms import round_half_up

MIN_STRENGTH = 1
MAX_STRENGTH = 10

COMPLETION_DELTA = 2
DEFAULT_DELTA = -10


def calculate_success_rate(completed: int, defaulted: int) -> float:
    """
    Backer success rate in percent across all of their backings.

    No outcomes yet means a clean record: 100.
    Rounded to 2 decimals, e.g. 2 completed / 1 defaulted -> 66.67
    """
    total = completed + defaulted
    if total == 0:
        return 100.0
    return round(completed / total * 100, 2)


def success_rate_multiplier(success_rate: float) -> float:
    """
    Map success rate to a strength multiplier.

    Bands:
    - 100%:     1.00 (perfect record, no decay)
    - 80-100%:  0.90
    - 60-80%:   0.75
    - 40-60%:   0.55
    - below 40: 0.35
    """
    if success_rate >= 100:
        return 1.0
    elif success_rate >= 80:
        return 0.9
    elif success_rate >= 60:
        return 0.75
    elif success_rate >= 40:
        return 0.55
    else:
        return 0.35


def apply_success_rate_multiplier(strength: float, success_rate: float) -> int:
    """Decay a backing strength by the backer's record, clamped to [1, 10]"""
    decayed = round_half_up(strength * success_rate_multiplier(success_rate))
    return min(MAX_STRENGTH, max(MIN_STRENGTH, decayed))


def lock_reason(active_defaults: int) -> str:
    return (
        f"You have {active_defaults} people you backed currently in default. "
        "Your ability to back new people is suspended until these are resolved."
    )


def check_backing_eligibility(
    created_at: Optional[datetime],
    display_name: Optional[str],
    locked: bool,
    locked_reason: Optional[str],
    active_default_count: int,
    now: datetime,
    min_account_age_days: int,
    lock_threshold: int,
) -> BackingEligibility:
    """
    Gate run before a new backing is created.

    Gates (in order):
    1. Account at least min_account_age_days old
    2. Display name set (profile complete enough to be accountable)
    3. Not locked by active defaults
    """
    age_days = (now - created_at).total_seconds() / 86400 if created_at else 0.0
    if age_days < min_account_age_days:
        days_left = math.ceil(min_account_age_days - age_days)
        return BackingEligibility(
            eligible=False,
            code=EligibilityCode.ACCOUNT_TOO_NEW,
            reason=(
                f"Your account needs to be at least {min_account_age_days} days old before you can "
                f"back others. {days_left} day{'s' if days_left != 1 else ''} remaining."
            ),
        )

    if not display_name or len(display_name.strip()) < 2:
        return BackingEligibility(
            eligible=False,
            code=EligibilityCode.PROFILE_INCOMPLETE,
            reason="Please add your full name to your profile before backing others.",
        )

    if locked:
        return BackingEligibility(
            eligible=False,
            code=EligibilityCode.BACKING_LOCKED,
            reason=locked_reason or lock_reason(max(active_default_count, lock_threshold)),
        )

    return BackingEligibility(eligible=True, code=EligibilityCode.OK)
