"""Unit tests for backing creation and loan outcome propagation"""

import pytest
import uuid

from peerloan_gateway.domain.exceptions import BackingNotAllowed, BackingNotFound, Forbidden
from peerloan_gateway.domain.models import EligibilityCode, Urgency
from peerloan_gateway.infrastructure.database.models import Backing, TrustEvent, UserProfile


def _profile(db, user_id) -> UserProfile:
    user = db.get(UserProfile, user_id)
    db.refresh(user)
    return user


def _backing(db, backing_id) -> Backing:
    backing = db.get(Backing, backing_id)
    db.refresh(backing)
    return backing


# Backing gate


def test_missing_profile_is_incomplete(accountability):
    result = accountability.check_eligibility("ghost")
    assert result.code == EligibilityCode.PROFILE_INCOMPLETE


def test_young_account_cannot_back(factory, accountability):
    factory.user("newbie", age_days=2)
    assert accountability.check_eligibility("newbie").code == EligibilityCode.ACCOUNT_TOO_NEW


def test_create_backing_decays_by_record(db, factory, accountability):
    factory.user("paula", success_rate=80.0)

    backing = accountability.create_backing("paula", "xavier", base_strength=10)
    db.commit()

    assert backing.strength == 9
    assert backing.status == "active"


@pytest.mark.parametrize(
    "backer, borrower, code",
    [("paula", "paula", "self_backing"), ("locked", "xavier", "backing_locked")],
)
def test_create_backing_rejections(db, factory, accountability, backer, borrower, code):
    factory.user("paula")
    factory.user("locked", locked=True, locked_reason="Two defaults")

    with pytest.raises(BackingNotAllowed) as exc:
        accountability.create_backing(backer, borrower)
    assert exc.value.code == code


def test_duplicate_backing_is_rejected(db, factory, accountability):
    factory.backing("paula", "xavier")

    with pytest.raises(BackingNotAllowed) as exc:
        accountability.create_backing("paula", "xavier")
    assert exc.value.code == "already_backing"


def test_revoke_backing(db, factory, accountability):
    backing = factory.backing("paula", "xavier")

    with pytest.raises(Forbidden):
        accountability.revoke_backing(backing.id, "xavier")

    revoked = accountability.revoke_backing(backing.id, "paula")
    db.commit()
    assert revoked.status == "revoked"

    with pytest.raises(BackingNotAllowed):
        accountability.revoke_backing(backing.id, "paula")
    with pytest.raises(BackingNotFound):
        accountability.revoke_backing(uuid.uuid4(), "paula")


# Outcome propagation


def test_started_counts_active_loan_once(db, factory, accountability):
    backing = factory.backing("paula", "xavier")
    loan_id = uuid.uuid4()

    first = accountability.on_loan_started("xavier", loan_id)
    again = accountability.on_loan_started("xavier", loan_id)

    assert first.skipped == 0
    assert again.skipped == 1
    assert _backing(db, backing.id).loans_active == 1


def test_completed_rewards_backer(db, factory, accountability, dispatcher):
    backing = factory.backing("paula", "xavier")
    loan_id = uuid.uuid4()
    accountability.on_loan_started("xavier", loan_id)

    result = accountability.on_loan_completed("xavier", loan_id)

    assert (result.backers_notified, result.trust_events_recorded, result.errors) == (1, 1, [])
    refreshed = _backing(db, backing.id)
    assert (refreshed.loans_completed, refreshed.loans_active) == (1, 0)
    assert _profile(db, "paula").success_rate == 100.0

    event = db.query(TrustEvent).filter(TrustEvent.subject_id == "paula").one()
    assert (event.delta, event.category, event.other_user_id) == (2, "backed_loan_completed", "xavier")

    (note,) = [n for n in dispatcher.ready if n.kind == "backed_loan_completed"]
    assert note.urgency == Urgency.LOW
    assert [c.value for c in note.channels] == ["in_app"]


def test_redelivered_completion_is_a_noop(db, factory, accountability):
    backing = factory.backing("paula", "xavier")
    loan_id = uuid.uuid4()
    accountability.on_loan_completed("xavier", loan_id)

    again = accountability.on_loan_completed("xavier", loan_id)

    assert again.skipped == 1
    assert again.trust_events_recorded == 0
    assert _backing(db, backing.id).loans_completed == 1


def test_default_decays_strength_and_counts_toward_lock(db, factory, accountability, dispatcher):
    backing = factory.backing("paula", "xavier", strength=8, loans_completed=2)
    loan_id = uuid.uuid4()

    result = accountability.on_loan_defaulted("xavier", loan_id)

    assert result.backers_locked == 0
    refreshed = _backing(db, backing.id)
    assert refreshed.loans_defaulted == 1
    assert refreshed.strength == 6
    profile = _profile(db, "paula")
    assert profile.success_rate == 66.67
    assert profile.active_default_count == 1
    assert profile.locked is False

    (note,) = [n for n in dispatcher.ready if n.kind == "backed_loan_defaulted"]
    assert note.urgency == Urgency.URGENT
    assert {c.value for c in note.channels} == {"email", "in_app"}


def test_second_default_locks_backer(db, factory, accountability, clock):
    factory.backing("paula", "xavier")
    factory.backing("paula", "yara")

    accountability.on_loan_defaulted("xavier", uuid.uuid4())
    result = accountability.on_loan_defaulted("yara", uuid.uuid4())

    assert result.backers_locked == 1
    profile = _profile(db, "paula")
    assert profile.locked is True
    assert profile.locked_at == clock()
    assert "2 people" in profile.locked_reason
    assert accountability.check_eligibility("paula").code == EligibilityCode.BACKING_LOCKED


def test_resolving_default_unlocks_below_threshold(db, factory, accountability, dispatcher):
    factory.backing("paula", "xavier")
    factory.backing("paula", "yara")
    loan_x, loan_y = uuid.uuid4(), uuid.uuid4()
    accountability.on_loan_defaulted("xavier", loan_x)
    accountability.on_loan_defaulted("yara", loan_y)

    result = accountability.on_default_resolved("xavier", loan_x)

    assert result.backers_unlocked == 1
    profile = _profile(db, "paula")
    assert (profile.locked, profile.locked_reason, profile.locked_at) == (False, None, None)
    assert profile.active_default_count == 1
    assert "backing_unlocked" in [n.kind for n in dispatcher.ready]


def test_resolving_unknown_default_is_skipped(db, factory, accountability):
    factory.backing("paula", "xavier")

    result = accountability.on_default_resolved("xavier", uuid.uuid4())

    assert result.skipped == 1
    assert _profile(db, "paula").active_default_count == 0


def test_revoked_backings_are_not_touched(db, factory, accountability):
    backing = factory.backing("paula", "xavier", status="revoked")

    result = accountability.on_loan_defaulted("xavier", uuid.uuid4())

    assert result.trust_events_recorded == 0
    assert _backing(db, backing.id).loans_defaulted == 0


def test_one_failing_backer_does_not_stop_the_rest(db, factory, accountability, monkeypatch):
    factory.backing("paula", "xavier")
    factory.backing("quinn", "xavier")
    original = accountability._refresh_success_rate

    def refresh(backer_id):
        if backer_id == "paula":
            raise RuntimeError("profile row locked")
        return original(backer_id)

    monkeypatch.setattr(accountability, "_refresh_success_rate", refresh)
    result = accountability.on_loan_defaulted("xavier", uuid.uuid4())

    assert result.errors == ["backer paula: profile row locked"]
    assert result.trust_events_recorded == 1
    assert _profile(db, "paula").active_default_count == 0
    assert _profile(db, "quinn").active_default_count == 1


def test_redelivered_default_is_a_noop(db, factory, accountability):
    backing = factory.backing("paula", "xavier", strength=8, loans_completed=2)
    loan_id = uuid.uuid4()
    accountability.on_loan_defaulted("xavier", loan_id)

    again = accountability.on_loan_defaulted("xavier", loan_id)

    assert (again.skipped, again.trust_events_recorded, again.backers_locked) == (1, 0, 0)
    refreshed = _backing(db, backing.id)
    assert (refreshed.loans_defaulted, refreshed.strength) == (1, 6)
    profile = _profile(db, "paula")
    assert (profile.active_default_count, profile.locked) == (1, False)
    assert db.query(TrustEvent).filter(TrustEvent.subject_id == "paula").count() == 1


def test_redelivered_default_resolution_is_a_noop(db, factory, accountability):
    factory.backing("paula", "xavier")
    factory.backing("paula", "yara")
    loan_x = uuid.uuid4()
    accountability.on_loan_defaulted("xavier", loan_x)
    accountability.on_loan_defaulted("yara", uuid.uuid4())
    accountability.on_default_resolved("xavier", loan_x)

    again = accountability.on_default_resolved("xavier", loan_x)

    assert (again.skipped, again.backers_unlocked) == (1, 0)
    assert _profile(db, "paula").active_default_count == 1
