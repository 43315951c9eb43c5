"""Unit tests for offer acceptance, decline and expiry"""

import pytest
import uuid
from datetime import timedelta

from peerloan_gateway.domain.exceptions import AlreadyResolved, Forbidden, OfferExpired, OfferNotFound
from peerloan_gateway.domain.models import CascadeResult, LoanStatus, OfferStatus, RankedCandidate
from peerloan_gateway.infrastructure.database.models import LenderPreference, LoanOffer, TrustEvent


def _start(db, matching, loan, *candidates):
    result = matching.start_matching(loan.id, [RankedCandidate(candidate=c) for c in candidates])
    db.commit()
    offers = db.query(LoanOffer).filter(LoanOffer.loan_id == loan.id).order_by(LoanOffer.rank).all()
    return result, offers


def _preference(db, candidate):
    return (
        db.query(LenderPreference)
        .filter(LenderPreference.candidate_kind == candidate.kind.value, LenderPreference.candidate_id == candidate.identity)
        .one()
    )


def test_start_matching_presents_first_rank_only(db, factory, matching, clock, dispatcher, alice, bob):
    factory.lender(alice)
    factory.lender(bob)
    loan = factory.loan()

    result, (first, second) = _start(db, matching, loan, alice, bob)

    assert result == CascadeResult.PRESENTED
    assert first.expires_at == clock() + timedelta(hours=24)
    assert first.offered_at == clock()
    assert second.expires_at is None
    db.refresh(loan)
    assert loan.status == LoanStatus.MATCHING.value
    assert loan.current_offer_id == first.id
    assert loan.match_attempts == 1
    kinds = [n.kind for n in dispatcher.ready]
    assert kinds == ["loan_offer", "loan_in_review"]
    assert dispatcher.ready[0].recipient_id == "alice"


def test_accept_assigns_lender_and_fixes_terms(db, factory, matching, machine, dispatcher, alice, bob):
    factory.lender(alice, interest_rate=12.0)
    factory.lender(bob)
    loan = factory.loan(amount_cents=10000, total_installments=2, repayment_frequency="biweekly")
    _, (first, second) = _start(db, matching, loan, alice, bob)

    outcome = machine.accept(first.id, "alice")
    db.commit()

    assert outcome.status == OfferStatus.ACCEPTED
    assert outcome.loan_status == LoanStatus.ACTIVE
    assert outcome.terms.total_interest_cents == 1200
    assert outcome.terms.repayment_amount_cents == 5600

    db.refresh(loan)
    assert loan.status == LoanStatus.ACTIVE.value
    assert (loan.lender_kind, loan.lender_id) == ("individual", "alice")
    assert loan.total_amount_cents == 11200
    assert loan.auto_matched is False
    assert len(loan.installments) == 2

    db.refresh(first)
    db.refresh(second)
    assert first.status == OfferStatus.ACCEPTED.value
    assert first.responded_at is not None
    assert second.status == OfferStatus.SKIPPED.value


def test_accept_reserves_capital_and_bumps_counters(db, factory, matching, machine, clock, alice):
    factory.lender(alice, capital_pool_cents=50000)
    loan = factory.loan(amount_cents=20000)
    _, (offer,) = _start(db, matching, loan, alice)

    machine.accept(offer.id, "alice")
    db.commit()

    preference = _preference(db, alice)
    assert preference.capital_reserved_cents == 20000
    assert preference.available_capital_cents == 30000
    assert preference.total_loans_funded == 1
    assert preference.total_amount_funded_cents == 20000
    assert preference.last_loan_assigned_at == clock()


def test_accept_records_trust_event_and_notifies_both_sides(db, factory, matching, machine, dispatcher, alice):
    factory.lender(alice)
    loan = factory.loan(borrower_id="borrower")
    _, (offer,) = _start(db, matching, loan, alice)
    presented = len(dispatcher.ready)

    machine.accept(offer.id, "alice")
    db.commit()

    events = db.query(TrustEvent).filter(TrustEvent.loan_id == loan.id).all()
    assert len(events) == 1
    assert events[0].category == "loan_matched"
    assert events[0].delta == 0
    assert events[0].subject_id == "borrower"

    new = dispatcher.ready[presented:]
    assert {(n.kind, n.recipient_id) for n in new} == {("loan_matched", "borrower"), ("offer_accepted", "alice")}
    borrower_notice = next(n for n in new if n.kind == "loan_matched")
    assert {c.value for c in borrower_notice.channels} == {"email", "in_app"}


def test_accept_prefers_tier_rate(db, factory, matching, machine, alice):
    factory.lender(alice, interest_rate=12.0, tier_rates={"tier_2": 8.0})
    loan = factory.loan(amount_cents=10000, borrower_tier="tier_2")
    _, (offer,) = _start(db, matching, loan, alice)

    outcome = machine.accept(offer.id, "alice")

    assert outcome.terms.interest_rate == 8.0
    assert outcome.terms.total_interest_cents == 800


def test_accept_falls_back_to_default_rate(db, factory, matching, machine, alice):
    factory.lender(alice, interest_rate=None)
    loan = factory.loan(amount_cents=10000, borrower_tier="tier_5")
    _, (offer,) = _start(db, matching, loan, alice)

    outcome = machine.accept(offer.id, "alice")

    assert outcome.terms.interest_rate == 10.0


def test_organization_offer_is_answered_by_owner(db, factory, matching, machine, acme):
    factory.user("olivia")
    factory.organization("acme", owner_id="olivia")
    factory.lender(acme)
    loan = factory.loan()
    _, (offer,) = _start(db, matching, loan, acme)

    with pytest.raises(Forbidden):
        machine.accept(offer.id, "mallory")

    outcome = machine.accept(offer.id, "olivia")
    db.commit()
    assert outcome.status == OfferStatus.ACCEPTED
    db.refresh(loan)
    assert (loan.lender_kind, loan.lender_id) == ("organization", "acme")


def test_accept_by_other_user_is_forbidden(db, factory, matching, machine, alice):
    factory.lender(alice)
    loan = factory.loan()
    _, (offer,) = _start(db, matching, loan, alice)

    with pytest.raises(Forbidden):
        machine.accept(offer.id, "bob")


def test_unknown_offer(machine):
    with pytest.raises(OfferNotFound):
        machine.accept(uuid.uuid4(), "alice")


def test_resolved_offer_reports_its_state(db, factory, matching, machine, alice, bob):
    factory.lender(alice)
    factory.lender(bob)
    loan = factory.loan()
    _, (first, second) = _start(db, matching, loan, alice, bob)
    machine.accept(first.id, "alice")
    db.commit()

    with pytest.raises(AlreadyResolved) as exc:
        machine.accept(first.id, "alice")
    assert exc.value.status == "accepted"

    with pytest.raises(AlreadyResolved) as exc:
        machine.accept(second.id, "bob")
    assert exc.value.status == "skipped"


def test_at_most_one_accepting_offer(db, factory, matching, machine, alice, bob):
    factory.lender(alice)
    factory.lender(bob)
    loan = factory.loan()
    _, (first, second) = _start(db, matching, loan, alice, bob)

    # rank 2 has not been presented yet but may still accept early
    machine.accept(second.id, "bob")
    db.commit()

    with pytest.raises(AlreadyResolved):
        machine.accept(first.id, "alice")
    db.rollback()

    assert machine.offers.count_accepting(loan.id) == 1


def test_decline_cascades_to_next_rank(db, factory, matching, machine, clock, alice, bob):
    factory.lender(alice, total_loans_funded=3)
    factory.lender(bob)
    loan = factory.loan()
    _, (first, second) = _start(db, matching, loan, alice, bob)
    clock.advance(hours=2)

    outcome = machine.decline(first.id, "alice", "Not this month")
    db.commit()

    assert outcome.status == OfferStatus.DECLINED
    assert outcome.next_offer_id == second.id
    assert outcome.loan_status == LoanStatus.MATCHING

    db.refresh(first)
    db.refresh(second)
    assert first.decline_reason == "Not this month"
    assert second.expires_at == clock() + timedelta(hours=24)

    preference = _preference(db, alice)
    assert preference.acceptance_rate == pytest.approx(75.0)
    assert preference.offers_declined == 1


def test_decline_last_candidate_ends_in_no_match(db, factory, matching, machine, dispatcher, alice):
    factory.lender(alice)
    loan = factory.loan(borrower_id="borrower")
    _, (offer,) = _start(db, matching, loan, alice)

    outcome = machine.decline(offer.id, "alice")
    db.commit()

    assert outcome.loan_status == LoanStatus.NO_MATCH
    assert outcome.next_offer_id is None
    db.refresh(loan)
    assert loan.current_offer_id is None
    assert ("loan_no_match", "borrower") in [(n.kind, n.recipient_id) for n in dispatcher.ready]


def test_response_after_expiry_expires_and_cascades(db, factory, matching, machine, clock, alice, bob):
    factory.lender(alice, total_loans_funded=1)
    factory.lender(bob)
    loan = factory.loan()
    _, (first, second) = _start(db, matching, loan, alice, bob)
    clock.advance(hours=25)

    with pytest.raises(OfferExpired):
        machine.accept(first.id, "alice")
    db.commit()

    db.refresh(first)
    db.refresh(second)
    assert first.status == OfferStatus.EXPIRED.value
    assert first.responded_at is None
    assert second.expires_at is not None
    preference = _preference(db, alice)
    assert preference.offers_expired == 1
    assert preference.acceptance_rate == pytest.approx(50.0)


def test_expire_loses_to_earlier_acceptance(db, factory, matching, machine, clock, alice):
    factory.lender(alice)
    loan = factory.loan()
    _, (offer,) = _start(db, matching, loan, alice)
    machine.accept(offer.id, "alice")
    db.commit()

    assert machine.expire(offer, clock.advance(hours=30)) is False
    db.refresh(offer)
    assert offer.status == OfferStatus.ACCEPTED.value


def test_auto_accept_lender_takes_loan_on_presentation(db, factory, matching, alice, bob):
    factory.lender(alice, auto_accept=True)
    factory.lender(bob)
    loan = factory.loan()

    result, (first, second) = _start(db, matching, loan, alice, bob)

    assert result == CascadeResult.AUTO_ACCEPTED
    db.refresh(first)
    db.refresh(second)
    db.refresh(loan)
    assert first.status == OfferStatus.AUTO_ACCEPTED.value
    assert first.was_auto_accepted is True
    assert second.status == OfferStatus.SKIPPED.value
    assert loan.status == LoanStatus.ACTIVE.value
    assert loan.auto_matched is True
    assert _preference(db, alice).capital_reserved_cents == loan.amount_cents


def test_offer_is_still_open_at_its_exact_expiry(db, factory, matching, machine, clock, alice):
    factory.lender(alice)
    loan = factory.loan()
    _, (offer,) = _start(db, matching, loan, alice)
    clock.advance(hours=24)

    report = machine.cascade.sweep()
    assert report.offers_expired == 0

    outcome = machine.accept(offer.id, "alice")
    db.commit()
    assert outcome.status == OfferStatus.ACCEPTED


def test_late_response_losing_to_concurrent_resolution(db, factory, matching, machine, clock, alice, bob):
    factory.lender(alice)
    factory.lender(bob)
    loan = factory.loan()
    _, (first, second) = _start(db, matching, loan, alice, bob)
    assert first.status == OfferStatus.PENDING.value

    # Resolved by another worker; this session still holds the pending copy
    db.query(LoanOffer).filter(LoanOffer.id == first.id).update(
        {LoanOffer.status: OfferStatus.DECLINED.value}, synchronize_session=False
    )
    clock.advance(hours=25)

    with pytest.raises(AlreadyResolved) as exc:
        machine.accept(first.id, "alice")
    assert exc.value.status == OfferStatus.DECLINED.value
    assert _preference(db, alice).offers_expired == 0
