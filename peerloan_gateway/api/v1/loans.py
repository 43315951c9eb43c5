"""Loan request endpoints - submission, matching, self-selection and servicing outcomes"""

import logging
import uuid
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from peerloan_gateway.api.dependencies import (
    get_actor_id,
    get_dispatcher,
    get_matching_service,
    get_outcome_service,
    get_request_id,
    require_service_secret,
)
from peerloan_gateway.api.errors import expired_response, to_http_error
from peerloan_gateway.api.v1.offers import outcome_response
from peerloan_gateway.api.v1.schemas import (
    ConsequenceResponse,
    InstallmentSchema,
    LoanCreateRequest,
    LoanOffersResponse,
    LoanResponse,
    OfferItem,
    OfferOutcomeResponse,
    OutcomeRequest,
    SelfSelectRequest,
    StartMatchingRequest,
    StartMatchingResponse,
)
from peerloan_gateway.domain.exceptions import DomainException, OfferExpired
from peerloan_gateway.domain.models import RankedCandidate, make_candidate
from peerloan_gateway.infrastructure.clients.dispatcher import NotificationDispatcher
from peerloan_gateway.infrastructure.database.models import LoanOffer, LoanRequest
from peerloan_gateway.infrastructure.database.repositories import LoanRepository, OfferRepository
from peerloan_gateway.infrastructure.database.session import get_db
from peerloan_gateway.services.matching import MatchingService
from peerloan_gateway.services.servicing import LoanOutcomeService

router = APIRouter()


def _iso(value):
    return value.isoformat() if value else None


def loan_response(loan: LoanRequest) -> LoanResponse:
    return LoanResponse(
        loan_id=str(loan.id),
        borrower_id=loan.borrower_id,
        status=loan.status,
        amount_cents=loan.amount_cents,
        currency=loan.currency,
        borrower_tier=loan.borrower_tier,
        total_installments=loan.total_installments,
        repayment_frequency=loan.repayment_frequency,
        current_offer_id=str(loan.current_offer_id) if loan.current_offer_id else None,
        lender_kind=loan.lender_kind,
        lender_id=loan.lender_id,
        auto_matched=loan.auto_matched,
        match_attempts=loan.match_attempts,
        interest_rate=loan.interest_rate,
        total_amount_cents=loan.total_amount_cents,
        repayment_amount_cents=loan.repayment_amount_cents,
        installments=[
            InstallmentSchema(
                due_date=i.due_date,
                amount_cents=i.amount_cents,
                principal_cents=i.principal_cents,
                interest_cents=i.interest_cents,
                status=i.status,
            )
            for i in loan.installments
        ],
        created_at=loan.created_at.isoformat(),
    )


def offer_item(offer: LoanOffer) -> OfferItem:
    return OfferItem(
        offer_id=str(offer.id),
        candidate_kind=offer.candidate_kind,
        candidate_id=offer.candidate_id,
        rank=offer.rank,
        score=offer.score,
        status=offer.status,
        offered_at=_iso(offer.offered_at),
        expires_at=_iso(offer.expires_at),
        responded_at=_iso(offer.responded_at),
        was_auto_accepted=offer.was_auto_accepted,
    )


@router.post("/loans", response_model=LoanResponse, status_code=201)
def create_loan(
    request_body: LoanCreateRequest,
    request: Request,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """Borrower submits a loan request; it waits in pending until matching starts"""
    request_id = get_request_id(request)
    try:
        loan = LoanRepository(db).create_loan(
            borrower_id=actor_id,
            amount_cents=request_body.amount_cents,
            currency=request_body.currency.upper(),
            borrower_tier=request_body.borrower_tier,
            total_installments=request_body.total_installments,
            repayment_frequency=request_body.repayment_frequency.value,
        )
        db.commit()
        db.refresh(loan)
        logging.info("Loan request created", extra={"request_id": request_id, "loan_id": str(loan.id)})
        return loan_response(loan)

    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/loans/{loan_id}/offers", response_model=LoanOffersResponse)
def get_loan_offers(loan_id: uuid.UUID, db: Session = Depends(get_db)):
    """
    Match status of a loan and its ranked offers.

    Returns:
        The loan with lender and terms once matched, plus every offer by rank
    """
    loan = LoanRepository(db).get(loan_id)
    if loan is None:
        raise HTTPException(status_code=404, detail={"error": "NotFound", "message": f"Loan {loan_id} not found"})

    offers = OfferRepository(db).list_for_loan(loan_id)
    return LoanOffersResponse(loan=loan_response(loan), offers=[offer_item(o) for o in offers])


@router.post(
    "/loans/{loan_id}/matching",
    response_model=StartMatchingResponse,
    dependencies=[Depends(require_service_secret)],
)
def start_matching(
    loan_id: uuid.UUID,
    request_body: StartMatchingRequest,
    background_tasks: BackgroundTasks,
    request: Request,
    db: Session = Depends(get_db),
    matching: MatchingService = Depends(get_matching_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Start the cascade with an already ranked candidate list"""
    request_id = get_request_id(request)
    background_tasks.add_task(dispatcher.flush)

    ranked = [RankedCandidate(candidate=make_candidate(c.kind, c.id), score=c.score) for c in request_body.candidates]
    try:
        result = matching.start_matching(loan_id, ranked)
        db.commit()
    except DomainException as e:
        db.rollback()
        logging.warning(f"Matching rejected: {e}", extra={"request_id": request_id, "loan_id": str(loan_id)})
        raise to_http_error(e)
    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")

    loan = LoanRepository(db).get(loan_id)
    return StartMatchingResponse(
        loan_id=str(loan_id),
        result=result.value,
        loan_status=loan.status,
        current_offer_id=str(loan.current_offer_id) if loan.current_offer_id else None,
    )


@router.post("/loans/{loan_id}/self-select", response_model=OfferOutcomeResponse)
def self_select_loan(
    loan_id: uuid.UUID,
    request_body: SelfSelectRequest,
    background_tasks: BackgroundTasks,
    request: Request,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
    matching: MatchingService = Depends(get_matching_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """A lender takes (or passes on) an open loan directly"""
    request_id = get_request_id(request)
    background_tasks.add_task(dispatcher.flush)

    candidate = make_candidate(request_body.lender.kind, request_body.lender.id)
    try:
        outcome = matching.self_select(loan_id, candidate, actor_id, request_body.action, request_body.reason)
        db.commit()
        return outcome_response(outcome)

    except OfferExpired as e:
        db.commit()
        return expired_response(e)

    except DomainException as e:
        db.rollback()
        logging.warning(f"Self-selection rejected: {e}", extra={"request_id": request_id, "loan_id": str(loan_id)})
        raise to_http_error(e)

    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post(
    "/loans/{loan_id}/outcome",
    response_model=ConsequenceResponse,
    dependencies=[Depends(require_service_secret)],
)
def record_loan_outcome(
    loan_id: uuid.UUID,
    request_body: OutcomeRequest,
    background_tasks: BackgroundTasks,
    request: Request,
    db: Session = Depends(get_db),
    outcomes: LoanOutcomeService = Depends(get_outcome_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Loan-servicing hook.

    Per-backer failures do not fail the request; they come back in errors.
    """
    request_id = get_request_id(request)
    background_tasks.add_task(dispatcher.flush)

    try:
        result = outcomes.apply(loan_id, request_body.event)
    except DomainException as e:
        db.rollback()
        raise to_http_error(e)
    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")

    return ConsequenceResponse(
        loan_id=str(loan_id),
        event=request_body.event,
        backers_notified=result.backers_notified,
        backers_locked=result.backers_locked,
        backers_unlocked=result.backers_unlocked,
        trust_events_recorded=result.trust_events_recorded,
        skipped=result.skipped,
        errors=result.errors,
    )
