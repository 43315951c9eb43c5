"""POST /v1/offers/{offer_id}/respond - lender accepts or declines an offer"""

import logging
import uuid
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from peerloan_gateway.api.dependencies import get_actor_id, get_dispatcher, get_offer_machine, get_request_id
from peerloan_gateway.api.errors import expired_response, to_http_error
from peerloan_gateway.api.v1.schemas import InstallmentSchema, OfferOutcomeResponse, RespondRequest, TermsSchema
from peerloan_gateway.domain.exceptions import DomainException, OfferExpired
from peerloan_gateway.domain.models import LoanTerms, OfferOutcome
from peerloan_gateway.infrastructure.clients.dispatcher import NotificationDispatcher
from peerloan_gateway.infrastructure.database.session import get_db
from peerloan_gateway.services.offers import OfferStateMachine

router = APIRouter()


def terms_schema(terms: Optional[LoanTerms]) -> Optional[TermsSchema]:
    if terms is None:
        return None
    return TermsSchema(
        interest_rate=terms.interest_rate,
        total_interest_cents=terms.total_interest_cents,
        total_amount_cents=terms.total_amount_cents,
        repayment_amount_cents=terms.repayment_amount_cents,
        installments=[
            InstallmentSchema(
                due_date=i.due_date,
                amount_cents=i.amount_cents,
                principal_cents=i.principal_cents,
                interest_cents=i.interest_cents,
            )
            for i in terms.installments
        ],
    )


def outcome_response(outcome: OfferOutcome) -> OfferOutcomeResponse:
    return OfferOutcomeResponse(
        offer_id=str(outcome.offer_id),
        loan_id=str(outcome.loan_id),
        status=outcome.status.value,
        loan_status=outcome.loan_status.value,
        next_offer_id=str(outcome.next_offer_id) if outcome.next_offer_id else None,
        terms=terms_schema(outcome.terms),
    )


@router.post("/offers/{offer_id}/respond", response_model=OfferOutcomeResponse)
def respond_to_offer(
    offer_id: uuid.UUID,
    request_body: RespondRequest,
    background_tasks: BackgroundTasks,
    request: Request,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
    machine: OfferStateMachine = Depends(get_offer_machine),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Accept or decline a pending offer.

    Flow:
    1. Authorize the caller for the offer's candidate
    2. Conditionally resolve the offer (loses cleanly to a concurrent sweep)
    3. Accept: assign the lender, fix terms, skip siblings
       Decline: cascade to the next ranked candidate
    4. Commit, then flush notifications in the background
    """
    request_id = get_request_id(request)
    background_tasks.add_task(dispatcher.flush)

    try:
        if request_body.action == "accept":
            outcome = machine.accept(offer_id, actor_id)
        else:
            outcome = machine.decline(offer_id, actor_id, request_body.reason)
        db.commit()
        return outcome_response(outcome)

    except OfferExpired as e:
        db.commit()
        logging.info(f"Offer expired before response: {e}", extra={"request_id": request_id})
        return expired_response(e)

    except DomainException as e:
        db.rollback()
        logging.warning(f"Offer response rejected: {e}", extra={"request_id": request_id})
        raise to_http_error(e)

    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")
