"""Backing endpoints - eligibility, vouching, revocation and the trust ledger"""

import logging
import uuid
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from peerloan_gateway.api.dependencies import get_accountability_engine, get_actor_id, get_request_id
from peerloan_gateway.api.errors import to_http_error
from peerloan_gateway.api.v1.schemas import (
    BackingCreateRequest,
    BackingResponse,
    EligibilityResponse,
    TrustEventItem,
    TrustEventsResponse,
)
from peerloan_gateway.domain.exceptions import DomainException
from peerloan_gateway.infrastructure.database.models import Backing
from peerloan_gateway.infrastructure.database.repositories import TrustEventRepository
from peerloan_gateway.infrastructure.database.session import get_db
from peerloan_gateway.services.accountability import AccountabilityEngine

router = APIRouter()


def backing_response(backing: Backing) -> BackingResponse:
    return BackingResponse(
        backing_id=str(backing.id),
        backer_id=backing.backer_id,
        borrower_id=backing.borrower_id,
        status=backing.status,
        strength=backing.strength,
        loans_completed=backing.loans_completed,
        loans_defaulted=backing.loans_defaulted,
        loans_active=backing.loans_active,
        created_at=backing.created_at.isoformat(),
    )


@router.get("/backers/{backer_id}/eligibility", response_model=EligibilityResponse)
def get_backing_eligibility(
    backer_id: str,
    engine: AccountabilityEngine = Depends(get_accountability_engine),
):
    eligibility = engine.check_eligibility(backer_id)
    return EligibilityResponse(
        backer_id=backer_id,
        eligible=eligibility.eligible,
        code=eligibility.code.value,
        reason=eligibility.reason,
    )


@router.post("/backings", response_model=BackingResponse, status_code=201)
def create_backing(
    request_body: BackingCreateRequest,
    request: Request,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
    engine: AccountabilityEngine = Depends(get_accountability_engine),
):
    """Caller vouches for a borrower, gated by the backing eligibility checks"""
    request_id = get_request_id(request)
    try:
        backing = engine.create_backing(actor_id, request_body.borrower_id, request_body.base_strength)
        db.commit()
        db.refresh(backing)
        return backing_response(backing)

    except DomainException as e:
        db.rollback()
        logging.warning(f"Backing rejected: {e}", extra={"request_id": request_id, "backer_id": actor_id})
        raise to_http_error(e)

    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/backings/{backing_id}/revoke", response_model=BackingResponse)
def revoke_backing(
    backing_id: uuid.UUID,
    request: Request,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
    engine: AccountabilityEngine = Depends(get_accountability_engine),
):
    request_id = get_request_id(request)
    try:
        backing = engine.revoke_backing(backing_id, actor_id)
        db.commit()
        return backing_response(backing)

    except DomainException as e:
        db.rollback()
        raise to_http_error(e)

    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/users/{user_id}/trust-events", response_model=TrustEventsResponse)
def get_trust_events(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    """
    Retrieve the most recent trust ledger entries for a user.

    Returns:
        Events newest first, with the signed trust delta of each
    """
    events = TrustEventRepository(db).for_subject(user_id, limit=limit)
    return TrustEventsResponse(
        user_id=user_id,
        events=[
            TrustEventItem(
                event_id=str(e.id),
                delta=e.delta,
                category=e.category,
                title=e.title,
                description=e.description,
                loan_id=str(e.loan_id) if e.loan_id else None,
                other_user_id=e.other_user_id,
                created_at=e.created_at.isoformat(),
            )
            for e in events
        ],
    )
