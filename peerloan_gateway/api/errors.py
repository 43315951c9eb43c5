"""Translation of domain exceptions into structured HTTP errors"""

from fastapi import HTTPException
from fastapi.responses import JSONResponse

from peerloan_gateway.domain.exceptions import (
    AlreadyResolved,
    BackingNotAllowed,
    DomainException,
    Forbidden,
    LoanNotOpen,
    NotFoundError,
    OfferExpired,
    OfferNotEligible,
    ValidationError,
)


def to_http_error(e: DomainException) -> HTTPException:
    """Status code and {error, ...} body for a domain failure"""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail={"error": "NotFound", "message": str(e)})
    if isinstance(e, Forbidden):
        return HTTPException(status_code=403, detail={"error": "Forbidden", "message": str(e)})
    if isinstance(e, AlreadyResolved):
        return HTTPException(
            status_code=409, detail={"error": "AlreadyResolved", "status": e.status, "message": str(e)}
        )
    if isinstance(e, LoanNotOpen):
        return HTTPException(status_code=409, detail={"error": "LoanNotOpen", "status": e.status, "message": str(e)})
    if isinstance(e, OfferNotEligible):
        return HTTPException(status_code=409, detail={"error": "NotEligible", "code": e.code, "message": str(e)})
    if isinstance(e, BackingNotAllowed):
        return HTTPException(status_code=409, detail={"error": "BackingNotAllowed", "code": e.code, "message": e.reason})
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail={"error": "ValidationError", "message": str(e)})
    return HTTPException(status_code=500, detail={"error": "InternalError", "message": "Internal server error"})


def expired_response(e: OfferExpired) -> JSONResponse:
    """
    410 for an offer whose clock ran out.

    Returned rather than raised: the expiry and the cascade it triggered are
    committed, and the response must still carry the notification flush.
    """
    return JSONResponse(status_code=410, content={"detail": {"error": "Expired", "message": str(e)}})
