"""Domain-specific exceptions"""

from typing import Optional


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class ValidationError(DomainException):
    """Input is malformed; rejected before any state change"""

    pass


class NotFoundError(DomainException):
    """Referenced entity does not exist"""

    pass


class OfferNotFound(NotFoundError):
    pass


class LoanNotFound(NotFoundError):
    pass


class BackingNotFound(NotFoundError):
    pass


class Forbidden(DomainException):
    """Actor is not allowed to act on this resource"""

    pass


class AlreadyResolved(DomainException):
    """Offer has left the pending state"""

    def __init__(self, status: str, message: Optional[str] = None):
        self.status = status
        super().__init__(message or f"Offer already {status}")


class OfferExpired(DomainException):
    """Offer expiry elapsed before the response; the offer is now expired"""

    pass


class LoanNotOpen(DomainException):
    """Loan is assigned or terminal and cannot enter matching"""

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Loan is {status}")


class OfferNotEligible(DomainException):
    """Lender cannot take this loan"""

    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(message)


class BackingNotAllowed(DomainException):
    """Backer cannot create this backing"""

    def __init__(self, code: str, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(reason)


class NotificationDeliveryError(DomainException):
    """Notification service rejected or never received a delivery"""

    pass
