"""
Custom application exceptions
"""

from typing import Optional, Dict, Any


class VeraException(Exception):
    """Base exception for the ticketing core"""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class AuthenticationError(VeraException):
    """Authentication related errors"""

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="AUTH_ERROR",
            status_code=401,
            details=details
        )


class AuthorizationError(VeraException):
    """Authorization related errors"""

    def __init__(self, message: str = "Not authorized", details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="AUTH_FORBIDDEN",
            status_code=403,
            details=details
        )


class NotFoundError(VeraException):
    """Resource not found errors"""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id {identifier} not found"
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404
        )


class ValidationError(VeraException):
    """Validation errors"""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=400,
            details=details
        )


class ConflictError(VeraException):
    """Resource conflict errors"""

    def __init__(self, message: str, code: str = "CONFLICT", details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code=code,
            status_code=409,
            details=details
        )


class CapacityExceededError(ConflictError):
    def __init__(self, requested: int, reserved: int, capacity: int):
        super().__init__(
            message="Ticket capacity has been reached",
            code="CAPACITY_EXCEEDED",
            details={"requested": requested, "reserved": reserved, "capacity": capacity}
        )


class EventNotPublishedError(ConflictError):
    def __init__(self, event_id: Any):
        super().__init__(
            message="Only published events can issue tickets",
            code="EVENT_NOT_PUBLISHED",
            details={"event_id": str(event_id)}
        )


class NoUpcomingOccurrenceError(ConflictError):
    def __init__(self, event_id: Any):
        super().__init__(
            message="This event has no available upcoming occurrence",
            code="NO_UPCOMING_OCCURRENCE",
            details={"event_id": str(event_id)}
        )


class TicketNotEligibleError(ConflictError):
    """Ticket is in the wrong state for the requested operation"""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message=message, code="TICKET_NOT_ELIGIBLE", details=details)


class OfferWindowExpiredError(ConflictError):
    def __init__(self, expired_at: Any = None):
        super().__init__(
            message="The accepted offer window has expired",
            code="OFFER_WINDOW_EXPIRED",
            details={"expired_at": expired_at.isoformat() if expired_at else None}
        )


class PriceExceedsCapError(ConflictError):
    def __init__(self, price: int, cap: int):
        super().__init__(
            message=f"Resale price cannot exceed {cap}",
            code="PRICE_EXCEEDS_CAP",
            details={"price": price, "cap": cap}
        )


class BiddingRequiredError(ConflictError):
    def __init__(self):
        super().__init__(
            message="This listing only accepts bids",
            code="BIDDING_REQUIRED"
        )


class AlreadyOwnTicketError(ConflictError):
    def __init__(self):
        super().__init__(
            message="You already own this ticket",
            code="ALREADY_OWN_TICKET"
        )


class CheckInWindowClosedError(ConflictError):
    def __init__(self, details: Optional[Dict] = None):
        super().__init__(
            message="Ticket check-in window is closed for this event",
            code="CHECK_IN_WINDOW_CLOSED",
            details=details
        )


class AmountMismatchError(ConflictError):
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message=message, code="AMOUNT_MISMATCH", details=details)


class NotOwnerError(AuthorizationError):
    def __init__(self, message: str = "Only the ticket owner can do this"):
        super().__init__(message=message)
        self.code = "NOT_OWNER"


class PaymentNotCompletedError(VeraException):
    """Gateway reports the payment as not successful"""

    def __init__(self, payment_status: str, details: Optional[Dict] = None):
        super().__init__(
            message="Payment has not been completed",
            code="PAYMENT_NOT_COMPLETED",
            status_code=402,
            details={"payment_status": payment_status, **(details or {})}
        )


class InvalidSignatureError(VeraException):
    def __init__(self):
        super().__init__(
            message="Invalid webhook signature",
            code="INVALID_SIGNATURE",
            status_code=401
        )


class AllocationExhaustedError(VeraException):
    """Could not allocate a unique ticket code"""

    def __init__(self, attempts: int):
        super().__init__(
            message="Could not generate ticket code",
            code="ALLOCATION_EXHAUSTED",
            status_code=500,
            details={"attempts": attempts}
        )


class ExternalServiceError(VeraException):
    """External service error"""

    def __init__(
        self,
        service: str,
        message: str = None,
        status_code: int = 503,
        details: Optional[Dict] = None
    ):
        super().__init__(
            message=message or f"External service {service} is unavailable",
            code="EXTERNAL_SERVICE_ERROR",
            status_code=status_code,
            details={"service": service, **(details or {})}
        )
