"""
Custom business exceptions for the negotiation core.

WHAT: Domain-specific exceptions that map to HTTP status codes
WHY: Every failure reaches the caller as a typed error, never a silent no-op
HOW: Custom exception classes with error codes, messages, and details
"""

from typing import Optional, List, Dict, Any


class BusinessException(Exception):
    """Base class for business logic exceptions."""

    def __init__(self, message: str, code: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class ValidationException(BusinessException):
    """Raised for validation errors."""

    def __init__(self, message: str, field_errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={"field_errors": field_errors} if field_errors else None
        )


class InvalidBidException(BusinessException):
    """Raised when a bid amount or bidder role is not acceptable."""

    def __init__(self, reason: str, amount: Any = None, role: Optional[str] = None):
        super().__init__(
            message=f"Invalid bid: {reason}",
            code="INVALID_BID",
            details={"amount": str(amount) if amount is not None else None, "role": role}
        )


# Not found family

class NotFoundException(BusinessException):
    """Raised when a referenced entity does not exist."""


class NegotiationNotFoundException(NotFoundException):
    """Raised when a negotiation is not found."""

    def __init__(self, negotiation_id: str):
        super().__init__(
            message=f"Negotiation not found: {negotiation_id}",
            code="NEGOTIATION_NOT_FOUND",
            details={"negotiation_id": negotiation_id}
        )


class ReservationNotFoundException(NotFoundException):
    """Raised when a reservation no longer exists (released, committed, or expired)."""

    def __init__(self, reservation_id: str):
        super().__init__(
            message=f"Reservation not found: {reservation_id}",
            code="RESERVATION_NOT_FOUND",
            details={"reservation_id": reservation_id}
        )


class ProductNotFoundException(NotFoundException):
    """Raised when a product has no stock record."""

    def __init__(self, product_id: str):
        super().__init__(
            message=f"Product not found: {product_id}",
            code="PRODUCT_NOT_FOUND",
            details={"product_id": product_id}
        )


class QRSessionNotFoundException(NotFoundException):
    """Raised when an administrative call names an unknown QR token."""

    def __init__(self, token_hint: str):
        super().__init__(
            message=f"QR session not found: {token_hint}",
            code="QR_SESSION_NOT_FOUND",
            details={"token": token_hint}
        )


# Negotiation state

class NegotiationNotActiveException(BusinessException):
    """Raised when attempting to mutate a negotiation in a terminal state."""

    def __init__(self, negotiation_id: str, current_status: str):
        super().__init__(
            message=f"Negotiation {negotiation_id} is not active. Current status: {current_status}",
            code="NEGOTIATION_NOT_ACTIVE",
            details={"negotiation_id": negotiation_id, "current_status": current_status}
        )


class StaleNegotiationStateException(BusinessException):
    """Raised when a concurrent mutation changed the negotiation between read and write."""

    def __init__(self, negotiation_id: str, expected_sequence: int):
        super().__init__(
            message=f"Negotiation {negotiation_id} changed concurrently; retry with fresh state",
            code="STALE_NEGOTIATION_STATE",
            details={"negotiation_id": negotiation_id, "expected_sequence": expected_sequence}
        )


class NotAParticipantException(BusinessException):
    """Raised when an actor outside the customer/vendor pair tries to mutate a negotiation."""

    def __init__(self, negotiation_id: str, actor_id: str, role: str):
        super().__init__(
            message=f"Actor {actor_id} is not the {role} of negotiation {negotiation_id}",
            code="NOT_A_PARTICIPANT",
            details={"negotiation_id": negotiation_id, "actor_id": actor_id, "role": role}
        )


# Stock

class InsufficientStockException(BusinessException):
    """Raised when a reservation cannot be satisfied from unreserved stock."""

    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(
            message=f"Insufficient stock for product {product_id}: requested {requested}, unreserved {available}",
            code="INSUFFICIENT_STOCK",
            details={
                "product_id": product_id,
                "requested": requested,
                "available": available
            }
        )


# QR sessions

class TokenExpiredException(BusinessException):
    """Raised when a QR token is used after its expiry."""

    def __init__(self, session_id: str, expires_at: str):
        super().__init__(
            message=f"QR session {session_id} expired at {expires_at}",
            code="TOKEN_EXPIRED",
            details={"session_id": session_id, "expires_at": expires_at}
        )


class TokenInvalidException(BusinessException):
    """Raised when a QR token is unknown, expired earlier, or was invalidated."""

    def __init__(self, reason: str):
        super().__init__(
            message=f"Invalid QR token: {reason}",
            code="TOKEN_INVALID",
            details={"reason": reason}
        )


class AlreadyClaimedException(BusinessException):
    """Raised when a QR token has already been claimed by another party."""

    def __init__(self, session_id: str):
        super().__init__(
            message=f"QR session {session_id} has already been claimed",
            code="ALREADY_CLAIMED",
            details={"session_id": session_id}
        )


# Rate limiting

class RateLimitedException(BusinessException):
    """Raised when an actor exceeds the quota for a category."""

    def __init__(self, category: str, actor_key: str, limit: int, retry_after: int):
        super().__init__(
            message=f"Too many {category} requests, please try again later",
            code="RATE_LIMITED",
            details={
                "category": category,
                "actor_key": actor_key,
                "limit": limit,
                "retry_after": retry_after
            }
        )
        self.retry_after = retry_after
