"""
Global error handling middleware.

WHAT: Translate exceptions to appropriate HTTP responses
WHY: Consistent error responses with proper status codes
HOW: FastAPI exception handlers for the domain exceptions
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from datetime import datetime

from ..utils.exceptions import (
    BusinessException,
    ValidationException,
    InvalidBidException,
    NotFoundException,
    NotAParticipantException,
    NegotiationNotActiveException,
    StaleNegotiationStateException,
    InsufficientStockException,
    TokenExpiredException,
    TokenInvalidException,
    AlreadyClaimedException,
    RateLimitedException,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Most specific first; the first isinstance match wins
STATUS_CODES = (
    (RateLimitedException, status.HTTP_429_TOO_MANY_REQUESTS),
    (TokenExpiredException, status.HTTP_410_GONE),
    (NotFoundException, status.HTTP_404_NOT_FOUND),
    (NotAParticipantException, status.HTTP_403_FORBIDDEN),
    (NegotiationNotActiveException, status.HTTP_409_CONFLICT),
    (StaleNegotiationStateException, status.HTTP_409_CONFLICT),
    (InsufficientStockException, status.HTTP_409_CONFLICT),
    (AlreadyClaimedException, status.HTTP_409_CONFLICT),
    (InvalidBidException, status.HTTP_400_BAD_REQUEST),
    (TokenInvalidException, status.HTTP_400_BAD_REQUEST),
    (ValidationException, status.HTTP_400_BAD_REQUEST),
)


def status_code_for(exc: BusinessException) -> int:
    for exc_type, code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_400_BAD_REQUEST


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """
    Handle FastAPI RequestValidationError.

    WHAT: Request validation failed
    WHY: Invalid request payload
    HOW: Return 400 with field errors
    """
    logger.warning(f"Validation error: {exc.errors()}")

    # Clean up error details to be JSON serializable
    cleaned_errors = []
    for error in exc.errors():
        cleaned_error = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": error.get("input")
        }
        if "ctx" in error:
            cleaned_error["ctx"] = {
                k: str(v) if isinstance(v, Exception) else v
                for k, v in error["ctx"].items()
            }
        cleaned_errors.append(cleaned_error)

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": cleaned_errors,
            "timestamp": datetime.now().isoformat()
        }
    )


async def business_exception_handler(request: Request, exc: BusinessException):
    """
    Handle domain exceptions.

    WHAT: Negotiation, stock, QR and rate-limit failures
    WHY: Callers branch on the error code and status, never on message text
    HOW: Status from STATUS_CODES; 429 responses carry Retry-After
    """
    status_code = status_code_for(exc)
    headers = None
    if isinstance(exc, RateLimitedException):
        headers = {"Retry-After": str(exc.retry_after)}

    logger.warning(f"Business exception: {exc.code} - {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.code,
            "message": exc.message,
            "details": exc.details,
            "timestamp": datetime.now().isoformat()
        },
        headers=headers,
    )


def register_exception_handlers(app):
    """
    Register all exception handlers with FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(BusinessException, business_exception_handler)

    logger.info("Exception handlers registered")
