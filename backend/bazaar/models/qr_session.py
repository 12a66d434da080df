"""
QR session domain models.

WHAT: Payload, issue result, validation result, and claim result for QR sessions
WHY: A QR token bridges two parties who may use different languages
HOW: Pydantic v2 models; language tags validated against the supported set
"""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from ..core.models import QRSessionStatus
from .negotiation import NegotiationState

SUPPORTED_LANGUAGES = (
    "en", "hi", "bn", "te", "ta", "ml", "kn", "gu", "mr", "pa", "or", "as",
)


def _check_language(v: str | None) -> str | None:
    if v is not None and v not in SUPPORTED_LANGUAGES:
        raise ValueError(f"Unsupported language: {v}")
    return v


class QRPayload(BaseModel):
    """
    What the issuer is inviting the scanner into.

    A payload without product_id is a general conversation session.
    """

    product_id: str | None = None
    negotiation_id: str | None = None
    source_language: str = "en"
    target_language: str | None = None

    @field_validator("source_language", "target_language")
    @classmethod
    def validate_language(cls, v):
        return _check_language(v)


class QRIssueResult(BaseModel):
    """Everything a client needs to render and later redeem a QR code."""

    session_id: str
    token: str
    qr_content: str
    expires_at: datetime


class QRSessionInfo(BaseModel):
    """Stored state of a QR session."""

    session_id: str
    issuer_party_id: str
    target_party_id: str | None = None
    product_id: str | None = None
    negotiation_id: str | None = None
    source_language: str
    target_language: str | None = None
    status: QRSessionStatus
    created_at: datetime
    expires_at: datetime
    claimed_at: datetime | None = None

    model_config = {"from_attributes": True}


class QRValidation(BaseModel):
    """Read-only pre-flight answer for a token."""

    is_valid: bool
    reason: str | None = None
    session: QRSessionInfo | None = None


class QRClaimResult(BaseModel):
    """Outcome of a successful claim."""

    session: QRSessionInfo
    negotiation: NegotiationState | None = None
