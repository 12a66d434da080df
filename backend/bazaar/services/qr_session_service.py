"""
QR session protocol.

WHAT: Issue, validate, claim, and retire single-use cross-party QR tokens
WHY: A vendor's screen and a customer's phone (often in different languages)
     need a shared, unforgeable handle to meet on one negotiation
HOW: secrets-generated tokens; claims are a compare-and-set PENDING -> CLAIMED
     under a per-token lock, optionally opening a negotiation in the same transaction
"""

import secrets
from datetime import datetime, timedelta
from typing import List, Optional, Union

from sqlalchemy import select, update

from ..core.clock import Clock, utcnow
from ..core.config import settings
from ..core.database import use_db
from ..core.locks import KeyedLock
from ..core.models import QRSession, QRSessionStatus
from ..models.negotiation import BidRequest
from ..models.qr_session import (
    QRPayload, QRIssueResult, QRSessionInfo, QRValidation, QRClaimResult,
    SUPPORTED_LANGUAGES,
)
from ..utils.exceptions import (
    AlreadyClaimedException,
    QRSessionNotFoundException,
    TokenExpiredException,
    TokenInvalidException,
    ValidationException,
)
from ..utils.logger import get_logger
from .negotiation_service import NegotiationStateMachine

logger = get_logger(__name__)

_STATUS_REASONS = {
    QRSessionStatus.CLAIMED: "already claimed",
    QRSessionStatus.EXPIRED: "expired",
    QRSessionStatus.INVALID: "invalidated",
}


def _hint(token: str) -> str:
    """Loggable prefix of a token; full tokens never reach the logs."""
    return f"{token[:8]}..."


class QRSessionProtocol:
    """Single-use tokens linking an issuing party to the party who scans them."""

    def __init__(self, negotiations: NegotiationStateMachine, clock: Clock = utcnow):
        self.negotiations = negotiations
        self.clock = clock
        self._locks = KeyedLock("qr_token")

    def issue(
        self,
        issuer_party_id: str,
        payload: Optional[Union[QRPayload, dict]] = None,
        ttl_seconds: Optional[int] = None,
        target_party_id: Optional[str] = None,
    ) -> QRIssueResult:
        """
        Create a PENDING session and its token.

        Args:
            issuer_party_id: Party whose screen shows the code (the vendor for product sessions)
            payload: Product/negotiation/languages; no product_id means a general conversation
            ttl_seconds: Lifetime; defaults to QR_SESSION_TTL_SECONDS
            target_party_id: Intended scanner, if already known

        Returns:
            QRIssueResult with the token and the qr_content deep link
        """
        if payload is None:
            payload = QRPayload()
        elif isinstance(payload, dict):
            payload = QRPayload(**payload)

        ttl = settings.QR_SESSION_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValidationException("ttl_seconds must be positive")

        if payload.product_id:
            # Unknown products fail here rather than at claim time
            self.negotiations.ledger.get_stock(payload.product_id)
        if payload.negotiation_id:
            self.negotiations.get_negotiation(payload.negotiation_id)

        token = secrets.token_urlsafe(settings.QR_TOKEN_BYTES)
        now = self.clock()

        with use_db() as s:
            qr = QRSession(
                token=token,
                issuer_party_id=issuer_party_id,
                target_party_id=target_party_id,
                product_id=payload.product_id,
                negotiation_id=payload.negotiation_id,
                source_language=payload.source_language,
                target_language=payload.target_language,
                status=QRSessionStatus.PENDING,
                created_at=now,
                expires_at=now + timedelta(seconds=ttl),
            )
            s.add(qr)
            s.flush()

            kind = f"product {payload.product_id}" if payload.product_id else "general"
            logger.info(
                f"Issued QR session {qr.session_id} ({kind}) for {issuer_party_id}, "
                f"token {_hint(token)}, ttl {ttl}s"
            )
            return QRIssueResult(
                session_id=qr.session_id,
                token=token,
                qr_content=f"{settings.QR_BASE_URL.rstrip('/')}/{token}",
                expires_at=qr.expires_at,
            )

    def validate(self, token: str) -> QRValidation:
        """Read-only check of whether a token could be claimed right now."""
        with use_db() as s:
            qr = self._find(s, token)
            if qr is None:
                return QRValidation(is_valid=False, reason="unknown token")

            info = QRSessionInfo.model_validate(qr)
            if qr.status != QRSessionStatus.PENDING:
                return QRValidation(is_valid=False, reason=_STATUS_REASONS[qr.status], session=info)
            if qr.expires_at <= self.clock():
                return QRValidation(is_valid=False, reason="expired", session=info)
            return QRValidation(is_valid=True, session=info)

    def claim(
        self,
        token: str,
        claimant_party_id: str,
        initial_bid: Optional[Union[BidRequest, dict]] = None,
        target_language: Optional[str] = None,
    ) -> QRClaimResult:
        """
        Redeem a token exactly once.

        WHAT: PENDING -> CLAIMED, recording the claimant (and their language)
        WHY: The token is a single-use invitation
        HOW: Status pre-check, then one transaction that optionally opens the
             negotiation (claimant = customer, issuer = vendor) and finishes with
             a compare-and-set on the session row; any failure rolls back both

        Raises:
            TokenInvalidException: unknown, expired earlier, or invalidated token
            TokenExpiredException: token ran out just now (persisted as EXPIRED)
            AlreadyClaimedException: another claim won
            InsufficientStockException: the negotiation could not reserve stock
        """
        if target_language is not None and target_language not in SUPPORTED_LANGUAGES:
            raise ValidationException(
                f"Unsupported language: {target_language}",
                field_errors=[{"field": "target_language", "error": "unsupported"}]
            )
        if isinstance(initial_bid, dict):
            initial_bid = BidRequest(**initial_bid)

        with self._locks.hold(token):
            self._check_claimable(token)

            with use_db() as s:
                qr = self._find(s, token)

                negotiation = None
                if initial_bid is not None and qr.product_id:
                    negotiation = self.negotiations.create_negotiation(
                        customer_id=claimant_party_id,
                        vendor_id=qr.issuer_party_id,
                        product_id=qr.product_id,
                        initial_bid=initial_bid,
                        source_qr_session_id=qr.session_id,
                        db=s,
                    )
                elif initial_bid is not None:
                    logger.debug(f"Initial bid ignored for general QR session {qr.session_id}")

                now = self.clock()
                values = {
                    "status": QRSessionStatus.CLAIMED,
                    "target_party_id": claimant_party_id,
                    "claimed_at": now,
                }
                if target_language is not None:
                    values["target_language"] = target_language
                if negotiation is not None:
                    values["negotiation_id"] = negotiation.negotiation_id

                result = s.execute(
                    update(QRSession)
                    .where(
                        QRSession.token == token,
                        QRSession.status == QRSessionStatus.PENDING,
                        QRSession.expires_at > now,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.warning(f"Claim of QR session {qr.session_id} lost the race")
                    raise AlreadyClaimedException(qr.session_id)

                s.refresh(qr)
                logger.info(
                    f"QR session {qr.session_id} claimed by {claimant_party_id}"
                    + (f", opened negotiation {negotiation.negotiation_id}" if negotiation else "")
                )
                return QRClaimResult(
                    session=QRSessionInfo.model_validate(qr),
                    negotiation=negotiation,
                )

    def invalidate(self, token: str, issuer_party_id: Optional[str] = None) -> bool:
        """
        Retire a PENDING token.

        Returns:
            True if this call invalidated it, False if it had already left PENDING
        """
        with self._locks.hold(token), use_db() as s:
            qr = self._find(s, token)
            if qr is None:
                raise QRSessionNotFoundException(_hint(token))
            if issuer_party_id is not None and qr.issuer_party_id != issuer_party_id:
                raise TokenInvalidException("only the issuing party may invalidate this token")

            result = s.execute(
                update(QRSession)
                .where(QRSession.token == token, QRSession.status == QRSessionStatus.PENDING)
                .values(status=QRSessionStatus.INVALID)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                logger.info(f"Invalidated QR session {qr.session_id}")
                return True
            return False

    def extend(self, token: str, additional_seconds: int) -> QRSessionInfo:
        """Push back the expiry of a PENDING, unexpired token."""
        if additional_seconds <= 0:
            raise ValidationException("additional_seconds must be positive")

        with self._locks.hold(token), use_db() as s:
            qr = self._find(s, token)
            if qr is None:
                raise QRSessionNotFoundException(_hint(token))

            now = self.clock()
            result = s.execute(
                update(QRSession)
                .where(
                    QRSession.token == token,
                    QRSession.status == QRSessionStatus.PENDING,
                    QRSession.expires_at > now,
                )
                .values(expires_at=qr.expires_at + timedelta(seconds=additional_seconds))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise TokenInvalidException("only pending, unexpired tokens can be extended")

            s.refresh(qr)
            logger.info(f"Extended QR session {qr.session_id} to {qr.expires_at.isoformat()}")
            return QRSessionInfo.model_validate(qr)

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Mark every PENDING session past its expiry as EXPIRED."""
        now = now or self.clock()
        with use_db() as s:
            result = s.execute(
                update(QRSession)
                .where(
                    QRSession.status == QRSessionStatus.PENDING,
                    QRSession.expires_at <= now,
                )
                .values(status=QRSessionStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )
            expired = result.rowcount

        if expired:
            logger.info(f"Expired {expired} stale QR sessions")
        return expired

    def get_session(self, token: str) -> QRSessionInfo:
        with use_db() as s:
            qr = self._find(s, token)
            if qr is None:
                raise QRSessionNotFoundException(_hint(token))
            return QRSessionInfo.model_validate(qr)

    def active_sessions_for_issuer(self, issuer_party_id: str) -> List[QRSessionInfo]:
        """Claimable sessions an issuer still has outstanding, newest first."""
        with use_db() as s:
            rows = s.scalars(
                select(QRSession)
                .where(
                    QRSession.issuer_party_id == issuer_party_id,
                    QRSession.status == QRSessionStatus.PENDING,
                    QRSession.expires_at > self.clock(),
                )
                .order_by(QRSession.created_at.desc())
            ).all()
            return [QRSessionInfo.model_validate(r) for r in rows]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _find(s, token: str) -> Optional[QRSession]:
        return s.scalar(select(QRSession).where(QRSession.token == token))

    def _check_claimable(self, token: str):
        """
        Reject tokens that cannot be claimed.

        A PENDING token found past its expiry is persisted as EXPIRED before
        TokenExpired is raised, so the state change survives the failed claim.
        Caller holds the token lock.
        """
        now = self.clock()
        with use_db() as s:
            qr = self._find(s, token)
            if qr is None:
                raise TokenInvalidException("unknown token")
            if qr.status == QRSessionStatus.CLAIMED:
                raise AlreadyClaimedException(qr.session_id)
            if qr.status != QRSessionStatus.PENDING:
                raise TokenInvalidException(_STATUS_REASONS[qr.status])
            if qr.expires_at > now:
                return

            s.execute(
                update(QRSession)
                .where(QRSession.token == token, QRSession.status == QRSessionStatus.PENDING)
                .values(status=QRSessionStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )
            session_id, expires_at = qr.session_id, qr.expires_at

        logger.info(f"QR session {session_id} expired before claim")
        raise TokenExpiredException(session_id, expires_at.isoformat())
