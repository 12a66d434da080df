"""
Negotiation state machine.

WHAT: Lifecycle and bid history of customer/vendor price negotiations
WHY: Keep status transitions, bid order, and the stock hold consistent
HOW: Per-negotiation keyed lock + compare-and-set UPDATE on (status, last_sequence);
     the resource ledger reserves on create and commits/releases on resolution
"""

from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, FrozenSet, List, Optional, Union
from uuid import uuid4

from sqlalchemy import select, update

from ..core.clock import Clock, utcnow
from ..core.config import settings
from ..core.database import use_db
from ..core.locks import KeyedLock
from ..core.models import (
    Negotiation, Bid, NegotiationStatus, BidderRole,
    LIVE_NEGOTIATION_STATUSES,
)
from ..models.negotiation import BidRequest, BidRecord, NegotiationState
from ..utils.exceptions import (
    InvalidBidException,
    NegotiationNotActiveException,
    NegotiationNotFoundException,
    NotAParticipantException,
    StaleNegotiationStateException,
    ValidationException,
)
from ..utils.logger import get_logger
from .resource_ledger import ResourceLedger

logger = get_logger(__name__)

_CENT = Decimal("0.01")

VALID_TRANSITIONS: Dict[NegotiationStatus, FrozenSet[NegotiationStatus]] = {
    NegotiationStatus.OPEN: frozenset({
        NegotiationStatus.ACTIVE,
        NegotiationStatus.ACCEPTED,
        NegotiationStatus.REJECTED,
        NegotiationStatus.CANCELLED,
        NegotiationStatus.EXPIRED,
    }),
    NegotiationStatus.ACTIVE: frozenset({
        NegotiationStatus.ACTIVE,
        NegotiationStatus.ACCEPTED,
        NegotiationStatus.REJECTED,
        NegotiationStatus.CANCELLED,
        NegotiationStatus.EXPIRED,
    }),
    NegotiationStatus.ACCEPTED: frozenset(),
    NegotiationStatus.REJECTED: frozenset(),
    NegotiationStatus.EXPIRED: frozenset(),
    NegotiationStatus.CANCELLED: frozenset(),
}

OUTCOME_STATUS = {
    "accept": NegotiationStatus.ACCEPTED,
    "reject": NegotiationStatus.REJECTED,
    "cancel": NegotiationStatus.CANCELLED,
}

BidInput = Union[BidRequest, Decimal, int, float, str]


class NegotiationStateMachine:
    """
    Own the negotiation lifecycle.

    OPEN (first bid) -> ACTIVE (any later bid) -> ACCEPTED | REJECTED | CANCELLED | EXPIRED.
    Consecutive bids by the same party are allowed; the latest bid is always
    the current offer.
    """

    def __init__(self, ledger: ResourceLedger, clock: Clock = utcnow):
        self.ledger = ledger
        self.clock = clock
        self._locks = KeyedLock("negotiation")

    @staticmethod
    def is_valid_transition(current: NegotiationStatus, new: NegotiationStatus) -> bool:
        """Whether the lifecycle allows moving from ``current`` to ``new``."""
        return new in VALID_TRANSITIONS[NegotiationStatus(current)]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_negotiation(
        self,
        customer_id: str,
        vendor_id: str,
        product_id: str,
        initial_bid: BidInput,
        *,
        ttl_seconds: Optional[int] = None,
        quantity: Optional[int] = None,
        source_qr_session_id: Optional[str] = None,
        db=None,
    ) -> NegotiationState:
        """
        Open a negotiation with its first bid and reserve stock for it.

        WHAT: New negotiation in OPEN with the initial bid as sequence 1
        WHY: A negotiation never exists without a bid or without a stock hold
        HOW: Reserve through the ledger, then insert negotiation + bid in one transaction

        Args:
            customer_id: Customer party
            vendor_id: Vendor party
            product_id: Product being negotiated
            initial_bid: BidRequest or a bare amount (customer bid)
            ttl_seconds: Time until the negotiation expires; defaults to NEGOTIATION_TTL_SECONDS
            quantity: Units to hold; defaults to RESERVATION_QUANTITY
            source_qr_session_id: QR session that opened this negotiation, if any
            db: Optional session to join the caller's transaction

        Raises:
            InvalidBidException: amount <= 0 or unknown bidder role
            InsufficientStockException: the ledger cannot reserve
            ProductNotFoundException: the product has no stock record
        """
        bid = self._coerce_bid(initial_bid)
        amount = self._check_amount(bid.amount, bid.bidder_role)
        if customer_id == vendor_id:
            raise ValidationException("customer_id and vendor_id must be different parties")

        ttl = settings.NEGOTIATION_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValidationException("ttl_seconds must be positive")
        quantity = settings.RESERVATION_QUANTITY if quantity is None else quantity

        negotiation_id = str(uuid4())
        now = self.clock()

        with use_db(db) as s:
            reservation = self.ledger.reserve(
                product_id, quantity, holder_id=negotiation_id, ttl_seconds=ttl, db=s
            )

            negotiation = Negotiation(
                negotiation_id=negotiation_id,
                customer_id=customer_id,
                vendor_id=vendor_id,
                product_id=product_id,
                status=NegotiationStatus.OPEN,
                last_sequence=1,
                reservation_id=reservation.reservation_id,
                source_qr_session_id=source_qr_session_id,
                created_at=now,
                updated_at=now,
                expires_at=now + timedelta(seconds=ttl),
            )
            negotiation.bids.append(Bid(
                sequence_number=1,
                bidder_role=bid.bidder_role,
                amount=amount,
                message=bid.message,
                language=bid.language,
                created_at=now,
            ))
            s.add(negotiation)
            s.flush()

            logger.info(
                f"Created negotiation {negotiation_id}: customer={customer_id} vendor={vendor_id} "
                f"product={product_id} opening bid {amount} by {bid.bidder_role.value}"
            )
            return NegotiationState.model_validate(negotiation)

    def submit_bid(
        self,
        negotiation_id: str,
        actor_role: Union[BidderRole, str],
        amount: Union[Decimal, int, float, str],
        *,
        actor_id: Optional[str] = None,
        message: Optional[str] = None,
        language: Optional[str] = None,
    ) -> NegotiationState:
        """
        Append a counter-bid.

        OPEN becomes ACTIVE; ACTIVE stays ACTIVE. Alternation between parties
        is not enforced.

        Raises:
            InvalidBidException: amount <= 0 or unknown role
            NegotiationNotFoundException: unknown negotiation
            NegotiationNotActiveException: negotiation is terminal (including freshly expired)
            NotAParticipantException: actor_id is not the party for actor_role
            StaleNegotiationStateException: a concurrent mutation won the compare-and-set
        """
        role = self._coerce_role(actor_role)
        amount = self._check_amount(amount, role)

        with self._locks.hold(negotiation_id):
            self._expire_if_stale(negotiation_id)

            with use_db() as s:
                negotiation = self._load(s, negotiation_id)
                self._check_party(negotiation, role, actor_id)
                if negotiation.status.is_terminal:
                    raise NegotiationNotActiveException(negotiation_id, negotiation.status.value)

                now = self.clock()
                expected = negotiation.last_sequence
                result = s.execute(
                    update(Negotiation)
                    .where(
                        Negotiation.negotiation_id == negotiation_id,
                        Negotiation.status.in_(LIVE_NEGOTIATION_STATUSES),
                        Negotiation.last_sequence == expected,
                    )
                    .values(
                        last_sequence=expected + 1,
                        status=NegotiationStatus.ACTIVE,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.warning(f"Bid on {negotiation_id} lost compare-and-set at sequence {expected}")
                    raise StaleNegotiationStateException(negotiation_id, expected)

                negotiation.bids.append(Bid(
                    sequence_number=expected + 1,
                    bidder_role=role,
                    amount=amount,
                    message=message,
                    language=language,
                    created_at=now,
                ))
                s.flush()
                s.refresh(negotiation)

                logger.info(
                    f"Bid #{expected + 1} on {negotiation_id}: {amount} by {role.value}"
                )
                return NegotiationState.model_validate(negotiation)

    def resolve(
        self,
        negotiation_id: str,
        outcome: str,
        final_price: Optional[Union[Decimal, int, float, str]] = None,
        *,
        actor_id: Optional[str] = None,
        actor_role: Optional[Union[BidderRole, str]] = None,
    ) -> NegotiationState:
        """
        Move a live negotiation to ACCEPTED, REJECTED, or CANCELLED.

        WHAT: Terminal transition plus the matching stock side effect
        WHY: Accept sells the held unit; reject/cancel gives it back
        HOW: Ledger commit/release, then compare-and-set on status in the same transaction

        Args:
            negotiation_id: Negotiation to resolve
            outcome: "accept", "reject", or "cancel"
            final_price: Agreed price on accept; defaults to the latest bid amount
            actor_id: Optional caller identity, checked against the negotiation's parties
            actor_role: Optional role of actor_id

        Raises:
            ValidationException: unknown outcome
            InvalidBidException: the resolving party placed the latest bid and names no price
            NegotiationNotActiveException: already terminal (a second resolve always fails)
            InsufficientStockException: accept found its hold gone and the units were sold meanwhile
        """
        target = OUTCOME_STATUS.get(str(outcome).lower())
        if target is None:
            raise ValidationException(
                f"Unknown outcome: {outcome}",
                field_errors=[{"field": "outcome", "error": "must be accept, reject or cancel"}]
            )
        role = self._coerce_role(actor_role) if actor_role is not None else None

        with self._locks.hold(negotiation_id):
            self._expire_if_stale(negotiation_id)

            with use_db() as s:
                negotiation = self._load(s, negotiation_id)
                role = self._resolve_actor(negotiation, role, actor_id)
                if not self.is_valid_transition(negotiation.status, target):
                    raise NegotiationNotActiveException(negotiation_id, negotiation.status.value)

                price = None
                if target == NegotiationStatus.ACCEPTED:
                    if final_price is None:
                        latest = negotiation.bids[-1]
                        if role is not None and latest.bidder_role == role:
                            raise InvalidBidException(
                                "cannot accept your own bid", amount=latest.amount, role=role.value
                            )
                        price = latest.amount
                    else:
                        price = self._check_amount(final_price, role)
                    self._commit_hold(s, negotiation)
                elif negotiation.reservation_id:
                    self.ledger.release(negotiation.reservation_id, db=s)

                now = self.clock()
                expected = negotiation.last_sequence
                result = s.execute(
                    update(Negotiation)
                    .where(
                        Negotiation.negotiation_id == negotiation_id,
                        Negotiation.status.in_(LIVE_NEGOTIATION_STATUSES),
                        Negotiation.last_sequence == expected,
                    )
                    .values(
                        status=target,
                        final_price=price,
                        reservation_id=None,
                        resolved_at=now,
                        resolved_by_role=role.value if role else None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.warning(f"Resolve of {negotiation_id} lost compare-and-set")
                    raise StaleNegotiationStateException(negotiation_id, expected)

                s.refresh(negotiation)
                logger.info(
                    f"Negotiation {negotiation_id} -> {target.value}"
                    + (f" at {price}" if price is not None else "")
                )
                return NegotiationState.model_validate(negotiation)

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """
        Expire every live negotiation whose expires_at <= now.

        The only source of time-driven transitions. Idempotent; releases the
        reservation of each expired negotiation.

        Returns:
            Number of negotiations moved to EXPIRED
        """
        now = now or self.clock()
        with use_db() as s:
            candidates = s.scalars(
                select(Negotiation.negotiation_id).where(
                    Negotiation.status.in_(LIVE_NEGOTIATION_STATUSES),
                    Negotiation.expires_at <= now,
                )
            ).all()

        expired = 0
        for negotiation_id in candidates:
            with self._locks.hold(negotiation_id):
                try:
                    if self._expire_if_stale(negotiation_id, now):
                        expired += 1
                except StaleNegotiationStateException:
                    logger.warning(f"Negotiation {negotiation_id} changed during expiry sweep; skipped")

        if expired:
            logger.info(f"Expired {expired} stale negotiations")
        return expired

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_negotiation(self, negotiation_id: str) -> NegotiationState:
        """Current state, with expiry applied lazily."""
        with self._locks.hold(negotiation_id):
            self._expire_if_stale(negotiation_id)
            with use_db() as s:
                return NegotiationState.model_validate(self._load(s, negotiation_id))

    def get_bids(self, negotiation_id: str) -> List[BidRecord]:
        """Bid history in ascending sequence order."""
        return self.get_negotiation(negotiation_id).bids

    def get_latest_bid(self, negotiation_id: str) -> BidRecord:
        """The current offer."""
        return self.get_negotiation(negotiation_id).bids[-1]

    def list_for_party(
        self,
        party_id: str,
        role: Optional[Union[BidderRole, str]] = None,
        status: Optional[Union[NegotiationStatus, str]] = None,
    ) -> List[NegotiationState]:
        """Negotiations a party takes part in, most recently updated first."""
        with use_db() as s:
            query = select(Negotiation)
            if role is None:
                query = query.where(
                    (Negotiation.customer_id == party_id) | (Negotiation.vendor_id == party_id)
                )
            elif self._coerce_role(role) == BidderRole.CUSTOMER:
                query = query.where(Negotiation.customer_id == party_id)
            else:
                query = query.where(Negotiation.vendor_id == party_id)
            if status is not None:
                query = query.where(Negotiation.status == NegotiationStatus(status))
            query = query.order_by(Negotiation.updated_at.desc())
            return [NegotiationState.model_validate(n) for n in s.scalars(query).all()]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, s, negotiation_id: str) -> Negotiation:
        negotiation = s.get(Negotiation, negotiation_id)
        if negotiation is None:
            raise NegotiationNotFoundException(negotiation_id)
        return negotiation

    def _expire_if_stale(self, negotiation_id: str, now: Optional[datetime] = None) -> bool:
        """
        Apply expiry to one negotiation in its own transaction.

        Runs before a mutation so the expiry is persisted even when the
        mutation that follows fails with NegotiationNotActive.
        Caller holds the negotiation lock.
        """
        now = now or self.clock()
        with use_db() as s:
            negotiation = s.get(Negotiation, negotiation_id)
            if (
                negotiation is None
                or negotiation.status.is_terminal
                or negotiation.expires_at > now
            ):
                return False

            if negotiation.reservation_id:
                self.ledger.release(negotiation.reservation_id, db=s)

            result = s.execute(
                update(Negotiation)
                .where(
                    Negotiation.negotiation_id == negotiation_id,
                    Negotiation.status.in_(LIVE_NEGOTIATION_STATUSES),
                    Negotiation.last_sequence == negotiation.last_sequence,
                )
                .values(
                    status=NegotiationStatus.EXPIRED,
                    reservation_id=None,
                    resolved_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise StaleNegotiationStateException(negotiation_id, negotiation.last_sequence)

            logger.info(f"Negotiation {negotiation_id} expired (expires_at={negotiation.expires_at.isoformat()})")
            return True

    def _commit_hold(self, s, negotiation: Negotiation):
        """Commit the negotiation's reservation, or buy from free stock if the hold was lost."""
        hold = None
        if negotiation.reservation_id:
            hold = self.ledger.get_reservation(negotiation.reservation_id, db=s)

        if hold is not None and hold.expires_at > self.clock():
            self.ledger.commit(hold.reservation_id, db=s)
            return

        logger.warning(
            f"Hold for negotiation {negotiation.negotiation_id} is gone; re-checking stock"
        )
        self.ledger.purchase(
            negotiation.product_id,
            hold.quantity if hold else settings.RESERVATION_QUANTITY,
            holder_id=negotiation.negotiation_id,
            db=s,
        )

    def _check_party(self, negotiation: Negotiation, role: BidderRole, actor_id: Optional[str]):
        if actor_id is None:
            return
        expected = negotiation.customer_id if role == BidderRole.CUSTOMER else negotiation.vendor_id
        if actor_id != expected:
            raise NotAParticipantException(negotiation.negotiation_id, actor_id, role.value)

    def _resolve_actor(
        self, negotiation: Negotiation, role: Optional[BidderRole], actor_id: Optional[str]
    ) -> Optional[BidderRole]:
        """Work out which party is resolving; only the owning pair may do so."""
        if actor_id is None:
            return role
        if role is not None:
            self._check_party(negotiation, role, actor_id)
            return role
        if actor_id == negotiation.customer_id:
            return BidderRole.CUSTOMER
        if actor_id == negotiation.vendor_id:
            return BidderRole.VENDOR
        raise NotAParticipantException(negotiation.negotiation_id, actor_id, "customer or vendor")

    @staticmethod
    def _coerce_role(role) -> BidderRole:
        try:
            return BidderRole(role)
        except ValueError:
            raise InvalidBidException(f"unknown bidder role {role!r}", role=str(role)) from None

    @staticmethod
    def _coerce_bid(bid: BidInput) -> BidRequest:
        if isinstance(bid, BidRequest):
            return bid
        return BidRequest(amount=NegotiationStateMachine._to_decimal(bid))

    @staticmethod
    def _to_decimal(value) -> Decimal:
        try:
            return value if isinstance(value, Decimal) else Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise InvalidBidException(f"amount {value!r} is not a number", amount=value) from None

    @classmethod
    def _check_amount(cls, amount, role: Optional[BidderRole]) -> Decimal:
        """Amounts are positive and kept to cents."""
        value = cls._to_decimal(amount)
        if not value.is_finite():
            raise InvalidBidException("amount must be finite", amount=value, role=role and role.value)
        value = value.quantize(_CENT)
        if value <= 0:
            raise InvalidBidException("amount must be positive", amount=value, role=role and role.value)
        return value
