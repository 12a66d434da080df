"""
ORM models for the negotiation core.

WHAT: SQLAlchemy models for stock, negotiations, bids, reservations, QR sessions, rate counters
WHY: Every piece of shared mutable state is an addressable row updated by conditional UPDATEs
HOW: Declarative models with CHECK constraints, unique keys, relationships, and indexes
"""

from datetime import datetime
from uuid import uuid4
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text,
    ForeignKey, CheckConstraint, UniqueConstraint, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
import enum

from .clock import utcnow
from .database import Base


def _enum_column(enum_cls):
    """Store enum values (lowercase canonical form) rather than member names."""
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=20,
    )


# Enums for status fields
class NegotiationStatus(str, enum.Enum):
    """Negotiation lifecycle states."""
    OPEN = "open"
    ACTIVE = "active"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_NEGOTIATION_STATUSES


TERMINAL_NEGOTIATION_STATUSES = frozenset({
    NegotiationStatus.ACCEPTED,
    NegotiationStatus.REJECTED,
    NegotiationStatus.EXPIRED,
    NegotiationStatus.CANCELLED,
})

LIVE_NEGOTIATION_STATUSES = (NegotiationStatus.OPEN, NegotiationStatus.ACTIVE)


class BidderRole(str, enum.Enum):
    """Which side of the negotiation placed a bid."""
    CUSTOMER = "customer"
    VENDOR = "vendor"


class QRSessionStatus(str, enum.Enum):
    """QR session states."""
    PENDING = "pending"
    CLAIMED = "claimed"
    EXPIRED = "expired"
    INVALID = "invalid"


class Product(Base):
    """
    Product stock table.

    WHAT: Available and reserved unit counts for one product
    WHY: The ledger's single source of truth for oversell protection
    HOW: CHECK constraints mirror 0 <= quantity_reserved <= quantity_available
    """
    __tablename__ = "products"

    product_id = Column(String(100), primary_key=True)
    quantity_available = Column(Integer, nullable=False, default=0)
    quantity_reserved = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("quantity_available >= 0", name="check_available_non_negative"),
        CheckConstraint("quantity_reserved >= 0", name="check_reserved_non_negative"),
        CheckConstraint("quantity_reserved <= quantity_available", name="check_reserved_within_available"),
    )

    reservations = relationship("Reservation", back_populates="product")

    def __repr__(self):
        return (
            f"<Product(id={self.product_id}, available={self.quantity_available}, "
            f"reserved={self.quantity_reserved})>"
        )


class Reservation(Base):
    """
    Reservation table - temporary holds on product units.

    WHAT: Units held for a negotiation or order until commit, release, or expiry
    WHY: Prevent oversell while a negotiation is pending resolution
    HOW: Foreign key to Product; expires_at resolved by sweep or on access
    """
    __tablename__ = "reservations"

    reservation_id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    product_id = Column(String(100), ForeignKey("products.product_id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    holder_id = Column(String(100), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="check_reservation_quantity_positive"),
        Index("idx_reservation_expires", "expires_at"),
        Index("idx_reservation_product", "product_id"),
        Index("idx_reservation_holder", "holder_id"),
    )

    product = relationship("Product", back_populates="reservations")

    def __repr__(self):
        return f"<Reservation(id={self.reservation_id}, product={self.product_id}, qty={self.quantity})>"


class Negotiation(Base):
    """
    Negotiation table - one customer, one vendor, one product.

    WHAT: Lifecycle status, current reservation, expiry, and resolution details
    WHY: Owns the bid history and the reservation held on its behalf
    HOW: last_sequence doubles as the compare-and-set guard for bid appends
    """
    __tablename__ = "negotiations"

    negotiation_id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    customer_id = Column(String(100), nullable=False)
    vendor_id = Column(String(100), nullable=False)
    product_id = Column(String(100), ForeignKey("products.product_id"), nullable=False)
    status = Column(_enum_column(NegotiationStatus), nullable=False, default=NegotiationStatus.OPEN)
    last_sequence = Column(Integer, nullable=False, default=0)
    final_price = Column(Numeric(12, 2), nullable=True)
    reservation_id = Column(String(36), nullable=True)
    source_qr_session_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by_role = Column(String(20), nullable=True)

    product = relationship("Product")
    bids = relationship(
        "Bid",
        back_populates="negotiation",
        cascade="all, delete-orphan",
        order_by="Bid.sequence_number",
    )

    __table_args__ = (
        CheckConstraint("last_sequence >= 0", name="check_last_sequence_non_negative"),
        Index("idx_negotiation_status_expires", "status", "expires_at"),
        Index("idx_negotiation_customer", "customer_id"),
        Index("idx_negotiation_vendor", "vendor_id"),
    )

    def __repr__(self):
        return f"<Negotiation(id={self.negotiation_id}, product={self.product_id}, status={self.status})>"


class Bid(Base):
    """
    Bid table - append-only negotiation history.

    WHAT: One offer by the customer or vendor
    WHY: Insertion order defines history and the current offer
    HOW: UNIQUE (negotiation_id, sequence_number) rejects duplicate appends
    """
    __tablename__ = "bids"

    id = Column(Integer, primary_key=True, autoincrement=True)
    negotiation_id = Column(
        String(36), ForeignKey("negotiations.negotiation_id", ondelete="CASCADE"), nullable=False
    )
    sequence_number = Column(Integer, nullable=False)
    bidder_role = Column(_enum_column(BidderRole), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    message = Column(Text, nullable=True)
    language = Column(String(10), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("negotiation_id", "sequence_number", name="unique_bid_sequence"),
        CheckConstraint("amount > 0", name="check_bid_amount_positive"),
        CheckConstraint("sequence_number >= 1", name="check_bid_sequence_positive"),
    )

    negotiation = relationship("Negotiation", back_populates="bids")

    def __repr__(self):
        return f"<Bid(negotiation={self.negotiation_id}, seq={self.sequence_number}, amount={self.amount})>"


class QRSession(Base):
    """
    QR session table - single-use cross-party tokens.

    WHAT: A pending invitation from an issuer, claimable once by another party
    WHY: Bridge a vendor's session with a customer's, possibly in another locale
    HOW: Claim is a conditional UPDATE on status = pending
    """
    __tablename__ = "qr_sessions"

    session_id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    token = Column(String(128), unique=True, nullable=False)
    issuer_party_id = Column(String(100), nullable=False)
    target_party_id = Column(String(100), nullable=True)
    product_id = Column(String(100), nullable=True)
    negotiation_id = Column(String(36), nullable=True)
    source_language = Column(String(10), nullable=False, default="en")
    target_language = Column(String(10), nullable=True)
    status = Column(_enum_column(QRSessionStatus), nullable=False, default=QRSessionStatus.PENDING)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    claimed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_qr_status_expires", "status", "expires_at"),
        Index("idx_qr_issuer", "issuer_party_id"),
    )

    def __repr__(self):
        return f"<QRSession(id={self.session_id}, issuer={self.issuer_party_id}, status={self.status})>"


class RateCounter(Base):
    """
    Rate counter table - fixed-window request counts.

    WHAT: Request count for one (category, actor) key in the current window
    WHY: Independently addressable counters, no global lock across keys
    HOW: Composite primary key; increments are conditional UPDATEs
    """
    __tablename__ = "rate_counters"

    category = Column(String(50), primary_key=True)
    actor_key = Column(String(200), primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    limit = Column(Integer, nullable=False)
    window_duration_seconds = Column(Integer, nullable=False)
    window_start = Column(DateTime, nullable=False)
    window_expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint("count >= 0", name="check_rate_count_non_negative"),
    )

    def __repr__(self):
        return f"<RateCounter({self.category}:{self.actor_key}, count={self.count}/{self.limit})>"
