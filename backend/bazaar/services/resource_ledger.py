"""
Resource ledger for product stock.

WHAT: Reserve, release, commit, and sweep holds on product units
WHY: Prevent oversell while negotiations and orders are pending
HOW: Per-product keyed lock + conditional UPDATE/DELETE whose row count decides the outcome
"""

from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update, delete, func

from ..core.clock import Clock, utcnow
from ..core.config import settings
from ..core.database import use_db
from ..core.locks import KeyedLock
from ..core.models import Product, Reservation
from ..models.inventory import StockLevel, ReservationInfo, LedgerStats, HolderCount
from ..utils.exceptions import (
    InsufficientStockException,
    ProductNotFoundException,
    ReservationNotFoundException,
    ValidationException,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ResourceLedger:
    """
    Track per-product available stock and exclusive holds.

    Invariant: for every product, 0 <= quantity_reserved <= quantity_available.
    The products table carries the same rule as CHECK constraints, so a bug
    here fails loudly instead of overselling.
    """

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock
        self._locks = KeyedLock("product")

    # ------------------------------------------------------------------
    # Stock records
    # ------------------------------------------------------------------

    def register_product(self, product_id: str, quantity_available: int, db=None) -> StockLevel:
        """
        Create or overwrite the available quantity of a product.

        Overwriting below the currently reserved quantity is rejected.
        """
        if quantity_available < 0:
            raise ValidationException(
                "quantity_available must be >= 0",
                field_errors=[{"field": "quantity_available", "error": "negative"}]
            )

        with self._locks.hold(product_id), use_db(db) as s:
            product = s.get(Product, product_id)
            if product is None:
                product = Product(
                    product_id=product_id,
                    quantity_available=quantity_available,
                    quantity_reserved=0,
                )
                s.add(product)
            else:
                if quantity_available < product.quantity_reserved:
                    raise ValidationException(
                        f"Cannot set available stock of {product_id} below its "
                        f"{product.quantity_reserved} reserved units"
                    )
                product.quantity_available = quantity_available
                product.updated_at = self.clock()
            s.flush()
            logger.info(f"Registered product {product_id} with {quantity_available} units")
            return StockLevel.model_validate(product)

    def restock(self, product_id: str, quantity: int, db=None) -> StockLevel:
        """Add units to a product's available stock."""
        if quantity <= 0:
            raise ValidationException(
                "restock quantity must be positive",
                field_errors=[{"field": "quantity", "error": "must be > 0"}]
            )

        with self._locks.hold(product_id), use_db(db) as s:
            result = s.execute(
                update(Product)
                .where(Product.product_id == product_id)
                .values(
                    quantity_available=Product.quantity_available + quantity,
                    updated_at=self.clock(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ProductNotFoundException(product_id)
            logger.info(f"Restocked product {product_id} with {quantity} units")
            return self._stock(s, product_id)

    def get_stock(self, product_id: str, db=None) -> StockLevel:
        """Current available/reserved units of a product."""
        with use_db(db) as s:
            return self._stock(s, product_id)

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    def reserve(
        self,
        product_id: str,
        quantity: int,
        holder_id: str,
        ttl_seconds: Optional[int] = None,
        db=None,
    ) -> ReservationInfo:
        """
        Hold ``quantity`` units of a product for ``holder_id``.

        WHAT: Atomically check unreserved stock and increment quantity_reserved
        WHY: No two callers may reserve the same units
        HOW: UPDATE ... WHERE available - reserved >= quantity; zero rows means no stock

        Args:
            product_id: Product to hold
            quantity: Units to hold (> 0)
            holder_id: Negotiation or order id owning the hold
            ttl_seconds: Hold duration; defaults to RESERVATION_TTL_SECONDS
            db: Optional session to join the caller's transaction

        Returns:
            ReservationInfo with expires_at = now + ttl

        Raises:
            InsufficientStockException: not enough unreserved units
            ProductNotFoundException: product has no stock record
        """
        if quantity <= 0:
            raise ValidationException(
                "reservation quantity must be positive",
                field_errors=[{"field": "quantity", "error": "must be > 0"}]
            )
        ttl = settings.RESERVATION_TTL_SECONDS if ttl_seconds is None else ttl_seconds

        with self._locks.hold(product_id), use_db(db) as s:
            now = self.clock()
            self._reclaim_expired(s, product_id, now)

            result = s.execute(
                update(Product)
                .where(
                    Product.product_id == product_id,
                    Product.quantity_available - Product.quantity_reserved >= quantity,
                )
                .values(
                    quantity_reserved=Product.quantity_reserved + quantity,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

            if result.rowcount != 1:
                stock = self._stock(s, product_id)
                logger.warning(
                    f"Reservation denied for {holder_id}: product {product_id} has "
                    f"{stock.quantity_unreserved} unreserved, requested {quantity}"
                )
                raise InsufficientStockException(product_id, quantity, stock.quantity_unreserved)

            reservation = Reservation(
                product_id=product_id,
                quantity=quantity,
                holder_id=holder_id,
                created_at=now,
                expires_at=now + timedelta(seconds=ttl),
            )
            s.add(reservation)
            s.flush()

            logger.info(
                f"Reserved {quantity} x {product_id} for {holder_id} "
                f"(reservation {reservation.reservation_id}, ttl {ttl}s)"
            )
            return ReservationInfo.model_validate(reservation)

    def release(self, reservation_id: str, db=None) -> bool:
        """
        Give reserved units back to the product.

        Idempotent: an unknown or already released reservation is a no-op.

        Returns:
            True if this call released the hold, False if there was nothing to release
        """
        product_id = self._product_of(reservation_id, db)
        if product_id is None:
            logger.debug(f"Release of unknown reservation {reservation_id} ignored")
            return False

        with self._locks.hold(product_id), use_db(db) as s:
            reservation = s.get(Reservation, reservation_id)
            if reservation is None or not self._drop(s, reservation):
                return False

            self._adjust(s, product_id, reserved=-reservation.quantity)
            logger.info(
                f"Released reservation {reservation_id} ({reservation.quantity} x {product_id})"
            )
            return True

    def commit(self, reservation_id: str, db=None) -> StockLevel:
        """
        Turn a hold into a permanent deduction.

        WHAT: Decrement quantity_available and quantity_reserved, delete the hold
        WHY: The reserved units are now sold
        HOW: Conditional DELETE on an unexpired reservation, then adjust the product

        Raises:
            ReservationNotFoundException: hold already released, committed, or past expires_at.
                Callers should re-check stock before retrying the purchase.
        """
        product_id = self._product_of(reservation_id, db)
        if product_id is None:
            raise ReservationNotFoundException(reservation_id)

        with self._locks.hold(product_id), use_db(db) as s:
            now = self.clock()
            reservation = s.get(Reservation, reservation_id)
            if reservation is None or not self._drop(s, reservation, live_at=now):
                logger.warning(f"Commit lost race: reservation {reservation_id} is gone or expired")
                raise ReservationNotFoundException(reservation_id)

            self._adjust(
                s,
                product_id,
                reserved=-reservation.quantity,
                available=-reservation.quantity,
            )
            logger.info(
                f"Committed reservation {reservation_id} ({reservation.quantity} x {product_id})"
            )
            return self._stock(s, product_id)

    def purchase(self, product_id: str, quantity: int, holder_id: str, db=None) -> StockLevel:
        """
        Deduct units straight from unreserved stock, without a hold.

        Used when a buyer's hold was lost before the sale completed: the
        units are re-checked and sold in one conditional UPDATE.

        Raises:
            InsufficientStockException: not enough unreserved units
            ProductNotFoundException: product has no stock record
        """
        if quantity <= 0:
            raise ValidationException(
                "purchase quantity must be positive",
                field_errors=[{"field": "quantity", "error": "must be > 0"}]
            )

        with self._locks.hold(product_id), use_db(db) as s:
            now = self.clock()
            self._reclaim_expired(s, product_id, now)

            result = s.execute(
                update(Product)
                .where(
                    Product.product_id == product_id,
                    Product.quantity_available - Product.quantity_reserved >= quantity,
                )
                .values(
                    quantity_available=Product.quantity_available - quantity,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                stock = self._stock(s, product_id)
                logger.warning(
                    f"Purchase denied for {holder_id}: product {product_id} has "
                    f"{stock.quantity_unreserved} unreserved, requested {quantity}"
                )
                raise InsufficientStockException(product_id, quantity, stock.quantity_unreserved)

            logger.info(f"Sold {quantity} x {product_id} to {holder_id} without a hold")
            return self._stock(s, product_id)

    def extend(self, reservation_id: str, additional_seconds: int, db=None) -> ReservationInfo:
        """Push back the expiry of a live reservation."""
        if additional_seconds <= 0:
            raise ValidationException("additional_seconds must be positive")

        product_id = self._product_of(reservation_id, db)
        if product_id is None:
            raise ReservationNotFoundException(reservation_id)

        with self._locks.hold(product_id), use_db(db) as s:
            now = self.clock()
            reservation = s.get(Reservation, reservation_id)
            if reservation is None:
                raise ReservationNotFoundException(reservation_id)

            new_expiry = max(reservation.expires_at, now) + timedelta(seconds=additional_seconds)
            result = s.execute(
                update(Reservation)
                .where(
                    Reservation.reservation_id == reservation_id,
                    Reservation.expires_at > now,
                )
                .values(expires_at=new_expiry)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ReservationNotFoundException(reservation_id)

            s.refresh(reservation)
            logger.info(f"Extended reservation {reservation_id} to {new_expiry.isoformat()}")
            return ReservationInfo.model_validate(reservation)

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Release every reservation whose expires_at <= now.

        Safe to run repeatedly or concurrently with normal traffic; each hold
        is released at most once.

        Returns:
            Number of reservations released by this sweep
        """
        now = now or self.clock()
        with use_db() as s:
            expired = s.execute(
                select(Reservation.reservation_id, Reservation.product_id)
                .where(Reservation.expires_at <= now)
            ).all()

        released = 0
        for reservation_id, product_id in expired:
            with self._locks.hold(product_id), use_db() as s:
                reservation = s.get(Reservation, reservation_id)
                if reservation is None:
                    continue
                if self._drop(s, reservation, expired_at=now):
                    self._adjust(s, product_id, reserved=-reservation.quantity)
                    released += 1

        if released:
            logger.info(f"Swept {released} expired reservations")
        return released

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_reservation(self, reservation_id: str, db=None) -> Optional[ReservationInfo]:
        with use_db(db) as s:
            reservation = s.get(Reservation, reservation_id)
            return ReservationInfo.model_validate(reservation) if reservation else None

    def active_reservations(self, holder_id: Optional[str] = None) -> List[ReservationInfo]:
        """Unexpired reservations, newest first, optionally for one holder."""
        with use_db() as s:
            query = select(Reservation).where(Reservation.expires_at > self.clock())
            if holder_id:
                query = query.where(Reservation.holder_id == holder_id)
            query = query.order_by(Reservation.created_at.desc())
            return [ReservationInfo.model_validate(r) for r in s.scalars(query).all()]

    def stats(self) -> LedgerStats:
        """Active and expired-but-unswept counts plus the busiest holders."""
        now = self.clock()
        with use_db() as s:
            active = s.scalar(
                select(func.count()).select_from(Reservation).where(Reservation.expires_at > now)
            )
            expired = s.scalar(
                select(func.count()).select_from(Reservation).where(Reservation.expires_at <= now)
            )
            units = s.scalar(select(func.coalesce(func.sum(Product.quantity_reserved), 0)))
            top = s.execute(
                select(Reservation.holder_id, func.count().label("n"))
                .group_by(Reservation.holder_id)
                .order_by(func.count().desc())
                .limit(10)
            ).all()

        return LedgerStats(
            active_reservations=active or 0,
            expired_unswept=expired or 0,
            units_reserved=units or 0,
            top_holders=[HolderCount(holder_id=h, count=n) for h, n in top],
        )

    # ------------------------------------------------------------------
    # Internals (caller holds the product lock)
    # ------------------------------------------------------------------

    def _product_of(self, reservation_id: str, db=None) -> Optional[str]:
        with use_db(db) as s:
            return s.scalar(
                select(Reservation.product_id).where(Reservation.reservation_id == reservation_id)
            )

    def _stock(self, s, product_id: str) -> StockLevel:
        product = s.get(Product, product_id, populate_existing=True)
        if product is None:
            raise ProductNotFoundException(product_id)
        return StockLevel.model_validate(product)

    def _drop(
        self,
        s,
        reservation: Reservation,
        *,
        live_at: Optional[datetime] = None,
        expired_at: Optional[datetime] = None,
    ) -> bool:
        """Delete a reservation row; True only for the caller whose DELETE hit it."""
        query = delete(Reservation).where(Reservation.reservation_id == reservation.reservation_id)
        if live_at is not None:
            query = query.where(Reservation.expires_at > live_at)
        if expired_at is not None:
            query = query.where(Reservation.expires_at <= expired_at)

        result = s.execute(query.execution_options(synchronize_session=False))
        if result.rowcount == 1:
            s.expunge(reservation)
            return True
        return False

    def _adjust(self, s, product_id: str, reserved: int = 0, available: int = 0):
        s.execute(
            update(Product)
            .where(Product.product_id == product_id)
            .values(
                quantity_reserved=Product.quantity_reserved + reserved,
                quantity_available=Product.quantity_available + available,
                updated_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )

    def _reclaim_expired(self, s, product_id: str, now: datetime) -> int:
        """Lazily release expired holds on one product before reserving it."""
        expired = s.scalars(
            select(Reservation).where(
                Reservation.product_id == product_id,
                Reservation.expires_at <= now,
            )
        ).all()

        reclaimed = 0
        for reservation in expired:
            if self._drop(s, reservation, expired_at=now):
                self._adjust(s, product_id, reserved=-reservation.quantity)
                reclaimed += 1

        if reclaimed:
            logger.info(f"Reclaimed {reclaimed} expired reservations on product {product_id}")
        return reclaimed
