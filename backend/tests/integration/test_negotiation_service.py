"""
Negotiation state machine integration tests.

WHAT: Test creation, bidding, resolution and expiry with the real ledger
WHY: Status must only move forward and every transition must leave stock consistent
HOW: Frozen clock for expiry; thread pools for racing bids and resolutions
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from bazaar.core.models import NegotiationStatus, BidderRole
from bazaar.models.negotiation import BidRequest
from bazaar.utils.exceptions import (
    InsufficientStockException,
    InvalidBidException,
    NegotiationNotActiveException,
    NegotiationNotFoundException,
    NotAParticipantException,
    ValidationException,
)

CUSTOMER = "customer-asha"
VENDOR = "vendor-ravi"
PRODUCT = "saree-silk-001"


@pytest.fixture
def negotiation(ledger, negotiations):
    ledger.register_product(PRODUCT, 1)
    return negotiations.create_negotiation(CUSTOMER, VENDOR, PRODUCT, Decimal("150"))


@pytest.mark.integration
class TestCreateNegotiation:

    def test_create_opens_with_first_bid(self, negotiation, ledger):
        assert negotiation.status == NegotiationStatus.OPEN
        assert len(negotiation.bids) == 1
        assert negotiation.bids[0].sequence_number == 1
        assert negotiation.bids[0].amount == Decimal("150")
        assert negotiation.bids[0].bidder_role == BidderRole.CUSTOMER
        assert negotiation.current_offer.amount == Decimal("150")

    def test_create_reserves_stock_until_negotiation_expiry(self, negotiation, ledger):
        reservation = ledger.get_reservation(negotiation.reservation_id)

        assert reservation is not None
        assert reservation.holder_id == negotiation.negotiation_id
        assert reservation.expires_at == negotiation.expires_at
        assert ledger.get_stock(PRODUCT).quantity_reserved == 1

    def test_default_ttl_is_a_day(self, negotiation):
        assert (negotiation.expires_at - negotiation.created_at).total_seconds() == 24 * 3600

    def test_accepts_bid_request(self, ledger, negotiations):
        ledger.register_product(PRODUCT, 1)
        state = negotiations.create_negotiation(
            CUSTOMER, VENDOR, PRODUCT,
            BidRequest(amount=Decimal("99.5"), message="namaste", language="hi"),
        )
        assert state.bids[0].amount == Decimal("99.50")
        assert state.bids[0].language == "hi"

    @pytest.mark.parametrize("amount", [0, -10, "0.001", "abc"])
    def test_invalid_opening_bid(self, ledger, negotiations, amount):
        ledger.register_product(PRODUCT, 1)
        with pytest.raises(InvalidBidException):
            negotiations.create_negotiation(CUSTOMER, VENDOR, PRODUCT, amount)
        assert ledger.get_stock(PRODUCT).quantity_reserved == 0

    def test_no_stock(self, ledger, negotiations):
        ledger.register_product(PRODUCT, 0)
        with pytest.raises(InsufficientStockException):
            negotiations.create_negotiation(CUSTOMER, VENDOR, PRODUCT, 100)
        assert negotiations.list_for_party(CUSTOMER) == []

    def test_same_party_on_both_sides_rejected(self, ledger, negotiations):
        ledger.register_product(PRODUCT, 1)
        with pytest.raises(ValidationException):
            negotiations.create_negotiation(CUSTOMER, CUSTOMER, PRODUCT, 100)


@pytest.mark.integration
@pytest.mark.concurrency
def test_scenario_a_single_unit_two_concurrent_creates(ledger, negotiations):
    """Exactly one of two concurrent negotiations on the last unit gets it."""
    ledger.register_product(PRODUCT, 1)
    barrier = threading.Barrier(2)

    def create(customer):
        barrier.wait()
        try:
            return negotiations.create_negotiation(customer, VENDOR, PRODUCT, 120)
        except InsufficientStockException as e:
            return e

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(create, ["customer-1", "customer-2"]))

    created = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, InsufficientStockException)]
    assert len(created) == 1
    assert len(failed) == 1
    stock = ledger.get_stock(PRODUCT)
    assert stock.quantity_reserved == 1
    assert stock.quantity_available == 1


@pytest.mark.integration
class TestBidding:

    def test_counter_bid_moves_to_active(self, negotiation, negotiations):
        state = negotiations.submit_bid(negotiation.negotiation_id, "vendor", 140)

        assert state.status == NegotiationStatus.ACTIVE
        assert [b.sequence_number for b in state.bids] == [1, 2]
        assert state.current_offer.amount == Decimal("140")
        assert state.current_offer.bidder_role == BidderRole.VENDOR

    def test_same_party_may_bid_twice_in_a_row(self, negotiation, negotiations):
        negotiations.submit_bid(negotiation.negotiation_id, BidderRole.CUSTOMER, 155)
        state = negotiations.submit_bid(negotiation.negotiation_id, BidderRole.CUSTOMER, 160)

        assert [b.bidder_role for b in state.bids] == [BidderRole.CUSTOMER] * 3
        assert negotiations.get_latest_bid(negotiation.negotiation_id).amount == Decimal("160")

    @pytest.mark.parametrize("amount", [0, -1, "nan"])
    def test_invalid_amount(self, negotiation, negotiations, amount):
        with pytest.raises(InvalidBidException):
            negotiations.submit_bid(negotiation.negotiation_id, "vendor", amount)
        assert len(negotiations.get_bids(negotiation.negotiation_id)) == 1

    def test_unknown_role(self, negotiation, negotiations):
        with pytest.raises(InvalidBidException):
            negotiations.submit_bid(negotiation.negotiation_id, "broker", 100)

    def test_unknown_negotiation(self, negotiations, fresh_db):
        with pytest.raises(NegotiationNotFoundException):
            negotiations.submit_bid("missing", "vendor", 100)

    def test_actor_must_own_role(self, negotiation, negotiations):
        with pytest.raises(NotAParticipantException):
            negotiations.submit_bid(negotiation.negotiation_id, "vendor", 140, actor_id="vendor-imposter")

        state = negotiations.submit_bid(negotiation.negotiation_id, "vendor", 140, actor_id=VENDOR)
        assert state.current_offer.amount == Decimal("140")

    def test_bids_listed_in_sequence_order(self, negotiation, negotiations):
        for amount in (140, 145, 142):
            negotiations.submit_bid(negotiation.negotiation_id, "vendor", amount)

        bids = negotiations.get_bids(negotiation.negotiation_id)
        assert [b.sequence_number for b in bids] == [1, 2, 3, 4]
        assert [b.amount for b in bids] == [Decimal(x) for x in ("150", "140", "145", "142")]


@pytest.mark.integration
@pytest.mark.concurrency
def test_concurrent_bids_get_distinct_increasing_sequence_numbers(negotiation, negotiations):
    def bid(i):
        role = "customer" if i % 2 else "vendor"
        return negotiations.submit_bid(negotiation.negotiation_id, role, 100 + i)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(bid, range(16)))

    sequence = [b.sequence_number for b in negotiations.get_bids(negotiation.negotiation_id)]
    assert sequence == list(range(1, 18))


@pytest.mark.integration
class TestResolve:

    def test_scenario_b_accept_defaults_to_latest_bid(self, negotiation, negotiations, ledger):
        negotiations.submit_bid(negotiation.negotiation_id, "vendor", 140)

        state = negotiations.resolve(negotiation.negotiation_id, "accept")

        assert state.status == NegotiationStatus.ACCEPTED
        assert state.final_price == Decimal("140")
        assert state.reservation_id is None
        assert ledger.get_reservation(negotiation.reservation_id) is None
        stock = ledger.get_stock(PRODUCT)
        assert stock.quantity_available == 0
        assert stock.quantity_reserved == 0

    def test_accept_with_explicit_price(self, negotiation, negotiations):
        state = negotiations.resolve(negotiation.negotiation_id, "accept", final_price="147.50")
        assert state.final_price == Decimal("147.50")

    @pytest.mark.parametrize("outcome,status", [
        ("reject", NegotiationStatus.REJECTED),
        ("cancel", NegotiationStatus.CANCELLED),
    ])
    def test_reject_or_cancel_releases_stock(self, negotiation, negotiations, ledger, outcome, status):
        state = negotiations.resolve(negotiation.negotiation_id, outcome)

        assert state.status == status
        assert state.final_price is None
        stock = ledger.get_stock(PRODUCT)
        assert stock.quantity_available == 1
        assert stock.quantity_reserved == 0

    def test_second_resolve_fails(self, negotiation, negotiations):
        negotiations.resolve(negotiation.negotiation_id, "reject")

        with pytest.raises(NegotiationNotActiveException):
            negotiations.resolve(negotiation.negotiation_id, "accept")
        with pytest.raises(NegotiationNotActiveException):
            negotiations.submit_bid(negotiation.negotiation_id, "vendor", 100)
        assert negotiations.get_negotiation(negotiation.negotiation_id).status == NegotiationStatus.REJECTED

    def test_unknown_outcome(self, negotiation, negotiations):
        with pytest.raises(ValidationException):
            negotiations.resolve(negotiation.negotiation_id, "haggle")

    def test_outsider_cannot_resolve(self, negotiation, negotiations):
        with pytest.raises(NotAParticipantException):
            negotiations.resolve(negotiation.negotiation_id, "cancel", actor_id="someone-else")

        state = negotiations.resolve(negotiation.negotiation_id, "cancel", actor_id=CUSTOMER)
        assert state.resolved_by_role == "customer"

    def test_cannot_accept_own_latest_bid(self, negotiation, negotiations, ledger):
        with pytest.raises(InvalidBidException):
            negotiations.resolve(negotiation.negotiation_id, "accept", actor_id=CUSTOMER)

        # Nothing changed: still open, unit still held
        assert negotiations.get_negotiation(negotiation.negotiation_id).status == NegotiationStatus.OPEN
        assert ledger.get_stock(PRODUCT).quantity_reserved == 1

        negotiations.submit_bid(negotiation.negotiation_id, "vendor", 140)
        with pytest.raises(InvalidBidException):
            negotiations.resolve(negotiation.negotiation_id, "accept", actor_role="vendor")

        state = negotiations.resolve(negotiation.negotiation_id, "accept", actor_id=CUSTOMER)
        assert state.status == NegotiationStatus.ACCEPTED
        assert state.final_price == Decimal("140")

    def test_accept_re_reserves_when_hold_was_lost(self, negotiation, negotiations, ledger):
        ledger.release(negotiation.reservation_id)

        state = negotiations.resolve(negotiation.negotiation_id, "accept")

        assert state.status == NegotiationStatus.ACCEPTED
        assert ledger.get_stock(PRODUCT).quantity_available == 0

    def test_accept_fails_when_lost_hold_cannot_be_replaced(self, negotiation, negotiations, ledger):
        ledger.release(negotiation.reservation_id)
        ledger.reserve(PRODUCT, 1, holder_id="another-order")

        with pytest.raises(InsufficientStockException):
            negotiations.resolve(negotiation.negotiation_id, "accept")
        assert negotiations.get_negotiation(negotiation.negotiation_id).status == NegotiationStatus.OPEN


@pytest.mark.integration
@pytest.mark.concurrency
def test_concurrent_accepts_commit_stock_once(negotiation, negotiations, ledger):
    def accept(_):
        try:
            negotiations.resolve(negotiation.negotiation_id, "accept")
            return True
        except NegotiationNotActiveException:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(accept, range(8)))

    assert results.count(True) == 1
    stock = ledger.get_stock(PRODUCT)
    assert stock.quantity_available == 0
    assert stock.quantity_reserved == 0


@pytest.mark.integration
class TestExpiry:

    def test_scenario_c_expire_stale_releases_reservation(self, ledger, negotiations, clock):
        ledger.register_product(PRODUCT, 1)
        state = negotiations.create_negotiation(CUSTOMER, VENDOR, PRODUCT, 150, ttl_seconds=1)
        clock.advance(2)

        assert negotiations.expire_stale(clock()) == 1

        expired = negotiations.get_negotiation(state.negotiation_id)
        assert expired.status == NegotiationStatus.EXPIRED
        assert expired.reservation_id is None
        assert ledger.get_stock(PRODUCT).quantity_reserved == 0
        with pytest.raises(NegotiationNotActiveException):
            negotiations.submit_bid(state.negotiation_id, "vendor", 140)

    def test_expire_stale_is_idempotent(self, ledger, negotiations, clock):
        ledger.register_product(PRODUCT, 2)
        negotiations.create_negotiation(CUSTOMER, VENDOR, PRODUCT, 150, ttl_seconds=10)
        negotiations.create_negotiation(CUSTOMER, VENDOR, PRODUCT, 150, ttl_seconds=1000)
        clock.advance(11)

        assert negotiations.expire_stale() == 1
        assert negotiations.expire_stale() == 0
        assert ledger.get_stock(PRODUCT).quantity_reserved == 1

    def test_expiry_applied_lazily_before_a_bid(self, ledger, negotiations, clock):
        ledger.register_product(PRODUCT, 1)
        state = negotiations.create_negotiation(CUSTOMER, VENDOR, PRODUCT, 150, ttl_seconds=60)
        clock.advance(60)

        with pytest.raises(NegotiationNotActiveException):
            negotiations.submit_bid(state.negotiation_id, "vendor", 140)

        # The expiry survived the failed bid
        assert negotiations.list_for_party(CUSTOMER)[0].status == NegotiationStatus.EXPIRED
        assert ledger.get_stock(PRODUCT).quantity_reserved == 0

    def test_terminal_negotiations_never_expire(self, negotiation, negotiations, clock):
        negotiations.resolve(negotiation.negotiation_id, "accept")
        clock.advance(days=2)

        assert negotiations.expire_stale() == 0
        assert negotiations.get_negotiation(negotiation.negotiation_id).status == NegotiationStatus.ACCEPTED


@pytest.mark.integration
class TestQueries:

    def test_list_for_party(self, ledger, negotiations, clock):
        ledger.register_product(PRODUCT, 3)
        first = negotiations.create_negotiation(CUSTOMER, VENDOR, PRODUCT, 100)
        clock.advance(5)
        second = negotiations.create_negotiation(CUSTOMER, "vendor-other", PRODUCT, 100)
        clock.advance(5)
        negotiations.resolve(first.negotiation_id, "reject")

        listed = negotiations.list_for_party(CUSTOMER)
        assert [n.negotiation_id for n in listed] == [first.negotiation_id, second.negotiation_id]

        as_vendor = negotiations.list_for_party(VENDOR, role="vendor")
        assert [n.negotiation_id for n in as_vendor] == [first.negotiation_id]
        assert negotiations.list_for_party(VENDOR, role="customer") == []

        open_only = negotiations.list_for_party(CUSTOMER, status="open")
        assert [n.negotiation_id for n in open_only] == [second.negotiation_id]

    def test_get_unknown(self, negotiations, fresh_db):
        with pytest.raises(NegotiationNotFoundException):
            negotiations.get_negotiation("missing")

    def test_transition_table(self, negotiations):
        assert negotiations.is_valid_transition(NegotiationStatus.OPEN, NegotiationStatus.ACTIVE)
        assert negotiations.is_valid_transition(NegotiationStatus.ACTIVE, NegotiationStatus.ACTIVE)
        assert negotiations.is_valid_transition("active", NegotiationStatus.EXPIRED)
        assert not negotiations.is_valid_transition(NegotiationStatus.ACTIVE, NegotiationStatus.OPEN)
        for terminal in ("accepted", "rejected", "expired", "cancelled"):
            assert not negotiations.is_valid_transition(terminal, NegotiationStatus.ACTIVE)
