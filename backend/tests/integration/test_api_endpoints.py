"""
Integration tests for the v1 API endpoints.

WHAT: Exercise negotiation, QR, inventory, admin and health routes over HTTP
WHY: Ensure API contract compliance and error-to-status mapping
HOW: FastAPI TestClient against the service singletons and a fresh database
"""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from bazaar.main import app

PRODUCT = "terracotta-vase-5"
CUSTOMER = "customer-priya"
VENDOR = "vendor-arjun"


@pytest.fixture
def client(fresh_db):
    """Create FastAPI test client (lifespan not needed, fresh_db builds the schema)."""
    return TestClient(app)


@pytest.fixture
def stocked_client(client):
    response = client.post(
        "/api/v1/inventory/products",
        json={"product_id": PRODUCT, "quantity_available": 2},
    )
    assert response.status_code == 201
    return client


def open_negotiation(client, amount=150, customer=CUSTOMER):
    response = client.post(
        "/api/v1/negotiations",
        json={
            "customer_id": customer,
            "vendor_id": VENDOR,
            "product_id": PRODUCT,
            "amount": amount,
        },
        headers={"X-Actor-Id": customer},
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.api
class TestStatusAndInventory:

    def test_health(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["components"]["database"]["available"] is True
        assert "maintenance" in data["components"]

    def test_register_and_get_product(self, stocked_client):
        response = stocked_client.get(f"/api/v1/inventory/products/{PRODUCT}")

        assert response.status_code == 200
        assert response.json() == {
            "product_id": PRODUCT,
            "quantity_available": 2,
            "quantity_reserved": 0,
            "quantity_unreserved": 2,
        }

    def test_restock(self, stocked_client):
        response = stocked_client.post(
            f"/api/v1/inventory/products/{PRODUCT}/restock", json={"quantity": 3}
        )
        assert response.status_code == 200
        assert response.json()["quantity_available"] == 5
        assert response.headers["X-RateLimit-Limit"] == "1000"
        assert response.headers["X-RateLimit-Remaining"] == "998"

    def test_unknown_product_404(self, client):
        response = client.get("/api/v1/inventory/products/ghost")

        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "PRODUCT_NOT_FOUND"
        assert "timestamp" in body

    def test_request_validation_400(self, client):
        response = client.post("/api/v1/inventory/products", json={"product_id": PRODUCT})

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_stats_and_reservations(self, stocked_client):
        negotiation = open_negotiation(stocked_client)

        stats = stocked_client.get("/api/v1/inventory/stats").json()
        assert stats["active_reservations"] == 1
        assert stats["units_reserved"] == 1

        held = stocked_client.get(
            "/api/v1/inventory/reservations",
            params={"holder_id": negotiation["negotiation_id"]},
        ).json()
        assert [r["reservation_id"] for r in held] == [negotiation["reservation_id"]]


@pytest.mark.api
class TestNegotiationRoutes:

    def test_full_negotiation_flow(self, stocked_client):
        negotiation = open_negotiation(stocked_client)
        negotiation_id = negotiation["negotiation_id"]
        assert negotiation["status"] == "open"

        response = stocked_client.post(
            f"/api/v1/negotiations/{negotiation_id}/bids",
            json={"bidder_role": "vendor", "amount": 140, "message": "Best price"},
            headers={"X-Actor-Id": VENDOR},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "active"

        response = stocked_client.post(
            f"/api/v1/negotiations/{negotiation_id}/resolve",
            json={"outcome": "accept"},
            headers={"X-Actor-Id": CUSTOMER},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "accepted"
        assert Decimal(str(data["final_price"])) == Decimal("140")
        assert data["resolved_by_role"] == "customer"
        assert data["reservation_id"] is None

        stock = stocked_client.get(f"/api/v1/inventory/products/{PRODUCT}").json()
        assert stock["quantity_available"] == 1
        assert stock["quantity_reserved"] == 0

        response = stocked_client.post(
            f"/api/v1/negotiations/{negotiation_id}/resolve",
            json={"outcome": "reject"},
        )
        assert response.status_code == 409
        assert response.json()["error"] == "NEGOTIATION_NOT_ACTIVE"

    def test_get_negotiation_and_bids(self, stocked_client):
        negotiation = open_negotiation(stocked_client)

        response = stocked_client.get(f"/api/v1/negotiations/{negotiation['negotiation_id']}")
        assert response.status_code == 200
        assert response.json()["customer_id"] == CUSTOMER

        bids = stocked_client.get(f"/api/v1/negotiations/{negotiation['negotiation_id']}/bids").json()
        assert [b["sequence_number"] for b in bids] == [1]
        assert Decimal(str(bids[0]["amount"])) == Decimal("150")

    def test_bid_by_wrong_actor_403(self, stocked_client):
        negotiation = open_negotiation(stocked_client)

        response = stocked_client.post(
            f"/api/v1/negotiations/{negotiation['negotiation_id']}/bids",
            json={"bidder_role": "vendor", "amount": 140},
            headers={"X-Actor-Id": "vendor-imposter"},
        )
        assert response.status_code == 403
        assert response.json()["error"] == "NOT_A_PARTICIPANT"

    def test_invalid_bid_400(self, stocked_client):
        negotiation = open_negotiation(stocked_client)

        response = stocked_client.post(
            f"/api/v1/negotiations/{negotiation['negotiation_id']}/bids",
            json={"bidder_role": "vendor", "amount": 0},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_BID"

    def test_accepting_own_bid_400(self, stocked_client):
        negotiation = open_negotiation(stocked_client)

        response = stocked_client.post(
            f"/api/v1/negotiations/{negotiation['negotiation_id']}/resolve",
            json={"outcome": "accept"},
            headers={"X-Actor-Id": CUSTOMER},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_BID"

    def test_unknown_negotiation_404(self, client):
        response = client.get("/api/v1/negotiations/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"] == "NEGOTIATION_NOT_FOUND"

    def test_out_of_stock_409(self, stocked_client):
        open_negotiation(stocked_client, customer="c-1")
        open_negotiation(stocked_client, customer="c-2")

        response = stocked_client.post(
            "/api/v1/negotiations",
            json={"customer_id": "c-3", "vendor_id": VENDOR, "product_id": PRODUCT, "amount": 150},
        )
        assert response.status_code == 409
        assert response.json()["error"] == "INSUFFICIENT_STOCK"

    def test_party_listing(self, stocked_client):
        negotiation = open_negotiation(stocked_client)

        response = stocked_client.get(
            f"/api/v1/parties/{VENDOR}/negotiations", params={"role": "vendor", "status": "open"}
        )
        assert response.status_code == 200
        assert [n["negotiation_id"] for n in response.json()] == [negotiation["negotiation_id"]]


@pytest.mark.api
class TestQRSessionRoutes:

    def issue(self, client, **extra):
        response = client.post(
            "/api/v1/qr-sessions",
            json={"issuer_party_id": VENDOR, "product_id": PRODUCT, "source_language": "hi", **extra},
        )
        assert response.status_code == 201, response.text
        return response.json()

    def test_issue_validate_claim(self, stocked_client):
        issued = self.issue(stocked_client)
        assert issued["qr_content"].endswith(issued["token"])

        validation = stocked_client.get(f"/api/v1/qr-sessions/{issued['token']}").json()
        assert validation["is_valid"] is True

        response = stocked_client.post(
            f"/api/v1/qr-sessions/{issued['token']}/claim",
            json={"claimant_party_id": CUSTOMER, "target_language": "kn", "initial_bid": {"amount": 900}},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["session"]["status"] == "claimed"
        assert data["session"]["target_language"] == "kn"
        assert data["negotiation"]["vendor_id"] == VENDOR
        assert data["negotiation"]["customer_id"] == CUSTOMER

        response = stocked_client.post(
            f"/api/v1/qr-sessions/{issued['token']}/claim",
            json={"claimant_party_id": "customer-late"},
        )
        assert response.status_code == 409
        assert response.json()["error"] == "ALREADY_CLAIMED"

    def test_unsupported_language_400(self, stocked_client):
        response = stocked_client.post(
            "/api/v1/qr-sessions",
            json={"issuer_party_id": VENDOR, "source_language": "zz"},
        )
        assert response.status_code == 400

    def test_claim_unknown_token_400(self, client):
        response = client.post(
            "/api/v1/qr-sessions/forged-token/claim", json={"claimant_party_id": CUSTOMER}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "TOKEN_INVALID"

    def test_invalidate(self, stocked_client):
        issued = self.issue(stocked_client)

        response = stocked_client.delete(
            f"/api/v1/qr-sessions/{issued['token']}", headers={"X-Actor-Id": VENDOR}
        )
        assert response.status_code == 200
        assert response.json() == {"invalidated": True}

        active = stocked_client.get(f"/api/v1/parties/{VENDOR}/qr-sessions").json()
        assert active == []


@pytest.mark.api
class TestRateLimitingAndAdmin:

    def spam(self, client, times):
        return [
            client.post(
                "/api/v1/negotiations",
                json={"customer_id": "spammer", "vendor_id": VENDOR, "product_id": "ghost", "amount": 1},
                headers={"X-Actor-Id": "spammer"},
            )
            for _ in range(times)
        ]

    def test_negotiation_quota_returns_429(self, client):
        responses = self.spam(client, 11)

        assert [r.status_code for r in responses[:10]] == [404] * 10
        limited = responses[10]
        assert limited.status_code == 429
        assert limited.json()["error"] == "RATE_LIMITED"
        assert int(limited.headers["Retry-After"]) >= 1

    def test_admin_status_and_reset(self, client):
        self.spam(client, 10)

        status = client.get("/api/v1/admin/rate-limits/negotiation/spammer").json()
        assert status["count"] == 10
        assert status["remaining"] == 0

        response = client.post(
            "/api/v1/admin/rate-limits/reset",
            json={"category": "negotiation", "actor_key": "spammer"},
        )
        assert response.json() == {"reset": 1}
        assert self.spam(client, 1)[0].status_code == 404

    def test_maintenance_sweep(self, client):
        response = client.post("/api/v1/admin/maintenance/sweep")

        assert response.status_code == 200
        assert set(response.json()) == {
            "negotiations_expired",
            "reservations_released",
            "qr_sessions_expired",
            "rate_counters_purged",
        }
