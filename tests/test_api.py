"""HTTP surface: quote, select, book, lookup and reconciliation."""
import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from shiprate.api.deps import get_registry
from shiprate.couriers.registry import ProviderRegistry
from shiprate.database import get_db
from shiprate.main import app
from shiprate.services.cache_service import CacheService, InMemoryCache, get_cache
from shiprate.services.catalog_repository import CatalogRepository
from tests.conftest import (
    CARD_START,
    FakeCourierAdapter,
    basic_config,
    create_session,
    expired_at,
    make_option,
    seed_service,
)

QUOTE_BODY = {
    "origin_pincode": "110001",
    "destination_pincode": "110020",
    "weight_kg": "0.4",
    "payment_mode": "cod",
    "order_value": "1000",
    "zone": "A",
}

ADDRESS = {
    "name": "Asha",
    "phone": "9999999999",
    "address": "12 MG Road",
    "city": "Delhi",
    "state": "DL",
    "pincode": "110020",
}


def _book_body(session_id, option_id="opt-delhivery-surface"):
    return {
        "session_id": str(session_id),
        "option_id": option_id,
        "fulfillment_details": {
            "order_reference": "ORD-1",
            "pickup_address": {**ADDRESS, "name": "Warehouse", "pincode": "110001"},
            "delivery_address": ADDRESS,
            "items": [{"name": "Mug", "sku": "MUG-1", "units": 1, "selling_price": "1000"}],
        },
    }


@pytest.fixture
def adapter():
    return FakeCourierAdapter("delhivery")


@pytest_asyncio.fixture
async def client(db, adapter):
    async def override_get_db():
        yield db
        await db.commit()

    cache = CacheService(InMemoryCache(), namespace="test")
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_registry] = lambda: ProviderRegistry([adapter])
    app.dependency_overrides[get_cache] = lambda: cache

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def headers(owner_id):
    return {"X-Tenant-ID": str(owner_id)}


async def _seed_catalog(db, owner_id):
    service = await seed_service(db, owner_id, "delhivery")
    repository = CatalogRepository(db)
    await repository.add_rate_card(owner_id, service.id, "cost", basic_config(base="30", tax="0"), CARD_START)
    await repository.add_rate_card(owner_id, service.id, "sell", basic_config(base="40", tax="0"), CARD_START)
    await db.commit()


class TestQuoteToBooking:
    async def test_full_flow(self, client, db, owner_id, headers, adapter):
        await _seed_catalog(db, owner_id)

        response = await client.post("/api/v1/quotes", json=QUOTE_BODY, headers=headers)
        assert response.status_code == 201
        quote = response.json()
        assert quote["recommended_option_id"] == "opt-delhivery-surface"
        assert quote["confidence"] == "high"
        option = quote["options"][0]
        assert Decimal(option["cost_amount"]) == Decimal("50")
        assert Decimal(option["sell_amount"]) == Decimal("60")

        session_id = quote["session_id"]
        response = await client.post(
            f"/api/v1/quotes/{session_id}/select",
            json={"option_id": "opt-delhivery-surface"},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["selected_option_id"] == "opt-delhivery-surface"

        response = await client.post(
            "/api/v1/shipments/book-from-quote", json=_book_body(session_id), headers=headers
        )
        assert response.status_code == 201
        booking = response.json()
        assert booking["tracking_id"] == "DELHIVERY000001"
        assert booking["replayed"] is False
        assert Decimal(booking["pricing_snapshot"]["expected_cost_amount"]) == Decimal("50")

        response = await client.get(f"/api/v1/shipments/{booking['shipment_id']}", headers=headers)
        assert response.status_code == 200
        shipment = response.json()
        assert shipment["status"] == "booked"
        assert len(shipment["status_history"]) == 2

        response = await client.get(f"/api/v1/quotes/{session_id}", headers=headers)
        assert response.json()["selected_option_id"] == "opt-delhivery-surface"

    async def test_repeated_booking_replays(self, client, db, owner_id, headers, adapter):
        session = await create_session(db, owner_id, [make_option("delhivery")])

        first = await client.post(
            "/api/v1/shipments/book-from-quote", json=_book_body(session.id), headers=headers
        )
        second = await client.post(
            "/api/v1/shipments/book-from-quote", json=_book_body(session.id), headers=headers
        )

        assert first.status_code == 201
        assert second.status_code == 201
        assert second.json()["replayed"] is True
        assert second.json()["shipment_id"] == first.json()["shipment_id"]
        assert len(adapter.booked) == 1

    async def test_compensated_booking_is_a_conflict(self, client, db, owner_id, headers, adapter):
        from shiprate.core.exceptions import ProviderError

        adapter.booking_error = ProviderError("delhivery", "gateway down", provider_status=503)
        session = await create_session(db, owner_id, [make_option("delhivery")])

        response = await client.post(
            "/api/v1/shipments/book-from-quote", json=_book_body(session.id), headers=headers
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error_code"] == "BOOKING_COMPENSATED"
        assert body["details"]["state"] == "booking_failed"
        assert body["details"]["follow_up_required"] is False


class TestErrors:
    async def test_missing_tenant_header(self, client):
        response = await client.post("/api/v1/quotes", json=QUOTE_BODY)
        assert response.status_code == 422

    async def test_malformed_tenant_header(self, client):
        response = await client.post("/api/v1/quotes", json=QUOTE_BODY, headers={"X-Tenant-ID": "abc"})
        assert response.status_code == 400

    async def test_invalid_quote_request(self, client, headers):
        body = {**QUOTE_BODY, "origin_pincode": "12"}

        response = await client.post("/api/v1/quotes", json=body, headers=headers)

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"
        assert "origin_pincode" in response.json()["details"]["fields"]

    async def test_expired_session(self, client, db, owner_id, headers):
        session = await create_session(db, owner_id, [make_option("delhivery")], created_at=expired_at())

        response = await client.post(
            f"/api/v1/quotes/{session.id}/select",
            json={"option_id": "opt-delhivery-surface"},
            headers=headers,
        )

        assert response.status_code == 410
        assert response.json()["error_code"] == "SESSION_EXPIRED"

    async def test_unknown_option(self, client, db, owner_id, headers):
        session = await create_session(db, owner_id, [make_option("delhivery")])

        response = await client.post(
            "/api/v1/shipments/book-from-quote",
            json=_book_body(session.id, option_id="opt-nope-surface"),
            headers=headers,
        )

        assert response.status_code == 422
        assert response.json()["error_code"] == "INVALID_OPTION"

    async def test_session_of_another_tenant(self, client, db, owner_id):
        session = await create_session(db, owner_id, [make_option("delhivery")])

        response = await client.get(
            f"/api/v1/quotes/{session.id}", headers={"X-Tenant-ID": str(uuid.uuid4())}
        )

        assert response.status_code == 404


class TestReconciliationApi:
    async def test_import_list_and_resolve(self, client, db, owner_id, headers):
        session = await create_session(db, owner_id, [make_option("delhivery", sell="100", cost="80")])
        booked = await client.post(
            "/api/v1/shipments/book-from-quote", json=_book_body(session.id), headers=headers
        )
        tracking_id = booked.json()["tracking_id"]
        record = {
            "provider": "Delhivery",
            "awb": tracking_id,
            "billed_total": "96",
            "billed_components": {"freight": "96"},
            "source": "mis",
            "billed_at": "2024-06-01T10:00:00Z",
            "invoice_ref": "INV-1",
        }

        response = await client.post(
            "/api/v1/reconciliation/billing-import",
            json={"records": [record, {"awb": "broken"}]},
            headers=headers,
        )
        assert response.status_code == 200
        summary = response.json()
        assert summary["imported_count"] == 1
        assert summary["skipped_count"] == 1
        assert summary["open_case_count"] == 1

        response = await client.get(
            "/api/v1/reconciliation/variance-cases", params={"status": "open"}, headers=headers
        )
        cases = response.json()
        assert len(cases) == 1
        assert Decimal(cases[0]["variance_percent"]) == Decimal("20")

        response = await client.patch(
            f"/api/v1/reconciliation/variance-cases/{cases[0]['id']}",
            json={
                "status": "resolved",
                "resolution": {"outcome": "carrier_credit", "refund_amount": "16"},
            },
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "resolved"
        assert response.json()["resolved_at"] is not None

    async def test_unknown_case_is_not_found(self, client, headers):
        response = await client.patch(
            f"/api/v1/reconciliation/variance-cases/{uuid.uuid4()}",
            json={"status": "resolved"},
            headers=headers,
        )
        assert response.status_code == 404
