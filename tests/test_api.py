"""HTTP surface: authentication, error mapping and endpoint wiring."""

import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.api.deps import get_cache, get_session_factory
from app.core.permissions import Role
from app.core.security import create_access_token, verify_access_token
from app.database import get_db
from app.main import app
from app.services.order_service import OrderService


@pytest.fixture
async def client(session_factory, cache):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_cache] = lambda: cache

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def auth(principal):
    return {"Authorization": f"Bearer {create_access_token(principal.id, principal.role)}"}


# ====================
# Tokens
# ====================


def test_access_token_round_trip(customer):
    principal = verify_access_token(create_access_token(customer.id, Role.MANAGER))
    assert principal.id == customer.id
    assert principal.role == Role.MANAGER


def test_unknown_role_claim_is_treated_as_customer(customer):
    principal = verify_access_token(create_access_token(customer.id, "superuser"))
    assert principal.role == Role.CUSTOMER


def test_invalid_tokens_are_rejected(customer):
    assert verify_access_token("not-a-token") is None
    expired = create_access_token(customer.id, Role.STAFF, expires_delta=timedelta(seconds=-10))
    assert verify_access_token(expired) is None
    assert verify_access_token(create_access_token("not-a-uuid", Role.STAFF)) is None


async def test_requests_without_valid_token_are_refused(client):
    response = await client.get("/api/v1/orders")
    assert response.status_code in (401, 403)

    response = await client.get("/api/v1/orders", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["checks"]["database"] == "connected"


# ====================
# Orders
# ====================


async def test_create_and_read_order(client, store, customer, cache):
    product = await store.add_product("MUG-1", on_hand=10, price="12.00")

    response = await client.post(
        "/api/v1/orders",
        json={
            "delivery_mode": "pickup",
            "payment_method": "online",
            "items": [{"product_id": str(product), "quantity": 2}],
        },
        headers=auth(customer),
    )

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "pending_payment"
    assert body["customer_id"] == str(customer.id)
    assert float(body["total"]) == 24.0
    assert body["expires_at"] is not None
    assert body["payment"]["status"] == "initiated"
    assert body["items"][0]["quantity"] == 2
    assert cache.invalidations == 1

    detail = await client.get(f"/api/v1/orders/{body['id']}", headers=auth(customer))
    assert detail.status_code == 200
    assert detail.json()["status_history"][0]["to_status"] == "pending_payment"

    listing = await client.get("/api/v1/orders", headers=auth(customer))
    assert listing.json()["total"] == 1


async def test_delivery_mode_and_payment_method_ignore_case(client, store, customer):
    product = await store.add_product("MUG-1", on_hand=10)

    response = await client.post(
        "/api/v1/orders",
        json={
            "delivery_mode": "PICKUP",
            "payment_method": " Online ",
            "items": [{"product_id": str(product), "quantity": 1}],
        },
        headers=auth(customer),
    )

    assert response.status_code == 201
    assert response.json()["delivery_mode"] == "pickup"
    assert response.json()["payment_method"] == "online"


async def test_insufficient_stock_is_a_conflict(client, store, customer):
    product = await store.add_product("MUG-1", on_hand=1)

    response = await client.post(
        "/api/v1/orders",
        json={
            "delivery_mode": "pickup",
            "payment_method": "in_store",
            "items": [{"product_id": str(product), "quantity": 3}],
        },
        headers=auth(customer),
    )

    assert response.status_code == 409
    body = response.json()
    assert body["type"] == "InsufficientStockError"
    assert body["details"] == {"product_id": str(product), "available": 1, "requested": 3}


@pytest.mark.parametrize("payload", [
    {"delivery_mode": "pickup", "payment_method": "in_store", "items": []},
    {"delivery_mode": "pickup", "payment_method": "in_store", "items": [{"product_id": "x", "quantity": 1}]},
    {"delivery_mode": "teleport", "payment_method": "in_store", "items": []},
    {"delivery_mode": "delivery", "payment_method": "in_store", "items": [{"product_id": None, "quantity": 1}]},
])
async def test_malformed_order_requests_are_bad_requests(client, customer, payload):
    response = await client.post("/api/v1/orders", json=payload, headers=auth(customer))
    assert response.status_code == 400


async def test_zero_quantity_and_missing_address_are_bad_requests(client, store, customer):
    product = await store.add_product("MUG-1", on_hand=10)

    zero = await client.post(
        "/api/v1/orders",
        json={
            "delivery_mode": "pickup",
            "payment_method": "in_store",
            "items": [{"product_id": str(product), "quantity": 0}],
        },
        headers=auth(customer),
    )
    no_address = await client.post(
        "/api/v1/orders",
        json={
            "delivery_mode": "delivery",
            "payment_method": "in_store",
            "items": [{"product_id": str(product), "quantity": 1}],
        },
        headers=auth(customer),
    )

    assert zero.status_code == 400
    assert no_address.status_code == 400
    assert no_address.json()["type"] == "ValidationFailed"
    assert (await store.inventory(product)).reserved == 0


async def test_customers_only_see_their_own_orders(client, store, session_factory, customer, staff):
    product = await store.add_product("MUG-1", on_hand=10)
    async with session_factory() as session:
        foreign = await OrderService(session).create_order(
            customer_id=uuid.uuid4(),
            delivery_mode="pickup",
            payment_method="in_store",
            items=[{"product_id": product, "quantity": 1}],
        )

    assert (await client.get(f"/api/v1/orders/{foreign.id}", headers=auth(customer))).status_code == 404
    assert (await client.get(f"/api/v1/orders/{foreign.id}", headers=auth(staff))).status_code == 200
    assert (await client.get("/api/v1/orders", headers=auth(customer))).json()["total"] == 0
    assert (await client.get("/api/v1/orders", headers=auth(staff))).json()["total"] == 1


async def test_status_changes_map_errors(client, store, customer, staff, manager):
    product = await store.add_product("MUG-1", on_hand=10)
    created = await client.post(
        "/api/v1/orders",
        json={
            "delivery_mode": "pickup",
            "payment_method": "in_store",
            "items": [{"product_id": str(product), "quantity": 4}],
        },
        headers=auth(customer),
    )
    order_id = created.json()["id"]
    url = f"/api/v1/orders/{order_id}/status"

    assert (await client.patch(url, json={"status": "paid"}, headers=auth(customer))).status_code == 403
    assert (await client.patch(url, json={"status": "despachado"}, headers=auth(staff))).status_code == 403
    assert (await client.patch(url, json={"status": "lost"}, headers=auth(staff))).status_code == 400

    shipped = await client.patch(url, json={"status": "despachado"}, headers=auth(manager))
    assert shipped.status_code == 200
    assert shipped.json()["status"] == "shipped"
    assert [h["to_status"] for h in shipped.json()["status_history"]] == ["pending_payment", "shipped"]

    conflict = await client.patch(url, json={"status": "cancelled"}, headers=auth(manager))
    assert conflict.status_code == 409
    assert conflict.json()["details"] == {"current_status": "shipped", "target_status": "cancelled"}

    missing = await client.patch(f"/api/v1/orders/{uuid.uuid4()}/status", json={"status": "paid"},
                                 headers=auth(staff))
    assert missing.status_code == 404

    stock = await store.inventory(product)
    assert (stock.on_hand, stock.reserved) == (6, 0)


async def test_expiry_sweep_endpoint(client, store, session_factory, cache, customer, staff, manager):
    product = await store.add_product("MUG-1", on_hand=10)
    async with session_factory() as session:
        await OrderService(session, cache).create_order(
            customer_id=customer.id,
            delivery_mode="pickup",
            payment_method="online",
            items=[{"product_id": product, "quantity": 2}],
            now=datetime.now(timezone.utc) - timedelta(hours=1),
        )

    refused = await client.post("/api/v1/orders/expired/cancel", headers=auth(staff))
    assert refused.status_code == 403

    response = await client.post("/api/v1/orders/expired/cancel", json={"limit": 50}, headers=auth(manager))
    assert response.status_code == 200
    assert response.json() == {"cancelled": 1}
    assert (await store.inventory(product)).reserved == 0


# ====================
# Inventory
# ====================


async def test_inventory_endpoints(client, store, cache, customer, staff):
    product = await store.add_product("MUG-1", on_hand=10, reserved=3)

    assert (await client.get("/api/v1/inventory", headers=auth(customer))).status_code == 403

    listing = await client.get("/api/v1/inventory", headers=auth(staff))
    assert listing.status_code == 200
    assert listing.json()["items"][0]["available"] == 7

    corrected = await client.patch(
        f"/api/v1/inventory/{product}", json={"on_hand": 4, "note": "Breakage"}, headers=auth(staff),
    )
    assert corrected.status_code == 200
    assert corrected.json()["available"] == 1
    assert cache.invalidations == 1

    assert (await client.patch(
        f"/api/v1/inventory/{product}", json={"on_hand": -2}, headers=auth(staff),
    )).status_code == 400
    assert (await client.patch(
        f"/api/v1/inventory/{product}", json={"on_hand": 2}, headers=auth(customer),
    )).status_code == 403
    assert (await client.patch(
        f"/api/v1/inventory/{uuid.uuid4()}", json={"on_hand": 2}, headers=auth(staff),
    )).status_code == 404

    movements = await client.get(f"/api/v1/inventory/{product}/movements", headers=auth(staff))
    assert movements.status_code == 200
    assert [(m["movement_type"], m["quantity"]) for m in movements.json()["items"]] == [("adjustment", -6)]
