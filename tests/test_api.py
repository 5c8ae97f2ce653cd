"""HTTP tests for the FastAPI application, driven through httpx.ASGITransport."""

from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from order_engine.main import app, get_catalog, get_checkout, get_redis, get_session
from tests.conftest import ADDRESS_ID, SELLER_ID, USER_ID, make_product

pytestmark = pytest.mark.sqlite


@pytest_asyncio.fixture
async def client(session_factory, catalog, orchestrator, redis) -> AsyncGenerator[httpx.AsyncClient, None]:
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_redis] = lambda: redis
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_checkout] = lambda: orchestrator
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://order-engine.test") as c:
        yield c
    app.dependency_overrides.clear()


async def _checkout(client, products, quantity=2, stock=10) -> dict:
    products["P1"] = make_product("P1", price=100, stock=stock)
    await client.post("/commands/inventory/P1/restock", json={"quantity": stock})
    await client.post(f"/commands/cart/{USER_ID}/items", json={"product_id": "P1", "quantity": quantity})
    resp = await client.post(
        "/commands/orders/checkout",
        json={"user_id": USER_ID, "address_id": ADDRESS_ID, "payment_method": "COD"},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client) -> None:
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


class TestCartEndpoints:
    @pytest.mark.asyncio
    async def test_add_and_read_cart(self, client, products) -> None:
        products["P1"] = make_product("P1", price=100, mrp=120, stock=5)

        resp = await client.post(f"/commands/cart/{USER_ID}/items", json={"product_id": "P1", "quantity": 2})
        assert resp.status_code == 200

        cart = (await client.get(f"/queries/cart/{USER_ID}")).json()
        assert cart["summary"]["subtotal"] == 200
        assert cart["summary"]["savings"] == 40

    @pytest.mark.asyncio
    async def test_unknown_product(self, client) -> None:
        resp = await client.post(f"/commands/cart/{USER_ID}/items", json={"product_id": "NOPE"})
        assert resp.status_code == 404
        assert resp.json()["code"] == "PRODUCT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_quantity_must_be_positive(self, client, products) -> None:
        products["P1"] = make_product("P1")
        resp = await client.put(f"/commands/cart/{USER_ID}/items/P1", json={"quantity": 0})
        assert resp.status_code == 422


class TestOrderEndpoints:
    @pytest.mark.asyncio
    async def test_checkout_and_lifecycle(self, client, products, redis) -> None:
        order = await _checkout(client, products)
        number = order["order_number"]
        assert order["order_status"] == "PENDING"
        assert order["final_amount"] == order["subtotal"] + order["shipping_fee"]

        allowed = (await client.get(f"/queries/orders/{number}/transitions", params={"actor": "SELLER"})).json()
        assert set(allowed["allowed"]) == {"CONFIRMED", "CANCELLED"}

        steps = [
            {"status": "CONFIRMED", "actor": "SELLER", "actor_id": SELLER_ID, "expected_version": 1},
            {"status": "PROCESSING", "actor": "SELLER", "actor_id": SELLER_ID},
            {"status": "SHIPPED", "actor": "SELLER", "actor_id": SELLER_ID, "delivery_partner_id": "partner-1"},
            {"status": "OUT_FOR_DELIVERY", "actor": "DELIVERY_PARTNER", "actor_id": "partner-1"},
            {"status": "DELIVERED", "actor": "DELIVERY_PARTNER", "actor_id": "partner-1"},
        ]
        for step in steps:
            resp = await client.post(f"/commands/orders/{number}/status", json=step)
            assert resp.status_code == 200, resp.text
            assert resp.json()["order_status"] == step["status"]

        detail = (await client.get(f"/queries/orders/{number}", params={"user_id": USER_ID})).json()
        assert detail["payment_status"] == "COMPLETED"
        assert [p["status"] for p in detail["payments"]] == ["COMPLETED"]

        stock = (await client.get("/queries/inventory/P1")).json()
        assert (stock["available"], stock["reserved"], stock["sold"]) == (8, 0, 2)

        history = (await client.get(f"/events/{number}")).json()
        assert len(history) == 6
        invoice = await client.get(f"/queries/orders/{number}/invoice", params={"user_id": USER_ID})
        assert invoice.status_code == 200

    @pytest.mark.asyncio
    async def test_rejected_checkout(self, client, products) -> None:
        products["P1"] = make_product("P1", price=100, stock=5)
        await client.post(f"/commands/cart/{USER_ID}/items", json={"product_id": "P1", "quantity": 3})
        products["P1"]["price"] = 120

        resp = await client.post(
            "/commands/orders/checkout",
            json={"user_id": USER_ID, "address_id": ADDRESS_ID, "payment_method": "UPI"},
        )

        assert resp.status_code == 409
        body = resp.json()
        assert body["code"] == "CHECKOUT_REJECTED"
        assert body["issues"][0]["reason"] == "PRICE_CHANGED"

    @pytest.mark.asyncio
    async def test_domain_errors_map_to_status_codes(self, client, products) -> None:
        order = await _checkout(client, products)
        number = order["order_number"]

        resp = await client.post(
            f"/commands/orders/{number}/status",
            json={"status": "SHIPPED", "actor": "SELLER", "actor_id": SELLER_ID},
        )
        assert resp.status_code == 422
        assert resp.json()["code"] == "INVALID_TRANSITION"

        resp = await client.post(
            f"/commands/orders/{number}/cancel",
            json={"actor": "CUSTOMER", "actor_id": "user-2"},
        )
        assert resp.status_code == 403

        resp = await client.post(
            f"/commands/orders/{number}/cancel",
            json={"actor": "CUSTOMER", "actor_id": USER_ID, "expected_version": 7},
        )
        assert resp.status_code == 409
        assert resp.json()["code"] == "CONFLICT"

        resp = await client.get("/queries/orders/PPT000000XXXX")
        assert resp.status_code == 404
        assert resp.json()["code"] == "ORDER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_customer_cancel(self, client, products, redis) -> None:
        order = await _checkout(client, products, quantity=3)

        resp = await client.post(
            f"/commands/orders/{order['order_number']}/cancel",
            json={"actor": "CUSTOMER", "actor_id": USER_ID, "reason": "ordered twice"},
        )

        assert resp.status_code == 200
        assert resp.json()["cancel_reason"] == "ordered twice"
        stock = (await client.get("/queries/inventory/P1")).json()
        assert (stock["available"], stock["reserved"]) == (10, 0)
        assert "OrderCancelled" in redis.event_types()


class TestOtherEndpoints:
    @pytest.mark.asyncio
    async def test_payment_methods(self, client) -> None:
        resp = await client.get("/queries/payments/methods")
        assert len(resp.json()) == 6

    @pytest.mark.asyncio
    async def test_unknown_stock(self, client) -> None:
        resp = await client.get("/queries/inventory/NOPE")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_create_coupon(self, client) -> None:
        resp = await client.post(
            "/commands/coupons",
            json={
                "code": "WELCOME",
                "discount_type": "FIXED",
                "value": 50,
                "valid_from": "2024-01-01T00:00:00+00:00",
                "valid_until": "2099-01-01T00:00:00+00:00",
            },
        )
        assert resp.status_code == 201
        assert resp.json()["used_count"] == 0

    @pytest.mark.asyncio
    async def test_duplicate_coupon_code(self, client) -> None:
        body = {
            "code": "TWICE",
            "discount_type": "FIXED",
            "value": 50,
            "valid_from": "2024-01-01T00:00:00+00:00",
            "valid_until": "2099-01-01T00:00:00+00:00",
        }
        assert (await client.post("/commands/coupons", json=body)).status_code == 201

        resp = await client.post("/commands/coupons", json=body)

        assert resp.status_code == 409
        assert resp.json()["code"] == "DUPLICATE_COUPON"

    @pytest.mark.asyncio
    async def test_coupon_without_offset_applies_at_checkout(self, client, products) -> None:
        resp = await client.post(
            "/commands/coupons",
            json={
                "code": "LOCALTIME",
                "discount_type": "FIXED",
                "value": 20,
                "valid_from": "2024-01-01T00:00:00",
                "valid_until": "2099-01-01T00:00:00",
            },
        )
        assert resp.status_code == 201
        products["P1"] = make_product("P1", price=100)
        await client.post("/commands/inventory/P1/restock", json={"quantity": 5})
        await client.post(f"/commands/cart/{USER_ID}/items", json={"product_id": "P1", "quantity": 1})

        resp = await client.post(
            "/commands/orders/checkout",
            json={
                "user_id": USER_ID,
                "address_id": ADDRESS_ID,
                "payment_method": "COD",
                "coupon_code": "LOCALTIME",
            },
        )

        assert resp.status_code == 201, resp.text
        assert resp.json()["discount"] == 20
