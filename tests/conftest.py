"""
Shared pytest fixtures for the order engine tests.

- SQLite database file per test (aiosqlite), schema created up front
- Recording Pub/Sub double for emitted domain events
- Catalog and address-book collaborators served through httpx.MockTransport
- Helpers to seed stock, fill a cart and place an order
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from order_engine import schema
from order_engine.cart import commands as cart_commands
from order_engine.checkout.orchestrator import CheckoutOrchestrator
from order_engine.clients import AddressBook, CatalogClient
from order_engine.inventory import commands as ledger
from order_engine.order.aggregate import OrderAggregate
from order_engine.payment import commands as payment_commands
from order_engine.types import PaymentMethod

CATALOG_URL = "http://catalog.test"
USER_URL = "http://users.test"

SELLER_ID = "seller-1"
USER_ID = "user-1"
ADDRESS_ID = "addr-1"


class RecordingRedis:
    """Captures everything published on Pub/Sub channels."""

    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 1

    def event_types(self) -> list[str]:
        return [payload["event_type"] for _, payload in self.published]


def make_product(
    product_id: str,
    price: int = 100,
    stock: int = 10,
    seller_id: str = SELLER_ID,
    mrp: int | None = None,
    is_active: bool = True,
) -> dict:
    return {
        "id": product_id,
        "name": f"Product {product_id}",
        "price": price,
        "mrp": mrp if mrp is not None else price + 20,
        "stock": stock,
        "seller_id": seller_id,
        "is_active": is_active,
    }


@pytest.fixture
def products() -> dict[str, dict]:
    """Mutable catalog contents served by the mock catalog service."""
    return {}


@pytest.fixture
def addresses() -> dict[tuple[str, str], dict]:
    return {
        (USER_ID, ADDRESS_ID): {
            "id": ADDRESS_ID,
            "name": "Asha Rao",
            "line1": "12 MG Road",
            "city": "Bengaluru",
            "pincode": "560001",
        },
        ("user-2", ADDRESS_ID): {
            "id": ADDRESS_ID,
            "name": "Ravi Kumar",
            "line1": "4 Park Street",
            "city": "Kolkata",
            "pincode": "700016",
        },
    }


@pytest_asyncio.fixture
async def http_client(products, addresses) -> AsyncGenerator[httpx.AsyncClient, None]:
    def handler(request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        if request.url.host == "catalog.test" and parts[:2] == ["queries", "products"]:
            product = products.get(parts[2])
            if product is None:
                return httpx.Response(404, json={"detail": "Product not found"})
            return httpx.Response(200, json=product)
        if request.url.host == "users.test" and parts[:2] == ["queries", "users"]:
            address = addresses.get((parts[2], parts[4]))
            if address is None:
                return httpx.Response(404, json={"detail": "Address not found"})
            return httpx.Response(200, json=address)
        return httpx.Response(500)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield client


@pytest.fixture
def catalog(http_client) -> CatalogClient:
    return CatalogClient(CATALOG_URL, http_client)


@pytest.fixture
def address_book(http_client) -> AddressBook:
    return AddressBook(USER_URL, http_client)


@pytest.fixture
def redis() -> RecordingRedis:
    return RecordingRedis()


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await schema.create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def orchestrator(catalog, address_book, redis) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(catalog, address_book, redis)


@pytest.fixture
def stock(session_factory, products):
    """Register a product in the catalog and put units into the ledger."""

    async def _stock(product_id: str, quantity: int = 10, **product_fields) -> dict:
        products[product_id] = make_product(product_id, stock=quantity, **product_fields)
        async with session_factory() as s:
            await ledger.restock(s, product_id, quantity)
            await s.commit()
        return products[product_id]

    return _stock


@pytest.fixture
def place_order(session_factory, catalog, orchestrator, stock, products):
    """Stock a product, add it to a cart and check out."""

    async def _place(
        product_id: str = "P1",
        quantity: int = 2,
        price: int = 100,
        stock_quantity: int = 10,
        payment_method: PaymentMethod = PaymentMethod.COD,
        user_id: str = USER_ID,
        pay: bool = False,
    ) -> OrderAggregate:
        if product_id not in products:
            await stock(product_id, stock_quantity, price=price)
        async with session_factory() as s:
            await cart_commands.add_item(s, catalog, user_id, product_id, quantity)
            result = await orchestrator.execute(s, user_id, ADDRESS_ID, payment_method)
            assert isinstance(result, OrderAggregate), result
            if pay:
                await payment_commands.mark_completed(s, result.order_number, "TXN-1")
        return result

    return _place
