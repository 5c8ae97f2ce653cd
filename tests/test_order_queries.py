"""Tests for order read models, dashboards and invoices."""

import pytest
from sqlalchemy import text

from order_engine.errors import InvoiceNotAvailable, MonetaryInvariantViolation, OrderNotFound
from order_engine.fulfillment.commands import transition
from order_engine.order import queries
from order_engine.types import Actor, OrderStatus
from tests.conftest import SELLER_ID, USER_ID

pytestmark = pytest.mark.sqlite


async def _deliver(session, redis, order_number, partner_id="partner-1"):
    for target, actor, actor_id, extra in [
        (OrderStatus.CONFIRMED, Actor.SELLER, SELLER_ID, {}),
        (OrderStatus.PROCESSING, Actor.SELLER, SELLER_ID, {}),
        (OrderStatus.SHIPPED, Actor.SELLER, SELLER_ID, {"delivery_partner_id": partner_id}),
        (OrderStatus.OUT_FOR_DELIVERY, Actor.DELIVERY_PARTNER, partner_id, {}),
        (OrderStatus.DELIVERED, Actor.DELIVERY_PARTNER, partner_id, {}),
    ]:
        await transition(session, redis, order_number, target, actor, actor_id, **extra)


class TestCustomerQueries:
    @pytest.mark.asyncio
    async def test_pagination(self, session, place_order) -> None:
        placed = [await place_order(quantity=1) for _ in range(3)]

        first = await queries.list_user_orders(session, USER_ID, page=1, limit=2)
        second = await queries.list_user_orders(session, USER_ID, page=2, limit=2)

        assert first["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
        assert len(first["orders"]) == 2
        assert len(second["orders"]) == 1
        listed = [o["order_number"] for o in first["orders"] + second["orders"]]
        assert listed == [o.order_number for o in reversed(placed)]

    @pytest.mark.asyncio
    async def test_orders_are_private_to_their_customer(self, session, place_order) -> None:
        order = await place_order()

        with pytest.raises(OrderNotFound):
            await queries.get_order(session, order.order_number, "user-2")
        assert (await queries.list_user_orders(session, "user-2"))["orders"] == []

    @pytest.mark.asyncio
    async def test_stock_flag_is_not_exposed(self, session, place_order) -> None:
        order = await place_order()
        stored = await queries.get_order(session, order.order_number, USER_ID)
        assert "stock_state" not in stored
        assert stored["order_status"] == "PENDING"


class TestSellerAndDeliveryViews:
    @pytest.mark.asyncio
    async def test_seller_dashboard(self, session, redis, place_order) -> None:
        pending = await place_order(quantity=1)
        confirmed = await place_order(quantity=2)
        cancelled = await place_order(quantity=3)
        await transition(session, redis, confirmed.order_number, OrderStatus.CONFIRMED, Actor.SELLER, SELLER_ID)
        await transition(session, redis, cancelled.order_number, OrderStatus.CANCELLED, Actor.SELLER, SELLER_ID)

        dashboard = await queries.seller_dashboard(session, SELLER_ID)

        assert dashboard == {
            "total_orders": 3,
            "pending_orders": 1,
            "total_revenue": confirmed.subtotal,
        }
        only_pending = await queries.list_seller_orders(session, SELLER_ID, OrderStatus.PENDING)
        assert [o["order_number"] for o in only_pending["orders"]] == [pending.order_number]

    @pytest.mark.asyncio
    async def test_delivery_dashboard(self, session, redis, place_order) -> None:
        in_transit = await place_order(quantity=1)
        delivered = await place_order(quantity=1)
        await _deliver(session, redis, delivered.order_number)
        for target in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING):
            await transition(session, redis, in_transit.order_number, target, Actor.SELLER, SELLER_ID)
        await transition(
            session,
            redis,
            in_transit.order_number,
            OrderStatus.SHIPPED,
            Actor.SELLER,
            SELLER_ID,
            delivery_partner_id="partner-1",
        )

        assert await queries.delivery_dashboard(session, "partner-1") == {
            "total_orders": 2,
            "pending_orders": 1,
            "delivered_orders": 1,
        }
        assigned = await queries.list_partner_orders(session, "partner-1", OrderStatus.SHIPPED)
        assert [o["order_number"] for o in assigned["orders"]] == [in_transit.order_number]


class TestInvoice:
    @pytest.mark.asyncio
    async def test_invoice_only_after_delivery(self, session, redis, place_order) -> None:
        order = await place_order()

        with pytest.raises(InvoiceNotAvailable):
            await queries.invoice_snapshot(session, order.order_number, USER_ID)

        await _deliver(session, redis, order.order_number)
        invoice = await queries.invoice_snapshot(session, order.order_number, USER_ID)
        assert invoice["final_amount"] == order.final_amount
        assert invoice["payment_status"] == "COMPLETED"
        assert invoice["address"]["city"] == "Bengaluru"


class TestMonetaryInvariant:
    @pytest.mark.asyncio
    async def test_tampered_totals_are_detected_on_read(self, session, place_order) -> None:
        order = await place_order()
        await session.execute(
            text("UPDATE orders SET final_amount = final_amount + 1 WHERE order_number = :n"),
            {"n": order.order_number},
        )
        await session.commit()

        with pytest.raises(MonetaryInvariantViolation):
            await queries.load_order(session, order.order_number)
