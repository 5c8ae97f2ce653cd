"""
Order — クエリハンドラ (CQRS Read 側)

注文は読み込むたびに金額の不変条件を検証する。
"""

import math

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvoiceNotAvailable, OrderNotFound
from ..types import OrderStatus
from .aggregate import OrderAggregate

REVENUE_STATUSES = (
    OrderStatus.CONFIRMED.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.OUT_FOR_DELIVERY.value,
    OrderStatus.DELIVERED.value,
)


async def _load_items(session: AsyncSession, order_number: str):
    result = await session.execute(
        text("""
            SELECT * FROM order_items
            WHERE order_number = :order_number
            ORDER BY product_id
        """),
        {"order_number": order_number},
    )
    return result.fetchall()


async def _hydrate(session: AsyncSession, rows) -> list[OrderAggregate]:
    orders = []
    for row in rows:
        agg = OrderAggregate.from_row(row, await _load_items(session, row.order_number))
        agg.verify_totals()
        orders.append(agg)
    return orders


async def load_order(
    session: AsyncSession,
    order_number: str,
    user_id: str | None = None,
) -> OrderAggregate:
    """
    注文を集約として読み込む。user_id を渡すとその顧客の注文に限定する。
    """
    result = await session.execute(
        text("SELECT * FROM orders WHERE order_number = :order_number"),
        {"order_number": order_number},
    )
    row = result.fetchone()
    if not row or (user_id is not None and row.user_id != user_id):
        raise OrderNotFound(order_number)
    (agg,) = await _hydrate(session, [row])
    return agg


async def get_order(
    session: AsyncSession, order_number: str, user_id: str | None = None
) -> dict:
    return (await load_order(session, order_number, user_id)).to_dict()


def _page(orders: list[OrderAggregate], total: int, page: int, limit: int) -> dict:
    return {
        "orders": [agg.to_dict() for agg in orders],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if limit else 0,
        },
    }


async def _list_where(
    session: AsyncSession,
    where: str,
    params: dict,
    page: int,
    limit: int,
) -> dict:
    total = (
        await session.execute(text(f"SELECT COUNT(*) FROM orders WHERE {where}"), params)
    ).scalar_one()
    result = await session.execute(
        text(f"""
            SELECT * FROM orders
            WHERE {where}
            ORDER BY created_at DESC, order_number DESC
            LIMIT :limit OFFSET :offset
        """),
        {**params, "limit": limit, "offset": (page - 1) * limit},
    )
    return _page(await _hydrate(session, result.fetchall()), total, page, limit)


async def list_user_orders(
    session: AsyncSession, user_id: str, page: int = 1, limit: int = 10
) -> dict:
    """顧客の注文一覧（新しい順、ページング付き）"""
    return await _list_where(session, "user_id = :user_id", {"user_id": user_id}, page, limit)


async def list_seller_orders(
    session: AsyncSession,
    seller_id: str,
    status: OrderStatus | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    where = "seller_id = :seller_id"
    params: dict = {"seller_id": seller_id}
    if status is not None:
        where += " AND order_status = :status"
        params["status"] = status.value
    return await _list_where(session, where, params, page, limit)


async def list_partner_orders(
    session: AsyncSession,
    partner_id: str,
    status: OrderStatus | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    where = "delivery_partner_id = :partner_id"
    params: dict = {"partner_id": partner_id}
    if status is not None:
        where += " AND order_status = :status"
        params["status"] = status.value
    return await _list_where(session, where, params, page, limit)


async def seller_dashboard(session: AsyncSession, seller_id: str) -> dict:
    result = await session.execute(
        text("""
            SELECT
                COUNT(*) AS total_orders,
                COALESCE(SUM(CASE WHEN order_status = 'PENDING' THEN 1 ELSE 0 END), 0)
                    AS pending_orders
            FROM orders
            WHERE seller_id = :seller_id
        """),
        {"seller_id": seller_id},
    )
    counts = result.one()
    revenue = (
        await session.execute(
            text(f"""
                SELECT COALESCE(SUM(subtotal), 0)
                FROM orders
                WHERE seller_id = :seller_id
                  AND order_status IN ({", ".join(f"'{s}'" for s in REVENUE_STATUSES)})
            """),
            {"seller_id": seller_id},
        )
    ).scalar_one()
    return {
        "total_orders": counts.total_orders,
        "pending_orders": counts.pending_orders,
        "total_revenue": int(revenue),
    }


async def delivery_dashboard(session: AsyncSession, partner_id: str) -> dict:
    result = await session.execute(
        text("""
            SELECT
                COUNT(*) AS total_orders,
                COALESCE(SUM(CASE WHEN order_status IN ('SHIPPED', 'OUT_FOR_DELIVERY')
                    THEN 1 ELSE 0 END), 0) AS pending_orders,
                COALESCE(SUM(CASE WHEN order_status = 'DELIVERED' THEN 1 ELSE 0 END), 0)
                    AS delivered_orders
            FROM orders
            WHERE delivery_partner_id = :partner_id
        """),
        {"partner_id": partner_id},
    )
    row = result.one()
    return {
        "total_orders": row.total_orders,
        "pending_orders": row.pending_orders,
        "delivered_orders": row.delivered_orders,
    }


async def invoice_snapshot(session: AsyncSession, order_number: str, user_id: str) -> dict:
    """請求書生成用の読み取り専用スナップショット（配達済みの注文のみ）"""
    agg = await load_order(session, order_number, user_id)
    if agg.status is not OrderStatus.DELIVERED:
        raise InvoiceNotAvailable(order_number)
    return agg.to_dict()
