"""
Cart — クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


def _line(row) -> dict:
    return {
        "user_id": row.user_id,
        "product_id": row.product_id,
        "quantity": row.quantity,
        "unit_price": row.unit_price,
        "unit_mrp": row.unit_mrp,
        "line_total": row.unit_price * row.quantity,
        "updated_at": row.updated_at,
    }


async def get_line(session: AsyncSession, user_id: str, product_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM cart_items WHERE user_id = :user_id AND product_id = :product_id"),
        {"user_id": user_id, "product_id": product_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _line(row)


async def list_lines(session: AsyncSession, user_id: str) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM cart_items WHERE user_id = :user_id ORDER BY created_at ASC, product_id"),
        {"user_id": user_id},
    )
    return [_line(row) for row in result.fetchall()]


async def get_cart(session: AsyncSession, user_id: str) -> dict:
    """カートと集計値（小計・MRP 合計・割引額・総数量）"""
    lines = await list_lines(session, user_id)
    subtotal = sum(line["line_total"] for line in lines)
    mrp_total = sum(line["unit_mrp"] * line["quantity"] for line in lines)
    return {
        "user_id": user_id,
        "items": lines,
        "summary": {
            "subtotal": subtotal,
            "mrp_total": mrp_total,
            "savings": mrp_total - subtotal,
            "total_quantity": sum(line["quantity"] for line in lines),
            "item_count": len(lines),
        },
    }
