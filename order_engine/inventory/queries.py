"""
Inventory — クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


def _stock_row(row) -> dict:
    return {
        "product_id": row.product_id,
        "available": row.available,
        "reserved": row.reserved,
        "sold": row.sold,
        "updated_at": row.updated_at,
    }


async def get_stock(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM stock_ledger WHERE product_id = :id"),
        {"id": product_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _stock_row(row)


async def list_stock(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM stock_ledger ORDER BY product_id"),
    )
    return [_stock_row(row) for row in result.fetchall()]


async def list_movements(session: AsyncSession, product_id: str) -> list[dict]:
    """在庫移動ジャーナル（監査証跡）"""
    result = await session.execute(
        text("""
            SELECT product_id, order_number, kind, quantity, created_at
            FROM stock_movements
            WHERE product_id = :id
            ORDER BY created_at ASC
        """),
        {"id": product_id},
    )
    return [
        {
            "product_id": row.product_id,
            "order_number": row.order_number,
            "kind": row.kind,
            "quantity": row.quantity,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]


async def total_restocked(session: AsyncSession, product_id: str) -> int:
    """
    これまでに追加された在庫の総数。

    available + reserved + sold はこの値と常に一致する。
    """
    result = await session.execute(
        text("""
            SELECT COALESCE(SUM(quantity), 0) AS total
            FROM stock_movements
            WHERE product_id = :id AND kind = 'RESTOCK'
        """),
        {"id": product_id},
    )
    return int(result.scalar_one())
