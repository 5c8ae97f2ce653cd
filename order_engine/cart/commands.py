"""
Cart — カートコマンド (CQRS Write 側)

カートは参考情報であり拘束力はない。在庫は引き当てず、
カタログの在庫上限で数量を丸めるだけ。価格は追加時の値を保存し、
チェックアウト時に再検証する。

カートはユーザーごとに独立しているのでユーザー間のロックは不要。
"""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..clients import CatalogClient
from ..errors import CartItemNotFound, InsufficientStock, ProductNotFound
from ..schema import utcnow_iso
from . import queries

logger = logging.getLogger(__name__)


async def add_item(
    session: AsyncSession,
    catalog: CatalogClient,
    user_id: str,
    product_id: str,
    quantity: int = 1,
) -> dict:
    """
    カートに商品を追加する（既にあれば数量を加算）

    1. カタログから現在の価格・在庫上限を取得
    2. 合計数量を在庫上限で丸める
    3. カート行を UPSERT
    """
    if quantity < 1:
        raise ValueError("quantity must be at least 1")

    product = await catalog.get_product(product_id)
    if product is None or not product.is_active:
        raise ProductNotFound(product_id)
    if product.stock < 1:
        raise InsufficientStock(product_id, quantity, 0)

    existing = await queries.get_line(session, user_id, product_id)
    wanted = quantity + (existing["quantity"] if existing else 0)
    new_quantity = min(wanted, product.stock)
    if new_quantity < wanted:
        logger.info(
            "Clamped cart quantity for %s/%s from %d to %d",
            user_id,
            product_id,
            wanted,
            new_quantity,
        )

    now = utcnow_iso()
    if existing:
        await session.execute(
            text("""
                UPDATE cart_items
                SET quantity = :qty, unit_price = :price, unit_mrp = :mrp, updated_at = :now
                WHERE user_id = :user_id AND product_id = :product_id
            """),
            {
                "qty": new_quantity,
                "price": product.price,
                "mrp": product.mrp,
                "now": now,
                "user_id": user_id,
                "product_id": product_id,
            },
        )
    else:
        await session.execute(
            text("""
                INSERT INTO cart_items
                    (user_id, product_id, quantity, unit_price, unit_mrp, created_at, updated_at)
                VALUES
                    (:user_id, :product_id, :qty, :price, :mrp, :now, :now)
            """),
            {
                "user_id": user_id,
                "product_id": product_id,
                "qty": new_quantity,
                "price": product.price,
                "mrp": product.mrp,
                "now": now,
            },
        )
    await session.commit()
    return await queries.get_line(session, user_id, product_id)


async def update_quantity(
    session: AsyncSession,
    user_id: str,
    product_id: str,
    quantity: int,
) -> dict:
    if quantity < 1:
        raise ValueError("quantity must be at least 1")
    result = await session.execute(
        text("""
            UPDATE cart_items
            SET quantity = :qty, updated_at = :now
            WHERE user_id = :user_id AND product_id = :product_id
        """),
        {"qty": quantity, "now": utcnow_iso(), "user_id": user_id, "product_id": product_id},
    )
    if result.rowcount == 0:
        await session.rollback()
        raise CartItemNotFound(product_id)
    await session.commit()
    return await queries.get_line(session, user_id, product_id)


async def remove_item(session: AsyncSession, user_id: str, product_id: str) -> None:
    result = await session.execute(
        text("DELETE FROM cart_items WHERE user_id = :user_id AND product_id = :product_id"),
        {"user_id": user_id, "product_id": product_id},
    )
    if result.rowcount == 0:
        await session.rollback()
        raise CartItemNotFound(product_id)
    await session.commit()


async def clear(session: AsyncSession, user_id: str) -> int:
    """カートを空にする"""
    result = await session.execute(
        text("DELETE FROM cart_items WHERE user_id = :user_id"),
        {"user_id": user_id},
    )
    await session.commit()
    return result.rowcount


async def take_lines(session: AsyncSession, user_id: str, lines: list[tuple[str, int]]) -> bool:
    """
    チェックアウトで読んだカート行だけを削除する（commit しない）

    (product_id, quantity) が読んだ時点のまま残っている行だけを消す。
    既に消えた行や数量が変わった行があれば False を返し、
    呼び出し側はトランザクションをロールバックする。
    後から追加された行はカートに残る。
    """
    for product_id, quantity in sorted(lines):
        result = await session.execute(
            text("""
                DELETE FROM cart_items
                WHERE user_id = :user_id AND product_id = :product_id AND quantity = :qty
            """),
            {"user_id": user_id, "product_id": product_id, "qty": quantity},
        )
        if result.rowcount != 1:
            logger.info("Cart line %s/%s changed during checkout", user_id, product_id)
            return False
    return True
