"""
Inventory — 在庫台帳コマンド (Stock Ledger, CQRS Write 側)

在庫の引き当て(reserve)・解放(release)・確定(commit)・返品戻し(return)。
各操作は 1 本の条件付き UPDATE で行う（compare-and-swap）。
読み込んでから書き込む方式は使わないので、同一商品への同時呼び出しでも
available が負になったり二重計上されたりしない。

ここの関数は commit しない。呼び出し側（チェックアウト・状態機械）の
トランザクション内で実行し、注文の更新と同時に確定させる。

stock_movements に (order_number, product_id, kind) を記録し、
同じ注文・商品への同じ操作の繰り返しを no-op にする。
"""

import logging
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import StockLedgerViolation
from ..schema import utcnow_iso

logger = logging.getLogger(__name__)

RESTOCK = "RESTOCK"
RESERVE = "RESERVE"
RELEASE = "RELEASE"
COMMIT = "COMMIT"
RETURN = "RETURN"


class ReserveResult(BaseModel):
    """引き当て結果。在庫不足は例外ではなく通常の結果として返す。"""
    success: bool
    product_id: str
    requested: int
    available: int | None = None
    reason: str = ""


def _check_quantity(quantity: int) -> None:
    if quantity < 1:
        raise ValueError(f"quantity must be positive, got {quantity}")


async def _append_movement(
    session: AsyncSession,
    product_id: str,
    order_number: str | None,
    kind: str,
    quantity: int,
) -> None:
    await session.execute(
        text("""
            INSERT INTO stock_movements
                (id, product_id, order_number, kind, quantity, created_at)
            VALUES
                (:id, :product_id, :order_number, :kind, :qty, :now)
        """),
        {
            "id": str(uuid4()),
            "product_id": product_id,
            "order_number": order_number,
            "kind": kind,
            "qty": quantity,
            "now": utcnow_iso(),
        },
    )


async def _movement_exists(
    session: AsyncSession, order_number: str, product_id: str, kind: str
) -> bool:
    result = await session.execute(
        text("""
            SELECT 1 FROM stock_movements
            WHERE order_number = :order_number AND product_id = :product_id AND kind = :kind
        """),
        {"order_number": order_number, "product_id": product_id, "kind": kind},
    )
    return result.first() is not None


def _violation(order_number: str, product_id: str, quantity: int, message: str) -> StockLedgerViolation:
    logger.error(
        "Stock ledger invariant violation: %s",
        message,
        extra={"order_number": order_number, "product_id": product_id, "quantity": quantity},
    )
    return StockLedgerViolation(order_number, product_id, message)


async def restock(session: AsyncSession, product_id: str, quantity: int) -> None:
    """
    在庫を追加する（在庫がシステムに入る唯一の経路）

    商品行が無ければ作成する。
    """
    _check_quantity(quantity)
    now = utcnow_iso()
    await session.execute(
        text("""
            INSERT INTO stock_ledger (product_id, available, reserved, sold, updated_at)
            VALUES (:id, :qty, 0, 0, :now)
            ON CONFLICT (product_id) DO UPDATE SET
                available = stock_ledger.available + :qty,
                updated_at = :now
        """),
        {"id": product_id, "qty": quantity, "now": now},
    )
    await _append_movement(session, product_id, None, RESTOCK, quantity)
    logger.info("Restocked product %s by %d", product_id, quantity)


async def reserve(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    order_number: str,
) -> ReserveResult:
    """
    在庫引き当て

    available >= quantity の場合のみ available を減らし reserved を増やす。
    条件は UPDATE の WHERE 句で評価されるので行ロックの中で判定される。
    """
    _check_quantity(quantity)
    result = await session.execute(
        text("""
            UPDATE stock_ledger
            SET available = available - :qty,
                reserved = reserved + :qty,
                updated_at = :now
            WHERE product_id = :id AND available >= :qty
        """),
        {"qty": quantity, "now": utcnow_iso(), "id": product_id},
    )
    if result.rowcount == 1:
        await _append_movement(session, product_id, order_number, RESERVE, quantity)
        logger.info("Reserved %d of %s for order %s", quantity, product_id, order_number)
        return ReserveResult(success=True, product_id=product_id, requested=quantity)

    row = (
        await session.execute(
            text("SELECT available FROM stock_ledger WHERE product_id = :id"),
            {"id": product_id},
        )
    ).first()
    available = row.available if row else 0
    logger.info(
        "Reservation refused for %s: requested=%d, available=%d",
        product_id,
        quantity,
        available,
    )
    return ReserveResult(
        success=False,
        product_id=product_id,
        requested=quantity,
        available=available,
        reason=f"Insufficient stock: requested={quantity}, available={available}",
    )


async def release(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    order_number: str,
) -> bool:
    """
    引き当て解放（キャンセル・チェックアウト失敗時の補償）

    同じ注文・商品で既に解放済みなら何もせず False を返す。
    """
    _check_quantity(quantity)
    if await _movement_exists(session, order_number, product_id, RELEASE):
        logger.warning("Release of %s for order %s already applied", product_id, order_number)
        return False
    if await _movement_exists(session, order_number, product_id, COMMIT):
        raise _violation(order_number, product_id, quantity, "release after commit")

    result = await session.execute(
        text("""
            UPDATE stock_ledger
            SET reserved = reserved - :qty,
                available = available + :qty,
                updated_at = :now
            WHERE product_id = :id AND reserved >= :qty
        """),
        {"qty": quantity, "now": utcnow_iso(), "id": product_id},
    )
    if result.rowcount != 1:
        raise _violation(order_number, product_id, quantity, "release exceeds reserved stock")
    await _append_movement(session, product_id, order_number, RELEASE, quantity)
    logger.info("Released %d of %s for order %s", quantity, product_id, order_number)
    return True


async def commit(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    order_number: str,
) -> bool:
    """
    引き当て確定（配達完了で販売済みにする）

    reserved から sold へ移す。以後 available の計算からは外れる。
    """
    _check_quantity(quantity)
    if await _movement_exists(session, order_number, product_id, COMMIT):
        logger.warning("Commit of %s for order %s already applied", product_id, order_number)
        return False
    if await _movement_exists(session, order_number, product_id, RELEASE):
        raise _violation(order_number, product_id, quantity, "commit after release")

    result = await session.execute(
        text("""
            UPDATE stock_ledger
            SET reserved = reserved - :qty,
                sold = sold + :qty,
                updated_at = :now
            WHERE product_id = :id AND reserved >= :qty
        """),
        {"qty": quantity, "now": utcnow_iso(), "id": product_id},
    )
    if result.rowcount != 1:
        raise _violation(order_number, product_id, quantity, "commit exceeds reserved stock")
    await _append_movement(session, product_id, order_number, COMMIT, quantity)
    logger.info("Committed %d of %s for order %s", quantity, product_id, order_number)
    return True


async def record_return(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    order_number: str,
) -> bool:
    """
    返品の補償エントリ

    commit を取り消すのではなく RETURN 移動を追記して sold から available へ戻す。
    """
    _check_quantity(quantity)
    if await _movement_exists(session, order_number, product_id, RETURN):
        logger.warning("Return of %s for order %s already applied", product_id, order_number)
        return False
    if not await _movement_exists(session, order_number, product_id, COMMIT):
        raise _violation(order_number, product_id, quantity, "return without commit")

    result = await session.execute(
        text("""
            UPDATE stock_ledger
            SET sold = sold - :qty,
                available = available + :qty,
                updated_at = :now
            WHERE product_id = :id AND sold >= :qty
        """),
        {"qty": quantity, "now": utcnow_iso(), "id": product_id},
    )
    if result.rowcount != 1:
        raise _violation(order_number, product_id, quantity, "return exceeds sold stock")
    await _append_movement(session, product_id, order_number, RETURN, quantity)
    logger.info("Returned %d of %s for order %s", quantity, product_id, order_number)
    return True
