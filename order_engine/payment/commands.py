"""
Payment — 支払い台帳コマンド (CQRS Write 側)

支払いの試行と状態 (PENDING / COMPLETED / FAILED / REFUNDED) を記録する。
決済ゲートウェイには一切アクセスしない。ゲートウェイ側が
record_attempt / mark_completed / refund を呼ぶ。

COD は配達完了まで完了にできない（代金は配達時に回収）。
それ以外の支払い方法は CONFIRMED より前に完了している必要がある。

*_in_tx 関数は payments 表だけを更新し、注文行の更新と commit は
呼び出し側（状態機械・公開コマンド）に任せる。
"""

import logging
import time
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import PaymentAmountMismatch, PaymentStateError
from ..order import commands as order_commands
from ..order import event_store
from ..order.aggregate import OrderAggregate
from ..order.queries import load_order
from ..schema import utcnow_iso
from ..types import OrderStatus, PaymentMethod, PaymentStatus
from . import queries

logger = logging.getLogger(__name__)

CLOSED_ORDER_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.RETURNED})


def _amount_mismatch(order_number: str, expected: int, actual: int) -> PaymentAmountMismatch:
    logger.error(
        "Payment amount mismatch for order %s: expected=%d, actual=%d",
        order_number,
        expected,
        actual,
        extra={"order_number": order_number, "expected": expected, "actual": actual},
    )
    return PaymentAmountMismatch(order_number, expected, actual)


# ── トランザクション内ヘルパー ───────────────────


async def insert_attempt_in_tx(
    session: AsyncSession,
    agg: OrderAggregate,
    method: PaymentMethod,
    amount: int,
) -> dict:
    if amount != agg.final_amount:
        raise _amount_mismatch(agg.order_number, agg.final_amount, amount)

    payment_id = str(uuid4())
    now = utcnow_iso()
    await session.execute(
        text("""
            INSERT INTO payments
                (id, order_number, method, status, amount, transaction_id,
                 failure_reason, created_at, updated_at)
            VALUES
                (:id, :order_number, :method, 'PENDING', :amount, NULL, NULL, :now, :now)
        """),
        {
            "id": payment_id,
            "order_number": agg.order_number,
            "method": method.value,
            "amount": amount,
            "now": now,
        },
    )
    logger.info("Recorded %s payment attempt for order %s", method.value, agg.order_number)
    return await queries.get_payment(session, payment_id)


async def _set_status(
    session: AsyncSession,
    payment_id: str,
    status: PaymentStatus,
    transaction_id: str | None = None,
    failure_reason: str | None = None,
) -> None:
    await session.execute(
        text("""
            UPDATE payments
            SET status = :status,
                transaction_id = COALESCE(:transaction_id, transaction_id),
                failure_reason = COALESCE(:failure_reason, failure_reason),
                updated_at = :now
            WHERE id = :id
        """),
        {
            "status": status.value,
            "transaction_id": transaction_id,
            "failure_reason": failure_reason,
            "now": utcnow_iso(),
            "id": payment_id,
        },
    )


async def complete_in_tx(
    session: AsyncSession,
    agg: OrderAggregate,
    transaction_id: str,
) -> dict:
    """
    最新の PENDING 試行を COMPLETED にする。

    金額が注文の final_amount と一致しなければ整合性違反として中断する。
    """
    pending = await queries.latest_payment(session, agg.order_number, PaymentStatus.PENDING)
    if pending is None:
        raise PaymentStateError(f"Order {agg.order_number} has no pending payment")
    if pending["amount"] != agg.final_amount:
        raise _amount_mismatch(agg.order_number, agg.final_amount, pending["amount"])
    await _set_status(session, pending["id"], PaymentStatus.COMPLETED, transaction_id=transaction_id)
    logger.info("Payment completed for order %s (%s)", agg.order_number, transaction_id)
    return await queries.get_payment(session, pending["id"])


async def refund_in_tx(session: AsyncSession, agg: OrderAggregate) -> bool:
    """完了済みの支払いがあれば REFUNDED にする。返金の実行自体は外部の責務。"""
    completed = await queries.latest_payment(session, agg.order_number, PaymentStatus.COMPLETED)
    if completed is None:
        return False
    await _set_status(session, completed["id"], PaymentStatus.REFUNDED)
    logger.info("Payment refunded for order %s", agg.order_number)
    return True


async def void_pending_in_tx(session: AsyncSession, agg: OrderAggregate, reason: str) -> int:
    """キャンセル時に未完了の試行を FAILED にして、後から完了されないようにする。"""
    result = await session.execute(
        text("""
            UPDATE payments
            SET status = 'FAILED', failure_reason = :reason, updated_at = :now
            WHERE order_number = :order_number AND status = 'PENDING'
        """),
        {"reason": reason, "now": utcnow_iso(), "order_number": agg.order_number},
    )
    return result.rowcount


def cod_transaction_id() -> str:
    return f"COD{int(time.time() * 1000)}"


# ── 公開コマンド ─────────────────────────────────


async def _save_order_payment(
    session: AsyncSession,
    agg: OrderAggregate,
    changes: dict,
    event_type: str,
    event_data: dict,
) -> None:
    version = await order_commands.update_guarded(session, agg.order_number, agg.version, changes)
    await event_store.append_event(
        session, agg.order_number, event_type, event_data, actor="PAYMENT_GATEWAY", version=version
    )


async def record_attempt(
    session: AsyncSession,
    order_number: str,
    method: PaymentMethod,
    amount: int,
) -> dict:
    """
    支払い試行を PENDING で記録する

    amount が注文の final_amount と異なれば PaymentAmountMismatch。
    """
    try:
        agg = await load_order(session, order_number)
        if agg.status.is_terminal:
            raise PaymentStateError(f"Order {order_number} is {agg.status.value}")
        if agg.payment_status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            raise PaymentStateError(f"Order {order_number} is already paid")
        if await queries.latest_payment(session, order_number, PaymentStatus.PENDING):
            raise PaymentStateError(f"Order {order_number} already has a pending payment")

        payment = await insert_attempt_in_tx(session, agg, method, amount)
        await _save_order_payment(
            session,
            agg,
            {"payment_status": PaymentStatus.PENDING.value, "payment_method": method.value},
            "PaymentAttempted",
            {"payment_id": payment["id"], "method": method.value, "amount": amount},
        )
    except Exception:
        await session.rollback()
        raise
    await session.commit()
    return payment


async def mark_completed(
    session: AsyncSession,
    order_number: str,
    transaction_id: str,
) -> dict:
    try:
        agg = await load_order(session, order_number)
        if agg.status in CLOSED_ORDER_STATUSES:
            raise PaymentStateError(f"Order {order_number} is {agg.status.value}")
        if agg.payment_method is PaymentMethod.COD and agg.status is not OrderStatus.DELIVERED:
            raise PaymentStateError("Cash on delivery is collected when the order is delivered")

        payment = await complete_in_tx(session, agg, transaction_id)
        await _save_order_payment(
            session,
            agg,
            {"payment_status": PaymentStatus.COMPLETED.value},
            "PaymentCompleted",
            {"payment_id": payment["id"], "transaction_id": transaction_id},
        )
    except Exception:
        await session.rollback()
        raise
    await session.commit()
    return payment


async def mark_failed(session: AsyncSession, order_number: str, reason: str) -> dict:
    try:
        agg = await load_order(session, order_number)
        pending = await queries.latest_payment(session, order_number, PaymentStatus.PENDING)
        if pending is None:
            raise PaymentStateError(f"Order {order_number} has no pending payment")
        await _set_status(session, pending["id"], PaymentStatus.FAILED, failure_reason=reason)
        await _save_order_payment(
            session,
            agg,
            {"payment_status": PaymentStatus.FAILED.value},
            "PaymentFailed",
            {"payment_id": pending["id"], "reason": reason},
        )
    except Exception:
        await session.rollback()
        raise
    await session.commit()
    logger.info("Payment failed for order %s: %s", order_number, reason)
    return await queries.get_payment(session, pending["id"])


async def refund(session: AsyncSession, order_number: str) -> dict:
    """
    キャンセル・返品済み注文の完了済み支払いを返金扱いにする

    通常は状態機械が遷移と同時に実行するので、ここは再送用の入口。
    """
    try:
        agg = await load_order(session, order_number)
        if agg.status not in CLOSED_ORDER_STATUSES:
            raise PaymentStateError(f"Order {order_number} is {agg.status.value}")
        if not await refund_in_tx(session, agg):
            raise PaymentStateError(f"Order {order_number} has no completed payment")
        await _save_order_payment(
            session,
            agg,
            {"payment_status": PaymentStatus.REFUNDED.value},
            "PaymentRefunded",
            {},
        )
    except Exception:
        await session.rollback()
        raise
    await session.commit()
    return await queries.latest_payment(session, order_number, PaymentStatus.REFUNDED)
