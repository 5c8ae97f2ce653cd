"""
Fulfillment — 状態機械コマンド

顧客・販売者・配送パートナーからのステータス更新要求を検証して適用する。
在庫の解放・確定、返金などの副作用は状態機械自身が持ち、
ステータス変更と同じトランザクションで実行する。
UI 層から別呼び出しで後追いしないので、部分失敗で副作用が抜け落ちない。

  1. 注文を読み込み、期待 version と参加者を確認
  2. 遷移表で検証（不正なら状態を変えずにエラー）
  3. version 条件付き UPDATE で注文の version を取得（競合なら Conflict）
  4. 副作用（在庫台帳・支払い台帳）を実行し、結果を注文行へ書き戻す
  5. 履歴を追記して commit
  6. コミット後にイベントを発行
"""

import logging
from datetime import datetime, timedelta

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..errors import (
    Conflict,
    NotOrderParticipant,
    PaymentStateError,
    ReturnWindowClosed,
    StockLedgerViolation,
)
from ..events import DomainEvent, OrderCancelled, OrderStatusChanged
from ..inventory import commands as ledger
from ..order import commands as order_commands
from ..order import event_store
from ..order.aggregate import OrderAggregate
from ..order.queries import load_order
from ..payment import commands as payments
from ..payment import queries as payment_queries
from ..publisher import publish_all
from ..schema import utcnow
from ..types import Actor, OrderStatus, PaymentMethod, PaymentStatus, StockState
from . import transitions
from .transitions import Effect

logger = logging.getLogger(__name__)


def _check_participant(agg: OrderAggregate, actor: Actor, actor_id: str) -> None:
    participant = {
        Actor.CUSTOMER: agg.user_id,
        Actor.SELLER: agg.seller_id,
        Actor.DELIVERY_PARTNER: agg.delivery_partner_id,
    }[actor]
    if participant is None or participant != actor_id:
        raise NotOrderParticipant(agg.order_number, actor_id)


def _check_return_window(agg: OrderAggregate) -> None:
    delivered_at = datetime.fromisoformat(agg.delivered_at) if agg.delivered_at else None
    window = timedelta(days=config.RETURN_WINDOW_DAYS)
    if delivered_at is None or utcnow() > delivered_at + window:
        raise ReturnWindowClosed(agg.order_number)


# ── 在庫の副作用（注文単位のフラグで冪等） ───────


async def _release_stock(session: AsyncSession, agg: OrderAggregate) -> None:
    if agg.stock_state is StockState.RELEASED:
        logger.warning("Stock for order %s already released", agg.order_number)
        return
    if agg.stock_state is not StockState.RESERVED:
        logger.error(
            "Refusing to release stock for order %s in state %s",
            agg.order_number,
            agg.stock_state.value,
            extra={"order_number": agg.order_number, "stock_state": agg.stock_state.value},
        )
        raise StockLedgerViolation(agg.order_number, "*", "release of non-reserved stock")
    for line in agg.items:
        await ledger.release(session, line.product_id, line.quantity, agg.order_number)


async def _commit_stock(session: AsyncSession, agg: OrderAggregate) -> None:
    if agg.stock_state is StockState.COMMITTED:
        logger.warning("Stock for order %s already committed", agg.order_number)
        return
    if agg.stock_state is not StockState.RESERVED:
        logger.error(
            "Refusing to commit stock for order %s in state %s",
            agg.order_number,
            agg.stock_state.value,
            extra={"order_number": agg.order_number, "stock_state": agg.stock_state.value},
        )
        raise StockLedgerViolation(agg.order_number, "*", "commit of non-reserved stock")
    for line in agg.items:
        await ledger.commit(session, line.product_id, line.quantity, agg.order_number)


async def _return_stock(session: AsyncSession, agg: OrderAggregate) -> None:
    if agg.stock_state is not StockState.COMMITTED:
        logger.error(
            "Refusing to return stock for order %s in state %s",
            agg.order_number,
            agg.stock_state.value,
            extra={"order_number": agg.order_number, "stock_state": agg.stock_state.value},
        )
        raise StockLedgerViolation(agg.order_number, "*", "return of uncommitted stock")
    for line in agg.items:
        await ledger.record_return(session, line.product_id, line.quantity, agg.order_number)


# ── 遷移ごとの副作用 ─────────────────────────────


async def _apply_effect(
    session: AsyncSession,
    agg: OrderAggregate,
    effect: Effect | None,
    target: OrderStatus,
    delivery_partner_id: str | None,
    reason: str,
) -> tuple[dict, dict]:
    """副作用を実行し、注文行への変更と履歴用のデータを返す。"""
    changes: dict = {"order_status": target.value}
    details: dict = {}

    if effect is Effect.RELEASE_STOCK:
        await _release_stock(session, agg)
        refunded = await payments.refund_in_tx(session, agg)
        voided = await payments.void_pending_in_tx(session, agg, "order cancelled")
        changes["stock_state"] = StockState.RELEASED.value
        changes["cancel_reason"] = reason or None
        if refunded:
            changes["payment_status"] = PaymentStatus.REFUNDED.value
        elif voided:
            changes["payment_status"] = PaymentStatus.FAILED.value
        details = {"refunded": refunded, "reason": reason}

    elif effect is Effect.ASSIGN_SHIPMENT:
        changes["delivery_partner_id"] = delivery_partner_id
        changes["tracking_number"] = order_commands.generate_tracking_number()
        details = {
            "delivery_partner_id": delivery_partner_id,
            "tracking_number": changes["tracking_number"],
        }

    elif effect is Effect.COMMIT_STOCK:
        await _commit_stock(session, agg)
        changes["stock_state"] = StockState.COMMITTED.value
        changes["delivered_at"] = utcnow().isoformat()
        if agg.payment_method is PaymentMethod.COD and agg.payment_status is not PaymentStatus.COMPLETED:
            if await payment_queries.latest_payment(session, agg.order_number, PaymentStatus.PENDING) is None:
                await payments.insert_attempt_in_tx(session, agg, PaymentMethod.COD, agg.final_amount)
            payment = await payments.complete_in_tx(session, agg, payments.cod_transaction_id())
            changes["payment_status"] = PaymentStatus.COMPLETED.value
            details["cod_transaction_id"] = payment["transaction_id"]
        details["delivered_at"] = changes["delivered_at"]

    elif effect is Effect.RETURN_STOCK:
        await _return_stock(session, agg)
        refunded = await payments.refund_in_tx(session, agg)
        changes["stock_state"] = StockState.RETURNED.value
        if refunded:
            changes["payment_status"] = PaymentStatus.REFUNDED.value
        details = {"refunded": refunded, "reason": reason}

    return changes, details


async def transition(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_number: str,
    target: OrderStatus,
    actor: Actor,
    actor_id: str,
    *,
    expected_version: int | None = None,
    delivery_partner_id: str | None = None,
    reason: str = "",
) -> OrderAggregate:
    """
    注文ステータスを遷移させる

    expected_version を渡すと、読み込んだ version と異なる場合に即 Conflict。
    同じ旧状態に対する同時要求は 1 つだけが成功し、残りは Conflict になる。
    """
    try:
        agg = await load_order(session, order_number)
        if expected_version is not None and agg.version != expected_version:
            raise Conflict(order_number, expected_version)
        _check_participant(agg, actor, actor_id)

        current = agg.status
        rule = transitions.check(order_number, current, target, actor, agg.is_self_shipped)

        if (current, target) == (OrderStatus.PENDING, OrderStatus.CONFIRMED):
            if agg.payment_method is not PaymentMethod.COD and agg.payment_status is not PaymentStatus.COMPLETED:
                raise PaymentStateError("Payment must be completed before the order is confirmed")
        if rule.effect is Effect.RETURN_STOCK:
            _check_return_window(agg)

        # 副作用より先に version を取る。競合した側は台帳に触れずに Conflict になる
        version = await order_commands.update_guarded(
            session, order_number, agg.version, {"order_status": target.value}
        )
        changes, details = await _apply_effect(
            session, agg, rule.effect, target, delivery_partner_id, reason
        )
        await order_commands.set_columns(session, order_number, version, changes)
        await event_store.append_event(
            session,
            order_number,
            "OrderStatusChanged",
            {"from": current.value, "to": target.value, **details},
            actor=actor.value,
            version=version,
        )
    except Exception:
        await session.rollback()
        raise
    await session.commit()

    logger.info(
        "Order %s moved %s -> %s by %s (v%d)",
        order_number,
        current.value,
        target.value,
        actor.value,
        version,
    )

    now = utcnow()
    events: list[DomainEvent] = [
        OrderStatusChanged(
            order_number=order_number,
            timestamp=now,
            from_status=current.value,
            to_status=target.value,
            actor=actor.value,
            version=version,
        )
    ]
    if target is OrderStatus.CANCELLED:
        events.append(
            OrderCancelled(
                order_number=order_number,
                timestamp=now,
                actor=actor.value,
                reason=reason,
                refunded=bool(details.get("refunded")),
            )
        )
    await publish_all(redis, events)

    return await load_order(session, order_number)
