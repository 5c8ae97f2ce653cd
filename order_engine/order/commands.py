"""
Order — コマンドハンドラ (CQRS Write 側)

注文行の作成と、version で保護された更新。
ここの関数は commit しない。チェックアウトと状態機械が
在庫台帳・支払い台帳の更新と同じトランザクションで呼ぶ。
"""

import json
import logging
import random
import string
import time

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..errors import Conflict
from ..schema import utcnow_iso
from . import event_store
from .aggregate import OrderAggregate

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_uppercase

# 状態機械が更新してよい列
MUTABLE_COLUMNS = frozenset(
    {
        "order_status",
        "payment_status",
        "payment_method",
        "stock_state",
        "delivery_partner_id",
        "tracking_number",
        "cancel_reason",
        "delivered_at",
    }
)


def _random_suffix(length: int) -> str:
    return "".join(random.choices(_BASE36, k=length))


def generate_order_number() -> str:
    """PPT + エポックミリ秒の下 6 桁 + 36 進 4 文字"""
    millis = str(int(time.time() * 1000))
    return f"{config.ORDER_NUMBER_PREFIX}{millis[-6:]}{_random_suffix(4)}"


def generate_tracking_number() -> str:
    return f"TRK{int(time.time() * 1000)}{_random_suffix(6)}"


async def insert_order(session: AsyncSession, agg: OrderAggregate) -> OrderAggregate:
    """
    注文スナップショットを保存する（version = 1）

    金額の不変条件を検証してから書き込む。
    """
    agg.verify_totals()
    now = utcnow_iso()
    agg.created_at = now
    agg.updated_at = now
    agg.version = 1

    await session.execute(
        text("""
            INSERT INTO orders
                (order_number, user_id, seller_id, address_snapshot,
                 subtotal, shipping_fee, discount, final_amount, coupon_code, notes,
                 order_status, payment_status, payment_method, stock_state,
                 delivery_partner_id, tracking_number, cancel_reason, delivered_at,
                 created_at, updated_at, version)
            VALUES
                (:order_number, :user_id, :seller_id, :address,
                 :subtotal, :shipping_fee, :discount, :final_amount, :coupon_code, :notes,
                 :order_status, :payment_status, :payment_method, :stock_state,
                 NULL, NULL, NULL, NULL,
                 :now, :now, 1)
        """),
        {
            "order_number": agg.order_number,
            "user_id": agg.user_id,
            "seller_id": agg.seller_id,
            "address": json.dumps(agg.address_snapshot, default=str),
            "subtotal": agg.subtotal,
            "shipping_fee": agg.shipping_fee,
            "discount": agg.discount,
            "final_amount": agg.final_amount,
            "coupon_code": agg.coupon_code,
            "notes": agg.notes,
            "order_status": agg.status.value,
            "payment_status": agg.payment_status.value,
            "payment_method": agg.payment_method.value,
            "stock_state": agg.stock_state.value,
            "now": now,
        },
    )
    for line in agg.items:
        await session.execute(
            text("""
                INSERT INTO order_items
                    (order_number, product_id, product_name, quantity, unit_price, line_total)
                VALUES
                    (:order_number, :product_id, :product_name, :quantity, :unit_price, :line_total)
            """),
            {"order_number": agg.order_number, **line.to_dict()},
        )

    await event_store.append_event(
        session,
        agg.order_number,
        "OrderPlaced",
        {
            "final_amount": agg.final_amount,
            "payment_method": agg.payment_method.value,
            "items": [line.to_dict() for line in agg.items],
        },
        actor="CUSTOMER",
        version=1,
    )
    return agg


async def update_guarded(
    session: AsyncSession,
    order_number: str,
    expected_version: int,
    changes: dict,
) -> int:
    """
    version を条件にした 1 本の UPDATE で注文を更新する。

    他のリクエストが先に更新していれば行は一致せず Conflict になる。
    戻り値は新しい version。
    """
    unknown = set(changes) - MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"columns are not mutable: {sorted(unknown)}")

    assignments = ", ".join(f"{column} = :{column}" for column in sorted(changes))
    new_version = expected_version + 1
    result = await session.execute(
        text(f"""
            UPDATE orders
            SET {assignments}, updated_at = :now, version = :new_version
            WHERE order_number = :order_number AND version = :expected_version
        """),
        {
            **changes,
            "now": utcnow_iso(),
            "new_version": new_version,
            "order_number": order_number,
            "expected_version": expected_version,
        },
    )
    if result.rowcount != 1:
        logger.info(
            "Optimistic lock lost on order %s at version %d", order_number, expected_version
        )
        raise Conflict(order_number, expected_version)
    return new_version


async def set_columns(
    session: AsyncSession,
    order_number: str,
    owned_version: int,
    changes: dict,
) -> None:
    """
    update_guarded で取得済みの version のまま列だけを書き換える。

    同じトランザクションが version を進めた後に副作用の結果を書き戻すために使う。
    """
    unknown = set(changes) - MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"columns are not mutable: {sorted(unknown)}")
    if not changes:
        return

    assignments = ", ".join(f"{column} = :{column}" for column in sorted(changes))
    result = await session.execute(
        text(f"""
            UPDATE orders
            SET {assignments}
            WHERE order_number = :order_number AND version = :version
        """),
        {**changes, "order_number": order_number, "version": owned_version},
    )
    if result.rowcount != 1:
        raise Conflict(order_number, owned_version)
