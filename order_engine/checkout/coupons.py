"""
Checkout — クーポン

クーポンの割引額はチェックアウト時に注文スナップショットへ取り込む。
後からクーポンが失効・変更されても確定済みの注文には影響しない。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import money
from ..errors import DuplicateCoupon, InvalidCoupon
from ..schema import utcnow

logger = logging.getLogger(__name__)

PERCENTAGE = "PERCENTAGE"
FIXED = "FIXED"


def _as_utc(value: datetime) -> datetime:
    """タイムゾーンの無い日時は UTC とみなす"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def create_coupon(
    session: AsyncSession,
    code: str,
    discount_type: str,
    value: int,
    valid_from: datetime,
    valid_until: datetime,
    max_discount: int | None = None,
    min_amount: int | None = None,
    usage_limit: int | None = None,
) -> dict:
    if discount_type not in (PERCENTAGE, FIXED):
        raise ValueError(f"unknown discount type {discount_type}")
    try:
        await session.execute(
            text("""
                INSERT INTO coupons
                    (code, discount_type, value, max_discount, min_amount,
                     valid_from, valid_until, usage_limit, used_count, is_active)
                VALUES
                    (:code, :type, :value, :max_discount, :min_amount,
                     :valid_from, :valid_until, :usage_limit, 0, 1)
            """),
            {
                "code": code,
                "type": discount_type,
                "value": value,
                "max_discount": max_discount,
                "min_amount": min_amount,
                "valid_from": _as_utc(valid_from).isoformat(),
                "valid_until": _as_utc(valid_until).isoformat(),
                "usage_limit": usage_limit,
            },
        )
    except IntegrityError:
        await session.rollback()
        raise DuplicateCoupon(code)
    await session.commit()
    return await get_coupon(session, code)


async def get_coupon(session: AsyncSession, code: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM coupons WHERE code = :code"),
        {"code": code},
    )
    row = result.fetchone()
    if not row:
        return None
    return {
        "code": row.code,
        "discount_type": row.discount_type,
        "value": row.value,
        "max_discount": row.max_discount,
        "min_amount": row.min_amount,
        "valid_from": row.valid_from,
        "valid_until": row.valid_until,
        "usage_limit": row.usage_limit,
        "used_count": row.used_count,
        "is_active": bool(row.is_active),
    }


def compute_discount(coupon: dict, subtotal: int, now: datetime | None = None) -> int:
    """
    クーポンを検証して割引額を返す（小計を超えない）

    無効・期限切れ・上限到達・最低金額未満なら InvalidCoupon。
    """
    now = now or utcnow()
    code = coupon["code"]
    if not coupon["is_active"]:
        raise InvalidCoupon(code, "inactive")
    if not (
        _as_utc(datetime.fromisoformat(coupon["valid_from"]))
        <= now
        <= _as_utc(datetime.fromisoformat(coupon["valid_until"]))
    ):
        raise InvalidCoupon(code, "expired")
    if coupon["usage_limit"] is not None and coupon["used_count"] >= coupon["usage_limit"]:
        raise InvalidCoupon(code, "usage limit reached")
    if coupon["min_amount"] is not None and subtotal < coupon["min_amount"]:
        raise InvalidCoupon(code, "minimum amount not met")

    if coupon["discount_type"] == PERCENTAGE:
        discount = money.percentage_discount(subtotal, coupon["value"], coupon["max_discount"])
    else:
        discount = coupon["value"]
    return min(discount, subtotal)


async def redeem(session: AsyncSession, code: str) -> None:
    """
    使用回数を 1 増やす（チェックアウトのトランザクション内）

    上限は UPDATE の条件で判定するので同時使用でも超過しない。
    """
    result = await session.execute(
        text("""
            UPDATE coupons
            SET used_count = used_count + 1
            WHERE code = :code
              AND is_active = 1
              AND (usage_limit IS NULL OR used_count < usage_limit)
        """),
        {"code": code},
    )
    if result.rowcount != 1:
        raise InvalidCoupon(code, "usage limit reached")
    logger.info("Redeemed coupon %s", code)
