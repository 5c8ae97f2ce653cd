"""
Order — 注文集約 (Order Aggregate)

チェックアウト時点のカート内容を凍結したスナップショットと、
状態機械だけが変更できる可変フィールド（ステータス・支払い・配送）を持つ。
以後のすべての状態遷移の整合性の単位。

注文は削除しない。終端状態 (DELIVERED / CANCELLED / RETURNED) も
監査と請求書のために保持する。
"""

import json
import logging
from dataclasses import dataclass

from .. import money
from ..errors import MonetaryInvariantViolation
from ..types import OrderStatus, PaymentMethod, PaymentStatus, StockState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderLine:
    product_id: str
    product_name: str
    quantity: int
    unit_price: int
    line_total: int

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "line_total": self.line_total,
        }


class OrderAggregate:
    """
    注文集約

    状態遷移 (fulfillment.transitions で一元管理):
        PENDING → CONFIRMED → PROCESSING → SHIPPED → OUT_FOR_DELIVERY → DELIVERED
        PENDING / CONFIRMED → CANCELLED
        DELIVERED → RETURNED (返品期間内のみ)
    """

    def __init__(self) -> None:
        self.order_number: str = ""
        self.user_id: str = ""
        self.seller_id: str = ""
        self.address_snapshot: dict = {}
        self.items: list[OrderLine] = []
        self.subtotal: int = 0
        self.shipping_fee: int = 0
        self.discount: int = 0
        self.final_amount: int = 0
        self.coupon_code: str | None = None
        self.notes: str | None = None
        self.status: OrderStatus = OrderStatus.PENDING
        self.payment_status: PaymentStatus = PaymentStatus.PENDING
        self.payment_method: PaymentMethod = PaymentMethod.COD
        self.stock_state: StockState = StockState.RESERVED
        self.delivery_partner_id: str | None = None
        self.tracking_number: str | None = None
        self.cancel_reason: str | None = None
        self.delivered_at: str | None = None
        self.created_at: str | None = None
        self.updated_at: str | None = None
        self.version: int = 0

    # ── 不変条件 ─────────────────────────────────

    def verify_totals(self) -> None:
        """
        金額の不変条件を検証する。作成時と再読込のたびに呼ぶ。

        final_amount == subtotal + shipping_fee - discount
        subtotal == Σ line_total
        """
        expected_subtotal = sum(line.line_total for line in self.items)
        lines_ok = all(
            line.line_total == money.line_total(line.unit_price, line.quantity)
            for line in self.items
        )
        expected_final = money.final_amount(self.subtotal, self.shipping_fee, self.discount)
        if not lines_ok or self.subtotal != expected_subtotal or self.final_amount != expected_final:
            logger.error(
                "Monetary invariant violated for order %s",
                self.order_number,
                extra={
                    "order_number": self.order_number,
                    "subtotal": self.subtotal,
                    "shipping_fee": self.shipping_fee,
                    "discount": self.discount,
                    "final_amount": self.final_amount,
                    "items_subtotal": expected_subtotal,
                },
            )
            raise MonetaryInvariantViolation(self.order_number)

    @property
    def is_self_shipped(self) -> bool:
        return self.delivery_partner_id is None

    # ── 永続化からの再構築 ─────────────────────────

    @classmethod
    def from_row(cls, row, item_rows) -> "OrderAggregate":
        agg = cls()
        agg.order_number = row.order_number
        agg.user_id = row.user_id
        agg.seller_id = row.seller_id
        agg.address_snapshot = json.loads(row.address_snapshot)
        agg.items = [
            OrderLine(
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                line_total=item.line_total,
            )
            for item in item_rows
        ]
        agg.subtotal = row.subtotal
        agg.shipping_fee = row.shipping_fee
        agg.discount = row.discount
        agg.final_amount = row.final_amount
        agg.coupon_code = row.coupon_code
        agg.notes = row.notes
        agg.status = OrderStatus(row.order_status)
        agg.payment_status = PaymentStatus(row.payment_status)
        agg.payment_method = PaymentMethod(row.payment_method)
        agg.stock_state = StockState(row.stock_state)
        agg.delivery_partner_id = row.delivery_partner_id
        agg.tracking_number = row.tracking_number
        agg.cancel_reason = row.cancel_reason
        agg.delivered_at = row.delivered_at
        agg.created_at = row.created_at
        agg.updated_at = row.updated_at
        agg.version = row.version
        return agg

    def to_dict(self) -> dict:
        return {
            "order_number": self.order_number,
            "user_id": self.user_id,
            "seller_id": self.seller_id,
            "address": self.address_snapshot,
            "items": [line.to_dict() for line in self.items],
            "subtotal": self.subtotal,
            "shipping_fee": self.shipping_fee,
            "discount": self.discount,
            "final_amount": self.final_amount,
            "coupon_code": self.coupon_code,
            "notes": self.notes,
            "order_status": self.status.value,
            "payment_status": self.payment_status.value,
            "payment_method": self.payment_method.value,
            "delivery_partner_id": self.delivery_partner_id,
            "tracking_number": self.tracking_number,
            "cancel_reason": self.cancel_reason,
            "delivered_at": self.delivered_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
        }
