"""
Checkout Orchestrator — カート → 注文

チェックアウトは全行一括 (all-or-nothing):

  ┌─────────────────────────────────────────────────────────────┐
  │  1. カートを読み、カタログから現在の価格・販売者を取得      │
  │     （外部 I/O はトランザクションの外で行う）              │
  │  2. 価格変動・販売停止・複数販売者を検出 → あれば拒否      │
  │  3. 1 トランザクション内で読んだカート行を削除して確保し、 │
  │     product_id 順に各行の在庫を引き当て                     │
  │     ├─ 全行成功 → 注文作成・支払い試行記録                 │
  │     └─ 1 行でも不足 → ロールバックで引き当てを全て解放     │
  │  4. コミット後に OrderPlaced を発行                         │
  └─────────────────────────────────────────────────────────────┘

在庫不足と楽観的ロック競合は CHECKOUT_MAX_ATTEMPTS 回まで即時再試行する。
無限には再試行しない。
カートが読んだ後に変わっていた場合は再試行せず CartChanged を送出する。
"""

import logging

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import config, money
from ..cart import commands as cart_commands
from ..cart import queries as cart_queries
from ..clients import AddressBook, CatalogClient, ProductInfo
from ..errors import AddressNotFound, CartChanged, Conflict, EmptyCart, InvalidCoupon
from ..events import OrderPlaced, OrderPlacedItem
from ..inventory import commands as ledger
from ..order import commands as order_commands
from ..order.aggregate import OrderAggregate, OrderLine
from ..payment import commands as payments
from ..publisher import publish
from ..schema import utcnow
from ..types import OrderStatus, PaymentMethod, PaymentStatus, StockState
from . import coupons

logger = logging.getLogger(__name__)

INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
PRICE_CHANGED = "PRICE_CHANGED"
PRODUCT_UNAVAILABLE = "PRODUCT_UNAVAILABLE"
MULTIPLE_SELLERS = "MULTIPLE_SELLERS"


class ItemIssue(BaseModel):
    """チェックアウトを止めているカート行と理由"""
    product_id: str
    reason: str
    requested: int | None = None
    available: int | None = None
    expected_price: int | None = None
    current_price: int | None = None


class CheckoutRejected(BaseModel):
    issues: list[ItemIssue]


class _AttemptRejected(Exception):
    def __init__(self, rejection: CheckoutRejected) -> None:
        super().__init__("checkout attempt rejected")
        self.rejection = rejection


class CheckoutOrchestrator:
    """カートから注文を作るオーケストレーター"""

    def __init__(
        self,
        catalog: CatalogClient,
        addresses: AddressBook,
        redis: aioredis.Redis | None,
        max_attempts: int = config.CHECKOUT_MAX_ATTEMPTS,
    ):
        self.catalog = catalog
        self.addresses = addresses
        self.redis = redis
        self.max_attempts = max(1, max_attempts)

    async def execute(
        self,
        session: AsyncSession,
        user_id: str,
        address_id: str,
        payment_method: PaymentMethod,
        coupon_code: str | None = None,
        notes: str | None = None,
    ) -> OrderAggregate | CheckoutRejected:
        lines = await cart_queries.list_lines(session, user_id)
        coupon = await coupons.get_coupon(session, coupon_code) if coupon_code else None
        # 外部呼び出しの前に読み取りトランザクションを閉じる
        await session.commit()
        if not lines:
            raise EmptyCart()
        if coupon_code and coupon is None:
            raise InvalidCoupon(coupon_code, "not found")

        address = await self.addresses.get_address(user_id, address_id)
        if address is None:
            raise AddressNotFound(address_id)
        products = await self.catalog.get_products([line["product_id"] for line in lines])

        rejection = self._validate(lines, products)
        if rejection is not None:
            logger.info("Checkout for %s rejected before reservation: %s", user_id, rejection.issues)
            return rejection

        agg = self._build_order(user_id, address, lines, products, payment_method, notes)
        if coupon is not None:
            agg.discount = coupons.compute_discount(coupon, agg.subtotal)
            agg.coupon_code = coupon["code"]
        agg.final_amount = money.final_amount(agg.subtotal, agg.shipping_fee, agg.discount)

        last_rejection: CheckoutRejected | None = None
        for attempt in range(1, self.max_attempts + 1):
            agg.order_number = order_commands.generate_order_number()
            try:
                await self._place(session, agg)
            except _AttemptRejected as exc:
                await session.rollback()
                last_rejection = exc.rejection
                logger.info(
                    "Checkout attempt %d/%d for %s rejected: %s",
                    attempt,
                    self.max_attempts,
                    user_id,
                    [issue.product_id for issue in exc.rejection.issues],
                )
                continue
            except (Conflict, IntegrityError):
                await session.rollback()
                logger.info("Checkout attempt %d/%d for %s conflicted", attempt, self.max_attempts, user_id)
                continue
            except Exception:
                await session.rollback()
                raise
            await session.commit()
            break
        else:
            if last_rejection is not None:
                return last_rejection
            raise Conflict(agg.order_number, 0)

        logger.info(
            "Order %s placed by %s: final_amount=%d",
            agg.order_number,
            user_id,
            agg.final_amount,
        )
        await publish(
            self.redis,
            OrderPlaced(
                order_number=agg.order_number,
                timestamp=utcnow(),
                user_id=agg.user_id,
                seller_id=agg.seller_id,
                payment_method=agg.payment_method.value,
                final_amount=agg.final_amount,
                items=[
                    OrderPlacedItem(
                        product_id=line.product_id,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                    )
                    for line in agg.items
                ],
            ),
        )
        return agg

    # ── 検証 ───────────────────────────────────

    def _validate(
        self, lines: list[dict], products: dict[str, ProductInfo | None]
    ) -> CheckoutRejected | None:
        issues: list[ItemIssue] = []
        seller_id: str | None = None
        for line in lines:
            product = products[line["product_id"]]
            if product is None or not product.is_active:
                issues.append(ItemIssue(product_id=line["product_id"], reason=PRODUCT_UNAVAILABLE))
                continue
            if abs(product.price - line["unit_price"]) > config.PRICE_DRIFT_TOLERANCE:
                issues.append(
                    ItemIssue(
                        product_id=line["product_id"],
                        reason=PRICE_CHANGED,
                        expected_price=line["unit_price"],
                        current_price=product.price,
                    )
                )
            if seller_id is None:
                seller_id = product.seller_id
            elif product.seller_id != seller_id:
                issues.append(ItemIssue(product_id=line["product_id"], reason=MULTIPLE_SELLERS))
        return CheckoutRejected(issues=issues) if issues else None

    def _build_order(
        self,
        user_id: str,
        address: dict,
        lines: list[dict],
        products: dict[str, ProductInfo | None],
        payment_method: PaymentMethod,
        notes: str | None,
    ) -> OrderAggregate:
        """現在のカタログ価格で注文スナップショットを組み立てる"""
        agg = OrderAggregate()
        agg.user_id = user_id
        agg.address_snapshot = dict(address)
        for line in lines:
            product = products[line["product_id"]]
            agg.items.append(
                OrderLine(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=line["quantity"],
                    unit_price=product.price,
                    line_total=money.line_total(product.price, line["quantity"]),
                )
            )
            agg.seller_id = product.seller_id
        agg.subtotal = sum(line.line_total for line in agg.items)
        agg.shipping_fee = money.shipping_fee_for(agg.subtotal)
        agg.status = OrderStatus.PENDING
        agg.payment_status = PaymentStatus.PENDING
        agg.payment_method = payment_method
        agg.stock_state = StockState.RESERVED
        agg.notes = notes
        return agg

    # ── 1 回分のトランザクション ─────────────────

    async def _place(self, session: AsyncSession, agg: OrderAggregate) -> None:
        # 読んだカート行を先に確保する。二重送信の後発はここで CartChanged になる
        taken = await cart_commands.take_lines(
            session, agg.user_id, [(line.product_id, line.quantity) for line in agg.items]
        )
        if not taken:
            raise CartChanged(agg.user_id)

        # 在庫行は常に product_id 順に更新し、チェックアウト同士のデッドロックを避ける
        issues = []
        for line in sorted(agg.items, key=lambda item: item.product_id):
            result = await ledger.reserve(session, line.product_id, line.quantity, agg.order_number)
            if not result.success:
                issues.append(
                    ItemIssue(
                        product_id=line.product_id,
                        reason=INSUFFICIENT_STOCK,
                        requested=result.requested,
                        available=result.available,
                    )
                )
        if issues:
            raise _AttemptRejected(CheckoutRejected(issues=issues))

        await order_commands.insert_order(session, agg)
        await payments.insert_attempt_in_tx(session, agg, agg.payment_method, agg.final_amount)
        if agg.coupon_code:
            await coupons.redeem(session, agg.coupon_code)
