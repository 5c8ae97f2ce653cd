"""
Order Engine — エラー分類

すべてのドメインエラーは OrderEngineError を継承し、
API 層で使う code と HTTP ステータスを持つ。
内部の台帳状態はメッセージに含めない。
"""


class OrderEngineError(Exception):
    code = "ORDER_ENGINE_ERROR"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ── 在庫 ─────────────────────────────────────────


class InsufficientStock(OrderEngineError):
    """在庫不足（顧客側で回復可能な想定内の結果）"""

    code = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(f"Insufficient stock for product {product_id}")
        self.product_id = product_id
        self.requested = requested
        self.available = available


class StockLedgerViolation(OrderEngineError):
    """二重 commit / release など台帳の不変条件違反"""

    code = "STOCK_LEDGER_VIOLATION"
    status_code = 500

    def __init__(self, order_number: str | None, product_id: str, message: str) -> None:
        super().__init__(message)
        self.order_number = order_number
        self.product_id = product_id


# ── 状態遷移 ─────────────────────────────────────


class InvalidTransition(OrderEngineError):
    code = "INVALID_TRANSITION"
    status_code = 422

    def __init__(self, current: str, target: str, actor: str) -> None:
        super().__init__(f"Order cannot move from {current} to {target} by {actor}")
        self.current = current
        self.target = target
        self.actor = actor


class ReturnWindowClosed(InvalidTransition):
    code = "RETURN_WINDOW_CLOSED"

    def __init__(self, order_number: str) -> None:
        OrderEngineError.__init__(self, f"Return window has closed for order {order_number}")
        self.current = "DELIVERED"
        self.target = "RETURNED"
        self.actor = "CUSTOMER"


class CancellationWindowClosed(OrderEngineError):
    code = "CANCELLATION_WINDOW_CLOSED"
    status_code = 422

    def __init__(self, order_number: str, status: str) -> None:
        super().__init__(f"Order {order_number} can no longer be cancelled")
        self.order_number = order_number
        self.status = status


class Conflict(OrderEngineError):
    """楽観的ロックの競合。呼び出し側は再読込してから判断する。"""

    code = "CONFLICT"
    status_code = 409

    def __init__(self, order_number: str, expected_version: int) -> None:
        super().__init__(f"Order {order_number} was modified concurrently, reload and retry")
        self.order_number = order_number
        self.expected_version = expected_version


class NotOrderParticipant(OrderEngineError):
    code = "NOT_ORDER_PARTICIPANT"
    status_code = 403

    def __init__(self, order_number: str, actor_id: str) -> None:
        super().__init__(f"Order {order_number} is not assigned to {actor_id}")
        self.order_number = order_number
        self.actor_id = actor_id


# ── 支払い ───────────────────────────────────────


class PaymentAmountMismatch(OrderEngineError):
    """整合性違反。操作は中断し、調査のためにログへ残す"""

    code = "PAYMENT_AMOUNT_MISMATCH"
    status_code = 500

    def __init__(self, order_number: str, expected: int, actual: int) -> None:
        super().__init__(f"Payment amount does not match order {order_number}")
        self.order_number = order_number
        self.expected = expected
        self.actual = actual


class PaymentStateError(OrderEngineError):
    code = "PAYMENT_STATE_ERROR"
    status_code = 409


class MonetaryInvariantViolation(OrderEngineError):
    code = "MONETARY_INVARIANT_VIOLATION"
    status_code = 500

    def __init__(self, order_number: str) -> None:
        super().__init__(f"Order {order_number} totals are inconsistent")
        self.order_number = order_number


# ── 入力・参照 ───────────────────────────────────


class NotFound(OrderEngineError):
    code = "NOT_FOUND"
    status_code = 404


class OrderNotFound(NotFound):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_number: str) -> None:
        super().__init__("Order not found")
        self.order_number = order_number


class ProductNotFound(NotFound):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str) -> None:
        super().__init__("Product not found")
        self.product_id = product_id


class CartItemNotFound(NotFound):
    code = "CART_ITEM_NOT_FOUND"

    def __init__(self, product_id: str) -> None:
        super().__init__("Cart item not found")
        self.product_id = product_id


class AddressNotFound(NotFound):
    code = "ADDRESS_NOT_FOUND"

    def __init__(self, address_id: str) -> None:
        super().__init__("Address not found")
        self.address_id = address_id


class InvalidCoupon(OrderEngineError):
    code = "INVALID_COUPON"
    status_code = 422

    def __init__(self, coupon_code: str, reason: str) -> None:
        super().__init__(f"Coupon {coupon_code} cannot be applied: {reason}")
        self.coupon_code = coupon_code
        self.reason = reason


class DuplicateCoupon(OrderEngineError):
    code = "DUPLICATE_COUPON"
    status_code = 409

    def __init__(self, coupon_code: str) -> None:
        super().__init__(f"Coupon {coupon_code} already exists")
        self.coupon_code = coupon_code


class EmptyCart(OrderEngineError):
    code = "EMPTY_CART"
    status_code = 422

    def __init__(self) -> None:
        super().__init__("Cart is empty")


class CartChanged(OrderEngineError):
    """チェックアウト中にカートが変更された（二重送信を含む）。読み直してやり直す。"""

    code = "CART_CHANGED"
    status_code = 409

    def __init__(self, user_id: str) -> None:
        super().__init__("Cart changed during checkout")
        self.user_id = user_id


class InvoiceNotAvailable(OrderEngineError):
    code = "INVOICE_NOT_AVAILABLE"
    status_code = 409

    def __init__(self, order_number: str) -> None:
        super().__init__("Invoice can only be generated for delivered orders")
        self.order_number = order_number
