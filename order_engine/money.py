"""
Order Engine — 金額計算

すべて最小通貨単位の整数演算。丸め誤差は発生しない。
final_amount = subtotal + shipping_fee - discount
"""

from . import config


def line_total(unit_price: int, quantity: int) -> int:
    return unit_price * quantity


def shipping_fee_for(subtotal: int) -> int:
    """小計が閾値以上なら送料無料"""
    if subtotal >= config.FREE_SHIPPING_THRESHOLD:
        return 0
    return config.SHIPPING_FEE


def final_amount(subtotal: int, shipping_fee: int, discount: int) -> int:
    return subtotal + shipping_fee - discount


def percentage_discount(subtotal: int, percent: int, max_discount: int | None) -> int:
    discount = subtotal * percent // 100
    if max_discount is not None:
        discount = min(discount, max_discount)
    return discount
