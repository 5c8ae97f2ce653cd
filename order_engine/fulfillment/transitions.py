"""
Fulfillment — 遷移表

注文ステータスの遷移はこの表だけで判定する。
呼び出し側ごとに個別に検証し直さない。

  現在               次                  主体                   副作用
  PENDING            CONFIRMED           販売者                 なし
  PENDING            CANCELLED           顧客 / 販売者          在庫解放
  CONFIRMED          PROCESSING          販売者                 なし
  CONFIRMED          CANCELLED           販売者                 在庫解放
  PROCESSING         SHIPPED             販売者                 配送パートナー割当・追跡番号
  SHIPPED            OUT_FOR_DELIVERY    配送パートナー         なし
  OUT_FOR_DELIVERY   DELIVERED           配送パートナー         在庫確定・配達日時
  DELIVERED          RETURNED            顧客 (返品期間内)      補償エントリで在庫戻し

自社配送（配送パートナー未割当）の注文では販売者が配送パートナーの遷移を行う。
"""

from dataclasses import dataclass
from enum import Enum

from ..errors import CancellationWindowClosed, InvalidTransition
from ..types import CANCELLABLE_STATUSES, Actor, OrderStatus


class Effect(str, Enum):
    RELEASE_STOCK = "RELEASE_STOCK"
    ASSIGN_SHIPMENT = "ASSIGN_SHIPMENT"
    COMMIT_STOCK = "COMMIT_STOCK"
    RETURN_STOCK = "RETURN_STOCK"


@dataclass(frozen=True)
class Rule:
    actors: frozenset
    effect: Effect | None = None
    seller_when_self_shipped: bool = False

    def allows(self, actor: Actor, self_shipped: bool) -> bool:
        if actor in self.actors:
            return True
        return self.seller_when_self_shipped and self_shipped and actor is Actor.SELLER


S = OrderStatus

TRANSITIONS: dict[tuple[OrderStatus, OrderStatus], Rule] = {
    (S.PENDING, S.CONFIRMED): Rule(frozenset({Actor.SELLER})),
    (S.PENDING, S.CANCELLED): Rule(
        frozenset({Actor.CUSTOMER, Actor.SELLER}), Effect.RELEASE_STOCK
    ),
    (S.CONFIRMED, S.PROCESSING): Rule(frozenset({Actor.SELLER})),
    (S.CONFIRMED, S.CANCELLED): Rule(frozenset({Actor.SELLER}), Effect.RELEASE_STOCK),
    (S.PROCESSING, S.SHIPPED): Rule(frozenset({Actor.SELLER}), Effect.ASSIGN_SHIPMENT),
    (S.SHIPPED, S.OUT_FOR_DELIVERY): Rule(
        frozenset({Actor.DELIVERY_PARTNER}), seller_when_self_shipped=True
    ),
    (S.OUT_FOR_DELIVERY, S.DELIVERED): Rule(
        frozenset({Actor.DELIVERY_PARTNER}), Effect.COMMIT_STOCK, seller_when_self_shipped=True
    ),
    (S.DELIVERED, S.RETURNED): Rule(frozenset({Actor.CUSTOMER}), Effect.RETURN_STOCK),
}


def allowed_targets(current: OrderStatus, actor: Actor, self_shipped: bool = False) -> list[OrderStatus]:
    """主体が現在の状態から要求できる遷移先（UI 表示用）"""
    return [
        target
        for (source, target), rule in TRANSITIONS.items()
        if source is current and rule.allows(actor, self_shipped)
    ]


def check(
    order_number: str,
    current: OrderStatus,
    target: OrderStatus,
    actor: Actor,
    self_shipped: bool = False,
) -> Rule:
    """
    遷移を検証して規則を返す。

    PROCESSING 以降のキャンセル要求は CancellationWindowClosed、
    それ以外で表に無い要求は InvalidTransition。
    """
    if (
        target is OrderStatus.CANCELLED
        and actor in (Actor.CUSTOMER, Actor.SELLER)
        and current not in CANCELLABLE_STATUSES
        and current is not OrderStatus.CANCELLED
    ):
        raise CancellationWindowClosed(order_number, current.value)

    rule = TRANSITIONS.get((current, target))
    if rule is None or not rule.allows(actor, self_shipped):
        raise InvalidTransition(current.value, target.value, actor.value)
    return rule
