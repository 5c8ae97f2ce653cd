"""
Order Engine — ドメインイベント定義

トランザクションのコミット後に order_events チャネルへ発行する。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    order_number: str
    timestamp: datetime

    @property
    def event_type(self) -> str:
        return type(self).__name__


class OrderPlacedItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: int
    unit_price: int


class OrderPlaced(DomainEvent):
    """チェックアウトで注文が作成された"""
    user_id: str
    seller_id: str
    payment_method: str
    final_amount: int
    items: list[OrderPlacedItem]


class OrderStatusChanged(DomainEvent):
    """注文ステータスが遷移した"""
    from_status: str = Field(alias="from")
    to_status: str = Field(alias="to")
    actor: str
    version: int


class OrderCancelled(DomainEvent):
    """注文がキャンセルされた（在庫解放済み）"""
    actor: str
    reason: str
    refunded: bool
