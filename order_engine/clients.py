"""
Order Engine — 外部サービスクライアント

カタログサービス: 価格・MRP・在庫上限の権威ある情報源（読み取り専用）
ユーザーサービス: 配送先住所（チェックアウト時にスナップショットとしてコピー）

どちらもトランザクションの外で呼ぶ。ロックを保持したまま外部 I/O を待たない。
"""

import asyncio

import httpx
from pydantic import BaseModel


class ProductInfo(BaseModel):
    id: str
    name: str
    price: int
    mrp: int
    stock: int
    seller_id: str
    is_active: bool = True


class CatalogClient:
    """カタログサービスの Query API を呼ぶ"""

    def __init__(self, base_url: str, client: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client

    async def get_product(self, product_id: str) -> ProductInfo | None:
        resp = await self.client.get(f"{self.base_url}/queries/products/{product_id}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return ProductInfo.model_validate(resp.json())

    async def get_products(self, product_ids: list[str]) -> dict[str, ProductInfo | None]:
        """複数商品を並列に取得する"""
        products = await asyncio.gather(*(self.get_product(pid) for pid in product_ids))
        return dict(zip(product_ids, products))


class AddressBook:
    """ユーザーサービスから配送先住所を取得する"""

    def __init__(self, base_url: str, client: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client

    async def get_address(self, user_id: str, address_id: str) -> dict | None:
        resp = await self.client.get(
            f"{self.base_url}/queries/users/{user_id}/addresses/{address_id}"
        )
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()
