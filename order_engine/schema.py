"""
Order Engine — テーブル定義

PostgreSQL (asyncpg) と SQLite (aiosqlite) の両方で動く DDL のみを使う。
タイムスタンプは ISO-8601 文字列、金額は最小通貨単位の整数。

  stock_ledger     在庫台帳 (available / reserved / sold)
  stock_movements  在庫移動ジャーナル (監査証跡 + 冪等性)
  cart_items       カート行
  coupons          クーポン
  orders           注文 (version = 楽観的ロックカウンタ)
  order_items      注文明細 (凍結済みスナップショット)
  order_events     注文履歴 (order_number + version が一意)
  payments         支払い記録
"""

from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

TABLES = [
    """
    CREATE TABLE IF NOT EXISTS stock_ledger (
        product_id  TEXT PRIMARY KEY,
        available   INTEGER NOT NULL DEFAULT 0 CHECK (available >= 0),
        reserved    INTEGER NOT NULL DEFAULT 0 CHECK (reserved >= 0),
        sold        INTEGER NOT NULL DEFAULT 0 CHECK (sold >= 0),
        updated_at  TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stock_movements (
        id            TEXT PRIMARY KEY,
        product_id    TEXT NOT NULL,
        order_number  TEXT,
        kind          TEXT NOT NULL,
        quantity      INTEGER NOT NULL CHECK (quantity > 0),
        created_at    TEXT NOT NULL,
        UNIQUE (order_number, product_id, kind)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cart_items (
        user_id     TEXT NOT NULL,
        product_id  TEXT NOT NULL,
        quantity    INTEGER NOT NULL CHECK (quantity >= 1),
        unit_price  BIGINT NOT NULL,
        unit_mrp    BIGINT NOT NULL,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL,
        PRIMARY KEY (user_id, product_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS coupons (
        code           TEXT PRIMARY KEY,
        discount_type  TEXT NOT NULL,
        value          BIGINT NOT NULL,
        max_discount   BIGINT,
        min_amount     BIGINT,
        valid_from     TEXT NOT NULL,
        valid_until    TEXT NOT NULL,
        usage_limit    INTEGER,
        used_count     INTEGER NOT NULL DEFAULT 0,
        is_active      INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        order_number         TEXT PRIMARY KEY,
        user_id              TEXT NOT NULL,
        seller_id            TEXT NOT NULL,
        address_snapshot     TEXT NOT NULL,
        subtotal             BIGINT NOT NULL,
        shipping_fee         BIGINT NOT NULL,
        discount             BIGINT NOT NULL,
        final_amount         BIGINT NOT NULL,
        coupon_code          TEXT,
        notes                TEXT,
        order_status         TEXT NOT NULL,
        payment_status       TEXT NOT NULL,
        payment_method       TEXT NOT NULL,
        stock_state          TEXT NOT NULL,
        delivery_partner_id  TEXT,
        tracking_number      TEXT,
        cancel_reason        TEXT,
        delivered_at         TEXT,
        created_at           TEXT NOT NULL,
        updated_at           TEXT NOT NULL,
        version              INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        order_number  TEXT NOT NULL,
        product_id    TEXT NOT NULL,
        product_name  TEXT NOT NULL,
        quantity      INTEGER NOT NULL CHECK (quantity >= 1),
        unit_price    BIGINT NOT NULL,
        line_total    BIGINT NOT NULL,
        PRIMARY KEY (order_number, product_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_events (
        order_number  TEXT NOT NULL,
        version       INTEGER NOT NULL,
        event_type    TEXT NOT NULL,
        event_data    TEXT NOT NULL,
        actor         TEXT NOT NULL,
        created_at    TEXT NOT NULL,
        PRIMARY KEY (order_number, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id              TEXT PRIMARY KEY,
        order_number    TEXT NOT NULL,
        method          TEXT NOT NULL,
        status          TEXT NOT NULL,
        amount          BIGINT NOT NULL,
        transaction_id  TEXT,
        failure_reason  TEXT,
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_user ON orders (user_id)",
    "CREATE INDEX IF NOT EXISTS ix_orders_seller ON orders (seller_id, order_status)",
    "CREATE INDEX IF NOT EXISTS ix_orders_partner ON orders (delivery_partner_id)",
    "CREATE INDEX IF NOT EXISTS ix_payments_order ON payments (order_number)",
]


async def create_all(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for ddl in TABLES:
            await conn.execute(text(ddl))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return utcnow().isoformat()
