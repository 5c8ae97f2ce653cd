"""
Order Engine — 設定

設定値はすべて環境変数から読み込む。
金額はすべて最小通貨単位の整数。
"""

import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./order_engine.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
CATALOG_SERVICE_URL = os.environ.get("CATALOG_SERVICE_URL", "http://localhost:8001")
USER_SERVICE_URL = os.environ.get("USER_SERVICE_URL", "http://localhost:8002")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

ORDER_EVENTS_CHANNEL = os.environ.get("ORDER_EVENTS_CHANNEL", "order_events")
ORDER_NUMBER_PREFIX = os.environ.get("ORDER_NUMBER_PREFIX", "PPT")

# ── 金額ポリシー ─────────────────────────────────

FREE_SHIPPING_THRESHOLD = int(os.environ.get("FREE_SHIPPING_THRESHOLD", "50000"))
SHIPPING_FEE = int(os.environ.get("SHIPPING_FEE", "5000"))
PRICE_DRIFT_TOLERANCE = int(os.environ.get("PRICE_DRIFT_TOLERANCE", "0"))

# ── 注文ライフサイクル ───────────────────────────

RETURN_WINDOW_DAYS = int(os.environ.get("RETURN_WINDOW_DAYS", "7"))
CHECKOUT_MAX_ATTEMPTS = int(os.environ.get("CHECKOUT_MAX_ATTEMPTS", "3"))
