"""
Order Engine — FastAPI エントリーポイント

CQRS パターンに従い、Command (POST/PUT/DELETE) と Query (GET) のエンドポイントを分離。
認証は上流のゲートウェイの責務なので、主体の ID はリクエストで受け取る。
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import config, schema
from .cart import commands as cart_commands
from .cart import queries as cart_queries
from .checkout import coupons
from .checkout.orchestrator import CheckoutOrchestrator, CheckoutRejected
from .clients import AddressBook, CatalogClient
from .errors import OrderEngineError, ProductNotFound
from .fulfillment import commands as fulfillment
from .fulfillment.transitions import allowed_targets
from .inventory import commands as ledger
from .inventory import queries as inventory_queries
from .order import event_store
from .order import queries as order_queries
from .payment import commands as payment_commands
from .payment import queries as payment_queries
from .types import Actor, OrderStatus, PaymentMethod

logger = logging.getLogger(__name__)

engine = create_async_engine(config.DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
http_client: httpx.AsyncClient | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, http_client
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    await schema.create_all(engine)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    http_client = httpx.AsyncClient(timeout=10.0)
    logger.info("Order engine started")
    yield
    await http_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Engine", lifespan=lifespan)


# ── 依存関係 ─────────────────────────────────────


async def get_session():
    async with async_session() as session:
        yield session


def get_redis() -> aioredis.Redis | None:
    return redis_pool


def get_catalog() -> CatalogClient:
    return CatalogClient(config.CATALOG_SERVICE_URL, http_client)


def get_checkout(
    redis: aioredis.Redis | None = Depends(get_redis),
    catalog: CatalogClient = Depends(get_catalog),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        catalog,
        AddressBook(config.USER_SERVICE_URL, http_client),
        redis,
    )


@app.exception_handler(OrderEngineError)
async def order_engine_error_handler(request: Request, exc: OrderEngineError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "detail": exc.message},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"code": "VALIDATION_ERROR", "detail": str(exc)})


# ── Request Models ───────────────────────────────


class AddCartItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(default=1, ge=1)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(ge=1)


class CheckoutRequest(BaseModel):
    user_id: str
    address_id: str
    payment_method: PaymentMethod
    coupon_code: str | None = None
    notes: str | None = None


class TransitionRequest(BaseModel):
    status: OrderStatus
    actor: Actor
    actor_id: str
    expected_version: int | None = None
    delivery_partner_id: str | None = None
    reason: str = ""


class CancelRequest(BaseModel):
    actor: Actor
    actor_id: str
    expected_version: int | None = None
    reason: str = ""


class RestockRequest(BaseModel):
    quantity: int = Field(ge=1)


class PaymentAttemptRequest(BaseModel):
    method: PaymentMethod
    amount: int = Field(gt=0)


class PaymentCompleteRequest(BaseModel):
    transaction_id: str


class PaymentFailRequest(BaseModel):
    reason: str = ""


class CreateCouponRequest(BaseModel):
    code: str
    discount_type: str = Field(pattern="^(PERCENTAGE|FIXED)$")
    value: int = Field(gt=0)
    valid_from: datetime
    valid_until: datetime
    max_discount: int | None = None
    min_amount: int | None = None
    usage_limit: int | None = None


# ── Cart ─────────────────────────────────────────


@app.get("/queries/cart/{user_id}")
async def query_cart(user_id: str, session: AsyncSession = Depends(get_session)):
    return await cart_queries.get_cart(session, user_id)


@app.post("/commands/cart/{user_id}/items")
async def cmd_add_cart_item(
    user_id: str,
    req: AddCartItemRequest,
    session: AsyncSession = Depends(get_session),
    catalog: CatalogClient = Depends(get_catalog),
):
    return await cart_commands.add_item(session, catalog, user_id, req.product_id, req.quantity)


@app.put("/commands/cart/{user_id}/items/{product_id}")
async def cmd_update_cart_item(
    user_id: str,
    product_id: str,
    req: UpdateCartItemRequest,
    session: AsyncSession = Depends(get_session),
):
    return await cart_commands.update_quantity(session, user_id, product_id, req.quantity)


@app.delete("/commands/cart/{user_id}/items/{product_id}")
async def cmd_remove_cart_item(
    user_id: str, product_id: str, session: AsyncSession = Depends(get_session)
):
    await cart_commands.remove_item(session, user_id, product_id)
    return {"success": True}


@app.delete("/commands/cart/{user_id}")
async def cmd_clear_cart(user_id: str, session: AsyncSession = Depends(get_session)):
    removed = await cart_commands.clear(session, user_id)
    return {"success": True, "removed": removed}


# ── Checkout / Orders ────────────────────────────


@app.post("/commands/orders/checkout", status_code=201)
async def cmd_checkout(
    req: CheckoutRequest,
    session: AsyncSession = Depends(get_session),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout),
):
    """チェックアウト。拒否された場合は行ごとの理由を 409 で返す。"""
    result = await orchestrator.execute(
        session,
        req.user_id,
        req.address_id,
        req.payment_method,
        coupon_code=req.coupon_code,
        notes=req.notes,
    )
    if isinstance(result, CheckoutRejected):
        return JSONResponse(
            status_code=409,
            content={"code": "CHECKOUT_REJECTED", **result.model_dump()},
        )
    return result.to_dict()


@app.post("/commands/orders/{order_number}/status")
async def cmd_transition(
    order_number: str,
    req: TransitionRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    agg = await fulfillment.transition(
        session,
        redis,
        order_number,
        req.status,
        req.actor,
        req.actor_id,
        expected_version=req.expected_version,
        delivery_partner_id=req.delivery_partner_id,
        reason=req.reason,
    )
    return agg.to_dict()


@app.post("/commands/orders/{order_number}/cancel")
async def cmd_cancel(
    order_number: str,
    req: CancelRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    agg = await fulfillment.transition(
        session,
        redis,
        order_number,
        OrderStatus.CANCELLED,
        req.actor,
        req.actor_id,
        expected_version=req.expected_version,
        reason=req.reason,
    )
    return agg.to_dict()


@app.get("/queries/orders")
async def query_list_orders(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
):
    return await order_queries.list_user_orders(session, user_id, page, limit)


@app.get("/queries/orders/{order_number}")
async def query_get_order(
    order_number: str,
    user_id: str | None = None,
    session: AsyncSession = Depends(get_session),
):
    order = await order_queries.get_order(session, order_number, user_id)
    order["payments"] = await payment_queries.list_payments(session, order_number)
    return order


@app.get("/queries/orders/{order_number}/invoice")
async def query_invoice(
    order_number: str, user_id: str, session: AsyncSession = Depends(get_session)
):
    return await order_queries.invoice_snapshot(session, order_number, user_id)


@app.get("/queries/orders/{order_number}/transitions")
async def query_allowed_transitions(
    order_number: str, actor: Actor, session: AsyncSession = Depends(get_session)
):
    agg = await order_queries.load_order(session, order_number)
    return {
        "order_status": agg.status.value,
        "version": agg.version,
        "allowed": [s.value for s in allowed_targets(agg.status, actor, agg.is_self_shipped)],
    }


@app.get("/queries/sellers/{seller_id}/orders")
async def query_seller_orders(
    seller_id: str,
    status: OrderStatus | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
):
    return await order_queries.list_seller_orders(session, seller_id, status, page, limit)


@app.get("/queries/sellers/{seller_id}/dashboard")
async def query_seller_dashboard(seller_id: str, session: AsyncSession = Depends(get_session)):
    return await order_queries.seller_dashboard(session, seller_id)


@app.get("/queries/delivery/{partner_id}/orders")
async def query_partner_orders(
    partner_id: str,
    status: OrderStatus | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
):
    return await order_queries.list_partner_orders(session, partner_id, status, page, limit)


@app.get("/queries/delivery/{partner_id}/dashboard")
async def query_partner_dashboard(partner_id: str, session: AsyncSession = Depends(get_session)):
    return await order_queries.delivery_dashboard(session, partner_id)


# ── Inventory ────────────────────────────────────


@app.post("/commands/inventory/{product_id}/restock")
async def cmd_restock(
    product_id: str, req: RestockRequest, session: AsyncSession = Depends(get_session)
):
    await ledger.restock(session, product_id, req.quantity)
    await session.commit()
    return await inventory_queries.get_stock(session, product_id)


@app.get("/queries/inventory")
async def query_list_stock(session: AsyncSession = Depends(get_session)):
    return await inventory_queries.list_stock(session)


@app.get("/queries/inventory/{product_id}")
async def query_get_stock(product_id: str, session: AsyncSession = Depends(get_session)):
    stock = await inventory_queries.get_stock(session, product_id)
    if not stock:
        raise ProductNotFound(product_id)
    return stock


@app.get("/queries/inventory/{product_id}/movements")
async def query_stock_movements(product_id: str, session: AsyncSession = Depends(get_session)):
    return await inventory_queries.list_movements(session, product_id)


# ── Payments ─────────────────────────────────────


@app.get("/queries/payments/methods")
async def query_payment_methods():
    return payment_queries.payment_methods()


@app.get("/queries/payments/{order_number}")
async def query_payments(order_number: str, session: AsyncSession = Depends(get_session)):
    return await payment_queries.list_payments(session, order_number)


@app.post("/commands/payments/{order_number}/attempts")
async def cmd_record_attempt(
    order_number: str, req: PaymentAttemptRequest, session: AsyncSession = Depends(get_session)
):
    return await payment_commands.record_attempt(session, order_number, req.method, req.amount)


@app.post("/commands/payments/{order_number}/complete")
async def cmd_mark_completed(
    order_number: str, req: PaymentCompleteRequest, session: AsyncSession = Depends(get_session)
):
    return await payment_commands.mark_completed(session, order_number, req.transaction_id)


@app.post("/commands/payments/{order_number}/fail")
async def cmd_mark_failed(
    order_number: str, req: PaymentFailRequest, session: AsyncSession = Depends(get_session)
):
    return await payment_commands.mark_failed(session, order_number, req.reason)


@app.post("/commands/payments/{order_number}/refund")
async def cmd_refund(order_number: str, session: AsyncSession = Depends(get_session)):
    return await payment_commands.refund(session, order_number)


# ── Coupons ──────────────────────────────────────


@app.post("/commands/coupons", status_code=201)
async def cmd_create_coupon(req: CreateCouponRequest, session: AsyncSession = Depends(get_session)):
    return await coupons.create_coupon(session, **req.model_dump())


# ── Order history ────────────────────────────────


@app.get("/events/{order_number}")
async def get_order_events(order_number: str, session: AsyncSession = Depends(get_session)):
    return await event_store.load_events(session, order_number)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-engine"}
