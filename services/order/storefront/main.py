"""
Order Service — FastAPI エントリーポイント

Command (POST/PATCH/DELETE) と Query (GET) のエンドポイント。
注文の作成・キャンセル・削除・管理者更新はすべて commands を経由し、
在庫の増減は同じトランザクションの中で行う。

    uvicorn storefront.main:app
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from . import commands, db, inventory, queries
from .aggregate import MAX_QUANTITY, OrderLineItem, OrderStatus, PaymentMethod, PaymentStatus
from .auth import IDENTITY_HEADER, Caller, resolve_caller
from .config import Settings
from .errors import StorefrontError, Unauthorized, ValidationError

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderItemIn(CamelModel):
    product_id: str
    quantity: int = Field(gt=0, le=MAX_QUANTITY)
    price: float = 0
    color: str | None = ""
    size: str | None = ""


class GuestAddressIn(CamelModel):
    first_name: str | None = None
    last_name: str | None = None
    street: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    phone: str | None = None


class CreateOrderRequest(CamelModel):
    items: list[OrderItemIn] = Field(default_factory=list)
    shipping_address_id: str | None = None
    guest_email: str | None = None
    guest_shipping_address: GuestAddressIn | None = None
    payment_method: PaymentMethod
    bkash_number: str | None = None
    bkash_reference: str | None = None
    bkash_transaction: str | None = None
    subtotal: float = 0
    tax: float = 0
    shipping: float = 0
    discount: float = 0
    total: float | None = None


class UpdateOrderRequest(CamelModel):
    action: str | None = None
    status: OrderStatus | None = None
    payment_status: PaymentStatus | None = None
    admin_notes: str | None = None
    bkash_transaction: str | None = None
    bkash_reference: str | None = None


class CollectionUpdateRequest(UpdateOrderRequest):
    order_id: str | None = None


class StatusRequest(CamelModel):
    status: OrderStatus


class PaymentStatusRequest(CamelModel):
    payment_status: PaymentStatus


class StockCheckItem(CamelModel):
    product_id: str
    quantity: int = Field(gt=0, le=MAX_QUANTITY)
    name: str | None = None


class StockCheckRequest(CamelModel):
    items: list[StockCheckItem]


# ── 依存関係 ─────────────────────────────────────


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.session_factory() as session:
        yield session


def get_redis(request: Request) -> aioredis.Redis | None:
    return request.app.state.redis


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def current_caller(
    request: Request, session: AsyncSession = Depends(get_session)
) -> Caller | None:
    return await resolve_caller(
        session, request.app.state.settings, request.headers.get(IDENTITY_HEADER)
    )


async def checkout_caller(
    request: Request, session: AsyncSession = Depends(get_session)
) -> Caller | None:
    """チェックアウトではゲストを許す。未登録のメールもゲスト扱い。"""
    return await resolve_caller(
        session,
        request.app.state.settings,
        request.headers.get(IDENTITY_HEADER),
        strict=False,
    )


def require_caller(caller: Caller | None = Depends(current_caller)) -> Caller:
    if caller is None:
        raise Unauthorized()
    return caller


router = APIRouter()


# ── Command Endpoints (Write 側) ─────────────────


@router.post("/orders", status_code=201)
async def create_order(
    req: CreateOrderRequest,
    caller: Caller | None = Depends(checkout_caller),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """注文作成 (ゲスト可)"""
    items = [
        OrderLineItem(i.product_id, i.quantity, i.price, i.color or "", i.size or "")
        for i in req.items
    ]
    order = await commands.create_order(
        session, redis, caller,
        items=items,
        payment_method=req.payment_method,
        payment_fields={
            "bkash_number": req.bkash_number,
            "bkash_reference": req.bkash_reference,
            "bkash_transaction": req.bkash_transaction,
        },
        shipping_address_id=req.shipping_address_id,
        guest_email=req.guest_email,
        guest_shipping_address=(
            req.guest_shipping_address.model_dump() if req.guest_shipping_address else None
        ),
        subtotal=req.subtotal,
        tax=req.tax,
        shipping=req.shipping,
        discount=req.discount,
        total=req.total,
    )
    return {"order": order}


@router.patch("/orders/{order_id}")
async def update_order(
    order_id: str,
    req: UpdateOrderRequest,
    caller: Caller | None = Depends(current_caller),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """{"action": "cancel"} ならキャンセル、それ以外は管理者による更新"""
    if req.action == "cancel":
        return await commands.cancel_order(session, redis, caller, order_id)
    if req.action is not None:
        raise ValidationError(f"Unknown action: {req.action}")
    return await _admin_update(session, redis, caller, order_id, req)


@router.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    req: StatusRequest,
    caller: Caller | None = Depends(current_caller),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """ステータスのみの変更 (管理者)。在庫の増減は PATCH /orders/{id} と同じ。"""
    return await commands.admin_update_order(
        session, redis, caller, order_id, status=req.status
    )


@router.patch("/orders/{order_id}/payment-status")
async def update_payment_status(
    order_id: str,
    req: PaymentStatusRequest,
    caller: Caller | None = Depends(current_caller),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    return await commands.admin_update_order(
        session, redis, caller, order_id, payment_status=req.payment_status
    )


@router.patch("/orders")
async def update_order_by_body(
    req: CollectionUpdateRequest,
    caller: Caller | None = Depends(current_caller),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """注文 ID をボディで受け取る管理者向け更新"""
    if not req.order_id:
        raise ValidationError("Order ID is required", field="orderId")
    return await _admin_update(session, redis, caller, req.order_id, req)


@router.delete("/orders/{order_id}")
async def delete_order(
    order_id: str,
    caller: Caller | None = Depends(current_caller),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    return await commands.delete_order(session, redis, caller, order_id)


async def _admin_update(session, redis, caller, order_id: str, req: UpdateOrderRequest):
    return await commands.admin_update_order(
        session, redis, caller, order_id,
        status=req.status,
        payment_status=req.payment_status,
        admin_notes=req.admin_notes,
        bkash_transaction=req.bkash_transaction,
        bkash_reference=req.bkash_reference,
    )


# ── Query Endpoints (Read 側) ────────────────────


@router.get("/orders")
async def list_orders(
    search: str = "",
    status: str = "",
    payment_method: str = Query("", alias="paymentMethod"),
    page: int = 1,
    limit: int | None = None,
    caller: Caller = Depends(require_caller),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    """注文一覧 (管理者は全件、一般ユーザーは自分の注文)"""
    page = max(1, page)
    limit = settings.default_page_size if limit is None else limit
    limit = min(max(1, limit), settings.max_page_size)
    return await queries.list_orders(
        session, caller,
        search=search.strip(),
        status=status,
        payment_method=payment_method,
        page=page,
        limit=limit,
    )


@router.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    caller: Caller = Depends(require_caller),
    session: AsyncSession = Depends(get_session),
):
    return {"order": await queries.get_order(session, caller, order_id)}


@router.post("/cart/check-stock")
async def check_stock(
    req: StockCheckRequest,
    caller: Caller = Depends(require_caller),
    session: AsyncSession = Depends(get_session),
):
    """カート内商品の在庫確認 (引き当ては行わない)"""
    return await inventory.check_stock(
        session, [item.model_dump() for item in req.items]
    )


@router.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}


# ── エラーハンドラ ───────────────────────────────


async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        {"loc": [str(part) for part in e.get("loc", ())], "msg": e.get("msg", "")}
        for e in exc.errors()
    ]
    error = ValidationError("Invalid request", errors=errors)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unexpected error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "InternalError", "message": "Internal server error", "retryable": False},
    )


# ── アプリケーション ─────────────────────────────


def create_app(
    settings: Settings | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    """
    アプリケーションを組み立てる。

    redis を渡した場合は lifespan で接続を作らない (テスト用)。
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    engine = db.create_engine(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.create_schema:
            await db.create_schema(engine)
        owns_redis = app.state.redis is None
        if owns_redis:
            app.state.redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        yield
        if owns_redis:
            await app.state.redis.aclose()
        await engine.dispose()

    app = FastAPI(title="Storefront Order Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = db.create_session_factory(engine)
    app.state.redis = redis

    app.add_exception_handler(StorefrontError, storefront_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
    app.include_router(router)
    return app


app = create_app()
