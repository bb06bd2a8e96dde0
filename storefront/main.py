"""
Storefront — FastAPI エントリーポイント

お菓子ストアの API。カタログ管理と注文確定を 1 つのサービスで提供する。

  ┌──────────┐     ┌────────────┐     ┌──────────────────────┐
  │ Frontend │────▶│ Storefront │────▶│ Inventory (sweets)   │
  │          │     │    API     │────▶│ Order ledger         │
  │          │     │            │────▶│ Event store          │
  └──────────┘     └─────┬──────┘     └──────────────────────┘
                         │ publish
                         ▼
                   Redis Pub/Sub (order_events / inventory_events)

エラーはすべて {"error": {"kind", "message", "itemId"}} の形で返す。

Usage:
    uvicorn storefront.main:app --host 0.0.0.0 --port 8000
"""

import logging
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field, StrictInt
from sqlalchemy.orm import sessionmaker

from . import event_store
from .config import DATABASE_URL, REDIS_URL
from .db import create_engine, create_session_factory, init_db
from .errors import InvalidInput, ItemNotFound, OrderNotFound, StorefrontError
from .identity.auth import Identity, current_identity, require_admin
from .inventory import commands as inventory_commands
from .inventory import queries as inventory_queries
from .inventory.aggregate import Sweet
from .logging import configure_logging, correlation_id
from .order import queries as order_queries
from .order.aggregate import CartLine, Order
from .placement.orchestrator import OrderPlacementOrchestrator

logger = logging.getLogger(__name__)

engine = create_engine(DATABASE_URL)
async_session = create_session_factory(engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await init_db(engine)
    app.state.session_factory = async_session
    app.state.redis = aioredis.from_url(REDIS_URL, decode_responses=True) if REDIS_URL else None
    if app.state.redis is None:
        logger.info("REDIS_URL is not set; event publishing is disabled")
    yield
    if app.state.redis is not None:
        await app.state.redis.aclose()
    await engine.dispose()


app = FastAPI(title="Storefront", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    cid = request.headers.get("X-Correlation-Id") or str(uuid.uuid4())
    request.state.correlation_id = cid
    token = correlation_id.set(cid)
    try:
        response = await call_next(request)
    finally:
        correlation_id.reset(token)
    response.headers["X-Correlation-Id"] = cid
    return response


# ── Error Handlers ───────────────────────────────


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first["loc"] if part != "body")
        message = f"{location}: {first['msg']}" if location else first["msg"]
    else:
        message = "Invalid request"
    err = InvalidInput(message)
    return JSONResponse(status_code=err.status_code, content={"error": err.to_dict()})


# ── Dependencies ─────────────────────────────────


def get_session_factory(request: Request) -> sessionmaker:
    return request.app.state.session_factory


def get_orchestrator(request: Request) -> OrderPlacementOrchestrator:
    return OrderPlacementOrchestrator(
        request.app.state.session_factory,
        redis=getattr(request.app.state, "redis", None),
    )


# ── Request Models ───────────────────────────────


class OrderItemRequest(BaseModel):
    item_id: str = Field(validation_alias=AliasChoices("itemId", "sweetId", "item_id"))
    quantity: StrictInt


class PlaceOrderRequest(BaseModel):
    items: list[OrderItemRequest]


class CreateSweetRequest(BaseModel):
    name: str = Field(min_length=1)
    category: str = Field(min_length=1)
    price: Decimal = Field(ge=0, decimal_places=2)
    quantity: int = Field(ge=0)
    description: str | None = None
    image_url: str | None = Field(
        default=None, validation_alias=AliasChoices("imageUrl", "image_url")
    )


class UpdateSweetRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    category: str | None = Field(default=None, min_length=1)
    price: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    quantity: int | None = Field(default=None, ge=0)
    description: str | None = None
    image_url: str | None = Field(
        default=None, validation_alias=AliasChoices("imageUrl", "image_url")
    )


class RestockRequest(BaseModel):
    quantity: int = Field(ge=1)


# ── Catalog API ──────────────────────────────────


@app.get("/api/sweets", response_model=list[Sweet])
async def list_sweets(session_factory: sessionmaker = Depends(get_session_factory)):
    """商品一覧 (新しい順)"""
    async with session_factory() as session:
        return await inventory_queries.list_sweets(session)


@app.get("/api/sweets/{sweet_id}", response_model=Sweet)
async def get_sweet(sweet_id: str, session_factory: sessionmaker = Depends(get_session_factory)):
    async with session_factory() as session:
        sweet = await inventory_queries.get_sweet(session, sweet_id)
    if sweet is None:
        raise ItemNotFound(sweet_id)
    return sweet


@app.post("/api/sweets", response_model=Sweet, status_code=201)
async def create_sweet(
    req: CreateSweetRequest,
    identity: Identity = Depends(require_admin),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    async with session_factory() as session:
        async with session.begin():
            sweet = await inventory_commands.add_sweet(
                session,
                name=req.name,
                category=req.category,
                price=req.price,
                quantity=req.quantity,
                description=req.description,
                image_url=req.image_url,
            )
    logger.info("Sweet %s added by %s", sweet.id, identity.user_id)
    return sweet


@app.put("/api/sweets/{sweet_id}", response_model=Sweet)
async def update_sweet(
    sweet_id: str,
    req: UpdateSweetRequest,
    identity: Identity = Depends(require_admin),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """送られたフィールドだけを更新する。"""
    changes = req.model_dump(exclude_unset=True)
    async with session_factory() as session:
        async with session.begin():
            if not changes:
                sweet = await inventory_queries.get_sweet(session, sweet_id)
                if sweet is None:
                    raise ItemNotFound(sweet_id)
                return sweet
            sweet = await inventory_commands.update_sweet(session, sweet_id, changes)
    logger.info("Sweet %s updated by %s: %s", sweet_id, identity.user_id, sorted(changes))
    return sweet


@app.delete("/api/sweets/{sweet_id}", status_code=204)
async def delete_sweet(
    sweet_id: str,
    identity: Identity = Depends(require_admin),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    async with session_factory() as session:
        async with session.begin():
            await inventory_commands.remove_sweet(session, sweet_id)
    logger.info("Sweet %s removed by %s", sweet_id, identity.user_id)
    return Response(status_code=204)


@app.post("/api/sweets/{sweet_id}/restock", response_model=Sweet)
async def restock_sweet(
    sweet_id: str,
    req: RestockRequest,
    identity: Identity = Depends(require_admin),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """在庫補充 (現在の在庫数に加算)"""
    async with session_factory() as session:
        async with session.begin():
            sweet = await inventory_commands.restock(session, sweet_id, req.quantity)
    logger.info("Sweet %s restocked by %d (now %d)", sweet_id, req.quantity, sweet.quantity)
    return sweet


# ── Order API ────────────────────────────────────


@app.post("/api/orders", response_model=Order, status_code=201)
async def place_order(
    req: PlaceOrderRequest,
    identity: Identity = Depends(current_identity),
    orchestrator: OrderPlacementOrchestrator = Depends(get_orchestrator),
):
    """
    注文を確定する (在庫確認 → 引き当て → 注文作成)

    購入者 ID はトークンから取り出す。リクエスト本文では受け付けない。
    """
    cart = [CartLine(item_id=item.item_id, quantity=item.quantity) for item in req.items]
    return await orchestrator.execute(identity.user_id, cart)


@app.get("/api/orders", response_model=list[Order])
async def list_orders(
    identity: Identity = Depends(current_identity),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """自分の注文一覧 (新しい順)"""
    async with session_factory() as session:
        return await order_queries.list_orders(session, identity.user_id)


@app.get("/api/orders/{order_id}", response_model=Order)
async def get_order(
    order_id: str,
    identity: Identity = Depends(current_identity),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    async with session_factory() as session:
        order = await order_queries.get_order(session, order_id)
    # 他人の注文は存在しないものとして扱う
    if order is None or order.buyer_id != identity.user_id:
        raise OrderNotFound(order_id)
    return order


# ── Event Store (デバッグ用, 管理者のみ) ──────────


@app.get("/events", dependencies=[Depends(require_admin)])
async def get_all_events(session_factory: sessionmaker = Depends(get_session_factory)):
    async with session_factory() as session:
        return await event_store.load_all_events(session)


@app.get("/events/{aggregate_id}", dependencies=[Depends(require_admin)])
async def get_events(
    aggregate_id: str,
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """集約のイベント履歴 (バージョン順)"""
    async with session_factory() as session:
        return await event_store.load_events(session, aggregate_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "storefront"}
