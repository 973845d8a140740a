"""
Order Service — FastAPI エントリーポイント

CQRS パターンに従い、Command (POST) と Query (GET) のエンドポイントを分離。
注文作成は saga_id をキーに冪等。ステータスは前進のみ。
"""

import os
from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, event_store, queries
from .aggregate import InvalidStatusTransition, OrderLine, OrderNotFound, OrderStatus
from .schema import create_schema

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await create_schema(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Request / Response Models ────────────────────

class CreateOrderRequest(BaseModel):
    saga_id: str
    customer_id: str
    lines: list[OrderLine] = Field(min_length=1)
    total: Decimal
    currency: str = "USD"
    status: OrderStatus = OrderStatus.CREATED


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


# ── Command Endpoints (Write 側) ─────────────────

@app.post("/commands/orders")
async def cmd_create_order(req: CreateOrderRequest):
    """注文作成コマンド（saga_id ごとに1件だけ作られる）"""
    async with async_session() as session:
        try:
            return await commands.create_order_if_absent(
                session, redis_pool,
                req.saga_id, req.customer_id,
                [line.model_dump(mode="json") for line in req.lines],
                req.total, req.currency, req.status,
            )
        except ValueError as e:
            raise HTTPException(422, str(e))


@app.post("/commands/orders/{order_id}/status")
async def cmd_update_status(order_id: str, req: UpdateStatusRequest):
    """注文ステータス更新コマンド"""
    async with async_session() as session:
        try:
            return await commands.update_order_status(
                session, redis_pool, order_id, req.status
            )
        except OrderNotFound:
            raise HTTPException(404, "Order not found")
        except InvalidStatusTransition as e:
            raise HTTPException(
                status_code=409,
                detail={"error": "InvalidStatusTransition", "message": str(e)},
            )


# ── Query Endpoints (Read 側) ────────────────────

@app.get("/queries/orders")
async def query_list_orders(customer_id: str | None = None):
    async with async_session() as session:
        return await queries.list_orders(session, customer_id)


@app.get("/queries/orders/by-saga/{saga_id}")
async def query_get_order_by_saga(saga_id: str):
    async with async_session() as session:
        order = await queries.get_order_by_saga(session, saga_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: str):
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order


# ── Event Store (監査用) ─────────────────────────

@app.get("/events")
async def get_all_events():
    async with async_session() as session:
        return await event_store.load_all_events(session)


@app.get("/events/{aggregate_id}")
async def get_aggregate_events(aggregate_id: str):
    async with async_session() as session:
        return await event_store.load_events(session, aggregate_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
