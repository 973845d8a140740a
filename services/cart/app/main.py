"""
Cart Service — FastAPI エントリーポイント

顧客ごとのカート。チェックアウト Saga からは
読み取り (ReadCart) と空にする (ClearCart) だけが呼ばれる。
"""

import os
from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, queries
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


app = FastAPI(title="Cart Service", lifespan=lifespan)


class AddItemRequest(BaseModel):
    sku: str
    name: str
    unit_price: Decimal = Field(ge=0)
    quantity: int = Field(gt=0)


@app.post("/commands/carts/{customer_id}/items")
async def cmd_add_item(customer_id: str, req: AddItemRequest):
    async with async_session() as session:
        try:
            lines = await commands.add_item(
                session,
                redis_pool,
                customer_id,
                req.sku,
                req.name,
                req.unit_price,
                req.quantity,
            )
        except ValueError as e:
            raise HTTPException(422, str(e))
        return {"customer_id": customer_id, "lines": lines}


@app.delete("/commands/carts/{customer_id}/items/{sku}")
async def cmd_remove_item(customer_id: str, sku: str):
    async with async_session() as session:
        lines = await commands.remove_item(session, redis_pool, customer_id, sku)
        return {"customer_id": customer_id, "lines": lines}


@app.post("/commands/carts/{customer_id}/clear")
async def cmd_clear_cart(customer_id: str):
    """カートを空にする（Saga の最終ステップから呼ばれる）"""
    async with async_session() as session:
        removed = await commands.clear_cart(session, redis_pool, customer_id)
        return {"customer_id": customer_id, "lines_removed": removed}


@app.get("/queries/carts/{customer_id}")
async def query_read_cart(customer_id: str):
    async with async_session() as session:
        lines = await queries.read_cart(session, customer_id)
        return {"customer_id": customer_id, "lines": lines}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "cart-service"}
