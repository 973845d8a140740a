"""
Payment Service — テーブル定義

payment_attempts は idempotency_key を主キーとし、
プロバイダへ転送する前に必ず行を作る（key → outcome のキャッシュ）。
"""

from sqlalchemy import Column, DateTime, Integer, MetaData, Numeric, String, Table, Text
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

payment_attempts = Table(
    "payment_attempts",
    metadata,
    Column("idempotency_key", String(128), primary_key=True),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("outcome", String(16), nullable=False),
    Column("provider_ref", String(64), unique=True),
    Column("reason", Text),
    Column("provider_calls", Integer, nullable=False, default=0),
    Column("refunded_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def drop_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
