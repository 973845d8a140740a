"""
Saga Service — テーブル定義

saga_records: チェックアウトの進捗を示す唯一の記録。削除せず、終端に達したら archived_at を記録する。
saga_log:     各ステップの実行ログ（追記のみ）
"""

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

saga_records = Table(
    "saga_records",
    metadata,
    Column("saga_id", String(64), primary_key=True),
    Column("idempotency_key", String(128), nullable=False),
    Column("customer_id", String(128), nullable=False, index=True),
    Column("step", String(32), nullable=False, index=True),
    Column("reservation_id", String(80)),
    Column("payment_key", String(128)),
    Column("provider_ref", String(128)),
    Column("order_id", String(64)),
    Column("snapshot", Text),
    Column("total", Numeric(12, 2)),
    Column("currency", String(3), nullable=False),
    Column("error_code", String(32)),
    Column("error_detail", Text),
    Column("last_error", Text),
    Column("owner", String(64)),
    Column("lease_expires_at", DateTime(timezone=True)),
    Column("attempts", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("archived_at", DateTime(timezone=True)),
    UniqueConstraint("idempotency_key", name="uq_saga_records_idempotency_key"),
)

saga_log = Table(
    "saga_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("saga_id", String(64), nullable=False, index=True),
    Column("action", String(64), nullable=False),
    Column("status", String(16), nullable=False),
    Column("detail", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def drop_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
