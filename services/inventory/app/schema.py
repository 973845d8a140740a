"""
Inventory Service — テーブル定義

本番 (PostgreSQL) とテスト (SQLite) で同じ DDL を使うため、
SQLAlchemy Core の Table で定義する。

  stock_items                 SKU ごとの total / available
  stock_reservations          チェックアウト単位の予約 (HELD / COMMITTED / RELEASED)
  stock_reservation_entries   予約に含まれる SKU と数量
  event_store                 在庫イベントの追記専用ログ
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

stock_items = Table(
    "stock_items",
    metadata,
    Column("sku", String(64), primary_key=True),
    Column("name", String(255), nullable=False, default=""),
    Column("price", Numeric(12, 2), nullable=False, default=0),
    Column("total", Integer, nullable=False, default=0),
    Column("available", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True)),
    CheckConstraint("available >= 0", name="ck_stock_available_non_negative"),
    CheckConstraint("available <= total", name="ck_stock_available_within_total"),
)

stock_reservations = Table(
    "stock_reservations",
    metadata,
    Column("reservation_id", String(64), primary_key=True),
    Column("saga_id", String(64), index=True),
    Column("state", String(16), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False, index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

stock_reservation_entries = Table(
    "stock_reservation_entries",
    metadata,
    Column("reservation_id", String(64), nullable=False),
    Column("sku", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    PrimaryKeyConstraint("reservation_id", "sku"),
    CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
)

event_store = Table(
    "event_store",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_id", String(64), nullable=False),
    Column("aggregate_type", String(64), nullable=False),
    Column("event_type", String(64), nullable=False),
    Column("event_data", Text, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("aggregate_id", "version", name="uq_event_store_version"),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def drop_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
