"""
Inventory Service — クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import StockReservation
from .schema import stock_items, stock_reservation_entries, stock_reservations


def _stock_to_dict(row) -> dict:
    return {
        "sku": row.sku,
        "name": row.name,
        "price": str(row.price),
        "total": row.total,
        "available": row.available,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_stock(session: AsyncSession, sku: str) -> dict | None:
    result = await session.execute(select(stock_items).where(stock_items.c.sku == sku))
    row = result.fetchone()
    if not row:
        return None
    return _stock_to_dict(row)


async def list_stock(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(stock_items).order_by(stock_items.c.sku))
    return [_stock_to_dict(row) for row in result.fetchall()]


async def get_reservation(
    session: AsyncSession, reservation_id: str
) -> StockReservation | None:
    result = await session.execute(
        select(stock_reservations).where(
            stock_reservations.c.reservation_id == reservation_id
        )
    )
    row = result.fetchone()
    if not row:
        return None
    entries = await session.execute(
        select(stock_reservation_entries)
        .where(stock_reservation_entries.c.reservation_id == reservation_id)
        .order_by(stock_reservation_entries.c.sku)
    )
    return StockReservation.from_rows(row, entries.fetchall())
