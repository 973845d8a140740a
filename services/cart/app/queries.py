"""
Cart Service — クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import cart_lines


async def read_cart(session: AsyncSession, customer_id: str) -> list[dict]:
    """カートの行を SKU 順で返す。価格は追加時に記録した単価。"""
    result = await session.execute(
        select(cart_lines)
        .where(cart_lines.c.customer_id == customer_id)
        .order_by(cart_lines.c.sku)
    )
    return [
        {
            "sku": row.sku,
            "name": row.name,
            "unit_price": str(row.unit_price),
            "quantity": row.quantity,
        }
        for row in result.fetchall()
    ]
