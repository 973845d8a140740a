"""
Saga Service — カートスナップショット

チェックアウト開始時点のカートを読み取り、不変の CartSnapshot を作る。
読み取りだけで、カート自体は変更しない。
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from .clients import CartClient
from .errors import EmptyCart
from .models import CartLine, CartSnapshot

logger = logging.getLogger(__name__)


class CartSnapshotProvider:
    def __init__(self, carts: CartClient, currency: str = "USD"):
        self.carts = carts
        self.currency = currency

    async def snapshot(self, customer_id: str) -> CartSnapshot:
        rows = await self.carts.read_cart(customer_id)
        lines = tuple(
            CartLine(
                sku=row["sku"],
                name=row["name"],
                unit_price=Decimal(str(row["unit_price"])),
                quantity=int(row["quantity"]),
            )
            for row in rows
            if int(row["quantity"]) > 0
        )
        if not lines:
            raise EmptyCart(f"cart of {customer_id} is empty")
        return CartSnapshot(
            snapshot_id=str(uuid.uuid4()),
            customer_id=customer_id,
            lines=lines,
            captured_at=datetime.now(timezone.utc),
            currency=self.currency,
        )

    async def clear(self, customer_id: str) -> None:
        await self.carts.clear_cart(customer_id)
