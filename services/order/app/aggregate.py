"""
Order Service — 注文集約 (Order Aggregate)

状態遷移（前進のみ）:
    CREATED → PAID    (決済済み)
    CREATED → FAILED  (チェックアウト失敗)

PAID / FAILED は終端。後退する遷移は拒否する。
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    PAID = "PAID"
    FAILED = "FAILED"


ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.CREATED: {OrderStatus.PAID, OrderStatus.FAILED},
    OrderStatus.PAID: set(),
    OrderStatus.FAILED: set(),
}


class OrderLine(BaseModel):
    sku: str
    name: str
    unit_price: Decimal
    quantity: int


class Order(BaseModel):
    order_id: str
    saga_id: str
    customer_id: str
    lines: list[OrderLine]
    total: Decimal
    currency: str
    status: OrderStatus
    created_at: datetime


class OrderNotFound(Exception):
    pass


class InvalidStatusTransition(Exception):
    def __init__(self, order_id: str, current: OrderStatus, requested: OrderStatus):
        super().__init__(
            f"Order {order_id}: cannot move from {current.value} to {requested.value}"
        )
        self.current = current
        self.requested = requested


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]
