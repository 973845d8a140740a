"""
Order Service — イベント定義

イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class OrderCreated(BaseModel):
    """注文が作成された（Saga ごとに1回だけ）"""
    order_id: str
    saga_id: str
    customer_id: str
    total: Decimal
    currency: str
    status: str
    timestamp: datetime


class OrderPaid(BaseModel):
    """注文が支払済みになった"""
    order_id: str
    timestamp: datetime


class OrderFailed(BaseModel):
    """注文が失敗として確定した"""
    order_id: str
    timestamp: datetime
