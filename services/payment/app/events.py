"""
Payment Service — イベント定義
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class PaymentSucceeded(BaseModel):
    idempotency_key: str
    provider_ref: str
    amount: Decimal
    currency: str
    timestamp: datetime


class PaymentDeclined(BaseModel):
    """決済が拒否された（リトライしない）"""
    idempotency_key: str
    reason: str | None
    timestamp: datetime


class PaymentErrored(BaseModel):
    """一時的な失敗（同じキーでリトライ可能）"""
    idempotency_key: str
    reason: str | None
    timestamp: datetime


class PaymentRefunded(BaseModel):
    """返金された（Saga の補償トランザクション）"""
    idempotency_key: str
    provider_ref: str
    timestamp: datetime
