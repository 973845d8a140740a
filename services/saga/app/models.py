"""
Saga Service — ドメインモデル

CartSnapshot: チェックアウト開始時点のカートの不変コピー
SagaRecord:   チェックアウトがどこまで進んだかを示す唯一の記録
"""

import hashlib
import json
from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict

CENTS = Decimal("0.01")


class SagaStep(str, Enum):
    STARTED = "STARTED"
    INVENTORY_RESERVING = "INVENTORY_RESERVING"
    INVENTORY_RESERVED = "INVENTORY_RESERVED"
    PAYMENT_CHARGED = "PAYMENT_CHARGED"
    ORDER_CREATED = "ORDER_CREATED"
    CART_CLEARED = "CART_CLEARED"
    COMPLETED = "COMPLETED"
    COMPENSATING = "COMPENSATING"
    FAILED = "FAILED"


TERMINAL_STEPS = {SagaStep.COMPLETED, SagaStep.FAILED}


class CartLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    sku: str
    name: str
    unit_price: Decimal
    quantity: int

    @property
    def subtotal(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(CENTS)


class CartSnapshot(BaseModel):
    """
    価格付きのカートの不変スナップショット。

    価格はカート行に記録された単価をそのまま使う（追加時の価格）。
    同じカート状態からは常に同じ total と content_hash が得られる。
    """

    model_config = ConfigDict(frozen=True)

    snapshot_id: str
    customer_id: str
    lines: tuple[CartLine, ...]
    captured_at: datetime
    currency: str = "USD"

    @property
    def total(self) -> Decimal:
        return sum((line.subtotal for line in self.lines), Decimal("0")).quantize(CENTS)

    @property
    def content_hash(self) -> str:
        payload = json.dumps(
            {
                "customer_id": self.customer_id,
                "currency": self.currency,
                "lines": sorted(
                    [line.sku, str(line.unit_price.quantize(CENTS)), line.quantity]
                    for line in self.lines
                ),
            },
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode()).hexdigest()


def derive_idempotency_key(customer_id: str, snapshot: CartSnapshot) -> str:
    """呼び出し側がキーを渡さなかった場合のキー: customer_id + カート内容のハッシュ"""
    digest = hashlib.sha256(f"{customer_id}:{snapshot.content_hash}".encode())
    return f"derived-{digest.hexdigest()}"


class SagaRecord(BaseModel):
    saga_id: str
    idempotency_key: str
    customer_id: str
    step: SagaStep
    reservation_id: str | None = None
    payment_key: str | None = None
    provider_ref: str | None = None
    order_id: str | None = None
    snapshot: CartSnapshot | None = None
    total: Decimal | None = None
    currency: str = "USD"
    error_code: str | None = None
    error_detail: str | None = None
    last_error: str | None = None
    owner: str | None = None
    lease_expires_at: datetime | None = None
    attempts: int = 0
    created_at: datetime
    updated_at: datetime
    archived_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.step in TERMINAL_STEPS


class CheckoutResult(BaseModel):
    saga_id: str
    order_id: str
    status: str
    total: Decimal
    currency: str
