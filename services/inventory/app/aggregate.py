"""
Inventory Service — 予約集約 (Reservation Aggregate)

1回のチェックアウトで予約した全 SKU を1つの予約にまとめる。

状態遷移:
    HELD → COMMITTED  (決済成功後に確定。以後、期限切れ解放の対象外)
    HELD → RELEASED   (補償 or 期限切れで解放。数量は available に戻る)
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class ReservationState(str, Enum):
    HELD = "HELD"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"


class ReservationEntry(BaseModel):
    sku: str
    quantity: int


class StockReservation(BaseModel):
    reservation_id: str
    saga_id: str | None = None
    entries: list[ReservationEntry] = []
    state: ReservationState
    expires_at: datetime

    @classmethod
    def from_rows(cls, row, entry_rows) -> "StockReservation":
        """stock_reservations の1行と entries の行から集約を組み立てる。"""
        return cls(
            reservation_id=row.reservation_id,
            saga_id=row.saga_id,
            entries=[
                ReservationEntry(sku=e.sku, quantity=e.quantity) for e in entry_rows
            ],
            state=ReservationState(row.state),
            expires_at=row.expires_at,
        )


class InsufficientStock(Exception):
    """在庫不足。予約は全体としてロールバックされている。"""

    def __init__(self, sku: str, requested: int):
        super().__init__(f"Insufficient stock for {sku}: requested={requested}")
        self.sku = sku
        self.requested = requested


class ReservationNotFound(Exception):
    def __init__(self, reservation_id: str):
        super().__init__(f"Reservation {reservation_id} not found")
        self.reservation_id = reservation_id
