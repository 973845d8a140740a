"""
Inventory Service — イベント定義

在庫ドメインで発生するイベント。過去形で命名する。
"""

from datetime import datetime

from pydantic import BaseModel


class ReservedLine(BaseModel):
    sku: str
    quantity: int


class StockReserved(BaseModel):
    """チェックアウト1回分の在庫がまとめて予約された"""
    reservation_id: str
    saga_id: str | None
    entries: list[ReservedLine]
    expires_at: datetime
    timestamp: datetime


class StockReservationFailed(BaseModel):
    """在庫不足で予約できなかった (どの SKU も変更されていない)"""
    reservation_id: str
    saga_id: str | None
    sku: str
    quantity_requested: int
    timestamp: datetime


class StockReleased(BaseModel):
    """予約が解放され、在庫が available に戻された（補償 or 期限切れ）"""
    reservation_id: str
    entries: list[ReservedLine]
    reason: str
    timestamp: datetime


class StockCommitted(BaseModel):
    """予約が確定し、減算が恒久化された"""
    reservation_id: str
    timestamp: datetime


class StockRestocked(BaseModel):
    """入荷により在庫が追加された"""
    sku: str
    quantity: int
    total: int
    available: int
    timestamp: datetime
