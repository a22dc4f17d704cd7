"""
Order Service — イベント定義

コミット後に Redis Pub/Sub で発行するドメインイベント。
イベントは過去形で命名し、不変(immutable)として扱う。

    order_events      注文の作成・キャンセル・更新・削除
    inventory_events  明細行ごとの在庫引き当て・解放
"""

from datetime import datetime

from pydantic import BaseModel

ORDER_CHANNEL = "order_events"
INVENTORY_CHANNEL = "inventory_events"


class OrderCreated(BaseModel):
    """注文が作成された"""
    order_id: str
    order_number: str
    user_id: str | None
    guest_email: str | None
    payment_method: str
    status: str
    payment_status: str
    total: float
    timestamp: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされた（在庫は戻し済み）"""
    order_id: str
    order_number: str
    payment_status: str
    timestamp: datetime


class OrderUpdated(BaseModel):
    """管理者が注文のステータス・支払い状態・メモを変更した"""
    order_id: str
    order_number: str
    previous_status: str
    status: str
    payment_status: str
    inventory_effect: str
    timestamp: datetime


class OrderDeleted(BaseModel):
    """注文が削除された（在庫は戻し済み）"""
    order_id: str
    order_number: str
    timestamp: datetime


class InventoryReserved(BaseModel):
    """在庫が引き当てられた（または再減算された）"""
    product_id: str
    order_id: str
    quantity: int
    timestamp: datetime


class InventoryReleased(BaseModel):
    """在庫の引き当てが解放された"""
    product_id: str
    order_id: str
    quantity: int
    timestamp: datetime
