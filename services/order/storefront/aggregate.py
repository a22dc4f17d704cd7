"""
Order Service — 注文集約 (Order Aggregate)

注文ヘッダ (ステータス・支払い状態・金額) と、作成時に確定する明細行。
ステータス遷移の可否と、遷移に伴う在庫への影響はここで一元的に判定する。
コマンド側はここで判定してから書き込む。

状態遷移:
    PENDING    → CONFIRMED / CANCELLED
    CONFIRMED  → CANCELLED / PROCESSING / SHIPPED / DELIVERED
    CANCELLED  → (管理者のステータス変更でのみ復帰。在庫を再減算する)
    PENDING のみ本人による削除が可能
"""

import random
import string
import time
from dataclasses import dataclass
from enum import Enum

from .errors import InvalidTransition, ValidationError


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    @property
    def is_active(self) -> bool:
        return self is not OrderStatus.CANCELLED


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


class PaymentMethod(str, Enum):
    CASH_ON_DELIVERY = "CASH_ON_DELIVERY"
    BKASH = "BKASH"


class InventoryEffect(str, Enum):
    NONE = "NONE"
    RELEASE = "RELEASE"
    DEDUCT = "DEDUCT"


# 支払い方法ごとの必須項目 (フィールド名, 表示名)
REQUIRED_PAYMENT_FIELDS: dict[PaymentMethod, tuple[tuple[str, str], ...]] = {
    PaymentMethod.CASH_ON_DELIVERY: (),
    PaymentMethod.BKASH: (
        ("bkash_number", "bKash number"),
        ("bkash_reference", "bKash reference number"),
    ),
}

# 支払い方法ごとの初期状態。代引き以外は外部決済の確認を待たずに確定扱い。
INITIAL_STATE: dict[PaymentMethod, tuple[OrderStatus, PaymentStatus]] = {
    PaymentMethod.CASH_ON_DELIVERY: (OrderStatus.PENDING, PaymentStatus.PENDING),
    PaymentMethod.BKASH: (OrderStatus.CONFIRMED, PaymentStatus.PROCESSING),
}

CANCELLABLE_FROM = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})
SELF_DELETABLE_FROM = frozenset({OrderStatus.PENDING})

# 支払い方法固有の任意項目。該当しない支払い方法では保存しない。
METHOD_FIELDS: dict[PaymentMethod, tuple[str, ...]] = {
    PaymentMethod.CASH_ON_DELIVERY: (),
    PaymentMethod.BKASH: ("bkash_number", "bkash_reference", "bkash_transaction"),
}


def validate_payment(method: PaymentMethod, fields: dict) -> None:
    for name, label in REQUIRED_PAYMENT_FIELDS[method]:
        if not fields.get(name):
            raise ValidationError(
                f"{label} is required for {method.value} payments", field=name
            )


def initial_state(method: PaymentMethod) -> tuple[OrderStatus, PaymentStatus]:
    return INITIAL_STATE[method]


def generate_order_number() -> str:
    """ORD-<エポックミリ秒>-<英数字 9 文字>。衝突は実用上起きない前提。"""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


# ── 所有者 ───────────────────────────────────────


@dataclass(frozen=True)
class UserOwner:
    user_id: str
    shipping_address_id: str


@dataclass(frozen=True)
class GuestOwner:
    email: str
    guest_shipping_address_id: str


Owner = UserOwner | GuestOwner


# ── 明細行 ───────────────────────────────────────

# quantity / stock 列 (INTEGER) に収まる上限
MAX_QUANTITY = 2**31 - 1


@dataclass(frozen=True)
class OrderLineItem:
    product_id: str
    quantity: int
    unit_price: float
    color: str = ""
    size: str = ""

    def __post_init__(self) -> None:
        if not 0 < self.quantity <= MAX_QUANTITY:
            raise ValidationError(
                f"Quantity must be between 1 and {MAX_QUANTITY} for product {self.product_id}",
                productId=self.product_id,
            )


# ── 集約 ─────────────────────────────────────────


class OrderAggregate:
    """注文集約 — DB の行から現在の状態を組み立てる。"""

    def __init__(self) -> None:
        self.id: str | None = None
        self.order_number: str = ""
        self.owner: Owner | None = None
        self.status: OrderStatus = OrderStatus.PENDING
        self.payment_status: PaymentStatus = PaymentStatus.PENDING
        self.items: tuple[OrderLineItem, ...] = ()

    @classmethod
    def from_rows(cls, order_row, item_rows) -> "OrderAggregate":
        agg = cls()
        agg.id = order_row.id
        agg.order_number = order_row.order_number
        if order_row.user_id:
            agg.owner = UserOwner(order_row.user_id, order_row.shipping_address_id)
        else:
            agg.owner = GuestOwner(order_row.guest_email, order_row.guest_shipping_address_id)
        agg.status = OrderStatus(order_row.status)
        agg.payment_status = PaymentStatus(order_row.payment_status)
        agg.items = tuple(
            OrderLineItem(r.product_id, r.quantity, r.price, r.color, r.size)
            for r in item_rows
        )
        return agg

    def is_owned_by(self, user_id: str | None) -> bool:
        return isinstance(self.owner, UserOwner) and self.owner.user_id == user_id

    # ── 遷移チェック ─────────────────────────────

    def ensure_cancellable(self) -> None:
        if self.status not in CANCELLABLE_FROM:
            raise InvalidTransition(
                "Only orders with PENDING or CONFIRMED status can be cancelled.",
                status=self.status.value,
            )

    def ensure_deletable_by(self, is_admin: bool) -> None:
        if is_admin:
            return
        if self.status not in SELF_DELETABLE_FROM:
            raise InvalidTransition(
                "Only orders with PENDING status can be deleted. "
                "Please cancel the order instead.",
                status=self.status.value,
            )

    def refund_status(self) -> PaymentStatus:
        """キャンセル時の支払い状態。支払い済みなら返金、それ以外は失敗扱い。"""
        if self.payment_status is PaymentStatus.COMPLETED:
            return PaymentStatus.REFUNDED
        return PaymentStatus.FAILED

    def inventory_effect(self, new_status: OrderStatus | None) -> InventoryEffect:
        """ステータス変更が在庫に与える影響。支払い状態の変更は在庫に影響しない。"""
        if new_status is None or new_status is self.status:
            return InventoryEffect.NONE
        if self.status.is_active and not new_status.is_active:
            return InventoryEffect.RELEASE
        if not self.status.is_active and new_status.is_active:
            return InventoryEffect.DEDUCT
        return InventoryEffect.NONE
