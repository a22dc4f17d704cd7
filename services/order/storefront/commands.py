"""
Order Service — コマンドハンドラ (Write 側)

注文ライフサイクル: 作成・キャンセル・管理者による更新・削除。
在庫台帳 (inventory) と注文の書き込みは、操作ごとに 1 つの
トランザクションにまとめる。途中で失敗すれば在庫の増減も含めて
すべてロールバックされる。

注文ステータスの更新は「読んだ時点のステータスのままなら更新する」
条件付き UPDATE で行う。同じ注文への同時キャンセルで在庫を
二重に戻すことはない (後から来た方は更新件数 0 で失敗する)。

コミット後、Redis Pub/Sub でイベントを発行する（他サービスへ通知）。
"""

import json
import logging
from datetime import datetime, timezone
from uuid import uuid4

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import inventory, queries
from .aggregate import (
    METHOD_FIELDS,
    InventoryEffect,
    OrderAggregate,
    OrderLineItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    generate_order_number,
    initial_state,
    validate_payment,
)
from .auth import Caller
from .db import stamped, transaction
from .errors import (
    Forbidden,
    NotFound,
    TransientError,
    Unauthorized,
    ValidationError,
)
from .events import (
    INVENTORY_CHANNEL,
    ORDER_CHANNEL,
    InventoryReleased,
    InventoryReserved,
    OrderCancelled,
    OrderCreated,
    OrderDeleted,
    OrderUpdated,
)

logger = logging.getLogger(__name__)

GUEST_ADDRESS_FIELDS = (
    "first_name", "last_name", "street", "city", "state", "postal_code", "phone",
)
DEFAULT_COUNTRY = "Bangladesh"

STOCK_RESTORED = " Stock has been restored."
STOCK_REDUCED = " Stock has been reduced."


# ── 作成 ─────────────────────────────────────────


def _validate_new_order(
    caller: Caller | None,
    items: list[OrderLineItem],
    payment_method: PaymentMethod,
    payment_fields: dict,
    shipping_address_id: str | None,
    guest_email: str | None,
    guest_shipping_address: dict | None,
    total: float | None,
) -> None:
    """書き込み前の検証。失敗しても副作用は無い。"""
    if not items:
        raise ValidationError("At least one item is required")
    if total is None:
        raise ValidationError("Missing required fields", field="total")

    if caller is not None:
        if not shipping_address_id:
            raise ValidationError(
                "A shipping address is required", field="shippingAddressId"
            )
    else:
        if not guest_email or not guest_shipping_address:
            raise ValidationError(
                "Guest email and shipping address are required for guest checkout"
            )
        missing = [f for f in GUEST_ADDRESS_FIELDS if not guest_shipping_address.get(f)]
        if missing:
            raise ValidationError(
                "Guest shipping address is incomplete", missing=missing
            )

    validate_payment(payment_method, payment_fields)


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    caller: Caller | None,
    *,
    items: list[OrderLineItem],
    payment_method: PaymentMethod,
    payment_fields: dict,
    shipping_address_id: str | None = None,
    guest_email: str | None = None,
    guest_shipping_address: dict | None = None,
    subtotal: float = 0,
    tax: float = 0,
    shipping: float = 0,
    discount: float = 0,
    total: float | None = None,
) -> dict:
    """
    注文作成コマンド

    1. 明細行の順に在庫を引き当てる (1 件でも不足なら全体をロールバック)
    2. 注文番号を採番し、支払い方法から初期ステータスを決める
    3. ゲストなら配送先を登録し、注文と明細行を保存
    4. ログインユーザーならカートを空にする
    """
    _validate_new_order(
        caller, items, payment_method, payment_fields,
        shipping_address_id, guest_email, guest_shipping_address, total,
    )

    order_id = str(uuid4())
    status, payment_status = initial_state(payment_method)
    method_values = {
        name: payment_fields.get(name) or None
        for name in ("bkash_number", "bkash_reference", "bkash_transaction")
        if name in METHOD_FIELDS[payment_method]
    }
    now = datetime.now(timezone.utc)

    async with transaction(session):
        guest_address_id = None
        if caller is not None:
            owned = await session.execute(
                text("SELECT id FROM addresses WHERE id = :id AND user_id = :uid"),
                {"id": shipping_address_id, "uid": caller.user_id},
            )
            if owned.fetchone() is None:
                raise ValidationError(
                    "Shipping address not found", field="shippingAddressId"
                )

        # 1. 在庫引き当て (先頭から順に。最初の失敗で中断)
        for item in items:
            await inventory.reserve(session, item.product_id, item.quantity)

        # 2. 注文番号
        order_number = generate_order_number()

        # 3. ゲスト配送先
        if caller is None:
            guest_address_id = str(uuid4())
            await session.execute(
                stamped("""
                    INSERT INTO guest_shipping_addresses
                        (id, first_name, last_name, street, city, state,
                         postal_code, country, phone, email, created_at)
                    VALUES
                        (:id, :first_name, :last_name, :street, :city, :state,
                         :postal_code, :country, :phone, :email, :now)
                """),
                {
                    "id": guest_address_id,
                    **{f: guest_shipping_address[f] for f in GUEST_ADDRESS_FIELDS},
                    "country": guest_shipping_address.get("country") or DEFAULT_COUNTRY,
                    "email": guest_email,
                    "now": now,
                },
            )

        await session.execute(
            stamped("""
                INSERT INTO orders
                    (id, order_number, user_id, shipping_address_id,
                     guest_email, guest_shipping_address_id,
                     status, payment_status, payment_method,
                     bkash_number, bkash_reference, bkash_transaction,
                     subtotal, tax, shipping, discount, total,
                     created_at, updated_at)
                VALUES
                    (:id, :order_number, :user_id, :shipping_address_id,
                     :guest_email, :guest_shipping_address_id,
                     :status, :payment_status, :payment_method,
                     :bkash_number, :bkash_reference, :bkash_transaction,
                     :subtotal, :tax, :shipping, :discount, :total,
                     :now, :now)
            """),
            {
                "id": order_id,
                "order_number": order_number,
                "user_id": caller.user_id if caller else None,
                "shipping_address_id": shipping_address_id if caller else None,
                "guest_email": None if caller else guest_email,
                "guest_shipping_address_id": guest_address_id,
                "status": status.value,
                "payment_status": payment_status.value,
                "payment_method": payment_method.value,
                "bkash_number": method_values.get("bkash_number"),
                "bkash_reference": method_values.get("bkash_reference"),
                "bkash_transaction": method_values.get("bkash_transaction"),
                "subtotal": subtotal or 0,
                "tax": tax or 0,
                "shipping": shipping or 0,
                "discount": discount or 0,
                "total": total,
                "now": now,
            },
        )

        for position, item in enumerate(items):
            await session.execute(
                text("""
                    INSERT INTO order_items
                        (id, order_id, position, product_id, quantity, price, color, size)
                    VALUES
                        (:id, :order_id, :position, :product_id, :quantity, :price, :color, :size)
                """),
                {
                    "id": str(uuid4()),
                    "order_id": order_id,
                    "position": position,
                    "product_id": item.product_id,
                    "quantity": item.quantity,
                    "price": item.unit_price,
                    "color": item.color or "",
                    "size": item.size or "",
                },
            )

        # 4. カートを空にする
        if caller is not None:
            await session.execute(
                text("DELETE FROM cart_items WHERE user_id = :uid"),
                {"uid": caller.user_id},
            )

    logger.info(
        "Order %s created (%s items, status=%s, owner=%s)",
        order_number, len(items), status.value,
        caller.user_id if caller else f"guest:{guest_email}",
    )

    await _publish(redis, ORDER_CHANNEL, "OrderCreated", OrderCreated(
        order_id=order_id,
        order_number=order_number,
        user_id=caller.user_id if caller else None,
        guest_email=None if caller else guest_email,
        payment_method=payment_method.value,
        status=status.value,
        payment_status=payment_status.value,
        total=total,
        timestamp=now,
    ))
    await _publish_inventory(redis, "InventoryReserved", order_id, items, now)

    return await queries.fetch_order(session, order_id)


# ── キャンセル ───────────────────────────────────


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    caller: Caller | None,
    order_id: str,
) -> dict:
    """
    注文キャンセルコマンド (本人または管理者)

    PENDING / CONFIRMED のみ。全明細行の在庫を戻し、
    支払い済みなら REFUNDED、それ以外は FAILED にする。
    """
    if caller is None:
        raise Unauthorized()

    now = datetime.now(timezone.utc)
    async with transaction(session):
        agg = await _load_visible(session, caller, order_id)
        agg.ensure_cancellable()
        refund = agg.refund_status()

        await _compare_and_set(
            session, agg,
            {"status": OrderStatus.CANCELLED.value, "payment_status": refund.value},
            now,
        )
        for item in agg.items:
            await inventory.release(session, item.product_id, item.quantity)

    logger.info("Order %s cancelled by %s; stock restored", agg.order_number, caller.user_id)

    await _publish(redis, ORDER_CHANNEL, "OrderCancelled", OrderCancelled(
        order_id=agg.id,
        order_number=agg.order_number,
        payment_status=refund.value,
        timestamp=now,
    ))
    await _publish_inventory(redis, "InventoryReleased", agg.id, agg.items, now)

    order = await queries.fetch_order(session, agg.id)
    if not caller.is_admin:
        order.pop("user", None)
    return {
        "order": order,
        "message": "Order cancelled successfully." + STOCK_RESTORED,
    }


# ── 管理者による更新 ─────────────────────────────


async def admin_update_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    caller: Caller | None,
    order_id: str,
    *,
    status: OrderStatus | None = None,
    payment_status: PaymentStatus | None = None,
    admin_notes: str | None = None,
    bkash_transaction: str | None = None,
    bkash_reference: str | None = None,
) -> dict:
    """
    管理者による注文更新コマンド

    在庫への影響はステータス変更だけが決める:
        有効 → CANCELLED   在庫を戻す
        CANCELLED → 有効   在庫を再減算 (在庫数は確認しない)
        それ以外           在庫は変わらない
    """
    if caller is None:
        raise Unauthorized()
    if not caller.is_admin:
        raise Forbidden()

    changes: dict = {}
    if status is not None:
        changes["status"] = status.value
    if payment_status is not None:
        changes["payment_status"] = payment_status.value
    if admin_notes is not None:
        changes["admin_notes"] = admin_notes
    if bkash_transaction:
        changes["bkash_transaction"] = bkash_transaction
    if bkash_reference:
        changes["bkash_reference"] = bkash_reference
    if not changes:
        raise ValidationError("Nothing to update")

    now = datetime.now(timezone.utc)
    async with transaction(session):
        agg = await _load_aggregate(session, order_id)
        if agg is None:
            raise NotFound("Order not found")

        effect = agg.inventory_effect(status)
        await _compare_and_set(session, agg, changes, now)

        for item in agg.items:
            if effect is InventoryEffect.RELEASE:
                await inventory.release(session, item.product_id, item.quantity)
            elif effect is InventoryEffect.DEDUCT:
                await inventory.force_deduct(session, item.product_id, item.quantity)

    new_status = status or agg.status
    logger.info(
        "Order %s updated by admin %s: %s -> %s (inventory %s)",
        agg.order_number, caller.user_id, agg.status.value, new_status.value, effect.value,
    )

    await _publish(redis, ORDER_CHANNEL, "OrderUpdated", OrderUpdated(
        order_id=agg.id,
        order_number=agg.order_number,
        previous_status=agg.status.value,
        status=new_status.value,
        payment_status=(payment_status or agg.payment_status).value,
        inventory_effect=effect.value,
        timestamp=now,
    ))
    if effect is InventoryEffect.RELEASE:
        await _publish_inventory(redis, "InventoryReleased", agg.id, agg.items, now)
    elif effect is InventoryEffect.DEDUCT:
        await _publish_inventory(redis, "InventoryReserved", agg.id, agg.items, now)

    message = "Order updated successfully."
    if effect is InventoryEffect.RELEASE:
        message += STOCK_RESTORED
    elif effect is InventoryEffect.DEDUCT:
        message += STOCK_REDUCED

    return {"order": await queries.fetch_order(session, agg.id), "message": message}


# ── 削除 ─────────────────────────────────────────


async def delete_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    caller: Caller | None,
    order_id: str,
) -> dict:
    """
    注文削除コマンド

    管理者はどの注文も削除できる。本人は PENDING の注文だけ。
    全明細行の在庫を戻してから注文と明細行を削除する。
    """
    if caller is None:
        raise Unauthorized()

    now = datetime.now(timezone.utc)
    async with transaction(session):
        agg = await _load_visible(session, caller, order_id)
        agg.ensure_deletable_by(caller.is_admin)

        # 注文行を先にロックする (ロック順: 注文 → 商品)
        deleted = await session.execute(
            text("DELETE FROM orders WHERE id = :id AND status = :status"),
            {"id": agg.id, "status": agg.status.value},
        )
        if deleted.rowcount != 1:
            raise TransientError("Order was modified by another request. Please retry.")
        await session.execute(
            text("DELETE FROM order_items WHERE order_id = :id"), {"id": agg.id}
        )

        # キャンセル済みの注文は在庫を戻し済み
        if agg.status.is_active:
            for item in agg.items:
                await inventory.release(session, item.product_id, item.quantity)

    logger.info("Order %s deleted by %s", agg.order_number, caller.user_id)

    await _publish(redis, ORDER_CHANNEL, "OrderDeleted", OrderDeleted(
        order_id=agg.id, order_number=agg.order_number, timestamp=now,
    ))
    if not agg.status.is_active:
        return {
            "message": "Order deleted successfully. "
            "Stock was already restored when the order was cancelled."
        }

    await _publish_inventory(redis, "InventoryReleased", agg.id, agg.items, now)
    return {"message": "Order deleted successfully." + STOCK_RESTORED}


# ── 内部ヘルパー ─────────────────────────────────


async def _load_aggregate(session: AsyncSession, order_id: str) -> OrderAggregate | None:
    result = await session.execute(
        text("""
            SELECT id, order_number, user_id, shipping_address_id,
                   guest_email, guest_shipping_address_id,
                   status, payment_status, payment_method
            FROM orders WHERE id = :id
        """),
        {"id": order_id},
    )
    row = result.fetchone()
    if row is None:
        return None
    items = await session.execute(
        text("""
            SELECT product_id, quantity, price, color, size
            FROM order_items WHERE order_id = :id
            ORDER BY position
        """),
        {"id": order_id},
    )
    return OrderAggregate.from_rows(row, items.fetchall())


async def _load_visible(session: AsyncSession, caller: Caller, order_id: str) -> OrderAggregate:
    """
    呼び出し元が変更できる注文を読む。

    他人の注文は存在しても NotFound (403 にすると存在が漏れる)。
    """
    agg = await _load_aggregate(session, order_id)
    if agg is None or not (caller.is_admin or agg.is_owned_by(caller.user_id)):
        raise NotFound("Order not found")
    return agg


async def _compare_and_set(
    session: AsyncSession, agg: OrderAggregate, changes: dict, now: datetime
) -> None:
    """読んだ時点のステータス・支払い状態のままなら更新する。"""
    assignments = ", ".join(f"{column} = :new_{column}" for column in changes)
    result = await session.execute(
        stamped(f"""
            UPDATE orders
            SET {assignments}, updated_at = :now
            WHERE id = :id AND status = :expected_status
              AND payment_status = :expected_payment_status
        """),
        {
            **{f"new_{column}": value for column, value in changes.items()},
            "id": agg.id,
            "expected_status": agg.status.value,
            "expected_payment_status": agg.payment_status.value,
            "now": now,
        },
    )
    if result.rowcount != 1:
        raise TransientError("Order was modified by another request. Please retry.")


async def _publish(
    redis: aioredis.Redis | None, channel: str, event_type: str, event: BaseModel
) -> None:
    """
    コミット済みのイベントを Redis Pub/Sub に発行する。

    発行の失敗はコミット済みの状態を変えない。ログに残して続行する。
    """
    if redis is None:
        return
    try:
        await redis.publish(channel, json.dumps({
            "event_type": event_type,
            "data": event.model_dump(mode="json"),
        }, default=str))
    except RedisError:
        logger.exception("Failed to publish %s on %s", event_type, channel)


async def _publish_inventory(
    redis: aioredis.Redis | None,
    event_type: str,
    order_id: str,
    items,
    now: datetime,
) -> None:
    model = InventoryReserved if event_type == "InventoryReserved" else InventoryReleased
    for item in items:
        await _publish(redis, INVENTORY_CHANNEL, event_type, model(
            product_id=item.product_id,
            order_id=order_id,
            quantity=item.quantity,
            timestamp=now,
        ))
