"""
Order Service — クエリハンドラ (Read 側)

注文の一覧・検索・詳細。在庫には触れない。

可視範囲:
    管理者        すべての注文
    一般ユーザー  自分の注文 + 自分のメールアドレスで作られたゲスト注文
"""

import math

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import Caller
from .db import TIMESTAMP
from .errors import NotFound

_ORDER_SELECT = """
    SELECT
        o.id, o.order_number, o.user_id, o.shipping_address_id,
        o.guest_email, o.guest_shipping_address_id,
        o.status, o.payment_status, o.payment_method,
        o.bkash_number, o.bkash_reference, o.bkash_transaction,
        o.subtotal, o.tax, o.shipping, o.discount, o.total,
        o.admin_notes, o.created_at, o.updated_at,
        u.name AS user_name, u.email AS user_email,
        a.first_name AS a_first_name, a.last_name AS a_last_name,
        a.street AS a_street, a.city AS a_city, a.state AS a_state,
        a.postal_code AS a_postal_code, a.country AS a_country, a.phone AS a_phone,
        g.first_name AS g_first_name, g.last_name AS g_last_name,
        g.street AS g_street, g.city AS g_city, g.state AS g_state,
        g.postal_code AS g_postal_code, g.country AS g_country, g.phone AS g_phone,
        g.email AS g_email
    FROM orders o
    LEFT JOIN users u ON u.id = o.user_id
    LEFT JOIN addresses a ON a.id = o.shipping_address_id
    LEFT JOIN guest_shipping_addresses g ON g.id = o.guest_shipping_address_id
"""

_SEARCH_FIELDS = """
    LOWER(o.order_number) LIKE :q ESCAPE '\\'
    OR EXISTS (
        SELECT 1 FROM addresses sa
        WHERE sa.id = o.shipping_address_id AND (
            LOWER(sa.city) LIKE :q ESCAPE '\\' OR LOWER(sa.state) LIKE :q ESCAPE '\\'
            OR LOWER(sa.street) LIKE :q ESCAPE '\\'
            OR LOWER(sa.first_name) LIKE :q ESCAPE '\\'
            OR LOWER(sa.last_name) LIKE :q ESCAPE '\\'
        )
    )
    OR EXISTS (
        SELECT 1 FROM guest_shipping_addresses sg
        WHERE sg.id = o.guest_shipping_address_id AND (
            LOWER(sg.city) LIKE :q ESCAPE '\\' OR LOWER(sg.state) LIKE :q ESCAPE '\\'
            OR LOWER(sg.street) LIKE :q ESCAPE '\\'
            OR LOWER(sg.first_name) LIKE :q ESCAPE '\\'
            OR LOWER(sg.last_name) LIKE :q ESCAPE '\\'
            OR LOWER(sg.email) LIKE :q ESCAPE '\\'
        )
    )
    OR EXISTS (
        SELECT 1 FROM order_items si JOIN products sp ON sp.id = si.product_id
        WHERE si.order_id = o.id AND LOWER(sp.name) LIKE :q ESCAPE '\\'
    )
"""

# 決済の参照番号と購入者のメールアドレスは管理者だけが検索できる
_ADMIN_SEARCH_FIELDS = """
    OR LOWER(o.bkash_reference) LIKE :q ESCAPE '\\'
    OR LOWER(o.bkash_number) LIKE :q ESCAPE '\\'
    OR LOWER(o.bkash_transaction) LIKE :q ESCAPE '\\'
    OR LOWER(o.guest_email) LIKE :q ESCAPE '\\'
    OR EXISTS (
        SELECT 1 FROM users su
        WHERE su.id = o.user_id AND LOWER(su.email) LIKE :q ESCAPE '\\'
    )
"""


def _like_pattern(search: str) -> str:
    escaped = search.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _address(row, prefix: str, address_id: str | None, with_email: bool = False) -> dict | None:
    if not address_id:
        return None
    address = {
        "id": address_id,
        "firstName": getattr(row, f"{prefix}_first_name"),
        "lastName": getattr(row, f"{prefix}_last_name"),
        "street": getattr(row, f"{prefix}_street"),
        "city": getattr(row, f"{prefix}_city"),
        "state": getattr(row, f"{prefix}_state"),
        "postalCode": getattr(row, f"{prefix}_postal_code"),
        "country": getattr(row, f"{prefix}_country"),
        "phone": getattr(row, f"{prefix}_phone"),
    }
    if with_email:
        address["email"] = getattr(row, f"{prefix}_email")
    return address


def _order_dict(row, items: list[dict], include_user: bool) -> dict:
    order = {
        "id": row.id,
        "orderNumber": row.order_number,
        "userId": row.user_id,
        "guestEmail": row.guest_email,
        "status": row.status,
        "paymentStatus": row.payment_status,
        "paymentMethod": row.payment_method,
        "bkashNumber": row.bkash_number,
        "bkashReference": row.bkash_reference,
        "bkashTransaction": row.bkash_transaction,
        "subtotal": float(row.subtotal),
        "tax": float(row.tax),
        "shipping": float(row.shipping),
        "discount": float(row.discount),
        "total": float(row.total),
        "adminNotes": row.admin_notes,
        "createdAt": _iso(row.created_at),
        "updatedAt": _iso(row.updated_at),
        "items": items,
        "shippingAddress": _address(row, "a", row.shipping_address_id),
        "guestShippingAddress": _address(
            row, "g", row.guest_shipping_address_id, with_email=True
        ),
    }
    if include_user:
        order["user"] = (
            {"id": row.user_id, "name": row.user_name, "email": row.user_email}
            if row.user_id
            else None
        )
    return order


async def _load_items(session: AsyncSession, order_ids: list[str]) -> dict[str, list[dict]]:
    if not order_ids:
        return {}
    result = await session.execute(
        text("""
            SELECT oi.id, oi.order_id, oi.product_id, oi.quantity, oi.price,
                   oi.color, oi.size, p.name AS product_name, p.price AS product_price
            FROM order_items oi
            LEFT JOIN products p ON p.id = oi.product_id
            WHERE oi.order_id IN :ids
            ORDER BY oi.order_id, oi.position
        """).bindparams(bindparam("ids", expanding=True)),
        {"ids": order_ids},
    )
    items: dict[str, list[dict]] = {oid: [] for oid in order_ids}
    for r in result.fetchall():
        items[r.order_id].append({
            "id": r.id,
            "productId": r.product_id,
            "quantity": r.quantity,
            "price": float(r.price),
            "color": r.color,
            "size": r.size,
            "product": {
                "id": r.product_id,
                "name": r.product_name,
                "price": float(r.product_price) if r.product_price is not None else None,
            },
        })
    return items


async def _load_orders(
    session: AsyncSession, order_ids: list[str], include_user: bool = True
) -> list[dict]:
    """order_ids の順序を保ったまま注文を組み立てる。"""
    if not order_ids:
        return []
    result = await session.execute(
        text(_ORDER_SELECT + " WHERE o.id IN :ids")
        .bindparams(bindparam("ids", expanding=True))
        .columns(created_at=TIMESTAMP, updated_at=TIMESTAMP),
        {"ids": order_ids},
    )
    rows = {row.id: row for row in result.fetchall()}
    items = await _load_items(session, order_ids)
    return [
        _order_dict(rows[oid], items[oid], include_user)
        for oid in order_ids
        if oid in rows
    ]


async def fetch_order(session: AsyncSession, order_id: str) -> dict | None:
    """可視範囲を確認せずに注文を取得する (コマンドの応答用)。"""
    orders = await _load_orders(session, [order_id])
    return orders[0] if orders else None


async def get_order(session: AsyncSession, caller: Caller, order_id: str) -> dict:
    """呼び出し元に見える注文を 1 件返す。見えなければ NotFound。"""
    order = await fetch_order(session, order_id)
    if order is None or not _visible(order, caller):
        raise NotFound("Order not found")
    if not caller.is_admin:
        order.pop("user", None)
    return order


def _visible(order: dict, caller: Caller) -> bool:
    if caller.is_admin:
        return True
    if order["userId"] == caller.user_id:
        return True
    guest_email = order["guestEmail"]
    return bool(guest_email) and guest_email.lower() == caller.email.lower()


async def list_orders(
    session: AsyncSession,
    caller: Caller,
    *,
    search: str = "",
    status: str = "",
    payment_method: str = "",
    page: int = 1,
    limit: int = 10,
) -> dict:
    """
    注文一覧 (新しい順)。

    status / payment_method が空または "ALL" なら絞り込まない。
    pages = ceil(total / limit)
    """
    conditions: list[str] = []
    params: dict = {}

    if not caller.is_admin:
        conditions.append(
            "(o.user_id = :uid OR LOWER(o.guest_email) = LOWER(:email))"
        )
        params["uid"] = caller.user_id
        params["email"] = caller.email

    if search:
        fields = _SEARCH_FIELDS + (_ADMIN_SEARCH_FIELDS if caller.is_admin else "")
        conditions.append(f"({fields})")
        params["q"] = _like_pattern(search)

    if status and status != "ALL":
        conditions.append("o.status = :status")
        params["status"] = status

    if payment_method and payment_method != "ALL":
        conditions.append("o.payment_method = :payment_method")
        params["payment_method"] = payment_method

    where = f" WHERE {' AND '.join(conditions)}" if conditions else ""

    total = (
        await session.execute(text(f"SELECT COUNT(*) FROM orders o{where}"), params)
    ).scalar_one()

    result = await session.execute(
        text(f"""
            SELECT o.id FROM orders o{where}
            ORDER BY o.created_at DESC, o.order_number DESC
            LIMIT :limit OFFSET :offset
        """),
        {**params, "limit": limit, "offset": (page - 1) * limit},
    )
    order_ids = [row.id for row in result.fetchall()]
    orders = await _load_orders(session, order_ids, include_user=caller.is_admin)

    return {
        "orders": orders,
        "meta": {
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit),
            "search": search,
            "status": status,
            "paymentMethod": payment_method,
            "isAdmin": caller.is_admin,
        },
    }
