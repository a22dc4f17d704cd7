"""
Order Service — 在庫台帳 (Inventory Ledger)

products.stock を変更するのはこのモジュールだけ。
どの関数もコミットしない。呼び出し側のトランザクションの中で使う。

引き当て (reserve) は「減らしても負にならない場合だけ減らす」を
1 本の UPDATE で行う:

    UPDATE products SET stock = stock - :qty
    WHERE id = :id AND stock >= :qty

読んでから書く 2 段階にすると、同じ商品への同時注文で
両方が成功してしまう (売り越し)。更新件数 0 なら不足か商品なし。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import stamped
from .errors import InsufficientStock, IntegrityError, ValidationError

logger = logging.getLogger(__name__)


async def _load_product(session: AsyncSession, product_id: str):
    result = await session.execute(
        text("SELECT id, name, price, stock FROM products WHERE id = :id"),
        {"id": product_id},
    )
    return result.fetchone()


async def reserve(session: AsyncSession, product_id: str, quantity: int) -> None:
    """
    在庫引き当て: 在庫が足りる場合だけ quantity 分減らす。

    足りなければ InsufficientStock、商品が存在しなければ ValidationError。
    どちらもトランザクション全体をロールバックさせる。
    """
    result = await session.execute(
        stamped("""
            UPDATE products
            SET stock = stock - :qty, updated_at = :now
            WHERE id = :id AND stock >= :qty
        """),
        {"qty": quantity, "id": product_id, "now": datetime.now(timezone.utc)},
    )
    if result.rowcount == 1:
        return

    row = await _load_product(session, product_id)
    if row is None:
        raise ValidationError(f"Product not found: {product_id}", productId=product_id)

    logger.info(
        "Insufficient stock for %s: available=%s requested=%s",
        product_id, row.stock, quantity,
    )
    raise InsufficientStock(product_id, row.name, row.stock, quantity)


async def release(session: AsyncSession, product_id: str, quantity: int) -> None:
    """
    在庫解放: 以前に引き当てた quantity 分を無条件に戻す。

    商品が無い場合はデータ不整合 (過去のバグ) なので IntegrityError。
    """
    await _adjust(session, product_id, quantity)


async def force_deduct(session: AsyncSession, product_id: str, quantity: int) -> None:
    """
    在庫の無条件減算。キャンセル済み注文を管理者が有効な状態に戻すときだけ使う。

    在庫数は確認しない。その間に他の注文が在庫を使っていれば負になる。
    """
    await _adjust(session, product_id, -quantity)


async def _adjust(session: AsyncSession, product_id: str, delta: int) -> None:
    result = await session.execute(
        stamped("""
            UPDATE products
            SET stock = stock + :delta, updated_at = :now
            WHERE id = :id
        """),
        {"delta": delta, "id": product_id, "now": datetime.now(timezone.utc)},
    )
    if result.rowcount != 1:
        logger.error("Stock adjustment of %s targets missing product %s", delta, product_id)
        raise IntegrityError(
            f"Order line references missing product {product_id}",
            productId=product_id,
        )


async def check_stock(session: AsyncSession, items: list[dict]) -> dict:
    """
    カートの在庫確認 (読み取りのみ)。

    items は {"product_id", "quantity", "name"?} の列。
    チェックアウト前の表示用で、引き当ては行わない。
    """
    stock_results = []
    out_of_stock = []

    for item in items:
        row = await _load_product(session, item["product_id"])
        if row is None:
            out_of_stock.append({
                "productId": item["product_id"],
                "name": item.get("name"),
                "reason": "Product not found",
            })
            continue

        sufficient = row.stock >= item["quantity"]
        if not sufficient:
            out_of_stock.append({
                "productId": row.id,
                "name": row.name,
                "available": row.stock,
                "requested": item["quantity"],
                "reason": "Insufficient stock",
            })
        stock_results.append({
            "productId": row.id,
            "name": row.name,
            "available": row.stock,
            "requested": item["quantity"],
            "sufficient": sufficient,
        })

    return {
        "available": not out_of_stock,
        "stockResults": stock_results,
        "outOfStockItems": out_of_stock,
    }
