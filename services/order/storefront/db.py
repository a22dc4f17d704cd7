"""
Order Service — データベース

エンジン・セッションファクトリ・スキーマ定義・トランザクション境界。

注文と在庫は同じデータベースに置く。複数行にまたがる更新
(在庫引き当て → 注文作成 など) は必ず 1 つのトランザクションで行い、
途中で失敗したら全体をロールバックする。
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql.elements import TextClause

from .errors import TransientError

logger = logging.getLogger(__name__)

TIMESTAMP = DateTime(timezone=True)


# ── スキーマ ─────────────────────────────────────
#
# PostgreSQL と SQLite の両方で通る DDL だけを使う。
# products.stock に CHECK 制約は付けない (管理者による再有効化は
# 在庫を確認せずに減算するため、負になり得る)。

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id          VARCHAR(36) PRIMARY KEY,
        name        VARCHAR(255),
        email       VARCHAR(255) NOT NULL UNIQUE,
        created_at  TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id          VARCHAR(36) PRIMARY KEY,
        name        VARCHAR(255) NOT NULL,
        price       DOUBLE PRECISION NOT NULL DEFAULT 0,
        stock       INTEGER NOT NULL DEFAULT 0,
        updated_at  TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS addresses (
        id           VARCHAR(36) PRIMARY KEY,
        user_id      VARCHAR(36) NOT NULL REFERENCES users (id),
        first_name   VARCHAR(255),
        last_name    VARCHAR(255),
        street       VARCHAR(255),
        city         VARCHAR(255),
        state        VARCHAR(255),
        postal_code  VARCHAR(32),
        country      VARCHAR(255),
        phone        VARCHAR(64)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS guest_shipping_addresses (
        id           VARCHAR(36) PRIMARY KEY,
        first_name   VARCHAR(255),
        last_name    VARCHAR(255),
        street       VARCHAR(255),
        city         VARCHAR(255),
        state        VARCHAR(255),
        postal_code  VARCHAR(32),
        country      VARCHAR(255),
        phone        VARCHAR(64),
        email        VARCHAR(255),
        created_at   TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id                         VARCHAR(36) PRIMARY KEY,
        order_number               VARCHAR(64) NOT NULL UNIQUE,
        user_id                    VARCHAR(36) REFERENCES users (id),
        shipping_address_id        VARCHAR(36) REFERENCES addresses (id),
        guest_email                VARCHAR(255),
        guest_shipping_address_id  VARCHAR(36) REFERENCES guest_shipping_addresses (id),
        status                     VARCHAR(32) NOT NULL,
        payment_status             VARCHAR(32) NOT NULL,
        payment_method             VARCHAR(32) NOT NULL,
        bkash_number               VARCHAR(64),
        bkash_reference            VARCHAR(128),
        bkash_transaction          VARCHAR(128),
        subtotal                   DOUBLE PRECISION NOT NULL DEFAULT 0,
        tax                        DOUBLE PRECISION NOT NULL DEFAULT 0,
        shipping                   DOUBLE PRECISION NOT NULL DEFAULT 0,
        discount                   DOUBLE PRECISION NOT NULL DEFAULT 0,
        total                      DOUBLE PRECISION NOT NULL,
        admin_notes                TEXT,
        created_at                 TIMESTAMP WITH TIME ZONE,
        updated_at                 TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id          VARCHAR(36) PRIMARY KEY,
        order_id    VARCHAR(36) NOT NULL REFERENCES orders (id) ON DELETE CASCADE,
        position    INTEGER NOT NULL,
        product_id  VARCHAR(36) NOT NULL REFERENCES products (id),
        quantity    INTEGER NOT NULL,
        price       DOUBLE PRECISION NOT NULL,
        color       VARCHAR(64) NOT NULL DEFAULT '',
        size        VARCHAR(64) NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cart_items (
        id          VARCHAR(36) PRIMARY KEY,
        user_id     VARCHAR(36) NOT NULL REFERENCES users (id),
        product_id  VARCHAR(36) NOT NULL REFERENCES products (id),
        quantity    INTEGER NOT NULL,
        color       VARCHAR(64) NOT NULL DEFAULT '',
        size        VARCHAR(64) NOT NULL DEFAULT ''
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_user_id ON orders (user_id)",
    "CREATE INDEX IF NOT EXISTS ix_orders_guest_email ON orders (guest_email)",
    "CREATE INDEX IF NOT EXISTS ix_orders_created_at ON orders (created_at)",
    "CREATE INDEX IF NOT EXISTS ix_order_items_order_id ON order_items (order_id)",
    "CREATE INDEX IF NOT EXISTS ix_cart_items_user_id ON cart_items (user_id)",
]


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する。"""
    async with engine.begin() as conn:
        for ddl in SCHEMA:
            await conn.execute(text(ddl))


def stamped(sql: str) -> TextClause:
    """:now を TIMESTAMP 型として束縛する text()。"""
    return text(sql).bindparams(bindparam("now", type_=TIMESTAMP))


@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    1 リクエスト分の原子的なトランザクション。

    ブロック内で例外が出れば全体をロールバックする。
    ロック待ちタイムアウト・デッドロック・接続断は TransientError に変換する
    (業務エラーとは区別し、再試行可能として返す)。
    テーブル欠落や SQL の誤りなど、それ以外のストアのエラーはそのまま送出する。
    """
    try:
        async with session.begin():
            yield session
    except DBAPIError as exc:
        if exc.connection_invalidated:
            logger.warning("Connection lost during transaction: %s", exc.orig)
            raise TransientError(
                "The connection to the store was lost. Please retry."
            ) from exc
        if not is_transient(exc):
            raise
        logger.warning("Transaction aborted by the store: %s", exc.orig)
        raise TransientError(
            "The store could not complete the transaction. Please retry."
        ) from exc


# serialization_failure, deadlock_detected, lock_not_available, query_canceled
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01", "55P03", "57014"})

# SQLite はロック競合を OperationalError のメッセージでしか区別できない
SQLITE_BUSY_MESSAGES = ("database is locked", "database is busy", "database table is locked")


def is_transient(exc: DBAPIError) -> bool:
    """再試行で解消し得るストアのエラーか。"""
    if _sqlstate(exc) in RETRYABLE_SQLSTATES:
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig).lower()
        return any(m in message for m in SQLITE_BUSY_MESSAGES)
    return False


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
