"""Pytest fixtures for the order service tests."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import text

from storefront import db
from storefront.config import Settings
from storefront.main import create_app

ADMIN_EMAIL = "admin@example.com"
ALICE_EMAIL = "alice@example.com"
BOB_EMAIL = "bob@example.com"


def as_user(email: str) -> dict:
    """Identity header the auth gateway would forward."""
    return {"X-User-Email": email}


class Store:
    """Seeds rows and reads stock counts straight from the database."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _write(self, sql, params: dict) -> None:
        async with self.session_factory() as session:
            await session.execute(sql, params)
            await session.commit()

    async def add_user(self, email: str, name: str = "Test User") -> str:
        user_id = str(uuid4())
        await self._write(
            db.stamped(
                "INSERT INTO users (id, name, email, created_at) "
                "VALUES (:id, :name, :email, :now)"
            ),
            {"id": user_id, "name": name, "email": email, "now": datetime.now(timezone.utc)},
        )
        return user_id

    async def add_address(self, user_id: str, city: str = "Dhaka", street: str = "12 Lake Road") -> str:
        address_id = str(uuid4())
        await self._write(
            text("""
                INSERT INTO addresses
                    (id, user_id, first_name, last_name, street, city, state,
                     postal_code, country, phone)
                VALUES
                    (:id, :user_id, 'Test', 'User', :street, :city, 'Dhaka Division',
                     '1207', 'Bangladesh', '01700000000')
            """),
            {"id": address_id, "user_id": user_id, "street": street, "city": city},
        )
        return address_id

    async def add_product(self, name: str, stock: int, price: float = 100.0) -> str:
        product_id = str(uuid4())
        await self._write(
            text(
                "INSERT INTO products (id, name, price, stock) "
                "VALUES (:id, :name, :price, :stock)"
            ),
            {"id": product_id, "name": name, "price": price, "stock": stock},
        )
        return product_id

    async def add_cart_item(self, user_id: str, product_id: str, quantity: int = 1) -> None:
        await self._write(
            text(
                "INSERT INTO cart_items (id, user_id, product_id, quantity) "
                "VALUES (:id, :user_id, :product_id, :quantity)"
            ),
            {"id": str(uuid4()), "user_id": user_id, "product_id": product_id, "quantity": quantity},
        )

    async def set_payment_status(self, order_id: str, payment_status: str) -> None:
        await self._write(
            text("UPDATE orders SET payment_status = :ps WHERE id = :id"),
            {"ps": payment_status, "id": order_id},
        )

    async def stock(self, product_id: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT stock FROM products WHERE id = :id"), {"id": product_id}
            )
            return result.scalar_one()

    async def count(self, table: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(text(f"SELECT COUNT(*) FROM {table}"))
            return result.scalar_one()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}",
        admin_emails=frozenset({ADMIN_EMAIL}),
    )


@pytest.fixture
def redis():
    """Stands in for the Redis connection; published events land in publish.call_args_list."""
    return AsyncMock()


@pytest.fixture
async def app(settings, redis):
    app = create_app(settings, redis=redis)
    await db.create_schema(app.state.engine)
    yield app
    await app.state.engine.dispose()


@pytest.fixture
def session_factory(app):
    return app.state.session_factory


@pytest.fixture
def store(session_factory):
    return Store(session_factory)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def users(store):
    """Registered accounts: two shoppers (each with one address) and an admin."""
    alice = await store.add_user(ALICE_EMAIL, "Alice")
    bob = await store.add_user(BOB_EMAIL, "Bob")
    admin = await store.add_user(ADMIN_EMAIL, "Admin")
    return {
        "alice": alice,
        "alice_address": await store.add_address(alice),
        "bob": bob,
        "bob_address": await store.add_address(bob, city="Chittagong", street="7 Hill View"),
        "admin": admin,
    }


def guest_payload(product_id: str, quantity: int, **overrides) -> dict:
    payload = {
        "items": [{"productId": product_id, "quantity": quantity, "price": 100.0}],
        "guestEmail": "guest@example.com",
        "guestShippingAddress": {
            "firstName": "Guest",
            "lastName": "Buyer",
            "street": "5 Market Street",
            "city": "Sylhet",
            "state": "Sylhet Division",
            "postalCode": "3100",
            "phone": "01800000000",
        },
        "paymentMethod": "CASH_ON_DELIVERY",
        "subtotal": 100.0 * quantity,
        "total": 100.0 * quantity,
    }
    payload.update(overrides)
    return payload


def user_payload(address_id: str, items: list[tuple[str, int]], **overrides) -> dict:
    payload = {
        "items": [
            {"productId": pid, "quantity": qty, "price": 100.0, "color": "red", "size": "M"}
            for pid, qty in items
        ],
        "shippingAddressId": address_id,
        "paymentMethod": "CASH_ON_DELIVERY",
        "subtotal": 100.0 * sum(q for _, q in items),
        "total": 100.0 * sum(q for _, q in items),
    }
    payload.update(overrides)
    return payload
