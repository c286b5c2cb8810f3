"""Shared fixtures: a throwaway sqlite store, a fixed clock and row factories."""

import os
import tempfile

# settings are read at import time; keep the app away from ./data during tests
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.mkdtemp(prefix="recs-tests-"), "app.db"),
)

from typing import Optional

import pytest

from backend.app.config import Settings
from backend.app.db import connect, init_db
from backend.recommender.engine import build_engine
from backend.recommender.store import SQLiteStore

NOW = 1_700_000_000
DAY = 24 * 3600


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def conn(tmp_path):
    c = connect(str(tmp_path / "recs.db"))
    init_db(c)
    yield c
    c.close()


@pytest.fixture
def store(conn):
    return SQLiteStore(conn)


@pytest.fixture
def test_settings():
    return Settings(_env_file=None)


@pytest.fixture
def engine(store, test_settings, clock):
    return build_engine(store, settings=test_settings, clock=clock)


@pytest.fixture
def add_product(conn):
    """Insert a catalog row; returns its id."""

    def _add(
        product_id: str,
        category: str = "fruits",
        price: float = 100.0,
        sale_price: Optional[float] = None,
        rating: float = 4.0,
        review_count: int = 10,
        in_stock: bool = True,
        created_at: int = NOW - 30 * DAY,
        name: Optional[str] = None,
        description: str = "",
        tags: str = "",
    ) -> str:
        conn.execute(
            """
            INSERT INTO products(
              id, name, description, category, tags, price, sale_price, rating, review_count, in_stock, created_at
            )
            VALUES(?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                product_id,
                name or f"Product {product_id}",
                description,
                category,
                tags,
                price,
                sale_price,
                rating,
                review_count,
                1 if in_stock else 0,
                created_at,
            ),
        )
        conn.commit()
        return product_id

    return _add


@pytest.fixture
def add_event(conn):
    """Insert an interaction event directly (bypassing the recorder)."""

    def _add(user_id: str, product_id: str, action: str = "VIEW", ts: int = NOW - 3600) -> None:
        conn.execute(
            "INSERT INTO interaction_events(user_id, product_id, action, ts) VALUES(?,?,?,?)",
            (user_id, product_id, action, ts),
        )
        conn.commit()

    return _add


@pytest.fixture
def add_cart_item(conn):
    def _add(user_id: str, product_id: str, added_at: int = NOW - 600) -> None:
        conn.execute(
            "INSERT INTO cart_items(user_id, product_id, quantity, added_at) VALUES(?,?,?,?)",
            (user_id, product_id, 1, added_at),
        )
        conn.commit()

    return _add


@pytest.fixture
def add_similarity(conn):
    def _add(product_id: str, similar_id: str, score: float, kind: str = "CATEGORY") -> None:
        conn.execute(
            """
            INSERT INTO product_similarities(product_id, similar_product_id, score, kind, updated_at)
            VALUES(?,?,?,?,?)
            """,
            (product_id, similar_id, score, kind, NOW - DAY),
        )
        conn.commit()

    return _add
