"""
Storage boundary of the recommendation engine.

Every engine component talks to the `Store` protocol only: two aggregate queries over the
interaction log (`count_by_group`, `distinct_users`) plus plain catalog,
profile, similarity and stored-recommendation reads/writes. `SQLiteStore`
is the implementation used by the service and the tests.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, runtime_checkable
import json
import logging
import sqlite3

from backend.recommender.models import (
    ActionKind,
    InteractionEvent,
    PreferenceProfile,
    PriceRange,
    Product,
    ShoppingStyle,
    SimilarityEntry,
    SimilarityKind,
    StoredRecommendation,
    StrategyKind,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the backing store is unavailable or a query fails."""


@dataclass(frozen=True)
class EventFilter:
    user_ids: Optional[Sequence[str]] = None
    product_ids: Optional[Sequence[str]] = None
    exclude_product_ids: Optional[Sequence[str]] = None
    actions: Optional[Sequence[ActionKind]] = None
    since: Optional[int] = None


@dataclass(frozen=True)
class ProductQuery:
    categories: Optional[Sequence[str]] = None
    price_range: Optional[PriceRange] = None
    exclude_ids: Optional[Sequence[str]] = None
    in_stock_only: bool = False
    on_sale_only: bool = False
    order_by: str = "rating"  # "rating" | "newest" | "discount"
    limit: Optional[int] = None


_GROUP_KEYS = {"product_id", "user_id"}

_PRODUCT_ORDER = {
    "rating": "rating DESC, review_count DESC, id ASC",
    "newest": "created_at DESC, id ASC",
    "discount": "(price - sale_price) / price DESC, id ASC",
}

_FEEDBACK_FLAGS = {
    "shown": ("is_shown", "shown_at"),
    "clicked": ("is_clicked", "clicked_at"),
    "purchased": ("is_purchased", "purchased_at"),
}


@runtime_checkable
class Store(Protocol):
    def append_event(self, event: InteractionEvent) -> None: ...

    def recent_events(self, user_id: str, limit: int) -> List[InteractionEvent]: ...

    def count_by_group(
        self,
        flt: EventFilter,
        group_key: str = "product_id",
        distinct_users: bool = False,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, int]]: ...

    def distinct_users(self, flt: EventFilter, limit: Optional[int] = None) -> List[str]: ...

    def get_product(self, product_id: str) -> Optional[Product]: ...

    def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]: ...

    def find_products(self, query: ProductQuery) -> List[Product]: ...

    def cart_product_ids(self, user_id: str) -> List[str]: ...

    def get_profile(self, user_id: str) -> Optional[PreferenceProfile]: ...

    def upsert_profile(self, profile: PreferenceProfile) -> None: ...

    def similar_products(
        self,
        product_id: str,
        exclude_ids: Sequence[str],
        limit: int,
        kinds: Optional[Sequence[SimilarityKind]] = None,
    ) -> List[SimilarityEntry]: ...

    def insert_recommendations(self, rows: Sequence[StoredRecommendation], batch_key: int) -> int: ...

    def mark_recommendations(
        self,
        user_id: str,
        product_id: str,
        strategy: Optional[StrategyKind],
        flag: str,
        now: int,
        require_shown: bool = False,
    ) -> int: ...

    def count_active_recommendations(
        self,
        user_id: str,
        product_id: str,
        strategy: Optional[StrategyKind],
        now: int,
    ) -> int: ...

    def list_recommendations(self, user_id: str, now: int, limit: int = 50) -> List[StoredRecommendation]: ...

    def recommendation_stats(self, since: int, now: int) -> Dict[str, Any]: ...

    # batch similarity job

    def all_products(self) -> List[Product]: ...

    def interaction_counts(self, actions: Sequence[ActionKind]) -> List[Tuple[str, str, int]]: ...

    def replace_similarities(self, kind: SimilarityKind, entries: Sequence[SimilarityEntry], now: int) -> int: ...

    def last_similarity_update(self) -> Optional[int]: ...


def _in_list(column: str, values: Sequence[str], negate: bool = False) -> Tuple[str, Tuple[Any, ...]]:
    # json_each keeps large id lists to a single bound parameter
    op = "NOT IN" if negate else "IN"
    return f"{column} {op} (SELECT value FROM json_each(?))", (json.dumps([str(v) for v in values]),)


def _event_where(flt: EventFilter) -> Tuple[str, Tuple[Any, ...]]:
    clauses: List[str] = []
    params: List[Any] = []

    if flt.user_ids is not None:
        sql, p = _in_list("user_id", flt.user_ids)
        clauses.append(sql)
        params.extend(p)
    if flt.product_ids is not None:
        sql, p = _in_list("product_id", flt.product_ids)
        clauses.append(sql)
        params.extend(p)
    if flt.exclude_product_ids:
        sql, p = _in_list("product_id", flt.exclude_product_ids, negate=True)
        clauses.append(sql)
        params.extend(p)
    if flt.actions is not None:
        sql, p = _in_list("action", [ActionKind(a).value for a in flt.actions])
        clauses.append(sql)
        params.extend(p)
    if flt.since is not None:
        clauses.append("ts >= ?")
        params.append(int(flt.since))

    where = " AND ".join(clauses) if clauses else "1 = 1"
    return where, tuple(params)


def _row_to_product(r: sqlite3.Row) -> Product:
    tags_csv = r["tags"] or ""
    return Product(
        id=str(r["id"]),
        name=str(r["name"]),
        category=str(r["category"] or ""),
        price=float(r["price"]),
        sale_price=float(r["sale_price"]) if r["sale_price"] is not None else None,
        rating=float(r["rating"] or 0.0),
        review_count=int(r["review_count"] or 0),
        in_stock=bool(r["in_stock"]),
        created_at=int(r["created_at"]),
        description=str(r["description"] or ""),
        tags=[t.strip() for t in tags_csv.split(",") if t.strip()],
    )


def _row_to_event(r: sqlite3.Row) -> InteractionEvent:
    metadata: Dict[str, Any] = {}
    if r["metadata_json"]:
        try:
            loaded = json.loads(r["metadata_json"])
            if isinstance(loaded, dict):
                metadata = loaded
        except ValueError:
            metadata = {}
    return InteractionEvent(
        user_id=str(r["user_id"]),
        product_id=str(r["product_id"]),
        action=ActionKind(r["action"]),
        ts=int(r["ts"]),
        session_id=r["session_id"],
        device_type=r["device_type"],
        source=r["source"],
        duration_ms=int(r["duration_ms"]) if r["duration_ms"] is not None else None,
        metadata=metadata,
    )


def _row_to_stored(r: sqlite3.Row) -> StoredRecommendation:
    context = json.loads(r["context_json"]) if r["context_json"] else None
    return StoredRecommendation(
        user_id=str(r["user_id"]),
        product_id=str(r["product_id"]),
        strategy=StrategyKind(r["strategy"]),
        score=float(r["score"]),
        reason=str(r["reason"]),
        context=context,
        created_at=int(r["created_at"]),
        expires_at=int(r["expires_at"]),
        is_shown=bool(r["is_shown"]),
        shown_at=r["shown_at"],
        is_clicked=bool(r["is_clicked"]),
        clicked_at=r["clicked_at"],
        is_purchased=bool(r["is_purchased"]),
        purchased_at=r["purchased_at"],
    )


class SQLiteStore:
    """`Store` over a sqlite3 connection (one per request)."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # low level helpers

    def _fetchall(self, sql: str, params: Tuple[Any, ...] = ()) -> List[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"query failed: {e}") from e

    def _fetchone(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"query failed: {e}") from e

    def _write(self, sql: str, params: Tuple[Any, ...] = ()) -> int:
        try:
            cur = self.conn.execute(sql, params)
            self.conn.commit()
            return cur.rowcount
        except sqlite3.Error as e:
            try:
                self.conn.rollback()
            except sqlite3.Error:
                logger.debug("Rollback after failed write also failed", exc_info=True)
            raise StoreError(f"write failed: {e}") from e

    # interaction events

    def append_event(self, event: InteractionEvent) -> None:
        self._write(
            """
            INSERT INTO interaction_events(
              user_id, product_id, action, ts, session_id, device_type, source, duration_ms, metadata_json
            )
            VALUES(?,?,?,?,?,?,?,?,?)
            """,
            (
                event.user_id,
                event.product_id,
                event.action.value,
                event.ts,
                event.session_id,
                event.device_type,
                event.source,
                event.duration_ms,
                json.dumps(event.metadata) if event.metadata else None,
            ),
        )

    def recent_events(self, user_id: str, limit: int) -> List[InteractionEvent]:
        rows = self._fetchall(
            """
            SELECT user_id, product_id, action, ts, session_id, device_type, source, duration_ms, metadata_json
            FROM interaction_events
            WHERE user_id = ?
            ORDER BY ts DESC, id DESC
            LIMIT ?
            """,
            (user_id, limit),
        )
        return [_row_to_event(r) for r in rows]

    def count_by_group(
        self,
        flt: EventFilter,
        group_key: str = "product_id",
        distinct_users: bool = False,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, int]]:
        """
        count events per group_key, highest first (ties by key).
        distinct_users=True counts each user once per group.
        """
        if group_key not in _GROUP_KEYS:
            raise ValueError(f"group_key must be one of {sorted(_GROUP_KEYS)}")

        where, params = _event_where(flt)
        counted = "COUNT(DISTINCT user_id)" if distinct_users else "COUNT(*)"
        sql = f"""
            SELECT {group_key} AS k, {counted} AS c
            FROM interaction_events
            WHERE {where}
            GROUP BY {group_key}
            ORDER BY c DESC, k ASC
        """
        if limit is not None:
            sql += " LIMIT ?"
            params = params + (int(limit),)

        rows = self._fetchall(sql, params)
        return [(str(r["k"]), int(r["c"])) for r in rows]

    def distinct_users(self, flt: EventFilter, limit: Optional[int] = None) -> List[str]:
        """Users matching the filter, most recently active first."""
        where, params = _event_where(flt)
        sql = f"""
            SELECT user_id, MAX(ts) AS last_ts
            FROM interaction_events
            WHERE {where}
            GROUP BY user_id
            ORDER BY last_ts DESC, user_id ASC
        """
        if limit is not None:
            sql += " LIMIT ?"
            params = params + (int(limit),)
        return [str(r["user_id"]) for r in self._fetchall(sql, params)]

    def interaction_counts(self, actions: Sequence[ActionKind]) -> List[Tuple[str, str, int]]:
        """(user_id, product_id, count) triples, input for the co-occurrence batch job."""
        where, params = _event_where(EventFilter(actions=actions))
        rows = self._fetchall(
            f"""
            SELECT user_id, product_id, COUNT(*) AS c
            FROM interaction_events
            WHERE {where}
            GROUP BY user_id, product_id
            """,
            params,
        )
        return [(str(r["user_id"]), str(r["product_id"]), int(r["c"])) for r in rows]

    # catalog (read-only)

    def get_product(self, product_id: str) -> Optional[Product]:
        r = self._fetchone("SELECT * FROM products WHERE id = ?", (product_id,))
        return _row_to_product(r) if r else None

    def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        ids = list(product_ids)
        if not ids:
            return {}
        sql, params = _in_list("id", ids)
        rows = self._fetchall(f"SELECT * FROM products WHERE {sql}", params)
        return {str(r["id"]): _row_to_product(r) for r in rows}

    def find_products(self, query: ProductQuery) -> List[Product]:
        clauses: List[str] = []
        params: List[Any] = []

        if query.categories is not None:
            sql, p = _in_list("category", query.categories)
            clauses.append(sql)
            params.extend(p)
        if query.price_range is not None:
            clauses.append("price >= ? AND price <= ?")
            params.extend([query.price_range.min, query.price_range.max])
        if query.exclude_ids:
            sql, p = _in_list("id", query.exclude_ids, negate=True)
            clauses.append(sql)
            params.extend(p)
        if query.in_stock_only:
            clauses.append("in_stock = 1")
        if query.on_sale_only or query.order_by == "discount":
            clauses.append("sale_price IS NOT NULL AND price > 0 AND sale_price < price")

        if query.order_by not in _PRODUCT_ORDER:
            raise ValueError(f"order_by must be one of {sorted(_PRODUCT_ORDER)}")

        where = " AND ".join(clauses) if clauses else "1 = 1"
        sql = f"SELECT * FROM products WHERE {where} ORDER BY {_PRODUCT_ORDER[query.order_by]}"
        if query.limit is not None:
            sql += " LIMIT ?"
            params.append(int(query.limit))

        return [_row_to_product(r) for r in self._fetchall(sql, tuple(params))]

    def all_products(self) -> List[Product]:
        return [_row_to_product(r) for r in self._fetchall("SELECT * FROM products ORDER BY id")]

    def cart_product_ids(self, user_id: str) -> List[str]:
        rows = self._fetchall(
            "SELECT product_id FROM cart_items WHERE user_id = ? ORDER BY added_at ASC, id ASC",
            (user_id,),
        )
        return [str(r["product_id"]) for r in rows]

    # preference profiles

    def get_profile(self, user_id: str) -> Optional[PreferenceProfile]:
        r = self._fetchone("SELECT * FROM preference_profiles WHERE user_id = ?", (user_id,))
        if not r:
            return None
        price_range = None
        if r["price_min"] is not None and r["price_max"] is not None:
            price_range = PriceRange(min=float(r["price_min"]), max=float(r["price_max"]))
        return PreferenceProfile(
            user_id=str(r["user_id"]),
            preferred_categories=[str(c) for c in json.loads(r["preferred_categories_json"])],
            preferred_price_range=price_range,
            shopping_style=ShoppingStyle(r["shopping_style"]),
            updated_at=int(r["updated_at"]),
        )

    def upsert_profile(self, profile: PreferenceProfile) -> None:
        pr = profile.preferred_price_range
        self._write(
            """
            INSERT INTO preference_profiles(
              user_id, preferred_categories_json, price_min, price_max, shopping_style, updated_at
            )
            VALUES(?,?,?,?,?,?)
            ON CONFLICT(user_id) DO UPDATE SET
              preferred_categories_json = excluded.preferred_categories_json,
              price_min = excluded.price_min,
              price_max = excluded.price_max,
              shopping_style = excluded.shopping_style,
              updated_at = excluded.updated_at
            """,
            (
                profile.user_id,
                json.dumps(profile.preferred_categories),
                pr.min if pr else None,
                pr.max if pr else None,
                profile.shopping_style.value,
                profile.updated_at,
            ),
        )

    # similarity index

    def similar_products(
        self,
        product_id: str,
        exclude_ids: Sequence[str],
        limit: int,
        kinds: Optional[Sequence[SimilarityKind]] = None,
    ) -> List[SimilarityEntry]:
        clauses = ["product_id = ?", "similar_product_id != ?"]
        params: List[Any] = [product_id, product_id]
        if exclude_ids:
            sql, p = _in_list("similar_product_id", exclude_ids, negate=True)
            clauses.append(sql)
            params.extend(p)
        if kinds:
            sql, p = _in_list("kind", [SimilarityKind(k).value for k in kinds])
            clauses.append(sql)
            params.extend(p)
        params.append(int(limit))

        # one row per similar product: the strongest kind wins (sqlite picks kind from the MAX row)
        rows = self._fetchall(
            f"""
            SELECT similar_product_id, kind, MAX(score) AS score
            FROM product_similarities
            WHERE {" AND ".join(clauses)}
            GROUP BY similar_product_id
            ORDER BY score DESC, similar_product_id ASC
            LIMIT ?
            """,
            tuple(params),
        )
        return [
            SimilarityEntry(
                product_id=product_id,
                similar_product_id=str(r["similar_product_id"]),
                score=float(r["score"]),
                kind=SimilarityKind(r["kind"]),
            )
            for r in rows
        ]

    def replace_similarities(self, kind: SimilarityKind, entries: Sequence[SimilarityEntry], now: int) -> int:
        """Swap every row of one similarity kind for `entries` in a single transaction."""
        try:
            with self.conn:
                self.conn.execute("DELETE FROM product_similarities WHERE kind = ?", (kind.value,))
                self.conn.executemany(
                    """
                    INSERT OR REPLACE INTO product_similarities(product_id, similar_product_id, score, kind, updated_at)
                    VALUES(?,?,?,?,?)
                    """,
                    [(e.product_id, e.similar_product_id, e.score, kind.value, now) for e in entries],
                )
        except sqlite3.Error as e:
            raise StoreError(f"similarity write failed: {e}") from e
        return len(entries)

    def last_similarity_update(self) -> Optional[int]:
        r = self._fetchone("SELECT MAX(updated_at) AS t FROM product_similarities")
        return int(r["t"]) if r and r["t"] is not None else None

    # stored recommendations

    def insert_recommendations(self, rows: Sequence[StoredRecommendation], batch_key: int) -> int:
        """INSERT OR IGNORE on the (user, product, strategy, batch) key; returns rows actually written."""
        inserted = 0
        try:
            with self.conn:
                for rec in rows:
                    cur = self.conn.execute(
                        """
                        INSERT OR IGNORE INTO stored_recommendations(
                          user_id, product_id, strategy, score, reason, context_json,
                          batch_key, created_at, expires_at
                        )
                        VALUES(?,?,?,?,?,?,?,?,?)
                        """,
                        (
                            rec.user_id,
                            rec.product_id,
                            rec.strategy.value,
                            rec.score,
                            rec.reason,
                            json.dumps(rec.context) if rec.context else None,
                            batch_key,
                            rec.created_at,
                            rec.expires_at,
                        ),
                    )
                    inserted += cur.rowcount
        except sqlite3.Error as e:
            raise StoreError(f"recommendation insert failed: {e}") from e
        return inserted

    def mark_recommendations(
        self,
        user_id: str,
        product_id: str,
        strategy: Optional[StrategyKind],
        flag: str,
        now: int,
        require_shown: bool = False,
    ) -> int:
        """Set one feedback flag on unexpired rows; already-set rows keep their first timestamp."""
        if flag not in _FEEDBACK_FLAGS:
            raise ValueError(f"flag must be one of {sorted(_FEEDBACK_FLAGS)}")
        flag_col, ts_col = _FEEDBACK_FLAGS[flag]

        clauses = ["user_id = ?", "product_id = ?", "expires_at > ?", f"{flag_col} = 0"]
        params: List[Any] = [now, user_id, product_id, now]
        if strategy is not None:
            clauses.append("strategy = ?")
            params.append(StrategyKind(strategy).value)
        if require_shown:
            clauses.append("is_shown = 1")

        return self._write(
            f"UPDATE stored_recommendations SET {flag_col} = 1, {ts_col} = ? WHERE {' AND '.join(clauses)}",
            tuple(params),
        )

    def count_active_recommendations(
        self,
        user_id: str,
        product_id: str,
        strategy: Optional[StrategyKind],
        now: int,
    ) -> int:
        sql = """
            SELECT COUNT(*) AS c FROM stored_recommendations
            WHERE user_id = ? AND product_id = ? AND expires_at > ?
        """
        params: List[Any] = [user_id, product_id, now]
        if strategy is not None:
            sql += " AND strategy = ?"
            params.append(StrategyKind(strategy).value)
        r = self._fetchone(sql, tuple(params))
        return int(r["c"]) if r else 0

    def list_recommendations(self, user_id: str, now: int, limit: int = 50) -> List[StoredRecommendation]:
        rows = self._fetchall(
            """
            SELECT * FROM stored_recommendations
            WHERE user_id = ? AND expires_at > ?
            ORDER BY created_at DESC, score DESC, id ASC
            LIMIT ?
            """,
            (user_id, now, limit),
        )
        return [_row_to_stored(r) for r in rows]

    def recommendation_stats(self, since: int, now: int) -> Dict[str, Any]:
        active = self._fetchone(
            "SELECT COUNT(*) AS c FROM stored_recommendations WHERE expires_at > ?",
            (now,),
        )
        window = self._fetchone(
            """
            SELECT
              COUNT(DISTINCT user_id) AS users,
              COALESCE(SUM(is_shown), 0) AS shown,
              COALESCE(SUM(is_clicked), 0) AS clicked,
              COALESCE(SUM(is_purchased), 0) AS purchased
            FROM stored_recommendations
            WHERE created_at >= ?
            """,
            (since,),
        )
        top = self._fetchone(
            """
            SELECT strategy, COUNT(*) AS c
            FROM stored_recommendations
            WHERE created_at >= ?
            GROUP BY strategy
            ORDER BY c DESC, strategy ASC
            LIMIT 1
            """,
            (since,),
        )
        return {
            "active": int(active["c"]) if active else 0,
            "active_users": int(window["users"]) if window else 0,
            "shown": int(window["shown"]) if window else 0,
            "clicked": int(window["clicked"]) if window else 0,
            "purchased": int(window["purchased"]) if window else 0,
            "top_strategy": str(top["strategy"]) if top else None,
        }
