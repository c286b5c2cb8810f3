"""Tests for pairwise similarity scores, the batch job and the index lookup."""

import pytest

from backend.recommender.models import Product, SimilarityKind
from backend.recommender.similarity import (
    MIN_COMMON_USERS,
    calculate_similarities,
    category_similarity,
    collaborative_similarity,
    compute_category_similarities,
    compute_collaborative_similarities,
    compute_content_similarities,
    content_similarity,
)
from backend.recommender.store import Store

from conftest import NOW


def _p(pid, category="fruits", price=100.0, rating=4.0, tags=(), name=None, description=""):
    return Product(
        id=pid,
        name=name or pid,
        category=category,
        price=price,
        sale_price=None,
        rating=rating,
        review_count=0,
        in_stock=True,
        created_at=NOW,
        description=description,
        tags=list(tags),
    )


# ===== Pairwise =====


def test_category_similarity_bounds():
    """Test identical products score 1 and opposite ones score 0."""
    assert category_similarity(_p("a"), _p("b")) == pytest.approx(1.0)
    assert category_similarity(_p("a", rating=5.0, price=100.0), _p("b", rating=0.0, price=0.0)) == pytest.approx(0.0)


def test_content_similarity_components():
    """Test the category, tag, price and word weights."""
    a = _p("a", tags=["fresh", "organic"], name="red apple")
    b = _p("b", tags=["fresh", "organic"], name="red apple")
    assert content_similarity(a, b) == pytest.approx(1.0)

    c = _p("c", category="dairy", price=50.0, name="whole milk")
    # only half the price closeness remains
    assert content_similarity(a, c) == pytest.approx(0.1)


def test_collaborative_similarity_needs_common_users():
    """Test the minimum number of shared users."""
    one_user = {"u1": {"A": 1, "B": 1}}
    two_users = {"u1": {"A": 1, "B": 1}, "u2": {"A": 2, "B": 2}, "u3": {"A": 5}}

    assert MIN_COMMON_USERS == 2
    assert collaborative_similarity("A", "B", one_user) == 0.0
    assert collaborative_similarity("A", "B", two_users) == pytest.approx(1.0)


# ===== Batch computations =====


def test_category_similarities_stay_within_category():
    """Test pairs only form inside a category and are stored both ways."""
    products = [
        _p("f1"),
        _p("f2", price=90.0),
        _p("d1", category="dairy"),
        _p("f3", rating=0.0, price=5.0),  # too different from the others
    ]

    entries = compute_category_similarities(products)
    pairs = {(e.product_id, e.similar_product_id) for e in entries}

    assert pairs == {("f1", "f2"), ("f2", "f1")}
    assert all(e.kind == SimilarityKind.CATEGORY for e in entries)
    assert entries[0].score == entries[1].score


def test_content_similarities_threshold():
    """Test the content threshold drops weak pairs."""
    products = [
        _p("a", tags=["fresh"], name="green apple"),
        _p("b", tags=["fresh"], name="red apple"),
        _p("c", category="tools", price=1000.0, name="hammer drill"),
    ]

    entries = compute_content_similarities(products)
    pairs = {(e.product_id, e.similar_product_id) for e in entries}

    assert pairs == {("a", "b"), ("b", "a")}
    assert all(0.0 <= e.score <= 1.0 for e in entries)


def test_collaborative_similarities_from_triples():
    """Test cosine pairs from (user, product, count) triples."""
    triples = [("u1", "A", 1), ("u1", "B", 1), ("u2", "A", 1), ("u2", "B", 3), ("u1", "C", 1)]

    entries = compute_collaborative_similarities(triples, SimilarityKind.CO_VIEW)
    pairs = {(e.product_id, e.similar_product_id) for e in entries}

    # C shares a single user with A and B
    assert pairs == {("A", "B"), ("B", "A")}
    assert all(e.kind == SimilarityKind.CO_VIEW for e in entries)


# ===== calculate_similarities =====


def test_calculate_similarities_replaces_rows(store, conn, clock, add_product, add_event):
    """Test that a rerun swaps rows instead of piling them up."""
    add_product("A")
    add_product("B", price=95.0)
    for u in ("u1", "u2"):
        add_event(u, "A", "VIEW")
        add_event(u, "B", "VIEW")

    first = calculate_similarities(store, [SimilarityKind.CATEGORY, SimilarityKind.CO_VIEW], clock=clock)
    clock.advance(60)
    second = calculate_similarities(store, [SimilarityKind.CATEGORY, SimilarityKind.CO_VIEW], clock=clock)

    assert first == {"CATEGORY": 2, "CO_VIEW": 2}
    assert second == first
    assert conn.execute("SELECT COUNT(*) FROM product_similarities").fetchone()[0] == 4
    assert store.last_similarity_update() == NOW + 60


def test_calculate_similarities_defaults_to_every_kind(store, clock, add_product):
    """Test that no kinds means all kinds, each reported."""
    add_product("A")

    written = calculate_similarities(store, clock=clock)

    assert set(written) == {k.value for k in SimilarityKind}
    assert all(v == 0 for v in written.values())


def test_index_lookup_filters_kinds(engine, add_similarity):
    """Test the kinds filter and the strongest-kind merge of the index."""
    add_similarity("P", "Q", 0.4, "CATEGORY")
    add_similarity("P", "Q", 0.9, "CO_VIEW")
    add_similarity("P", "R", 0.6, "CATEGORY")

    merged = engine.similarity.lookup("P", limit=5)
    category_only = engine.similarity.lookup("P", limit=5, kinds=[SimilarityKind.CATEGORY])

    assert [(e.similar_product_id, e.score) for e in merged] == [("Q", 0.9), ("R", 0.6)]
    assert [(e.similar_product_id, e.score) for e in category_only] == [("R", 0.6), ("Q", 0.4)]
    assert engine.similarity.lookup("P", limit=0) == []
    assert engine.similarity.lookup("unknown") == []


def test_sqlite_store_satisfies_store_protocol(store):
    """Test that the batch job and feedback methods are part of the store protocol."""
    for name in (
        "all_products",
        "interaction_counts",
        "replace_similarities",
        "last_similarity_update",
        "count_active_recommendations",
        "recommendation_stats",
    ):
        assert hasattr(Store, name)

    assert isinstance(store, Store)
