"""Tests for the individual ranking strategies and their fallbacks."""

import pytest

from backend.recommender.models import (
    PreferenceProfile,
    PriceRange,
    Product,
    ShoppingStyle,
    StrategyKind,
)
from backend.recommender.strategies import (
    CO_OCCURRENCE_FALLBACK_SCORE,
    SIMILAR_CATEGORY_BASE_SCORE,
    StrategyContext,
    personalized_score,
)

from conftest import DAY, NOW


def _run(engine, kind, limit=10, exclude=(), **ctx):
    ctx.setdefault("now", NOW)
    return engine.strategies.get(kind).run(StrategyContext(**ctx), limit, list(exclude))


def _ids(candidates):
    return [c.product_id for c in candidates]


# ===== AlsoViewed / AlsoBought =====


def test_also_viewed_scores_by_share_of_viewers(engine, add_product, add_event):
    """Test 10 viewers of P, 6 also saw Q and 4 also saw R."""
    for pid in ("P", "Q", "R"):
        add_product(pid)
    for i in range(10):
        add_event(f"v{i}", "P", "VIEW")
    for i in range(6):
        add_event(f"v{i}", "Q", "VIEW")
    for i in range(6, 10):
        add_event(f"v{i}", "R", "VIEW")

    recs = _run(engine, StrategyKind.ALSO_VIEWED, limit=2, product_id="P")

    assert _ids(recs) == ["Q", "R"]
    assert recs[0].raw_score == pytest.approx(0.6)
    assert recs[1].raw_score == pytest.approx(0.4)
    assert recs[0].strategy == StrategyKind.ALSO_VIEWED
    assert recs[0].reason == "6 shoppers also viewed this"


def test_also_viewed_counts_each_viewer_once(engine, add_product, add_event):
    """Test that repeat views by the same user do not inflate the score."""
    for pid in ("P", "Q"):
        add_product(pid)
    add_event("v1", "P", "VIEW")
    add_event("v2", "P", "VIEW")
    for _ in range(5):
        add_event("v1", "Q", "VIEW")

    recs = _run(engine, StrategyKind.ALSO_VIEWED, product_id="P")

    assert _ids(recs) == ["Q"]
    assert recs[0].raw_score == pytest.approx(0.5)


def test_also_viewed_honours_exclusions(engine, add_product, add_event):
    """Test that excluded products never show up."""
    for pid in ("P", "Q", "R"):
        add_product(pid)
    for u in ("a", "b"):
        add_event(u, "P", "VIEW")
        add_event(u, "Q", "VIEW")
        add_event(u, "R", "VIEW")

    recs = _run(engine, StrategyKind.ALSO_VIEWED, product_id="P", exclude=["Q"])

    assert _ids(recs) == ["R"]


def test_also_viewed_without_viewers_falls_back_to_category(engine, add_product):
    """Test cold start: same category by rating, fixed score."""
    add_product("new", category="fruits")
    add_product("f1", category="fruits", rating=4.5)
    add_product("f2", category="fruits", rating=3.0)
    add_product("f3", category="fruits", rating=5.0, in_stock=False)
    add_product("d1", category="dairy", rating=5.0)

    recs = _run(engine, StrategyKind.ALSO_VIEWED, product_id="new", in_stock_only=True)

    assert _ids(recs) == ["f1", "f2"]
    assert all(c.raw_score == CO_OCCURRENCE_FALLBACK_SCORE for c in recs)
    assert all(c.strategy == StrategyKind.SIMILAR_PRODUCTS for c in recs)
    assert recs[0].reason == "More from fruits"

    with_oos = _run(engine, StrategyKind.ALSO_VIEWED, product_id="new", in_stock_only=False)
    assert _ids(with_oos) == ["f3", "f1", "f2"]


def test_also_viewed_without_co_views_falls_back(engine, add_product, add_event):
    """Test that viewers who saw nothing else still trigger the fallback."""
    add_product("P", category="fruits")
    add_product("f1", category="fruits")
    add_event("v1", "P", "VIEW")

    recs = _run(engine, StrategyKind.ALSO_VIEWED, product_id="P")

    assert _ids(recs) == ["f1"]


def test_also_bought_scores_co_purchases(engine, add_product, add_event):
    """Test co-purchase share among buyers."""
    for pid in ("P", "Q", "R"):
        add_product(pid)
    add_event("b1", "P", "PURCHASE")
    add_event("b2", "P", "PURCHASE")
    add_event("b1", "Q", "PURCHASE")
    add_event("b2", "Q", "PURCHASE")
    add_event("b2", "R", "PURCHASE")
    add_event("b1", "R", "VIEW")  # views do not count here

    recs = _run(engine, StrategyKind.ALSO_BOUGHT, product_id="P")

    assert _ids(recs) == ["Q", "R"]
    assert [c.raw_score for c in recs] == [pytest.approx(1.0), pytest.approx(0.5)]
    assert recs[1].reason == "1 shopper also bought this"


def test_also_bought_without_buyers_delegates_to_also_viewed(engine, add_product, add_event):
    """Test that no purchases means the also-viewed ranking."""
    for pid in ("P", "Q"):
        add_product(pid)
    add_event("v1", "P", "VIEW")
    add_event("v1", "Q", "VIEW")

    recs = _run(engine, StrategyKind.ALSO_BOUGHT, product_id="P")

    assert _ids(recs) == ["Q"]
    assert recs[0].strategy == StrategyKind.ALSO_VIEWED


# ===== SimilarProducts =====


def test_similar_products_uses_index_order(engine, add_product, add_similarity):
    """Test index order, exclusions and the strongest kind winning."""
    for pid in ("P", "s1", "s2", "s3"):
        add_product(pid)
    add_similarity("P", "s1", 0.9, "CATEGORY")
    add_similarity("P", "s2", 0.8, "CATEGORY")
    add_similarity("P", "s2", 0.85, "CO_VIEW")
    add_similarity("P", "s3", 0.95, "CATEGORY")

    recs = _run(engine, StrategyKind.SIMILAR_PRODUCTS, product_id="P", exclude=["s3"])

    assert _ids(recs) == ["s1", "s2"]
    assert recs[1].raw_score == pytest.approx(0.85)
    assert all(c.strategy == StrategyKind.SIMILAR_PRODUCTS for c in recs)


def test_similar_products_falls_back_to_category(engine, add_product):
    """Test the 0.7 same-category fallback when the index has no rows."""
    add_product("P", category="dairy")
    add_product("d1", category="dairy", rating=3.0, review_count=5)
    add_product("d2", category="dairy", rating=3.0, review_count=50)
    add_product("f1", category="fruits", rating=5.0)

    recs = _run(engine, StrategyKind.SIMILAR_PRODUCTS, product_id="P")

    # same rating -> more reviews first
    assert _ids(recs) == ["d2", "d1"]
    assert all(c.raw_score == SIMILAR_CATEGORY_BASE_SCORE for c in recs)


def test_category_fallback_degrades_to_trending(engine, add_product, add_event):
    """Test that an unknown product or an empty category ends in trending."""
    add_product("blank", category="")
    add_product("t1", category="snacks")
    add_event("x", "t1", "VIEW")

    unknown = _run(engine, StrategyKind.SIMILAR_PRODUCTS, product_id="does-not-exist")
    blank = _run(engine, StrategyKind.SIMILAR_PRODUCTS, product_id="blank")

    assert _ids(unknown) == ["t1"]
    assert unknown[0].strategy == StrategyKind.TRENDING
    assert _ids(blank) == ["t1"]


def test_cold_start_with_nothing_to_offer_is_empty(engine, add_product):
    """Test that no category peers and no trending products gives []."""
    add_product("lonely", category="rare")

    assert _run(engine, StrategyKind.ALSO_VIEWED, product_id="lonely") == []
    assert _run(engine, StrategyKind.SIMILAR_PRODUCTS, product_id="lonely") == []


# ===== Trending / NewArrivals / PriceDrop / Cart =====


def test_trending_counts_last_week_only(engine, add_product, add_event):
    """Test the 7 day window and count/100 scoring."""
    for pid in ("p1", "p2", "p3"):
        add_product(pid)
    add_event("a", "p1", "VIEW")
    add_event("b", "p1", "ADD_TO_CART")
    add_event("c", "p1", "PURCHASE")
    add_event("a", "p2", "VIEW")
    for _ in range(5):
        add_event("a", "p3", "VIEW", ts=NOW - 8 * DAY)

    recs = _run(engine, StrategyKind.TRENDING)

    assert _ids(recs) == ["p1", "p2"]
    assert recs[0].raw_score == pytest.approx(0.03)
    assert _ids(_run(engine, StrategyKind.TRENDING, exclude=["p1"])) == ["p2"]


def test_trending_score_is_not_capped(engine, add_product, add_event):
    """Test that raw trending scores may exceed 1."""
    add_product("hot")
    for i in range(150):
        add_event(f"u{i}", "hot", "VIEW")

    recs = _run(engine, StrategyKind.TRENDING)

    assert recs[0].raw_score == pytest.approx(1.5)


def test_new_arrivals_newest_first(engine, add_product):
    """Test creation order and the flat score."""
    add_product("old", created_at=NOW - 10 * DAY)
    add_product("new", created_at=NOW - 1 * DAY)
    add_product("mid", created_at=NOW - 5 * DAY)

    recs = _run(engine, StrategyKind.NEW_ARRIVALS, limit=2)

    assert _ids(recs) == ["new", "mid"]
    assert all(c.raw_score == 1.0 for c in recs)


def test_price_drop_orders_by_discount(engine, add_product):
    """Test discount fraction scoring and the reason text."""
    add_product("a", price=100.0, sale_price=75.0)
    add_product("b", price=200.0, sale_price=100.0)
    add_product("c", price=100.0)
    add_product("d", price=100.0, sale_price=120.0)

    recs = _run(engine, StrategyKind.PRICE_DROP)

    assert _ids(recs) == ["b", "a"]
    assert recs[0].raw_score == pytest.approx(0.5)
    assert recs[0].reason == "50% off"
    assert recs[1].reason == "25% off"


def test_cart_abandonment_keeps_cart_order(engine, add_product, add_cart_item):
    """Test insertion order, de-duplication and exclusions."""
    add_product("c1")
    add_product("c2")
    add_cart_item("u1", "c2", added_at=NOW - 500)
    add_cart_item("u1", "c1", added_at=NOW - 400)
    add_cart_item("u1", "c2", added_at=NOW - 300)

    assert _ids(_run(engine, StrategyKind.CART_ABANDONMENT, user_id="u1")) == ["c2", "c1"]
    assert _ids(_run(engine, StrategyKind.CART_ABANDONMENT, user_id="u1", exclude=["c2"])) == ["c1"]
    assert _run(engine, StrategyKind.CART_ABANDONMENT, user_id="someone-else") == []


def test_strategy_applicability(engine):
    """Test which strategies need a user or a product."""
    anonymous = StrategyContext(now=NOW)

    assert not engine.strategies.get(StrategyKind.PERSONALIZED).applicable(anonymous)
    assert not engine.strategies.get(StrategyKind.CART_ABANDONMENT).applicable(anonymous)
    assert not engine.strategies.get(StrategyKind.ALSO_VIEWED).applicable(anonymous)
    assert engine.strategies.get(StrategyKind.TRENDING).applicable(anonymous)
    assert engine.strategies.get(StrategyKind.SIMILAR_PRODUCTS).applicable(StrategyContext(product_id="p"))


# ===== Personalized =====


def _product(category="fruits", price=100.0, rating=0.0, review_count=0):
    return Product(
        id="x",
        name="x",
        category=category,
        price=price,
        sale_price=None,
        rating=rating,
        review_count=review_count,
        in_stock=True,
        created_at=NOW,
    )


def test_personalized_score_formula():
    """Test every component of the composite score."""
    profile = PreferenceProfile(
        user_id="u1",
        preferred_categories=["fruits"],
        preferred_price_range=PriceRange(50.0, 150.0),
        shopping_style=ShoppingStyle.BALANCED,
        updated_at=NOW,
    )

    assert personalized_score(_product(), profile) == pytest.approx(1.0)
    assert personalized_score(_product(category="dairy", price=200.0, rating=5.0), profile) == pytest.approx(0.8)
    assert personalized_score(
        _product(category="dairy", price=200.0, rating=2.5, review_count=50), profile
    ) == pytest.approx(0.75)
    # capped
    assert personalized_score(_product(rating=5.0, review_count=500), profile) == 1.0


def test_personalized_fruit_buyer(engine, add_product, add_event):
    """Test a user with 3 fruit purchases gets unseen in-stock fruits ranked by score."""
    for pid in ("f1", "f2", "f3"):
        add_product(pid, category="fruits", rating=5.0)
        add_event("U", pid, "PURCHASE")
    add_product("f4", category="fruits", rating=2.0, review_count=10)   # 0.94
    add_product("f5", category="fruits", rating=1.0, review_count=0)    # 0.86
    add_product("f6", category="fruits", rating=4.0, in_stock=False)
    add_product("f7", category="fruits", rating=0.0, review_count=5)    # 0.81
    add_product("f8", category="fruits", rating=1.5, review_count=100)  # capped at 1.0
    add_product("d1", category="dairy", rating=5.0, review_count=500)

    recs = _run(engine, StrategyKind.PERSONALIZED, limit=5, user_id="U")

    assert _ids(recs) == ["f8", "f4", "f5", "f7"]
    assert recs[0].raw_score == pytest.approx(1.0)
    assert recs[1].raw_score == pytest.approx(0.94)
    assert recs[0].reason == "Because you like fruits"


def test_personalized_without_history_ranks_by_quality(engine, add_product):
    """Test that a user without signal still gets in-stock products, best rated first."""
    add_product("a", category="fruits", rating=3.0)
    add_product("b", category="dairy", rating=4.5)
    add_product("c", category="dairy", rating=5.0, in_stock=False)

    recs = _run(engine, StrategyKind.PERSONALIZED, user_id="fresh")

    assert _ids(recs) == ["b", "a"]
    assert recs[0].reason == "Picked for you"
