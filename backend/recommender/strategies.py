"""
The eight ranking strategies.

Every strategy has the same shape: `run(ctx, limit, exclude_ids)` returns at
most `limit` candidates with a raw score and a human readable reason.
Exclusions are pushed into the store queries, so excluded products are never
scored in the first place. Strategies do not catch store errors; the mixer
does that per strategy.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set
import logging

from backend.recommender.models import (
    ActionKind,
    Candidate,
    PreferenceProfile,
    Product,
    StrategyKind,
)
from backend.recommender.profiles import PreferenceProfileBuilder
from backend.recommender.similarity import SimilarityIndex
from backend.recommender.store import EventFilter, ProductQuery, Store

logger = logging.getLogger(__name__)

SIMILAR_CATEGORY_BASE_SCORE = 0.7
CO_OCCURRENCE_FALLBACK_SCORE = 0.5
TRENDING_SCORE_DIVISOR = 100.0
DAY_SECONDS = 24 * 3600


@dataclass(frozen=True)
class StrategyContext:
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    # push the stock filter down into catalog queries (the mixer filters again after scoring)
    in_stock_only: bool = False
    now: int = 0


def personalized_score(product: Product, profile: PreferenceProfile) -> float:
    score = 0.5  # base

    if product.category in profile.preferred_categories:
        score += 0.3

    if profile.preferred_price_range is not None and profile.preferred_price_range.contains(product.price):
        score += 0.2

    # quality and popularity
    score += (product.rating / 5.0) * 0.3
    score += min(product.review_count / 100.0, 1.0) * 0.2

    return min(score, 1.0)


class Strategy:
    kind: StrategyKind
    needs_user = False
    needs_product = False

    def applicable(self, ctx: StrategyContext) -> bool:
        if self.needs_user and not ctx.user_id:
            return False
        if self.needs_product and not ctx.product_id:
            return False
        return True

    def run(self, ctx: StrategyContext, limit: int, exclude_ids: Sequence[str]) -> List[Candidate]:
        raise NotImplementedError

    def _excluded(self, ctx: StrategyContext, exclude_ids: Sequence[str]) -> Set[str]:
        excluded = set(exclude_ids)
        if ctx.product_id:
            excluded.add(ctx.product_id)
        return excluded


def _keep(product: Optional[Product], ctx: StrategyContext) -> bool:
    if product is None:
        # referenced by events/similarities but gone from the catalog
        return False
    return product.in_stock or not ctx.in_stock_only


class TrendingStrategy(Strategy):
    kind = StrategyKind.TRENDING

    def __init__(self, store: Store, window_days: int = 7):
        self.store = store
        self.window_days = window_days

    def run(self, ctx, limit, exclude_ids):
        if limit <= 0:
            return []
        since = ctx.now - self.window_days * DAY_SECONDS
        groups = self.store.count_by_group(
            EventFilter(
                actions=[ActionKind.VIEW, ActionKind.PURCHASE, ActionKind.ADD_TO_CART],
                since=since,
                exclude_product_ids=sorted(self._excluded(ctx, exclude_ids)),
            ),
            group_key="product_id",
        )
        products = self.store.get_products(pid for pid, _ in groups)

        out: List[Candidate] = []
        for product_id, count in groups:
            product = products.get(product_id)
            if not _keep(product, ctx):
                continue
            out.append(
                Candidate(
                    product_id=product_id,
                    # not capped here; the mixer clamps when normalizing
                    raw_score=count / TRENDING_SCORE_DIVISOR,
                    reason="Popular this week",
                    strategy=self.kind,
                    product=product,
                )
            )
            if len(out) >= limit:
                break
        return out


class NewArrivalsStrategy(Strategy):
    kind = StrategyKind.NEW_ARRIVALS

    def __init__(self, store: Store):
        self.store = store

    def run(self, ctx, limit, exclude_ids):
        if limit <= 0:
            return []
        products = self.store.find_products(
            ProductQuery(
                exclude_ids=sorted(self._excluded(ctx, exclude_ids)),
                in_stock_only=ctx.in_stock_only,
                order_by="newest",
                limit=limit,
            )
        )
        return [
            Candidate(product_id=p.id, raw_score=1.0, reason="New arrival", strategy=self.kind, product=p)
            for p in products
        ]


class PriceDropStrategy(Strategy):
    kind = StrategyKind.PRICE_DROP

    def __init__(self, store: Store):
        self.store = store

    def run(self, ctx, limit, exclude_ids):
        if limit <= 0:
            return []
        products = self.store.find_products(
            ProductQuery(
                exclude_ids=sorted(self._excluded(ctx, exclude_ids)),
                in_stock_only=ctx.in_stock_only,
                on_sale_only=True,
                order_by="discount",
                limit=limit,
            )
        )
        out = []
        for p in products:
            fraction = p.discount_fraction
            out.append(
                Candidate(
                    product_id=p.id,
                    raw_score=fraction,
                    reason=f"{round(fraction * 100)}% off",
                    strategy=self.kind,
                    product=p,
                )
            )
        out.sort(key=lambda c: c.raw_score, reverse=True)
        return out


class CartAbandonmentStrategy(Strategy):
    kind = StrategyKind.CART_ABANDONMENT
    needs_user = True

    def __init__(self, store: Store):
        self.store = store

    def run(self, ctx, limit, exclude_ids):
        if limit <= 0 or not ctx.user_id:
            return []
        excluded = self._excluded(ctx, exclude_ids)

        # cart insertion order, each product once
        ordered: List[str] = []
        for pid in self.store.cart_product_ids(ctx.user_id):
            if pid not in excluded and pid not in ordered:
                ordered.append(pid)

        products = self.store.get_products(ordered)
        out: List[Candidate] = []
        for pid in ordered:
            product = products.get(pid)
            if not _keep(product, ctx):
                continue
            out.append(
                Candidate(product_id=pid, raw_score=1.0, reason="Still in your cart", strategy=self.kind, product=product)
            )
            if len(out) >= limit:
                break
        return out


class CategoryFallback:
    """
    cold start path shared by the product-keyed strategies:
    same category, best rated first, fixed score. Unknown product or empty
    category (or nothing else in it) degrades to trending.
    """

    def __init__(self, store: Store, trending: TrendingStrategy):
        self.store = store
        self.trending = trending

    def run(
        self,
        ctx: StrategyContext,
        limit: int,
        exclude_ids: Set[str],
        base_score: float,
    ) -> List[Candidate]:
        product = self.store.get_product(ctx.product_id) if ctx.product_id else None
        if product is None or not product.category:
            logger.debug("No category for product %s, falling back to trending", ctx.product_id)
            return self.trending.run(ctx, limit, sorted(exclude_ids))

        products = self.store.find_products(
            ProductQuery(
                categories=[product.category],
                exclude_ids=sorted(exclude_ids | {product.id}),
                in_stock_only=ctx.in_stock_only,
                order_by="rating",
                limit=limit,
            )
        )
        if not products:
            logger.debug("Category %r has no alternatives, falling back to trending", product.category)
            return self.trending.run(ctx, limit, sorted(exclude_ids))

        return [
            Candidate(
                product_id=p.id,
                raw_score=base_score,
                reason=f"More from {product.category}",
                strategy=StrategyKind.SIMILAR_PRODUCTS,
                product=p,
            )
            for p in products
        ]


class CoOccurrenceStrategy(Strategy):
    """
    "people who X'd this also X'd": distinct users with `action` on the
    product, then how many of them did `action` on every other product.
    score = co-users / users.
    """

    needs_product = True

    def __init__(
        self,
        kind: StrategyKind,
        action: ActionKind,
        reason_verb: str,
        store: Store,
        user_cap: int,
        on_empty: Callable[[StrategyContext, int, Set[str]], List[Candidate]],
    ):
        self.kind = kind
        self.action = action
        self.reason_verb = reason_verb
        self.store = store
        self.user_cap = user_cap
        self.on_empty = on_empty

    def run(self, ctx, limit, exclude_ids):
        if limit <= 0 or not ctx.product_id:
            return []
        excluded = self._excluded(ctx, exclude_ids)

        users = self.store.distinct_users(
            EventFilter(product_ids=[ctx.product_id], actions=[self.action]),
            limit=self.user_cap,
        )
        if not users:
            logger.debug("No %s history for product %s", self.action.value, ctx.product_id)
            return self.on_empty(ctx, limit, excluded)

        groups = self.store.count_by_group(
            EventFilter(
                user_ids=users,
                actions=[self.action],
                exclude_product_ids=sorted(excluded),
            ),
            group_key="product_id",
            distinct_users=True,
        )
        products = self.store.get_products(pid for pid, _ in groups)

        out: List[Candidate] = []
        for product_id, count in groups:
            product = products.get(product_id)
            if not _keep(product, ctx):
                continue
            noun = "shopper" if count == 1 else "shoppers"
            out.append(
                Candidate(
                    product_id=product_id,
                    raw_score=count / len(users),
                    reason=f"{count} {noun} also {self.reason_verb} this",
                    strategy=self.kind,
                    product=product,
                )
            )
            if len(out) >= limit:
                break

        if not out:
            return self.on_empty(ctx, limit, excluded)
        return out


class SimilarProductsStrategy(Strategy):
    kind = StrategyKind.SIMILAR_PRODUCTS
    needs_product = True

    def __init__(self, store: Store, index: SimilarityIndex, fallback: CategoryFallback):
        self.store = store
        self.index = index
        self.fallback = fallback

    def run(self, ctx, limit, exclude_ids):
        if limit <= 0 or not ctx.product_id:
            return []
        excluded = self._excluded(ctx, exclude_ids)

        # over-fetch a little when stock filtering can drop rows
        fetch = limit * 3 if ctx.in_stock_only else limit
        entries = self.index.lookup(ctx.product_id, sorted(excluded), fetch)
        products = self.store.get_products(e.similar_product_id for e in entries)

        out: List[Candidate] = []
        for entry in entries:
            product = products.get(entry.similar_product_id)
            if not _keep(product, ctx):
                continue
            out.append(
                Candidate(
                    product_id=entry.similar_product_id,
                    raw_score=entry.score,
                    reason="Similar product",
                    strategy=self.kind,
                    product=product,
                )
            )
            if len(out) >= limit:
                break

        if not out:
            logger.debug("No similarity rows for product %s", ctx.product_id)
            return self.fallback.run(ctx, limit, excluded, SIMILAR_CATEGORY_BASE_SCORE)
        return out


class PersonalizedStrategy(Strategy):
    kind = StrategyKind.PERSONALIZED
    needs_user = True

    def __init__(self, store: Store, profiles: PreferenceProfileBuilder, history_limit: int = 100):
        self.store = store
        self.profiles = profiles
        self.history_limit = history_limit

    def run(self, ctx, limit, exclude_ids):
        if limit <= 0 or not ctx.user_id:
            return []

        profile = self.profiles.get_or_build(ctx.user_id)
        history = self.store.recent_events(ctx.user_id, self.history_limit)
        excluded = self._excluded(ctx, exclude_ids) | {ev.product_id for ev in history}

        # no preferred categories -> no category filter, ranking falls back to quality
        products = self.store.find_products(
            ProductQuery(
                categories=profile.preferred_categories or None,
                price_range=profile.preferred_price_range,
                exclude_ids=sorted(excluded),
                in_stock_only=True,
                order_by="rating",
                limit=limit * 2,
            )
        )

        out = []
        for p in products:
            if p.category in profile.preferred_categories:
                reason = f"Because you like {p.category}"
            else:
                reason = "Picked for you"
            out.append(
                Candidate(
                    product_id=p.id,
                    raw_score=personalized_score(p, profile),
                    reason=reason,
                    strategy=self.kind,
                    product=p,
                )
            )

        # stable: equal scores keep the rating/review order from the query
        out.sort(key=lambda c: c.raw_score, reverse=True)
        return out[:limit]


class StrategySet:
    """All strategies over one store, wired with their fallback chain."""

    def __init__(
        self,
        store: Store,
        profiles: PreferenceProfileBuilder,
        index: SimilarityIndex,
        trending_window_days: int = 7,
        co_occurrence_user_cap: int = 1000,
        personalized_history_limit: int = 100,
    ):
        trending = TrendingStrategy(store, window_days=trending_window_days)
        fallback = CategoryFallback(store, trending)

        also_viewed = CoOccurrenceStrategy(
            kind=StrategyKind.ALSO_VIEWED,
            action=ActionKind.VIEW,
            reason_verb="viewed",
            store=store,
            user_cap=co_occurrence_user_cap,
            on_empty=lambda ctx, limit, excluded: fallback.run(ctx, limit, excluded, CO_OCCURRENCE_FALLBACK_SCORE),
        )
        also_bought = CoOccurrenceStrategy(
            kind=StrategyKind.ALSO_BOUGHT,
            action=ActionKind.PURCHASE,
            reason_verb="bought",
            store=store,
            user_cap=co_occurrence_user_cap,
            on_empty=lambda ctx, limit, excluded: also_viewed.run(ctx, limit, sorted(excluded)),
        )

        self._strategies: Dict[StrategyKind, Strategy] = {
            StrategyKind.PERSONALIZED: PersonalizedStrategy(store, profiles, personalized_history_limit),
            StrategyKind.ALSO_VIEWED: also_viewed,
            StrategyKind.ALSO_BOUGHT: also_bought,
            StrategyKind.SIMILAR_PRODUCTS: SimilarProductsStrategy(store, index, fallback),
            StrategyKind.TRENDING: trending,
            StrategyKind.NEW_ARRIVALS: NewArrivalsStrategy(store),
            StrategyKind.PRICE_DROP: PriceDropStrategy(store),
            StrategyKind.CART_ABANDONMENT: CartAbandonmentStrategy(store),
        }

    def get(self, kind: StrategyKind) -> Strategy:
        return self._strategies[StrategyKind(kind)]
