"""
Request-level orchestration: pick the strategy (or the mixed quotas), keep
exclusions across quotas, normalize, drop out-of-stock products, truncate.

A failing strategy (store timeout, locked db, ...) is logged and counts as
returning nothing; the rest of the request carries on.
"""
from __future__ import annotations

from typing import List, Optional, Sequence
import logging
import math

from backend.recommender.feedback import FeedbackRecorder
from backend.recommender.models import (
    Candidate,
    Clock,
    RecommendationOptions,
    StrategyKind,
    clamp_unit,
    system_clock,
)
from backend.recommender.store import Store, StoreError
from backend.recommender.strategies import StrategyContext, StrategySet

logger = logging.getLogger(__name__)


class RecommendationService:
    def __init__(
        self,
        store: Store,
        strategies: StrategySet,
        feedback: Optional[FeedbackRecorder] = None,
        redistribute_shortfall: bool = False,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.strategies = strategies
        self.feedback = feedback
        self.redistribute_shortfall = redistribute_shortfall
        self.clock = clock

    def get_recommendations(self, options: RecommendationOptions) -> List[Candidate]:
        limit = int(options.limit)
        if limit <= 0:
            return []

        excluded = [str(pid) for pid in options.exclude_product_ids]
        ctx = StrategyContext(
            user_id=options.user_id or None,
            product_id=options.product_id or None,
            in_stock_only=not options.include_out_of_stock,
            now=self.clock(),
        )

        if options.strategy is not None:
            candidates = self._run(StrategyKind(options.strategy), ctx, limit, excluded)
        else:
            candidates = self._mixed(ctx, limit, excluded)

        result = self._finalize(candidates, ctx, limit, set(excluded))

        if ctx.user_id and result and self.feedback is not None:
            try:
                self.feedback.persist_batch(ctx.user_id, result, options.strategy, options.context)
            except StoreError:
                logger.warning("Could not store recommendation batch for user %s", ctx.user_id, exc_info=True)

        return result

    def _run(
        self,
        kind: StrategyKind,
        ctx: StrategyContext,
        limit: int,
        exclude_ids: Sequence[str],
    ) -> List[Candidate]:
        strategy = self.strategies.get(kind)
        if not strategy.applicable(ctx):
            # e.g. PERSONALIZED without a user: nothing to say, not an error
            return []

        excluded = list(exclude_ids)
        if ctx.product_id and ctx.product_id not in excluded:
            excluded.append(ctx.product_id)

        try:
            return strategy.run(ctx, limit, excluded)
        except StoreError:
            logger.warning("Strategy %s failed, returning no candidates", kind.value, exc_info=True)
            return []

    def _mixed(self, ctx: StrategyContext, limit: int, exclude_ids: Sequence[str]) -> List[Candidate]:
        """
        thirds: trending, personalized-or-similar, new arrivals.
        each quota excludes everything picked before it. a quota that comes
        back short is not topped up unless redistribute_shortfall is on.
        """
        per_quota = math.ceil(limit / 3)
        picked: List[Candidate] = []

        def excluded_now() -> List[str]:
            return list(exclude_ids) + [c.product_id for c in picked]

        picked.extend(self._run(StrategyKind.TRENDING, ctx, per_quota, excluded_now()))

        if ctx.user_id:
            picked.extend(self._run(StrategyKind.PERSONALIZED, ctx, per_quota, excluded_now()))
        elif ctx.product_id:
            picked.extend(self._run(StrategyKind.SIMILAR_PRODUCTS, ctx, per_quota, excluded_now()))

        if self.redistribute_shortfall:
            remaining = limit - len(picked)
        else:
            remaining = max(0, limit - 2 * per_quota)
        picked.extend(self._run(StrategyKind.NEW_ARRIVALS, ctx, remaining, excluded_now()))

        return picked

    def _finalize(
        self,
        candidates: List[Candidate],
        ctx: StrategyContext,
        limit: int,
        excluded: set,
    ) -> List[Candidate]:
        out: List[Candidate] = []
        seen: set = set()

        for c in candidates:
            if c.product_id in excluded or c.product_id == ctx.product_id or c.product_id in seen:
                continue
            # stock is a presentation concern, checked after scoring
            if ctx.in_stock_only:
                product = c.product or self.store.get_product(c.product_id)
                if product is None or not product.in_stock:
                    continue
            c.normalized_score = clamp_unit(c.raw_score)
            seen.add(c.product_id)
            out.append(c)

        return out[:limit]
