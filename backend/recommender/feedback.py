from __future__ import annotations

from typing import Any, Dict, Optional, Sequence
import logging

from backend.recommender.models import (
    CONTEXT_KEYS,
    Candidate,
    Clock,
    StoredRecommendation,
    StrategyKind,
    split_known_keys,
    system_clock,
)
from backend.recommender.store import Store, StoreError

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600
STATS_WINDOW_SECONDS = 7 * 24 * HOUR_SECONDS


def clean_context(context: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Keep only the recognized context keys; unknown ones are dropped, not stored."""
    known, _extra = split_known_keys(context, CONTEXT_KEYS)
    known = {k: v for k, v in known.items() if v is not None}
    return known or None


class FeedbackRecorder:
    """
    stored recommendations + shown/clicked/purchased outcomes.
    all writes are idempotent: duplicate inserts are skipped and a flag that
    is already set (or has no live row) updates nothing.
    """

    def __init__(
        self,
        store: Store,
        ttl_hours: int = 24,
        batch_seconds: int = 3600,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.ttl_seconds = ttl_hours * HOUR_SECONDS
        self.batch_seconds = max(1, batch_seconds)
        self.clock = clock

    def batch_key(self, ts: int) -> int:
        return ts // self.batch_seconds

    def persist_batch(
        self,
        user_id: str,
        candidates: Sequence[Candidate],
        strategy: Optional[StrategyKind] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        one row per candidate, expiring ttl_hours from now.
        `strategy` is the requested kind; each row keeps the kind of the
        strategy that actually produced its candidate (mixed mode, fallbacks).
        returns how many rows were new.
        """
        if not user_id or not candidates:
            return 0

        now = self.clock()
        ctx = clean_context(context)
        rows = [
            StoredRecommendation(
                user_id=user_id,
                product_id=c.product_id,
                strategy=c.strategy or strategy,
                score=c.normalized_score,
                reason=c.reason,
                context=ctx,
                created_at=now,
                expires_at=now + self.ttl_seconds,
            )
            for c in candidates
        ]
        inserted = self.store.insert_recommendations(rows, self.batch_key(now))
        logger.debug(
            "Stored %d/%d recommendations for user %s (requested=%s)",
            inserted, len(rows), user_id, strategy.value if strategy else "MIXED",
        )
        return inserted

    def mark_shown(self, user_id: str, product_id: str, strategy: Optional[StrategyKind] = None) -> int:
        return self._mark(user_id, product_id, strategy, "shown")

    def mark_clicked(self, user_id: str, product_id: str, strategy: Optional[StrategyKind] = None) -> int:
        return self._mark(user_id, product_id, strategy, "clicked")

    def mark_purchased(self, user_id: str, product_id: str, strategy: Optional[StrategyKind] = None) -> int:
        """
        only rows that were shown can be purchased. a purchase for a live but
        never-shown row is out-of-order feedback: logged, nothing updated.
        """
        return self._mark(user_id, product_id, strategy, "purchased")

    def _mark(self, user_id: str, product_id: str, strategy: Optional[StrategyKind], flag: str) -> int:
        # never raises: store errors are logged and count as 0 rows updated
        now = self.clock()
        try:
            updated = self.store.mark_recommendations(
                user_id, product_id, strategy, flag, now, require_shown=(flag == "purchased")
            )
            if (
                flag == "purchased"
                and updated == 0
                and self.store.count_active_recommendations(user_id, product_id, strategy, now) > 0
            ):
                logger.warning(
                    "Purchase reported for recommendation that was never shown (user=%s product=%s)",
                    user_id, product_id,
                )
        except StoreError:
            logger.warning(
                "Could not mark %s as %s for user %s", product_id, flag, user_id,
                exc_info=True,
            )
            return 0
        return updated

    def stats(self) -> Dict[str, Any]:
        """CTR / conversion over the last 7 days, plus active rows and top strategy."""
        now = self.clock()
        raw = self.store.recommendation_stats(since=now - STATS_WINDOW_SECONDS, now=now)

        shown, clicked, purchased = raw["shown"], raw["clicked"], raw["purchased"]
        return {
            "total_recommendations": raw["active"],
            "active_users": raw["active_users"],
            "shown": shown,
            "clicked": clicked,
            "purchased": purchased,
            "click_through_rate": (clicked / shown * 100.0) if shown > 0 else 0.0,
            "conversion_rate": (purchased / clicked * 100.0) if clicked > 0 else 0.0,
            "top_strategy": raw["top_strategy"],
            "last_similarity_update": self.store.last_similarity_update(),
        }
