from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence, Tuple
import logging

from backend.recommender.models import (
    ActionKind,
    Clock,
    InteractionEvent,
    PreferenceProfile,
    PriceRange,
    Product,
    ShoppingStyle,
    system_clock,
)
from backend.recommender.store import Store, StoreError

logger = logging.getLogger(__name__)

MAX_PREFERRED_CATEGORIES = 5

# actions that say something about what the user is willing to pay
_PRICE_SIGNAL_ACTIONS = {ActionKind.PURCHASE, ActionKind.ADD_TO_CART}


class ProfileCache:
    """
    Small in-process TTL cache for profiles, keyed by user id.
    Expired entries are swept on `put` at most once per TTL, and the cache
    never holds more than `max_entries` (oldest insert evicted first).
    """

    def __init__(self, ttl_seconds: int, clock: Clock = system_clock, max_entries: int = 10_000):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.max_entries = max(1, max_entries)
        self._entries: Dict[str, Tuple[int, PreferenceProfile]] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, user_id: str) -> Optional[PreferenceProfile]:
        hit = self._entries.get(user_id)
        if hit is None:
            return None
        stored_at, profile = hit
        if self.clock() - stored_at >= self.ttl_seconds:
            self._entries.pop(user_id, None)
            return None
        return profile

    def put(self, profile: PreferenceProfile) -> None:
        if self.ttl_seconds <= 0:
            return
        now = self.clock()
        if now - self._last_sweep >= self.ttl_seconds:
            self._sweep(now)

        # re-insert so dict order stays oldest-first
        self._entries.pop(profile.user_id, None)
        while len(self._entries) >= self.max_entries:
            self._entries.pop(next(iter(self._entries)))
        self._entries[profile.user_id] = (now, profile)

    def _sweep(self, now: int) -> None:
        expired = [uid for uid, (stored_at, _) in self._entries.items() if now - stored_at >= self.ttl_seconds]
        for uid in expired:
            del self._entries[uid]
        self._last_sweep = now
        if expired:
            logger.debug("Dropped %d expired cached profiles", len(expired))


def derive_profile(
    user_id: str,
    events: Sequence[InteractionEvent],
    products: Mapping[str, Product],
    now: int,
    price_band_margin: Optional[float] = None,
) -> PreferenceProfile:
    """
    pure function of (event window, product attributes):
    - count how often each category shows up in the window
    - keep the top 5, most frequent first (ties: most recent first)
    - optionally derive a price band from carted/purchased prices
    """
    counts: Dict[str, int] = {}
    first_seen: Dict[str, int] = {}
    signal_prices: List[float] = []

    # events come newest first, so first_seen order == recency order
    for pos, ev in enumerate(events):
        product = products.get(ev.product_id)
        if product is None or not product.category:
            continue
        counts[product.category] = counts.get(product.category, 0) + 1
        first_seen.setdefault(product.category, pos)
        if ev.action in _PRICE_SIGNAL_ACTIONS:
            signal_prices.append(product.price)

    ranked = sorted(counts, key=lambda c: (-counts[c], first_seen[c]))
    preferred = ranked[:MAX_PREFERRED_CATEGORIES]

    price_range = None
    if price_band_margin is not None and signal_prices:
        lo = min(signal_prices) * (1.0 - price_band_margin)
        hi = max(signal_prices) * (1.0 + price_band_margin)
        price_range = PriceRange(min=max(0.0, lo), max=hi)

    return PreferenceProfile(
        user_id=user_id,
        preferred_categories=preferred,
        preferred_price_range=price_range,
        shopping_style=ShoppingStyle.BALANCED,
        updated_at=now,
    )


class PreferenceProfileBuilder:
    def __init__(
        self,
        store: Store,
        cache: ProfileCache,
        history_limit: int = 50,
        max_age_seconds: int = 24 * 3600,
        price_band_margin: Optional[float] = None,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.cache = cache
        self.history_limit = history_limit
        self.max_age_seconds = max_age_seconds
        self.price_band_margin = price_band_margin
        self.clock = clock

    def get_or_build(self, user_id: str) -> PreferenceProfile:
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached

        stored = self.store.get_profile(user_id)
        if stored is not None and self.clock() - stored.updated_at < self.max_age_seconds:
            self.cache.put(stored)
            return stored

        return self.rebuild(user_id)

    def rebuild(self, user_id: str) -> PreferenceProfile:
        """Recompute from the most recent events and upsert (last writer wins)."""
        events = self.store.recent_events(user_id, self.history_limit)
        products = self.store.get_products({ev.product_id for ev in events})
        profile = derive_profile(
            user_id,
            events,
            products,
            now=self.clock(),
            price_band_margin=self.price_band_margin,
        )

        if not events:
            logger.debug("No history for user %s, profile carries no signal", user_id)

        # stored row is a cache: write failures are logged, not raised
        try:
            self.store.upsert_profile(profile)
        except StoreError:
            logger.warning("Could not store profile for user %s", user_id, exc_info=True)
        self.cache.put(profile)
        return profile
