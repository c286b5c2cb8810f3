"""
Product similarity: the read-only index the strategies query, plus the batch
job that fills it.

The batch job recomputes one similarity kind at a time and swaps all of its
rows in a single transaction, so readers see either the old or the new table.
Every pair is stored in both directions.
"""
from __future__ import annotations

from itertools import combinations
from typing import Dict, Iterable, List, Optional, Sequence
import logging
import math

from backend.recommender.models import (
    ActionKind,
    Clock,
    Product,
    SimilarityEntry,
    SimilarityKind,
    system_clock,
)
from backend.recommender.store import Store

logger = logging.getLogger(__name__)

CATEGORY_THRESHOLD = 0.4
COLLABORATIVE_THRESHOLD = 0.2
CONTENT_THRESHOLD = 0.3
MIN_COMMON_USERS = 2


class SimilarityIndex:
    def __init__(self, store: Store):
        self.store = store

    def lookup(
        self,
        product_id: str,
        exclude_ids: Sequence[str] = (),
        limit: int = 10,
        kinds: Optional[Sequence[SimilarityKind]] = None,
    ) -> List[SimilarityEntry]:
        """Most similar products first; empty for products the batch job never saw."""
        if limit <= 0:
            return []
        return self.store.similar_products(product_id, list(exclude_ids), limit, kinds)


# pairwise scores

def _price_closeness(a: float, b: float) -> float:
    top = max(a, b)
    if top <= 0:
        return 1.0
    return 1.0 - abs(a - b) / top


def _jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    sa, sb = set(a), set(b)
    union = sa | sb
    if not union:
        return 0.0
    return len(sa & sb) / len(union)


def _words(product: Product) -> set[str]:
    text = f"{product.name} {product.description}".lower()
    return {w for w in text.split() if len(w) > 2}


def category_similarity(a: Product, b: Product) -> float:
    """Average of rating closeness and price closeness (only meaningful within a category)."""
    rating_sim = 1.0 - abs(a.rating - b.rating) / 5.0
    return (rating_sim + _price_closeness(a.price, b.price)) / 2.0


def content_similarity(a: Product, b: Product) -> float:
    score = 0.0
    if a.category and a.category == b.category:
        score += 0.4
    score += _jaccard(a.tags, b.tags) * 0.3
    score += _price_closeness(a.price, b.price) * 0.2
    score += _jaccard(_words(a), _words(b)) * 0.1
    return min(score, 1.0)


def collaborative_similarity(
    a: str,
    b: str,
    user_counts: Dict[str, Dict[str, int]],
) -> float:
    """Cosine over users who touched both products; needs MIN_COMMON_USERS of them."""
    common = [u for u, counts in user_counts.items() if a in counts and b in counts]
    if len(common) < MIN_COMMON_USERS:
        return 0.0

    dot = norm_a = norm_b = 0.0
    for u in common:
        ca = user_counts[u][a]
        cb = user_counts[u][b]
        dot += ca * cb
        norm_a += ca * ca
        norm_b += cb * cb

    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def _symmetric(a: str, b: str, score: float, kind: SimilarityKind) -> List[SimilarityEntry]:
    score = max(0.0, min(score, 1.0))
    return [
        SimilarityEntry(product_id=a, similar_product_id=b, score=score, kind=kind),
        SimilarityEntry(product_id=b, similar_product_id=a, score=score, kind=kind),
    ]


# batch computations

def compute_category_similarities(products: Sequence[Product]) -> List[SimilarityEntry]:
    groups: Dict[str, List[Product]] = {}
    for p in products:
        if p.category:
            groups.setdefault(p.category, []).append(p)

    entries: List[SimilarityEntry] = []
    for group in groups.values():
        for a, b in combinations(group, 2):
            score = category_similarity(a, b)
            if score > CATEGORY_THRESHOLD:
                entries.extend(_symmetric(a.id, b.id, score, SimilarityKind.CATEGORY))
    return entries


def compute_content_similarities(products: Sequence[Product]) -> List[SimilarityEntry]:
    entries: List[SimilarityEntry] = []
    for a, b in combinations(products, 2):
        score = content_similarity(a, b)
        if score > CONTENT_THRESHOLD:
            entries.extend(_symmetric(a.id, b.id, score, SimilarityKind.CONTENT_BASED))
    return entries


def compute_collaborative_similarities(
    triples: Iterable[tuple[str, str, int]],
    kind: SimilarityKind,
) -> List[SimilarityEntry]:
    user_counts: Dict[str, Dict[str, int]] = {}
    for user_id, product_id, count in triples:
        user_counts.setdefault(user_id, {})[product_id] = count

    product_ids = sorted({pid for counts in user_counts.values() for pid in counts})

    entries: List[SimilarityEntry] = []
    for a, b in combinations(product_ids, 2):
        score = collaborative_similarity(a, b, user_counts)
        if score > COLLABORATIVE_THRESHOLD:
            entries.extend(_symmetric(a, b, score, kind))
    return entries


_CO_OCCURRENCE_ACTIONS = {
    SimilarityKind.CO_VIEW: [ActionKind.VIEW],
    SimilarityKind.CO_PURCHASE: [ActionKind.PURCHASE],
}


def calculate_similarities(
    store: Store,
    kinds: Optional[Sequence[SimilarityKind]] = None,
    clock: Clock = system_clock,
) -> Dict[str, int]:
    """
    recompute the requested kinds (all by default) and replace their rows.
    returns {kind: rows written}
    """
    kinds = list(kinds) if kinds else list(SimilarityKind)
    now = clock()
    written: Dict[str, int] = {}

    products: Optional[List[Product]] = None

    for kind in kinds:
        if kind in (SimilarityKind.CATEGORY, SimilarityKind.CONTENT_BASED):
            if products is None:
                products = store.all_products()
            if kind == SimilarityKind.CATEGORY:
                entries = compute_category_similarities(products)
            else:
                entries = compute_content_similarities(products)
        else:
            triples = store.interaction_counts(_CO_OCCURRENCE_ACTIONS[kind])
            entries = compute_collaborative_similarities(triples, kind)

        written[kind.value] = store.replace_similarities(kind, entries, now)
        logger.info("Stored %d %s similarity rows", written[kind.value], kind.value)

    return written
