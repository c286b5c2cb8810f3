from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union
import time


class ActionKind(str, Enum):
    VIEW = "VIEW"
    ADD_TO_CART = "ADD_TO_CART"
    PURCHASE = "PURCHASE"


class StrategyKind(str, Enum):
    PERSONALIZED = "PERSONALIZED"
    ALSO_VIEWED = "ALSO_VIEWED"
    ALSO_BOUGHT = "ALSO_BOUGHT"
    SIMILAR_PRODUCTS = "SIMILAR_PRODUCTS"
    TRENDING = "TRENDING"
    NEW_ARRIVALS = "NEW_ARRIVALS"
    PRICE_DROP = "PRICE_DROP"
    CART_ABANDONMENT = "CART_ABANDONMENT"


class SimilarityKind(str, Enum):
    CATEGORY = "CATEGORY"
    CO_VIEW = "CO_VIEW"
    CO_PURCHASE = "CO_PURCHASE"
    CONTENT_BASED = "CONTENT_BASED"


class ShoppingStyle(str, Enum):
    BALANCED = "BALANCED"
    BUDGET = "BUDGET"
    PREMIUM = "PREMIUM"


# unix seconds; swapped for a fixed value in tests
Clock = Callable[[], int]


def system_clock() -> int:
    return int(time.time())


# keys of InteractionEvent metadata that get their own column;
# everything else stays in the freeform blob and is never scored on
EVENT_METADATA_KEYS = ("session_id", "device_type", "source", "duration_ms")

# keys accepted in the per-request recommendation context
CONTEXT_KEYS = ("user_agent", "referer", "page", "placement")


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    category: str
    price: float
    sale_price: Optional[float]
    rating: float
    review_count: int
    in_stock: bool
    created_at: int
    description: str = ""
    tags: List[str] = field(default_factory=list)

    @property
    def discount_fraction(self) -> float:
        if self.sale_price is None or self.price <= 0 or self.sale_price >= self.price:
            return 0.0
        return (self.price - self.sale_price) / self.price


@dataclass(frozen=True)
class InteractionEvent:
    user_id: str
    product_id: str
    action: ActionKind
    ts: int
    session_id: Optional[str] = None
    device_type: Optional[str] = None
    source: Optional[str] = None
    duration_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PriceRange:
    min: float
    max: float

    def contains(self, price: float) -> bool:
        return self.min <= price <= self.max


@dataclass
class PreferenceProfile:
    user_id: str
    preferred_categories: List[str]
    preferred_price_range: Optional[PriceRange]
    shopping_style: ShoppingStyle
    updated_at: int

    @property
    def has_signal(self) -> bool:
        return bool(self.preferred_categories) or self.preferred_price_range is not None


@dataclass(frozen=True)
class SimilarityEntry:
    product_id: str
    similar_product_id: str
    score: float
    kind: SimilarityKind


@dataclass
class Candidate:
    product_id: str
    raw_score: float
    reason: str
    strategy: StrategyKind
    normalized_score: float = 0.0
    product: Optional[Product] = None


@dataclass
class StoredRecommendation:
    user_id: str
    product_id: str
    strategy: StrategyKind
    score: float
    reason: str
    context: Optional[Dict[str, Any]]
    created_at: int
    expires_at: int
    is_shown: bool = False
    shown_at: Optional[int] = None
    is_clicked: bool = False
    clicked_at: Optional[int] = None
    is_purchased: bool = False
    purchased_at: Optional[int] = None


@dataclass
class RecommendationOptions:
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    strategy: Optional[StrategyKind] = None
    limit: int = 10
    include_out_of_stock: bool = False
    exclude_product_ids: List[str] = field(default_factory=list)
    context: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Ok:
    ok: bool = True


@dataclass(frozen=True)
class SoftFailure:
    reason: str
    ok: bool = False


RecordResult = Union[Ok, SoftFailure]


def clamp_unit(value: float) -> float:
    return max(0.0, min(float(value), 1.0))


def split_known_keys(raw: Optional[Dict[str, Any]], known: tuple) -> tuple[Dict[str, Any], Dict[str, Any]]:
    """
    split a loose metadata dict into (recognized, extra).
    recognized keys are matched case-insensitively and camelCase is folded
    to snake_case so storefront payloads like {"sessionId": ...} still land.
    """
    recognized: Dict[str, Any] = {}
    extra: Dict[str, Any] = {}
    for key, value in (raw or {}).items():
        norm = _snake(str(key))
        if norm in known:
            recognized[norm] = value
        else:
            extra[str(key)] = value
    return recognized, extra


def _snake(name: str) -> str:
    # underscore only on a lower->upper boundary: sessionId, SessionID and SESSION_ID all give session_id
    out = []
    prev = ""
    for ch in name:
        if ch.isupper() and (prev.islower() or prev.isdigit()):
            out.append("_")
        out.append(ch.lower())
        prev = ch
    return "".join(out)
