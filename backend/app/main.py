from contextlib import asynccontextmanager
from typing import Any, Dict, Iterator, List, Optional
import logging

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from backend.app.config import settings
from backend.app.logging_setup import setup_logging
from backend.app.db import connect, init_db
from backend.recommender.engine import Engine, build_engine
from backend.recommender.models import (
    ActionKind,
    Candidate,
    RecommendationOptions,
    SimilarityKind,
    StrategyKind,
)
from backend.recommender.profiles import ProfileCache
from backend.recommender.similarity import calculate_similarities
from backend.recommender.store import SQLiteStore, StoreError

setup_logging(settings.log_level, settings.engine_log_level)

logger = logging.getLogger(__name__)

# profiles are cached per process, shared by every request
profile_cache = ProfileCache(settings.profile_cache_ttl_seconds, max_entries=settings.profile_cache_max_entries)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # ensure DB exists
    conn = connect()
    init_db(conn)
    conn.close()

    yield
    # nothing to clean up for sqlite here


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    lifespan=lifespan,
)

if settings.cors_origins_list:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def get_engine() -> Iterator[Engine]:
    conn = connect()
    try:
        yield build_engine(SQLiteStore(conn), settings=settings, profile_cache=profile_cache)
    finally:
        conn.close()


def _parse_strategy(raw: Optional[str]) -> Optional[StrategyKind]:
    if raw is None or raw.strip() == "" or raw.strip().lower() == "mixed":
        return None
    try:
        return StrategyKind(raw.strip().upper())
    except ValueError:
        allowed = ", ".join(k.value for k in StrategyKind)
        raise HTTPException(status_code=400, detail=f"strategy must be one of: {allowed} (or omitted for mixed)")


def _candidate_json(c: Candidate) -> Dict[str, Any]:
    p = c.product
    return {
        "product_id": c.product_id,
        "score": c.normalized_score,
        "raw_score": c.raw_score,
        "reason": c.reason,
        "strategy": c.strategy.value,
        "product": None if p is None else {
            "name": p.name,
            "category": p.category,
            "price": p.price,
            "sale_price": p.sale_price,
            "rating": p.rating,
            "review_count": p.review_count,
            "in_stock": p.in_stock,
        },
    }


@app.get("/health")
def health():
    return {"status": "ok", "app": settings.app_name, "env": settings.app_env}


@app.get("/")
def root():
    return {"message": "Recommendation API is running", "docs": "/docs", "health": "/health"}


# Recommendations
@app.get("/recommendations")
def recommendations(
    request: Request,
    user_id: Optional[str] = Query(None, min_length=1),
    product_id: Optional[str] = Query(None, min_length=1),
    strategy: Optional[str] = Query(None),  # StrategyKind value, omitted -> mixed
    limit: int = Query(settings.default_limit, ge=1, le=settings.max_limit),
    include_out_of_stock: bool = Query(False),
    exclude_ids: str = Query(""),  # comma separated
    placement: Optional[str] = Query(None),
    engine: Engine = Depends(get_engine),
):
    kind = _parse_strategy(strategy)
    excluded = [x.strip() for x in exclude_ids.split(",") if x.strip()]

    options = RecommendationOptions(
        user_id=user_id,
        product_id=product_id,
        strategy=kind,
        limit=limit,
        include_out_of_stock=include_out_of_stock,
        exclude_product_ids=excluded,
        context={
            "user_agent": request.headers.get("user-agent"),
            "referer": request.headers.get("referer"),
            "placement": placement,
        },
    )
    recs = engine.recommendations.get_recommendations(options)

    # served == shown for logged in users
    if user_id:
        for rec in recs:
            engine.feedback.mark_shown(user_id, rec.product_id, rec.strategy)

    return {
        "recommendations": [_candidate_json(r) for r in recs],
        "meta": {
            "total": len(recs),
            "user_id": user_id,
            "product_id": product_id,
            "strategy": kind.value if kind else "MIXED",
        },
    }


# Interaction tracking
class TrackEvent(BaseModel):
    action: str = Field(..., min_length=1, max_length=32)
    user_id: str = Field(..., min_length=1, max_length=64)
    product_id: str = Field(..., min_length=1, max_length=64)
    strategy: Optional[str] = None  # set when the interaction came from a recommendation
    metadata: Dict[str, Any] = Field(default_factory=dict)


TRACK_ACTIONS = ("track_view", "track_click", "track_add_to_cart", "track_purchase", "track_shown")


@app.post("/events/track")
def track(ev: TrackEvent, request: Request, engine: Engine = Depends(get_engine)):
    if ev.action not in TRACK_ACTIONS:
        raise HTTPException(status_code=400, detail=f"action must be one of: {', '.join(TRACK_ACTIONS)}")

    kind = _parse_strategy(ev.strategy)
    metadata = dict(ev.metadata)
    metadata.setdefault("user_agent", request.headers.get("user-agent"))

    updated = 0
    result = None

    if ev.action == "track_view":
        result = engine.events.record(ev.user_id, ev.product_id, ActionKind.VIEW, metadata)

    elif ev.action == "track_click":
        if kind is not None:
            updated = engine.feedback.mark_clicked(ev.user_id, ev.product_id, kind)
        metadata.setdefault("source", "recommendation")
        result = engine.events.record(ev.user_id, ev.product_id, ActionKind.VIEW, metadata)

    elif ev.action == "track_add_to_cart":
        if kind is not None:
            updated = engine.feedback.mark_clicked(ev.user_id, ev.product_id, kind)
        metadata.setdefault("source", "recommendation" if kind is not None else "direct")
        result = engine.events.record(ev.user_id, ev.product_id, ActionKind.ADD_TO_CART, metadata)

    elif ev.action == "track_purchase":
        updated = engine.feedback.mark_purchased(ev.user_id, ev.product_id, kind)
        result = engine.events.record(ev.user_id, ev.product_id, ActionKind.PURCHASE, metadata)

    elif ev.action == "track_shown":
        updated = engine.feedback.mark_shown(ev.user_id, ev.product_id, kind)

    return {
        "status": "ok",
        "recorded": bool(result.ok) if result is not None else False,
        "feedback_updated": updated,
    }


# Admin
class SimilarityRequest(BaseModel):
    kinds: Optional[List[str]] = None  # default: every kind


@app.post("/admin/similarities/calculate")
def admin_calculate_similarities(body: SimilarityRequest, engine: Engine = Depends(get_engine)):
    kinds = None
    if body.kinds:
        try:
            kinds = [SimilarityKind(k.strip().upper()) for k in body.kinds]
        except ValueError:
            allowed = ", ".join(k.value for k in SimilarityKind)
            raise HTTPException(status_code=400, detail=f"kinds must be within: {allowed}")

    try:
        written = calculate_similarities(engine.store, kinds)
    except StoreError as e:
        logger.error("Similarity calculation failed: %s", e, exc_info=True)
        raise HTTPException(status_code=503, detail="Similarity calculation failed")

    return {"status": "ok", "calculated": written, "total": sum(written.values())}


@app.get("/admin/recommendations/stats")
def admin_recommendation_stats(engine: Engine = Depends(get_engine)):
    try:
        return engine.feedback.stats()
    except StoreError as e:
        logger.error("Stats query failed: %s", e, exc_info=True)
        raise HTTPException(status_code=503, detail="Stats unavailable")


# Debug endpoints
@app.get("/debug/events")
def debug_events(
    user_id: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=200),
    engine: Engine = Depends(get_engine),
):
    events = engine.store.recent_events(user_id, limit)
    return [
        {
            "product_id": e.product_id,
            "action": e.action.value,
            "ts": e.ts,
            "session_id": e.session_id,
            "device_type": e.device_type,
            "source": e.source,
            "duration_ms": e.duration_ms,
        }
        for e in events
    ]


@app.get("/debug/profile")
def debug_profile(user_id: str = Query(..., min_length=1), engine: Engine = Depends(get_engine)):
    p = engine.profiles.get_or_build(user_id)
    pr = p.preferred_price_range
    return {
        "user_id": p.user_id,
        "preferred_categories": p.preferred_categories,
        "preferred_price_range": {"min": pr.min, "max": pr.max} if pr else None,
        "shopping_style": p.shopping_style.value,
        "updated_at": p.updated_at,
    }


@app.get("/debug/recommendations")
def debug_recommendations(
    user_id: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=200),
    engine: Engine = Depends(get_engine),
):
    rows = engine.store.list_recommendations(user_id, engine.feedback.clock(), limit)
    return [
        {
            "product_id": r.product_id,
            "strategy": r.strategy.value,
            "score": r.score,
            "reason": r.reason,
            "expires_at": r.expires_at,
            "is_shown": r.is_shown,
            "is_clicked": r.is_clicked,
            "is_purchased": r.is_purchased,
        }
        for r in rows
    ]
