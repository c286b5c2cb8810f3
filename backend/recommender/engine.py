from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from backend.app.config import Settings, settings as default_settings
from backend.recommender.events import EventRecorder
from backend.recommender.feedback import FeedbackRecorder
from backend.recommender.mixer import RecommendationService
from backend.recommender.models import Clock, system_clock
from backend.recommender.profiles import PreferenceProfileBuilder, ProfileCache
from backend.recommender.similarity import SimilarityIndex
from backend.recommender.store import Store
from backend.recommender.strategies import StrategySet


@dataclass
class Engine:
    store: Store
    events: EventRecorder
    profiles: PreferenceProfileBuilder
    similarity: SimilarityIndex
    strategies: StrategySet
    feedback: FeedbackRecorder
    recommendations: RecommendationService


def build_engine(
    store: Store,
    settings: Optional[Settings] = None,
    profile_cache: Optional[ProfileCache] = None,
    clock: Clock = system_clock,
) -> Engine:
    """
    wire every collaborator over one store.
    pass a long-lived `profile_cache` to share cached profiles across requests.
    """
    s = settings or default_settings
    cache = profile_cache
    if cache is None:
        cache = ProfileCache(s.profile_cache_ttl_seconds, clock=clock, max_entries=s.profile_cache_max_entries)

    profiles = PreferenceProfileBuilder(
        store,
        cache,
        history_limit=s.profile_history_limit,
        max_age_seconds=s.profile_max_age_seconds,
        price_band_margin=s.profile_price_band_margin,
        clock=clock,
    )
    index = SimilarityIndex(store)
    strategies = StrategySet(
        store,
        profiles,
        index,
        trending_window_days=s.trending_window_days,
        co_occurrence_user_cap=s.co_occurrence_user_cap,
        personalized_history_limit=s.personalized_history_limit,
    )
    feedback = FeedbackRecorder(
        store,
        ttl_hours=s.recommendation_ttl_hours,
        batch_seconds=s.recommendation_batch_seconds,
        clock=clock,
    )
    service = RecommendationService(
        store,
        strategies,
        feedback=feedback,
        redistribute_shortfall=s.mixed_redistribute_shortfall,
        clock=clock,
    )

    return Engine(
        store=store,
        events=EventRecorder(store, clock=clock),
        profiles=profiles,
        similarity=index,
        strategies=strategies,
        feedback=feedback,
        recommendations=service,
    )
