from typing import List, Optional
import json

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "StorefrontRecommender"
    app_env: str = "dev"
    log_level: str = "INFO"
    # optional separate level for backend.recommender.* loggers
    engine_log_level: Optional[str] = None

    database_url: str = "sqlite:///./data/app.db"
    # seconds sqlite waits on a locked db before the query fails
    store_timeout_seconds: float = 5.0

    # read raw string from env (works with comma-separated values)
    cors_origins: str = ""

    # request sizing
    default_limit: int = 10
    max_limit: int = 100

    # preference profiles
    profile_history_limit: int = 50
    personalized_history_limit: int = 100
    profile_cache_ttl_seconds: int = 300
    profile_cache_max_entries: int = 10_000
    profile_max_age_seconds: int = 24 * 3600
    # None -> profiles carry no price band
    profile_price_band_margin: Optional[float] = None

    # strategies
    trending_window_days: int = 7
    co_occurrence_user_cap: int = 1000

    # stored recommendations (feedback loop)
    recommendation_ttl_hours: int = 24
    recommendation_batch_seconds: int = 3600

    # mixed mode: let new arrivals fill whatever earlier quotas left empty
    mixed_redistribute_shortfall: bool = False

    @property
    def cors_origins_list(self) -> List[str]:
        s = (self.cors_origins or "").strip()
        if not s:
            return []
        if s.startswith("["):
            # also accept JSON list
            return [str(x) for x in json.loads(s)]
        return [part.strip() for part in s.split(",") if part.strip()]


settings = Settings()
