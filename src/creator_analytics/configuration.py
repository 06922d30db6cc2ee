# config parameters for the creator analytics engine

from __future__ import annotations

import os
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, field_validator


# ========== 1. Engagement scoring ==========

class EngagementWeights(BaseModel):
    product_weight: float = 10.0
    """Points per product created"""

    post_weight: float = 15.0
    """Points per post created"""

    click_weight: float = 0.5
    """Points per click received on the user's products"""


class ScoreBucketConfig(BaseModel):
    label: str
    upper: Optional[float] = None
    """Inclusive upper bound; ``None`` marks the open-ended last bucket"""


def _default_buckets() -> List[ScoreBucketConfig]:
    return [
        ScoreBucketConfig(label="0", upper=0),
        ScoreBucketConfig(label="1-10", upper=10),
        ScoreBucketConfig(label="11-50", upper=50),
        ScoreBucketConfig(label="51-100", upper=100),
        ScoreBucketConfig(label="100+", upper=None),
    ]


class EngagementConfig(BaseModel):
    weights: EngagementWeights = EngagementWeights()
    buckets: List[ScoreBucketConfig] = Field(default_factory=_default_buckets)
    top_k: int = 5
    """How many users the leaderboard returns"""

    @field_validator("buckets")
    @classmethod
    def _validate_buckets(cls, buckets: List[ScoreBucketConfig]) -> List[ScoreBucketConfig]:
        if not buckets:
            raise ValueError("at least one score bucket is required")
        bounds = [bucket.upper for bucket in buckets[:-1]]
        if any(bound is None for bound in bounds):
            raise ValueError("only the last score bucket may be open-ended")
        if bounds != sorted(bounds):
            raise ValueError("score bucket bounds must be ascending")
        return buckets


class FeatureTargets(BaseModel):
    product: float = 85.0
    post: float = 60.0
    upgrade: float = 15.0


# ========== 2. Cohorts & retention ==========

class CohortConfig(BaseModel):
    window: int = 8
    """Number of cohort buckets shown (and max period offsets per row)"""


def _default_benchmark() -> Dict[int, float]:
    return {0: 100.0, 1: 75.0, 7: 45.0, 14: 35.0, 30: 25.0, 60: 18.0, 90: 15.0}


class BenchmarkConfig(BaseModel):
    """Industry reference curve; product input, not derived from data."""

    label: str = "benchmark"
    curve: Dict[int, float] = Field(default_factory=_default_benchmark)


class RetentionConfig(BaseModel):
    curve_days: Tuple[int, ...] = (0, 1, 7, 14, 30, 60, 90)
    horizons: Tuple[int, ...] = (1, 7, 30, 90)
    max_curves: int = 3
    mau_window_days: int = 30
    benchmark: BenchmarkConfig = BenchmarkConfig()


# ========== 3. Resurrection ==========

class ResurrectionConfig(BaseModel):
    dormancy_days: int = 30
    """Days without qualifying activity before a user counts as dormant"""

    reactivation_window_days: int = 14
    """How long after a campaign send an activity still counts as a reactivation"""

    channels: Tuple[str, ...] = ("email", "push", "in_app", "sms")
    """Channels always reported, even when nobody is dormant there"""


# ========== 4. Advisory cache ==========

class CacheConfig(BaseModel):
    enable: bool = False
    open_period_ttl_seconds: int = 0
    """TTL for results that still cover an open period; 0 disables caching them"""

    max_entries: int = 256


# ========== 5. Aggregate ==========

class AnalyticsConfig(BaseModel):
    """Configuration for the creator analytics engine."""

    timezone: str = "UTC"
    default_period: str = "30d"
    cohorts: CohortConfig = CohortConfig()
    retention: RetentionConfig = RetentionConfig()
    engagement: EngagementConfig = EngagementConfig()
    features: FeatureTargets = FeatureTargets()
    resurrection: ResurrectionConfig = ResurrectionConfig()
    cache: CacheConfig = CacheConfig()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def load_analytics_config(config: Optional[Mapping[str, Any]] = None) -> AnalyticsConfig:
    """
    Build the config from defaults, then ``config["configurable"]``, then env.

    Environment variables win so deployments can tune weights and thresholds
    without a code change.
    """

    configurable = dict((config or {}).get("configurable", {}))
    cfg = AnalyticsConfig(**configurable)

    weights = cfg.engagement.weights
    engagement = cfg.engagement.model_copy(
        update={
            "weights": EngagementWeights(
                product_weight=_env_float("ANALYTICS_PRODUCT_WEIGHT", weights.product_weight),
                post_weight=_env_float("ANALYTICS_POST_WEIGHT", weights.post_weight),
                click_weight=_env_float("ANALYTICS_CLICK_WEIGHT", weights.click_weight),
            ),
            "top_k": _env_int("ANALYTICS_TOP_K", cfg.engagement.top_k),
        }
    )

    resurrection = cfg.resurrection.model_copy(
        update={
            "dormancy_days": _env_int("ANALYTICS_DORMANCY_DAYS", cfg.resurrection.dormancy_days),
            "reactivation_window_days": _env_int(
                "ANALYTICS_REACTIVATION_WINDOW_DAYS", cfg.resurrection.reactivation_window_days
            ),
        }
    )

    cache = CacheConfig(
        enable=_env_bool("ANALYTICS_CACHE_ENABLE", cfg.cache.enable),
        open_period_ttl_seconds=_env_int("ANALYTICS_OPEN_PERIOD_TTL_SECONDS", cfg.cache.open_period_ttl_seconds),
        max_entries=_env_int("ANALYTICS_CACHE_MAX_ENTRIES", cfg.cache.max_entries),
    )

    return cfg.model_copy(
        update={
            "timezone": os.getenv("ANALYTICS_TIMEZONE", cfg.timezone),
            "default_period": os.getenv("ANALYTICS_DEFAULT_PERIOD", cfg.default_period),
            "cohorts": CohortConfig(window=_env_int("ANALYTICS_COHORT_WINDOW", cfg.cohorts.window)),
            "engagement": engagement,
            "resurrection": resurrection,
            "cache": cache,
        }
    )
