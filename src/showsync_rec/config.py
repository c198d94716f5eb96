"""
Configuration constants for the ShowSync recommendation engine.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables. Engines receive an
immutable RecommendationConfig at construction; the module-level constants
below are the defaults it is built from.
"""
import os
import logging
from dataclasses import dataclass, fields, replace
from datetime import timedelta
from pathlib import Path

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0, max_val: float | None = None) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value
        max_val: Maximum allowed value (None = unbounded)

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        if max_val is not None and val > max_val:
            logger.warning(f"{key}={val} is above maximum {max_val}, using {max_val}")
            return max_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_bool_env(key: str, default: bool) -> bool:
    """Parse a boolean flag from the environment ("1", "true", "yes", "on")."""
    raw = os.environ.get(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off", ""):
        return False
    logger.warning(f"Invalid {key}='{raw}', using default {default}")
    return default


# Database Configuration
DB_PATH = Path(os.environ.get("SHOWSYNC_DB", "data/showsync.db"))

# Notifications (optional webhook, Discord/Slack-style payload)
NOTIFICATION_WEBHOOK_URL = os.environ.get("SHOWSYNC_NOTIFICATION_WEBHOOK", "")
NOTIFICATION_TIMEOUT = 10

# Thresholds
DEFAULT_MIN_RELEVANCE_SCORE = _get_float_env("SHOWSYNC_MIN_RELEVANCE", 0.3, max_val=1.0)
DEFAULT_MIN_SIMILARITY_SCORE = _get_float_env("SHOWSYNC_MIN_SIMILARITY", 0.3, max_val=1.0)
DEFAULT_MIN_CONFIDENCE_THRESHOLD = _get_float_env("SHOWSYNC_MIN_CONFIDENCE", 0.5, max_val=1.0)
DEFAULT_MIN_INTERACTIONS = _get_int_env("SHOWSYNC_MIN_INTERACTIONS", 5, min_val=0)

# Per-dimension weights (relevance and compatibility scoring, must sum to 1)
DEFAULT_GENRE_WEIGHT = _get_float_env("SHOWSYNC_GENRE_WEIGHT", 0.4)
DEFAULT_RATING_WEIGHT = _get_float_env("SHOWSYNC_RATING_WEIGHT", 0.3)
DEFAULT_PLATFORM_WEIGHT = _get_float_env("SHOWSYNC_PLATFORM_WEIGHT", 0.2)
DEFAULT_ERA_WEIGHT = _get_float_env("SHOWSYNC_ERA_WEIGHT", 0.1)
PERSONALITY_WEIGHT = 0.2  # Share of compatibility taken by the personality term

# Recency decay per day: exp(-k * days). 0.005 ~ half-life of 139 days
DEFAULT_TIME_DECAY_FACTOR = _get_float_env("SHOWSYNC_TIME_DECAY", 0.005)

# Generation limits
DEFAULT_MAX_RECOMMENDATIONS_PER_USER = _get_int_env("SHOWSYNC_MAX_RECOMMENDATIONS", 20)
DEFAULT_MAX_SAME_TYPE = _get_int_env("SHOWSYNC_MAX_SAME_TYPE", 5)
DEFAULT_COLLABORATIVE_USER_COUNT = _get_int_env("SHOWSYNC_COLLABORATIVE_USERS", 50)
MAX_GROUP_RECOMMENDATIONS = 10
COLLABORATIVE_MIN_PEER_RATING = 8  # Peers' "highly rated" floor on the 1-10 scale
TRENDING_WINDOW_DAYS = 7

# Expiry and refresh
DEFAULT_CONTENT_EXPIRY_DAYS = _get_int_env("SHOWSYNC_CONTENT_EXPIRY_DAYS", 14)
DEFAULT_GROUP_EXPIRY_DAYS = _get_int_env("SHOWSYNC_GROUP_EXPIRY_DAYS", 7)
DEFAULT_PREFERENCE_REFRESH_DAYS = _get_int_env("SHOWSYNC_PREFERENCE_REFRESH_DAYS", 7)
DEFAULT_CACHE_TTL_SECONDS = _get_int_env("SHOWSYNC_CACHE_TTL", 3600)

# Scheduling
ENABLE_SCHEDULERS = _get_bool_env("SHOWSYNC_ENABLE_SCHEDULERS", True)
ACTIVE_USERS_HOURS_BACK = _get_int_env("SHOWSYNC_ACTIVE_HOURS_BACK", 24)
DAILY_GENERATION_INTERVAL = 24 * 3600
ACTIVE_REFRESH_INTERVAL = 3600
DEFAULT_BATCH_WORKERS = _get_int_env("SHOWSYNC_BATCH_WORKERS", 1)
REALTIME_STRATEGY_WORKERS = 2

# Profile statistics
RATING_MIN = 1
RATING_MAX = 10
COMPLETION_THRESHOLD_PERCENT = 90.0  # Counts as completed even without COMPLETED status
LONG_SESSION_MINUTES = 120

# Viewing personality rules (tunable, inherited thresholds)
PERSONALITY_MIN_INTERACTIONS = 5
BINGE_COMPLETION_RATE = 0.8
BINGE_LONG_SESSION_SHARE = 0.3
EXPLORER_GENRE_SPREAD = 0.7
CRITIC_RATING_STD = 1.5
CRITIC_MIN_RATINGS = 5

# Personality compatibility (symmetric lookup)
SAME_PERSONALITY_COMPATIBILITY = 1.0
CASUAL_COMPATIBILITY = 0.8
CROSS_PERSONALITY_COMPATIBILITY = 0.6
PERSONALITY_PAIR_COMPATIBILITY = {
    frozenset({"BINGE_WATCHER", "EXPLORER"}): 0.6,
    frozenset({"BINGE_WATCHER", "CRITIC"}): 0.5,
    frozenset({"EXPLORER", "CRITIC"}): 0.7,
}

# Confidence curve: 0.5 * volume + 0.3 * history span + 0.2 * diversity
CONFIDENCE_COUNT_WEIGHT = 0.5
CONFIDENCE_SPAN_WEIGHT = 0.3
CONFIDENCE_DIVERSITY_WEIGHT = 0.2
CONFIDENCE_COUNT_SCALE = 20.0
CONFIDENCE_SPAN_SCALE_DAYS = 30.0

# Era buckets, newest first: (label, first year)
ERA_BUCKETS = [
    ("2020s", 2020),
    ("2010s", 2010),
    ("2000s", 2000),
    ("1990s", 1990),
    ("1980s", 1980),
    ("1970s", 1970),
]
ERA_CLASSIC = "Classic"

# Profile maintenance
LOW_CONFIDENCE_THRESHOLD = 0.3
INACTIVE_PROFILE_DAYS = 180


@dataclass(frozen=True)
class RecommendationConfig:
    """Immutable tuning values handed to every engine."""

    min_relevance_score: float = DEFAULT_MIN_RELEVANCE_SCORE
    min_similarity_score: float = DEFAULT_MIN_SIMILARITY_SCORE
    min_confidence_threshold: float = DEFAULT_MIN_CONFIDENCE_THRESHOLD
    min_interactions_for_recommendations: int = DEFAULT_MIN_INTERACTIONS

    genre_weight: float = DEFAULT_GENRE_WEIGHT
    platform_weight: float = DEFAULT_PLATFORM_WEIGHT
    era_weight: float = DEFAULT_ERA_WEIGHT
    rating_weight: float = DEFAULT_RATING_WEIGHT
    personality_weight: float = PERSONALITY_WEIGHT
    time_decay_factor: float = DEFAULT_TIME_DECAY_FACTOR

    max_recommendations_per_user: int = DEFAULT_MAX_RECOMMENDATIONS_PER_USER
    max_same_type_recommendations: int = DEFAULT_MAX_SAME_TYPE
    max_group_recommendations: int = MAX_GROUP_RECOMMENDATIONS
    collaborative_filtering_user_count: int = DEFAULT_COLLABORATIVE_USER_COUNT
    collaborative_min_rating: int = COLLABORATIVE_MIN_PEER_RATING
    trending_window_days: int = TRENDING_WINDOW_DAYS

    content_recommendation_expiry: timedelta = timedelta(days=DEFAULT_CONTENT_EXPIRY_DAYS)
    group_recommendation_expiry: timedelta = timedelta(days=DEFAULT_GROUP_EXPIRY_DAYS)
    preference_refresh_interval: timedelta = timedelta(days=DEFAULT_PREFERENCE_REFRESH_DAYS)
    cache_ttl: timedelta = timedelta(seconds=DEFAULT_CACHE_TTL_SECONDS)

    enable_schedulers: bool = ENABLE_SCHEDULERS
    active_users_hours_back: int = ACTIVE_USERS_HOURS_BACK

    # Feature flags
    enable_personal: bool = True
    enable_group: bool = True
    enable_trending: bool = True
    enable_collaborative: bool = True
    enable_content_based: bool = True
    filter_seen_content: bool = True
    parallel_strategies: bool = True

    @classmethod
    def from_env(cls, **overrides) -> "RecommendationConfig":
        """Build a validated config from the module defaults plus explicit overrides."""
        unknown = set(overrides) - {f.name for f in fields(cls)}
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
        config = cls(**overrides)
        config.validate()
        return config

    def with_overrides(self, **overrides) -> "RecommendationConfig":
        """Return a validated copy with some values replaced."""
        config = replace(self, **overrides)
        config.validate()
        return config

    @property
    def relevance_weights(self) -> dict[str, float]:
        return {
            'genre': self.genre_weight,
            'platform': self.platform_weight,
            'era': self.era_weight,
            'rating': self.rating_weight,
        }

    def validate(self) -> None:
        """Raise ConfigurationError when values are out of range or inconsistent."""
        for name in ("min_relevance_score", "min_similarity_score", "min_confidence_threshold",
                     "personality_weight"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be within [0, 1], got {value}")

        weights = self.relevance_weights
        if any(w < 0 for w in weights.values()):
            raise ConfigurationError(f"Dimension weights must be non-negative: {weights}")
        total = sum(weights.values())
        if abs(total - 1.0) > 1e-6:
            raise ConfigurationError(f"Dimension weights must sum to 1.0, got {total:.4f}")

        if self.time_decay_factor < 0:
            raise ConfigurationError("time_decay_factor must be non-negative")
        if self.min_interactions_for_recommendations < 0:
            raise ConfigurationError("min_interactions_for_recommendations must be non-negative")
        for name in ("max_recommendations_per_user", "max_same_type_recommendations",
                     "max_group_recommendations", "collaborative_filtering_user_count"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")
        for name in ("content_recommendation_expiry", "group_recommendation_expiry",
                     "preference_refresh_interval"):
            if getattr(self, name) <= timedelta(0):
                raise ConfigurationError(f"{name} must be a positive duration")
        if not RATING_MIN <= self.collaborative_min_rating <= RATING_MAX:
            raise ConfigurationError(
                f"collaborative_min_rating must be within [{RATING_MIN}, {RATING_MAX}]"
            )
