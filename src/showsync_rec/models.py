"""
Data model shared by the engines.

Records that come from the platform (interactions, media, users, groups) are
read-only to the core. Profiles, recommendations and feedback are owned here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class InteractionStatus(Enum):
    PLAN_TO_WATCH = "PLAN_TO_WATCH"
    WATCHING = "WATCHING"
    COMPLETED = "COMPLETED"
    ON_HOLD = "ON_HOLD"
    DROPPED = "DROPPED"


class MediaType(Enum):
    MOVIE = "MOVIE"
    TV_SHOW = "TV_SHOW"


class ViewingPersonality(Enum):
    """Coarse behavioral archetype derived from interaction patterns."""

    CASUAL = "CASUAL"
    BINGE_WATCHER = "BINGE_WATCHER"
    EXPLORER = "EXPLORER"
    CRITIC = "CRITIC"


class RecommendationType(Enum):
    PERSONAL = "PERSONAL"
    CONTENT_BASED = "CONTENT_BASED"
    COLLABORATIVE = "COLLABORATIVE"
    TRENDING = "TRENDING"


class RecommendationReason(Enum):
    GENRE_MATCH = "GENRE_MATCH"
    SIMILAR_CONTENT = "SIMILAR_CONTENT"
    SIMILAR_USERS = "SIMILAR_USERS"
    TRENDING_GLOBAL = "TRENDING_GLOBAL"
    HIGHLY_RATED = "HIGHLY_RATED"
    GENRE_COMPATIBILITY = "GENRE_COMPATIBILITY"
    GENERAL = "GENERAL"


class TargetKind(Enum):
    """What a feedback entry or state transition points at."""

    CONTENT = "CONTENT"
    GROUP = "GROUP"


class FeedbackType(Enum):
    POSITIVE = "POSITIVE"
    NEGATIVE = "NEGATIVE"
    NEUTRAL = "NEUTRAL"

    @classmethod
    def from_rating(cls, rating: int) -> FeedbackType:
        """Map a 1-5 star rating to a polarity (>=4 positive, <=2 negative)."""
        if rating >= 4:
            return cls.POSITIVE
        if rating <= 2:
            return cls.NEGATIVE
        return cls.NEUTRAL


@dataclass
class InteractionRecord:
    user_id: int
    media_id: int
    status: InteractionStatus = InteractionStatus.WATCHING
    rating: int | None = None  # 1-10
    completion_percentage: float = 0.0
    watch_minutes: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Media:
    id: int
    title: str
    media_type: MediaType = MediaType.MOVIE
    genres: list[str] = field(default_factory=list)
    platform: str | None = None
    release_year: int | None = None
    average_rating: float | None = None  # 0-10
    rating_count: int = 0


@dataclass
class User:
    id: int
    username: str


@dataclass
class Group:
    id: int
    name: str
    description: str = ""
    is_public: bool = True
    is_active: bool = True


@dataclass
class PreferenceProfile:
    """Per-user taste vector plus behavioral statistics."""

    user_id: int
    genre_preferences: dict[str, float] = field(default_factory=dict)
    platform_preferences: dict[str, float] = field(default_factory=dict)
    era_preferences: dict[str, float] = field(default_factory=dict)
    viewing_personality: ViewingPersonality = ViewingPersonality.CASUAL
    confidence_score: float = 0.0
    diversity_score: float = 0.0
    total_interactions: int = 0
    total_completed: int = 0
    completion_rate: float = 0.0
    average_user_rating: float | None = None
    rating_variance: float = 0.0  # population std-dev of the user's ratings
    last_calculated_at: datetime | None = None
    created_at: datetime | None = None
    id: int | None = None

    @property
    def top_genres(self) -> list[str]:
        return sorted(self.genre_preferences, key=self.genre_preferences.get, reverse=True)

    def is_stale(self, now: datetime, max_age) -> bool:
        """True when never calculated or older than max_age."""
        if self.last_calculated_at is None:
            return True
        return now - self.last_calculated_at > max_age


@dataclass
class ContentRecommendation:
    user_id: int
    media_id: int
    recommendation_type: RecommendationType
    reason_code: RecommendationReason
    relevance_score: float
    explanation: str
    created_at: datetime
    expires_at: datetime
    source_media_id: int | None = None
    is_viewed: bool = False
    is_dismissed: bool = False
    is_added_to_library: bool = False
    user_feedback: int | None = None
    id: int | None = None

    # Not persisted: genres of the target, used by diversification
    genres: list[str] = field(default_factory=list, compare=False, repr=False)

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now and not self.is_dismissed


@dataclass
class GroupRecommendation:
    user_id: int
    group_id: int
    compatibility_score: float
    reason_code: RecommendationReason
    explanation: str
    created_at: datetime
    expires_at: datetime
    is_viewed: bool = False
    is_dismissed: bool = False
    is_joined: bool = False
    id: int | None = None


@dataclass
class RecommendationFeedback:
    user_id: int
    target_kind: TargetKind
    target_id: int
    feedback_type: FeedbackType
    created_at: datetime
    feedback_score: int | None = None
    feedback_text: str | None = None
    action_taken: str | None = None
    id: int | None = None


@dataclass(frozen=True)
class UserCompatibility:
    user_id: int
    username: str
    score: float
