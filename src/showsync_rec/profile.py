import logging
import math
import threading
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from statistics import mean
from typing import Callable, Iterable

from .cache import TTLCache
from .config import (
    RecommendationConfig,
    RATING_MIN,
    RATING_MAX,
    COMPLETION_THRESHOLD_PERCENT,
    LONG_SESSION_MINUTES,
    PERSONALITY_MIN_INTERACTIONS,
    BINGE_COMPLETION_RATE,
    BINGE_LONG_SESSION_SHARE,
    EXPLORER_GENRE_SPREAD,
    CRITIC_RATING_STD,
    CRITIC_MIN_RATINGS,
    ERA_BUCKETS,
    ERA_CLASSIC,
    LOW_CONFIDENCE_THRESHOLD,
    INACTIVE_PROFILE_DAYS,
)
from .errors import NotFoundError
from .models import InteractionRecord, InteractionStatus, Media, PreferenceProfile, ViewingPersonality
from .score_math import (
    apply_time_decay,
    calculate_confidence_score,
    calculate_diversity,
    days_between,
    normalize_scores,
    standard_deviation,
)

logger = logging.getLogger(__name__)

PROFILE_LOCK_STRIPES = 64


def era_label(release_year: int | None) -> str | None:
    """Bucket a release year into a decade label ('2010s', ..., 'Classic')."""
    if release_year is None:
        return None
    for label, first_year in ERA_BUCKETS:
        if release_year >= first_year:
            return label
    return ERA_CLASSIC


def _genre_labels(media: Media) -> list[str]:
    return list(dict.fromkeys(media.genres))


def _platform_labels(media: Media) -> list[str]:
    return [media.platform] if media.platform else []


def _era_labels(media: Media) -> list[str]:
    label = era_label(media.release_year)
    return [label] if label else []


DIMENSIONS: dict[str, Callable[[Media], list[str]]] = {
    'genre': _genre_labels,
    'platform': _platform_labels,
    'era': _era_labels,
}


def is_completed(interaction: InteractionRecord) -> bool:
    return (
        interaction.status == InteractionStatus.COMPLETED
        or interaction.completion_percentage >= COMPLETION_THRESHOLD_PERCENT
    )


def _rating_to_unit(avg_rating: float) -> float:
    """Rescale a 1-10 rating to [0, 1]."""
    return (avg_rating - RATING_MIN) / (RATING_MAX - RATING_MIN)


def compute_dimension_preferences(
    interactions: Iterable[InteractionRecord],
    media_by_id: dict[int, Media],
    labels_for: Callable[[Media], list[str]],
    decay_factor: float,
    now: datetime,
) -> dict[str, float]:
    """
    Score each category label of one dimension from rated interactions.

    Per label: base = average rating rescaled to [0, 1], times a frequency
    weight log(count + 1), times exp decay of the label's most recent
    update. Unrated interactions carry no taste signal here.
    """
    grouped: dict[str, list[InteractionRecord]] = defaultdict(list)
    for interaction in interactions:
        if interaction.rating is None:
            continue
        media = media_by_id.get(interaction.media_id)
        if media is None:
            continue
        for label in labels_for(media):
            grouped[label].append(interaction)

    raw: dict[str, float] = {}
    for label, group in grouped.items():
        base = _rating_to_unit(mean(i.rating for i in group))
        frequency = math.log(len(group) + 1)
        timestamps = [i.updated_at or i.created_at for i in group]
        latest = max((t for t in timestamps if t is not None), default=None)
        raw[label] = apply_time_decay(base * frequency, latest, decay_factor, now)

    return normalize_scores(raw)


def classify_personality(
    interactions: list[InteractionRecord],
    media_by_id: dict[int, Media],
) -> ViewingPersonality:
    """
    Fixed decision order: BINGE_WATCHER, EXPLORER, CRITIC, else CASUAL.

    Users below PERSONALITY_MIN_INTERACTIONS are always CASUAL.
    """
    total = len(interactions)
    if total < PERSONALITY_MIN_INTERACTIONS:
        return ViewingPersonality.CASUAL

    completion_rate = sum(1 for i in interactions if is_completed(i)) / total
    long_sessions = sum(
        1 for i in interactions
        if i.watch_minutes is not None and i.watch_minutes > LONG_SESSION_MINUTES
    )
    if completion_rate > BINGE_COMPLETION_RATE and long_sessions / total > BINGE_LONG_SESSION_SHARE:
        return ViewingPersonality.BINGE_WATCHER

    distinct_genres = {
        g for i in interactions
        for g in (media_by_id[i.media_id].genres if i.media_id in media_by_id else [])
    }
    if len(distinct_genres) / total > EXPLORER_GENRE_SPREAD:
        return ViewingPersonality.EXPLORER

    ratings = [i.rating for i in interactions if i.rating is not None]
    if len(ratings) >= CRITIC_MIN_RATINGS and standard_deviation(ratings) > CRITIC_RATING_STD:
        return ViewingPersonality.CRITIC

    return ViewingPersonality.CASUAL


def genre_distribution(interactions: Iterable[InteractionRecord], media_by_id: dict[int, Media]) -> Counter:
    counts: Counter = Counter()
    for interaction in interactions:
        media = media_by_id.get(interaction.media_id)
        if media is not None:
            counts.update(_genre_labels(media))
    return counts


def profile_confidence(
    interactions: list[InteractionRecord], diversity_score: float, now: datetime
) -> float:
    """Confidence from volume, days since the first interaction, and diversity."""
    if not interactions:
        return 0.0
    first = min((i.created_at for i in interactions if i.created_at is not None), default=None)
    span_days = days_between(first, now) if first is not None else 0.0
    return calculate_confidence_score(len(interactions), span_days, diversity_score)


def build_profile(
    user_id: int,
    interactions: list[InteractionRecord],
    media_by_id: dict[int, Media],
    config: RecommendationConfig,
    now: datetime,
    created_at: datetime | None = None,
) -> PreferenceProfile:
    """
    Build a complete preference profile from a user's interaction history.

    Pure function: the profile is fully recomputed from the raw interactions,
    never patched. Taste maps (genre, platform, era) are normalized so the
    strongest label scores 1.0. Statistics, personality, diversity and
    confidence are derived from the same interaction list.

    Args:
        user_id: Owner of the interactions
        interactions: Every interaction the user has
        media_by_id: Metadata for the referenced media (missing ids are skipped)
        config: Engine configuration (time decay factor)
        now: Reference time for decay and confidence
        created_at: Original creation time of the stored profile, if any

    Returns:
        PreferenceProfile with last_calculated_at = now
    """
    profile = PreferenceProfile(user_id=user_id, created_at=created_at or now, last_calculated_at=now)
    total = len(interactions)
    profile.total_interactions = total
    if total == 0:
        return profile

    maps = {
        name: compute_dimension_preferences(interactions, media_by_id, labels_for, config.time_decay_factor, now)
        for name, labels_for in DIMENSIONS.items()
    }
    profile.genre_preferences = maps['genre']
    profile.platform_preferences = maps['platform']
    profile.era_preferences = maps['era']

    profile.total_completed = sum(1 for i in interactions if is_completed(i))
    profile.completion_rate = profile.total_completed / total

    ratings = [i.rating for i in interactions if i.rating is not None]
    profile.average_user_rating = mean(ratings) if ratings else None
    profile.rating_variance = standard_deviation(ratings)

    profile.viewing_personality = classify_personality(interactions, media_by_id)
    profile.diversity_score = calculate_diversity(genre_distribution(interactions, media_by_id))
    profile.confidence_score = profile_confidence(interactions, profile.diversity_score, now)
    return profile


class PreferenceEngine:
    """
    Builds, refreshes and serves per-user preference profiles.

    Writes for a single user are serialized through a fixed pool of striped locks
    so two recalculations of the same user never interleave. After every write the user's cached
    compatibility scores are dropped.
    """

    def __init__(
        self,
        repository,
        config: RecommendationConfig | None = None,
        cache: TTLCache | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repository = repository
        self.config = config or RecommendationConfig()
        self.cache = cache
        self._clock = clock
        self._locks = tuple(threading.Lock() for _ in range(PROFILE_LOCK_STRIPES))

    def _user_lock(self, user_id: int) -> threading.Lock:
        # Users sharing a stripe serialize against each other; lock sections never nest
        return self._locks[user_id % PROFILE_LOCK_STRIPES]

    def _require_user(self, user_id: int) -> None:
        if self.repository.find_user_by_id(user_id) is None:
            raise NotFoundError(f"User {user_id} not found")

    def _load_history(self, user_id: int) -> tuple[list[InteractionRecord], dict[int, Media]]:
        interactions = self.repository.find_interactions_by_user(user_id)
        media_by_id = self.repository.find_media_by_ids(i.media_id for i in interactions)
        return interactions, media_by_id

    def _invalidate(self, user_id: int) -> None:
        if self.cache is not None:
            self.cache.invalidate_where(lambda key: isinstance(key, tuple) and user_id in key[1:])

    def get_or_create_profile(self, user_id: int) -> PreferenceProfile:
        """Return the stored profile, creating an empty one on first access."""
        profile = self.repository.find_profile_by_user(user_id)
        if profile is not None:
            return profile

        self._require_user(user_id)
        with self._user_lock(user_id):
            profile = self.repository.create_profile_if_missing(user_id, self._clock())
        logger.debug(f"Created preference profile for user {user_id}")
        return profile

    def get_current_profile(self, user_id: int) -> PreferenceProfile:
        """Like get_or_create_profile, but computes the profile if it was never calculated."""
        profile = self.get_or_create_profile(user_id)
        if profile.last_calculated_at is None:
            self.update_preferences(user_id)
            profile = self.repository.find_profile_by_user(user_id)
        return profile

    def _rebuild(self, user_id: int) -> PreferenceProfile:
        # Caller holds the user's lock
        now = self._clock()
        interactions, media_by_id = self._load_history(user_id)
        existing = self.repository.find_profile_by_user(user_id)
        profile = build_profile(
            user_id, interactions, media_by_id, self.config, now,
            created_at=existing.created_at if existing else None,
        )
        self.repository.save_profile(profile)
        self._invalidate(user_id)
        logger.debug(
            f"Updated preferences for user {user_id}: {profile.total_interactions} interactions, "
            f"confidence {profile.confidence_score:.3f}, {profile.viewing_personality.value}"
        )
        return profile

    def update_preferences(self, user_id: int) -> float:
        """Recompute the user's whole profile from raw interactions; returns the new confidence."""
        self._require_user(user_id)
        with self._user_lock(user_id):
            return self._rebuild(user_id).confidence_score

    def recalculate_profile(self, user_id: int) -> PreferenceProfile:
        """Drop the stored profile and rebuild it from scratch."""
        self._require_user(user_id)
        with self._user_lock(user_id):
            self.repository.delete_profile(user_id)
            return self._rebuild(user_id)

    def determine_personality(self, user_id: int) -> ViewingPersonality:
        self._require_user(user_id)
        interactions, media_by_id = self._load_history(user_id)
        return classify_personality(interactions, media_by_id)

    def calculate_diversity_score(self, user_id: int) -> float:
        self._require_user(user_id)
        interactions, media_by_id = self._load_history(user_id)
        return calculate_diversity(genre_distribution(interactions, media_by_id))

    def calculate_confidence(self, user_id: int) -> float:
        self._require_user(user_id)
        interactions, media_by_id = self._load_history(user_id)
        diversity = calculate_diversity(genre_distribution(interactions, media_by_id))
        return profile_confidence(interactions, diversity, self._clock())

    def has_sufficient_data(self, user_id: int) -> bool:
        count = self.repository.count_interactions_by_user(user_id)
        return count >= self.config.min_interactions_for_recommendations

    def get_improvement_suggestions(self, user_id: int) -> list[str]:
        """Plain-language hints for making a profile more reliable."""
        profile = self.get_current_profile(user_id)
        suggestions = []

        if profile.total_interactions < self.config.min_interactions_for_recommendations * 2:
            suggestions.append("Add more shows and movies to your library to improve recommendations")
        if len(profile.genre_preferences) < 3:
            suggestions.append("Try content from different genres to broaden your taste profile")
        if profile.average_user_rating is None:
            suggestions.append("Rate what you watch so we can learn what you enjoy")
        if profile.total_interactions and profile.completion_rate < 0.3:
            suggestions.append("Update your progress on shows you are watching")
        if profile.confidence_score < self.config.min_confidence_threshold:
            suggestions.append("Keep watching and rating - recommendations get better over time")
        return suggestions

    def _update_many(self, user_ids: list[int], label: str) -> int:
        updated = 0
        for user_id in user_ids:
            try:
                self.update_preferences(user_id)
                updated += 1
            except Exception:
                logger.exception(f"Failed to update preferences for user {user_id} ({label})")
        logger.info(f"Updated {updated}/{len(user_ids)} profiles ({label})")
        return updated

    def update_active_profiles(self, days_back: int = 7) -> int:
        cutoff = self._clock() - timedelta(days=days_back)
        return self._update_many(self.repository.find_user_ids_active_since(cutoff), "active users")

    def recalculate_low_confidence_profiles(self, threshold: float = LOW_CONFIDENCE_THRESHOLD) -> int:
        user_ids = self.repository.find_user_ids_below_confidence(threshold)
        return self._update_many(user_ids, f"confidence < {threshold}")

    def cleanup_inactive_profiles(self, days_inactive: int = INACTIVE_PROFILE_DAYS) -> int:
        cutoff = self._clock() - timedelta(days=days_inactive)
        removed = self.repository.delete_profiles_inactive_since(cutoff)
        if removed:
            logger.info(f"Removed {removed} profiles inactive for {days_inactive}+ days")
        return removed
