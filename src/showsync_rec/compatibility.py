"""
User-to-user compatibility scoring.

Compatibility blends cosine similarity of the genre, platform and era taste
vectors with a personality term. The score is symmetric and cached per
unordered user pair.
"""

from __future__ import annotations

import logging

from .cache import TTLCache
from .config import (
    RecommendationConfig,
    SAME_PERSONALITY_COMPATIBILITY,
    CASUAL_COMPATIBILITY,
    CROSS_PERSONALITY_COMPATIBILITY,
    PERSONALITY_PAIR_COMPATIBILITY,
)
from .errors import NotFoundError
from .models import PreferenceProfile, UserCompatibility, ViewingPersonality
from .score_math import cosine_similarity, weighted_average

logger = logging.getLogger(__name__)


def personality_compatibility(a: ViewingPersonality, b: ViewingPersonality) -> float:
    """Symmetric lookup: same -> 1.0, anything with CASUAL -> 0.8, else table or default."""
    if a == b:
        return SAME_PERSONALITY_COMPATIBILITY
    if ViewingPersonality.CASUAL in (a, b):
        return CASUAL_COMPATIBILITY
    return PERSONALITY_PAIR_COMPATIBILITY.get(frozenset({a.value, b.value}), CROSS_PERSONALITY_COMPATIBILITY)


def pair_key(user_a: int, user_b: int) -> tuple[str, int, int]:
    lo, hi = sorted((user_a, user_b))
    return ("compat", lo, hi)


def profile_compatibility(a: PreferenceProfile, b: PreferenceProfile, config: RecommendationConfig) -> float:
    """Weighted blend of per-dimension cosine similarities and personality fit."""
    values = [
        cosine_similarity(a.genre_preferences, b.genre_preferences),
        cosine_similarity(a.platform_preferences, b.platform_preferences),
        cosine_similarity(a.era_preferences, b.era_preferences),
        personality_compatibility(a.viewing_personality, b.viewing_personality),
    ]
    weights = [config.genre_weight, config.platform_weight, config.era_weight, config.personality_weight]
    return min(1.0, max(0.0, weighted_average(values, weights)))


class CompatibilityEngine:
    def __init__(self, repository, preference_engine, config: RecommendationConfig | None = None,
                 cache: TTLCache | None = None):
        self.repository = repository
        self.preferences = preference_engine
        self.config = config or RecommendationConfig()
        self.cache = cache if cache is not None else TTLCache(self.config.cache_ttl.total_seconds())

    def _profile(self, user_id: int) -> PreferenceProfile:
        return self.preferences.get_current_profile(user_id)

    def calculate_user_compatibility(self, user_a: int, user_b: int) -> float:
        if user_a == user_b:
            return 1.0
        key = pair_key(user_a, user_b)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        score = profile_compatibility(self._profile(user_a), self._profile(user_b), self.config)
        self.cache.put(key, score)
        return score

    def score_against(self, profile: PreferenceProfile, other: PreferenceProfile) -> float:
        """Compatibility between two already-loaded profiles, going through the pair cache."""
        key = pair_key(profile.user_id, other.user_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        score = profile_compatibility(profile, other, self.config)
        self.cache.put(key, score)
        return score

    def find_similar_users(self, user_id: int, limit: int | None = None) -> list[UserCompatibility]:
        """
        Rank other users by compatibility with user_id.

        Only profiles above the configured confidence and interaction floors
        are considered; matches below min_similarity_score are dropped.
        """
        if limit is None:
            limit = self.config.collaborative_filtering_user_count
        if self.repository.find_user_by_id(user_id) is None:
            raise NotFoundError(f"User {user_id} not found")

        profile = self._profile(user_id)
        candidates = self.repository.find_candidate_profiles(
            user_id,
            self.config.min_confidence_threshold,
            self.config.min_interactions_for_recommendations,
        )

        scored = []
        for candidate in candidates:
            if candidate.user_id == user_id:
                continue
            score = self.score_against(profile, candidate)
            if score >= self.config.min_similarity_score:
                scored.append((candidate.user_id, score))

        scored.sort(key=lambda x: (-x[1], x[0]))
        scored = scored[:limit]
        usernames = self.repository.find_usernames([uid for uid, _ in scored])
        logger.debug(f"Found {len(scored)} similar users for user {user_id} from {len(candidates)} candidates")
        return [UserCompatibility(uid, usernames.get(uid, str(uid)), score) for uid, score in scored]

    def invalidate_user(self, user_id: int) -> int:
        return self.cache.invalidate_where(lambda key: isinstance(key, tuple) and user_id in key[1:])
