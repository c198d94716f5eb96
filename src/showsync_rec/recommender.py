import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from .cache import TTLCache
from .config import RecommendationConfig, REALTIME_STRATEGY_WORKERS
from .errors import ForbiddenError, InvalidInputError, NotFoundError
from .explanations import explain
from .group_recommender import GroupRecommender
from .models import (
    ContentRecommendation,
    FeedbackType,
    GroupRecommendation,
    Media,
    PreferenceProfile,
    RecommendationFeedback,
    RecommendationReason,
    RecommendationType,
    TargetKind,
)
from .profile import era_label

logger = logging.getLogger(__name__)

TRENDING_POOL_SIZE = 100


@dataclass
class Candidate:
    """A scored media item before it becomes a persisted recommendation."""

    media: Media
    relevance: float
    recommendation_type: RecommendationType
    reason: RecommendationReason
    context: dict = field(default_factory=dict)
    source_media_id: int | None = None

    @property
    def genres(self) -> list[str]:
        return self.media.genres


def content_relevance(media: Media, profile: PreferenceProfile, config: RecommendationConfig) -> float:
    """
    Predicted fit of one media item to one user, in [0, 1].

    Weighted sum of the strongest matching genre preference, the platform and
    era preferences, and how close the media's average rating sits to the
    user's own average rating.
    """
    genre_align = max((profile.genre_preferences.get(g, 0.0) for g in media.genres), default=0.0)
    platform_align = profile.platform_preferences.get(media.platform, 0.0) if media.platform else 0.0
    era = era_label(media.release_year)
    era_align = profile.era_preferences.get(era, 0.0) if era else 0.0

    rating_align = 0.0
    if media.average_rating is not None and profile.average_user_rating is not None:
        rating_align = max(0.0, 1.0 - abs(media.average_rating - profile.average_user_rating) / 10.0)

    score = (
        config.genre_weight * genre_align
        + config.platform_weight * platform_align
        + config.era_weight * era_align
        + config.rating_weight * rating_align
    )
    return min(1.0, max(0.0, score))


def diversify(candidates: list[Candidate], limit: int, max_per_genre: int) -> list[Candidate]:
    """
    Cap how many picks share a genre, then rank by relevance.

    Candidates are visited in their given order; one is skipped if any of
    its genres already reached max_per_genre. The survivors are sorted by
    relevance (descending) and truncated to limit.
    """
    selected = []
    genre_counts: dict[str, int] = defaultdict(int)

    for candidate in candidates:
        genres = set(candidate.genres)
        if any(genre_counts[g] >= max_per_genre for g in genres):
            continue
        selected.append(candidate)
        for g in genres:
            genre_counts[g] += 1

    selected.sort(key=lambda c: c.relevance, reverse=True)
    if len(selected) < limit and len(candidates) > len(selected):
        logger.debug(
            f"Diversification returned {len(selected)}/{limit} results "
            f"(max {max_per_genre} per genre)"
        )
    return selected[:limit]


def dedupe(candidates: list[Candidate]) -> list[Candidate]:
    """Keep the first candidate for each media id."""
    seen = set()
    unique = []
    for candidate in candidates:
        if candidate.media.id in seen:
            continue
        seen.add(candidate.media.id)
        unique.append(candidate)
    return unique


def _parse_kind(kind) -> TargetKind:
    if isinstance(kind, TargetKind):
        return kind
    try:
        return TargetKind(str(kind).upper())
    except ValueError:
        raise InvalidInputError(f"Unknown recommendation kind '{kind}'") from None


class RecommendationEngine:
    """
    Generates, persists and serves content and group recommendations.

    Strategies: personal (genre preferences), content-based (seed media),
    collaborative (similar users' favourites) and trending (global fallback).
    """

    def __init__(
        self,
        repository,
        preference_engine,
        compatibility_engine,
        config: RecommendationConfig | None = None,
        cache: TTLCache | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repository = repository
        self.preferences = preference_engine
        self.compatibility = compatibility_engine
        self.config = config or RecommendationConfig()
        self.cache = cache if cache is not None else TTLCache(self.config.cache_ttl.total_seconds())
        self._clock = clock
        self.groups = GroupRecommender(repository, compatibility_engine, self.config, clock)

    # -- helpers --------------------------------------------------------------

    def _require_user(self, user_id: int) -> None:
        if self.repository.find_user_by_id(user_id) is None:
            raise NotFoundError(f"User {user_id} not found")

    def _excluded_media(self, user_id: int) -> set[int]:
        # Dismissed media stays out whether or not seen content is filtered
        excluded = self.repository.find_dismissed_media_ids(user_id)
        if self.config.filter_seen_content:
            excluded |= self.repository.find_interacted_media_ids(user_id)
        return excluded

    def _to_recommendation(self, user_id: int, candidate: Candidate, now: datetime) -> ContentRecommendation:
        return ContentRecommendation(
            user_id=user_id,
            media_id=candidate.media.id,
            recommendation_type=candidate.recommendation_type,
            reason_code=candidate.reason,
            relevance_score=round(candidate.relevance, 6),
            explanation=explain(candidate.reason, **candidate.context),
            source_media_id=candidate.source_media_id,
            created_at=now,
            expires_at=now + self.config.content_recommendation_expiry,
            genres=list(candidate.media.genres),
        )

    # -- strategies -----------------------------------------------------------

    def personal_candidates(self, user_id: int, profile: PreferenceProfile, limit: int) -> list[Candidate]:
        """Score media from each genre the user likes above the relevance floor."""
        if not self.config.enable_personal:
            return []
        excluded = self._excluded_media(user_id)
        scored: dict[int, Candidate] = {}

        for genre in profile.top_genres:
            if profile.genre_preferences[genre] < self.config.min_relevance_score:
                continue
            for media in self.repository.find_media_by_genre(genre):
                if media.id in excluded or media.id in scored:
                    continue
                relevance = content_relevance(media, profile, self.config)
                if relevance >= self.config.min_relevance_score:
                    scored[media.id] = Candidate(
                        media, relevance, RecommendationType.PERSONAL,
                        RecommendationReason.GENRE_MATCH, {'genre': genre},
                    )

        ranked = sorted(scored.values(), key=lambda c: (-c.relevance, c.media.id))
        return ranked[:limit]

    def content_based_candidates(
        self, user_id: int, profile: PreferenceProfile, seed_media_id: int, limit: int
    ) -> list[Candidate]:
        """Media sharing a genre or the media type with the seed, scored against the profile."""
        seed = self.repository.find_media_by_id(seed_media_id)
        if seed is None:
            raise NotFoundError(f"Media {seed_media_id} not found")
        if not self.config.enable_content_based:
            return []

        excluded = self._excluded_media(user_id) | {seed.id}
        pool: dict[int, Media] = {}
        for genre in seed.genres:
            for media in self.repository.find_media_by_genre(genre):
                pool.setdefault(media.id, media)
        for media in self.repository.find_media_by_type(seed.media_type):
            pool.setdefault(media.id, media)

        candidates = []
        seed_genres = set(seed.genres)
        for media in pool.values():
            if media.id in excluded:
                continue
            relevance = content_relevance(media, profile, self.config)
            if relevance < self.config.min_relevance_score:
                continue
            candidates.append(Candidate(
                media, relevance, RecommendationType.CONTENT_BASED,
                RecommendationReason.SIMILAR_CONTENT, {'seed_title': seed.title},
                source_media_id=seed.id,
            ))

        # Genre overlap with the seed ranks ahead of a bare media-type match
        candidates.sort(key=lambda c: (-len(seed_genres & set(c.genres)), -c.relevance, c.media.id))
        return candidates[:limit]

    def collaborative_candidates(self, user_id: int, limit: int) -> list[Candidate]:
        """
        Favourites of similar users, ranked by Σ(peer rating · compatibility).

        Stored relevance is the compatibility-weighted mean peer rating on a
        0-1 scale.
        """
        if not self.config.enable_collaborative:
            return []
        similar = self.compatibility.find_similar_users(user_id, self.config.collaborative_filtering_user_count)
        if not similar:
            return []

        compat = {s.user_id: s.score for s in similar}
        excluded = self._excluded_media(user_id)
        accumulated: dict[int, float] = defaultdict(float)
        weight_sum: dict[int, float] = defaultdict(float)
        supporters: dict[int, int] = defaultdict(int)

        for interaction in self.repository.find_highly_rated_by_users(list(compat), self.config.collaborative_min_rating):
            if interaction.media_id in excluded:
                continue
            weight = compat[interaction.user_id]
            accumulated[interaction.media_id] += interaction.rating * weight
            weight_sum[interaction.media_id] += weight
            supporters[interaction.media_id] += 1

        ranked_ids = sorted(accumulated, key=lambda mid: (-accumulated[mid], mid))[:limit]
        media_by_id = self.repository.find_media_by_ids(ranked_ids)

        candidates = []
        for media_id in ranked_ids:
            media = media_by_id.get(media_id)
            if media is None:
                continue
            relevance = min(1.0, accumulated[media_id] / weight_sum[media_id] / 10.0)
            candidates.append(Candidate(
                media, relevance, RecommendationType.COLLABORATIVE,
                RecommendationReason.SIMILAR_USERS, {'peer_count': supporters[media_id]},
            ))
        return candidates

    def _trending_pool(self) -> list[tuple[Media, int]]:
        key = f"trending:{self.config.trending_window_days}"
        pool = self.cache.get(key)
        if pool is None:
            since = self._clock() - timedelta(days=self.config.trending_window_days)
            pool = self.repository.find_trending_media(since, TRENDING_POOL_SIZE)
            self.cache.put(key, pool)
        return pool

    def trending_candidates(self, user_id: int | None, limit: int, exclude: set[int] | None = None) -> list[Candidate]:
        """Globally popular recent media; falls back to the best-rated catalogue."""
        if not self.config.enable_trending or limit <= 0:
            return []
        excluded = set(exclude or ())
        if user_id is not None:
            excluded |= self._excluded_media(user_id)

        pool = self._trending_pool()
        candidates = []
        if pool:
            top_count = pool[0][1]
            for media, count in pool:
                if media.id in excluded:
                    continue
                candidates.append(Candidate(
                    media, count / top_count, RecommendationType.TRENDING,
                    RecommendationReason.TRENDING_GLOBAL, {'recent_viewers': count},
                ))
                if len(candidates) >= limit:
                    return candidates

        for media in self.repository.find_top_rated_media(limit + len(excluded) + len(candidates)):
            if media.id in excluded or any(c.media.id == media.id for c in candidates):
                continue
            candidates.append(Candidate(
                media, (media.average_rating or 0.0) / 10.0, RecommendationType.TRENDING,
                RecommendationReason.HIGHLY_RATED, {'average_rating': media.average_rating},
            ))
            if len(candidates) >= limit:
                break
        return candidates

    # -- real-time requests ---------------------------------------------------

    def _run_blend(self, user_id: int, profile: PreferenceProfile, context_media_id: int, limit: int):
        content_quota = limit // 2

        def content_strategy():
            try:
                return self.content_based_candidates(user_id, profile, context_media_id, content_quota)
            except NotFoundError as e:
                logger.warning(f"Ignoring context media for user {user_id}: {e}")
                return []

        if self.config.parallel_strategies:
            with ThreadPoolExecutor(max_workers=REALTIME_STRATEGY_WORKERS) as ex:
                f_content = ex.submit(content_strategy)
                f_collab = ex.submit(self.collaborative_candidates, user_id, limit)
                content = f_content.result()
                collaborative = f_collab.result()
        else:
            content = content_strategy()
            collaborative = self.collaborative_candidates(user_id, limit)

        content = content[:content_quota]
        return content + collaborative[:limit - len(content)]

    def get_real_time_recommendations(
        self, user_id: int, context_media_id: int | None = None, limit: int = 10
    ) -> list[ContentRecommendation]:
        """
        Build a fresh (unpersisted) list for an interactive request.

        Users without enough history get trending only. With a context media
        id, content-based (half the quota) and collaborative candidates are
        computed concurrently; an unknown context id degrades to the other
        strategies. Trending fills any gap before diversification.
        """
        if limit < 1:
            raise InvalidInputError(f"limit must be positive, got {limit}")
        self._require_user(user_id)
        now = self._clock()

        if not self.preferences.has_sufficient_data(user_id):
            picks = self.trending_candidates(user_id, limit)
            return [self._to_recommendation(user_id, c, now) for c in picks]

        profile = self.preferences.get_current_profile(user_id)
        if context_media_id is not None:
            combined = self._run_blend(user_id, profile, context_media_id, limit)
        else:
            combined = self.collaborative_candidates(user_id, limit)

        combined = dedupe(combined)
        if len(combined) < limit:
            taken = {c.media.id for c in combined}
            # Over-fetch so the genre cap still leaves enough filler
            combined += self.trending_candidates(user_id, (limit - len(combined)) * 2, exclude=taken)

        picks = diversify(dedupe(combined), limit, self.config.max_same_type_recommendations)
        return [self._to_recommendation(user_id, c, now) for c in picks]

    def find_similar_content(self, user_id: int, media_id: int, limit: int = 10) -> list[ContentRecommendation]:
        self._require_user(user_id)
        profile = self.preferences.get_current_profile(user_id)
        now = self._clock()
        return [
            self._to_recommendation(user_id, c, now)
            for c in self.content_based_candidates(user_id, profile, media_id, limit)
        ]

    def get_trending_recommendations(self, user_id: int | None = None, limit: int = 10) -> list[ContentRecommendation]:
        now = self._clock()
        owner = user_id if user_id is not None else 0
        return [self._to_recommendation(owner, c, now) for c in self.trending_candidates(user_id, limit)]

    # -- persisted generation -------------------------------------------------

    def generate_content_recommendations(self, user_id: int) -> list[ContentRecommendation]:
        """Personal + collaborative + trending fill, diversified and saved with the content TTL."""
        self._require_user(user_id)
        now = self._clock()
        quota = self.config.max_recommendations_per_user

        if self.preferences.has_sufficient_data(user_id):
            profile = self.preferences.get_current_profile(user_id)
            combined = self.personal_candidates(user_id, profile, quota)
            combined += self.collaborative_candidates(user_id, quota)
        else:
            combined = []

        combined = dedupe(combined)
        if len(combined) < quota:
            taken = {c.media.id for c in combined}
            combined += self.trending_candidates(user_id, (quota - len(combined)) * 2, exclude=taken)

        picks = diversify(dedupe(combined), quota, self.config.max_same_type_recommendations)
        saved = [self.repository.save_content_recommendation(self._to_recommendation(user_id, c, now)) for c in picks]
        logger.debug(f"Saved {len(saved)} content recommendations for user {user_id}")
        return saved

    def generate_group_recommendations(self, user_id: int) -> list[GroupRecommendation]:
        self._require_user(user_id)
        return self.groups.generate(user_id)

    def cleanup_expired(self, user_id: int) -> int:
        now = self._clock()
        removed = self.repository.delete_expired_content_recommendations(user_id, now)
        removed += self.repository.delete_expired_group_recommendations(user_id, now)
        return removed

    def get_active_recommendations(
        self,
        user_id: int,
        limit: int = 20,
        offset: int = 0,
        recommendation_type: RecommendationType | None = None,
    ) -> list[ContentRecommendation]:
        self._require_user(user_id)
        return self.repository.find_active_recommendations(user_id, self._clock(), limit, offset, recommendation_type)

    def get_active_group_recommendations(self, user_id: int, limit: int = 10, offset: int = 0) -> list[GroupRecommendation]:
        self._require_user(user_id)
        return self.repository.find_active_group_recommendations(user_id, self._clock(), limit, offset)

    # -- state transitions ----------------------------------------------------

    def _owned(self, user_id: int, kind: TargetKind, rec_id: int):
        if kind == TargetKind.CONTENT:
            rec = self.repository.find_content_recommendation(rec_id)
        else:
            rec = self.repository.find_group_recommendation(rec_id)
        if rec is None:
            raise NotFoundError(f"{kind.value.title()} recommendation {rec_id} not found")
        if rec.user_id != user_id:
            raise ForbiddenError(f"Recommendation {rec_id} does not belong to user {user_id}")
        return rec

    def _record_feedback(
        self,
        user_id: int,
        kind: TargetKind,
        target_id: int,
        feedback_type: FeedbackType,
        score: int | None = None,
        text: str | None = None,
        action: str | None = None,
    ) -> RecommendationFeedback:
        feedback = self.repository.save_feedback(RecommendationFeedback(
            user_id=user_id,
            target_kind=kind,
            target_id=target_id,
            feedback_type=feedback_type,
            created_at=self._clock(),
            feedback_score=score,
            feedback_text=text,
            action_taken=action,
        ))
        self.preferences.update_preferences(user_id)
        return feedback

    def mark_viewed(self, user_id: int, kind, rec_id: int) -> None:
        kind = _parse_kind(kind)
        self._owned(user_id, kind, rec_id)
        if kind == TargetKind.CONTENT:
            self.repository.update_content_flags(rec_id, viewed=True)
        else:
            self.repository.update_group_flags(rec_id, viewed=True)

    def dismiss(self, user_id: int, kind, rec_id: int, reason: str | None = None) -> RecommendationFeedback:
        """Hide a recommendation and record it as negative feedback."""
        kind = _parse_kind(kind)
        self._owned(user_id, kind, rec_id)
        if kind == TargetKind.CONTENT:
            self.repository.update_content_flags(rec_id, dismissed=True)
        else:
            self.repository.update_group_flags(rec_id, dismissed=True)
        logger.info(f"User {user_id} dismissed {kind.value.lower()} recommendation {rec_id}")
        return self._record_feedback(user_id, kind, rec_id, FeedbackType.NEGATIVE, text=reason, action="DISMISSED")

    def mark_added_to_library(self, user_id: int, rec_id: int) -> RecommendationFeedback:
        self._owned(user_id, TargetKind.CONTENT, rec_id)
        self.repository.update_content_flags(rec_id, viewed=True, added_to_library=True)
        return self._record_feedback(
            user_id, TargetKind.CONTENT, rec_id, FeedbackType.POSITIVE, action="ADDED_TO_LIBRARY"
        )

    def mark_joined(self, user_id: int, rec_id: int) -> RecommendationFeedback:
        self._owned(user_id, TargetKind.GROUP, rec_id)
        self.repository.update_group_flags(rec_id, viewed=True, joined=True)
        return self._record_feedback(
            user_id, TargetKind.GROUP, rec_id, FeedbackType.POSITIVE, action="JOINED_GROUP"
        )

    def submit_feedback(
        self, user_id: int, kind, rec_id: int, rating: int, comment: str | None = None
    ) -> RecommendationFeedback:
        """Explicit 1-5 rating of a recommendation (>=4 positive, <=2 negative, 3 neutral)."""
        kind = _parse_kind(kind)
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidInputError(f"Feedback rating must be an integer from 1 to 5, got {rating!r}")
        self._owned(user_id, kind, rec_id)
        if kind == TargetKind.CONTENT:
            self.repository.update_content_flags(rec_id, user_feedback=rating)
        return self._record_feedback(
            user_id, kind, rec_id, FeedbackType.from_rating(rating), score=rating, text=comment
        )
