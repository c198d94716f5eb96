"""
Group recommendations: public groups whose members match a user's taste.

A group's score is the mean compatibility between the user and each active
member who individually clears the similarity floor. Groups where nobody
qualifies score 0.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from statistics import mean
from typing import Callable

from .config import RecommendationConfig
from .errors import NotFoundError
from .explanations import explain
from .models import Group, GroupRecommendation, RecommendationReason

logger = logging.getLogger(__name__)


@dataclass
class GroupMatch:
    """Scoring detail for one candidate group."""

    group: Group
    score: float
    matching_members: list[int] = field(default_factory=list)
    member_count: int = 0


class GroupRecommender:
    def __init__(
        self,
        repository,
        compatibility_engine,
        config: RecommendationConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repository = repository
        self.compatibility = compatibility_engine
        self.config = config or RecommendationConfig()
        self._clock = clock

    def score_group(self, user_id: int, group: Group) -> GroupMatch:
        members = [m for m in self.repository.find_group_members(group.id) if m.id != user_id]
        matching = []
        scores = []
        for member in members:
            score = self.compatibility.calculate_user_compatibility(user_id, member.id)
            if score > self.config.min_similarity_score:
                matching.append(member.id)
                scores.append(score)

        return GroupMatch(
            group=group,
            score=mean(scores) if scores else 0.0,
            matching_members=matching,
            member_count=len(members),
        )

    def calculate_group_compatibility(self, user_id: int, group_id: int) -> float:
        group = self.repository.find_group_by_id(group_id)
        if group is None:
            raise NotFoundError(f"Group {group_id} not found")
        return self.score_group(user_id, group).score

    def _shared_genres(self, user_id: int, member_ids: list[int]) -> list[str]:
        """User's top genres that qualifying members also rate highly."""
        user_profile = self.repository.find_profile_by_user(user_id)
        if user_profile is None:
            return []
        shared = []
        for genre in user_profile.top_genres[:5]:
            hits = 0
            for member_id in member_ids:
                member_profile = self.repository.find_profile_by_user(member_id)
                if member_profile and member_profile.genre_preferences.get(genre, 0) >= 0.5:
                    hits += 1
            if hits:
                shared.append(genre)
        return shared

    def find_matches(self, user_id: int) -> list[GroupMatch]:
        """Score every public active group the user has not joined, best first."""
        matches = []
        for group in self.repository.find_public_groups_excluding_member(user_id):
            match = self.score_group(user_id, group)
            if match.score >= self.config.min_similarity_score:
                matches.append(match)
        matches.sort(key=lambda m: (-m.score, m.group.id))
        return matches[:self.config.max_group_recommendations]

    def generate(self, user_id: int) -> list[GroupRecommendation]:
        """Score candidate groups and persist the qualifying ones with the group TTL."""
        if not self.config.enable_group:
            return []

        now = self._clock()
        expires_at = now + self.config.group_recommendation_expiry
        saved = []
        for match in self.find_matches(user_id):
            rec = GroupRecommendation(
                user_id=user_id,
                group_id=match.group.id,
                compatibility_score=match.score,
                reason_code=RecommendationReason.GENRE_COMPATIBILITY,
                explanation=explain(
                    RecommendationReason.GENRE_COMPATIBILITY,
                    matching_members=len(match.matching_members),
                    shared_genres=self._shared_genres(user_id, match.matching_members),
                ),
                created_at=now,
                expires_at=expires_at,
            )
            saved.append(self.repository.save_group_recommendation(rec))

        logger.debug(f"Saved {len(saved)} group recommendations for user {user_id}")
        return saved
