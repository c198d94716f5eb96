"""
Read-only engagement and conversion reporting over stored recommendations.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from statistics import mean
from typing import Callable

from .errors import InvalidInputError, NotFoundError
from .models import FeedbackType, ViewingPersonality

logger = logging.getLogger(__name__)

GROUP_BUCKET = "GROUP"

# (label, min conversion rate, min average feedback score), best first
HEALTH_LEVELS = [
    ("Excellent", 0.10, 3.5),
    ("Good", 0.05, 3.0),
    ("Fair", 0.02, 2.5),
]
HEALTH_FALLBACK = "Needs Improvement"

HIGH_DISMISSAL_RATE = 0.3
LOW_ENGAGEMENT_RATE = 0.2
LOW_PARTICIPATION_RATE = 0.05


def _rate(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator else 0.0


@dataclass
class SegmentPerformance:
    """Counts and rates for one recommendation type or reason code."""

    name: str
    generated: int = 0
    viewed: int = 0
    dismissed: int = 0
    converted: int = 0

    @property
    def engagement_rate(self) -> float:
        return _rate(self.viewed, self.generated)

    @property
    def conversion_rate(self) -> float:
        return _rate(self.converted, self.generated)

    def add(self, viewed: bool, dismissed: bool, converted: bool) -> None:
        self.generated += 1
        self.viewed += int(viewed)
        self.dismissed += int(dismissed)
        self.converted += int(converted)


@dataclass
class RecommendationAnalytics:
    period_start: datetime
    period_end: datetime

    content_generated: int = 0
    content_viewed: int = 0
    content_dismissed: int = 0
    content_added_to_library: int = 0
    groups_generated: int = 0
    groups_viewed: int = 0
    groups_dismissed: int = 0
    groups_joined: int = 0

    total_feedback: int = 0
    positive_feedback: int = 0
    negative_feedback: int = 0
    neutral_feedback: int = 0
    average_feedback_score: float | None = None
    feedback_participation_rate: float = 0.0

    by_type: dict[str, SegmentPerformance] = field(default_factory=dict)
    by_reason: list[SegmentPerformance] = field(default_factory=list)
    system_health_status: str = HEALTH_FALLBACK
    key_insights: list[str] = field(default_factory=list)

    @property
    def total_generated(self) -> int:
        return self.content_generated + self.groups_generated

    @property
    def total_viewed(self) -> int:
        return self.content_viewed + self.groups_viewed

    @property
    def total_converted(self) -> int:
        return self.content_added_to_library + self.groups_joined

    @property
    def engagement_rate(self) -> float:
        return _rate(self.total_viewed, self.total_generated)

    @property
    def conversion_rate(self) -> float:
        return _rate(self.total_converted, self.total_generated)

    @property
    def dismissal_rate(self) -> float:
        return _rate(self.content_dismissed + self.groups_dismissed, self.total_generated)

    @property
    def content_engagement_rate(self) -> float:
        return _rate(self.content_viewed, self.content_generated)

    @property
    def content_conversion_rate(self) -> float:
        return _rate(self.content_added_to_library, self.content_generated)

    @property
    def group_engagement_rate(self) -> float:
        return _rate(self.groups_viewed, self.groups_generated)

    @property
    def group_conversion_rate(self) -> float:
        return _rate(self.groups_joined, self.groups_generated)


def health_status(conversion_rate: float, average_feedback: float | None) -> str:
    """Grade overall quality; without any scored feedback only conversion counts."""
    for label, min_conversion, min_feedback in HEALTH_LEVELS:
        feedback_ok = average_feedback is None or average_feedback >= min_feedback
        if conversion_rate >= min_conversion and feedback_ok:
            return label
    return HEALTH_FALLBACK


def key_insights(report: RecommendationAnalytics) -> list[str]:
    if report.total_generated == 0:
        return ["No recommendations were generated in this period"]

    insights = []
    converting = [r for r in report.by_reason if r.converted]
    if converting:
        best = converting[0]
        insights.append(f"'{best.name}' recommendations convert best ({best.conversion_rate:.0%})")
    if report.dismissal_rate > HIGH_DISMISSAL_RATE:
        insights.append(f"High dismissal rate ({report.dismissal_rate:.0%}) - review relevance thresholds")
    if report.engagement_rate < LOW_ENGAGEMENT_RATE:
        insights.append(f"Low engagement ({report.engagement_rate:.0%}) - recommendations are rarely opened")
    if report.feedback_participation_rate < LOW_PARTICIPATION_RATE:
        insights.append("Few users leave feedback on recommendations")
    if report.negative_feedback > report.positive_feedback:
        insights.append("Negative feedback outweighs positive feedback")
    if report.group_conversion_rate > report.content_conversion_rate and report.groups_joined:
        insights.append("Group recommendations convert better than content recommendations")
    return insights


class AnalyticsReporter:
    def __init__(self, repository, clock: Callable[[], datetime] = datetime.now):
        self.repository = repository
        self._clock = clock

    def get_recommendation_analytics(self, days: int = 30, now: datetime | None = None) -> RecommendationAnalytics:
        """Aggregate counts and rates over recommendations created in the last `days` days."""
        if days < 1:
            raise InvalidInputError(f"days must be positive, got {days}")
        end = now or self._clock()
        start = end - timedelta(days=days)
        report = RecommendationAnalytics(period_start=start, period_end=end)

        by_type: dict[str, SegmentPerformance] = {}
        by_reason: dict[str, SegmentPerformance] = {}

        def segment(table, name):
            if name not in table:
                table[name] = SegmentPerformance(name)
            return table[name]

        for rec in self.repository.find_content_recommendations_between(start, end):
            report.content_generated += 1
            report.content_viewed += int(rec.is_viewed)
            report.content_dismissed += int(rec.is_dismissed)
            report.content_added_to_library += int(rec.is_added_to_library)
            segment(by_type, rec.recommendation_type.value).add(rec.is_viewed, rec.is_dismissed, rec.is_added_to_library)
            segment(by_reason, rec.reason_code.value).add(rec.is_viewed, rec.is_dismissed, rec.is_added_to_library)

        for rec in self.repository.find_group_recommendations_between(start, end):
            report.groups_generated += 1
            report.groups_viewed += int(rec.is_viewed)
            report.groups_dismissed += int(rec.is_dismissed)
            report.groups_joined += int(rec.is_joined)
            segment(by_type, GROUP_BUCKET).add(rec.is_viewed, rec.is_dismissed, rec.is_joined)
            segment(by_reason, rec.reason_code.value).add(rec.is_viewed, rec.is_dismissed, rec.is_joined)

        feedback = self.repository.find_feedback_between(start, end)
        polarity = defaultdict(int)
        for entry in feedback:
            polarity[entry.feedback_type] += 1
        scores = [f.feedback_score for f in feedback if f.feedback_score is not None]
        report.total_feedback = len(feedback)
        report.positive_feedback = polarity[FeedbackType.POSITIVE]
        report.negative_feedback = polarity[FeedbackType.NEGATIVE]
        report.neutral_feedback = polarity[FeedbackType.NEUTRAL]
        report.average_feedback_score = mean(scores) if scores else None
        targets = {(f.target_kind, f.target_id) for f in feedback}
        report.feedback_participation_rate = min(1.0, _rate(len(targets), report.total_generated))

        report.by_type = by_type
        report.by_reason = sorted(by_reason.values(), key=lambda s: (-s.conversion_rate, -s.generated, s.name))
        report.system_health_status = health_status(report.conversion_rate, report.average_feedback_score)
        report.key_insights = key_insights(report)

        logger.debug(
            f"Analytics for {days}d: {report.total_generated} generated, "
            f"engagement {report.engagement_rate:.1%}, conversion {report.conversion_rate:.1%}"
        )
        return report

    def get_personality_distribution(self) -> dict[str, int]:
        counts = self.repository.count_profiles_by_personality()
        return {p.value: counts.get(p.value, 0) for p in ViewingPersonality}

    def get_user_summary(self, user_id: int) -> dict:
        """Per-user snapshot: active/unviewed counts plus profile headline values."""
        if self.repository.find_user_by_id(user_id) is None:
            raise NotFoundError(f"User {user_id} not found")
        now = self._clock()
        profile = self.repository.find_profile_by_user(user_id)
        active = self.repository.find_active_recommendations(user_id, now, limit=1000)
        groups = self.repository.find_active_group_recommendations(user_id, now, limit=1000)
        return {
            'user_id': user_id,
            'active_recommendations': len(active),
            'unviewed_recommendations': self.repository.count_unviewed_recommendations(user_id, now),
            'active_group_recommendations': len(groups),
            'confidence_score': profile.confidence_score if profile else 0.0,
            'viewing_personality': (profile.viewing_personality if profile else ViewingPersonality.CASUAL).value,
            'top_genres': profile.top_genres[:3] if profile else [],
        }
