from datetime import timedelta

import pytest

from showsync_rec.analytics import AnalyticsReporter, health_status
from showsync_rec.errors import InvalidInputError, NotFoundError
from showsync_rec.models import (
    ContentRecommendation,
    FeedbackType,
    GroupRecommendation,
    RecommendationFeedback,
    RecommendationReason,
    RecommendationType,
    TargetKind,
)

from conftest import NOW

YESTERDAY = NOW - timedelta(days=1)


def _content(media_id, rec_type=RecommendationType.PERSONAL, reason=RecommendationReason.GENRE_MATCH,
             created_at=YESTERDAY):
    return ContentRecommendation(
        user_id=1,
        media_id=media_id,
        recommendation_type=rec_type,
        reason_code=reason,
        relevance_score=0.6,
        explanation="",
        created_at=created_at,
        expires_at=created_at + timedelta(days=14),
    )


@pytest.fixture
def activity(seeded):
    """Four content recs, one joined group rec and two feedback entries for alice."""
    added = seeded.save_content_recommendation(_content(4))
    dismissed = seeded.save_content_recommendation(_content(5))
    viewed = seeded.save_content_recommendation(_content(6))
    seeded.save_content_recommendation(_content(13, RecommendationType.COLLABORATIVE,
                                                RecommendationReason.SIMILAR_USERS))
    # Outside a 30 day window and already expired
    seeded.save_content_recommendation(_content(14, created_at=NOW - timedelta(days=40)))

    seeded.update_content_flags(added.id, viewed=True, added_to_library=True)
    seeded.update_content_flags(dismissed.id, dismissed=True)
    seeded.update_content_flags(viewed.id, viewed=True)

    group_rec = seeded.save_group_recommendation(GroupRecommendation(
        user_id=1,
        group_id=1,
        compatibility_score=0.8,
        reason_code=RecommendationReason.GENRE_COMPATIBILITY,
        explanation="",
        created_at=YESTERDAY,
        expires_at=YESTERDAY + timedelta(days=7),
    ))
    seeded.update_group_flags(group_rec.id, viewed=True, joined=True)

    seeded.save_feedback(RecommendationFeedback(
        user_id=1, target_kind=TargetKind.CONTENT, target_id=added.id,
        feedback_type=FeedbackType.POSITIVE, created_at=YESTERDAY, feedback_score=5,
    ))
    seeded.save_feedback(RecommendationFeedback(
        user_id=1, target_kind=TargetKind.CONTENT, target_id=dismissed.id,
        feedback_type=FeedbackType.NEGATIVE, created_at=YESTERDAY, action_taken="DISMISSED",
    ))
    return seeded


@pytest.mark.parametrize("conversion, feedback, expected", [
    (0.12, None, "Excellent"),
    (0.12, 4.0, "Excellent"),
    (0.12, 3.2, "Good"),
    (0.06, 3.2, "Good"),
    (0.03, None, "Fair"),
    (0.12, 2.0, "Needs Improvement"),
    (0.0, 5.0, "Needs Improvement"),
])
def test_health_status_thresholds(conversion, feedback, expected):
    assert health_status(conversion, feedback) == expected


def test_recommendation_analytics_counts_and_rates(activity):
    report = AnalyticsReporter(activity, clock=lambda: NOW).get_recommendation_analytics(days=30)

    assert report.content_generated == 4
    assert report.content_viewed == 2
    assert report.content_dismissed == 1
    assert report.content_added_to_library == 1
    assert report.groups_generated == 1
    assert report.groups_joined == 1
    assert report.engagement_rate == pytest.approx(3 / 5)
    assert report.conversion_rate == pytest.approx(2 / 5)
    assert report.dismissal_rate == pytest.approx(1 / 5)

    assert report.total_feedback == 2
    assert report.positive_feedback == 1
    assert report.negative_feedback == 1
    assert report.average_feedback_score == 5
    assert report.feedback_participation_rate == pytest.approx(2 / 5)
    assert report.system_health_status == "Excellent"


def test_analytics_breakdowns(activity):
    report = AnalyticsReporter(activity, clock=lambda: NOW).get_recommendation_analytics(days=30)

    assert report.by_type["PERSONAL"].generated == 3
    assert report.by_type["COLLABORATIVE"].generated == 1
    assert report.by_type["GROUP"].converted == 1
    assert report.by_reason[0].name == "GENRE_COMPATIBILITY"
    assert report.by_reason[0].conversion_rate == 1.0
    assert any("GENRE_COMPATIBILITY" in insight for insight in report.key_insights)
    assert "Group recommendations convert better than content recommendations" in report.key_insights


def test_window_includes_records_created_now(activity):
    activity.save_content_recommendation(_content(12, created_at=NOW))

    report = AnalyticsReporter(activity, clock=lambda: NOW).get_recommendation_analytics(days=1)

    assert report.content_generated == 5


def test_empty_period(activity):
    reporter = AnalyticsReporter(activity, clock=lambda: NOW + timedelta(days=365))

    report = reporter.get_recommendation_analytics(days=7)

    assert report.total_generated == 0
    assert report.engagement_rate == 0.0
    assert report.system_health_status == "Needs Improvement"
    assert report.key_insights == ["No recommendations were generated in this period"]


def test_days_must_be_positive(activity):
    with pytest.raises(InvalidInputError):
        AnalyticsReporter(activity).get_recommendation_analytics(days=0)


def test_personality_distribution_lists_every_personality(profiled):
    distribution = AnalyticsReporter(profiled.repo).get_personality_distribution()

    assert distribution == {"CASUAL": 5, "BINGE_WATCHER": 0, "EXPLORER": 0, "CRITIC": 0}


def test_user_summary(activity):
    reporter = AnalyticsReporter(activity, clock=lambda: NOW)

    summary = reporter.get_user_summary(1)

    assert summary["active_recommendations"] == 3
    assert summary["unviewed_recommendations"] == 1
    assert summary["active_group_recommendations"] == 1
    assert summary["confidence_score"] == 0.0
    assert summary["viewing_personality"] == "CASUAL"
    with pytest.raises(NotFoundError):
        reporter.get_user_summary(99)
