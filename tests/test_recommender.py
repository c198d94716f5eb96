import logging
from collections import Counter
from datetime import timedelta

import pytest

from showsync_rec.errors import ForbiddenError, InvalidInputError, NotFoundError
from showsync_rec.explanations import explain
from showsync_rec.models import (
    FeedbackType,
    Media,
    PreferenceProfile,
    RecommendationReason,
    RecommendationType,
    TargetKind,
)
from showsync_rec.recommender import Candidate, content_relevance, dedupe, diversify

from conftest import NOW


def _candidate(media_id, genres, relevance):
    media = Media(media_id, f"Title {media_id}", genres=genres)
    return Candidate(media, relevance, RecommendationType.PERSONAL, RecommendationReason.GENRE_MATCH)


def test_diversify_caps_genre_and_sorts_by_relevance():
    candidates = [
        _candidate(1, ["Action"], 0.5),
        _candidate(2, ["Action"], 0.9),
        _candidate(3, ["Action", "Comedy"], 0.95),  # skipped, Action already capped
        _candidate(4, ["Comedy"], 0.7),
        _candidate(5, ["Drama"], 0.6),
    ]

    picks = diversify(candidates, limit=3, max_per_genre=2)

    assert [c.media.id for c in picks] == [2, 4, 5]


def test_diversify_never_exceeds_limit_or_cap():
    candidates = [_candidate(i, ["Action"] if i % 2 else ["Drama"], i / 10) for i in range(1, 10)]

    picks = diversify(candidates, limit=10, max_per_genre=3)

    counts = Counter(g for c in picks for g in c.genres)
    assert max(counts.values()) <= 3
    assert len(picks) == 6


def test_dedupe_keeps_first_occurrence():
    first = _candidate(1, ["Action"], 0.2)
    unique = dedupe([first, _candidate(1, ["Action"], 0.9), _candidate(2, ["Drama"], 0.5)])

    assert unique[0] is first
    assert [c.media.id for c in unique] == [1, 2]


def test_content_relevance_bounds(test_config):
    profile = PreferenceProfile(
        user_id=1,
        genre_preferences={"Action": 1.0},
        platform_preferences={"Netflix": 1.0},
        era_preferences={"2010s": 1.0},
        average_user_rating=8.0,
    )
    perfect = Media(1, "Match", genres=["Action", "Drama"], platform="Netflix", release_year=2015, average_rating=8.0)
    unrelated = Media(2, "Miss", genres=["Horror"], platform="Hulu", release_year=1950)

    assert content_relevance(perfect, profile, test_config) == pytest.approx(1.0)
    assert content_relevance(unrelated, profile, test_config) == 0.0


def test_explanations_fill_in_context():
    assert explain(RecommendationReason.GENRE_MATCH, genre="Action") == "Based on your love for Action"
    assert explain(RecommendationReason.SIMILAR_CONTENT, seed_title="Heat") == "Because you enjoyed Heat"
    assert explain(RecommendationReason.SIMILAR_USERS, peer_count=3).startswith("3 users")
    assert explain(RecommendationReason.TRENDING_GLOBAL) == "Trending now"
    assert "8.5/10" in explain(RecommendationReason.HIGHLY_RATED, average_rating=8.5)
    assert explain(RecommendationReason.GENERAL) == "Recommended for you"


def test_collaborative_ranks_by_weighted_peer_ratings(profiled):
    candidates = profiled.recommendations.collaborative_candidates(1, 10)
    ids = [c.media.id for c in candidates]

    # Heat: rated 9 by the closest match
    assert ids[0] == 4
    assert set(ids).isdisjoint({1, 2, 3, 7})
    assert all(c.reason == RecommendationReason.SIMILAR_USERS for c in candidates)
    assert all(0.0 <= c.relevance <= 1.0 for c in candidates)


def test_personal_candidates_skip_seen_media(profiled):
    profile = profiled.preferences.get_current_profile(1)

    candidates = profiled.recommendations.personal_candidates(1, profile, 10)

    assert candidates
    assert {c.media.id for c in candidates}.isdisjoint({1, 2, 3, 7})
    assert all(c.relevance >= profiled.config.min_relevance_score for c in candidates)
    assert all("Action" in c.genres for c in candidates)


def test_similar_content_shares_seed_genres(profiled):
    recs = profiled.recommendations.find_similar_content(1, 1, limit=5)

    assert recs
    assert all(r.source_media_id == 1 for r in recs)
    assert all(r.explanation == "Because you enjoyed Die Hard" for r in recs)
    assert "Action" in recs[0].genres
    assert {r.media_id for r in recs}.isdisjoint({1, 2, 3, 7})


def test_similar_content_unknown_seed(profiled):
    with pytest.raises(NotFoundError):
        profiled.recommendations.find_similar_content(1, 999)


def test_real_time_for_new_user_is_trending_only(profiled):
    recs = profiled.recommendations.get_real_time_recommendations(5, limit=10)

    assert len(recs) == 10
    assert all(r.recommendation_type == RecommendationType.TRENDING for r in recs)
    assert recs[0].media_id == 9
    assert recs[0].reason_code == RecommendationReason.TRENDING_GLOBAL


def test_real_time_blends_context_and_peers(profiled):
    recs = profiled.recommendations.get_real_time_recommendations(1, context_media_id=1, limit=10)

    types = {r.recommendation_type for r in recs}
    assert RecommendationType.CONTENT_BASED in types
    assert len({r.media_id for r in recs}) == len(recs)
    assert {r.media_id for r in recs}.isdisjoint({1, 2, 3, 7})
    genre_counts = Counter(g for r in recs for g in r.genres)
    assert max(genre_counts.values()) <= profiled.config.max_same_type_recommendations


def test_real_time_unknown_context_degrades(profiled, caplog):
    with caplog.at_level(logging.WARNING):
        recs = profiled.recommendations.get_real_time_recommendations(1, context_media_id=999, limit=5)

    assert recs
    assert all(r.recommendation_type != RecommendationType.CONTENT_BASED for r in recs)
    assert "Ignoring context media" in caplog.text


def test_real_time_rejects_bad_input(profiled):
    with pytest.raises(NotFoundError):
        profiled.recommendations.get_real_time_recommendations(99)
    with pytest.raises(InvalidInputError):
        profiled.recommendations.get_real_time_recommendations(1, limit=0)


def test_sequential_strategies_match_parallel(profiled):
    parallel = profiled.recommendations.get_real_time_recommendations(1, context_media_id=1)
    profiled.recommendations.config = profiled.config.with_overrides(parallel_strategies=False)
    sequential = profiled.recommendations.get_real_time_recommendations(1, context_media_id=1)

    assert [r.media_id for r in parallel] == [r.media_id for r in sequential]


def test_trending_falls_back_to_top_rated(profiled):
    profiled.recommendations.config = profiled.config.with_overrides(trending_window_days=1)
    profiled.cache.clear()

    recs = profiled.recommendations.get_trending_recommendations(limit=5)

    reasons = [r.reason_code for r in recs]
    assert len(recs) == 5
    assert RecommendationReason.HIGHLY_RATED in reasons
    assert recs[0].media_id in {6, 12}  # the only titles touched in the last day


def test_generate_content_recommendations_persists_diversified_list(profiled):
    saved = profiled.recommendations.generate_content_recommendations(1)

    assert 0 < len(saved) <= profiled.config.max_recommendations_per_user
    assert all(r.id is not None for r in saved)
    assert all(r.expires_at == NOW + timedelta(days=14) for r in saved)
    assert all(r.expires_at > r.created_at for r in saved)
    assert {r.media_id for r in saved}.isdisjoint({1, 2, 3, 7})

    media = profiled.repo.find_media_by_ids(r.media_id for r in saved)
    genre_counts = Counter(g for r in saved for g in media[r.media_id].genres)
    assert max(genre_counts.values()) <= profiled.config.max_same_type_recommendations

    active = profiled.recommendations.get_active_recommendations(1, limit=50)
    assert {r.media_id for r in active} == {r.media_id for r in saved}


def test_generation_is_idempotent_with_fixed_clock(profiled):
    first = profiled.recommendations.generate_content_recommendations(1)
    second = profiled.recommendations.generate_content_recommendations(1)

    assert [(r.id, r.media_id, r.relevance_score) for r in first] == [
        (r.id, r.media_id, r.relevance_score) for r in second
    ]
    assert profiled.repo.table_counts()["content_recommendations"] == len(first)


def test_cleanup_expired_removes_only_stale(profiled):
    saved = profiled.recommendations.generate_content_recommendations(1)
    later = profiled.recommendations
    later._clock = lambda: NOW + timedelta(days=15)

    assert later.cleanup_expired(1) == len(saved)
    assert later.get_active_recommendations(1) == []


def test_dismiss_records_negative_feedback(profiled):
    rec = profiled.recommendations.generate_content_recommendations(1)[0]

    feedback = profiled.recommendations.dismiss(1, "content", rec.id, reason="Seen it elsewhere")

    assert feedback.feedback_type == FeedbackType.NEGATIVE
    assert feedback.action_taken == "DISMISSED"
    assert feedback.feedback_text == "Seen it elsewhere"
    assert profiled.repo.find_content_recommendation(rec.id).is_dismissed is True
    assert rec.id not in {r.id for r in profiled.recommendations.get_active_recommendations(1)}


def test_dismissed_media_is_not_generated_again(profiled):
    first = profiled.recommendations.generate_content_recommendations(1)
    top = first[0]
    profiled.recommendations.dismiss(1, "content", top.id)

    second = profiled.recommendations.generate_content_recommendations(1)

    assert top.media_id not in {r.media_id for r in second}
    active = profiled.recommendations.get_active_recommendations(1, limit=50)
    active_ids = {r.media_id for r in active}
    assert top.media_id not in active_ids
    assert {r.media_id for r in second} <= active_ids


def test_dismissed_media_is_left_out_of_real_time_results(profiled):
    saved = profiled.recommendations.generate_content_recommendations(1)
    for rec in saved:
        profiled.recommendations.dismiss(1, "content", rec.id)
    dismissed = {r.media_id for r in saved}

    plain = profiled.recommendations.get_real_time_recommendations(1, limit=10)
    with_context = profiled.recommendations.get_real_time_recommendations(1, context_media_id=1, limit=10)

    assert {r.media_id for r in plain}.isdisjoint(dismissed)
    assert {r.media_id for r in with_context}.isdisjoint(dismissed)


def test_acting_on_someone_elses_recommendation_is_forbidden(profiled):
    rec = profiled.recommendations.generate_content_recommendations(1)[0]

    with pytest.raises(ForbiddenError):
        profiled.recommendations.dismiss(2, TargetKind.CONTENT, rec.id)

    assert profiled.repo.find_content_recommendation(rec.id).is_dismissed is False
    assert profiled.repo.find_feedback_by_user(2) == []


def test_missing_recommendation_and_bad_kind(profiled):
    with pytest.raises(NotFoundError):
        profiled.recommendations.mark_viewed(1, "content", 12345)
    with pytest.raises(InvalidInputError):
        profiled.recommendations.mark_viewed(1, "movie", 1)


@pytest.mark.parametrize("rating, expected", [
    (5, FeedbackType.POSITIVE),
    (4, FeedbackType.POSITIVE),
    (3, FeedbackType.NEUTRAL),
    (2, FeedbackType.NEGATIVE),
    (1, FeedbackType.NEGATIVE),
])
def test_submit_feedback_maps_rating(profiled, rating, expected):
    rec = profiled.recommendations.generate_content_recommendations(1)[0]

    feedback = profiled.recommendations.submit_feedback(1, "CONTENT", rec.id, rating, comment="ok")

    assert feedback.feedback_type == expected
    assert feedback.feedback_score == rating
    assert profiled.repo.find_content_recommendation(rec.id).user_feedback == rating


@pytest.mark.parametrize("rating", [0, 6, 4.5, True, "5"])
def test_submit_feedback_rejects_out_of_range(profiled, rating):
    rec = profiled.recommendations.generate_content_recommendations(1)[0]

    with pytest.raises(InvalidInputError):
        profiled.recommendations.submit_feedback(1, "content", rec.id, rating)
    assert profiled.repo.find_feedback_by_user(1) == []


def test_added_to_library_is_positive_and_monotonic(profiled):
    rec = profiled.recommendations.generate_content_recommendations(1)[0]

    feedback = profiled.recommendations.mark_added_to_library(1, rec.id)
    profiled.recommendations.mark_viewed(1, "content", rec.id)

    stored = profiled.repo.find_content_recommendation(rec.id)
    assert feedback.feedback_type == FeedbackType.POSITIVE
    assert feedback.action_taken == "ADDED_TO_LIBRARY"
    assert stored.is_added_to_library is True
    assert stored.is_viewed is True


def test_feedback_refreshes_preferences(profiled, monkeypatch):
    rec = profiled.recommendations.generate_content_recommendations(1)[0]
    calls = []
    original = profiled.preferences.update_preferences

    def tracking_update(user_id):
        calls.append(user_id)
        return original(user_id)

    monkeypatch.setattr(profiled.preferences, "update_preferences", tracking_update)

    profiled.recommendations.mark_viewed(1, "content", rec.id)
    assert calls == []
    profiled.recommendations.submit_feedback(1, "content", rec.id, 4)
    assert calls == [1]


def test_group_recommendations_and_join(profiled):
    recs = profiled.recommendations.generate_group_recommendations(1)

    assert recs[0].group_id == 1
    assert {r.group_id for r in recs}.isdisjoint({3, 4})
    assert all(r.expires_at == NOW + timedelta(days=7) for r in recs)

    feedback = profiled.recommendations.mark_joined(1, recs[0].id)

    stored = profiled.repo.find_group_recommendation(recs[0].id)
    assert stored.is_joined is True and stored.is_viewed is True
    assert feedback.target_kind == TargetKind.GROUP
    assert feedback.action_taken == "JOINED_GROUP"
    assert profiled.recommendations.get_active_group_recommendations(1)[0].group_id == 1
