from datetime import datetime, timedelta

import pytest

from showsync_rec.database import format_timestamp, parse_timestamp_naive
from showsync_rec.models import (
    ContentRecommendation,
    Media,
    MediaType,
    PreferenceProfile,
    RecommendationReason,
    RecommendationType,
    User,
    ViewingPersonality,
)

from conftest import NOW


def _content_rec(user_id, media_id, relevance=0.5, created_at=NOW, expires_in=timedelta(days=14),
                 rec_type=RecommendationType.PERSONAL):
    return ContentRecommendation(
        user_id=user_id,
        media_id=media_id,
        recommendation_type=rec_type,
        reason_code=RecommendationReason.GENRE_MATCH,
        relevance_score=relevance,
        explanation="Based on your love for Action",
        created_at=created_at,
        expires_at=created_at + expires_in,
    )


def test_init_db_creates_empty_tables(repo):
    counts = repo.table_counts()

    assert counts["users"] == 0
    assert counts["content_recommendations"] == 0
    assert set(counts) >= {"media", "interactions", "preference_profiles", "recommendation_feedback"}


def test_timestamp_helpers_keep_lexical_order():
    earlier = datetime(2024, 1, 1, 9, 0, 0)
    later = datetime(2024, 1, 1, 10, 0, 0, 5)

    assert format_timestamp(earlier) < format_timestamp(later)
    assert parse_timestamp_naive(format_timestamp(later)) == later
    assert parse_timestamp_naive("2024-01-01T10:00:00+02:00") == datetime(2024, 1, 1, 10, 0, 0)
    assert parse_timestamp_naive(None) is None


def test_load_json_handles_bad_values(fresh_db):
    assert fresh_db.load_json('["a", "b"]') == ["a", "b"]
    assert fresh_db.load_json(None) == []
    assert fresh_db.load_json("{broken", {}) == {}


def test_media_round_trip_and_genre_lookup(repo):
    repo.save_media(Media(1, "Heat", MediaType.MOVIE, ["Action", "Crime"], "Netflix", 1995, 8.3, 650))
    repo.save_media(Media(2, "Dark", MediaType.TV_SHOW, ["Drama"], "Netflix", 2017, 8.7, 350))

    heat = repo.find_media_by_id(1)
    assert heat.genres == ["Action", "Crime"]
    assert heat.media_type == MediaType.MOVIE
    assert [m.id for m in repo.find_media_by_genre("Crime")] == [1]
    assert [m.id for m in repo.find_media_by_type(MediaType.TV_SHOW)] == [2]
    assert [m.id for m in repo.find_top_rated_media(1)] == [2]

    # Re-saving replaces the genre index
    repo.save_media(Media(1, "Heat", MediaType.MOVIE, ["Thriller"], "Netflix", 1995, 8.3, 650))
    assert repo.find_media_by_genre("Crime") == []


def test_create_profile_if_missing_is_idempotent(repo):
    repo.save_user(User(1, "alice"))

    first = repo.create_profile_if_missing(1, NOW)
    second = repo.create_profile_if_missing(1, NOW + timedelta(hours=1))

    assert first.id == second.id
    assert second.created_at == NOW
    assert second.last_calculated_at is None
    assert second.viewing_personality == ViewingPersonality.CASUAL


def test_save_profile_upserts_and_keeps_created_at(repo):
    repo.save_user(User(1, "alice"))
    repo.create_profile_if_missing(1, NOW - timedelta(days=30))

    repo.save_profile(PreferenceProfile(
        user_id=1,
        genre_preferences={"Action": 1.0, "Comedy": 0.2},
        viewing_personality=ViewingPersonality.CRITIC,
        confidence_score=0.6,
        total_interactions=12,
        last_calculated_at=NOW,
        created_at=NOW,
    ))

    stored = repo.find_profile_by_user(1)
    assert stored.genre_preferences == {"Action": 1.0, "Comedy": 0.2}
    assert stored.viewing_personality == ViewingPersonality.CRITIC
    assert stored.created_at == NOW - timedelta(days=30)
    assert stored.last_calculated_at == NOW
    assert repo.count_profiles_by_personality() == {"CRITIC": 1}


def test_content_recommendation_upsert_keeps_flags(seeded):
    saved = seeded.save_content_recommendation(_content_rec(1, 4, relevance=0.5))
    seeded.update_content_flags(saved.id, viewed=True)

    refreshed = seeded.save_content_recommendation(
        _content_rec(1, 4, relevance=0.9, created_at=NOW + timedelta(days=1))
    )

    assert refreshed.id == saved.id
    assert refreshed.relevance_score == 0.9
    assert refreshed.is_viewed is True
    assert refreshed.created_at == NOW
    assert refreshed.expires_at == NOW + timedelta(days=15)
    assert seeded.table_counts()["content_recommendations"] == 1


def test_flags_are_monotonic(seeded):
    rec = seeded.save_content_recommendation(_content_rec(1, 4))
    seeded.update_content_flags(rec.id, viewed=True, user_feedback=4)
    seeded.update_content_flags(rec.id, dismissed=True)

    stored = seeded.find_content_recommendation(rec.id)
    assert stored.is_viewed is True
    assert stored.is_dismissed is True
    assert stored.user_feedback == 4


def test_active_recommendations_filter_and_order(seeded):
    best = seeded.save_content_recommendation(_content_rec(1, 4, relevance=0.9))
    seeded.save_content_recommendation(_content_rec(1, 5, relevance=0.7, rec_type=RecommendationType.TRENDING))
    dismissed = seeded.save_content_recommendation(_content_rec(1, 6, relevance=0.8))
    seeded.save_content_recommendation(_content_rec(1, 13, relevance=0.95, expires_in=timedelta(days=-1)))
    seeded.update_content_flags(dismissed.id, dismissed=True)

    active = seeded.find_active_recommendations(1, NOW)
    assert [r.media_id for r in active] == [4, 5]
    assert [r.media_id for r in seeded.find_active_recommendations(1, NOW, limit=1, offset=1)] == [5]
    trending = seeded.find_active_recommendations(1, NOW, recommendation_type=RecommendationType.TRENDING)
    assert [r.media_id for r in trending] == [5]
    assert seeded.count_unviewed_recommendations(1, NOW) == 2
    assert seeded.find_dismissed_media_ids(1) == {6}
    assert seeded.find_dismissed_media_ids(2) == set()
    assert best.is_active(NOW)

    assert seeded.delete_expired_content_recommendations(1, NOW) == 1
    assert seeded.table_counts()["content_recommendations"] == 3


def test_trending_counts_recent_interactions(seeded):
    trending = seeded.find_trending_media(NOW - timedelta(days=7), limit=3)

    # Every recent title has one viewer, so average rating breaks the tie
    assert [(m.id, count) for m, count in trending] == [(9, 1), (15, 1), (4, 1)]
    assert seeded.find_trending_media(NOW + timedelta(days=1), limit=3) == []


def test_user_lookups(seeded):
    assert seeded.find_user_ids_with_min_interactions(4) == [1, 2, 3]
    assert seeded.find_user_ids_active_since(NOW - timedelta(days=1, hours=1)) == [2, 4]
    assert seeded.find_usernames([1, 3]) == {1: "alice", 3: "carol"}
    assert seeded.find_interacted_media_ids(4) == {12}
    assert [g.id for g in seeded.find_public_groups_excluding_member(2)] == [2, 4]
    assert [u.id for u in seeded.find_group_members(1)] == [2]


def test_highly_rated_by_users(seeded):
    rows = seeded.find_highly_rated_by_users([1, 3], 9)

    assert sorted((r.user_id, r.media_id) for r in rows) == [(1, 1), (1, 2), (3, 7), (3, 9), (3, 15)]
    assert seeded.find_highly_rated_by_users([], 9) == []


def test_nested_get_db_rolls_back_outer_transaction(fresh_db, repo):
    with pytest.raises(RuntimeError):
        with fresh_db.get_db() as conn:
            conn.execute("INSERT INTO users (id, username) VALUES (1, 'alice')")
            with fresh_db.get_db() as inner:
                inner.execute("INSERT INTO users (id, username) VALUES (2, 'bob')")
            raise RuntimeError("abort")

    assert repo.table_counts()["users"] == 0
