import importlib
import sys
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from showsync_rec.cache import TTLCache  # noqa: E402
from showsync_rec.compatibility import CompatibilityEngine  # noqa: E402
from showsync_rec.config import RecommendationConfig  # noqa: E402
from showsync_rec.models import (  # noqa: E402
    Group,
    InteractionRecord,
    InteractionStatus,
    Media,
    MediaType,
    User,
)
from showsync_rec.profile import PreferenceEngine  # noqa: E402
from showsync_rec.recommender import RecommendationEngine  # noqa: E402

NOW = datetime(2024, 6, 1, 12, 0, 0)


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("SHOWSYNC_DB", str(db_path))
    import showsync_rec.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("SHOWSYNC_DB", str(db_path))

    import showsync_rec.config as config
    import showsync_rec.database as database

    importlib.reload(config)
    importlib.reload(database)

    yield database
    database.close_pool()


@pytest.fixture
def repo(fresh_db):
    fresh_db.init_db()
    return fresh_db.Repository()


@pytest.fixture
def test_config():
    return RecommendationConfig(
        min_relevance_score=0.2,
        min_similarity_score=0.3,
        min_confidence_threshold=0.1,
        min_interactions_for_recommendations=3,
        max_same_type_recommendations=3,
        max_recommendations_per_user=10,
        collaborative_filtering_user_count=10,
        trending_window_days=7,
        parallel_strategies=True,
    )


CATALOGUE = [
    Media(1, "Die Hard", MediaType.MOVIE, ["Action"], "Netflix", 1988, 8.2, 900),
    Media(2, "Mad Max: Fury Road", MediaType.MOVIE, ["Action"], "Netflix", 2015, 8.1, 800),
    Media(3, "John Wick", MediaType.MOVIE, ["Action"], "Prime", 2014, 7.4, 700),
    Media(4, "Heat", MediaType.MOVIE, ["Action", "Crime"], "Netflix", 1995, 8.3, 650),
    Media(5, "Top Gun: Maverick", MediaType.MOVIE, ["Action"], "Prime", 2022, 8.0, 600),
    Media(6, "Speed", MediaType.MOVIE, ["Action"], "Hulu", 1994, 7.2, 500),
    Media(7, "Superbad", MediaType.MOVIE, ["Comedy"], "Netflix", 2007, 7.6, 450),
    Media(8, "Step Brothers", MediaType.MOVIE, ["Comedy"], "Hulu", 2008, 6.9, 400),
    Media(9, "The Office", MediaType.TV_SHOW, ["Comedy"], "Peacock", 2005, 9.0, 1200),
    Media(10, "Mindhunter", MediaType.TV_SHOW, ["Crime", "Drama"], "Netflix", 2017, 8.6, 300),
    Media(11, "Dark", MediaType.TV_SHOW, ["Drama", "Sci-Fi"], "Netflix", 2017, 8.7, 350),
    Media(12, "Arrival", MediaType.MOVIE, ["Sci-Fi", "Drama"], "Prime", 2016, 7.9, 420),
    Media(13, "Edge of Tomorrow", MediaType.MOVIE, ["Action", "Sci-Fi"], "Netflix", 2014, 7.9, 380),
    Media(14, "Ronin", MediaType.MOVIE, ["Action", "Thriller"], "Prime", 1998, 7.2, 200),
    Media(15, "Casablanca", MediaType.MOVIE, ["Drama", "Romance"], "Max", 1942, 8.5, 1000),
]

# user_id -> [(media_id, rating, days_ago)]
HISTORIES = {
    1: [(1, 9, 20), (2, 9, 10), (3, 8, 3), (7, 3, 2)],
    2: [(1, 10, 25), (2, 9, 12), (4, 9, 6), (13, 8, 4), (6, 8, 1)],
    3: [(7, 9, 18), (8, 8, 9), (9, 10, 5), (15, 9, 2)],
    4: [(12, 7, 1)],
}
USERS = {1: "alice", 2: "bob", 3: "carol", 4: "dave", 5: "erin"}


def interaction(user_id, media_id, rating, days_ago, status=InteractionStatus.COMPLETED,
                completion=100.0, watch_minutes=None):
    ts = NOW - timedelta(days=days_ago)
    return InteractionRecord(
        user_id=user_id,
        media_id=media_id,
        status=status,
        rating=rating,
        completion_percentage=completion,
        watch_minutes=watch_minutes,
        created_at=ts,
        updated_at=ts,
    )


@pytest.fixture
def seeded(repo):
    """Catalogue, five users with varied histories, and a few groups."""
    for user_id, username in USERS.items():
        repo.save_user(User(user_id, username))
    for media in CATALOGUE:
        repo.save_media(media)
    for user_id, history in HISTORIES.items():
        for media_id, rating, days_ago in history:
            repo.save_interaction(interaction(user_id, media_id, rating, days_ago))

    repo.save_group(Group(1, "Action Fans"))
    repo.save_group(Group(2, "Comedy Club"))
    repo.save_group(Group(3, "Secret Screenings", is_public=False))
    repo.save_group(Group(4, "Alice's Picks"))
    repo.add_group_member(1, 2)
    repo.add_group_member(2, 3)
    repo.add_group_member(3, 2)
    repo.add_group_member(4, 1)
    return repo


@pytest.fixture
def engines(seeded, test_config):
    cache = TTLCache(3600)
    clock = lambda: NOW  # noqa: E731
    preferences = PreferenceEngine(seeded, test_config, cache, clock=clock)
    compatibility = CompatibilityEngine(seeded, preferences, test_config, cache)
    recommendations = RecommendationEngine(seeded, preferences, compatibility, test_config, cache, clock=clock)
    return SimpleNamespace(
        repo=seeded,
        config=test_config,
        cache=cache,
        preferences=preferences,
        compatibility=compatibility,
        recommendations=recommendations,
    )


@pytest.fixture
def profiled(engines):
    """Engines with every seeded user's profile computed and stored."""
    for user_id in USERS:
        engines.preferences.update_preferences(user_id)
    return engines
