import sqlite3
import json
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable

from .config import DB_PATH
from .models import (
    ContentRecommendation,
    FeedbackType,
    Group,
    GroupRecommendation,
    InteractionRecord,
    InteractionStatus,
    Media,
    MediaType,
    PreferenceProfile,
    RecommendationFeedback,
    RecommendationReason,
    RecommendationType,
    TargetKind,
    User,
    ViewingPersonality,
)

logger = logging.getLogger(__name__)


def parse_timestamp_naive(timestamp_str: str | None) -> datetime | None:
    """
    Parse ISO format timestamp string to naive datetime.

    Always returns a naive datetime so stored values compare cleanly with
    datetime.now().
    """
    if not timestamp_str:
        return None
    dt = datetime.fromisoformat(timestamp_str)
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


def format_timestamp(dt: datetime | None) -> str | None:
    """Serialize to a fixed-width ISO string so lexical order matches time order."""
    if dt is None:
        return None
    if dt.tzinfo:
        dt = dt.replace(tzinfo=None)
    return dt.isoformat(sep=" ", timespec="microseconds")


class ConnectionPool:
    """
    Thread-safe SQLite connection pool.

    - One connection per thread (SQLite threading requirement)
    - Periodic health checks via SELECT 1
    - Cleanup of connections owned by threads that have exited
    - Transaction nesting depth tracked per thread
    """

    def __init__(self, db_path, max_size: int = 50, health_check_interval: int = 300):
        self._db_path = db_path
        self._max_size = max_size
        self._health_check_interval = health_check_interval

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._last_health_check: dict[int, float] = {}
        self._transaction_depth: dict[int, int] = {}
        self._last_cleanup = time.time()
        self._cleanup_interval = 60

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")

        return conn

    def _health_check(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def _drop(self, thread_id: int) -> None:
        conn = self._connections.pop(thread_id, None)
        self._last_health_check.pop(thread_id, None)
        self._transaction_depth.pop(thread_id, None)
        if conn is not None:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing connection for thread {thread_id}: {e}")

    def _maybe_cleanup(self, force: bool = False):
        now = time.time()
        if not force and now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        alive_threads = {t.ident for t in threading.enumerate()}
        dead_threads = set(self._connections) - alive_threads
        for thread_id in dead_threads:
            self._drop(thread_id)

        if dead_threads:
            logger.debug(f"Connection pool cleanup: removed {len(dead_threads)} dead connections")

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection for the current thread, creating if necessary."""
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            self._maybe_cleanup()
            conn = self._connections.get(thread_id)

            if conn is not None and now - self._last_health_check.get(thread_id, 0) > self._health_check_interval:
                if self._health_check(conn):
                    self._last_health_check[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
                    self._drop(thread_id)
                    conn = None

            if conn is None:
                if len(self._connections) >= self._max_size:
                    self._maybe_cleanup(force=True)
                    if len(self._connections) >= self._max_size:
                        raise RuntimeError(
                            f"Connection pool exhausted ({self._max_size} connections). "
                            f"Possible connection leak or too many threads."
                        )

                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._last_health_check[thread_id] = now
                self._transaction_depth[thread_id] = 0
                logger.debug(f"Created connection for thread {thread_id} (pool size: {len(self._connections)})")

            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = self._transaction_depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            depth = self._transaction_depth.get(thread_id, 1)
            self._transaction_depth[thread_id] = max(0, depth - 1)

    def close_all(self):
        """Close all connections (call on application shutdown)."""
        with self._lock:
            for thread_id in list(self._connections):
                self._drop(thread_id)
            logger.debug("Connection pool closed")

    def stats(self) -> dict:
        with self._lock:
            return {
                'active_connections': len(self._connections),
                'max_size': self._max_size,
            }


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    """Get or create the global connection pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit

    Only the outermost context commits or rolls back; nested contexts on the
    same thread join the enclosing transaction.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn
        if is_outermost and not read_only:
            conn.commit()
    except Exception:
        if is_outermost:
            conn.rollback()
        raise
    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def load_json(val, default=None):
    """Safely load JSON from db field."""
    if default is None:
        default = []
    if not val:
        return default
    if isinstance(val, (list, dict)):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return default


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY,
                username TEXT NOT NULL UNIQUE
            );

            CREATE TABLE IF NOT EXISTS media (
                id INTEGER PRIMARY KEY,
                title TEXT NOT NULL,
                media_type TEXT NOT NULL DEFAULT 'MOVIE',
                genres TEXT,            -- JSON list
                platform TEXT,
                release_year INTEGER,
                average_rating REAL,
                rating_count INTEGER DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS media_genres (
                media_id INTEGER NOT NULL,
                genre TEXT NOT NULL,
                PRIMARY KEY (media_id, genre)
            );

            CREATE TABLE IF NOT EXISTS interactions (
                user_id INTEGER NOT NULL,
                media_id INTEGER NOT NULL,
                status TEXT NOT NULL,
                rating INTEGER,
                completion_percentage REAL DEFAULT 0,
                watch_minutes INTEGER,
                created_at TEXT,
                updated_at TEXT,
                PRIMARY KEY (user_id, media_id)
            );

            CREATE TABLE IF NOT EXISTS groups (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT DEFAULT '',
                is_public INTEGER DEFAULT 1,
                is_active INTEGER DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS group_memberships (
                group_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                is_active INTEGER DEFAULT 1,
                PRIMARY KEY (group_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS preference_profiles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL UNIQUE,
                genre_preferences TEXT,     -- JSON object
                platform_preferences TEXT,  -- JSON object
                era_preferences TEXT,       -- JSON object
                viewing_personality TEXT DEFAULT 'CASUAL',
                confidence_score REAL DEFAULT 0,
                diversity_score REAL DEFAULT 0,
                total_interactions INTEGER DEFAULT 0,
                total_completed INTEGER DEFAULT 0,
                completion_rate REAL DEFAULT 0,
                average_user_rating REAL,
                rating_variance REAL DEFAULT 0,
                last_calculated_at TEXT,
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS content_recommendations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                media_id INTEGER NOT NULL,
                recommendation_type TEXT NOT NULL,
                reason_code TEXT NOT NULL,
                relevance_score REAL NOT NULL,
                explanation TEXT,
                source_media_id INTEGER,
                is_viewed INTEGER DEFAULT 0,
                is_dismissed INTEGER DEFAULT 0,
                is_added_to_library INTEGER DEFAULT 0,
                user_feedback INTEGER,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                UNIQUE (user_id, media_id)
            );

            CREATE TABLE IF NOT EXISTS group_recommendations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                group_id INTEGER NOT NULL,
                compatibility_score REAL NOT NULL,
                reason_code TEXT NOT NULL,
                explanation TEXT,
                is_viewed INTEGER DEFAULT 0,
                is_dismissed INTEGER DEFAULT 0,
                is_joined INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                UNIQUE (user_id, group_id)
            );

            CREATE TABLE IF NOT EXISTS recommendation_feedback (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                target_kind TEXT NOT NULL,
                target_id INTEGER NOT NULL,
                feedback_type TEXT NOT NULL,
                feedback_score INTEGER,
                feedback_text TEXT,
                action_taken TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_interactions_user ON interactions(user_id);
            CREATE INDEX IF NOT EXISTS idx_interactions_updated ON interactions(updated_at);
            CREATE INDEX IF NOT EXISTS idx_interactions_media ON interactions(media_id);
            CREATE INDEX IF NOT EXISTS idx_mg_genre ON media_genres(genre);
            CREATE INDEX IF NOT EXISTS idx_media_type ON media(media_type);
            CREATE INDEX IF NOT EXISTS idx_memberships_user ON group_memberships(user_id);
            CREATE INDEX IF NOT EXISTS idx_profiles_confidence ON preference_profiles(confidence_score);
            CREATE INDEX IF NOT EXISTS idx_content_recs_user_expiry ON content_recommendations(user_id, expires_at);
            CREATE INDEX IF NOT EXISTS idx_content_recs_created ON content_recommendations(created_at);
            CREATE INDEX IF NOT EXISTS idx_group_recs_user_expiry ON group_recommendations(user_id, expires_at);
            CREATE INDEX IF NOT EXISTS idx_group_recs_created ON group_recommendations(created_at);
            CREATE INDEX IF NOT EXISTS idx_feedback_created ON recommendation_feedback(created_at);
        """)


# ---------------------------------------------------------------------------
# Row converters


def _row_to_media(row) -> Media:
    return Media(
        id=row['id'],
        title=row['title'],
        media_type=MediaType(row['media_type']),
        genres=load_json(row['genres']),
        platform=row['platform'],
        release_year=row['release_year'],
        average_rating=row['average_rating'],
        rating_count=row['rating_count'] or 0,
    )


def _row_to_interaction(row) -> InteractionRecord:
    return InteractionRecord(
        user_id=row['user_id'],
        media_id=row['media_id'],
        status=InteractionStatus(row['status']),
        rating=row['rating'],
        completion_percentage=row['completion_percentage'] or 0.0,
        watch_minutes=row['watch_minutes'],
        created_at=parse_timestamp_naive(row['created_at']),
        updated_at=parse_timestamp_naive(row['updated_at']),
    )


def _row_to_group(row) -> Group:
    return Group(
        id=row['id'],
        name=row['name'],
        description=row['description'] or "",
        is_public=bool(row['is_public']),
        is_active=bool(row['is_active']),
    )


def _row_to_profile(row) -> PreferenceProfile:
    return PreferenceProfile(
        id=row['id'],
        user_id=row['user_id'],
        genre_preferences=load_json(row['genre_preferences'], {}),
        platform_preferences=load_json(row['platform_preferences'], {}),
        era_preferences=load_json(row['era_preferences'], {}),
        viewing_personality=ViewingPersonality(row['viewing_personality'] or 'CASUAL'),
        confidence_score=row['confidence_score'] or 0.0,
        diversity_score=row['diversity_score'] or 0.0,
        total_interactions=row['total_interactions'] or 0,
        total_completed=row['total_completed'] or 0,
        completion_rate=row['completion_rate'] or 0.0,
        average_user_rating=row['average_user_rating'],
        rating_variance=row['rating_variance'] or 0.0,
        last_calculated_at=parse_timestamp_naive(row['last_calculated_at']),
        created_at=parse_timestamp_naive(row['created_at']),
    )


def _row_to_content_rec(row) -> ContentRecommendation:
    return ContentRecommendation(
        id=row['id'],
        user_id=row['user_id'],
        media_id=row['media_id'],
        recommendation_type=RecommendationType(row['recommendation_type']),
        reason_code=RecommendationReason(row['reason_code']),
        relevance_score=row['relevance_score'],
        explanation=row['explanation'] or "",
        source_media_id=row['source_media_id'],
        is_viewed=bool(row['is_viewed']),
        is_dismissed=bool(row['is_dismissed']),
        is_added_to_library=bool(row['is_added_to_library']),
        user_feedback=row['user_feedback'],
        created_at=parse_timestamp_naive(row['created_at']),
        expires_at=parse_timestamp_naive(row['expires_at']),
    )


def _row_to_group_rec(row) -> GroupRecommendation:
    return GroupRecommendation(
        id=row['id'],
        user_id=row['user_id'],
        group_id=row['group_id'],
        compatibility_score=row['compatibility_score'],
        reason_code=RecommendationReason(row['reason_code']),
        explanation=row['explanation'] or "",
        is_viewed=bool(row['is_viewed']),
        is_dismissed=bool(row['is_dismissed']),
        is_joined=bool(row['is_joined']),
        created_at=parse_timestamp_naive(row['created_at']),
        expires_at=parse_timestamp_naive(row['expires_at']),
    )


def _row_to_feedback(row) -> RecommendationFeedback:
    return RecommendationFeedback(
        id=row['id'],
        user_id=row['user_id'],
        target_kind=TargetKind(row['target_kind']),
        target_id=row['target_id'],
        feedback_type=FeedbackType(row['feedback_type']),
        feedback_score=row['feedback_score'],
        feedback_text=row['feedback_text'],
        action_taken=row['action_taken'],
        created_at=parse_timestamp_naive(row['created_at']),
    )


def _placeholders(values: Iterable) -> str:
    return ",".join("?" for _ in values)


class Repository:
    """
    Narrow data-access boundary used by the engines.

    Every method opens its own get_db() context, so calls made inside an
    enclosing get_db() block on the same thread join that transaction.
    """

    # -- users, media, interactions (platform data) --------------------------

    def save_user(self, user: User) -> None:
        with get_db() as conn:
            conn.execute(
                "INSERT INTO users (id, username) VALUES (?, ?) "
                "ON CONFLICT(id) DO UPDATE SET username = excluded.username",
                (user.id, user.username),
            )

    def find_user_by_id(self, user_id: int) -> User | None:
        with get_db(read_only=True) as conn:
            row = conn.execute("SELECT id, username FROM users WHERE id = ?", (user_id,)).fetchone()
        return User(id=row['id'], username=row['username']) if row else None

    def find_usernames(self, user_ids: list[int]) -> dict[int, str]:
        if not user_ids:
            return {}
        with get_db(read_only=True) as conn:
            rows = conn.execute(
                f"SELECT id, username FROM users WHERE id IN ({_placeholders(user_ids)})",
                list(user_ids),
            ).fetchall()
        return {r['id']: r['username'] for r in rows}

    def find_all_user_ids(self) -> list[int]:
        with get_db(read_only=True) as conn:
            return [r[0] for r in conn.execute("SELECT id FROM users ORDER BY id").fetchall()]

    def find_user_ids_with_min_interactions(self, min_interactions: int) -> list[int]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT u.id
                FROM users u
                LEFT JOIN interactions i ON i.user_id = u.id
                GROUP BY u.id
                HAVING COUNT(i.media_id) >= ?
                ORDER BY u.id
            """, (min_interactions,)).fetchall()
        return [r[0] for r in rows]

    def find_user_ids_active_since(self, cutoff: datetime) -> list[int]:
        with get_db(read_only=True) as conn:
            rows = conn.execute(
                "SELECT DISTINCT user_id FROM interactions WHERE updated_at >= ? ORDER BY user_id",
                (format_timestamp(cutoff),),
            ).fetchall()
        return [r[0] for r in rows]

    def save_media(self, media: Media) -> None:
        with get_db() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO media
                    (id, title, media_type, genres, platform, release_year, average_rating, rating_count)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                media.id, media.title, media.media_type.value, json.dumps(media.genres),
                media.platform, media.release_year, media.average_rating, media.rating_count,
            ))
            conn.execute("DELETE FROM media_genres WHERE media_id = ?", (media.id,))
            conn.executemany(
                "INSERT OR IGNORE INTO media_genres (media_id, genre) VALUES (?, ?)",
                [(media.id, g) for g in media.genres],
            )

    def find_media_by_id(self, media_id: int) -> Media | None:
        with get_db(read_only=True) as conn:
            row = conn.execute("SELECT * FROM media WHERE id = ?", (media_id,)).fetchone()
        return _row_to_media(row) if row else None

    def find_media_by_ids(self, media_ids: Iterable[int]) -> dict[int, Media]:
        ids = list(set(media_ids))
        if not ids:
            return {}
        with get_db(read_only=True) as conn:
            rows = conn.execute(
                f"SELECT * FROM media WHERE id IN ({_placeholders(ids)})", ids
            ).fetchall()
        return {r['id']: _row_to_media(r) for r in rows}

    def find_media_by_genre(self, genre: str) -> list[Media]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT m.* FROM media m
                JOIN media_genres mg ON mg.media_id = m.id
                WHERE mg.genre = ?
                ORDER BY m.id
            """, (genre,)).fetchall()
        return [_row_to_media(r) for r in rows]

    def find_media_by_type(self, media_type: MediaType) -> list[Media]:
        with get_db(read_only=True) as conn:
            rows = conn.execute(
                "SELECT * FROM media WHERE media_type = ? ORDER BY id", (media_type.value,)
            ).fetchall()
        return [_row_to_media(r) for r in rows]

    def find_all_media(self) -> list[Media]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("SELECT * FROM media ORDER BY id").fetchall()
        return [_row_to_media(r) for r in rows]

    def find_trending_media(self, since: datetime, limit: int) -> list[tuple[Media, int]]:
        """Media with the most interactions updated since the cutoff, best-rated first on ties."""
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT m.*, COUNT(i.user_id) AS recent_count
                FROM interactions i
                JOIN media m ON m.id = i.media_id
                WHERE i.updated_at >= ?
                GROUP BY m.id
                ORDER BY recent_count DESC, COALESCE(m.average_rating, 0) DESC, m.id
                LIMIT ?
            """, (format_timestamp(since), limit)).fetchall()
        return [(_row_to_media(r), r['recent_count']) for r in rows]

    def find_top_rated_media(self, limit: int) -> list[Media]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT * FROM media
                WHERE average_rating IS NOT NULL
                ORDER BY average_rating DESC, rating_count DESC, id
                LIMIT ?
            """, (limit,)).fetchall()
        return [_row_to_media(r) for r in rows]

    def save_interaction(self, record: InteractionRecord) -> None:
        with get_db() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO interactions
                    (user_id, media_id, status, rating, completion_percentage, watch_minutes, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.user_id, record.media_id, record.status.value, record.rating,
                record.completion_percentage, record.watch_minutes,
                format_timestamp(record.created_at), format_timestamp(record.updated_at),
            ))

    def find_interactions_by_user(self, user_id: int) -> list[InteractionRecord]:
        with get_db(read_only=True) as conn:
            rows = conn.execute(
                "SELECT * FROM interactions WHERE user_id = ? ORDER BY created_at", (user_id,)
            ).fetchall()
        return [_row_to_interaction(r) for r in rows]

    def count_interactions_by_user(self, user_id: int) -> int:
        with get_db(read_only=True) as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM interactions WHERE user_id = ?", (user_id,)
            ).fetchone()[0]

    def find_interacted_media_ids(self, user_id: int) -> set[int]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("SELECT media_id FROM interactions WHERE user_id = ?", (user_id,)).fetchall()
        return {r[0] for r in rows}

    def find_dismissed_media_ids(self, user_id: int) -> set[int]:
        with get_db(read_only=True) as conn:
            rows = conn.execute(
                "SELECT media_id FROM content_recommendations WHERE user_id = ? AND is_dismissed = 1",
                (user_id,),
            ).fetchall()
        return {r[0] for r in rows}

    def find_highly_rated_by_users(self, user_ids: list[int], min_rating: int) -> list[InteractionRecord]:
        if not user_ids:
            return []
        with get_db(read_only=True) as conn:
            rows = conn.execute(
                f"SELECT * FROM interactions WHERE rating >= ? AND user_id IN ({_placeholders(user_ids)})",
                [min_rating, *user_ids],
            ).fetchall()
        return [_row_to_interaction(r) for r in rows]

    # -- groups ---------------------------------------------------------------

    def save_group(self, group: Group) -> None:
        with get_db() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO groups (id, name, description, is_public, is_active) VALUES (?, ?, ?, ?, ?)",
                (group.id, group.name, group.description, int(group.is_public), int(group.is_active)),
            )

    def add_group_member(self, group_id: int, user_id: int, is_active: bool = True) -> None:
        with get_db() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO group_memberships (group_id, user_id, is_active) VALUES (?, ?, ?)",
                (group_id, user_id, int(is_active)),
            )

    def find_group_by_id(self, group_id: int) -> Group | None:
        with get_db(read_only=True) as conn:
            row = conn.execute("SELECT * FROM groups WHERE id = ?", (group_id,)).fetchone()
        return _row_to_group(row) if row else None

    def find_group_members(self, group_id: int) -> list[User]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT u.id, u.username FROM group_memberships gm
                JOIN users u ON u.id = gm.user_id
                WHERE gm.group_id = ? AND gm.is_active = 1
                ORDER BY u.id
            """, (group_id,)).fetchall()
        return [User(id=r['id'], username=r['username']) for r in rows]

    def find_public_groups_excluding_member(self, user_id: int) -> list[Group]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT g.* FROM groups g
                WHERE g.is_public = 1 AND g.is_active = 1
                  AND g.id NOT IN (
                      SELECT group_id FROM group_memberships WHERE user_id = ? AND is_active = 1
                  )
                ORDER BY g.id
            """, (user_id,)).fetchall()
        return [_row_to_group(r) for r in rows]

    # -- preference profiles --------------------------------------------------

    def find_profile_by_user(self, user_id: int) -> PreferenceProfile | None:
        with get_db(read_only=True) as conn:
            row = conn.execute("SELECT * FROM preference_profiles WHERE user_id = ?", (user_id,)).fetchone()
        return _row_to_profile(row) if row else None

    def create_profile_if_missing(self, user_id: int, now: datetime) -> PreferenceProfile:
        """Atomic get-or-create: concurrent first accesses converge on one row."""
        with get_db() as conn:
            conn.execute(
                "INSERT INTO preference_profiles (user_id, created_at) VALUES (?, ?) "
                "ON CONFLICT(user_id) DO NOTHING",
                (user_id, format_timestamp(now)),
            )
            row = conn.execute("SELECT * FROM preference_profiles WHERE user_id = ?", (user_id,)).fetchone()
        return _row_to_profile(row)

    def save_profile(self, profile: PreferenceProfile) -> None:
        """Full-replacement upsert of a user's profile (created_at is kept)."""
        with get_db() as conn:
            conn.execute("""
                INSERT INTO preference_profiles (
                    user_id, genre_preferences, platform_preferences, era_preferences,
                    viewing_personality, confidence_score, diversity_score,
                    total_interactions, total_completed, completion_rate,
                    average_user_rating, rating_variance, last_calculated_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    genre_preferences = excluded.genre_preferences,
                    platform_preferences = excluded.platform_preferences,
                    era_preferences = excluded.era_preferences,
                    viewing_personality = excluded.viewing_personality,
                    confidence_score = excluded.confidence_score,
                    diversity_score = excluded.diversity_score,
                    total_interactions = excluded.total_interactions,
                    total_completed = excluded.total_completed,
                    completion_rate = excluded.completion_rate,
                    average_user_rating = excluded.average_user_rating,
                    rating_variance = excluded.rating_variance,
                    last_calculated_at = excluded.last_calculated_at
            """, (
                profile.user_id,
                json.dumps(profile.genre_preferences),
                json.dumps(profile.platform_preferences),
                json.dumps(profile.era_preferences),
                profile.viewing_personality.value,
                profile.confidence_score,
                profile.diversity_score,
                profile.total_interactions,
                profile.total_completed,
                profile.completion_rate,
                profile.average_user_rating,
                profile.rating_variance,
                format_timestamp(profile.last_calculated_at),
                format_timestamp(profile.created_at or profile.last_calculated_at),
            ))

    def delete_profile(self, user_id: int) -> bool:
        with get_db() as conn:
            cursor = conn.execute("DELETE FROM preference_profiles WHERE user_id = ?", (user_id,))
        return cursor.rowcount > 0

    def find_candidate_profiles(
        self, exclude_user_id: int, min_confidence: float, min_interactions: int
    ) -> list[PreferenceProfile]:
        """Profiles trustworthy enough to act as collaborative-filtering sources."""
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT * FROM preference_profiles
                WHERE user_id != ? AND confidence_score >= ? AND total_interactions >= ?
                ORDER BY confidence_score DESC, user_id
            """, (exclude_user_id, min_confidence, min_interactions)).fetchall()
        return [_row_to_profile(r) for r in rows]

    def find_user_ids_below_confidence(self, threshold: float) -> list[int]:
        with get_db(read_only=True) as conn:
            rows = conn.execute(
                "SELECT user_id FROM preference_profiles WHERE confidence_score < ? ORDER BY user_id",
                (threshold,),
            ).fetchall()
        return [r[0] for r in rows]

    def delete_profiles_inactive_since(self, cutoff: datetime) -> int:
        """Delete profiles not recalculated since cutoff whose users have no newer interactions."""
        ts = format_timestamp(cutoff)
        with get_db() as conn:
            cursor = conn.execute("""
                DELETE FROM preference_profiles
                WHERE (last_calculated_at IS NULL OR last_calculated_at < ?)
                  AND user_id NOT IN (
                      SELECT DISTINCT user_id FROM interactions WHERE updated_at >= ?
                  )
            """, (ts, ts))
        return cursor.rowcount

    def count_profiles_by_personality(self) -> dict[str, int]:
        with get_db(read_only=True) as conn:
            rows = conn.execute(
                "SELECT viewing_personality, COUNT(*) AS n FROM preference_profiles GROUP BY viewing_personality"
            ).fetchall()
        return {r['viewing_personality']: r['n'] for r in rows}

    # -- recommendations ------------------------------------------------------

    def save_content_recommendation(self, rec: ContentRecommendation) -> ContentRecommendation:
        """
        Insert or refresh the (user, media) recommendation.

        A refresh replaces score, reason and expiry but never resets the
        viewed/dismissed/added flags.
        """
        with get_db() as conn:
            conn.execute("""
                INSERT INTO content_recommendations (
                    user_id, media_id, recommendation_type, reason_code, relevance_score,
                    explanation, source_media_id, created_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, media_id) DO UPDATE SET
                    recommendation_type = excluded.recommendation_type,
                    reason_code = excluded.reason_code,
                    relevance_score = excluded.relevance_score,
                    explanation = excluded.explanation,
                    source_media_id = excluded.source_media_id,
                    expires_at = excluded.expires_at
            """, (
                rec.user_id, rec.media_id, rec.recommendation_type.value, rec.reason_code.value,
                rec.relevance_score, rec.explanation, rec.source_media_id,
                format_timestamp(rec.created_at), format_timestamp(rec.expires_at),
            ))
            row = conn.execute(
                "SELECT * FROM content_recommendations WHERE user_id = ? AND media_id = ?",
                (rec.user_id, rec.media_id),
            ).fetchone()
        return _row_to_content_rec(row)

    def save_group_recommendation(self, rec: GroupRecommendation) -> GroupRecommendation:
        with get_db() as conn:
            conn.execute("""
                INSERT INTO group_recommendations (
                    user_id, group_id, compatibility_score, reason_code, explanation, created_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, group_id) DO UPDATE SET
                    compatibility_score = excluded.compatibility_score,
                    reason_code = excluded.reason_code,
                    explanation = excluded.explanation,
                    expires_at = excluded.expires_at
            """, (
                rec.user_id, rec.group_id, rec.compatibility_score, rec.reason_code.value,
                rec.explanation, format_timestamp(rec.created_at), format_timestamp(rec.expires_at),
            ))
            row = conn.execute(
                "SELECT * FROM group_recommendations WHERE user_id = ? AND group_id = ?",
                (rec.user_id, rec.group_id),
            ).fetchone()
        return _row_to_group_rec(row)

    def find_content_recommendation(self, rec_id: int) -> ContentRecommendation | None:
        with get_db(read_only=True) as conn:
            row = conn.execute("SELECT * FROM content_recommendations WHERE id = ?", (rec_id,)).fetchone()
        return _row_to_content_rec(row) if row else None

    def find_group_recommendation(self, rec_id: int) -> GroupRecommendation | None:
        with get_db(read_only=True) as conn:
            row = conn.execute("SELECT * FROM group_recommendations WHERE id = ?", (rec_id,)).fetchone()
        return _row_to_group_rec(row) if row else None

    def update_content_flags(
        self,
        rec_id: int,
        viewed: bool = False,
        dismissed: bool = False,
        added_to_library: bool = False,
        user_feedback: int | None = None,
    ) -> None:
        """Set flags; MAX() keeps them monotonic so a true flag is never cleared."""
        with get_db() as conn:
            conn.execute("""
                UPDATE content_recommendations SET
                    is_viewed = MAX(is_viewed, ?),
                    is_dismissed = MAX(is_dismissed, ?),
                    is_added_to_library = MAX(is_added_to_library, ?),
                    user_feedback = COALESCE(?, user_feedback)
                WHERE id = ?
            """, (int(viewed), int(dismissed), int(added_to_library), user_feedback, rec_id))

    def update_group_flags(
        self, rec_id: int, viewed: bool = False, dismissed: bool = False, joined: bool = False
    ) -> None:
        with get_db() as conn:
            conn.execute("""
                UPDATE group_recommendations SET
                    is_viewed = MAX(is_viewed, ?),
                    is_dismissed = MAX(is_dismissed, ?),
                    is_joined = MAX(is_joined, ?)
                WHERE id = ?
            """, (int(viewed), int(dismissed), int(joined), rec_id))

    def delete_expired_content_recommendations(self, user_id: int, now: datetime) -> int:
        with get_db() as conn:
            cursor = conn.execute(
                "DELETE FROM content_recommendations WHERE user_id = ? AND expires_at <= ?",
                (user_id, format_timestamp(now)),
            )
        return cursor.rowcount

    def delete_expired_group_recommendations(self, user_id: int, now: datetime) -> int:
        with get_db() as conn:
            cursor = conn.execute(
                "DELETE FROM group_recommendations WHERE user_id = ? AND expires_at <= ?",
                (user_id, format_timestamp(now)),
            )
        return cursor.rowcount

    def delete_all_expired(self, now: datetime) -> int:
        ts = format_timestamp(now)
        with get_db() as conn:
            content = conn.execute("DELETE FROM content_recommendations WHERE expires_at <= ?", (ts,)).rowcount
            groups = conn.execute("DELETE FROM group_recommendations WHERE expires_at <= ?", (ts,)).rowcount
        return content + groups

    def find_active_recommendations(
        self,
        user_id: int,
        now: datetime,
        limit: int = 20,
        offset: int = 0,
        recommendation_type: RecommendationType | None = None,
    ) -> list[ContentRecommendation]:
        """Unexpired, undismissed recommendations, best first."""
        query = """
            SELECT * FROM content_recommendations
            WHERE user_id = ? AND expires_at > ? AND is_dismissed = 0
        """
        params: list = [user_id, format_timestamp(now)]
        if recommendation_type is not None:
            query += " AND recommendation_type = ?"
            params.append(recommendation_type.value)
        query += " ORDER BY relevance_score DESC, id LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with get_db(read_only=True) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_content_rec(r) for r in rows]

    def find_active_group_recommendations(
        self, user_id: int, now: datetime, limit: int = 10, offset: int = 0
    ) -> list[GroupRecommendation]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT * FROM group_recommendations
                WHERE user_id = ? AND expires_at > ? AND is_dismissed = 0
                ORDER BY compatibility_score DESC, id
                LIMIT ? OFFSET ?
            """, (user_id, format_timestamp(now), limit, offset)).fetchall()
        return [_row_to_group_rec(r) for r in rows]

    def count_unviewed_recommendations(self, user_id: int, now: datetime) -> int:
        with get_db(read_only=True) as conn:
            return conn.execute("""
                SELECT COUNT(*) FROM content_recommendations
                WHERE user_id = ? AND expires_at > ? AND is_dismissed = 0 AND is_viewed = 0
            """, (user_id, format_timestamp(now))).fetchone()[0]

    # -- feedback & analytics reads ------------------------------------------

    def save_feedback(self, feedback: RecommendationFeedback) -> RecommendationFeedback:
        with get_db() as conn:
            cursor = conn.execute("""
                INSERT INTO recommendation_feedback (
                    user_id, target_kind, target_id, feedback_type, feedback_score,
                    feedback_text, action_taken, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                feedback.user_id, feedback.target_kind.value, feedback.target_id,
                feedback.feedback_type.value, feedback.feedback_score, feedback.feedback_text,
                feedback.action_taken, format_timestamp(feedback.created_at),
            ))
            feedback.id = cursor.lastrowid
        return feedback

    def find_feedback_by_user(self, user_id: int) -> list[RecommendationFeedback]:
        with get_db(read_only=True) as conn:
            rows = conn.execute(
                "SELECT * FROM recommendation_feedback WHERE user_id = ? ORDER BY id", (user_id,)
            ).fetchall()
        return [_row_to_feedback(r) for r in rows]

    def find_content_recommendations_between(self, start: datetime, end: datetime) -> list[ContentRecommendation]:
        with get_db(read_only=True) as conn:
            rows = conn.execute(
                "SELECT * FROM content_recommendations WHERE created_at >= ? AND created_at <= ?",
                (format_timestamp(start), format_timestamp(end)),
            ).fetchall()
        return [_row_to_content_rec(r) for r in rows]

    def find_group_recommendations_between(self, start: datetime, end: datetime) -> list[GroupRecommendation]:
        with get_db(read_only=True) as conn:
            rows = conn.execute(
                "SELECT * FROM group_recommendations WHERE created_at >= ? AND created_at <= ?",
                (format_timestamp(start), format_timestamp(end)),
            ).fetchall()
        return [_row_to_group_rec(r) for r in rows]

    def find_feedback_between(self, start: datetime, end: datetime) -> list[RecommendationFeedback]:
        with get_db(read_only=True) as conn:
            rows = conn.execute(
                "SELECT * FROM recommendation_feedback WHERE created_at >= ? AND created_at <= ?",
                (format_timestamp(start), format_timestamp(end)),
            ).fetchall()
        return [_row_to_feedback(r) for r in rows]

    def table_counts(self) -> dict[str, int]:
        tables = (
            "users", "media", "interactions", "groups", "preference_profiles",
            "content_recommendations", "group_recommendations", "recommendation_feedback",
        )
        with get_db(read_only=True) as conn:
            return {t: conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0] for t in tables}
