import argparse
import atexit
import json
import logging
import signal
import threading
from dataclasses import dataclass
from datetime import datetime

from .analytics import AnalyticsReporter
from .cache import TTLCache
from .compatibility import CompatibilityEngine
from .config import (
    RecommendationConfig,
    INACTIVE_PROFILE_DAYS,
    LOW_CONFIDENCE_THRESHOLD,
    DAILY_GENERATION_INTERVAL,
    ACTIVE_REFRESH_INTERVAL,
)
from .database import Repository, close_pool, init_db, parse_timestamp_naive
from .errors import RecommendationError
from .models import Group, InteractionRecord, InteractionStatus, Media, MediaType, User
from .profile import PreferenceEngine
from .recommender import RecommendationEngine
from .scheduler import GenerationScheduler, run_scheduler_loop

logger = logging.getLogger(__name__)

atexit.register(close_pool)


@dataclass
class Engines:
    repository: Repository
    preferences: PreferenceEngine
    compatibility: CompatibilityEngine
    recommendations: RecommendationEngine
    scheduler: GenerationScheduler
    analytics: AnalyticsReporter


def build_engines(config: RecommendationConfig | None = None, repository: Repository | None = None) -> Engines:
    """Wire the engines around one repository, config and shared cache."""
    config = config or RecommendationConfig.from_env()
    repository = repository or Repository()
    cache = TTLCache(config.cache_ttl.total_seconds())
    preferences = PreferenceEngine(repository, config, cache)
    compatibility = CompatibilityEngine(repository, preferences, config, cache)
    recommendations = RecommendationEngine(repository, preferences, compatibility, config, cache)
    return Engines(
        repository=repository,
        preferences=preferences,
        compatibility=compatibility,
        recommendations=recommendations,
        scheduler=GenerationScheduler(repository, preferences, recommendations, config),
        analytics=AnalyticsReporter(repository),
    )


def cmd_init_db(args: argparse.Namespace) -> None:
    init_db()
    logger.info("Database initialized")


def cmd_import(args: argparse.Namespace) -> None:
    """Load users, media, interactions and groups from a JSON file."""
    with open(args.file, 'r') as f:
        data = json.load(f)

    init_db()
    repo = Repository()

    for u in data.get('users', []):
        repo.save_user(User(id=u['id'], username=u['username']))
    for m in data.get('media', []):
        repo.save_media(Media(
            id=m['id'],
            title=m['title'],
            media_type=MediaType(m.get('media_type', 'MOVIE')),
            genres=m.get('genres', []),
            platform=m.get('platform'),
            release_year=m.get('release_year'),
            average_rating=m.get('average_rating'),
            rating_count=m.get('rating_count', 0),
        ))
    for i in data.get('interactions', []):
        repo.save_interaction(InteractionRecord(
            user_id=i['user_id'],
            media_id=i['media_id'],
            status=InteractionStatus(i.get('status', 'WATCHING')),
            rating=i.get('rating'),
            completion_percentage=i.get('completion_percentage', 0.0),
            watch_minutes=i.get('watch_minutes'),
            created_at=parse_timestamp_naive(i.get('created_at')),
            updated_at=parse_timestamp_naive(i.get('updated_at') or i.get('created_at')),
        ))
    for g in data.get('groups', []):
        repo.save_group(Group(
            id=g['id'],
            name=g['name'],
            description=g.get('description', ''),
            is_public=g.get('is_public', True),
            is_active=g.get('is_active', True),
        ))
        for member_id in g.get('members', []):
            repo.add_group_member(g['id'], member_id)

    counts = {k: len(data.get(k, [])) for k in ('users', 'media', 'interactions', 'groups')}
    logger.info(f"Imported {counts}")


def cmd_profile(args: argparse.Namespace) -> None:
    engines = build_engines()
    if args.refresh:
        engines.preferences.update_preferences(args.user_id)
    profile = engines.preferences.get_current_profile(args.user_id)

    logger.info(f"\nProfile for user {args.user_id}:")
    logger.info(f"  Personality: {profile.viewing_personality.value}")
    logger.info(f"  Confidence: {profile.confidence_score:.2f}  Diversity: {profile.diversity_score:.2f}")
    logger.info(f"  Interactions: {profile.total_interactions} ({profile.completion_rate:.0%} completed)")
    if profile.average_user_rating is not None:
        logger.info(f"  Average rating: {profile.average_user_rating:.1f} (std {profile.rating_variance:.2f})")
    for label, prefs in (("Genres", profile.genre_preferences),
                         ("Platforms", profile.platform_preferences),
                         ("Eras", profile.era_preferences)):
        top = sorted(prefs.items(), key=lambda x: -x[1])[:5]
        if top:
            logger.info(f"  {label}: " + ", ".join(f"{k} ({v:.2f})" for k, v in top))

    for suggestion in engines.preferences.get_improvement_suggestions(args.user_id):
        logger.info(f"  - {suggestion}")


def cmd_similar_users(args: argparse.Namespace) -> None:
    engines = build_engines()
    matches = engines.compatibility.find_similar_users(args.user_id, args.limit)
    if not matches:
        logger.info("No sufficiently similar users found")
        return
    logger.info(f"\nUsers similar to {args.user_id}:")
    for match in matches:
        logger.info(f"  {match.username} (#{match.user_id}): {match.score:.3f}")


def cmd_recommend(args: argparse.Namespace) -> None:
    engines = build_engines()
    recs = engines.recommendations.get_real_time_recommendations(args.user_id, args.context, args.limit)
    media = engines.repository.find_media_by_ids(r.media_id for r in recs)

    if args.format == 'json':
        print(json.dumps([
            {
                'media_id': r.media_id,
                'title': media[r.media_id].title if r.media_id in media else None,
                'type': r.recommendation_type.value,
                'reason': r.reason_code.value,
                'relevance': round(r.relevance_score, 4),
                'explanation': r.explanation,
            }
            for r in recs
        ], indent=2))
        return

    if not recs:
        logger.info("No recommendations available")
        return
    logger.info(f"\nRecommendations for user {args.user_id}:")
    for i, r in enumerate(recs, 1):
        title = media[r.media_id].title if r.media_id in media else f"#{r.media_id}"
        logger.info(f"{i:2}. {title} [{r.recommendation_type.value}] {r.relevance_score:.2f} - {r.explanation}")


def cmd_generate(args: argparse.Namespace) -> None:
    init_db()
    engines = build_engines()
    if args.user_id is not None:
        count = engines.scheduler.generate_for_user(args.user_id)
        logger.info(f"Saved {count} recommendations for user {args.user_id}")
        return
    summary = engines.scheduler.generate_for_all_users(max_workers=args.workers)
    logger.info(summary.to_message())


def cmd_refresh_active(args: argparse.Namespace) -> None:
    engines = build_engines()
    refreshed = engines.scheduler.refresh_for_active_users(args.hours, max_workers=args.workers)
    logger.info(f"Refreshed {refreshed} active users")


def cmd_analytics(args: argparse.Namespace) -> None:
    engines = build_engines()
    report = engines.analytics.get_recommendation_analytics(args.days)

    logger.info(f"\nRecommendation analytics (last {args.days} days): {report.system_health_status}")
    logger.info(f"  Generated: {report.content_generated} content, {report.groups_generated} groups")
    logger.info(f"  Engagement: {report.engagement_rate:.1%}  Conversion: {report.conversion_rate:.1%}")
    if report.average_feedback_score is not None:
        logger.info(f"  Average feedback: {report.average_feedback_score:.2f} "
                    f"(+{report.positive_feedback} / -{report.negative_feedback})")
    logger.info("  By type:")
    for name, seg in sorted(report.by_type.items()):
        logger.info(f"    {name}: {seg.generated} generated, {seg.engagement_rate:.1%} viewed, "
                    f"{seg.conversion_rate:.1%} converted")
    logger.info("  By reason:")
    for seg in report.by_reason:
        logger.info(f"    {seg.name}: {seg.generated} generated, {seg.conversion_rate:.1%} converted")
    for insight in report.key_insights:
        logger.info(f"  * {insight}")

    distribution = engines.analytics.get_personality_distribution()
    logger.info("  Personalities: " + ", ".join(f"{k}={v}" for k, v in distribution.items()))


def cmd_cleanup(args: argparse.Namespace) -> None:
    engines = build_engines()
    removed = engines.repository.delete_all_expired(datetime.now())
    logger.info(f"Removed {removed} expired recommendations")
    if args.profiles:
        engines.preferences.recalculate_low_confidence_profiles(args.low_confidence)
        engines.preferences.cleanup_inactive_profiles(args.inactive_days)


def cmd_stats(args: argparse.Namespace) -> None:
    """Show database statistics."""
    counts = Repository().table_counts()
    logger.info("\nDatabase Statistics:")
    for table, count in counts.items():
        logger.info(f"  {table}: {count}")


def cmd_daemon(args: argparse.Namespace) -> None:
    """Run the daily generation and active-user refresh triggers until interrupted."""
    init_db()
    engines = build_engines()
    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("Shutdown requested, finishing current user...")
        engines.scheduler.request_stop()
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    run_scheduler_loop(
        engines.scheduler,
        stop_event,
        daily_interval=args.daily_interval,
        active_interval=args.active_interval,
        run_immediately=args.run_now,
    )


def main():
    parser = argparse.ArgumentParser(description="ShowSync recommendation engine")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    import_parser = subparsers.add_parser("import", help="Import users, media, interactions and groups from JSON")
    import_parser.add_argument("file", help="JSON file to import")
    import_parser.set_defaults(func=cmd_import)

    profile_parser = subparsers.add_parser("profile", help="Show a user's preference profile")
    profile_parser.add_argument("user_id", type=int)
    profile_parser.add_argument("--refresh", action="store_true", help="Recompute before showing")
    profile_parser.set_defaults(func=cmd_profile)

    similar_parser = subparsers.add_parser("similar-users", help="Find users with compatible taste")
    similar_parser.add_argument("user_id", type=int)
    similar_parser.add_argument("--limit", type=int, default=10)
    similar_parser.set_defaults(func=cmd_similar_users)

    rec_parser = subparsers.add_parser("recommend", help="Real-time recommendations for a user")
    rec_parser.add_argument("user_id", type=int)
    rec_parser.add_argument("--context", type=int, help="Media id the user is currently looking at")
    rec_parser.add_argument("--limit", type=int, default=10)
    rec_parser.add_argument("--format", choices=["text", "json"], default="text")
    rec_parser.set_defaults(func=cmd_recommend)

    gen_parser = subparsers.add_parser("generate", help="Generate and store recommendations")
    gen_parser.add_argument("--user-id", type=int, help="Only this user")
    gen_parser.add_argument("--workers", type=int, help="Parallel users (default from SHOWSYNC_BATCH_WORKERS)")
    gen_parser.set_defaults(func=cmd_generate)

    refresh_parser = subparsers.add_parser("refresh-active", help="Regenerate for recently active users")
    refresh_parser.add_argument("--hours", type=int, help="Activity window in hours")
    refresh_parser.add_argument("--workers", type=int)
    refresh_parser.set_defaults(func=cmd_refresh_active)

    analytics_parser = subparsers.add_parser("analytics", help="Engagement and conversion report")
    analytics_parser.add_argument("--days", type=int, default=30)
    analytics_parser.set_defaults(func=cmd_analytics)

    cleanup_parser = subparsers.add_parser("cleanup", help="Remove expired recommendations")
    cleanup_parser.add_argument("--profiles", action="store_true",
                                help="Also refresh low-confidence and remove inactive profiles")
    cleanup_parser.add_argument("--low-confidence", type=float, default=LOW_CONFIDENCE_THRESHOLD)
    cleanup_parser.add_argument("--inactive-days", type=int, default=INACTIVE_PROFILE_DAYS)
    cleanup_parser.set_defaults(func=cmd_cleanup)

    stats_parser = subparsers.add_parser("stats", help="Show database statistics")
    stats_parser.set_defaults(func=cmd_stats)

    daemon_parser = subparsers.add_parser("daemon", help="Run scheduled generation until interrupted")
    daemon_parser.add_argument("--daily-interval", type=float, default=DAILY_GENERATION_INTERVAL,
                               help="Seconds between full generation runs")
    daemon_parser.add_argument("--active-interval", type=float, default=ACTIVE_REFRESH_INTERVAL,
                               help="Seconds between active-user refreshes")
    daemon_parser.add_argument("--run-now", action="store_true", help="Trigger both runs at startup")
    daemon_parser.set_defaults(func=cmd_daemon)

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args.func(args)
    except RecommendationError as e:
        logger.error(f"{e.code}: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
