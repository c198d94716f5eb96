"""
Batch regeneration of recommendations across the user base.

Each user is an isolated unit of work: a failure is logged and counted by
exception type, and the batch moves on. A full batch for one cohort never
runs twice at the same time, and can be stopped between users.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from tqdm import tqdm

from .config import (
    RecommendationConfig,
    NOTIFICATION_WEBHOOK_URL,
    NOTIFICATION_TIMEOUT,
    DEFAULT_BATCH_WORKERS,
    DAILY_GENERATION_INTERVAL,
    ACTIVE_REFRESH_INTERVAL,
)
from .errors import RecommendationError, TransientComputeError
from .utils import retry_with_backoff

logger = logging.getLogger(__name__)

_SKIPPED = object()


@retry_with_backoff(max_retries=3, initial_delay=1.0, backoff_factor=2.0)
def _post_webhook(url: str, message: str) -> None:
    import httpx

    response = httpx.post(url, json={"content": message}, timeout=NOTIFICATION_TIMEOUT)
    response.raise_for_status()


def send_notification(message: str) -> None:
    """Send a notification to a configured webhook (Discord/Slack-style)."""
    if not NOTIFICATION_WEBHOOK_URL:
        return
    try:
        _post_webhook(NOTIFICATION_WEBHOOK_URL, message)
    except Exception as exc:  # pragma: no cover - best-effort notifications
        logger.warning(f"Failed to send notification: {exc}")


@dataclass
class GenerationSummary:
    """Outcome of one batch run."""

    cohort: str = "all"
    total_users: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    total_recommendations: int = 0
    error_counts: dict[str, int] = field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    processing_time: float = 0.0
    cancelled: bool = False

    @property
    def success_rate(self) -> float:
        processed = self.successful + self.failed
        return self.successful / processed if processed else 0.0

    def to_message(self) -> str:
        status = "cancelled" if self.cancelled else "complete"
        msg = (
            f"Recommendation generation ({self.cohort}) {status}: "
            f"{self.successful}/{self.total_users} users, {self.failed} failed, "
            f"{self.total_recommendations} recommendations in {self.processing_time:.1f}s"
        )
        if self.error_counts:
            errors = ", ".join(f"{name}={n}" for name, n in sorted(self.error_counts.items()))
            msg += f" (errors: {errors})"
        return msg


class GenerationScheduler:
    def __init__(
        self,
        repository,
        preference_engine,
        recommendation_engine,
        config: RecommendationConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
        notify: Callable[[str], None] | None = send_notification,
        show_progress: bool = True,
    ):
        self.repository = repository
        self.preferences = preference_engine
        self.recommendations = recommendation_engine
        self.config = config or RecommendationConfig()
        self._clock = clock
        self._notify = notify
        self._show_progress = show_progress
        self._stop_event = threading.Event()
        self._cohort_locks = {"all": threading.Lock(), "active": threading.Lock()}

    def request_stop(self) -> None:
        """Ask a running batch to stop before its next user."""
        self._stop_event.set()

    def _generate_unit(self, user_id: int) -> int:
        """One user's full regeneration. Raises on failure."""
        now = self._clock()
        self.recommendations.cleanup_expired(user_id)

        profile = self.preferences.get_or_create_profile(user_id)
        if profile.is_stale(now, self.config.preference_refresh_interval):
            self.preferences.update_preferences(user_id)

        saved = len(self.recommendations.generate_content_recommendations(user_id))
        saved += len(self.recommendations.generate_group_recommendations(user_id))
        return saved

    def generate_for_user(self, user_id: int) -> int:
        """Regenerate one user's recommendations; never raises, returns 0 on failure."""
        try:
            return self._generate_unit(user_id)
        except Exception:
            logger.exception(f"Recommendation generation failed for user {user_id}")
            return 0

    def _guarded_unit(self, user_id: int):
        if self._stop_event.is_set():
            return _SKIPPED
        try:
            return self._generate_unit(user_id)
        except RecommendationError:
            raise
        except Exception as e:
            raise TransientComputeError(f"Generation failed for user {user_id}: {e}") from e

    def _run_batch(self, cohort: str, user_ids: list[int], max_workers: int | None) -> GenerationSummary:
        lock = self._cohort_locks[cohort]
        if not lock.acquire(blocking=False):
            raise RuntimeError(f"A '{cohort}' generation batch is already running")

        summary = GenerationSummary(cohort=cohort, total_users=len(user_ids))
        errors: Counter = Counter()
        start = time.perf_counter()

        def record(user_id: int, run: Callable[[], object]) -> None:
            try:
                outcome = run()
            except Exception as e:
                summary.failed += 1
                cause = e.__cause__ if isinstance(e, TransientComputeError) and e.__cause__ else e
                errors[type(cause).__name__] += 1
                logger.exception(f"Recommendation generation failed for user {user_id}")
                return
            if outcome is _SKIPPED:
                summary.skipped += 1
                return
            summary.successful += 1
            summary.total_recommendations += outcome

        try:
            self._stop_event.clear()
            summary.started_at = self._clock()
            workers = max_workers or DEFAULT_BATCH_WORKERS
            progress = tqdm(total=len(user_ids), desc=f"Generating ({cohort})", disable=not self._show_progress)
            with progress:
                if workers <= 1:
                    for user_id in user_ids:
                        record(user_id, lambda uid=user_id: self._guarded_unit(uid))
                        progress.update(1)
                else:
                    with ThreadPoolExecutor(max_workers=workers) as ex:
                        futures = [(uid, ex.submit(self._guarded_unit, uid)) for uid in user_ids]
                        for user_id, future in futures:
                            record(user_id, future.result)
                            progress.update(1)
        finally:
            lock.release()

        summary.cancelled = summary.skipped > 0
        summary.error_counts = dict(errors)
        summary.completed_at = self._clock()
        summary.processing_time = time.perf_counter() - start
        logger.info(summary.to_message())
        return summary

    def generate_for_all_users(self, max_workers: int | None = None) -> GenerationSummary:
        """Regenerate for every user with enough history, isolating per-user failures."""
        user_ids = self.repository.find_user_ids_with_min_interactions(
            self.config.min_interactions_for_recommendations
        )
        logger.info(f"Starting recommendation generation for {len(user_ids)} users")
        summary = self._run_batch("all", user_ids, max_workers)
        if self._notify:
            self._notify(summary.to_message())
        return summary

    def refresh_for_active_users(self, hours_back: int | None = None, max_workers: int | None = None) -> int:
        """Regenerate for users with an interaction updated in the last hours_back hours."""
        if hours_back is None:
            hours_back = self.config.active_users_hours_back
        cutoff = self._clock() - timedelta(hours=hours_back)
        user_ids = self.repository.find_user_ids_active_since(cutoff)
        logger.info(f"Refreshing recommendations for {len(user_ids)} users active in the last {hours_back}h")
        return self._run_batch("active", user_ids, max_workers).successful

    def run_daily_generation(self) -> GenerationSummary | None:
        if not self.config.enable_schedulers:
            logger.debug("Schedulers disabled, skipping daily generation")
            return None
        return self.generate_for_all_users()

    def run_active_refresh(self) -> int | None:
        if not self.config.enable_schedulers:
            logger.debug("Schedulers disabled, skipping active user refresh")
            return None
        return self.refresh_for_active_users(self.config.active_users_hours_back)


def run_scheduler_loop(
    scheduler: GenerationScheduler,
    stop_event: threading.Event,
    daily_interval: float = DAILY_GENERATION_INTERVAL,
    active_interval: float = ACTIVE_REFRESH_INTERVAL,
    poll_seconds: float = 1.0,
    run_immediately: bool = False,
    monotonic: Callable[[], float] = time.monotonic,
) -> int:
    """
    Drive the two periodic triggers until stop_event is set.

    Returns the number of trigger runs performed.
    """
    start = monotonic()
    next_daily = start if run_immediately else start + daily_interval
    next_active = start if run_immediately else start + active_interval
    runs = 0

    while not stop_event.is_set():
        now = monotonic()
        if now >= next_daily:
            try:
                scheduler.run_daily_generation()
            except RuntimeError as e:
                logger.warning(f"Daily generation skipped: {e}")
            next_daily = now + daily_interval
            runs += 1
        elif now >= next_active:
            try:
                scheduler.run_active_refresh()
            except RuntimeError as e:
                logger.warning(f"Active refresh skipped: {e}")
            next_active = now + active_interval
            runs += 1
        stop_event.wait(poll_seconds)

    logger.info(f"Scheduler loop stopped after {runs} runs")
    return runs
