"""Mutual exclusion for singleton background jobs.

The local backend serialises runs inside one process. The Redis backend is
shared by the web app and the Celery workers, and is the default whenever
Celery beat schedules the cleanup job.
"""

from __future__ import annotations

import enum
import logging
import threading
from datetime import UTC, datetime

import redis

from app.config import settings

logger = logging.getLogger(__name__)


class JobState(enum.Enum):
    idle = "idle"
    running = "running"


class LocalJobLock:
    def __init__(self) -> None:
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        if self._lock.locked():
            self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()


class RedisJobLock:
    def __init__(self, name: str, ttl_seconds: int, client: redis.Redis | None = None) -> None:
        self.name = f"job-lock:{name}"
        self.ttl_seconds = ttl_seconds
        self._client = client
        self._lock = None

    def _redis(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(settings.redis_url)
        return self._client

    def acquire(self) -> bool:
        lock = self._redis().lock(self.name, timeout=self.ttl_seconds, blocking=False)
        if not lock.acquire(blocking=False):
            return False
        self._lock = lock
        return True

    def release(self) -> None:
        if self._lock is None:
            return
        try:
            self._lock.release()
        except redis.exceptions.LockError as exc:
            logger.warning("job_lock_release_failed name=%s error=%s", self.name, exc)
        finally:
            self._lock = None

    def locked(self) -> bool:
        try:
            return bool(self._redis().exists(self.name))
        except redis.RedisError as exc:
            logger.warning("job_lock_status_failed name=%s error=%s", self.name, exc)
            return False


def resolve_lock_backend(config=None) -> str:
    """Pick the lock backend, defaulting to Redis whenever Celery beat runs cleanup.

    Scheduled runs execute in a Celery worker and manual runs in the web
    process; both must see the same lock. Eager mode or a disabled schedule
    keeps every run in one process.
    """
    config = config or settings
    if config.cleanup_lock_backend:
        backend = config.cleanup_lock_backend
        if backend == "local" and scheduled_in_worker(config):
            logger.warning(
                "job_lock_local_with_worker_schedule backend=local interval_hours=%s",
                config.cleanup_interval_hours,
            )
        return backend
    return "redis" if scheduled_in_worker(config) else "local"


def scheduled_in_worker(config) -> bool:
    return config.cleanup_interval_hours > 0 and not config.celery_task_always_eager


def build_lock(name: str, config=None):
    config = config or settings
    if resolve_lock_backend(config) == "redis":
        return RedisJobLock(name, config.cleanup_lock_ttl_seconds)
    return LocalJobLock()


class JobCoordinator:
    """Tracks whether a named job is running and guards entry to it."""

    def __init__(self, name: str, lock=None) -> None:
        self.name = name
        self.lock = lock if lock is not None else build_lock(name)
        self.state = JobState.idle
        self.started_at: datetime | None = None

    def try_start(self) -> bool:
        if not self.lock.acquire():
            return False
        self.state = JobState.running
        self.started_at = datetime.now(UTC)
        return True

    def finish(self) -> None:
        self.state = JobState.idle
        self.started_at = None
        self.lock.release()

    @property
    def is_running(self) -> bool:
        return self.state == JobState.running or self.lock.locked()
