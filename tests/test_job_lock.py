import pytest

from app.config import settings
from app.services import job_lock
from app.services.job_lock import (
    JobCoordinator,
    JobState,
    LocalJobLock,
    RedisJobLock,
    build_lock,
    resolve_lock_backend,
)
from tests.mocks import FakeRedis


def test_local_lock_is_exclusive():
    lock = LocalJobLock()
    assert lock.acquire() is True
    assert lock.acquire() is False
    assert lock.locked() is True
    lock.release()
    assert lock.locked() is False
    assert lock.acquire() is True


def test_local_release_when_not_held_is_harmless():
    lock = LocalJobLock()
    lock.release()
    assert lock.acquire() is True


def test_redis_lock_shared_between_instances():
    client = FakeRedis()
    first = RedisJobLock("cleanup", 60, client=client)
    second = RedisJobLock("cleanup", 60, client=client)

    assert first.acquire() is True
    assert second.acquire() is False
    assert second.locked() is True

    first.release()
    assert second.locked() is False
    assert second.acquire() is True


def test_redis_release_without_acquire_is_noop():
    client = FakeRedis()
    lock = RedisJobLock("cleanup", 60, client=client)
    lock.release()
    assert client.store == {}


def test_coordinator_tracks_state():
    coordinator = JobCoordinator("cleanup", LocalJobLock())
    assert coordinator.is_running is False

    assert coordinator.try_start() is True
    assert coordinator.state == JobState.running
    assert coordinator.started_at is not None
    assert coordinator.try_start() is False

    coordinator.finish()
    assert coordinator.state == JobState.idle
    assert coordinator.started_at is None
    assert coordinator.is_running is False


def test_coordinator_sees_lock_held_elsewhere():
    client = FakeRedis()
    web = JobCoordinator("cleanup", RedisJobLock("cleanup", 60, client=client))
    worker = JobCoordinator("cleanup", RedisJobLock("cleanup", 60, client=client))

    assert worker.try_start() is True
    assert web.is_running is True
    assert web.try_start() is False

    worker.finish()
    assert web.is_running is False


def _config(**overrides):
    values = {
        "cleanup_lock_backend": "",
        "cleanup_interval_hours": 24,
        "celery_task_always_eager": False,
    }
    values.update(overrides)
    return settings.model_copy(update=values)


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({}, "redis"),
        ({"celery_task_always_eager": True}, "local"),
        ({"cleanup_interval_hours": 0}, "local"),
        ({"cleanup_lock_backend": "local"}, "local"),
        ({"cleanup_lock_backend": "redis", "cleanup_interval_hours": 0}, "redis"),
    ],
)
def test_resolve_lock_backend(overrides, expected):
    assert resolve_lock_backend(_config(**overrides)) == expected


def test_default_config_excludes_runs_across_processes(monkeypatch):
    shared = FakeRedis()
    monkeypatch.setattr(job_lock.redis.Redis, "from_url", lambda url: shared)
    production = _config()

    web = JobCoordinator("cleanup", build_lock("cleanup", production))
    worker = JobCoordinator("cleanup", build_lock("cleanup", production))

    assert isinstance(web.lock, RedisJobLock)
    assert web.try_start() is True
    assert worker.try_start() is False
    assert worker.is_running is True

    web.finish()
    assert worker.try_start() is True
