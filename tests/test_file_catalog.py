"""Tests for catalog statistics."""

from datetime import UTC, datetime, timedelta

import pytest

from app.errors import ValidationError
from app.models.file import FileStatus
from app.services.file_catalog import file_catalog, format_bytes, period_start
from app.services.file_records import file_records
from tests.helpers import first_recipient


@pytest.mark.parametrize(
    "size, expected",
    [(0, "0 Bytes"), (512, "512 Bytes"), (1536, "1.5 KB"), (5 * 1024**3, "5 GB")],
)
def test_format_bytes(size, expected):
    assert format_bytes(size) == expected


def test_period_start_rejects_unknown_period():
    now = datetime(2026, 3, 15, tzinfo=UTC)
    assert period_start("day", now) == now - timedelta(days=1)
    with pytest.raises(ValidationError):
        period_start("fortnight", now)


def test_period_totals_skip_deleted_files(db_session, user, make_file):
    kept = make_file(user, content=b"a" * 100)
    gone = make_file(user, content=b"b" * 50)
    file_records.mark_deleted(db_session, gone)
    file_records.mark_downloaded(db_session, first_recipient(kept).id, "203.0.113.9", "curl/8")

    totals = file_catalog.period_totals(db_session, "week")

    assert totals == {
        "total_files": 1,
        "total_downloads": 1,
        "total_size": 100,
        "formatted_size": "100 Bytes",
    }


def test_activity_groups_by_day(db_session, user, make_file):
    make_file(user, content=b"a" * 10)
    make_file(user, content=b"b" * 20, status=FileStatus.uploading)

    stats = file_catalog.activity(db_session, "week", "uploads")

    assert list(stats) == ["uploads"]
    [today] = stats["uploads"]
    assert today["count"] == 2
    assert today["size"] == 30
    assert today["date"] == datetime.now(UTC).date().isoformat()


def test_activity_without_metric_returns_everything(db_session, user, make_file):
    make_file(user)
    stats = file_catalog.activity(db_session, "day")
    assert set(stats) == {"uploads", "downloads", "users", "storage"}
    assert stats["downloads"] == []
    assert stats["storage"]["total_files"] == 1
