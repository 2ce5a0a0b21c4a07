"""Tests for upload quota accounting."""

from datetime import date

import pytest

from app.errors import QuotaExceeded
from app.services.quota import quotas


def test_check_allows_upload_within_quota(db_session, make_user):
    user = make_user(upload_quota_daily=1000, upload_quota_monthly=5000)
    quotas.check(db_session, user, 1000)


def test_check_agrees_with_user_can_upload(db_session, make_user):
    user = make_user(
        upload_quota_daily=200, upload_quota_monthly=1000, upload_used_daily=50
    )
    assert user.can_upload(150) is True
    quotas.check(db_session, user, 150)

    assert user.can_upload(151) is False
    with pytest.raises(QuotaExceeded):
        quotas.check(db_session, user, 151)


def test_check_rejects_daily_overflow(db_session, make_user):
    user = make_user(upload_quota_daily=1000, upload_quota_monthly=5000, upload_used_daily=600)
    with pytest.raises(QuotaExceeded) as exc_info:
        quotas.check(db_session, user, 500)
    quota = exc_info.value.quota
    assert quota["exceeded"] == "daily"
    assert quota["requested"] == 500
    assert quota["daily"]["remaining"] == 400


def test_check_rejects_monthly_overflow(db_session, make_user):
    user = make_user(
        upload_quota_daily=10_000, upload_quota_monthly=5000, upload_used_monthly=4900
    )
    with pytest.raises(QuotaExceeded) as exc_info:
        quotas.check(db_session, user, 200)
    assert exc_info.value.quota["exceeded"] == "monthly"
    assert exc_info.value.status_code == 413


def test_consume_increments_both_counters(db_session, make_user):
    user = make_user(upload_used_daily=10, upload_used_monthly=20)
    quotas.consume(db_session, user.id, 5)
    quotas.consume(db_session, user.id, 7)
    db_session.refresh(user)
    assert user.upload_used_daily == 22
    assert user.upload_used_monthly == 32


def test_reset_zeroes_daily_on_new_day(db_session, make_user):
    user = make_user(
        upload_used_daily=100,
        upload_used_monthly=300,
        quota_reset_date=date(2026, 3, 14),
    )
    result = quotas.reset_expired_windows(db_session, today=date(2026, 3, 15))
    db_session.refresh(user)
    assert result["daily"] >= 1
    assert user.upload_used_daily == 0
    assert user.upload_used_monthly == 300
    assert user.quota_reset_date == date(2026, 3, 15)


def test_reset_zeroes_monthly_on_new_month(db_session, make_user):
    user = make_user(
        upload_used_daily=100,
        upload_used_monthly=300,
        quota_reset_date=date(2026, 3, 31),
    )
    result = quotas.reset_expired_windows(db_session, today=date(2026, 4, 1))
    db_session.refresh(user)
    assert result["monthly"] >= 1
    assert user.upload_used_daily == 0
    assert user.upload_used_monthly == 0
    assert user.quota_reset_date == date(2026, 4, 1)


def test_reset_leaves_current_window_alone(db_session, make_user):
    user = make_user(upload_used_daily=100, quota_reset_date=date(2026, 3, 15))
    quotas.reset_expired_windows(db_session, today=date(2026, 3, 15))
    db_session.refresh(user)
    assert user.upload_used_daily == 100


def test_quota_status_percentages(make_user):
    user = make_user(
        upload_quota_daily=200,
        upload_quota_monthly=1000,
        upload_used_daily=50,
        upload_used_monthly=250,
    )
    status = user.quota_status()
    assert status["daily"]["percentage"] == 25.0
    assert status["monthly"]["remaining"] == 750
    assert user.can_upload(150) is True
    assert user.can_upload(151) is False
