import os
import uuid
from datetime import UTC, datetime, timedelta

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("AUDIT_HTTP_REQUESTS", "false")
os.environ.setdefault("CLEANUP_LOCK_BACKEND", "local")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from app.db import Base
from app.models.file import File, FileStatus
from app.models.user import User
from app.services import dispatch
from app.services.cleanup import cleanup_job
from app.services.downloads import downloads
from app.services.file_catalog import file_catalog
from app.services.file_records import file_records
from app.services.storage import LocalStorageService, generate_storage_key
from app.services.system_settings import system_settings
from app.services.thumbnails import thumbnails
from app.services.uploads import file_uploads


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, _connection_record):
            # pysqlite's own transaction handling breaks SAVEPOINT
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    session = Session(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def storage(tmp_path, monkeypatch):
    """Point every storage-backed service at a throwaway directory."""
    service = LocalStorageService(tmp_path / "uploads")
    for holder in (file_records, file_uploads, downloads, file_catalog, cleanup_job, thumbnails):
        monkeypatch.setattr(holder, "storage", service)
    return service


class DispatchRecorder:
    def __init__(self):
        self.notifications: list[str] = []
        self.download_notifications: list[str] = []
        self.thumbnails: list[str] = []
        self.fail_notifications = False

    def queue_file_notifications(self, recipient_ids):
        ids = [str(r) for r in recipient_ids]
        if self.fail_notifications:
            return {rid: "queue_failed: broker unavailable" for rid in ids}
        self.notifications.extend(ids)
        return {}

    def queue_download_notification(self, recipient_id):
        self.download_notifications.append(str(recipient_id))
        return True

    def queue_thumbnail(self, file_id):
        self.thumbnails.append(str(file_id))
        return True


@pytest.fixture()
def dispatched(monkeypatch):
    recorder = DispatchRecorder()
    monkeypatch.setattr(dispatch, "queue_file_notifications", recorder.queue_file_notifications)
    monkeypatch.setattr(
        dispatch, "queue_download_notification", recorder.queue_download_notification
    )
    monkeypatch.setattr(dispatch, "queue_thumbnail", recorder.queue_thumbnail)
    return recorder


@pytest.fixture()
def settings_defaults(db_session):
    system_settings.initialize_defaults(db_session)
    return db_session


def _make_user(db_session, **overrides) -> User:
    suffix = uuid.uuid4().hex[:8]
    values = {
        "username": f"user-{suffix}",
        "email": f"user-{suffix}@example.com",
        "display_name": f"User {suffix}",
        "upload_quota_daily": 1024 * 1024,
        "upload_quota_monthly": 10 * 1024 * 1024,
    }
    values.update(overrides)
    user = User(**values)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def user(db_session):
    return _make_user(db_session)


@pytest.fixture()
def other_user(db_session):
    return _make_user(db_session)


@pytest.fixture()
def admin_user(db_session):
    return _make_user(db_session, is_admin=True, email="admin@example.com")


@pytest.fixture()
def make_user(db_session):
    def _factory(**overrides):
        return _make_user(db_session, **overrides)

    return _factory


@pytest.fixture()
def make_file(db_session, storage):
    """Create a stored blob plus its File row, with one recipient per address."""

    def _factory(
        owner: User,
        content: bytes = b"hello world",
        filename: str = "report.pdf",
        mime_type: str = "application/pdf",
        status: FileStatus = FileStatus.ready,
        max_downloads: int = 1,
        expiry_date: datetime | None = None,
        recipients: tuple[str, ...] = ("recipient@example.com",),
    ) -> File:
        key = generate_storage_key(filename)
        storage.upload(key, content)
        file = file_records.create_file(
            db_session,
            owner_id=owner.id,
            filename=key.rsplit("/", 1)[-1],
            original_filename=filename,
            file_path=key,
            file_size=len(content),
            mime_type=mime_type,
            file_extension=filename.rsplit(".", 1)[-1],
            checksum=None,
            expiry_date=expiry_date or datetime.now(UTC) + timedelta(days=7),
            max_downloads=max_downloads,
            status=status,
        )
        for address in recipients:
            file_records.create_recipient(db_session, file, address)
        db_session.commit()
        db_session.refresh(file)
        return file

    return _factory

