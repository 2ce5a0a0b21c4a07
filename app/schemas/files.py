from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.models.file import FileStatus
from app.models.file_recipient import EmailStatus


class RecipientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    email_status: EmailStatus
    email_sent_at: datetime | None = None
    email_opened_at: datetime | None = None
    email_failure_reason: str | None = None
    downloaded_at: datetime | None = None
    expiry_date: datetime | None = None
    is_active: bool
    access_count: int


class RecipientLink(BaseModel):
    id: UUID
    email: str
    download_url: str
    email_status: EmailStatus


class FileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    original_filename: str
    file_size: int
    formatted_size: str
    mime_type: str
    checksum: str | None = None
    status: FileStatus
    upload_date: datetime
    expiry_date: datetime
    download_count: int
    max_downloads: int
    description: str | None = None
    tags: list | None = None
    has_preview: bool
    thumbnail_path: str | None = None
    uploaded_by: UUID


class DownloadStats(BaseModel):
    total_recipients: int
    downloaded: int
    pending: int
    emails_sent: int
    emails_failed: int
    emails_opened: int


class FileDetail(FileRead):
    metadata_: dict | None = Field(default=None, serialization_alias="metadata")
    recipients: list[RecipientRead] = []
    stats: DownloadStats | None = None


class UploadResponse(BaseModel):
    id: UUID
    original_filename: str
    file_size: int
    formatted_size: str
    checksum: str
    expiry_date: datetime
    max_downloads: int
    recipients: list[RecipientLink]
    notification_failures: dict[str, str] = {}


class BatchUploadResponse(BaseModel):
    files: list[UploadResponse]
    total_size: int


class ResendRequest(BaseModel):
    emails: list[EmailStr] | None = None


class ResendResponse(BaseModel):
    message: str
    recipients: list[str]


class ChunkUploadResponse(BaseModel):
    file_id: UUID
    chunk_number: int
    total_chunks: int
    status: FileStatus
    upload_progress: int
    completed: bool
    upload: UploadResponse | None = None
