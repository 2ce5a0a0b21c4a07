from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    username: str
    email: str
    display_name: str | None = None
    department: str | None = None
    is_admin: bool
    is_active: bool
    last_login_at: datetime | None = None
    upload_quota_daily: int
    upload_quota_monthly: int
    upload_used_daily: int
    upload_used_monthly: int
    quota_reset_date: date
    created_at: datetime


class UserUpdate(BaseModel):
    display_name: str | None = None
    department: str | None = None
    is_admin: bool | None = None
    is_active: bool | None = None
    upload_quota_daily: int | None = Field(default=None, ge=0)
    upload_quota_monthly: int | None = Field(default=None, ge=0)


class RecipientExpiryUpdate(BaseModel):
    expiry_date: datetime | None = None


class TestEmailRequest(BaseModel):
    email: EmailStr


class EraseUserDataRequest(BaseModel):
    confirm: str


class CleanupStatus(BaseModel):
    is_running: bool
    is_scheduled: bool
    interval_hours: int
    started_at: datetime | None = None
    last_run: datetime | None = None
    last_results: dict | None = None
    next_run: datetime | None = None
