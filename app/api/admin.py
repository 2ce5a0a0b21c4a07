"""Administrator endpoints."""

from datetime import datetime

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.orm import Session

from app.api.deps import get_db, require_admin
from app.errors import ValidationError
from app.models.user import User
from app.schemas.admin import (
    CleanupStatus,
    EraseUserDataRequest,
    RecipientExpiryUpdate,
    TestEmailRequest,
    UserRead,
    UserUpdate,
)
from app.schemas.audit import AuditLogRead
from app.schemas.common import ListResponse, MessageResponse
from app.schemas.files import FileRead, RecipientRead
from app.schemas.settings import SystemSettingRead, SystemSettingUpdate
from app.services import gdpr
from app.services.audit import audit_events
from app.services.cleanup import cleanup_job
from app.services.common import as_utc
from app.services.email import send_test_email
from app.services.file_catalog import file_catalog
from app.services.file_records import file_records
from app.services.response import list_response
from app.services.system_settings import system_settings
from app.services.users import users

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/dashboard")
def dashboard(db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return file_catalog.dashboard(db)


@router.get("/statistics")
def statistics(
    period: str = Query(default="week", pattern="^(day|week|month|year)$"),
    metric: str | None = Query(default=None, pattern="^(uploads|downloads|users|storage)$"),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    return {"period": period, "stats": file_catalog.activity(db, period, metric)}


@router.get("/files", response_model=ListResponse[FileRead])
def list_all_files(
    search: str | None = None,
    status: str | None = None,
    owner_id: str | None = None,
    include_deleted: bool = False,
    order_by: str = Query(default="upload_date"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    items, total = file_catalog.list_files(
        db,
        owner_id=owner_id,
        search=search,
        status=status,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
        include_deleted=include_deleted,
    )
    return list_response(items, limit, offset, total)


@router.delete("/files/{file_id}", response_model=MessageResponse)
def delete_any_file(
    file_id: str,
    request: Request,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    file = file_records.get_file(db, file_id)
    file_catalog.delete(db, file, admin, request)
    return MessageResponse(message="File deleted")


@router.put("/recipients/{recipient_id}/expiry", response_model=RecipientRead)
def set_recipient_expiry(
    recipient_id: str,
    payload: RecipientExpiryUpdate,
    request: Request,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    recipient = file_records.get_recipient(db, recipient_id)
    old_expiry = recipient.expiry_date
    recipient = file_records.set_recipient_expiry(db, recipient, as_utc(payload.expiry_date))
    audit_events.log_admin_action(
        db,
        "UPDATE_RECIPIENT_EXPIRY",
        admin.id,
        resource_type="file_recipient",
        resource_id=recipient.id,
        old_values={"expiry_date": old_expiry},
        new_values={"expiry_date": recipient.expiry_date},
        request=request,
    )
    return recipient


@router.get("/users", response_model=ListResponse[UserRead])
def list_users(
    search: str | None = None,
    is_active: bool | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    items, total = users.list(db, search, is_active, order_by, order_dir, limit, offset)
    return list_response(items, limit, offset, total)


@router.put("/users/{user_id}", response_model=UserRead)
def update_user(
    user_id: str,
    payload: UserUpdate,
    request: Request,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    return users.update(db, user_id, payload, admin, request)


@router.get("/users/{user_id}/export")
def export_user_data(
    user_id: str,
    request: Request,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    return {
        "message": "User data exported successfully",
        "data": gdpr.export_user_data(db, user_id, admin, request),
    }


@router.delete("/users/{user_id}/data")
def erase_user_data(
    user_id: str,
    request: Request,
    payload: EraseUserDataRequest = Body(...),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    result = gdpr.erase_user_data(db, user_id, admin, payload.confirm, request)
    return {"message": "User data deleted successfully", **result}


@router.get("/settings")
def list_settings(
    category: str | None = None,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
) -> dict[str, list[SystemSettingRead]]:
    grouped = system_settings.list_settings(db, category)
    return {
        name: [SystemSettingRead.model_validate(row) for row in rows]
        for name, rows in grouped.items()
    }


@router.put("/settings/{key}", response_model=SystemSettingRead)
def update_setting(
    key: str,
    payload: SystemSettingUpdate,
    request: Request,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    previous = system_settings.get(db, key)
    old_value = previous.value if previous else None
    setting = system_settings.set_setting(
        db,
        key,
        payload.value,
        user_id=admin.id,
        description=payload.description,
        expected_version=payload.expected_version,
        data_type=payload.data_type,
    )
    audit_events.log_admin_action(
        db,
        "UPDATE_SETTING",
        admin.id,
        resource_type="system_setting",
        resource_id=key,
        old_values={"value": old_value},
        new_values={"value": setting.value, "version": setting.version},
        request=request,
    )
    return setting


@router.post("/settings/{key}/reset", response_model=SystemSettingRead)
def reset_setting(
    key: str,
    request: Request,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    previous = system_settings.get(db, key)
    old_value = previous.value if previous else None
    setting = system_settings.reset_to_default(db, key, user_id=admin.id)
    audit_events.log_admin_action(
        db,
        "RESET_SETTING",
        admin.id,
        resource_type="system_setting",
        resource_id=key,
        old_values={"value": old_value},
        new_values={"value": setting.value, "version": setting.version},
        request=request,
    )
    return setting


@router.get("/audit-logs", response_model=ListResponse[AuditLogRead])
def list_audit_logs(
    category: str | None = None,
    severity: str | None = None,
    action: str | None = None,
    user_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    filters = {
        "category": category,
        "severity": severity,
        "action": action,
        "user_id": user_id,
        "start": start,
        "end": end,
    }
    items = audit_events.list(db, limit=limit, offset=offset, **filters)
    return list_response(items, limit, offset, audit_events.count(db, **filters))


@router.post("/cleanup")
def trigger_cleanup(
    request: Request,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    results = cleanup_job.run_manual(db, user_id=admin.id)
    audit_events.log_admin_action(
        db, "MANUAL_CLEANUP", admin.id, details=results, request=request
    )
    return {"message": "Cleanup completed", "results": results}


@router.get("/cleanup/status", response_model=CleanupStatus)
def cleanup_status(db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return cleanup_job.status(db)


@router.post("/test-email", response_model=MessageResponse)
def test_email(
    payload: TestEmailRequest,
    request: Request,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    if not send_test_email(db, str(payload.email)):
        raise ValidationError(
            "Test email could not be delivered",
            [{"field": "email", "message": "check the SMTP configuration"}],
        )
    audit_events.log_admin_action(
        db, "TEST_EMAIL", admin.id, details={"to": str(payload.email)}, request=request
    )
    return MessageResponse(message="Test email sent")
