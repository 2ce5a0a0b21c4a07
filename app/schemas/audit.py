from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.models.audit import AuditCategory, AuditSeverity


class AuditLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID | None = None
    action: str
    category: AuditCategory
    severity: AuditSeverity
    resource_type: str | None = None
    resource_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    request_method: str | None = None
    request_url: str | None = None
    status_code: int | None = None
    duration_ms: int | None = None
    details: dict | None = None
    old_values: dict | None = None
    new_values: dict | None = None
    error_message: str | None = None
    created_at: datetime
