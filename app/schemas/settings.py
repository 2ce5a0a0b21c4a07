from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.models.system_setting import SettingDataType


class SystemSettingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key_name: str
    value: Any = None
    description: str | None = None
    category: str
    data_type: SettingDataType
    is_public: bool
    is_readonly: bool
    default_value: Any = None
    updated_by: UUID | None = None
    version: int
    updated_at: datetime | None = None


class SystemSettingUpdate(BaseModel):
    value: Any
    description: str | None = None
    data_type: SettingDataType | None = None
    expected_version: int | None = None
