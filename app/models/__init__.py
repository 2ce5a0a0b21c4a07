from app.models.audit import AuditCategory, AuditLog, AuditSeverity  # noqa: F401
from app.models.file import File, FileStatus  # noqa: F401
from app.models.file_recipient import EmailStatus, FileRecipient  # noqa: F401
from app.models.system_setting import SettingDataType, SystemSetting  # noqa: F401
from app.models.user import User  # noqa: F401
