"""Typed, versioned runtime settings stored in ``system_settings``."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import NotFound, SettingVersionConflict, ValidationError
from app.models.system_setting import SettingDataType, SystemSetting
from app.services.common import coerce_uuid

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _is_string(value) -> bool:
    return isinstance(value, str)


def _is_number(value) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            float(value.strip())
        except ValueError:
            return False
        return True
    return False


def _is_boolean(value) -> bool:
    if isinstance(value, bool):
        return True
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_VALUES | _FALSE_VALUES
    return False


def _is_array(value) -> bool:
    return isinstance(value, (list, tuple))


def _is_json(value) -> bool:
    return isinstance(value, (dict, list))


def _to_string(value) -> str:
    return value if isinstance(value, str) else str(value)


def _to_number(value) -> int | float:
    if isinstance(value, str):
        value = float(value.strip())
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _to_boolean(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_VALUES
    return bool(value)


def _to_array(value) -> list:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return list(value)


def _to_json(value):
    return value


@dataclass(frozen=True)
class SettingType:
    validate: Callable[[object], bool]
    coerce: Callable[[object], object]


SETTING_TYPES: dict[SettingDataType, SettingType] = {
    SettingDataType.string: SettingType(_is_string, _to_string),
    SettingDataType.number: SettingType(_is_number, _to_number),
    SettingDataType.boolean: SettingType(_is_boolean, _to_boolean),
    SettingDataType.array: SettingType(_is_array, _to_array),
    SettingDataType.json: SettingType(_is_json, _to_json),
}


def validate_value(data_type: SettingDataType, value) -> bool:
    return SETTING_TYPES[data_type].validate(value)


def coerce_value(data_type: SettingDataType, value):
    return SETTING_TYPES[data_type].coerce(value)


@dataclass(frozen=True)
class SettingDefault:
    key: str
    value: object
    data_type: SettingDataType
    category: str
    description: str
    is_public: bool = False
    is_readonly: bool = False
    minimum: float | None = None
    maximum: float | None = None


GiB = 1024 * 1024 * 1024

DEFAULT_SETTINGS: tuple[SettingDefault, ...] = (
    SettingDefault(
        "MAX_FILE_SIZE", 5 * GiB, SettingDataType.number, "files",
        "Maximum size of a single upload in bytes", is_public=True, minimum=1,
    ),
    SettingDefault(
        "ALLOWED_EXTENSIONS",
        ["pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "txt",
         "zip", "rar", "jpg", "jpeg", "png", "gif"],
        SettingDataType.array, "files",
        "File extensions accepted for upload", is_public=True,
    ),
    SettingDefault(
        "DEFAULT_FILE_RETENTION_DAYS", 14, SettingDataType.number, "files",
        "Retention applied when an upload does not choose one",
        is_public=True, minimum=1, maximum=365,
    ),
    SettingDefault(
        "MAX_DOWNLOADS_PER_FILE", 1, SettingDataType.number, "files",
        "Default download limit per file", is_public=True, minimum=1, maximum=100,
    ),
    SettingDefault(
        "EMAIL_RETENTION_DAYS", 30, SettingDataType.number, "cleanup",
        "Days a redeemed recipient row is kept", minimum=1,
    ),
    SettingDefault(
        "AUDIT_LOG_RETENTION_DAYS", 365, SettingDataType.number, "cleanup",
        "Days non-critical audit entries are kept; high and critical are kept twice as long",
        minimum=1,
    ),
    SettingDefault(
        "CLEANUP_INTERVAL_HOURS", 24, SettingDataType.number, "cleanup",
        "Hours between scheduled cleanup runs", is_readonly=True, minimum=1,
    ),
    SettingDefault(
        "CLEANUP_NOTIFY_FILE_THRESHOLD", 10, SettingDataType.number, "cleanup",
        "Expired-file count above which the cleanup report is mailed", minimum=0,
    ),
    SettingDefault(
        "STORAGE_WARNING_THRESHOLD", 90, SettingDataType.number, "storage",
        "Storage usage percentage that raises a warning", minimum=0, maximum=100,
    ),
    SettingDefault(
        "STORAGE_CRITICAL_THRESHOLD", 95, SettingDataType.number, "storage",
        "Storage usage percentage that raises a critical alert", minimum=0, maximum=100,
    ),
    SettingDefault(
        "STORAGE_ALERT_SUPPRESSION_HOURS", 0, SettingDataType.number, "storage",
        "Hours to suppress a repeated storage alert at the same level; 0 alerts every run",
        minimum=0,
    ),
    SettingDefault(
        "ADMIN_NOTIFICATION_EMAILS", [], SettingDataType.array, "notifications",
        "Addresses that receive operator reports; empty means all active admins",
    ),
    SettingDefault(
        "SEND_DOWNLOAD_NOTIFICATIONS", True, SettingDataType.boolean, "notifications",
        "Notify uploaders when a recipient downloads their file",
    ),
    SettingDefault(
        "SYSTEM_NAME", "Secure File Transfer", SettingDataType.string, "general",
        "Name shown in e-mails and the UI", is_public=True,
    ),
    SettingDefault(
        "MAINTENANCE_MODE", False, SettingDataType.boolean, "general",
        "Reject new uploads while true", is_public=True,
    ),
    SettingDefault(
        "GDPR_COMPLIANCE_MODE", True, SettingDataType.boolean, "privacy",
        "Enable data export and erasure endpoints",
    ),
)

DEFAULTS_BY_KEY = {item.key: item for item in DEFAULT_SETTINGS}


def _infer_data_type(value) -> SettingDataType:
    if isinstance(value, bool):
        return SettingDataType.boolean
    if isinstance(value, (int, float)):
        return SettingDataType.number
    if isinstance(value, (list, tuple)):
        return SettingDataType.array
    if isinstance(value, dict):
        return SettingDataType.json
    return SettingDataType.string


def _check_rules(key: str, value) -> None:
    rule = DEFAULTS_BY_KEY.get(key)
    if rule is None or not isinstance(value, (int, float)) or isinstance(value, bool):
        return
    if rule.minimum is not None and value < rule.minimum:
        raise ValidationError(
            f"{key} must be at least {rule.minimum:g}",
            [{"field": key, "message": f"minimum is {rule.minimum:g}"}],
        )
    if rule.maximum is not None and value > rule.maximum:
        raise ValidationError(
            f"{key} must be at most {rule.maximum:g}",
            [{"field": key, "message": f"maximum is {rule.maximum:g}"}],
        )


class SystemSettings:
    def get(self, db: Session, key: str) -> SystemSetting | None:
        return db.get(SystemSetting, key)

    def get_setting(self, db: Session, key: str, default=None):
        setting = db.get(SystemSetting, key)
        if setting is None or setting.value is None:
            return default
        try:
            return coerce_value(setting.data_type, setting.value)
        except (TypeError, ValueError):
            logger.warning(
                "setting_coerce_failed key=%s data_type=%s", key, setting.data_type.value
            )
            return default

    def get_number(self, db: Session, key: str, default: int | float) -> int | float:
        value = self.get_setting(db, key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return default
        return value

    def get_list(self, db: Session, key: str, default: list | None = None) -> list:
        value = self.get_setting(db, key, default)
        if not isinstance(value, list):
            return list(default or [])
        return value

    def get_bool(self, db: Session, key: str, default: bool) -> bool:
        value = self.get_setting(db, key, default)
        return value if isinstance(value, bool) else default

    def set_setting(
        self,
        db: Session,
        key: str,
        value,
        user_id=None,
        description: str | None = None,
        expected_version: int | None = None,
        data_type: SettingDataType | None = None,
    ) -> SystemSetting:
        """Write a value with a compare-and-swap on ``version``.

        ``expected_version`` is the version the caller read; when omitted the
        version read here is used. A concurrent writer that advanced the row
        in between makes this raise ``SettingVersionConflict``.
        """
        existing = db.get(SystemSetting, key)
        if existing is None:
            return self._create(db, key, value, user_id, description, data_type)

        if existing.is_readonly:
            raise ValidationError(
                f"Setting {key} is read-only", [{"field": key, "message": "read-only"}]
            )
        if not validate_value(existing.data_type, value):
            raise ValidationError(
                f"Invalid value for {key}",
                [{"field": key, "message": f"expected {existing.data_type.value}"}],
            )
        coerced = coerce_value(existing.data_type, value)
        _check_rules(key, coerced)

        read_version = expected_version if expected_version is not None else existing.version
        values = {
            "value": coerced,
            "version": read_version + 1,
            "updated_by": coerce_uuid(user_id),
            "updated_at": datetime.now(UTC),
        }
        if description is not None:
            values["description"] = description
        result = db.execute(
            update(SystemSetting)
            .where(SystemSetting.key_name == key)
            .where(SystemSetting.version == read_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            raise SettingVersionConflict(
                f"Setting {key} was modified concurrently",
                details={"key": key, "expected_version": read_version},
            )
        db.commit()
        db.refresh(existing)
        logger.info("setting_updated key=%s version=%s", key, existing.version)
        return existing

    def _create(self, db, key, value, user_id, description, data_type) -> SystemSetting:
        preset = DEFAULTS_BY_KEY.get(key)
        data_type = data_type or (preset.data_type if preset else _infer_data_type(value))
        if not validate_value(data_type, value):
            raise ValidationError(
                f"Invalid value for {key}",
                [{"field": key, "message": f"expected {data_type.value}"}],
            )
        coerced = coerce_value(data_type, value)
        _check_rules(key, coerced)
        setting = SystemSetting(
            key_name=key,
            value=coerced,
            data_type=data_type,
            description=description or (preset.description if preset else None),
            category=preset.category if preset else "general",
            is_public=preset.is_public if preset else False,
            default_value=preset.value if preset else None,
            updated_by=coerce_uuid(user_id),
            version=1,
        )
        db.add(setting)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise SettingVersionConflict(
                f"Setting {key} was created concurrently", details={"key": key}
            ) from exc
        db.refresh(setting)
        return setting

    def list_settings(self, db: Session, category: str | None = None) -> dict[str, list]:
        query = db.query(SystemSetting)
        if category:
            query = query.filter(SystemSetting.category == category)
        grouped: dict[str, list] = {}
        for setting in query.order_by(SystemSetting.category, SystemSetting.key_name).all():
            grouped.setdefault(setting.category, []).append(setting)
        return grouped

    def public_settings(self, db: Session) -> dict:
        rows = db.query(SystemSetting).filter(SystemSetting.is_public.is_(True)).all()
        return {row.key_name: coerce_value(row.data_type, row.value) for row in rows}

    def initialize_defaults(self, db: Session) -> int:
        created = 0
        for preset in DEFAULT_SETTINGS:
            if db.get(SystemSetting, preset.key) is not None:
                continue
            db.add(
                SystemSetting(
                    key_name=preset.key,
                    value=preset.value,
                    default_value=preset.value,
                    data_type=preset.data_type,
                    category=preset.category,
                    description=preset.description,
                    is_public=preset.is_public,
                    is_readonly=preset.is_readonly,
                    version=1,
                )
            )
            created += 1
        db.commit()
        if created:
            logger.info("settings_initialized created=%s", created)
        return created

    def reset_to_default(self, db: Session, key: str, user_id=None) -> SystemSetting:
        setting = db.get(SystemSetting, key)
        if setting is None:
            raise NotFound(f"Setting {key} not found")
        return self.set_setting(
            db, key, setting.default_value, user_id=user_id, expected_version=setting.version
        )


system_settings = SystemSettings()
