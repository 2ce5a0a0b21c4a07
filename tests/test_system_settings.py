import pytest

from app.errors import NotFound, SettingVersionConflict, ValidationError
from app.models.system_setting import SettingDataType
from app.services.system_settings import (
    DEFAULT_SETTINGS,
    coerce_value,
    system_settings,
    validate_value,
)


def test_initialize_defaults_is_idempotent(db_session):
    assert system_settings.initialize_defaults(db_session) == len(DEFAULT_SETTINGS)
    assert system_settings.initialize_defaults(db_session) == 0


def test_typed_getters(settings_defaults):
    db = settings_defaults
    assert system_settings.get_number(db, "MAX_DOWNLOADS_PER_FILE", 99) == 1
    assert "pdf" in system_settings.get_list(db, "ALLOWED_EXTENSIONS")
    assert system_settings.get_bool(db, "MAINTENANCE_MODE", True) is False
    assert system_settings.get_setting(db, "MISSING_KEY", "fallback") == "fallback"


def test_set_setting_bumps_version(settings_defaults):
    db = settings_defaults
    before = system_settings.get(db, "DEFAULT_FILE_RETENTION_DAYS").version

    updated = system_settings.set_setting(db, "DEFAULT_FILE_RETENTION_DAYS", "30")

    assert updated.value == 30
    assert updated.version == before + 1
    assert system_settings.get_number(db, "DEFAULT_FILE_RETENTION_DAYS", 0) == 30


def test_stale_version_conflicts(settings_defaults):
    db = settings_defaults
    setting = system_settings.get(db, "MAX_DOWNLOADS_PER_FILE")
    stale = setting.version
    system_settings.set_setting(db, "MAX_DOWNLOADS_PER_FILE", 2, expected_version=stale)

    with pytest.raises(SettingVersionConflict):
        system_settings.set_setting(db, "MAX_DOWNLOADS_PER_FILE", 3, expected_version=stale)
    assert system_settings.get_number(db, "MAX_DOWNLOADS_PER_FILE", 0) == 2


def test_readonly_setting_rejected(settings_defaults):
    with pytest.raises(ValidationError):
        system_settings.set_setting(settings_defaults, "CLEANUP_INTERVAL_HOURS", 1)


def test_type_mismatch_rejected(settings_defaults):
    with pytest.raises(ValidationError):
        system_settings.set_setting(settings_defaults, "MAX_FILE_SIZE", "lots")
    with pytest.raises(ValidationError):
        system_settings.set_setting(settings_defaults, "MAINTENANCE_MODE", "maybe")


def test_range_rules_enforced(settings_defaults):
    with pytest.raises(ValidationError) as exc_info:
        system_settings.set_setting(settings_defaults, "DEFAULT_FILE_RETENTION_DAYS", 400)
    assert exc_info.value.details[0]["field"] == "DEFAULT_FILE_RETENTION_DAYS"


def test_boolean_strings_coerced(settings_defaults):
    db = settings_defaults
    system_settings.set_setting(db, "MAINTENANCE_MODE", "yes")
    assert system_settings.get_bool(db, "MAINTENANCE_MODE", False) is True


def test_array_requires_a_list(settings_defaults):
    db = settings_defaults
    with pytest.raises(ValidationError):
        system_settings.set_setting(db, "ALLOWED_EXTENSIONS", "pdf, txt")
    system_settings.set_setting(db, "ALLOWED_EXTENSIONS", ("pdf", "txt"))
    assert system_settings.get_list(db, "ALLOWED_EXTENSIONS") == ["pdf", "txt"]
    assert coerce_value(SettingDataType.array, "pdf, txt,,zip") == ["pdf", "txt", "zip"]


def test_create_unknown_setting_infers_type(db_session):
    setting = system_settings.set_setting(db_session, "FEATURE_FLAGS", {"beta": True})
    assert setting.data_type == SettingDataType.json
    assert setting.version == 1


def test_reset_to_default(settings_defaults):
    db = settings_defaults
    system_settings.set_setting(db, "SYSTEM_NAME", "Acme Drop")
    reset = system_settings.reset_to_default(db, "SYSTEM_NAME")
    assert reset.value == "Secure File Transfer"


def test_reset_unknown_setting(db_session):
    with pytest.raises(NotFound):
        system_settings.reset_to_default(db_session, "NOPE")


def test_public_settings_hide_private_keys(settings_defaults):
    public = system_settings.public_settings(settings_defaults)
    assert "MAX_FILE_SIZE" in public
    assert "GDPR_COMPLIANCE_MODE" not in public
    assert "ADMIN_NOTIFICATION_EMAILS" not in public


def test_list_settings_grouped_by_category(settings_defaults):
    grouped = system_settings.list_settings(settings_defaults)
    assert {"files", "cleanup", "storage"} <= set(grouped)
    only_files = system_settings.list_settings(settings_defaults, category="files")
    assert list(only_files) == ["files"]


@pytest.mark.parametrize(
    "data_type, value, valid",
    [
        (SettingDataType.number, "12.5", True),
        (SettingDataType.number, True, False),
        (SettingDataType.boolean, "off", True),
        (SettingDataType.array, "a,b", False),
        (SettingDataType.json, [1, 2], True),
    ],
)
def test_validate_value(data_type, value, valid):
    assert validate_value(data_type, value) is valid


def test_coerce_number_keeps_integers():
    assert coerce_value(SettingDataType.number, "10.0") == 10
    assert isinstance(coerce_value(SettingDataType.number, "10.0"), int)
    assert coerce_value(SettingDataType.number, 2.5) == 2.5
