"""create file transfer tables

Revision ID: 7c1e2a9d4b30
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = "7c1e2a9d4b30"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

file_status = sa.Enum("uploading", "ready", "expired", "deleted", name="filestatus")
email_status = sa.Enum(
    "pending", "sent", "delivered", "failed", "bounced", name="emailstatus"
)
audit_category = sa.Enum("auth", "file", "admin", "system", "security", name="auditcategory")
audit_severity = sa.Enum("low", "medium", "high", "critical", name="auditseverity")
setting_data_type = sa.Enum(
    "string", "number", "boolean", "array", "json", name="settingdatatype"
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("username", sa.String(255), nullable=False, unique=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("department", sa.String(255), nullable=True),
        sa.Column("ldap_groups", sa.JSON(), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("upload_quota_daily", sa.BigInteger(), nullable=False),
        sa.Column("upload_quota_monthly", sa.BigInteger(), nullable=False),
        sa.Column("upload_used_daily", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("upload_used_monthly", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("quota_reset_date", sa.Date(), nullable=False, server_default=sa.func.current_date()),
        sa.Column("preferences", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_is_active", "users", ["is_active"])

    op.create_table(
        "files",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("original_filename", sa.String(255), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False),
        sa.Column("mime_type", sa.String(255), nullable=False),
        sa.Column("file_extension", sa.String(20), nullable=True),
        sa.Column("file_path", sa.String(1024), nullable=False),
        sa.Column("checksum", sa.String(64), nullable=True),
        sa.Column("upload_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("uploaded_by", UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("download_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_downloads", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", file_status, nullable=False, server_default="uploading"),
        sa.Column("upload_progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("thumbnail_path", sa.String(1024), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("download_count >= 0", name="ck_files_download_count_positive"),
        sa.CheckConstraint(
            "download_count <= max_downloads", name="ck_files_download_count_within_limit"
        ),
        sa.CheckConstraint(
            "upload_progress >= 0 AND upload_progress <= 100",
            name="ck_files_upload_progress_range",
        ),
        sa.CheckConstraint("file_size >= 0", name="ck_files_file_size_positive"),
    )
    op.create_index("ix_files_uploaded_by", "files", ["uploaded_by"])
    op.create_index("ix_files_status", "files", ["status"])
    op.create_index("ix_files_upload_date", "files", ["upload_date"])
    op.create_index(
        "ix_files_status_expiry_owner", "files", ["status", "expiry_date", "uploaded_by"]
    )

    op.create_table(
        "file_recipients",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "file_id",
            UUID(as_uuid=True),
            sa.ForeignKey("files.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("download_token", sa.String(64), nullable=False, unique=True),
        sa.Column("downloaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("download_ip", sa.String(45), nullable=True),
        sa.Column("download_user_agent", sa.Text(), nullable=True),
        sa.Column("email_status", email_status, nullable=False, server_default="pending"),
        sa.Column("email_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("email_failure_reason", sa.Text(), nullable=True),
        sa.Column("email_opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notification_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("custom_message", sa.Text(), nullable=True),
        sa.Column("access_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_access_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_file_recipients_email", "file_recipients", ["email"])
    op.create_index("ix_file_recipients_email_status", "file_recipients", ["email_status"])
    op.create_index(
        "ix_file_recipients_file_downloaded", "file_recipients", ["file_id", "downloaded_at"]
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("category", audit_category, nullable=False, server_default="system"),
        sa.Column("severity", audit_severity, nullable=False, server_default="low"),
        sa.Column("resource_type", sa.String(50), nullable=True),
        sa.Column("resource_id", sa.String(100), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("request_method", sa.String(10), nullable=True),
        sa.Column("request_url", sa.Text(), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_audit_logs_user_created_action", "audit_logs", ["user_id", "created_at", "action"]
    )
    op.create_index("ix_audit_logs_severity_created", "audit_logs", ["severity", "created_at"])

    op.create_table(
        "system_settings",
        sa.Column("key_name", sa.String(100), primary_key=True),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(50), nullable=False, server_default="general"),
        sa.Column("data_type", setting_data_type, nullable=False, server_default="string"),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_readonly", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("default_value", sa.JSON(), nullable=True),
        sa.Column(
            "updated_by",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
    )


def downgrade() -> None:
    op.drop_table("system_settings")
    op.drop_index("ix_audit_logs_severity_created", table_name="audit_logs")
    op.drop_index("ix_audit_logs_user_created_action", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_file_recipients_file_downloaded", table_name="file_recipients")
    op.drop_index("ix_file_recipients_email_status", table_name="file_recipients")
    op.drop_index("ix_file_recipients_email", table_name="file_recipients")
    op.drop_table("file_recipients")
    op.drop_index("ix_files_status_expiry_owner", table_name="files")
    op.drop_index("ix_files_upload_date", table_name="files")
    op.drop_index("ix_files_status", table_name="files")
    op.drop_index("ix_files_uploaded_by", table_name="files")
    op.drop_table("files")
    op.drop_index("ix_users_is_active", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    bind = op.get_bind()
    for enum_type in (setting_data_type, audit_severity, audit_category, email_status, file_status):
        enum_type.drop(bind, checkfirst=True)
