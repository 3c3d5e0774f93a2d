"""create asset tables

Revision ID: 0001
Revises:
Create Date: 2026-03-02

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


asset_status = postgresql.ENUM("uploading", "ready", "corrupt", name="assetstatus", create_type=False)


def upgrade() -> None:
    asset_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "assets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("filename", sa.String(length=180), nullable=False),
        sa.Column("mime_type", sa.String(length=200), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("storage_path", sa.String(length=1000), nullable=False),
        sa.Column("status", asset_status, nullable=False, server_default="uploading"),
        sa.Column("sha256", sa.String(length=64), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("version >= 0", name="ck_assets_version_nonneg"),
        sa.CheckConstraint("size_bytes > 0", name="ck_assets_size_positive"),
    )
    op.create_index("ix_assets_owner_id", "assets", ["owner_id"], unique=False)
    op.create_index("ix_assets_storage_path", "assets", ["storage_path"], unique=True)
    op.create_index("ix_assets_status", "assets", ["status"], unique=False)
    op.create_index("ix_assets_created_at", "assets", ["created_at"], unique=False)

    op.create_table(
        "upload_tickets",
        sa.Column("asset_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("assets.id"), primary_key=True, nullable=False),
        sa.Column("subject_id", sa.String(length=128), nullable=False),
        sa.Column("nonce", sa.String(length=64), nullable=False),
        sa.Column("mime_type", sa.String(length=200), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("storage_path", sa.String(length=1000), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_upload_tickets_subject_id", "upload_tickets", ["subject_id"], unique=False)

    op.create_table(
        "asset_shares",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("asset_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("assets.id"), nullable=False),
        sa.Column("grantee_id", sa.String(length=128), nullable=False),
        sa.Column("can_download", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("granted_by", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("asset_id", "grantee_id", name="uq_asset_share_grantee"),
    )
    op.create_index("ix_asset_shares_asset_id", "asset_shares", ["asset_id"], unique=False)
    op.create_index("ix_asset_shares_grantee_id", "asset_shares", ["grantee_id"], unique=False)

    # No foreign key to assets: audit rows outlive the asset.
    op.create_table(
        "download_audit",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("asset_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subject_id", sa.String(length=128), nullable=False),
        sa.Column("request_id", sa.String(length=100), nullable=True),
        sa.Column("ip", sa.String(length=80), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_download_audit_asset_id", "download_audit", ["asset_id"], unique=False)
    op.create_index("ix_download_audit_subject_id", "download_audit", ["subject_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_download_audit_subject_id", table_name="download_audit")
    op.drop_index("ix_download_audit_asset_id", table_name="download_audit")
    op.drop_table("download_audit")

    op.drop_index("ix_asset_shares_grantee_id", table_name="asset_shares")
    op.drop_index("ix_asset_shares_asset_id", table_name="asset_shares")
    op.drop_table("asset_shares")

    op.drop_index("ix_upload_tickets_subject_id", table_name="upload_tickets")
    op.drop_table("upload_tickets")

    op.drop_index("ix_assets_created_at", table_name="assets")
    op.drop_index("ix_assets_status", table_name="assets")
    op.drop_index("ix_assets_storage_path", table_name="assets")
    op.drop_index("ix_assets_owner_id", table_name="assets")
    op.drop_table("assets")

    asset_status.drop(op.get_bind(), checkfirst=True)
