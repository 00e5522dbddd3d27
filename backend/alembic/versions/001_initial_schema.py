"""initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# create_type=False prevents create_table from auto-creating these
file_status_enum = postgresql.ENUM(
    "pending", "uploading", "uploaded", "processing", "erasing", "copying",
    name="file_status_enum",
    create_type=False,
)

upload_purpose_enum = postgresql.ENUM(
    "general", "bulk_import",
    name="upload_purpose_enum",
    create_type=False,
)

bulk_processing_type_enum = postgresql.ENUM(
    "product_catalog", "cleanup_temp_files",
    name="bulk_processing_type_enum",
    create_type=False,
)

bulk_processing_status_enum = postgresql.ENUM(
    "pending", "processing", "completed", "failed", "cancelling", "cancelled",
    name="bulk_processing_status_enum",
    create_type=False,
)

_ENUMS = {
    "file_status_enum": "'pending','uploading','uploaded','processing','erasing','copying'",
    "upload_purpose_enum": "'general','bulk_import'",
    "bulk_processing_type_enum": "'product_catalog','cleanup_temp_files'",
    "bulk_processing_status_enum": "'pending','processing','completed','failed','cancelling','cancelled'",
}


def upgrade() -> None:
    # Create enums explicitly with IF NOT EXISTS for idempotency
    for name, values in _ENUMS.items():
        op.execute(sa.text(
            "DO $$ BEGIN "
            f"CREATE TYPE {name} AS ENUM ({values}); "
            "EXCEPTION WHEN duplicate_object THEN NULL; "
            "END $$;"
        ))

    op.create_table(
        "stored_files",
        sa.Column("id", sa.UUID(), nullable=False, default=sa.text("gen_random_uuid()")),
        sa.Column("bucket", sa.String(255), nullable=False),
        sa.Column("object_key", sa.String(1024), nullable=False),
        sa.Column("storage_path", sa.String(512), nullable=False, server_default=""),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("mime_type", sa.String(255), nullable=False),
        sa.Column("size", sa.BigInteger(), nullable=False),
        sa.Column("part_size", sa.BigInteger(), nullable=False),
        sa.Column("total_parts", sa.Integer(), nullable=False),
        sa.Column("upload_id", sa.String(1024), nullable=True),
        sa.Column("status", file_status_enum, nullable=False, server_default="pending"),
        sa.Column("purpose", upload_purpose_enum, nullable=False, server_default="general"),
        sa.Column("etag", sa.String(255), nullable=True),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("company_id", sa.UUID(), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("object_key"),
    )
    op.create_index("ix_stored_files_status_activity", "stored_files", ["status", "last_activity_at"])
    op.create_index("ix_stored_files_company", "stored_files", ["company_id"])

    op.create_table(
        "bulk_processing_requests",
        sa.Column("id", sa.UUID(), nullable=False, default=sa.text("gen_random_uuid()")),
        sa.Column("type", bulk_processing_type_enum, nullable=False),
        sa.Column("file_id", sa.UUID(), nullable=False),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("status", bulk_processing_status_enum, nullable=False, server_default="pending"),
        sa.Column("job_id", sa.String(255), nullable=True),
        sa.Column("total_rows", sa.Integer(), nullable=True),
        sa.Column("processed_rows", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("successful_rows", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_rows", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("row_logs", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("options", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("company_id", sa.UUID(), nullable=False),
        sa.Column("requested_by", sa.UUID(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id"),
    )
    op.create_index(
        "ix_bulk_requests_company_created", "bulk_processing_requests", ["company_id", "created_at"]
    )
    op.create_index("ix_bulk_requests_status", "bulk_processing_requests", ["status"])

    op.create_table(
        "product_catalog_items",
        sa.Column("id", sa.UUID(), nullable=False, default=sa.text("gen_random_uuid()")),
        sa.Column("company_id", sa.UUID(), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("industry", sa.String(255), nullable=False),
        sa.Column("product_service", sa.String(255), nullable=False),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("subcategory", sa.String(255), nullable=True),
        sa.Column("list_price", sa.Numeric(14, 2), nullable=True),
        sa.Column("payment_options", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("lang_code", sa.String(10), nullable=True),
        sa.Column("link", sa.String(1024), nullable=True),
        sa.Column("media", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("bulk_request_id", sa.UUID(), nullable=True),
        sa.Column("source_row_number", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "external_id", name="uq_product_company_external"),
    )
    op.create_index("ix_product_catalog_items_company_id", "product_catalog_items", ["company_id"])
    op.create_index("ix_product_catalog_items_bulk_request_id", "product_catalog_items", ["bulk_request_id"])


def downgrade() -> None:
    op.drop_table("product_catalog_items")
    op.drop_table("bulk_processing_requests")
    op.drop_table("stored_files")
    for name in reversed(list(_ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name}")
