"""pending media on catalog items

Revision ID: 002
Revises: 001
Create Date: 2026-10-17
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("product_catalog_items", sa.Column("pending_media", sa.JSON(), nullable=True))
    op.add_column("product_catalog_items", sa.Column("pending_media_request_id", sa.UUID(), nullable=True))
    op.create_index(
        "ix_product_catalog_items_pending_media_request_id",
        "product_catalog_items",
        ["pending_media_request_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_product_catalog_items_pending_media_request_id", table_name="product_catalog_items")
    op.drop_column("product_catalog_items", "pending_media_request_id")
    op.drop_column("product_catalog_items", "pending_media")
