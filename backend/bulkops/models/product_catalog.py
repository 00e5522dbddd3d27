from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, Numeric, String, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from bulkops.database import Base
from bulkops.models.bulk_request import utcnow


class PaymentOption(str, enum.Enum):
    FINANCING = "FINANCING"
    CREDIT = "CREDIT"
    CASH = "CASH"


class ProductCatalogItem(Base):
    __tablename__ = "product_catalog_items"
    __table_args__ = (UniqueConstraint("company_id", "external_id", name="uq_product_company_external"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid(), index=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    industry: Mapped[str] = mapped_column(String(255))
    product_service: Mapped[str] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(100))
    subcategory: Mapped[str | None] = mapped_column(String(255), nullable=True)
    list_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    payment_options: Mapped[list[str]] = mapped_column(JSON, default=list)
    description: Mapped[str] = mapped_column(Text)
    lang_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    link: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    media: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    # URLs saved by a request that downloads media after all rows are written
    pending_media: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    pending_media_request_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True, index=True)
    bulk_request_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True, index=True)
    source_row_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
