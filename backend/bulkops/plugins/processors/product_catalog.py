from __future__ import annotations

import re
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any
from urllib.parse import urlparse

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from bulkops.models.bulk_request import BulkProcessingType
from bulkops.models.product_catalog import PaymentOption, ProductCatalogItem
from bulkops.plugins import registry
from bulkops.plugins.base import PendingMedia, RowContext, RowProcessorPlugin
from bulkops.schemas.bulk_request import ProcessingOptions
from bulkops.services.media import parse_urls

# Fixed template layout, column letter per field
COLUMN_MAPPING = {
    "id": "A",
    "industry": "B",
    "product_service": "C",
    "type": "D",
    "subcategory": "E",
    "list_price": "F",
    "payment_options": "G",
    "description": "H",
    "lang_code": "I",
    "link": "J",
    "pdf_links": "K",
    "photo_links": "L",
    "video_links": "M",
}

REQUIRED_FIELDS = {
    "industry": "Industry is required",
    "product_service": "Product/Service is required",
    "type": "Type is required",
    "description": "Description is required",
    "payment_options": "Payment options are required",
}

PHOTO_EXTENSIONS = frozenset(
    [".jpg", ".jpeg", ".jpe", ".jif", ".jfif", ".jfi", ".png", ".gif", ".webp", ".bmp", ".dib",
     ".tif", ".tiff", ".heic", ".heif", ".svg", ".raw", ".ico"]
)
VIDEO_EXTENSIONS = frozenset(
    [".mp4", ".m4v", ".3gp", ".3g2", ".avi", ".mov", ".qt", ".wmv", ".flv", ".f4v", ".swf", ".mkv",
     ".webm", ".vob", ".mpg", ".mpeg", ".mpe", ".mpv", ".ts", ".m2ts", ".mts"]
)
DOCS_EXTENSIONS = frozenset(
    [".pdf", ".doc", ".docx", ".dot", ".dotx", ".xls", ".xlsx", ".xlt", ".xltx", ".ppt", ".pptx",
     ".pps", ".ppsx", ".odt", ".ods", ".odp", ".odg", ".odf", ".txt", ".rtf", ".md", ".csv", ".tsv",
     ".log", ".epub", ".key", ".pages", ".numbers"]
)

MEDIA_KINDS = {
    "pdf_links": ("document", DOCS_EXTENSIONS),
    "photo_links": ("photo", PHOTO_EXTENSIONS),
    "video_links": ("video", VIDEO_EXTENSIONS),
}

_LANG_CODE = re.compile(r"^[a-z]{2}(-[A-Z]{2})?$")


def split_payment_options(value: Any) -> list[str]:
    return [t.strip().upper() for t in re.split(r"[,;]", str(value or "")) if t.strip()]


def url_extension(url: str) -> str:
    path = urlparse(url).path
    _, dot, ext = path.rpartition(".")
    if not dot or "/" in ext:
        return ""
    return f".{ext.lower()}"


def parse_price(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    cleaned = str(value).replace("$", "").replace(",", "").strip()
    price = Decimal(cleaned)
    if not price.is_finite() or price < 0:
        raise InvalidOperation(cleaned)
    return price.quantize(Decimal("0.01"))


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


class ProductCatalogProcessor(RowProcessorPlugin):
    name = BulkProcessingType.PRODUCT_CATALOG.value
    column_mapping = COLUMN_MAPPING

    def validate_row(self, values: dict[str, Any], options: ProcessingOptions) -> tuple[list[str], list[str]]:
        errors: list[str] = []
        warnings: list[str] = []

        for field, message in REQUIRED_FIELDS.items():
            if _text(values.get(field)) is None:
                errors.append(message)

        if values.get("payment_options"):
            valid = {p.value for p in PaymentOption}
            invalid = [t for t in split_payment_options(values["payment_options"]) if t not in valid]
            if invalid:
                errors.append(f"Invalid payment options: {', '.join(invalid)}")

        if values.get("list_price") not in (None, ""):
            try:
                parse_price(values["list_price"])
            except (InvalidOperation, ValueError):
                errors.append(f"Invalid list price: {values['list_price']}")
        else:
            warnings.append("List price is empty")

        lang_code = _text(values.get("lang_code"))
        if lang_code and not _LANG_CODE.match(lang_code):
            warnings.append(f"Unrecognized language code: {lang_code}")

        link = _text(values.get("link"))
        if link and not link.lower().startswith(("http://", "https://")):
            warnings.append(f"Link is not an http(s) URL: {link}")

        if options.validate_media_extensions:
            for field, (kind, extensions) in MEDIA_KINDS.items():
                for url in parse_urls(values.get(field)):
                    ext = url_extension(url)
                    if ext and ext not in extensions:
                        errors.append(f"Invalid {kind} extension: {ext}")

        return errors, warnings

    def media_urls(self, values: dict[str, Any]) -> dict[str, list[str]]:
        urls = {}
        for field, (kind, _extensions) in MEDIA_KINDS.items():
            parsed = parse_urls(values.get(field))
            if parsed:
                urls[kind] = parsed
        return urls

    def persist_row(
        self,
        values: dict[str, Any],
        row_number: int,
        media: dict[str, list[str]],
        context: RowContext,
    ) -> str | None:
        db = context.db
        external_id = _text(values.get("id"))
        item = None
        if external_id is not None:
            item = db.execute(
                select(ProductCatalogItem).where(
                    ProductCatalogItem.company_id == context.company_id,
                    ProductCatalogItem.external_id == external_id,
                )
            ).scalar_one_or_none()
        if item is None:
            # bulk_request_id marks the request that created the item
            item = ProductCatalogItem(
                company_id=context.company_id,
                external_id=external_id,
                bulk_request_id=context.request_id,
            )
            db.add(item)

        try:
            price = parse_price(values.get("list_price"))
        except (InvalidOperation, ValueError):
            price = None

        item.industry = _text(values.get("industry")) or ""
        item.product_service = _text(values.get("product_service")) or ""
        item.type = _text(values.get("type")) or ""
        item.subcategory = _text(values.get("subcategory"))
        item.list_price = price
        item.payment_options = split_payment_options(values.get("payment_options"))
        item.description = _text(values.get("description")) or ""
        item.lang_code = _text(values.get("lang_code"))
        item.link = _text(values.get("link"))
        pending = self.media_urls(values) if context.defer_media else {}
        if not pending:
            item.media = media
        item.source_row_number = row_number
        item.pending_media = pending or None
        item.pending_media_request_id = context.request_id if pending else None
        db.commit()
        return str(item.id)

    def pending_media(
        self, db: Session, request_id: uuid.UUID, company_id: uuid.UUID, limit: int
    ) -> list[PendingMedia]:
        items = db.execute(
            select(ProductCatalogItem)
            .where(
                ProductCatalogItem.pending_media_request_id == request_id,
                ProductCatalogItem.company_id == company_id,
            )
            .order_by(ProductCatalogItem.source_row_number, ProductCatalogItem.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        ).scalars()
        return [PendingMedia(str(item.id), item.source_row_number or 0, item.pending_media or {}) for item in items]

    def attach_media(self, db: Session, entity_id: str, media: dict[str, list[str]]) -> None:
        item = db.get(ProductCatalogItem, uuid.UUID(entity_id))
        if item is None:
            return
        item.media = media
        item.pending_media = None
        item.pending_media_request_id = None
        db.commit()

    def on_cancelled(self, db: Session, request_id: uuid.UUID, company_id: uuid.UUID) -> int:
        # Items the request only updated keep their rows but drop its pending URLs
        db.execute(
            update(ProductCatalogItem)
            .where(
                ProductCatalogItem.pending_media_request_id == request_id,
                ProductCatalogItem.company_id == company_id,
            )
            .values(pending_media=None, pending_media_request_id=None)
        )
        result = db.execute(
            delete(ProductCatalogItem).where(
                ProductCatalogItem.bulk_request_id == request_id,
                ProductCatalogItem.company_id == company_id,
            )
        )
        db.commit()
        return result.rowcount or 0


def register_plugin() -> None:
    registry.register("processor", ProductCatalogProcessor())
