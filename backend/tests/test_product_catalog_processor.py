from __future__ import annotations

import uuid
from decimal import Decimal, InvalidOperation

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from bulkops.models.product_catalog import ProductCatalogItem
from bulkops.plugins.base import RowContext
from bulkops.plugins.processors.product_catalog import (
    COLUMN_MAPPING,
    ProductCatalogProcessor,
    parse_price,
    split_payment_options,
    url_extension,
)
from bulkops.schemas.bulk_request import ProcessingOptions
from bulkops.services.media import parse_urls


@pytest.fixture()
def processor() -> ProductCatalogProcessor:
    return ProductCatalogProcessor()


@pytest.fixture()
def row_values(make_catalog_row):
    def _values(**overrides) -> dict:
        return dict(zip(COLUMN_MAPPING, make_catalog_row(**overrides)))

    return _values


def _context(db: Session, company_id: uuid.UUID, request_id: uuid.UUID | None = None) -> RowContext:
    return RowContext(
        db=db,
        request_id=request_id or uuid.uuid4(),
        company_id=company_id,
        requested_by=uuid.uuid4(),
        options=ProcessingOptions(),
    )


def test_valid_row(processor: ProductCatalogProcessor, row_values):
    assert processor.validate_row(row_values(), ProcessingOptions()) == ([], [])


def test_required_fields(processor: ProductCatalogProcessor, row_values):
    errors, _ = processor.validate_row(
        row_values(industry=None, type="  ", description=None, payment_options=None), ProcessingOptions()
    )
    assert "Industry is required" in errors
    assert "Type is required" in errors
    assert "Description is required" in errors
    assert "Payment options are required" in errors


def test_invalid_payment_options_and_price(processor: ProductCatalogProcessor, row_values):
    errors, _ = processor.validate_row(
        row_values(payment_options="cash, barter", list_price="abc"), ProcessingOptions()
    )
    assert "Invalid payment options: BARTER" in errors
    assert "Invalid list price: abc" in errors


def test_warnings(processor: ProductCatalogProcessor, row_values):
    errors, warnings = processor.validate_row(
        row_values(list_price=None, lang_code="english", link="ftp://example.com"), ProcessingOptions()
    )
    assert errors == []
    assert "List price is empty" in warnings
    assert "Unrecognized language code: english" in warnings
    assert "Link is not an http(s) URL: ftp://example.com" in warnings


def test_media_extension_validation(processor: ProductCatalogProcessor, row_values):
    values = row_values(photo_links="https://cdn.example.com/a.pdf", video_links="https://cdn.example.com/v.mp4")

    errors, _ = processor.validate_row(values, ProcessingOptions())
    assert errors == ["Invalid photo extension: .pdf"]

    errors, _ = processor.validate_row(values, ProcessingOptions(validate_media_extensions=False))
    assert errors == []


def test_media_urls_grouped_by_kind(processor: ProductCatalogProcessor, row_values):
    values = row_values(
        pdf_links="https://cdn.example.com/datasheet.pdf",
        photo_links="https://cdn.example.com/a.jpg; https://cdn.example.com/b.png",
    )
    assert processor.media_urls(values) == {
        "document": ["https://cdn.example.com/datasheet.pdf"],
        "photo": ["https://cdn.example.com/a.jpg", "https://cdn.example.com/b.png"],
    }
    assert processor.media_urls(row_values()) == {}


def test_helpers():
    assert parse_price("$1,234.5") == Decimal("1234.50")
    assert parse_price(None) is None
    with pytest.raises(InvalidOperation):
        parse_price("-3")
    assert split_payment_options("cash; credit ,") == ["CASH", "CREDIT"]
    assert url_extension("https://x.com/a/b.JPG?size=2") == ".jpg"
    assert url_extension("https://x.com/a") == ""
    assert parse_urls("https://a.com/1.jpg, https://a.com/2.jpg;ftp://x https://a.com/1.jpg") == [
        "https://a.com/1.jpg",
        "https://a.com/2.jpg",
    ]


def test_persist_row_creates_item(
    processor: ProductCatalogProcessor, db: Session, company_id: uuid.UUID, row_values
):
    context = _context(db, company_id)
    entity_id = processor.persist_row(
        row_values(id="SKU-9", list_price="$25"), 7, {"photo": ["k/1.jpg"]}, context
    )

    item = db.get(ProductCatalogItem, uuid.UUID(entity_id))
    assert item.external_id == "SKU-9"
    assert item.list_price == Decimal("25.00")
    assert item.payment_options == ["CASH", "CREDIT"]
    assert item.media == {"photo": ["k/1.jpg"]}
    assert item.source_row_number == 7
    assert item.bulk_request_id == context.request_id


def test_persist_row_upserts_by_external_id(
    processor: ProductCatalogProcessor, db: Session, company_id: uuid.UUID, row_values
):
    first = _context(db, company_id)
    second = _context(db, company_id)

    original_id = processor.persist_row(row_values(id="SKU-1", product_service="Old"), 2, {}, first)
    updated_id = processor.persist_row(row_values(id="SKU-1", product_service="New"), 2, {}, second)

    assert original_id == updated_id
    item = db.get(ProductCatalogItem, uuid.UUID(updated_id))
    assert item.product_service == "New"
    # The creating request keeps ownership
    assert item.bulk_request_id == first.request_id

    # Cancelling the second request must not delete an item it only updated
    assert processor.on_cancelled(db, second.request_id, company_id) == 0
    assert processor.on_cancelled(db, first.request_id, company_id) == 1


def test_external_ids_are_scoped_per_company(processor: ProductCatalogProcessor, db: Session, row_values):
    a = processor.persist_row(row_values(id="SKU-1"), 2, {}, _context(db, uuid.uuid4()))
    b = processor.persist_row(row_values(id="SKU-1"), 2, {}, _context(db, uuid.uuid4()))
    assert a != b


def test_on_cancelled_only_removes_own_items(
    processor: ProductCatalogProcessor, db: Session, company_id: uuid.UUID, row_values
):
    cancelled = _context(db, company_id)
    other = _context(db, company_id)
    processor.persist_row(row_values(), 2, {}, cancelled)
    processor.persist_row(row_values(), 3, {}, cancelled)
    processor.persist_row(row_values(), 2, {}, other)

    assert processor.on_cancelled(db, cancelled.request_id, company_id) == 2
    remaining = db.execute(select(ProductCatalogItem)).scalars().all()
    assert [i.bulk_request_id for i in remaining] == [other.request_id]
