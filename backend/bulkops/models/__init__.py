from __future__ import annotations

from bulkops.models.bulk_request import BulkProcessingRequest
from bulkops.models.product_catalog import ProductCatalogItem
from bulkops.models.stored_file import StoredFile

__all__ = [
    "BulkProcessingRequest",
    "ProductCatalogItem",
    "StoredFile",
]
