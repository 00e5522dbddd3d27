from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from bulkops.schemas.bulk_request import ProcessingOptions


@dataclass
class RowContext:
    db: Session
    request_id: uuid.UUID
    company_id: uuid.UUID
    requested_by: uuid.UUID
    options: ProcessingOptions
    # Rows are saved with their media URLs pending for a later download phase
    defer_media: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class PendingMedia:
    entity_id: str
    row_number: int
    urls: dict[str, list[str]]


class RowProcessorPlugin(ABC):
    """Validates and persists one spreadsheet row for a bulk processing type."""

    name: str = ""
    column_mapping: dict[str, str] = {}

    @abstractmethod
    def validate_row(self, values: dict[str, Any], options: ProcessingOptions) -> tuple[list[str], list[str]]:
        """Return (errors, warnings) for a row."""

    @abstractmethod
    def persist_row(
        self,
        values: dict[str, Any],
        row_number: int,
        media: dict[str, list[str]],
        context: RowContext,
    ) -> str | None:
        """Write the row and return the id of the entity it created or updated.

        When ``context.defer_media`` is set the row's media URLs must be kept
        so ``pending_media`` can return them later.
        """

    def media_urls(self, values: dict[str, Any]) -> dict[str, list[str]]:
        """Media URLs referenced by the row, grouped by kind."""
        return {}

    def pending_media(
        self, db: Session, request_id: uuid.UUID, company_id: uuid.UUID, limit: int
    ) -> list[PendingMedia]:
        """Up to ``limit`` entities of the request still waiting for their media, in row order."""
        return []

    def attach_media(self, db: Session, entity_id: str, media: dict[str, list[str]]) -> None:
        """Store downloaded media keys on an entity and clear its pending URLs."""

    def on_cancelled(self, db: Session, request_id: uuid.UUID, company_id: uuid.UUID) -> int:
        """Undo what a cancelled request wrote. Returns the number of entities removed."""
        return 0


class NotificationPlugin(ABC):
    name: str = ""

    @abstractmethod
    async def send(self, subject: str, body: str, **kwargs: Any) -> bool:
        """Send a notification."""
