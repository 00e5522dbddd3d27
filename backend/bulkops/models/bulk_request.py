from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Enum, Index, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from bulkops.database import Base
from bulkops.exceptions import BulkProcessingInvalidStatusException


def utcnow() -> datetime:
    return datetime.now(UTC)


class BulkProcessingType(str, enum.Enum):
    PRODUCT_CATALOG = "product_catalog"
    CLEANUP_TEMP_FILES = "cleanup_temp_files"

    @property
    def is_reserved(self) -> bool:
        """Reserved types are internal housekeeping and never user-initiated."""
        return self in RESERVED_TYPES


RESERVED_TYPES = frozenset({BulkProcessingType.CLEANUP_TEMP_FILES})


class BulkProcessingStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]

    def can_transition_to(self, target: BulkProcessingStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS: dict[BulkProcessingStatus, frozenset[BulkProcessingStatus]] = {
    BulkProcessingStatus.PENDING: frozenset(
        {
            BulkProcessingStatus.PROCESSING,
            BulkProcessingStatus.CANCELLING,
            BulkProcessingStatus.FAILED,
        }
    ),
    BulkProcessingStatus.PROCESSING: frozenset(
        {
            BulkProcessingStatus.COMPLETED,
            BulkProcessingStatus.FAILED,
            BulkProcessingStatus.CANCELLING,
        }
    ),
    BulkProcessingStatus.CANCELLING: frozenset({BulkProcessingStatus.CANCELLED}),
    BulkProcessingStatus.COMPLETED: frozenset(),
    BulkProcessingStatus.FAILED: frozenset(),
    BulkProcessingStatus.CANCELLED: frozenset(),
}

CANCELLABLE_STATUSES = frozenset({BulkProcessingStatus.PENDING, BulkProcessingStatus.PROCESSING})
# A worker still owns the row counters while the request is in one of these
PROGRESS_STATUSES = frozenset({BulkProcessingStatus.PROCESSING, BulkProcessingStatus.CANCELLING})


def sources_for(target: BulkProcessingStatus) -> frozenset[BulkProcessingStatus]:
    """Every status from which ``target`` may be reached in one step."""
    return frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if target in targets)


class RowOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    WARNING = "warning"


class BulkProcessingRequest(Base):
    __tablename__ = "bulk_processing_requests"
    __table_args__ = (
        Index("ix_bulk_requests_company_created", "company_id", "created_at"),
        Index("ix_bulk_requests_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    type: Mapped[BulkProcessingType] = mapped_column(
        Enum(BulkProcessingType, name="bulk_processing_type_enum", create_constraint=False, values_callable=lambda e: [m.value for m in e]),
    )
    file_id: Mapped[uuid.UUID] = mapped_column(Uuid())
    file_name: Mapped[str] = mapped_column(String(255))
    status: Mapped[BulkProcessingStatus] = mapped_column(
        Enum(BulkProcessingStatus, name="bulk_processing_status_enum", create_constraint=False, values_callable=lambda e: [m.value for m in e]),
        default=BulkProcessingStatus.PENDING,
    )
    job_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    total_rows: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processed_rows: Mapped[int] = mapped_column(Integer, default=0)
    successful_rows: Mapped[int] = mapped_column(Integer, default=0)
    failed_rows: Mapped[int] = mapped_column(Integer, default=0)
    row_logs: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    options: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid())
    requested_by: Mapped[uuid.UUID] = mapped_column(Uuid())
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("status", BulkProcessingStatus.PENDING)
        kwargs.setdefault("processed_rows", 0)
        kwargs.setdefault("successful_rows", 0)
        kwargs.setdefault("failed_rows", 0)
        kwargs.setdefault("row_logs", [])
        kwargs.setdefault("options", {})
        kwargs.setdefault("metadata_", {})
        super().__init__(**kwargs)

    # --- queries ---

    def belongs_to_company(self, company_id: uuid.UUID) -> bool:
        return self.company_id == company_id

    def is_cancellable(self) -> bool:
        return self.status.can_transition_to(BulkProcessingStatus.CANCELLING)

    def has_errors(self) -> bool:
        return (self.failed_rows or 0) > 0

    @property
    def progress_percentage(self) -> int | None:
        """Percent of known rows processed; ``None`` while the total is unknown."""
        if self.total_rows is None:
            return None
        if self.total_rows == 0:
            return 0
        return min(100, round((self.processed_rows or 0) / self.total_rows * 100))

    @property
    def success_rate(self) -> float:
        processed = self.processed_rows or 0
        if processed == 0:
            return 0.0
        return round((self.successful_rows or 0) / processed * 100, 2)

    # --- transitions ---

    def ensure_can_transition(self, target: BulkProcessingStatus) -> None:
        """Raise unless the transition table allows the loaded status to move to ``target``.

        The status change itself is a conditional UPDATE in ``bulk_repository``
        that consults the same table, so a stale instance never forces a move
        the table forbids.
        """
        if not self.status.can_transition_to(target):
            raise BulkProcessingInvalidStatusException(self.status, target)


def build_row_log(
    outcome: RowOutcome,
    row_number: int,
    errors: list[str] | None,
    warnings: list[str] | None,
    entity_id: str | None = None,
) -> dict[str, Any] | None:
    """Build a row log entry, or ``None`` for a clean successful row."""
    errors = list(errors or [])
    warnings = list(warnings or [])
    if outcome == RowOutcome.FAILED:
        kind = RowOutcome.FAILED
        message = "; ".join(errors) or "Row failed"
    elif warnings:
        kind = RowOutcome.WARNING
        message = "; ".join(warnings)
    else:
        return None
    return {
        "row_number": row_number,
        "outcome": kind.value,
        "message": message,
        "errors": errors,
        "warnings": warnings,
        "entity_id": entity_id,
        "processed_at": utcnow().isoformat(),
    }


def count_stored_logs(logs: list[dict[str, Any]]) -> dict[str, int]:
    counts = {RowOutcome.FAILED.value: 0, RowOutcome.WARNING.value: 0}
    for entry in logs:
        outcome = entry.get("outcome")
        if outcome in counts:
            counts[outcome] += 1
    return counts


def accept_row_log(
    entry: dict[str, Any],
    stored: dict[str, int],
    max_stored_errors: int,
    max_stored_warnings: int,
) -> bool:
    """Return True and bump ``stored`` when the entry fits under its cap."""
    outcome = entry["outcome"]
    cap = max_stored_errors if outcome == RowOutcome.FAILED.value else max_stored_warnings
    if stored.get(outcome, 0) >= cap:
        return False
    stored[outcome] = stored.get(outcome, 0) + 1
    return True
