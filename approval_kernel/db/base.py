"""
Module: approval_kernel.db.base
Responsibility: Declarative base and column types shared by every ORM model
    of the approval kernel: portable UUID keys, UTC timestamps that survive
    SQLite, and the TrackedBase mixin with its logical tombstone.
Architecture position: Kernel > DB.  Lowest import target inside the kernel;
    MUST NOT import from models/, services/, selectors/ or domain/.

Invariants enforced:
    - Primary keys are UUIDs stored as String(36) on every backend.
    - Every datetime read back is timezone-aware UTC.
    - Rows are never physically deleted by the kernel; a tombstone only
      touches TOMBSTONE_COLUMNS.
"""

from datetime import datetime, timezone
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, Boolean, DateTime, String, false, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# The only columns a logical delete may write on an otherwise frozen row
TOMBSTONE_COLUMNS = frozenset({"is_deleted", "deleted_at", "updated_at"})


class UUIDString(TypeDecorator):
    """``uuid.UUID`` in Python, 36-character text in the database."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else UUID(value)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp column.

    SQLite hands back naive datetimes; they are re-tagged as UTC so a DTO
    read back compares equal to the one written.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    """Declarative base: UUID ``id`` plus the column type conventions."""

    type_annotation_map: ClassVar[dict] = {
        UUID: UUIDString(),
        datetime: UTCDateTime(),
        int: BigInteger,
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """
    Timestamps and a logical tombstone.

    Services stamp created_at/updated_at from their injected clock; the
    server defaults only cover rows written by hand.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now())
    is_deleted: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false(),
    )
    deleted_at: Mapped[datetime | None]

    def tombstone(self, at: datetime) -> None:
        self.is_deleted = True
        self.deleted_at = at
        self.updated_at = at

    @classmethod
    def tombstone_values(cls, at: datetime) -> dict:
        """Column values for a bulk ``UPDATE`` that tombstones many rows."""
        return {"is_deleted": True, "deleted_at": at, "updated_at": at}
