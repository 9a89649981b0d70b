"""SQLModel mapping for documents kept by the SQL-backed document store."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import Column, DateTime, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql import expression
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


JSON_BACKING_TYPE = sa.JSON().with_variant(JSONB(astext_type=sa.Text()), "postgresql")


class UtcNow(expression.FunctionElement):
    """Dialect-aware server default that pins timestamps to UTC."""

    type = DateTime(timezone=True)
    inherit_cache = True


@compiles(UtcNow)
def _utc_now_default(element, compiler, **kwargs) -> str:  # pragma: no cover - sql generator
    return "CURRENT_TIMESTAMP"


@compiles(UtcNow, "postgresql")
def _utc_now_default_postgres(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - sql generator
    return "timezone('utc', now())"


class DocumentRecord(SQLModel, table=True):
    """One JSON document addressed by ``(collection, doc_id)``.

    Collections are tenant-scoped paths such as
    ``companies/{company_id}/discoveredLeads``.
    """

    __tablename__ = "discovery_documents"
    __table_args__ = (
        sa.UniqueConstraint("collection", "doc_id", name="uq_documents_collection_doc"),
        sa.Index("ix_documents_collection", "collection"),
    )

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    collection: str = Field(sa_column=Column(String(length=512), nullable=False))
    doc_id: str = Field(sa_column=Column(String(length=255), nullable=False))
    data: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=UtcNow(),
        ),
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=UtcNow(),
            onupdate=UtcNow(),
        ),
    )

    def to_document(self) -> dict[str, Any]:
        """Return the stored payload with its id attached."""
        return {**self.data, "id": self.doc_id}
