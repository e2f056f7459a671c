from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class StoreItem(Base):
    """One document in the key-value store.

    Items are addressed by the composite ``(pk, sk)`` key. Two secondary
    indexes mirror the access patterns: ``gsi1`` (owner/time, gap category
    and priority) and ``gsi2`` (status/time, gap pending/resolved).
    """
    __tablename__ = "store_items"

    pk: Mapped[str] = mapped_column(String(200), primary_key=True)
    sk: Mapped[str] = mapped_column(String(200), primary_key=True)
    gsi1pk: Mapped[str | None] = mapped_column(String(200), nullable=True)
    gsi1sk: Mapped[str | None] = mapped_column(String(200), nullable=True)
    gsi2pk: Mapped[str | None] = mapped_column(String(200), nullable=True)
    gsi2sk: Mapped[str | None] = mapped_column(String(200), nullable=True)
    entity_type: Mapped[str] = mapped_column(String(50), default="")
    data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_store_items_gsi1", "gsi1pk", "gsi1sk"),
        Index("ix_store_items_gsi2", "gsi2pk", "gsi2sk"),
    )
