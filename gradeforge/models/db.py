"""
SQLAlchemy ORM models for the local snapshot.

One row per card. The full card record is kept as JSON so the snapshot
always round-trips to the same Card; status and created_at are copied into
columns for querying.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class CardSnapshotDB(Base):
    """Latest local version of a card."""

    __tablename__ = "card_snapshots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), index=True)
    created_at: Mapped[int] = mapped_column(BigInteger, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<CardSnapshotDB(id={self.id}, status={self.status})>"
