"""SQLAlchemy ORM models backing the document store."""
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from azuka.database import Base


class Document(Base):
    """One JSON document of a named collection (users, daily_logs, weekly_plans)."""

    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("collection", "doc_key", name="uq_documents_collection_key"),
        Index("ix_documents_collection_user", "collection", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection: Mapped[str] = mapped_column(String(64), nullable=False)
    doc_key: Mapped[str] = mapped_column(String(128), nullable=False)
    # Denormalized from body["user_id"] so per-user reads avoid a full scan.
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    body: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
