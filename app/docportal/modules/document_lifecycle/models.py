from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.docportal.models import Base, User

STATUS_PENDING = "pending"
STATUS_UNDER_REVIEW = "under_review"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"

VALID_STATUSES = {STATUS_PENDING, STATUS_UNDER_REVIEW, STATUS_APPROVED, STATUS_REJECTED}
# Both states await a review decision and list/hide identically.
AWAITING_REVIEW = (STATUS_PENDING, STATUS_UNDER_REVIEW)

PRIORITIES = ("low", "medium", "high")

ENRICHMENT_QUEUED = "queued"
ENRICHMENT_COMPLETED = "completed"
ENRICHMENT_FAILED = "failed"
ENRICHMENT_SKIPPED = "skipped"


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    deadline: Mapped[date | None] = mapped_column(Date, nullable=True)

    # pending -> (under_review) -> approved | rejected
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_PENDING)

    uploaded_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False, default="application/octet-stream")
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)

    # Written by enrichment only.
    extracted_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    translation: Mapped[str | None] = mapped_column(Text, nullable=True)
    enrichment_status: Mapped[str] = mapped_column(String(16), nullable=False, default=ENRICHMENT_QUEUED)
    enrichment_error: Mapped[str | None] = mapped_column(String(512), nullable=True)

    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    # Optimistic concurrency: a stale flush raises StaleDataError.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    uploaded_by: Mapped[User | None] = relationship("User", foreign_keys=[uploaded_by_user_id], lazy="selectin")

    assignments: Mapped[list["Assignment"]] = relationship(
        "Assignment",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Assignment.id",
    )


class Assignment(Base):
    __tablename__ = "document_assignments"
    __table_args__ = (
        UniqueConstraint("document_id", "user_id", name="uq_document_assignment"),
        Index("idx_document_assignments_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    assigned_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    document: Mapped[Document] = relationship("Document", back_populates="assignments", lazy="selectin")
    user: Mapped[User] = relationship("User", foreign_keys=[user_id], lazy="selectin")
