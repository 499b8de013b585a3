"""
Module: approval_kernel.models.history
Responsibility: ORM persistence for the append-only approval history.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: UPDATE and DELETE through the ORM raise
      ImmutabilityViolationError (db/immutability.py).
    - Action values limited by a check constraint.
    - ``sequence_number`` orders rows within one expense.  It is assigned
      while the expense row is locked.

Audit relevance:
    One row per transition.  This table is the source of truth for the
    expense timeline and for workflow analytics.  The ``metadata`` column
    carries structured details (rule id, skip reason, escalation source)
    and is mapped to the ``details`` attribute because ``metadata`` is
    reserved on declarative classes.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from approval_kernel.domain.approval import HistoryEntry


class ApprovalHistory(Base):
    """One audit row per approval transition.  Immutable."""

    __tablename__ = "approval_history"

    __table_args__ = (
        CheckConstraint(
            "action IN ('submitted', 'approved', 'rejected', 'assigned', "
            "'reassigned', 'escalated', 'auto_approved')",
            name="ck_approval_history_valid_action",
        ),
        UniqueConstraint(
            "expense_id", "sequence_number",
            name="uq_approval_history_expense_sequence",
        ),
        Index("idx_approval_history_expense_created", "expense_id", "created_at"),
        Index("idx_approval_history_created", "created_at"),
    )

    expense_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("expenses.id"), nullable=False,
    )
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    step_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    previous_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSON, nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalHistory {self.action} expense={self.expense_id} "
            f"step={self.step_number}>"
        )

    def to_dto(self) -> HistoryEntry:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import HistoryAction, HistoryEntry

        return HistoryEntry(
            history_id=self.id,
            expense_id=self.expense_id,
            sequence_number=self.sequence_number,
            user_id=self.user_id,
            action=HistoryAction(self.action),
            step_number=self.step_number,
            previous_status=self.previous_status,
            new_status=self.new_status,
            comments=self.comments,
            metadata=dict(self.details or {}),
            created_at=self.created_at,
        )
