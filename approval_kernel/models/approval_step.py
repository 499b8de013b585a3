"""
Module: approval_kernel.models.approval_step
Responsibility: ORM persistence for runtime approval tasks.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - UNIQUE(expense_id, step_number, approver_id): an approver is never
      asked twice for the same step.
    - Status values limited by a check constraint.
    - Services change ``status`` only through conditional UPDATEs guarded
      by ``status = 'pending'``.

Failure modes:
    - IntegrityError on a duplicate (expense, step, approver) task.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from approval_kernel.domain.approval import ApprovalStepRecord
    from approval_kernel.models.expense import Expense


class ApprovalStep(Base):
    """One approver's obligation for one expense at one step number."""

    __tablename__ = "approval_steps"

    __table_args__ = (
        UniqueConstraint(
            "expense_id", "step_number", "approver_id",
            name="uq_approval_steps_expense_step_approver",
        ),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'skipped')",
            name="ck_approval_steps_valid_status",
        ),
        Index("idx_approval_steps_approver_status", "approver_id", "status"),
        Index("idx_approval_steps_expense_status", "expense_id", "status"),
        Index("idx_approval_steps_status_created", "status", "created_at"),
    )

    expense_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("expenses.id", ondelete="CASCADE"),
        nullable=False,
    )
    workflow_step_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("approval_workflow_steps.id"),
        nullable=True,
    )
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    approver_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True,
    )
    escalated_from_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("approval_steps.id"), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    notified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    decided_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_reminded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    expense: Mapped["Expense"] = relationship(
        "Expense", back_populates="approval_steps",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalStep {self.id} expense={self.expense_id} "
            f"step={self.step_number} status={self.status}>"
        )

    def to_dto(self) -> ApprovalStepRecord:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import ApprovalStepRecord, StepStatus

        return ApprovalStepRecord(
            step_id=self.id,
            expense_id=self.expense_id,
            workflow_step_id=self.workflow_step_id,
            step_number=self.step_number,
            approver_id=self.approver_id,
            approver_type=self.approver_type,
            status=StepStatus(self.status),
            comments=self.comments,
            approved_amount=self.approved_amount,
            escalated_from_id=self.escalated_from_id,
            created_at=self.created_at,
            notified_at=self.notified_at,
            decided_at=self.decided_at,
            last_reminded_at=self.last_reminded_at,
        )
