"""
Module: approval_kernel.models.expense
Responsibility: ORM persistence for the approvable unit.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Status values are limited by a check constraint; the state machine in
      ApprovalWorkflowService enforces the transition rules.
    - ``version`` is bumped by a compare-and-swap UPDATE on every workflow
      mutation (see services/guards.py).
    - The expense owns its approval tasks (cascade delete).

Failure modes:
    - IntegrityError on an unknown status value.

Audit relevance:
    ``workflow_id`` binds the template used at submission.  The bound
    template is frozen from that point on (db/immutability.py).
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
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from approval_kernel.domain.approval import ExpenseSnapshot
    from approval_kernel.models.approval_step import ApprovalStep


class Expense(Base):
    """An expense claim moving through the approval lifecycle.

    Contract:
        Only the approval services change ``status``,
        ``current_step_number``, ``approved_amount`` and the decision
        timestamps.

    Guarantees:
        - ``status`` in {approved, rejected, paid} implies no pending
          approval task (maintained by the workflow service).
    """

    __tablename__ = "expenses"

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'submitted', 'in_approval', 'approved', "
            "'rejected', 'paid')",
            name="ck_expenses_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_expenses_positive_amount"),
        Index("idx_expenses_company_status", "company_id", "status"),
        Index("idx_expenses_user", "user_id"),
        Index("idx_expenses_workflow", "workflow_id"),
    )

    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    amount_in_company_currency: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True,
    )
    exchange_rate: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True,
    )
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    current_step_number: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0,
    )
    workflow_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("approval_workflows.id"), nullable=True,
    )
    approved_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True,
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    rejected_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    approval_steps: Mapped[list["ApprovalStep"]] = relationship(
        "ApprovalStep",
        back_populates="expense",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ApprovalStep.step_number",
    )

    def __repr__(self) -> str:
        return (
            f"<Expense {self.id} {self.amount} {self.currency} "
            f"status={self.status} step={self.current_step_number}>"
        )

    def to_snapshot(self, department: str | None = None) -> ExpenseSnapshot:
        """Freeze the fields the pure engines read."""
        from approval_kernel.domain.approval import ExpenseSnapshot

        return ExpenseSnapshot(
            expense_id=self.id,
            company_id=self.company_id,
            submitter_id=self.user_id,
            amount=self.amount,
            currency=self.currency,
            amount_in_company_currency=self.amount_in_company_currency,
            category=self.category,
            department=department,
            description=self.description,
            workflow_id=self.workflow_id,
        )
