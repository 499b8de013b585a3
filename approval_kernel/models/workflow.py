"""
Module: approval_kernel.models.workflow
Responsibility: ORM persistence for workflow templates and their steps.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - At most one default workflow per company (partial unique index).
    - ``step_number`` is unique within a workflow.
    - Templates referenced by a non-draft expense are immutable
      (db/immutability.py).

Failure modes:
    - IntegrityError on a second default workflow for the same company.
    - IntegrityError on a duplicate step number.
    - ImmutabilityViolationError on edits to a referenced template.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from approval_kernel.domain.approval import StepTemplate, WorkflowTemplate


class ApprovalWorkflow(Base):
    """A company's approval template."""

    __tablename__ = "approval_workflows"

    __table_args__ = (
        Index(
            "uq_approval_workflows_one_default",
            "company_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
        Index("idx_approval_workflows_company_active", "company_id", "is_active"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    steps: Mapped[list["ApprovalWorkflowStep"]] = relationship(
        "ApprovalWorkflowStep",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="ApprovalWorkflowStep.step_number",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<ApprovalWorkflow {self.name} default={self.is_default}>"

    def to_template(self) -> WorkflowTemplate:
        """Convert ORM model to frozen domain template."""
        from approval_kernel.domain.approval import WorkflowTemplate

        return WorkflowTemplate(
            workflow_id=self.id,
            company_id=self.company_id,
            name=self.name,
            description=self.description,
            is_default=bool(self.is_default),
            is_active=bool(self.is_active),
            created_at=self.created_at,
            steps=tuple(step.to_template() for step in self.steps),
        )


class ApprovalWorkflowStep(Base):
    """One stage of a workflow template.

    ``category_codes`` is a JSON list; null or empty means any category.
    ``threshold_percentage`` (0-100) auto-skips the step when the previous
    approver signed off no more than that share of the requested amount.
    """

    __tablename__ = "approval_workflow_steps"

    __table_args__ = (
        UniqueConstraint(
            "workflow_id", "step_number",
            name="uq_approval_workflow_steps_number",
        ),
        CheckConstraint(
            "approver_type IN ('specific_user', 'manager', 'role', "
            "'department_head', 'finance', 'cfo')",
            name="ck_approval_workflow_steps_approver_type",
        ),
        CheckConstraint(
            "threshold_percentage IS NULL OR "
            "(threshold_percentage >= 0 AND threshold_percentage <= 100)",
            name="ck_approval_workflow_steps_percentage",
        ),
        CheckConstraint("step_number > 0", name="ck_approval_workflow_steps_positive"),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_workflows.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    step_name: Mapped[str] = mapped_column(String(255), nullable=False)
    approver_type: Mapped[str] = mapped_column(String(50), nullable=False)
    approver_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    approver_role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    amount_min: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    amount_max: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    category_codes: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    auto_approve_threshold: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True,
    )
    threshold_percentage: Mapped[Decimal | None] = mapped_column(
        Numeric(5, 2), nullable=True,
    )

    workflow: Mapped["ApprovalWorkflow"] = relationship(
        "ApprovalWorkflow", back_populates="steps",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalWorkflowStep {self.step_number} {self.step_name} "
            f"type={self.approver_type}>"
        )

    def to_template(self) -> StepTemplate:
        from approval_kernel.domain.approval import ApproverType, StepTemplate

        return StepTemplate(
            step_number=self.step_number,
            step_name=self.step_name,
            approver_type=ApproverType(self.approver_type),
            approver_id=self.approver_id,
            approver_role=self.approver_role,
            amount_min=self.amount_min,
            amount_max=self.amount_max,
            category_codes=tuple(str(c) for c in (self.category_codes or ())),
            auto_approve_threshold=self.auto_approve_threshold,
            threshold_percentage=self.threshold_percentage,
            template_step_id=self.id,
        )
