"""
Module: approval_kernel.models.rule
Responsibility: ORM persistence for condition -> action approval rules.

Architecture position: Kernel > Models.  May import from db/base.py only.

Operator and action columns are deliberately unconstrained: an unknown
value must not fail on write or load.  The rule evaluator reports such
rules as ignored.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from approval_kernel.domain.approval import RuleSpec


class ApprovalRule(Base):
    """A company rule, global or bound to one workflow (``workflow_id``)."""

    __tablename__ = "approval_rules"

    __table_args__ = (
        Index(
            "idx_approval_rules_company_active",
            "company_id", "is_active", "priority",
        ),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    workflow_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("approval_workflows.id", ondelete="CASCADE"),
        nullable=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    condition_field: Mapped[str] = mapped_column(String(100), nullable=False)
    condition_operator: Mapped[str] = mapped_column(String(20), nullable=False)
    condition_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    action_value: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRule {self.name} {self.condition_field} "
            f"{self.condition_operator} -> {self.action_type}>"
        )

    def to_spec(self) -> RuleSpec:
        from approval_kernel.domain.approval import RuleSpec

        return RuleSpec(
            rule_id=self.id,
            company_id=self.company_id,
            workflow_id=self.workflow_id,
            name=self.name,
            condition_field=self.condition_field,
            condition_operator=self.condition_operator,
            condition_value=self.condition_value,
            action_type=self.action_type,
            action_value=self.action_value,
            priority=self.priority,
            is_active=bool(self.is_active),
        )
