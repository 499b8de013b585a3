"""
Module: approval_kernel.models.notification
Responsibility: ORM persistence for fire-and-forget user notifications.

Architecture position: Kernel > Models.  May import from db/base.py only.

Notifications are never read by the state machine.  Losing one must not
affect workflow state, which is why they are written in a savepoint by
NotificationDispatcher.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from approval_kernel.domain.approval import NotificationRecord


class Notification(Base):
    """A message for one user, optionally tied to an expense."""

    __tablename__ = "notifications"

    __table_args__ = (
        CheckConstraint(
            "type IN ('approval_request', 'approved', 'rejected', "
            "'escalated', 'reminder')",
            name="ck_notifications_valid_type",
        ),
        Index("idx_notifications_user_read", "user_id", "is_read", "created_at"),
    )

    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    expense_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("expenses.id", ondelete="SET NULL"),
        nullable=True,
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Notification {self.type} user={self.user_id} read={self.is_read}>"

    def to_dto(self) -> NotificationRecord:
        from approval_kernel.domain.approval import (
            NotificationKind,
            NotificationRecord,
        )

        return NotificationRecord(
            notification_id=self.id,
            user_id=self.user_id,
            expense_id=self.expense_id,
            kind=NotificationKind(self.type),
            title=self.title,
            message=self.message,
            payload=dict(self.payload or {}),
            is_read=bool(self.is_read),
            created_at=self.created_at,
        )
