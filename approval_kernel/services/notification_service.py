"""
Notification sink, dispatcher and inbox helpers.

Responsibility:
    - SqlNotificationSink persists Notification rows with the title and
      message for each notification kind.
    - NotificationDispatcher wraps any NotificationSink so that delivery
      runs in a SAVEPOINT and a failure is logged and dropped.
    - NotificationService offers the inbox operations (list, mark read,
      unread count) and the retention purge of read notifications.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - Delivery never rolls back or blocks the workflow transition that
      triggered it.  Only the savepoint is rolled back on failure.

Failure modes:
    - Sink exceptions are caught by the dispatcher and logged as
      ``notification_delivery_failed``.  Nothing is retried in the same
      transaction.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from approval_kernel.domain.approval import NotificationKind, NotificationRecord
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.directory import NotificationSink
from approval_kernel.logging_config import get_logger
from approval_kernel.models.notification import Notification
from approval_kernel.services.base import BaseService
from approval_kernel.services.history_service import to_jsonable

logger = get_logger("services.notification")


def _format_amount(value: Any) -> str:
    if value is None:
        return "?"
    try:
        return f"{Decimal(str(value)):,.2f}"
    except ArithmeticError:
        return str(value)


def render_notification(
    kind: NotificationKind, payload: dict[str, Any],
) -> tuple[str, str]:
    """Title and message for a notification kind."""
    if kind == NotificationKind.APPROVAL_REQUEST:
        submitter = payload.get("submitter_name") or "An employee"
        amount = _format_amount(payload.get("amount"))
        if payload.get("currency"):
            amount = f"{amount} {payload['currency']}"
        return (
            "New Expense Approval Request",
            f"{submitter} has submitted an expense of {amount} for your approval.",
        )
    if kind in (NotificationKind.APPROVED, NotificationKind.REJECTED):
        verb = "approved" if kind == NotificationKind.APPROVED else "rejected"
        approver = payload.get("approver_name") or "your approver"
        message = f"Your expense has been {verb} by {approver}."
        comments = payload.get("comments")
        if comments:
            message += f" Comments: {comments}"
        return f"Expense {verb.capitalize()}", message
    if kind == NotificationKind.ESCALATED:
        reason = payload.get("reason") or "approval timeout"
        return (
            "Expense Escalated",
            f"An expense has been escalated to you. Reason: {reason}",
        )
    if kind == NotificationKind.REMINDER:
        days = payload.get("days_pending", "several")
        return (
            "Pending Approval Reminder",
            f"You have an expense approval that has been pending for {days} days.",
        )
    raise ValueError(f"Unknown notification kind: {kind}")


class SqlNotificationSink:
    """NotificationSink that persists Notification rows in the session."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def notify(
        self,
        user_id: UUID,
        kind: NotificationKind,
        expense_id: UUID | None,
        payload: dict[str, Any],
    ) -> None:
        kind = NotificationKind(kind)
        title, message = render_notification(kind, payload)
        self._session.add(
            Notification(
                user_id=user_id,
                expense_id=expense_id,
                type=kind.value,
                title=title,
                message=message,
                payload=to_jsonable(payload),
                is_read=False,
                created_at=self._clock.now(),
            )
        )
        self._session.flush()


class NotificationDispatcher:
    """Best-effort delivery through a sink, isolated in a savepoint.

    Returns True when the sink accepted the notification.
    """

    def __init__(self, session: Session, sink: NotificationSink):
        self._session = session
        self._sink = sink

    def dispatch(
        self,
        user_id: UUID,
        kind: NotificationKind,
        expense_id: UUID | None,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        payload = payload or {}
        try:
            with self._session.begin_nested():
                self._sink.notify(user_id, kind, expense_id, payload)
        except Exception:
            logger.warning(
                "notification_delivery_failed",
                extra={
                    "recipient_id": str(user_id),
                    "notification_kind": NotificationKind(kind).value,
                    "expense_id": str(expense_id) if expense_id else None,
                },
                exc_info=True,
            )
            return False

        logger.debug(
            "notification_dispatched",
            extra={
                "recipient_id": str(user_id),
                "notification_kind": NotificationKind(kind).value,
            },
        )
        return True


class NotificationService(BaseService[Notification]):
    """Inbox operations and retention for persisted notifications."""

    def list_notifications(
        self,
        user_id: UUID,
        unread_only: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[NotificationRecord]:
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read.is_(False))
        query = query.order_by(
            Notification.created_at.desc(), Notification.id,
        ).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return [n.to_dto() for n in self.session.execute(query).scalars()]

    def unread_count(self, user_id: UUID) -> int:
        return self.session.execute(
            select(func.count())
            .select_from(Notification)
            .where(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
            )
        ).scalar_one()

    def mark_read(self, notification_id: UUID, user_id: UUID) -> bool:
        """Mark one of the user's notifications read.

        Returns False when the notification does not exist, belongs to
        another user, or was already read.
        """
        result = self.session.execute(
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
            )
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    def mark_all_read(self, user_id: UUID) -> int:
        result = self.session.execute(
            update(Notification)
            .where(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
            )
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def purge_read(self, retention_days: int) -> int:
        """Delete read notifications older than the retention period."""
        cutoff = self.clock.now() - timedelta(days=retention_days)
        result = self.session.execute(
            delete(Notification)
            .where(
                Notification.is_read.is_(True),
                Notification.created_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0
        logger.info(
            "notifications_purged",
            extra={"retention_days": retention_days, "rows_deleted": deleted},
        )
        return deleted
