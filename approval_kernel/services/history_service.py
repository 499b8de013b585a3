"""
HistoryService -- append-only approval history writer.

Responsibility:
    Write one ApprovalHistory row per workflow transition and expose the
    retention purge, which is the only removal path for history.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - Rows are only ever inserted.  The ORM listeners in
      db/immutability.py reject UPDATE/DELETE.
    - The retention purge only touches rows of terminal expenses older
      than the cutoff, using a Core DELETE.

Audit relevance:
    The history is the timeline shown to users and the input for
    analytics.  ``metadata`` carries rule ids, skip reasons and
    escalation sources as JSON-safe values.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select

from approval_kernel.domain.approval import (
    TERMINAL_EXPENSE_STATUSES,
    HistoryAction,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.expense import Expense
from approval_kernel.models.history import ApprovalHistory
from approval_kernel.services.base import BaseService

logger = get_logger("services.history")


def to_jsonable(value: Any) -> Any:
    """Convert UUID/Decimal/datetime/Enum values for a JSON column."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    return value


class HistoryService(BaseService[ApprovalHistory]):
    """Writes approval history rows."""

    def record(
        self,
        expense_id: UUID,
        action: HistoryAction,
        *,
        user_id: UUID | None = None,
        step_number: int | None = None,
        previous_status: str | None = None,
        new_status: str | None = None,
        comments: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ApprovalHistory:
        """Append one history row and flush it.

        The caller must hold the expense row lock so that sequence numbers
        are assigned without gaps or duplicates.
        """
        sequence = self.session.execute(
            select(func.coalesce(func.max(ApprovalHistory.sequence_number), 0))
            .where(ApprovalHistory.expense_id == expense_id)
        ).scalar_one()
        row = ApprovalHistory(
            expense_id=expense_id,
            sequence_number=sequence + 1,
            user_id=user_id,
            action=HistoryAction(action).value,
            step_number=step_number,
            previous_status=previous_status,
            new_status=new_status,
            comments=comments,
            details=to_jsonable(metadata) if metadata else None,
            created_at=self.clock.now(),
        )
        self.session.add(row)
        self.session.flush()

        logger.debug(
            "history_recorded",
            extra={
                "history_action": row.action,
                "expense_id": str(expense_id),
                "step_number": step_number,
            },
        )
        return row

    def purge_terminal(self, retention_days: int) -> int:
        """Delete history of terminal expenses older than the retention period.

        Returns:
            Number of rows deleted.
        """
        cutoff = self.clock.now() - timedelta(days=retention_days)
        terminal_expenses = select(Expense.id).where(
            Expense.status.in_([s.value for s in TERMINAL_EXPENSE_STATUSES])
        )
        result = self.session.execute(
            delete(ApprovalHistory)
            .where(
                ApprovalHistory.created_at < cutoff,
                ApprovalHistory.expense_id.in_(terminal_expenses),
            )
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0
        logger.info(
            "history_purged",
            extra={"retention_days": retention_days, "rows_deleted": deleted},
        )
        return deleted
