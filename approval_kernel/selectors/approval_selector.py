"""
Module: approval_kernel.selectors.approval_selector
Responsibility: Read-only queries over approval tasks and history: an
    approver's work queue, an expense's timeline and the approval analytics.
Architecture position: Kernel > Selectors.  May import from models/,
    domain/ and selectors/base.py.

Invariants enforced:
    - Read-only: No mutations performed on any queried data.
    - DTO convention: public methods return ApprovalStepRecord, HistoryEntry,
      ApproverStats or WorkflowAnalyticsRow, never ORM models.
    - Deterministic ordering: tasks by (created_at, id), timelines by the
      per-expense sequence number.

Failure modes:
    - Returns empty results when nothing matches (never raises on absence
      of data).
"""

from collections import defaultdict
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import select

from approval_kernel.domain.approval import (
    ApprovalStepRecord,
    ApproverStats,
    ExpenseStatus,
    HistoryAction,
    HistoryEntry,
    StepStatus,
    WorkflowAnalyticsRow,
)
from approval_kernel.domain.clock import as_utc
from approval_kernel.models.approval_step import ApprovalStep
from approval_kernel.models.expense import Expense
from approval_kernel.models.history import ApprovalHistory
from approval_kernel.selectors.base import BaseSelector

_CENTS = Decimal("0.01")


class ApprovalSelector(BaseSelector[ApprovalStep]):
    """Read side of the approval engine."""

    def get_pending_steps_for_approver(self, user_id: UUID) -> list[ApprovalStepRecord]:
        """Pending tasks of ``user_id`` on expenses that are in approval."""
        steps = self.session.execute(
            select(ApprovalStep)
            .join(Expense, Expense.id == ApprovalStep.expense_id)
            .where(
                ApprovalStep.approver_id == user_id,
                ApprovalStep.status == StepStatus.PENDING.value,
                Expense.status == ExpenseStatus.IN_APPROVAL.value,
            )
            .order_by(ApprovalStep.created_at, ApprovalStep.id)
        ).scalars().all()
        return [step.to_dto() for step in steps]

    def get_expense_steps(self, expense_id: UUID) -> list[ApprovalStepRecord]:
        """Every task of an expense, in step then creation order."""
        steps = self.session.execute(
            select(ApprovalStep)
            .where(ApprovalStep.expense_id == expense_id)
            .order_by(
                ApprovalStep.step_number,
                ApprovalStep.created_at,
                ApprovalStep.id,
            )
        ).scalars().all()
        return [step.to_dto() for step in steps]

    def get_timeline(self, expense_id: UUID) -> list[HistoryEntry]:
        """History of an expense in the order it was written."""
        rows = self.session.execute(
            select(ApprovalHistory)
            .where(ApprovalHistory.expense_id == expense_id)
            .order_by(ApprovalHistory.sequence_number)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def get_approval_stats(self, user_id: UUID, days: int = 30) -> ApproverStats:
        """
        Decision counts and average decision time for one approver.

        Only tasks created within the last ``days`` days are counted.  The
        average covers decided tasks that carry a decision timestamp.
        """
        cutoff = self.clock.now() - timedelta(days=days)
        steps = self.session.execute(
            select(ApprovalStep).where(
                ApprovalStep.approver_id == user_id,
                ApprovalStep.created_at >= cutoff,
            )
        ).scalars().all()

        counts: dict[str, int] = defaultdict(int)
        durations: list[float] = []
        for step in steps:
            counts[step.status] += 1
            if step.status != StepStatus.PENDING.value and step.decided_at is not None:
                elapsed = as_utc(step.decided_at) - as_utc(step.created_at)
                durations.append(elapsed.total_seconds() / 3600)

        average = round(sum(durations) / len(durations), 2) if durations else None
        return ApproverStats(
            user_id=user_id,
            days=days,
            pending=counts[StepStatus.PENDING.value],
            approved=counts[StepStatus.APPROVED.value],
            rejected=counts[StepStatus.REJECTED.value],
            skipped=counts[StepStatus.SKIPPED.value],
            average_decision_hours=average,
        )

    def get_workflow_analytics(
        self, company_id: UUID, days: int = 30,
    ) -> list[WorkflowAnalyticsRow]:
        """History action counts per day with the average expense amount."""
        cutoff = self.clock.now() - timedelta(days=days)
        rows = self.session.execute(
            select(ApprovalHistory.created_at, ApprovalHistory.action, Expense.amount)
            .join(Expense, Expense.id == ApprovalHistory.expense_id)
            .where(
                Expense.company_id == company_id,
                ApprovalHistory.created_at >= cutoff,
            )
        ).all()

        groups: dict[tuple[str, str], list[Decimal]] = defaultdict(list)
        for created_at, action, amount in rows:
            day = as_utc(created_at).date().isoformat()
            groups[(day, action)].append(amount)

        result = []
        for (day, action), amounts in sorted(groups.items()):
            average = (sum(amounts, Decimal("0")) / len(amounts)).quantize(
                _CENTS, rounding=ROUND_HALF_UP,
            )
            result.append(
                WorkflowAnalyticsRow(
                    day=day,
                    action=HistoryAction(action),
                    count=len(amounts),
                    average_amount=average,
                )
            )
        return result
