"""
EscalationService -- time-driven sweeps over pending approval tasks.

Responsibility:
    - escalate: hand tasks that waited longer than a timeout to the
      approver's manager (or a company admin).
    - remind: nudge approvers whose tasks have been waiting since their
      notification, at most once per window.

Architecture position:
    Kernel > Services.  Invoked by ApprovalEngine sweeps, which the
    ApprovalSweepScheduler in ``approval_batch`` runs periodically.

Invariants enforced:
    - Each escalation candidate is processed in its own savepoint.  A
      failure is recorded in the report and never aborts the sweep.
    - The original task is skipped through a conditional UPDATE guarded by
      ``status = 'pending'``; a miss means a concurrent decision won and
      the candidate is reported as a lost race.
    - A target that already holds a task for the same (expense, step
      number) is never assigned twice.  The task stays pending.
    - Reminders are stamped with ``last_reminded_at`` through a
      conditional UPDATE before sending, so two sweeps inside one window
      produce one reminder.  Reminders never change workflow status.

Failure modes:
    - No target: warning ``escalation_target_missing``, task left pending.
    - Unexpected errors per candidate: error log
      ``escalation_step_failed``, savepoint rolled back.
"""

from __future__ import annotations

from datetime import timedelta
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from approval_kernel.domain.approval import (
    ApproverType,
    EscalationReport,
    ExpenseStatus,
    HistoryAction,
    NotificationKind,
    ReminderReport,
    StepStatus,
)
from approval_kernel.domain.clock import Clock, as_utc
from approval_kernel.domain.directory import DirectoryService
from approval_kernel.logging_config import get_logger
from approval_kernel.models.approval_step import ApprovalStep
from approval_kernel.services.base import BaseService
from approval_kernel.services.guards import (
    cas_expense,
    cas_step,
    lock_expense,
    mark_notified,
)
from approval_kernel.services.history_service import HistoryService
from approval_kernel.services.notification_service import NotificationDispatcher

logger = get_logger("services.escalation")

ADMIN_ROLE = "admin"

_ESCALATED = "escalated"
_UNRESOLVED = "unresolved"
_LOST_RACE = "lost_race"


class EscalationService(BaseService[ApprovalStep]):
    """Escalation and reminder sweeps."""

    def __init__(
        self,
        session: Session,
        directory: DirectoryService,
        notifier: NotificationDispatcher,
        clock: Clock | None = None,
    ):
        super().__init__(session, clock)
        self._directory = directory
        self._notifier = notifier
        self._history = HistoryService(session, self.clock)

    # =====================================================================
    # Escalation
    # =====================================================================

    def escalate(self, timeout_hours: float) -> EscalationReport:
        """Escalate every pending task older than ``timeout_hours``."""
        if timeout_hours <= 0:
            raise ValueError("timeout_hours must be positive")

        cutoff = self.clock.now() - timedelta(hours=timeout_hours)
        candidates = self.session.execute(
            select(ApprovalStep.id)
            .where(
                ApprovalStep.status == StepStatus.PENDING.value,
                ApprovalStep.created_at < cutoff,
            )
            .order_by(ApprovalStep.created_at, ApprovalStep.id)
        ).scalars().all()

        buckets: dict[str, list[UUID]] = {
            _ESCALATED: [], _UNRESOLVED: [], _LOST_RACE: [],
        }
        failed: list[UUID] = []
        for step_id in candidates:
            try:
                with self.session.begin_nested():
                    outcome = self._escalate_one(step_id, timeout_hours)
            except Exception:
                logger.error(
                    "escalation_step_failed",
                    extra={"step_id": str(step_id)},
                    exc_info=True,
                )
                failed.append(step_id)
                continue
            buckets[outcome].append(step_id)

        report = EscalationReport(
            escalated=tuple(buckets[_ESCALATED]),
            unresolved=tuple(buckets[_UNRESOLVED]),
            lost_race=tuple(buckets[_LOST_RACE]),
            failed=tuple(failed),
        )
        logger.info(
            "escalation_sweep_completed",
            extra={
                "timeout_hours": timeout_hours,
                "examined": report.examined,
                "escalated": len(report.escalated),
                "unresolved": len(report.unresolved),
                "lost_race": len(report.lost_race),
                "failed": len(report.failed),
            },
        )
        return report

    def _escalate_one(self, step_id: UUID, timeout_hours: float) -> str:
        step = self.session.get(ApprovalStep, step_id)
        if step is None:
            return _LOST_RACE
        expense = lock_expense(self.session, step.expense_id)
        step = self.session.execute(
            select(ApprovalStep)
            .where(ApprovalStep.id == step_id)
            .execution_options(populate_existing=True)
        ).scalar_one()
        if (
            step.status != StepStatus.PENDING.value
            or expense.status != ExpenseStatus.IN_APPROVAL.value
        ):
            return _LOST_RACE

        target = self._find_target(step.approver_id, expense.company_id)
        if target is None:
            logger.warning(
                "escalation_target_missing",
                extra={
                    "step_id": str(step.id),
                    "expense_id": str(expense.id),
                    "approver_id": str(step.approver_id),
                },
            )
            return _UNRESOLVED

        if self._holds_task(expense.id, step.step_number, target):
            logger.warning(
                "escalation_target_already_assigned",
                extra={
                    "step_id": str(step.id),
                    "expense_id": str(expense.id),
                    "target_id": str(target),
                },
            )
            return _UNRESOLVED

        now = self.clock.now()
        reason = f"Escalated due to {timeout_hours:g}h timeout"
        if not cas_step(
            self.session,
            step,
            status=StepStatus.SKIPPED.value,
            comments=reason,
            decided_at=now,
        ):
            return _LOST_RACE

        replacement = ApprovalStep(
            expense_id=expense.id,
            workflow_step_id=step.workflow_step_id,
            step_number=step.step_number,
            approver_id=target,
            approver_type=ApproverType.ESCALATED.value,
            status=StepStatus.PENDING.value,
            escalated_from_id=step.id,
            created_at=now,
        )
        self.session.add(replacement)
        self.session.flush()

        cas_expense(self.session, expense)
        self._history.record(
            expense.id,
            HistoryAction.ESCALATED,
            user_id=target,
            step_number=step.step_number,
            previous_status=expense.status,
            new_status=expense.status,
            comments=reason,
            metadata={
                "escalated_from_step_id": step.id,
                "from_approver_id": step.approver_id,
                "to_approver_id": target,
                "new_step_id": replacement.id,
                "timeout_hours": timeout_hours,
            },
        )
        logger.info(
            "approval_step_escalated",
            extra={
                "expense_id": str(expense.id),
                "step_id": str(step.id),
                "new_step_id": str(replacement.id),
                "target_id": str(target),
            },
        )

        if self._notifier.dispatch(
            target,
            NotificationKind.ESCALATED,
            expense.id,
            {
                "reason": reason,
                "step_number": step.step_number,
                "step_id": replacement.id,
                "escalated_from_id": step.approver_id,
            },
        ):
            mark_notified(self.session, replacement.id, now)
        return _ESCALATED

    def _find_target(self, approver_id: UUID, company_id: UUID) -> UUID | None:
        """Active manager of the approver, else the first company admin."""
        manager = self._directory.get_manager(approver_id)
        if manager is not None and manager != approver_id:
            return manager
        for admin_id in self._directory.get_users_by_role(company_id, ADMIN_ROLE):
            if admin_id != approver_id:
                return admin_id
        return None

    def _holds_task(self, expense_id: UUID, step_number: int, user_id: UUID) -> bool:
        return self.session.execute(
            select(ApprovalStep.id).where(
                ApprovalStep.expense_id == expense_id,
                ApprovalStep.step_number == step_number,
                ApprovalStep.approver_id == user_id,
            )
        ).first() is not None

    # =====================================================================
    # Reminders
    # =====================================================================

    def remind(self, days: int) -> ReminderReport:
        """Remind approvers of tasks notified at least ``days`` ago."""
        if days <= 0:
            raise ValueError("days must be positive")

        now = self.clock.now()
        cutoff = now - timedelta(days=days)
        due = or_(
            ApprovalStep.last_reminded_at.is_(None),
            ApprovalStep.last_reminded_at <= cutoff,
        )
        candidates = self.session.execute(
            select(ApprovalStep)
            .where(
                ApprovalStep.status == StepStatus.PENDING.value,
                ApprovalStep.notified_at.is_not(None),
                ApprovalStep.notified_at <= cutoff,
                due,
            )
            .order_by(ApprovalStep.created_at, ApprovalStep.id)
        ).scalars().all()

        reminded: list[UUID] = []
        for step in candidates:
            claimed = self.session.execute(
                update(ApprovalStep)
                .where(
                    ApprovalStep.id == step.id,
                    ApprovalStep.status == StepStatus.PENDING.value,
                    due,
                )
                .values(last_reminded_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                continue
            set_committed_value(step, "last_reminded_at", now)

            days_pending = (now - as_utc(step.created_at)).days
            self._notifier.dispatch(
                step.approver_id,
                NotificationKind.REMINDER,
                step.expense_id,
                {
                    "days_pending": days_pending,
                    "step_number": step.step_number,
                    "step_id": step.id,
                },
            )
            reminded.append(step.id)

        logger.info(
            "reminder_sweep_completed",
            extra={"days": days, "reminded": len(reminded)},
        )
        return ReminderReport(reminded=tuple(reminded))
