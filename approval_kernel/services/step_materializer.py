"""
StepMaterializer -- turns the next applicable template step into tasks.

Responsibility:
    Walk the (rule-modified) step list past a given step number, record
    every step that is bypassed with a reason, resolve approvers for the
    first step that needs a human and insert one pending task per
    approver.

Architecture position:
    Kernel > Services.  Uses the pure step predicates in
    ``approval_engines.steps`` and the approver resolver.

Invariants enforced:
    - At most one step number gets tasks per call.
    - Every step that is bypassed for a reason other than "not applicable"
      leaves an ``auto_approved`` history row carrying that reason.
    - Every created task leaves an ``assigned`` history row.

Failure modes:
    - IntegrityError if a task for the same (expense, step, approver)
      already exists.  Cannot happen for freshly advanced steps.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal
from uuid import UUID

from approval_engines.steps import NOT_APPLICABLE, bypass_reason, steps_after
from approval_kernel.domain.approval import (
    REASON_NO_APPROVER,
    BypassedStep,
    ExpenseSnapshot,
    HistoryAction,
    MaterializedStep,
    StepStatus,
    StepTemplate,
)
from approval_kernel.domain.clock import Clock
from approval_kernel.domain.directory import DirectoryService
from approval_kernel.logging_config import get_logger
from approval_kernel.models.approval_step import ApprovalStep
from approval_kernel.services.approver_resolver import resolve
from approval_kernel.services.base import BaseService
from approval_kernel.services.history_service import HistoryService

logger = get_logger("services.step_materializer")


class StepMaterializer(BaseService[ApprovalStep]):
    """Creates the tasks of the next step that needs approvers."""

    def __init__(
        self,
        session,
        directory: DirectoryService,
        history: HistoryService,
        clock: Clock | None = None,
    ):
        super().__init__(session, clock)
        self._directory = directory
        self._history = history

    def materialize(
        self,
        snapshot: ExpenseSnapshot,
        steps: Sequence[StepTemplate],
        start_after: int,
        *,
        expense_status: str,
        approved_amount: Decimal | None = None,
    ) -> MaterializedStep:
        """Advance past ``start_after`` until a step yields tasks.

        Args:
            snapshot: Expense as seen by the engines.
            steps: Step list after rule application.
            start_after: Last completed step number (0 at submission).
            expense_status: Expense status written on the history rows.
            approved_amount: Amount approved at the previous step, for the
                percentage bypass.

        Returns:
            The step that received tasks, or an empty result with
            ``step_number=None`` when the list is exhausted.
        """
        bypassed: list[BypassedStep] = []
        for step in steps_after(steps, start_after):
            reason = bypass_reason(step, snapshot, approved_amount)
            if reason == NOT_APPLICABLE:
                continue
            if reason is not None:
                self._record_bypass(snapshot, step, reason, expense_status)
                bypassed.append(BypassedStep(step.step_number, step.step_name, reason))
                continue

            approver_ids = resolve(step.approver_spec, snapshot, self._directory)
            if not approver_ids:
                logger.warning(
                    "no_approver_resolved",
                    extra={
                        "expense_id": str(snapshot.expense_id),
                        "step_number": step.step_number,
                        "approver_type": step.approver_type.value,
                    },
                )
                self._record_bypass(
                    snapshot, step, REASON_NO_APPROVER, expense_status,
                )
                bypassed.append(
                    BypassedStep(step.step_number, step.step_name, REASON_NO_APPROVER),
                )
                continue

            tasks = self._create_tasks(snapshot, step, approver_ids, expense_status)
            logger.info(
                "approval_step_materialized",
                extra={
                    "expense_id": str(snapshot.expense_id),
                    "step_number": step.step_number,
                    "approver_count": len(tasks),
                    "bypassed_count": len(bypassed),
                },
            )
            return MaterializedStep(
                step_number=step.step_number,
                tasks=tuple(t.to_dto() for t in tasks),
                bypassed=tuple(bypassed),
            )

        return MaterializedStep(step_number=None, bypassed=tuple(bypassed))

    def _record_bypass(
        self,
        snapshot: ExpenseSnapshot,
        step: StepTemplate,
        reason: str,
        expense_status: str,
    ) -> None:
        self._history.record(
            snapshot.expense_id,
            HistoryAction.AUTO_APPROVED,
            step_number=step.step_number,
            previous_status=expense_status,
            new_status=expense_status,
            comments=f"Step '{step.step_name}' bypassed",
            metadata={"reason": reason, "step_name": step.step_name},
        )

    def _create_tasks(
        self,
        snapshot: ExpenseSnapshot,
        step: StepTemplate,
        approver_ids: Sequence[UUID],
        expense_status: str,
    ) -> list[ApprovalStep]:
        now = self.clock.now()
        tasks = [
            ApprovalStep(
                expense_id=snapshot.expense_id,
                workflow_step_id=step.template_step_id,
                step_number=step.step_number,
                approver_id=approver_id,
                approver_type=step.approver_type.value,
                status=StepStatus.PENDING.value,
                created_at=now,
            )
            for approver_id in approver_ids
        ]
        self.session.add_all(tasks)
        self.session.flush()

        for task in tasks:
            self._history.record(
                snapshot.expense_id,
                HistoryAction.ASSIGNED,
                user_id=task.approver_id,
                step_number=step.step_number,
                previous_status=expense_status,
                new_status=expense_status,
                metadata={
                    "step_id": task.id,
                    "step_name": step.step_name,
                    "approver_type": step.approver_type.value,
                },
            )
        return tasks
