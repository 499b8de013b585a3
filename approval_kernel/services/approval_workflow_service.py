"""
ApprovalWorkflowService -- the expense approval state machine.

Responsibility:
    Submission (select workflow, apply rules, materialize the first step)
    and approver decisions (approve, reject, advance to the next step or
    finish).  Owns every expense status transition.

Architecture position:
    Kernel > Services -- imperative shell around the pure engines in
    ``approval_engines``.  Called by ``approval_services.ApprovalEngine``
    inside one transaction per operation.

Invariants enforced:
    - Expense rows are locked and written only through the guards in
      ``services/guards.py`` (row lock, version compare-and-swap).
    - A task is decided at most once: the decision UPDATE is guarded by
      ``status = 'pending'``.
    - The step advances only when no task of the current step number is
      still pending, re-counted inside the transaction.
    - An approved or rejected expense has no pending task.  Rejection
      skips every sibling task in the same transaction.
    - Exactly one history row per transition, written under the expense
      lock.

Failure modes:
    - ExpenseNotFoundError, ApprovalStepNotFoundError, WorkflowNotFoundError.
    - InvalidExpenseStateError, StepNotPendingError, InvalidActionError.
    - UnauthorizedActorError, UnauthorizedApproverError.
    - RejectionReasonRequiredError, InvalidAmountError.
    - ConcurrentModificationError when another transaction changed the
      expense between lock and write.

Audit relevance:
    Every transition leaves a history row.  Currency, directory and
    notification failures are logged and never abort a transition.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from approval_engines.rules import apply_rules
from approval_kernel.domain.approval import (
    REASON_ALL_APPROVED,
    REASON_EXPENSE_REJECTED,
    REASON_NO_APPROVERS_REQUIRED,
    REASON_RULE_AUTO_APPROVE,
    ApprovalAction,
    ApprovalOutcome,
    ExpenseSnapshot,
    ExpenseStatus,
    HistoryAction,
    MaterializedStep,
    NotificationKind,
    RuleEvaluation,
    StepStatus,
    SubmissionResult,
)
from approval_kernel.domain.clock import Clock
from approval_kernel.domain.directory import CurrencyConverter, DirectoryService
from approval_kernel.exceptions import (
    ApprovalStepNotFoundError,
    InvalidActionError,
    InvalidAmountError,
    InvalidExpenseStateError,
    RejectionReasonRequiredError,
    StepNotPendingError,
    UnauthorizedActorError,
    UnauthorizedApproverError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.approval_step import ApprovalStep
from approval_kernel.models.expense import Expense
from approval_kernel.services.base import BaseService
from approval_kernel.services.guards import (
    cas_expense,
    cas_step,
    count_pending,
    lock_expense,
    mark_notified,
)
from approval_kernel.services.history_service import HistoryService
from approval_kernel.services.notification_service import NotificationDispatcher
from approval_kernel.services.step_materializer import StepMaterializer
from approval_kernel.services.workflow_selector import WorkflowSelector, load_rules

logger = get_logger("services.approval_workflow")

_RATE_QUANTUM = Decimal("0.000000001")
_SYSTEM_APPROVER = "automatic approval"


class ApprovalWorkflowService(BaseService[Expense]):
    """Drives an expense from draft to approved or rejected."""

    def __init__(
        self,
        session: Session,
        directory: DirectoryService,
        notifier: NotificationDispatcher,
        converter: CurrencyConverter | None = None,
        selector: WorkflowSelector | None = None,
        clock: Clock | None = None,
    ):
        super().__init__(session, clock)
        self._directory = directory
        self._notifier = notifier
        self._converter = converter
        self._selector = selector or WorkflowSelector(session)
        self._history = HistoryService(session, self.clock)
        self._materializer = StepMaterializer(
            session, directory, self._history, self.clock,
        )

    # =====================================================================
    # Submission
    # =====================================================================

    def submit(self, expense_id: UUID, actor_id: UUID | None = None) -> SubmissionResult:
        """Submit a draft expense into its approval workflow.

        Args:
            expense_id: Expense to submit.
            actor_id: When given, must be the submitter.

        Returns:
            SubmissionResult with the resulting status and pending approvers.
        """
        expense = lock_expense(self.session, expense_id)
        if actor_id is not None and actor_id != expense.user_id:
            raise UnauthorizedActorError(str(expense_id), str(actor_id))
        if expense.status != ExpenseStatus.DRAFT.value:
            raise InvalidExpenseStateError(str(expense_id), expense.status, "submit")

        now = self.clock.now()
        normalized, rate = self._normalize(expense)
        department = self._lookup("get_department", expense.user_id)

        snapshot = ExpenseSnapshot(
            expense_id=expense.id,
            company_id=expense.company_id,
            submitter_id=expense.user_id,
            amount=expense.amount,
            currency=expense.currency,
            amount_in_company_currency=normalized,
            category=expense.category,
            department=department,
            description=expense.description,
        )
        template = self._selector.select(snapshot)

        self._history.record(
            expense.id,
            HistoryAction.SUBMITTED,
            user_id=expense.user_id,
            previous_status=ExpenseStatus.DRAFT.value,
            new_status=ExpenseStatus.SUBMITTED.value,
            metadata={
                "workflow_id": template.workflow_id,
                "workflow_name": template.name,
                "amount": expense.amount,
                "currency": expense.currency,
                "amount_in_company_currency": normalized,
            },
        )

        bound = {
            "workflow_id": template.workflow_id,
            "submitted_at": now,
            "amount_in_company_currency": normalized,
            "exchange_rate": rate,
        }
        evaluation = self._evaluate(snapshot, template.steps, template.workflow_id)

        if evaluation.is_auto_approved:
            rule = evaluation.auto_approved_by
            self._finish_approved(
                expense,
                previous_status=ExpenseStatus.SUBMITTED.value,
                action=HistoryAction.AUTO_APPROVED,
                comments=f"Auto-approved by rule '{rule.name}'",
                metadata={
                    "reason": REASON_RULE_AUTO_APPROVE,
                    "rule_id": rule.rule_id,
                    "rule_name": rule.name,
                },
                extra_values=bound,
            )
            result = SubmissionResult(
                expense_id=expense.id,
                status=ExpenseStatus.APPROVED,
                workflow_id=template.workflow_id,
                current_step_number=expense.current_step_number,
                auto_approved_rule_id=rule.rule_id,
            )
            self._log_submitted(result)
            return result

        materialized = self._materializer.materialize(
            snapshot,
            evaluation.steps,
            0,
            expense_status=ExpenseStatus.SUBMITTED.value,
        )

        if materialized.is_empty:
            self._finish_approved(
                expense,
                previous_status=ExpenseStatus.SUBMITTED.value,
                action=HistoryAction.APPROVED,
                comments=REASON_NO_APPROVERS_REQUIRED,
                metadata={"reason": REASON_NO_APPROVERS_REQUIRED},
                extra_values=bound,
            )
            result = SubmissionResult(
                expense_id=expense.id,
                status=ExpenseStatus.APPROVED,
                workflow_id=template.workflow_id,
                current_step_number=expense.current_step_number,
            )
            self._log_submitted(result)
            return result

        cas_expense(
            self.session,
            expense,
            status=ExpenseStatus.IN_APPROVAL.value,
            current_step_number=materialized.step_number,
            **bound,
        )
        self._notify_approvers(expense, materialized)

        result = SubmissionResult(
            expense_id=expense.id,
            status=ExpenseStatus.IN_APPROVAL,
            workflow_id=template.workflow_id,
            current_step_number=materialized.step_number,
            pending_approver_ids=materialized.approver_ids,
        )
        self._log_submitted(result)
        return result

    # =====================================================================
    # Decisions
    # =====================================================================

    def process_approval(
        self,
        step_id: UUID,
        actor_id: UUID,
        action: ApprovalAction | str,
        comments: str | None = None,
        approved_amount: Decimal | None = None,
    ) -> ApprovalOutcome:
        """Record an approver's decision on a pending task.

        Args:
            step_id: The approval task being decided.
            actor_id: Must be the task's approver.
            action: ``approve`` or ``reject``.
            comments: Required (non-blank) for ``reject``.
            approved_amount: Amount approved; defaults to the full amount.

        Returns:
            ApprovalOutcome describing the resulting expense state.
        """
        decision = self._parse_action(action)

        step = self.session.get(ApprovalStep, step_id)
        if step is None:
            raise ApprovalStepNotFoundError(str(step_id))
        if step.approver_id != actor_id:
            raise UnauthorizedApproverError(str(step_id), str(actor_id))

        expense = lock_expense(self.session, step.expense_id)
        step = self.session.execute(
            select(ApprovalStep)
            .where(ApprovalStep.id == step_id)
            .execution_options(populate_existing=True)
        ).scalar_one()

        if step.status != StepStatus.PENDING.value:
            raise StepNotPendingError(str(step_id), step.status)
        if expense.status != ExpenseStatus.IN_APPROVAL.value:
            raise InvalidExpenseStateError(
                str(expense.id), expense.status, "process_approval",
            )

        if decision == ApprovalAction.REJECT:
            if comments is None or not comments.strip():
                raise RejectionReasonRequiredError(str(step_id))
            return self._reject(expense, step, actor_id, comments.strip())

        amount = self._validate_amount(expense, approved_amount)
        return self._approve(expense, step, actor_id, comments, amount)

    def _approve(
        self,
        expense: Expense,
        step: ApprovalStep,
        actor_id: UUID,
        comments: str | None,
        amount: Decimal,
    ) -> ApprovalOutcome:
        now = self.clock.now()
        if not cas_step(
            self.session,
            step,
            status=StepStatus.APPROVED.value,
            comments=comments,
            approved_amount=amount,
            decided_at=now,
        ):
            raise StepNotPendingError(str(step.id), step.status)

        self._history.record(
            expense.id,
            HistoryAction.APPROVED,
            user_id=actor_id,
            step_number=step.step_number,
            previous_status=expense.status,
            new_status=expense.status,
            comments=comments,
            metadata={"step_id": step.id, "approved_amount": amount},
        )
        logger.info(
            "approval_step_decided",
            extra={
                "expense_id": str(expense.id),
                "step_id": str(step.id),
                "step_number": step.step_number,
                "decision": ApprovalAction.APPROVE.value,
                "approved_amount": str(amount),
            },
        )

        remaining = count_pending(self.session, expense.id, step.step_number)
        if remaining:
            cas_expense(self.session, expense, approved_amount=amount)
            return self._outcome(expense, step, ApprovalAction.APPROVE)

        approver_name = self._lookup("get_user_name", actor_id)
        return self._advance(expense, step, amount, approver_name, comments)

    def _advance(
        self,
        expense: Expense,
        step: ApprovalStep,
        amount: Decimal,
        approver_name: str | None,
        comments: str | None,
    ) -> ApprovalOutcome:
        template = self._selector.get(expense.company_id, expense.workflow_id)
        steps = template.steps if template is not None else ()
        snapshot = expense.to_snapshot(
            self._lookup("get_department", expense.user_id),
        )
        evaluation = self._evaluate(snapshot, steps, expense.workflow_id)

        if evaluation.is_auto_approved:
            rule = evaluation.auto_approved_by
            self._skip_pending(expense.id, f"Auto-approved by rule '{rule.name}'")
            self._finish_approved(
                expense,
                previous_status=expense.status,
                action=HistoryAction.AUTO_APPROVED,
                comments=f"Auto-approved by rule '{rule.name}'",
                metadata={
                    "reason": REASON_RULE_AUTO_APPROVE,
                    "rule_id": rule.rule_id,
                    "rule_name": rule.name,
                },
                extra_values={"approved_amount": amount},
            )
            return self._outcome(expense, step, ApprovalAction.APPROVE)

        materialized = self._materializer.materialize(
            snapshot,
            evaluation.steps,
            expense.current_step_number,
            expense_status=expense.status,
            approved_amount=amount,
        )
        if materialized.is_empty:
            self._finish_approved(
                expense,
                previous_status=expense.status,
                action=HistoryAction.APPROVED,
                comments=REASON_ALL_APPROVED,
                metadata={"reason": REASON_ALL_APPROVED},
                extra_values={"approved_amount": amount},
                approver_name=approver_name,
                approver_comments=comments,
            )
            return self._outcome(expense, step, ApprovalAction.APPROVE)

        cas_expense(
            self.session,
            expense,
            current_step_number=materialized.step_number,
            approved_amount=amount,
        )
        logger.info(
            "approval_step_advanced",
            extra={
                "expense_id": str(expense.id),
                "from_step": step.step_number,
                "to_step": materialized.step_number,
            },
        )
        self._notify_approvers(expense, materialized)
        return self._outcome(
            expense, step, ApprovalAction.APPROVE, materialized.approver_ids,
        )

    def _reject(
        self,
        expense: Expense,
        step: ApprovalStep,
        actor_id: UUID,
        comments: str,
    ) -> ApprovalOutcome:
        now = self.clock.now()
        if not cas_step(
            self.session,
            step,
            status=StepStatus.REJECTED.value,
            comments=comments,
            decided_at=now,
        ):
            raise StepNotPendingError(str(step.id), step.status)

        skipped = self._skip_pending(expense.id, REASON_EXPENSE_REJECTED)
        previous_status = expense.status
        cas_expense(
            self.session,
            expense,
            status=ExpenseStatus.REJECTED.value,
            rejection_reason=comments,
            rejected_at=now,
        )
        self._history.record(
            expense.id,
            HistoryAction.REJECTED,
            user_id=actor_id,
            step_number=step.step_number,
            previous_status=previous_status,
            new_status=ExpenseStatus.REJECTED.value,
            comments=comments,
            metadata={"step_id": step.id, "skipped_tasks": skipped},
        )
        logger.info(
            "approval_step_decided",
            extra={
                "expense_id": str(expense.id),
                "step_id": str(step.id),
                "step_number": step.step_number,
                "decision": ApprovalAction.REJECT.value,
                "skipped_tasks": skipped,
            },
        )
        logger.info(
            "expense_rejected",
            extra={"expense_id": str(expense.id), "step_number": step.step_number},
        )
        self._notify_submitter(
            expense,
            NotificationKind.REJECTED,
            self._lookup("get_user_name", actor_id),
            comments,
        )
        return self._outcome(expense, step, ApprovalAction.REJECT)

    # =====================================================================
    # Helpers
    # =====================================================================

    @staticmethod
    def _parse_action(action: ApprovalAction | str) -> ApprovalAction:
        try:
            return ApprovalAction(action)
        except ValueError:
            raise InvalidActionError(str(action)) from None

    @staticmethod
    def _validate_amount(expense: Expense, approved_amount: Any) -> Decimal:
        if approved_amount is None:
            return expense.amount
        try:
            amount = Decimal(str(approved_amount))
        except ArithmeticError:
            raise InvalidAmountError(
                str(expense.id), str(approved_amount), "not a number",
            ) from None
        if not amount.is_finite() or amount <= 0:
            raise InvalidAmountError(
                str(expense.id), str(approved_amount), "must be positive",
            )
        if amount > expense.amount:
            raise InvalidAmountError(
                str(expense.id), str(approved_amount),
                "exceeds the requested amount",
            )
        return amount

    def _normalize(self, expense: Expense) -> tuple[Decimal | None, Decimal | None]:
        """Company-currency amount and rate; (None, None) when unavailable."""
        if self._converter is None:
            return None, None
        try:
            normalized = self._converter.normalize_to_company_currency(
                expense.amount, expense.currency, expense.company_id,
            )
        except Exception:
            logger.warning(
                "currency_normalization_failed",
                extra={
                    "expense_id": str(expense.id),
                    "currency": expense.currency,
                    "amount": str(expense.amount),
                },
                exc_info=True,
            )
            return None, None
        rate = (normalized / expense.amount).quantize(_RATE_QUANTUM)
        return normalized, rate

    def _lookup(self, method: str, *args: Any) -> Any:
        """Directory call whose failure only degrades presentation."""
        try:
            return getattr(self._directory, method)(*args)
        except Exception:
            logger.warning(
                "directory_lookup_failed",
                extra={"directory_method": method},
                exc_info=True,
            )
            return None

    def _evaluate(self, snapshot, steps, workflow_id) -> RuleEvaluation:
        rules = load_rules(self.session, snapshot.company_id, workflow_id)
        evaluation = apply_rules(snapshot, steps, rules)
        for rule in evaluation.fired:
            logger.info(
                "approval_rule_fired",
                extra={
                    "expense_id": str(snapshot.expense_id),
                    "rule_id": str(rule.rule_id),
                    "rule_name": rule.name,
                    "rule_action": rule.action_type,
                },
            )
        for ignored in evaluation.ignored:
            logger.debug(
                "approval_rule_ignored",
                extra={
                    "expense_id": str(snapshot.expense_id),
                    "rule_id": str(ignored.rule.rule_id),
                    "reason": ignored.reason,
                },
            )
        return evaluation

    def _skip_pending(self, expense_id: UUID, comment: str) -> int:
        """Skip every pending task of the expense.  Returns the row count."""
        result = self.session.execute(
            update(ApprovalStep)
            .where(
                ApprovalStep.expense_id == expense_id,
                ApprovalStep.status == StepStatus.PENDING.value,
            )
            .values(
                status=StepStatus.SKIPPED.value,
                comments=comment,
                decided_at=self.clock.now(),
            )
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    def _finish_approved(
        self,
        expense: Expense,
        *,
        previous_status: str,
        action: HistoryAction,
        comments: str,
        metadata: dict[str, Any],
        extra_values: dict[str, Any],
        approver_name: str | None = None,
        approver_comments: str | None = None,
    ) -> None:
        now = self.clock.now()
        cas_expense(
            self.session,
            expense,
            status=ExpenseStatus.APPROVED.value,
            approved_at=now,
            **extra_values,
        )
        self._history.record(
            expense.id,
            action,
            previous_status=previous_status,
            new_status=ExpenseStatus.APPROVED.value,
            comments=comments,
            metadata=metadata,
        )
        logger.info(
            "expense_approved",
            extra={
                "expense_id": str(expense.id),
                "history_action": HistoryAction(action).value,
                "reason": metadata.get("reason"),
            },
        )
        self._notify_submitter(
            expense,
            NotificationKind.APPROVED,
            approver_name or _SYSTEM_APPROVER,
            approver_comments,
        )

    def _notify_submitter(
        self,
        expense: Expense,
        kind: NotificationKind,
        approver_name: str | None,
        comments: str | None,
    ) -> None:
        self._notifier.dispatch(
            expense.user_id,
            kind,
            expense.id,
            {
                "approver_name": approver_name,
                "comments": comments,
                "amount": expense.amount,
                "currency": expense.currency,
            },
        )

    def _notify_approvers(self, expense: Expense, materialized: MaterializedStep) -> None:
        submitter_name = self._lookup("get_user_name", expense.user_id)
        for task in materialized.tasks:
            delivered = self._notifier.dispatch(
                task.approver_id,
                NotificationKind.APPROVAL_REQUEST,
                expense.id,
                {
                    "submitter_name": submitter_name,
                    "amount": expense.amount,
                    "currency": expense.currency,
                    "step_number": task.step_number,
                    "step_id": task.step_id,
                },
            )
            if delivered:
                mark_notified(self.session, task.step_id, self.clock.now())

    @staticmethod
    def _outcome(
        expense: Expense,
        step: ApprovalStep,
        action: ApprovalAction,
        new_approver_ids: tuple[UUID, ...] = (),
    ) -> ApprovalOutcome:
        return ApprovalOutcome(
            expense_id=expense.id,
            step_id=step.id,
            action=action,
            expense_status=ExpenseStatus(expense.status),
            current_step_number=expense.current_step_number,
            new_approver_ids=new_approver_ids,
        )

    @staticmethod
    def _log_submitted(result: SubmissionResult) -> None:
        logger.info(
            "expense_submitted",
            extra={
                "expense_id": str(result.expense_id),
                "workflow_id": str(result.workflow_id),
                "expense_status": result.status.value,
                "current_step_number": result.current_step_number,
                "approver_count": len(result.pending_approver_ids),
                "auto_approved_rule_id": (
                    str(result.auto_approved_rule_id)
                    if result.auto_approved_rule_id else None
                ),
            },
        )
