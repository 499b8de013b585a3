"""
Tests for ApprovalWorkflowService.submit().

Covers:
- Happy path: workflow bound, first step materialized, approver notified
- Bypasses: auto-approve threshold, no resolvable approver, rule auto-approve
- Rule modifications applied at submission (skip_step)
- Currency normalization and its failure mode
- Guards: unknown expense, non-draft expense, wrong actor, no workflow
- Notification failure never aborts the submission
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from approval_kernel.domain.approval import (
    REASON_BELOW_THRESHOLD,
    REASON_NO_APPROVER,
    REASON_NO_APPROVERS_REQUIRED,
    REASON_RULE_AUTO_APPROVE,
    ExpenseStatus,
    HistoryAction,
    NotificationKind,
)
from approval_kernel.exceptions import (
    ExpenseNotFoundError,
    InvalidExpenseStateError,
    UnauthorizedActorError,
    WorkflowNotFoundError,
)
from approval_kernel.models.approval_step import ApprovalStep


def steps_of(session, expense_id) -> list[ApprovalStep]:
    return session.execute(
        select(ApprovalStep)
        .where(ApprovalStep.expense_id == expense_id)
        .order_by(ApprovalStep.step_number, ApprovalStep.created_at)
        .execution_options(populate_existing=True)
    ).scalars().all()


@pytest.fixture
def two_step_workflow(seed, org):
    return seed.workflow(
        org.company,
        [
            {"step_number": 1, "step_name": "Manager", "approver_type": "manager"},
            {
                "step_number": 2, "step_name": "Finance", "approver_type": "finance",
                "threshold_percentage": Decimal("50"),
            },
        ],
    )


class TestSubmitHappyPath:
    """A draft expense enters its workflow at the first step."""

    def test_first_step_assigned_to_manager(
        self, session, seed, org, two_step_workflow, workflow_service,
    ):
        expense = seed.expense(org.company, org.employee, "250.00", category="travel")

        result = workflow_service.submit(expense.id, actor_id=org.employee.id)

        assert result.status == ExpenseStatus.IN_APPROVAL
        assert result.workflow_id == two_step_workflow.id
        assert result.current_step_number == 1
        assert result.pending_approver_ids == (org.manager.id,)

        assert expense.status == "in_approval"
        assert expense.workflow_id == two_step_workflow.id
        assert expense.current_step_number == 1
        assert expense.submitted_at is not None
        assert expense.version == 2

        [task] = steps_of(session, expense.id)
        assert task.approver_id == org.manager.id
        assert task.status == "pending"
        assert task.workflow_step_id == two_step_workflow.steps[0].id
        assert task.notified_at is not None

    def test_history_records_submission_and_assignment(
        self, seed, org, two_step_workflow, workflow_service, approval_selector,
    ):
        expense = seed.expense(org.company, org.employee, "250.00")
        workflow_service.submit(expense.id)

        timeline = approval_selector.get_timeline(expense.id)
        assert [e.action for e in timeline] == [
            HistoryAction.SUBMITTED, HistoryAction.ASSIGNED,
        ]
        submitted, assigned = timeline
        assert (submitted.previous_status, submitted.new_status) == ("draft", "submitted")
        assert submitted.metadata["workflow_name"] == "Standard"
        assert assigned.user_id == org.manager.id
        assert assigned.step_number == 1
        assert [e.sequence_number for e in timeline] == [1, 2]

    def test_approver_receives_request(
        self, seed, org, two_step_workflow, workflow_service, notification_service,
    ):
        expense = seed.expense(org.company, org.employee, "250.00")
        workflow_service.submit(expense.id)

        [note] = notification_service.list_notifications(org.manager.id)
        assert note.kind == NotificationKind.APPROVAL_REQUEST
        assert note.expense_id == expense.id
        assert "Erin Employee" in note.message
        assert "250.00 USD" in note.message

    def test_submission_logged(
        self, seed, org, two_step_workflow, workflow_service, captured_logs,
    ):
        expense = seed.expense(org.company, org.employee, "250.00")
        workflow_service.submit(expense.id)

        [record] = [r for r in captured_logs() if r["message"] == "expense_submitted"]
        assert record["expense_id"] == str(expense.id)
        assert record["expense_status"] == "in_approval"
        assert record["approver_count"] == 1


class TestSubmitBypasses:
    """Steps that produce no task are annotated and skipped."""

    def test_threshold_auto_approves_small_expense(
        self, session, seed, org, workflow_service, approval_selector,
    ):
        """A $30 expense under a $30 threshold skips the manager step."""
        seed.workflow(
            org.company,
            [{
                "step_number": 1, "step_name": "Manager", "approver_type": "manager",
                "auto_approve_threshold": Decimal("30"),
            }],
        )
        expense = seed.expense(org.company, org.employee, "30.00")

        result = workflow_service.submit(expense.id)

        assert result.status == ExpenseStatus.APPROVED
        assert steps_of(session, expense.id) == []
        assert expense.approved_at is not None

        timeline = approval_selector.get_timeline(expense.id)
        assert [e.action for e in timeline] == [
            HistoryAction.SUBMITTED, HistoryAction.AUTO_APPROVED, HistoryAction.APPROVED,
        ]
        assert timeline[1].metadata["reason"] == REASON_BELOW_THRESHOLD
        assert timeline[2].metadata["reason"] == REASON_NO_APPROVERS_REQUIRED
        assert (timeline[2].previous_status, timeline[2].new_status) == (
            "submitted", "approved",
        )

    def test_just_above_threshold_needs_approval(self, seed, org, workflow_service):
        seed.workflow(
            org.company,
            [{
                "step_number": 1, "step_name": "Manager", "approver_type": "manager",
                "auto_approve_threshold": Decimal("30"),
            }],
        )
        expense = seed.expense(org.company, org.employee, "30.01")

        assert workflow_service.submit(expense.id).status == ExpenseStatus.IN_APPROVAL

    def test_missing_manager_is_annotated_and_skipped(
        self, session, seed, org, workflow_service, approval_selector, captured_logs,
    ):
        seed.workflow(
            org.company,
            [
                {"step_number": 1, "step_name": "Manager", "approver_type": "manager"},
                {"step_number": 2, "step_name": "Finance", "approver_type": "finance"},
            ],
        )
        loner = seed.user(org.company, "Lee Loner")
        expense = seed.expense(org.company, loner, "80.00")

        result = workflow_service.submit(expense.id)

        assert result.current_step_number == 2
        assert result.pending_approver_ids == (org.finance.id,)
        bypass = approval_selector.get_timeline(expense.id)[1]
        assert bypass.action == HistoryAction.AUTO_APPROVED
        assert bypass.metadata == {"reason": REASON_NO_APPROVER, "step_name": "Manager"}
        assert any(r["message"] == "no_approver_resolved" for r in captured_logs())

    def test_inactive_manager_is_not_an_approver(self, seed, org, workflow_service):
        seed.workflow(
            org.company,
            [{"step_number": 1, "step_name": "Manager", "approver_type": "manager"}],
        )
        gone = seed.user(org.company, "Gale Gone", role="manager", is_active=False)
        report = seed.user(org.company, "Rory Report", manager=gone)
        expense = seed.expense(org.company, report, "80.00")

        assert workflow_service.submit(expense.id).status == ExpenseStatus.APPROVED

    def test_not_applicable_step_leaves_no_history(
        self, seed, org, workflow_service, approval_selector,
    ):
        seed.workflow(
            org.company,
            [
                {
                    "step_number": 1, "step_name": "Travel desk",
                    "approver_type": "finance", "category_codes": ["travel"],
                },
                {"step_number": 2, "step_name": "Manager", "approver_type": "manager"},
            ],
        )
        expense = seed.expense(org.company, org.employee, "80.00", category="software")

        result = workflow_service.submit(expense.id)

        assert result.current_step_number == 2
        actions = [e.action for e in approval_selector.get_timeline(expense.id)]
        assert actions == [HistoryAction.SUBMITTED, HistoryAction.ASSIGNED]


class TestSubmitRules:
    """Company rules evaluated at submission."""

    def test_rule_auto_approves(self, session, seed, org, two_step_workflow, workflow_service,
                                approval_selector):
        rule = seed.rule(
            org.company, "Small expenses",
            field="amount", operator="<", value=50, action="auto_approve",
        )
        expense = seed.expense(org.company, org.employee, "20.00")

        result = workflow_service.submit(expense.id)

        assert result.status == ExpenseStatus.APPROVED
        assert result.auto_approved_rule_id == rule.id
        assert steps_of(session, expense.id) == []
        last = approval_selector.get_timeline(expense.id)[-1]
        assert last.action == HistoryAction.AUTO_APPROVED
        assert last.metadata["reason"] == REASON_RULE_AUTO_APPROVE
        assert last.metadata["rule_name"] == "Small expenses"
        assert expense.workflow_id == two_step_workflow.id

    def test_rule_bound_to_other_workflow_ignored(
        self, seed, org, two_step_workflow, workflow_service,
    ):
        other = seed.workflow(
            org.company,
            [{"step_number": 1, "step_name": "CFO", "approver_type": "cfo"}],
            name="Other", is_default=False,
        )
        seed.rule(
            org.company, "Only other",
            field="amount", operator="<", value=50, action="auto_approve",
            workflow=other,
        )
        expense = seed.expense(org.company, org.employee, "20.00")

        assert workflow_service.submit(expense.id).status == ExpenseStatus.IN_APPROVAL

    def test_skip_step_rule_starts_at_finance(
        self, seed, org, two_step_workflow, workflow_service,
    ):
        seed.rule(
            org.company, "Skip manager for software",
            field="category", operator="=", value="software",
            action="skip_step", params={"step_number": 1},
        )
        expense = seed.expense(org.company, org.employee, "400.00", category="software")

        result = workflow_service.submit(expense.id)

        assert result.current_step_number == 2
        assert result.pending_approver_ids == (org.finance.id,)

    def test_misconfigured_rule_logged_not_raised(
        self, seed, org, two_step_workflow, workflow_service, captured_logs,
    ):
        seed.rule(
            org.company, "Broken",
            field="amount", operator="BETWEEN", value=[1, 2], action="auto_approve",
        )
        expense = seed.expense(org.company, org.employee, "20.00")

        assert workflow_service.submit(expense.id).status == ExpenseStatus.IN_APPROVAL
        ignored = [r for r in captured_logs() if r["message"] == "approval_rule_ignored"]
        assert ignored[0]["reason"] == "unknown_operator"


class TestSubmitCurrency:
    """Amounts are compared in the company currency."""

    def test_foreign_amount_normalized(self, seed, org, workflow_service):
        """90 EUR at 0.9 EUR per USD is 100.00 USD."""
        seed.workflow(
            org.company,
            [{
                "step_number": 1, "step_name": "Finance", "approver_type": "finance",
                "amount_min": Decimal("95"),
            }],
        )
        expense = seed.expense(org.company, org.employee, "90.00", currency="EUR")

        result = workflow_service.submit(expense.id)

        assert result.status == ExpenseStatus.IN_APPROVAL
        assert expense.amount_in_company_currency == Decimal("100.00")
        assert expense.exchange_rate == Decimal("1.111111111")

    def test_same_currency_rate_is_one(self, seed, org, two_step_workflow, workflow_service):
        expense = seed.expense(org.company, org.employee, "90.00")
        workflow_service.submit(expense.id)

        assert expense.amount_in_company_currency == Decimal("90")
        assert expense.exchange_rate == Decimal("1")

    def test_conversion_failure_keeps_raw_amount(
        self, seed, org, two_step_workflow, workflow_service, captured_logs,
    ):
        expense = seed.expense(org.company, org.employee, "90.00", currency="JPY")

        result = workflow_service.submit(expense.id)

        assert result.status == ExpenseStatus.IN_APPROVAL
        assert expense.amount_in_company_currency is None
        assert expense.exchange_rate is None
        assert any(
            r["message"] == "currency_normalization_failed" for r in captured_logs()
        )

    def test_without_converter(self, seed, org, two_step_workflow, make_workflow_service):
        service = make_workflow_service(currency_converter=None)
        expense = seed.expense(org.company, org.employee, "90.00", currency="EUR")

        assert service.submit(expense.id).status == ExpenseStatus.IN_APPROVAL
        assert expense.amount_in_company_currency is None


class TestSubmitGuards:
    """Preconditions of submit()."""

    def test_unknown_expense(self, workflow_service, db_tables):
        with pytest.raises(ExpenseNotFoundError):
            workflow_service.submit(uuid4())

    def test_already_submitted(self, seed, org, two_step_workflow, workflow_service):
        expense = seed.expense(org.company, org.employee, "80.00")
        workflow_service.submit(expense.id)

        with pytest.raises(InvalidExpenseStateError) as exc_info:
            workflow_service.submit(expense.id)
        assert exc_info.value.current_status == "in_approval"
        assert exc_info.value.operation == "submit"

    def test_only_submitter_may_submit(self, seed, org, two_step_workflow, workflow_service):
        expense = seed.expense(org.company, org.employee, "80.00")

        with pytest.raises(UnauthorizedActorError):
            workflow_service.submit(expense.id, actor_id=org.manager.id)
        assert expense.status == "draft"

    def test_no_workflow(self, seed, org, workflow_service):
        expense = seed.expense(org.company, org.employee, "80.00")

        with pytest.raises(WorkflowNotFoundError):
            workflow_service.submit(expense.id)

    def test_inactive_workflow_not_selected(self, seed, org, workflow_service):
        seed.workflow(
            org.company,
            [{"step_number": 1, "step_name": "Manager", "approver_type": "manager"}],
            is_active=False,
        )
        expense = seed.expense(org.company, org.employee, "80.00")

        with pytest.raises(WorkflowNotFoundError):
            workflow_service.submit(expense.id)


class TestSubmitNotificationFailure:
    """Delivery problems never roll back the transition."""

    def test_failing_sink(
        self, session, seed, org, two_step_workflow, make_workflow_service,
        failing_sink, captured_logs,
    ):
        service = make_workflow_service(sink=failing_sink)
        expense = seed.expense(org.company, org.employee, "80.00")

        result = service.submit(expense.id)

        assert result.status == ExpenseStatus.IN_APPROVAL
        [task] = steps_of(session, expense.id)
        assert task.notified_at is None
        assert any(
            r["message"] == "notification_delivery_failed" for r in captured_logs()
        )
