"""
Approval domain types (``approval_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the expense approval engine.  Defines the expense
lifecycle state machine, approval task statuses, the approver variant
type, workflow/rule templates as seen by the pure engines, and the result
records returned across the service boundary.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* Expense lifecycle -- ``EXPENSE_TRANSITIONS`` defines the only valid
  status transitions.  ``approved`` and ``rejected`` are reached exactly
  once and only ``approved -> paid`` leaves them.
* Terminal expenses -- ``TERMINAL_EXPENSE_STATUSES`` is the set of
  statuses that imply zero pending approval tasks.
* Approver polymorphism -- ``ApproverSpec`` is a closed union of
  variants.  ``approver_spec_for`` is the only place that turns stored
  ``approver_type`` columns into a variant.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


# =========================================================================
# Expense Lifecycle
# =========================================================================


class ExpenseStatus(str, Enum):
    """Expense lifecycle states."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    IN_APPROVAL = "in_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


EXPENSE_TRANSITIONS: dict[ExpenseStatus, frozenset[ExpenseStatus]] = {
    ExpenseStatus.DRAFT: frozenset({
        ExpenseStatus.SUBMITTED,
        ExpenseStatus.IN_APPROVAL,
        ExpenseStatus.APPROVED,
    }),
    ExpenseStatus.SUBMITTED: frozenset({
        ExpenseStatus.IN_APPROVAL,
        ExpenseStatus.APPROVED,
    }),
    ExpenseStatus.IN_APPROVAL: frozenset({
        ExpenseStatus.APPROVED,
        ExpenseStatus.REJECTED,
    }),
    ExpenseStatus.APPROVED: frozenset({ExpenseStatus.PAID}),
    ExpenseStatus.REJECTED: frozenset(),
    ExpenseStatus.PAID: frozenset(),
}

TERMINAL_EXPENSE_STATUSES: frozenset[ExpenseStatus] = frozenset({
    ExpenseStatus.APPROVED,
    ExpenseStatus.REJECTED,
    ExpenseStatus.PAID,
})


def can_transition(current: ExpenseStatus, target: ExpenseStatus) -> bool:
    """True when ``current -> target`` is a legal expense transition."""
    return target in EXPENSE_TRANSITIONS.get(current, frozenset())


class StepStatus(str, Enum):
    """Approval task states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class ApproverType(str, Enum):
    """How a template step names its approver(s)."""

    SPECIFIC_USER = "specific_user"
    MANAGER = "manager"
    ROLE = "role"
    DEPARTMENT_HEAD = "department_head"
    FINANCE = "finance"
    CFO = "cfo"
    # Runtime-only: task created by the escalation sweep.
    ESCALATED = "escalated"


class HistoryAction(str, Enum):
    """Actions recorded in the append-only approval history."""

    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    ASSIGNED = "assigned"
    REASSIGNED = "reassigned"
    ESCALATED = "escalated"
    AUTO_APPROVED = "auto_approved"


class NotificationKind(str, Enum):
    """Notification types emitted to the sink."""

    APPROVAL_REQUEST = "approval_request"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    REMINDER = "reminder"


class ApprovalAction(str, Enum):
    """Decisions an approver can make on a pending task."""

    APPROVE = "approve"
    REJECT = "reject"


class ConditionOperator(str, Enum):
    """Comparison operators accepted in rule conditions."""

    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    EQ = "="
    IN = "IN"
    NOT_IN = "NOT IN"


class RuleActionType(str, Enum):
    """Structural modifications a fired rule can request."""

    AUTO_APPROVE = "auto_approve"
    REQUIRE_APPROVAL = "require_approval"
    SKIP_STEP = "skip_step"
    ADD_APPROVER = "add_approver"


# Reasons recorded in history metadata when a step produces no task.
REASON_BELOW_THRESHOLD = "amount_below_auto_approve_threshold"
REASON_NO_APPROVER = "no_approver_resolved"
REASON_WITHIN_PERCENTAGE = "approved_amount_within_threshold"
REASON_RULE_AUTO_APPROVE = "rule_auto_approve"
REASON_NO_APPROVERS_REQUIRED = "no approvers required"
REASON_ALL_APPROVED = "all approvals completed"
REASON_EXPENSE_REJECTED = "Expense rejected"


# =========================================================================
# Approver Variants
# =========================================================================


@dataclass(frozen=True)
class SpecificUser:
    """A named user approves."""

    user_id: UUID


@dataclass(frozen=True)
class Manager:
    """The submitter's direct manager approves."""


@dataclass(frozen=True)
class Role:
    """Every active company user holding ``name`` approves."""

    name: str


@dataclass(frozen=True)
class DepartmentHead:
    """The manager-role user of the submitter's department approves."""


@dataclass(frozen=True)
class Finance:
    """Every active finance user of the company approves."""


@dataclass(frozen=True)
class Cfo:
    """Every active CFO of the company approves."""


ApproverSpec = SpecificUser | Manager | Role | DepartmentHead | Finance | Cfo


def approver_spec_for(
    approver_type: ApproverType | str,
    approver_id: UUID | None = None,
    approver_role: str | None = None,
) -> ApproverSpec | None:
    """Build the approver variant for stored template columns.

    Returns None when the columns are incomplete (``specific_user`` without
    a user, ``role`` without a role name) or the type is not a template
    type.  Callers treat None as "no approver resolved".
    """
    try:
        kind = ApproverType(approver_type)
    except ValueError:
        return None

    if kind == ApproverType.SPECIFIC_USER:
        return SpecificUser(approver_id) if approver_id is not None else None
    if kind == ApproverType.MANAGER:
        return Manager()
    if kind == ApproverType.ROLE:
        return Role(approver_role) if approver_role else None
    if kind == ApproverType.DEPARTMENT_HEAD:
        return DepartmentHead()
    if kind == ApproverType.FINANCE:
        return Finance()
    if kind == ApproverType.CFO:
        return Cfo()
    return None


# =========================================================================
# Engine Inputs
# =========================================================================


@dataclass(frozen=True)
class ExpenseSnapshot:
    """Immutable view of an expense as seen by the pure engines."""

    expense_id: UUID
    company_id: UUID
    submitter_id: UUID
    amount: Decimal
    currency: str
    amount_in_company_currency: Decimal | None = None
    category: str | None = None
    department: str | None = None
    description: str | None = None
    workflow_id: UUID | None = None

    @property
    def normalized_amount(self) -> Decimal:
        """Company-currency amount, falling back to the raw amount."""
        if self.amount_in_company_currency is not None:
            return self.amount_in_company_currency
        return self.amount


@dataclass(frozen=True)
class StepTemplate:
    """One stage of a workflow template (or a rule-injected stage).

    ``template_step_id`` is None for steps appended by an ``add_approver``
    rule.
    """

    step_number: int
    step_name: str
    approver_type: ApproverType
    approver_id: UUID | None = None
    approver_role: str | None = None
    amount_min: Decimal | None = None
    amount_max: Decimal | None = None
    category_codes: tuple[str, ...] = ()
    auto_approve_threshold: Decimal | None = None
    threshold_percentage: Decimal | None = None
    template_step_id: UUID | None = None

    @property
    def approver_spec(self) -> ApproverSpec | None:
        return approver_spec_for(
            self.approver_type, self.approver_id, self.approver_role,
        )


@dataclass(frozen=True)
class WorkflowTemplate:
    """A company workflow with its ordered steps."""

    workflow_id: UUID
    company_id: UUID
    name: str
    is_default: bool
    is_active: bool
    created_at: datetime | None
    steps: tuple[StepTemplate, ...] = ()
    description: str | None = None

    def step(self, step_number: int) -> StepTemplate | None:
        for candidate in self.steps:
            if candidate.step_number == step_number:
                return candidate
        return None


@dataclass(frozen=True)
class RuleSpec:
    """A stored condition -> action rule.

    Operator and action are kept as raw strings so that unknown values
    reach the evaluator and are reported as ignored rather than failing
    on load.
    """

    rule_id: UUID
    company_id: UUID
    name: str
    condition_field: str
    condition_operator: str
    condition_value: Any
    action_type: str
    action_value: dict[str, Any] | None = None
    priority: int = 0
    workflow_id: UUID | None = None
    is_active: bool = True


# =========================================================================
# Engine Outputs
# =========================================================================


@dataclass(frozen=True)
class IgnoredRule:
    """A rule that was evaluated but did not modify the step list."""

    rule: RuleSpec
    reason: str


@dataclass(frozen=True)
class RuleEvaluation:
    """Result of folding a company's rules over a workflow's steps."""

    steps: tuple[StepTemplate, ...]
    auto_approved_by: RuleSpec | None = None
    fired: tuple[RuleSpec, ...] = ()
    ignored: tuple[IgnoredRule, ...] = ()

    @property
    def is_auto_approved(self) -> bool:
        return self.auto_approved_by is not None


@dataclass(frozen=True)
class BypassedStep:
    """A template step that produced no task, and why."""

    step_number: int
    step_name: str
    reason: str


@dataclass(frozen=True)
class ApprovalStepRecord:
    """Read-only view of one approval task."""

    step_id: UUID
    expense_id: UUID
    step_number: int
    approver_id: UUID
    approver_type: str
    status: StepStatus
    created_at: datetime
    workflow_step_id: UUID | None = None
    comments: str | None = None
    approved_amount: Decimal | None = None
    escalated_from_id: UUID | None = None
    notified_at: datetime | None = None
    decided_at: datetime | None = None
    last_reminded_at: datetime | None = None


@dataclass(frozen=True)
class MaterializedStep:
    """Tasks created for a single step number.

    ``step_number`` is None when the remaining template was exhausted
    without creating any task.
    """

    step_number: int | None
    tasks: tuple[ApprovalStepRecord, ...] = ()
    bypassed: tuple[BypassedStep, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.tasks

    @property
    def approver_ids(self) -> tuple[UUID, ...]:
        return tuple(task.approver_id for task in self.tasks)


@dataclass(frozen=True)
class HistoryEntry:
    """Read-only view of one approval history row."""

    history_id: UUID
    expense_id: UUID
    sequence_number: int
    action: HistoryAction
    created_at: datetime
    user_id: UUID | None = None
    step_number: int | None = None
    previous_status: str | None = None
    new_status: str | None = None
    comments: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NotificationRecord:
    """Read-only view of one notification."""

    notification_id: UUID
    user_id: UUID
    kind: NotificationKind
    title: str
    message: str
    is_read: bool
    created_at: datetime
    expense_id: UUID | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of ``submit``."""

    expense_id: UUID
    status: ExpenseStatus
    workflow_id: UUID
    current_step_number: int
    pending_approver_ids: tuple[UUID, ...] = ()
    auto_approved_rule_id: UUID | None = None


@dataclass(frozen=True)
class ApprovalOutcome:
    """Outcome of ``process_approval``."""

    expense_id: UUID
    step_id: UUID
    action: ApprovalAction
    expense_status: ExpenseStatus
    current_step_number: int
    new_approver_ids: tuple[UUID, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.expense_status in TERMINAL_EXPENSE_STATUSES


@dataclass(frozen=True)
class EscalationReport:
    """Outcome of one escalation sweep."""

    escalated: tuple[UUID, ...] = ()
    unresolved: tuple[UUID, ...] = ()
    lost_race: tuple[UUID, ...] = ()
    failed: tuple[UUID, ...] = ()

    @property
    def examined(self) -> int:
        return (
            len(self.escalated) + len(self.unresolved)
            + len(self.lost_race) + len(self.failed)
        )


@dataclass(frozen=True)
class ReminderReport:
    """Outcome of one reminder sweep."""

    reminded: tuple[UUID, ...] = ()

    @property
    def count(self) -> int:
        return len(self.reminded)


@dataclass(frozen=True)
class ApproverStats:
    """Decision statistics for one approver over a window."""

    user_id: UUID
    days: int
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    skipped: int = 0
    average_decision_hours: float | None = None

    @property
    def total(self) -> int:
        return self.pending + self.approved + self.rejected + self.skipped


@dataclass(frozen=True)
class WorkflowAnalyticsRow:
    """History action counts for one day and action."""

    day: str
    action: HistoryAction
    count: int
    average_amount: Decimal | None = None


@dataclass(frozen=True)
class PurgeReport:
    """Rows removed by a retention sweep."""

    notifications_deleted: int = 0
    history_deleted: int = 0
