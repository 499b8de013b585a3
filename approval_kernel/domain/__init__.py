"""
Pure domain layer.

This module contains pure data transfer objects and collaborator
protocols with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

All domain objects are immutable and deterministic.
"""

from approval_kernel.domain.approval import (
    EXPENSE_TRANSITIONS,
    TERMINAL_EXPENSE_STATUSES,
    ApprovalAction,
    ApprovalOutcome,
    ApprovalStepRecord,
    ApproverSpec,
    ApproverStats,
    ApproverType,
    BypassedStep,
    Cfo,
    ConditionOperator,
    DepartmentHead,
    EscalationReport,
    ExpenseSnapshot,
    ExpenseStatus,
    Finance,
    HistoryAction,
    HistoryEntry,
    IgnoredRule,
    Manager,
    MaterializedStep,
    NotificationKind,
    NotificationRecord,
    PurgeReport,
    ReminderReport,
    Role,
    RuleActionType,
    RuleEvaluation,
    RuleSpec,
    SpecificUser,
    StepStatus,
    StepTemplate,
    SubmissionResult,
    WorkflowAnalyticsRow,
    WorkflowTemplate,
    approver_spec_for,
    can_transition,
)
from approval_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from approval_kernel.domain.directory import (
    CurrencyConverter,
    DirectoryService,
    NotificationSink,
    RateSource,
)
