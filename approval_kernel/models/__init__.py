"""ORM models for the approval kernel."""

from approval_kernel.models.approval_step import ApprovalStep
from approval_kernel.models.directory import Company, User
from approval_kernel.models.expense import Expense
from approval_kernel.models.history import ApprovalHistory
from approval_kernel.models.notification import Notification
from approval_kernel.models.rule import ApprovalRule
from approval_kernel.models.workflow import ApprovalWorkflow, ApprovalWorkflowStep

__all__ = [
    "ApprovalHistory",
    "ApprovalRule",
    "ApprovalStep",
    "ApprovalWorkflow",
    "ApprovalWorkflowStep",
    "Company",
    "Expense",
    "Notification",
    "User",
]
