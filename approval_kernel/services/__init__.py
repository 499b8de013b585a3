"""Services for the approval kernel (write side)."""

from approval_kernel.services.approval_workflow_service import ApprovalWorkflowService
from approval_kernel.services.approver_resolver import resolve
from approval_kernel.services.currency_service import (
    CachedCurrencyConverter,
    RateCache,
    UsdPivotRateSource,
)
from approval_kernel.services.directory_service import SqlDirectoryService
from approval_kernel.services.escalation_service import EscalationService
from approval_kernel.services.history_service import HistoryService
from approval_kernel.services.notification_service import (
    NotificationDispatcher,
    NotificationService,
    SqlNotificationSink,
    render_notification,
)
from approval_kernel.services.step_materializer import StepMaterializer
from approval_kernel.services.workflow_selector import (
    WorkflowSelector,
    WorkflowTemplateCache,
    load_rules,
)

__all__ = [
    "ApprovalWorkflowService",
    "CachedCurrencyConverter",
    "EscalationService",
    "HistoryService",
    "NotificationDispatcher",
    "NotificationService",
    "RateCache",
    "SqlDirectoryService",
    "SqlNotificationSink",
    "StepMaterializer",
    "UsdPivotRateSource",
    "WorkflowSelector",
    "WorkflowTemplateCache",
    "load_rules",
    "render_notification",
    "resolve",
]
