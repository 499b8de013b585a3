"""
approval_services.engine -- ApprovalEngine, the public facade.

Responsibility:
    Wires kernel services for one operation, runs the operation inside a
    single transaction (``session_scope``) and binds the log context.
    This is the only place that constructs kernel services for callers.

Architecture position:
    Services -- orchestration over ``approval_kernel`` and
    ``approval_engines``.  The kernel MUST NOT import from this package.

Invariants enforced:
    - One transaction per public operation: commit on success, rollback
      on any exception.
    - ConcurrentModificationError re-runs the whole operation with the
      same inputs, at most ``concurrency_retries`` times.
    - Caches (workflow templates, exchange rates) live on the engine and
      are shared across operations; both expire on the injected clock.

Failure modes:
    - Every ApprovalEngineError raised by the kernel propagates unchanged
      after rollback.

Usage:
    engine = ApprovalEngine.from_settings(get_settings())
    result = engine.submit(expense_id)
    engine.process_approval(step_id, approver_id, "approve")
"""

from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from approval_config.settings import EngineSettings
from approval_kernel.db.engine import (
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from approval_kernel.domain.approval import (
    ApprovalAction,
    ApprovalOutcome,
    ApprovalStepRecord,
    ApproverStats,
    EscalationReport,
    HistoryEntry,
    NotificationRecord,
    PurgeReport,
    ReminderReport,
    SubmissionResult,
    WorkflowAnalyticsRow,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.directory import (
    CurrencyConverter,
    DirectoryService,
    NotificationSink,
    RateSource,
)
from approval_kernel.exceptions import ConcurrentModificationError
from approval_kernel.logging_config import LogContext, configure_logging, get_logger
from approval_kernel.selectors.approval_selector import ApprovalSelector
from approval_kernel.services.approval_workflow_service import ApprovalWorkflowService
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
)
from approval_kernel.services.workflow_selector import (
    WorkflowSelector,
    WorkflowTemplateCache,
)

logger = get_logger("services.engine")

T = TypeVar("T")


class ApprovalEngine:
    """Entry point for submitting, deciding and sweeping expenses.

    Contract:
        Receives a session factory and optional collaborators.  Every
        public method opens its own transaction.

    Non-goals:
        - Does NOT expose sessions or ORM objects; results are frozen DTOs.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
        directory_factory: Callable[[Session], DirectoryService] | None = None,
        sink_factory: Callable[[Session, Clock], NotificationSink] | None = None,
        rate_source: RateSource | None = None,
        converter_factory: Callable[[DirectoryService], CurrencyConverter] | None = None,
        template_cache: WorkflowTemplateCache | None = None,
        concurrency_retries: int = 2,
    ):
        self._session_factory = session_factory or get_session_factory()
        self.settings = settings or EngineSettings()
        self.clock = clock or SystemClock()
        self._directory_factory = directory_factory or SqlDirectoryService
        self._sink_factory = sink_factory or SqlNotificationSink
        self._rate_source = rate_source or UsdPivotRateSource(
            self.settings.exchange_rates, pivot=self.settings.pivot_currency,
        )
        self._rate_cache = RateCache(
            ttl_seconds=self.settings.rate_cache_ttl_seconds, clock=self.clock,
        )
        self._converter_factory = converter_factory or (
            lambda directory: CachedCurrencyConverter(
                directory, self._rate_source, self._rate_cache,
            )
        )
        self.template_cache = template_cache or WorkflowTemplateCache(
            ttl_seconds=self.settings.workflow_cache_ttl_seconds, clock=self.clock,
        )
        self._retries = max(0, concurrency_retries)

    @classmethod
    def from_settings(cls, settings: EngineSettings, **kwargs: Any) -> ApprovalEngine:
        """Configure logging and the database engine from ``settings``."""
        configure_logging(level=settings.log_level, json_output=settings.log_json)
        init_engine_from_url(settings.database_url)
        return cls(get_session_factory(), settings=settings, **kwargs)

    # =====================================================================
    # Transaction plumbing
    # =====================================================================

    def _run(
        self,
        operation: str,
        work: Callable[[Session], T],
        *,
        retry: bool = True,
        **context: Any,
    ) -> T:
        attempts = self._retries + 1 if retry else 1
        with LogContext.bind(
            correlation_id=str(uuid4()),
            operation=operation,
            **{k: str(v) for k, v in context.items() if v is not None},
        ):
            attempt = 0
            while True:
                attempt += 1
                try:
                    with session_scope(self._session_factory) as session:
                        return work(session)
                except ConcurrentModificationError as exc:
                    if attempt >= attempts:
                        raise
                    logger.warning(
                        "concurrent_modification_retry",
                        extra={
                            "operation": operation,
                            "attempt": attempt,
                            "error_code": exc.code,
                        },
                    )

    def _workflow_service(self, session: Session) -> ApprovalWorkflowService:
        directory = self._directory_factory(session)
        return ApprovalWorkflowService(
            session,
            directory,
            NotificationDispatcher(session, self._sink_factory(session, self.clock)),
            converter=self._converter_factory(directory),
            selector=WorkflowSelector(session, self.template_cache),
            clock=self.clock,
        )

    def _escalation_service(self, session: Session) -> EscalationService:
        return EscalationService(
            session,
            self._directory_factory(session),
            NotificationDispatcher(session, self._sink_factory(session, self.clock)),
            clock=self.clock,
        )

    # =====================================================================
    # Commands
    # =====================================================================

    def submit(self, expense_id: UUID, actor_id: UUID | None = None) -> SubmissionResult:
        """Submit a draft expense into its approval workflow."""
        return self._run(
            "submit",
            lambda s: self._workflow_service(s).submit(expense_id, actor_id),
            expense_id=expense_id,
            actor_id=actor_id,
        )

    def process_approval(
        self,
        step_id: UUID,
        actor_id: UUID,
        action: ApprovalAction | str,
        comments: str | None = None,
        approved_amount: Decimal | None = None,
    ) -> ApprovalOutcome:
        """Approve or reject a pending approval task."""
        return self._run(
            "process_approval",
            lambda s: self._workflow_service(s).process_approval(
                step_id, actor_id, action, comments, approved_amount,
            ),
            step_id=step_id,
            actor_id=actor_id,
        )

    def run_escalation_sweep(self, timeout_hours: float | None = None) -> EscalationReport:
        """Escalate tasks pending longer than the timeout (settings default)."""
        hours = (
            timeout_hours if timeout_hours is not None
            else self.settings.escalation_timeout_hours
        )
        return self._run(
            "escalation_sweep",
            lambda s: self._escalation_service(s).escalate(hours),
            retry=False,
        )

    def run_reminder_sweep(self, days: int | None = None) -> ReminderReport:
        """Remind approvers of tasks waiting since notification."""
        window = days if days is not None else self.settings.reminder_days
        return self._run(
            "reminder_sweep",
            lambda s: self._escalation_service(s).remind(window),
            retry=False,
        )

    def mark_notification_read(self, notification_id: UUID, user_id: UUID) -> bool:
        return self._run(
            "mark_notification_read",
            lambda s: NotificationService(s, self.clock).mark_read(notification_id, user_id),
            retry=False,
            actor_id=user_id,
        )

    def mark_all_notifications_read(self, user_id: UUID) -> int:
        return self._run(
            "mark_all_notifications_read",
            lambda s: NotificationService(s, self.clock).mark_all_read(user_id),
            retry=False,
            actor_id=user_id,
        )

    def purge_expired_records(self, retention_days: int | None = None) -> PurgeReport:
        """Delete read notifications and history of terminal expenses.

        Uses ``settings.history_retention_days`` when no period is given;
        does nothing when both are unset.
        """
        days = (
            retention_days if retention_days is not None
            else self.settings.history_retention_days
        )
        if days is None:
            logger.info("retention_purge_disabled")
            return PurgeReport()
        if days <= 0:
            raise ValueError("retention_days must be positive")

        def work(session: Session) -> PurgeReport:
            return PurgeReport(
                notifications_deleted=NotificationService(session, self.clock).purge_read(days),
                history_deleted=HistoryService(session, self.clock).purge_terminal(days),
            )

        return self._run("purge_expired_records", work, retry=False)

    def invalidate_workflow_cache(self, company_id: UUID | None = None) -> None:
        """Drop cached templates after an administrator edits workflows."""
        self.template_cache.invalidate(company_id)

    # =====================================================================
    # Queries
    # =====================================================================

    def get_pending_steps_for_approver(self, user_id: UUID) -> list[ApprovalStepRecord]:
        return self._run(
            "get_pending_steps",
            lambda s: ApprovalSelector(s, self.clock).get_pending_steps_for_approver(user_id),
            retry=False,
            actor_id=user_id,
        )

    def get_expense_steps(self, expense_id: UUID) -> list[ApprovalStepRecord]:
        return self._run(
            "get_expense_steps",
            lambda s: ApprovalSelector(s, self.clock).get_expense_steps(expense_id),
            retry=False,
            expense_id=expense_id,
        )

    def get_timeline(self, expense_id: UUID) -> list[HistoryEntry]:
        return self._run(
            "get_timeline",
            lambda s: ApprovalSelector(s, self.clock).get_timeline(expense_id),
            retry=False,
            expense_id=expense_id,
        )

    def get_approval_stats(self, user_id: UUID, days: int = 30) -> ApproverStats:
        return self._run(
            "get_approval_stats",
            lambda s: ApprovalSelector(s, self.clock).get_approval_stats(user_id, days),
            retry=False,
            actor_id=user_id,
        )

    def get_workflow_analytics(
        self, company_id: UUID, days: int = 30,
    ) -> list[WorkflowAnalyticsRow]:
        return self._run(
            "get_workflow_analytics",
            lambda s: ApprovalSelector(s, self.clock).get_workflow_analytics(company_id, days),
            retry=False,
        )

    def list_notifications(
        self,
        user_id: UUID,
        unread_only: bool = False,
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[NotificationRecord]:
        return self._run(
            "list_notifications",
            lambda s: NotificationService(s, self.clock).list_notifications(
                user_id, unread_only, limit, offset,
            ),
            retry=False,
            actor_id=user_id,
        )

    def unread_notification_count(self, user_id: UUID) -> int:
        return self._run(
            "unread_notification_count",
            lambda s: NotificationService(s, self.clock).unread_count(user_id),
            retry=False,
            actor_id=user_id,
        )
