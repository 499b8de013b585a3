"""
Workflow template loading, caching and selection.

Responsibility:
    - WorkflowTemplateCache: explicit per-company read-through cache of
      active workflow templates with a TTL on the injected clock.
    - WorkflowSelector: loads the company's templates (through the cache
      when one is supplied), delegates the choice to the pure
      ``approval_engines.selection`` engine, and raises when nothing
      qualifies.
    - load_rules: active rules for a company, global or bound to one
      workflow.

Architecture position:
    Kernel > Services.  May import from domain/, models/, engines.

Failure modes:
    - WorkflowNotFoundError when no active template qualifies.  Fatal to
      submission.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from approval_engines.selection import select_workflow
from approval_kernel.domain.approval import ExpenseSnapshot, RuleSpec, WorkflowTemplate
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.exceptions import WorkflowNotFoundError
from approval_kernel.logging_config import get_logger
from approval_kernel.models.rule import ApprovalRule
from approval_kernel.models.workflow import ApprovalWorkflow

logger = get_logger("services.workflow_selector")


@dataclass(frozen=True)
class _CacheEntry:
    templates: tuple[WorkflowTemplate, ...]
    loaded_at: datetime


class WorkflowTemplateCache:
    """Per-company template cache.

    Templates referenced by submitted expenses are immutable, but new
    templates may appear and defaults may move, so entries expire after
    ``ttl_seconds``.  ``invalidate`` drops one company or everything.
    """

    def __init__(self, ttl_seconds: int = 300, clock: Clock | None = None):
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or SystemClock()
        self._entries: dict[UUID, _CacheEntry] = {}
        self.hits = 0
        self.misses = 0

    def get_or_load(
        self,
        company_id: UUID,
        loader: Callable[[UUID], tuple[WorkflowTemplate, ...]],
    ) -> tuple[WorkflowTemplate, ...]:
        now = self._clock.now()
        entry = self._entries.get(company_id)
        if entry is not None and now - entry.loaded_at < self._ttl:
            self.hits += 1
            return entry.templates

        self.misses += 1
        templates = loader(company_id)
        self._entries[company_id] = _CacheEntry(templates=templates, loaded_at=now)
        return templates

    def invalidate(self, company_id: UUID | None = None) -> None:
        if company_id is None:
            self._entries.clear()
        else:
            self._entries.pop(company_id, None)


def load_company_templates(
    session: Session, company_id: UUID,
) -> tuple[WorkflowTemplate, ...]:
    """Active templates of a company, converted to domain objects."""
    workflows = session.execute(
        select(ApprovalWorkflow).where(
            ApprovalWorkflow.company_id == company_id,
            ApprovalWorkflow.is_active.is_(True),
        )
    ).scalars().all()
    return tuple(w.to_template() for w in workflows)


def load_rules(
    session: Session, company_id: UUID, workflow_id: UUID | None,
) -> tuple[RuleSpec, ...]:
    """Active rules of the company that are global or bound to ``workflow_id``."""
    scope = ApprovalRule.workflow_id.is_(None)
    if workflow_id is not None:
        scope = or_(scope, ApprovalRule.workflow_id == workflow_id)
    rules = session.execute(
        select(ApprovalRule).where(
            ApprovalRule.company_id == company_id,
            ApprovalRule.is_active.is_(True),
            scope,
        )
    ).scalars().all()
    return tuple(r.to_spec() for r in rules)


class WorkflowSelector:
    """Chooses the workflow template for an expense."""

    def __init__(self, session: Session, cache: WorkflowTemplateCache | None = None):
        self._session = session
        self._cache = cache

    def templates_for(self, company_id: UUID) -> tuple[WorkflowTemplate, ...]:
        if self._cache is None:
            return load_company_templates(self._session, company_id)
        return self._cache.get_or_load(
            company_id, lambda cid: load_company_templates(self._session, cid),
        )

    def select(self, snapshot: ExpenseSnapshot) -> WorkflowTemplate:
        """Template governing ``snapshot``.

        Raises:
            WorkflowNotFoundError: no active template qualifies.
        """
        template = select_workflow(snapshot, self.templates_for(snapshot.company_id))
        if template is None:
            logger.warning(
                "workflow_not_found",
                extra={
                    "expense_id": str(snapshot.expense_id),
                    "company_id": str(snapshot.company_id),
                },
            )
            raise WorkflowNotFoundError(
                str(snapshot.expense_id), str(snapshot.company_id),
            )

        logger.info(
            "workflow_selected",
            extra={
                "expense_id": str(snapshot.expense_id),
                "workflow_id": str(template.workflow_id),
                "workflow_name": template.name,
                "is_default": template.is_default,
            },
        )
        return template

    def get(self, company_id: UUID, workflow_id: UUID) -> WorkflowTemplate | None:
        """Template bound to an expense, preferring the cache."""
        for template in self.templates_for(company_id):
            if template.workflow_id == workflow_id:
                return template
        workflow = self._session.get(ApprovalWorkflow, workflow_id)
        return workflow.to_template() if workflow is not None else None
