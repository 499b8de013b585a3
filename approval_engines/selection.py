"""
approval_engines.selection -- Pure workflow template choice.

Responsibility:
    Pick the single workflow template that governs an expense from the
    company's templates.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Only active templates of the expense's company are candidates.
    - Candidates are ordered default first, then newest first, then by id.
    - The first candidate that is default, has no steps, or has at least
      one step applicable to the expense wins.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone

from approval_engines.steps import is_step_applicable
from approval_engines.tracer import traced_engine
from approval_kernel.domain.approval import ExpenseSnapshot, WorkflowTemplate

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _created_key(template: WorkflowTemplate) -> float:
    created = template.created_at or _EPOCH
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created.timestamp()


def order_candidates(
    snapshot: ExpenseSnapshot, templates: Iterable[WorkflowTemplate],
) -> list[WorkflowTemplate]:
    """Active company templates: default first, newest first, then id."""
    candidates = [
        t for t in templates
        if t.is_active and t.company_id == snapshot.company_id
    ]
    candidates.sort(key=lambda t: str(t.workflow_id))
    candidates.sort(key=_created_key, reverse=True)
    candidates.sort(key=lambda t: t.is_default, reverse=True)
    return candidates


def qualifies(template: WorkflowTemplate, snapshot: ExpenseSnapshot) -> bool:
    if template.is_default or not template.steps:
        return True
    return any(is_step_applicable(step, snapshot) for step in template.steps)


@traced_engine("selection", "1.0", fingerprint_fields=("snapshot",))
def select_workflow(
    snapshot: ExpenseSnapshot, templates: Iterable[WorkflowTemplate],
) -> WorkflowTemplate | None:
    """First qualifying template, or None when nothing qualifies."""
    for template in order_candidates(snapshot, templates):
        if qualifies(template, snapshot):
            return template
    return None
