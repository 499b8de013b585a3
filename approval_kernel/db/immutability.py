"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Approval decisions must stay explainable after the fact.  Two record types
therefore cannot change once they matter:

  ApprovalHistory       ALWAYS (from creation)
      The audit trail of every transition.  Append-only.

  ApprovalWorkflow      Once referenced by a non-draft expense
  ApprovalWorkflowStep  Once its workflow is referenced by a non-draft expense
      The expense binds ``workflow_id`` at submission.  Editing the template
      afterwards would make the recorded step numbers meaningless.

===============================================================================
HOW IT WORKS
===============================================================================

    session.flush()
         |
         v
    [before_insert/update/delete] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

The retention sweep removes old history with a Core ``DELETE`` statement,
which does not pass through these mapper events.

===============================================================================
USAGE
===============================================================================

    from approval_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # idempotent

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, func, inspect, select

from approval_kernel.exceptions import ImmutabilityViolationError
from approval_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _blocked(entity_type: str, entity_id, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


# =============================================================================
# ApprovalHistory (always immutable)
# =============================================================================


def _check_history_update(mapper, connection, target):
    raise _blocked(
        "ApprovalHistory", target.id, "UPDATE",
        "Approval history is append-only and cannot be modified",
    )


def _check_history_delete(mapper, connection, target):
    raise _blocked(
        "ApprovalHistory", target.id, "DELETE",
        "Approval history is append-only and cannot be deleted",
    )


# =============================================================================
# Workflow templates (immutable once referenced)
# =============================================================================


def _workflow_is_referenced(connection, workflow_id) -> bool:
    """True when a non-draft expense is bound to ``workflow_id``."""
    from approval_kernel.models.expense import Expense

    if workflow_id is None:
        return False
    count = connection.execute(
        select(func.count())
        .select_from(Expense.__table__)
        .where(
            Expense.__table__.c.workflow_id == workflow_id,
            Expense.__table__.c.status != "draft",
        )
    ).scalar()
    return bool(count)


def _has_column_changes(target) -> bool:
    insp = inspect(target)
    for attr in insp.mapper.column_attrs:
        if insp.attrs[attr.key].history.has_changes():
            return True
    return False


def _check_workflow_update(mapper, connection, target):
    # before_update also fires for collection-only changes.
    if not _has_column_changes(target):
        return
    if _workflow_is_referenced(connection, target.id):
        raise _blocked(
            "ApprovalWorkflow", target.id, "UPDATE",
            "Workflow is referenced by a submitted expense",
        )


def _check_workflow_delete(mapper, connection, target):
    if _workflow_is_referenced(connection, target.id):
        raise _blocked(
            "ApprovalWorkflow", target.id, "DELETE",
            "Workflow is referenced by a submitted expense",
        )


def _check_workflow_step_insert(mapper, connection, target):
    if _workflow_is_referenced(connection, target.workflow_id):
        raise _blocked(
            "ApprovalWorkflowStep", target.id, "INSERT",
            "Cannot add steps to a workflow referenced by a submitted expense",
        )


def _check_workflow_step_update(mapper, connection, target):
    if not _has_column_changes(target):
        return
    if _workflow_is_referenced(connection, target.workflow_id):
        raise _blocked(
            "ApprovalWorkflowStep", target.id, "UPDATE",
            "Workflow is referenced by a submitted expense",
        )


def _check_workflow_step_delete(mapper, connection, target):
    if _workflow_is_referenced(connection, target.workflow_id):
        raise _blocked(
            "ApprovalWorkflowStep", target.id, "DELETE",
            "Workflow is referenced by a submitted expense",
        )


def _listeners():
    from approval_kernel.models.history import ApprovalHistory
    from approval_kernel.models.workflow import (
        ApprovalWorkflow,
        ApprovalWorkflowStep,
    )

    return (
        (ApprovalHistory, "before_update", _check_history_update),
        (ApprovalHistory, "before_delete", _check_history_delete),
        (ApprovalWorkflow, "before_update", _check_workflow_update),
        (ApprovalWorkflow, "before_delete", _check_workflow_delete),
        (ApprovalWorkflowStep, "before_insert", _check_workflow_step_insert),
        (ApprovalWorkflowStep, "before_update", _check_workflow_step_update),
        (ApprovalWorkflowStep, "before_delete", _check_workflow_step_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Safe to call more than once.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules.
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
