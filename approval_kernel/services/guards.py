"""
Row guards -- locking and compare-and-swap helpers shared by the
approval services.

Responsibility:
    The only code that writes ``Expense`` workflow columns and approval
    task statuses.  Every write is a conditional UPDATE so that two
    transactions racing on the same expense cannot both succeed.

Architecture position:
    Kernel > Services.  May import from models/ and exceptions.

Invariants enforced:
    - Expense writes compare ``version`` and increment it in the same
      statement.  A miss raises ConcurrentModificationError and the caller's
      transaction is rolled back.
    - Task writes are guarded by ``status = 'pending'``.  A miss returns
      False; the caller decides whether that is an error (user action) or
      a skip (sweeps).
    - In-memory objects are synchronised with ``set_committed_value`` so
      the ORM never issues a second, unguarded UPDATE at flush time.

Failure modes:
    - ExpenseNotFoundError from lock_expense.
    - ConcurrentModificationError from cas_expense.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from approval_kernel.domain.approval import StepStatus
from approval_kernel.exceptions import (
    ConcurrentModificationError,
    ExpenseNotFoundError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.approval_step import ApprovalStep
from approval_kernel.models.expense import Expense

logger = get_logger("services.guards")


def lock_expense(session: Session, expense_id: UUID) -> Expense:
    """Load ``expense_id`` with a row lock (``SELECT ... FOR UPDATE``).

    ``populate_existing`` discards any stale identity-map state so the
    caller sees the row as of the lock.
    """
    expense = session.execute(
        select(Expense)
        .where(Expense.id == expense_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if expense is None:
        raise ExpenseNotFoundError(str(expense_id))
    return expense


def update_expense_guarded(
    session: Session,
    expense_id: UUID,
    expected_version: int,
    **values: Any,
) -> int:
    """Apply ``values`` only if the row still carries ``expected_version``.

    Returns:
        The new version.

    Raises:
        ConcurrentModificationError: another transaction changed the row.
    """
    result = session.execute(
        update(Expense)
        .where(Expense.id == expense_id, Expense.version == expected_version)
        .values(version=Expense.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(
            "expense_version_conflict",
            extra={
                "expense_id": str(expense_id),
                "expected_version": expected_version,
            },
        )
        raise ConcurrentModificationError(str(expense_id), expected_version)
    return expected_version + 1


def cas_expense(session: Session, expense: Expense, **values: Any) -> Expense:
    """Guarded update of a loaded expense, mirrored onto the instance."""
    new_version = update_expense_guarded(
        session, expense.id, expense.version, **values,
    )
    for key, value in values.items():
        set_committed_value(expense, key, value)
    set_committed_value(expense, "version", new_version)
    return expense


def cas_step(session: Session, step: ApprovalStep, **values: Any) -> bool:
    """Update a task only while it is still pending.

    Returns:
        True when this call changed the row.  On a miss the instance is
        refreshed so the caller can report the current status.
    """
    result = session.execute(
        update(ApprovalStep)
        .where(
            ApprovalStep.id == step.id,
            ApprovalStep.status == StepStatus.PENDING.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.refresh(step)
        return False
    for key, value in values.items():
        set_committed_value(step, key, value)
    return True


def count_pending(session: Session, expense_id: UUID, step_number: int) -> int:
    """Pending tasks of ``expense_id`` at ``step_number``, read from the DB."""
    return session.execute(
        select(func.count(ApprovalStep.id)).where(
            ApprovalStep.expense_id == expense_id,
            ApprovalStep.step_number == step_number,
            ApprovalStep.status == StepStatus.PENDING.value,
        )
    ).scalar_one()


def mark_notified(session: Session, step_id: UUID, when: datetime) -> None:
    """Stamp ``notified_at`` on a task that is still pending."""
    session.execute(
        update(ApprovalStep)
        .where(
            ApprovalStep.id == step_id,
            ApprovalStep.status == StepStatus.PENDING.value,
        )
        .values(notified_at=when)
        .execution_options(synchronize_session="fetch")
    )
