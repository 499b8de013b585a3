"""
approval_engines.steps -- Pure step applicability and auto-skip checks.

Responsibility:
    Decide, for one template step and one expense, whether the step applies
    at all (amount and category bounds), whether it is auto-approved by its
    amount threshold, and whether the percentage variant lets it be skipped
    given the amount the previous approver signed off.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel/domain/ types.

Invariants enforced:
    - Amount comparisons use the company-currency amount
      (``ExpenseSnapshot.normalized_amount``).
    - Bounds are inclusive: ``amount_min <= amount <= amount_max``.
    - A percentage threshold of 0 or None never skips.
    - Decimal-only arithmetic.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal

from approval_kernel.domain.approval import (
    REASON_BELOW_THRESHOLD,
    REASON_WITHIN_PERCENTAGE,
    ExpenseSnapshot,
    StepTemplate,
)

# Bypass reason for steps outside their bounds.  Not recorded in history.
NOT_APPLICABLE = "not_applicable"

_HUNDRED = Decimal("100")


def is_step_applicable(step: StepTemplate, snapshot: ExpenseSnapshot) -> bool:
    """True when the expense falls inside the step's amount and category bounds."""
    amount = snapshot.normalized_amount
    if step.amount_min is not None and amount < step.amount_min:
        return False
    if step.amount_max is not None and amount > step.amount_max:
        return False
    if step.category_codes:
        if snapshot.category is None or snapshot.category not in step.category_codes:
            return False
    return True


def should_auto_approve(step: StepTemplate, snapshot: ExpenseSnapshot) -> bool:
    """True when the expense is at or below the step's auto-approve threshold."""
    if step.auto_approve_threshold is None:
        return False
    return snapshot.normalized_amount <= step.auto_approve_threshold


def should_skip_for_approved_amount(
    step: StepTemplate,
    approved_amount: Decimal | None,
    requested_amount: Decimal,
) -> bool:
    """Percentage variant: skip when ``approved <= requested * pct / 100``.

    Only evaluated at advancement time, when an approver has signed off an
    amount.  Threshold 0 or None never skips.
    """
    pct = step.threshold_percentage
    if approved_amount is None or pct is None:
        return False
    pct = Decimal(pct)
    if pct <= 0 or requested_amount <= 0:
        return False
    return approved_amount <= requested_amount * pct / _HUNDRED


def bypass_reason(
    step: StepTemplate,
    snapshot: ExpenseSnapshot,
    approved_amount: Decimal | None = None,
) -> str | None:
    """Why ``step`` produces no task before approver resolution, or None.

    Checks run in order: bounds, auto-approve threshold, percentage
    variant.
    """
    if not is_step_applicable(step, snapshot):
        return NOT_APPLICABLE
    if should_auto_approve(step, snapshot):
        return REASON_BELOW_THRESHOLD
    if should_skip_for_approved_amount(step, approved_amount, snapshot.amount):
        return REASON_WITHIN_PERCENTAGE
    return None


def steps_after(
    steps: Iterable[StepTemplate], start_after: int,
) -> tuple[StepTemplate, ...]:
    """Steps with ``step_number > start_after`` in step-number order."""
    return tuple(
        sorted(
            (s for s in steps if s.step_number > start_after),
            key=lambda s: s.step_number,
        )
    )


def next_step_number(steps: Iterable[StepTemplate]) -> int:
    """``max(step_number) + 1``, or 1 for an empty list."""
    numbers = [s.step_number for s in steps]
    return max(numbers) + 1 if numbers else 1
