"""
Module: approval_engines
Responsibility:
    Package entrypoint re-exporting the pure decision engines of the
    approval workflow: rule evaluation, step applicability and workflow
    selection.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel/domain (and sibling engine modules).
    MUST NOT import approval_kernel.services or approval_services.

Invariants enforced:
    - Purity: engines never read a clock or a database.  Callers pass
      snapshots and templates in.
    - Decimal-only arithmetic for amounts.
    - Determinism: identical inputs always produce identical outputs.

Usage:
    from approval_engines import apply_rules, select_workflow, bypass_reason
"""

from approval_engines.rules import (
    apply_rules,
    derive_field_value,
    evaluate_condition,
    sort_rules,
)
from approval_engines.selection import order_candidates, select_workflow
from approval_engines.steps import (
    NOT_APPLICABLE,
    bypass_reason,
    is_step_applicable,
    next_step_number,
    should_auto_approve,
    should_skip_for_approved_amount,
    steps_after,
)
from approval_engines.tracer import traced_engine

__all__ = [
    "NOT_APPLICABLE",
    "apply_rules",
    "bypass_reason",
    "derive_field_value",
    "evaluate_condition",
    "is_step_applicable",
    "next_step_number",
    "order_candidates",
    "select_workflow",
    "should_auto_approve",
    "should_skip_for_approved_amount",
    "sort_rules",
    "steps_after",
    "traced_engine",
]
