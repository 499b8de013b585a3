"""
approval_engines.rules -- Pure condition -> action rule evaluation.

Responsibility:
    Fold a company's approval rules over a workflow's step list.  Decides
    which rules fire and what structural change each requests: auto-approve
    the whole expense, skip a step, inject an extra approver, or nothing.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel/domain/ types and sibling engines.

Invariants enforced:
    - Deterministic ordering: rules are sorted by priority descending,
      then name, then id.
    - ``auto_approve`` short-circuits; later rules are not evaluated.
    - Misconfiguration never raises.  An unknown operator or action, a
      malformed value, missing parameters or uncomparable types make the
      rule not fire, and the rule is reported in ``RuleEvaluation.ignored``.

Failure modes:
    - None; callers log ignored rules.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import fields
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from approval_engines.steps import next_step_number
from approval_engines.tracer import traced_engine
from approval_kernel.domain.approval import (
    ApproverType,
    ConditionOperator,
    ExpenseSnapshot,
    IgnoredRule,
    RuleActionType,
    RuleEvaluation,
    RuleSpec,
    StepTemplate,
)

# Ignore reasons reported in RuleEvaluation.ignored
CONDITION_NOT_MET = "condition_not_met"
UNKNOWN_OPERATOR = "unknown_operator"
UNKNOWN_FIELD = "unknown_field"
FIELD_UNAVAILABLE = "field_unavailable"
MALFORMED_VALUE = "malformed_value"
UNCOMPARABLE_TYPES = "uncomparable_types"
UNKNOWN_ACTION = "unknown_action"
MISSING_PARAMETERS = "missing_parameters"
INACTIVE = "inactive"

_MISSING = object()

_SNAPSHOT_FIELDS = frozenset(f.name for f in fields(ExpenseSnapshot))


class _NotEvaluable(Exception):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


def sort_rules(rules: Iterable[RuleSpec]) -> list[RuleSpec]:
    """Priority descending; ties broken by name, then id."""
    return sorted(rules, key=lambda r: (-r.priority, r.name, str(r.rule_id)))


def derive_field_value(snapshot: ExpenseSnapshot, field_name: str) -> Any:
    """Value a rule condition compares against.

    ``amount`` is the company-currency amount (raw amount when no
    normalized amount is known).  Other names map to snapshot attributes.
    Returns a sentinel when the field does not exist.
    """
    if field_name == "amount":
        return snapshot.normalized_amount
    if field_name in _SNAPSHOT_FIELDS:
        return getattr(snapshot, field_name)
    return _MISSING


def _coerce_like(reference: Any, value: Any) -> Any:
    """Coerce a JSON condition value to the type of the field value."""
    if isinstance(reference, Decimal):
        if isinstance(value, bool) or value is None:
            raise _NotEvaluable(MALFORMED_VALUE)
        try:
            parsed = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise _NotEvaluable(MALFORMED_VALUE)
        # NaN would raise on ordering comparisons.
        if not parsed.is_finite():
            raise _NotEvaluable(MALFORMED_VALUE)
        return parsed
    if isinstance(reference, UUID):
        try:
            return UUID(str(value))
        except (ValueError, AttributeError):
            raise _NotEvaluable(MALFORMED_VALUE)
    return value


def _compare(operator: ConditionOperator, left: Any, right: Any) -> bool:
    if operator == ConditionOperator.IN or operator == ConditionOperator.NOT_IN:
        if not isinstance(right, (list, tuple)):
            raise _NotEvaluable(MALFORMED_VALUE)
        candidates = [_coerce_like(left, item) for item in right]
        found = left in candidates
        return found if operator == ConditionOperator.IN else not found

    right = _coerce_like(left, right)
    try:
        if operator == ConditionOperator.GT:
            return left > right
        if operator == ConditionOperator.GTE:
            return left >= right
        if operator == ConditionOperator.LT:
            return left < right
        if operator == ConditionOperator.LTE:
            return left <= right
        if operator == ConditionOperator.EQ:
            return left == right
    except TypeError:
        raise _NotEvaluable(UNCOMPARABLE_TYPES)
    raise _NotEvaluable(UNKNOWN_OPERATOR)


def _check_condition(snapshot: ExpenseSnapshot, rule: RuleSpec) -> None:
    """Raise _NotEvaluable unless the rule's condition holds."""
    try:
        operator = ConditionOperator(rule.condition_operator)
    except ValueError:
        raise _NotEvaluable(UNKNOWN_OPERATOR)

    value = derive_field_value(snapshot, rule.condition_field)
    if value is _MISSING:
        raise _NotEvaluable(UNKNOWN_FIELD)
    if value is None:
        raise _NotEvaluable(FIELD_UNAVAILABLE)

    if not _compare(operator, value, rule.condition_value):
        raise _NotEvaluable(CONDITION_NOT_MET)


def evaluate_condition(snapshot: ExpenseSnapshot, rule: RuleSpec) -> bool:
    """True when the rule's condition holds.  Never raises."""
    try:
        _check_condition(snapshot, rule)
    except _NotEvaluable:
        return False
    return True


def _int_param(params: dict[str, Any] | None, key: str) -> int:
    if not isinstance(params, dict) or key not in params:
        raise _NotEvaluable(MISSING_PARAMETERS)
    raw = params[key]
    if isinstance(raw, bool):
        raise _NotEvaluable(MALFORMED_VALUE)
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise _NotEvaluable(MALFORMED_VALUE)


def _uuid_param(params: dict[str, Any] | None, key: str) -> UUID:
    if not isinstance(params, dict) or not params.get(key):
        raise _NotEvaluable(MISSING_PARAMETERS)
    try:
        return UUID(str(params[key]))
    except ValueError:
        raise _NotEvaluable(MALFORMED_VALUE)


@traced_engine("rules", "1.0", fingerprint_fields=("snapshot", "steps", "rules"))
def apply_rules(
    snapshot: ExpenseSnapshot,
    steps: Sequence[StepTemplate],
    rules: Iterable[RuleSpec],
) -> RuleEvaluation:
    """Fold ``rules`` over ``steps``.

    Args:
        snapshot: The expense as the rules see it.
        steps: The workflow's template steps.
        rules: Candidate rules (already scoped to company and workflow).

    Returns:
        RuleEvaluation with the modified step list (in step-number order),
        the auto-approving rule if any, and fired/ignored rules.
    """
    current: list[StepTemplate] = sorted(steps, key=lambda s: s.step_number)
    fired: list[RuleSpec] = []
    ignored: list[IgnoredRule] = []

    for rule in sort_rules(rules):
        if not rule.is_active:
            ignored.append(IgnoredRule(rule, INACTIVE))
            continue

        try:
            action = RuleActionType(rule.action_type)
        except ValueError:
            ignored.append(IgnoredRule(rule, UNKNOWN_ACTION))
            continue

        try:
            _check_condition(snapshot, rule)

            if action == RuleActionType.AUTO_APPROVE:
                fired.append(rule)
                return RuleEvaluation(
                    steps=(),
                    auto_approved_by=rule,
                    fired=tuple(fired),
                    ignored=tuple(ignored),
                )

            if action == RuleActionType.SKIP_STEP:
                step_number = _int_param(rule.action_value, "step_number")
                current = [s for s in current if s.step_number != step_number]

            elif action == RuleActionType.ADD_APPROVER:
                approver_id = _uuid_param(rule.action_value, "approver_id")
                current.append(
                    StepTemplate(
                        step_number=next_step_number(current),
                        step_name=f"Additional approval: {rule.name}",
                        approver_type=ApproverType.SPECIFIC_USER,
                        approver_id=approver_id,
                    )
                )

            # REQUIRE_APPROVAL documents intent only.
        except _NotEvaluable as exc:
            ignored.append(IgnoredRule(rule, exc.reason))
            continue

        fired.append(rule)

    return RuleEvaluation(
        steps=tuple(current),
        fired=tuple(fired),
        ignored=tuple(ignored),
    )
