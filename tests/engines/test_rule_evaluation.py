"""
Tests for approval_engines.rules -- condition -> action rule evaluation.

Covers:
- Each action type: auto_approve, skip_step, add_approver, require_approval
- Ordering by priority, then name, then id; auto_approve short-circuits
- Every ignore reason for misconfigured rules
- Property: evaluation never raises and does not depend on input order
"""

from decimal import Decimal
from uuid import uuid4

from hypothesis import given, settings
from hypothesis import strategies as st

from approval_engines.rules import (
    CONDITION_NOT_MET,
    FIELD_UNAVAILABLE,
    INACTIVE,
    MALFORMED_VALUE,
    MISSING_PARAMETERS,
    UNCOMPARABLE_TYPES,
    UNKNOWN_ACTION,
    UNKNOWN_FIELD,
    UNKNOWN_OPERATOR,
    apply_rules,
    evaluate_condition,
    sort_rules,
)
from approval_kernel.domain.approval import (
    ApproverType,
    ExpenseSnapshot,
    RuleSpec,
    StepTemplate,
)

COMPANY_ID = uuid4()

STEPS = (
    StepTemplate(step_number=1, step_name="Manager", approver_type=ApproverType.MANAGER),
    StepTemplate(step_number=2, step_name="Finance", approver_type=ApproverType.FINANCE),
)


def make_snapshot(amount="100", **overrides) -> ExpenseSnapshot:
    values = dict(
        expense_id=uuid4(),
        company_id=COMPANY_ID,
        submitter_id=uuid4(),
        amount=Decimal(amount),
        currency="USD",
    )
    values.update(overrides)
    return ExpenseSnapshot(**values)


def make_rule(
    name="rule",
    field="amount",
    operator=">",
    value=100,
    action="auto_approve",
    params=None,
    priority=0,
    is_active=True,
) -> RuleSpec:
    return RuleSpec(
        rule_id=uuid4(),
        company_id=COMPANY_ID,
        name=name,
        condition_field=field,
        condition_operator=operator,
        condition_value=value,
        action_type=action,
        action_value=params,
        priority=priority,
        is_active=is_active,
    )


def ignore_reasons(evaluation) -> list[str]:
    return [ignored.reason for ignored in evaluation.ignored]


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class TestRuleActions:
    """Structural changes requested by fired rules."""

    def test_auto_approve_empties_step_list(self):
        """A firing auto_approve rule approves the whole expense."""
        rule = make_rule(operator="<", value=50)
        evaluation = apply_rules(make_snapshot("20"), STEPS, [rule])

        assert evaluation.is_auto_approved
        assert evaluation.auto_approved_by == rule
        assert evaluation.steps == ()
        assert evaluation.fired == (rule,)

    def test_skip_step_removes_step_number(self):
        rule = make_rule(
            action="skip_step", params={"step_number": 2}, operator=">", value=0,
        )
        evaluation = apply_rules(make_snapshot(), STEPS, [rule])

        assert [s.step_number for s in evaluation.steps] == [1]
        assert not evaluation.is_auto_approved

    def test_skip_step_accepts_numeric_string(self):
        rule = make_rule(action="skip_step", params={"step_number": "1"}, value=0)
        evaluation = apply_rules(make_snapshot(), STEPS, [rule])

        assert [s.step_number for s in evaluation.steps] == [2]

    def test_add_approver_appends_specific_user_step(self):
        """The injected step takes the next free number and names the rule."""
        approver_id = uuid4()
        rule = make_rule(
            name="Large purchase",
            action="add_approver",
            params={"approver_id": str(approver_id)},
            value=50,
        )
        evaluation = apply_rules(make_snapshot("500"), STEPS, [rule])

        added = evaluation.steps[-1]
        assert added.step_number == 3
        assert added.approver_type == ApproverType.SPECIFIC_USER
        assert added.approver_id == approver_id
        assert added.step_name == "Additional approval: Large purchase"
        assert added.template_step_id is None

    def test_require_approval_fires_without_change(self):
        rule = make_rule(action="require_approval", value=10)
        evaluation = apply_rules(make_snapshot("500"), STEPS, [rule])

        assert evaluation.fired == (rule,)
        assert evaluation.steps == STEPS

    def test_steps_returned_in_step_number_order(self):
        reversed_steps = tuple(reversed(STEPS))
        evaluation = apply_rules(make_snapshot(), reversed_steps, [])

        assert [s.step_number for s in evaluation.steps] == [1, 2]


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


class TestRuleOrdering:
    """Deterministic evaluation order."""

    def test_higher_priority_evaluated_first(self):
        """Skipping step 2 before adding an approver gives the added step number 2."""
        approver_id = uuid4()
        skip = make_rule(
            name="skip", action="skip_step", params={"step_number": 2},
            value=0, priority=10,
        )
        add = make_rule(
            name="add", action="add_approver",
            params={"approver_id": str(approver_id)}, value=0, priority=5,
        )
        evaluation = apply_rules(make_snapshot(), STEPS, [add, skip])

        assert evaluation.fired == (skip, add)
        assert [s.step_number for s in evaluation.steps] == [1, 2]
        assert evaluation.steps[-1].approver_id == approver_id

    def test_ties_broken_by_name(self):
        beta = make_rule(name="beta", priority=1)
        alpha = make_rule(name="alpha", priority=1)
        assert sort_rules([beta, alpha]) == [alpha, beta]

    def test_auto_approve_short_circuits_later_rules(self):
        """Rules after a firing auto_approve are not evaluated at all."""
        auto = make_rule(name="auto", value=0, priority=10)
        skip = make_rule(
            name="skip", action="skip_step", params={"step_number": 1},
            value=0, priority=1,
        )
        evaluation = apply_rules(make_snapshot(), STEPS, [skip, auto])

        assert evaluation.fired == (auto,)
        assert evaluation.ignored == ()


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


class TestRuleConditions:
    """Operators and field lookup."""

    def test_amount_uses_company_currency_amount(self):
        """100 EUR normalized to 111.11 USD satisfies "amount > 110"."""
        snapshot = make_snapshot(
            "100", currency="EUR", amount_in_company_currency=Decimal("111.11"),
        )
        assert evaluate_condition(snapshot, make_rule(value=110))

    def test_amount_falls_back_to_raw_amount(self):
        assert not evaluate_condition(make_snapshot("100"), make_rule(value=110))

    def test_in_operator_matches_category(self):
        rule = make_rule(field="category", operator="IN", value=["travel", "meals"])
        assert evaluate_condition(make_snapshot(category="travel"), rule)
        assert not evaluate_condition(make_snapshot(category="software"), rule)

    def test_not_in_operator(self):
        rule = make_rule(field="category", operator="NOT IN", value=["travel"])
        assert evaluate_condition(make_snapshot(category="software"), rule)

    def test_equality_on_department(self):
        rule = make_rule(field="department", operator="=", value="Engineering")
        assert evaluate_condition(make_snapshot(department="Engineering"), rule)

    def test_boundaries_are_inclusive_for_gte_and_lte(self):
        snapshot = make_snapshot("100")
        assert evaluate_condition(snapshot, make_rule(operator=">=", value="100"))
        assert evaluate_condition(snapshot, make_rule(operator="<=", value="100.00"))
        assert not evaluate_condition(snapshot, make_rule(operator=">", value=100))


# ---------------------------------------------------------------------------
# Misconfiguration
# ---------------------------------------------------------------------------


class TestIgnoredRules:
    """Misconfigured rules never fire and never raise."""

    def _reasons(self, rule, snapshot=None):
        return ignore_reasons(apply_rules(snapshot or make_snapshot(), STEPS, [rule]))

    def test_condition_not_met(self):
        assert self._reasons(make_rule(value=1000)) == [CONDITION_NOT_MET]

    def test_unknown_operator(self):
        assert self._reasons(make_rule(operator="LIKE")) == [UNKNOWN_OPERATOR]

    def test_unknown_field(self):
        assert self._reasons(make_rule(field="colour")) == [UNKNOWN_FIELD]

    def test_unset_field(self):
        rule = make_rule(field="category", operator="=", value="travel")
        assert self._reasons(rule) == [FIELD_UNAVAILABLE]

    def test_malformed_amount_value(self):
        assert self._reasons(make_rule(value="lots")) == [MALFORMED_VALUE]

    def test_nan_amount_value(self):
        assert self._reasons(make_rule(value="NaN")) == [MALFORMED_VALUE]

    def test_in_operator_requires_list(self):
        rule = make_rule(field="category", operator="IN", value="travel")
        assert self._reasons(rule, make_snapshot(category="travel")) == [MALFORMED_VALUE]

    def test_uncomparable_types(self):
        rule = make_rule(field="currency", operator=">", value=5)
        assert self._reasons(rule) == [UNCOMPARABLE_TYPES]

    def test_unknown_action(self):
        assert self._reasons(make_rule(action="explode", value=0)) == [UNKNOWN_ACTION]

    def test_missing_parameters(self):
        rule = make_rule(action="skip_step", value=0)
        assert self._reasons(rule) == [MISSING_PARAMETERS]

    def test_malformed_approver_id(self):
        rule = make_rule(action="add_approver", params={"approver_id": "nobody"}, value=0)
        assert self._reasons(rule) == [MALFORMED_VALUE]

    def test_inactive_rule(self):
        assert self._reasons(make_rule(value=0, is_active=False)) == [INACTIVE]

    def test_ignored_rule_does_not_block_others(self):
        broken = make_rule(name="broken", operator="LIKE", priority=10)
        auto = make_rule(name="auto", value=0)
        evaluation = apply_rules(make_snapshot(), STEPS, [broken, auto])

        assert evaluation.is_auto_approved
        assert ignore_reasons(evaluation) == [UNKNOWN_OPERATOR]


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------

_fields = st.sampled_from(["amount", "category", "department", "currency", "colour"])
_operators = st.sampled_from([">", ">=", "<", "<=", "=", "IN", "NOT IN", "LIKE", ""])
_values = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-1000, max_value=5000),
    st.text(max_size=6),
    st.lists(st.sampled_from(["travel", "meals", "Engineering"]), max_size=3),
)
_actions = st.sampled_from(
    ["auto_approve", "require_approval", "skip_step", "add_approver", "bogus"]
)
_params = st.one_of(
    st.none(),
    st.fixed_dictionaries({"step_number": st.integers(min_value=0, max_value=4)}),
    st.fixed_dictionaries({"step_number": st.text(max_size=3)}),
    st.builds(lambda u: {"approver_id": str(u)}, st.uuids()),
)

_rules = st.builds(
    RuleSpec,
    rule_id=st.uuids(),
    company_id=st.just(COMPANY_ID),
    name=st.text(alphabet="abcxyz", min_size=1, max_size=4),
    condition_field=_fields,
    condition_operator=_operators,
    condition_value=_values,
    action_type=_actions,
    action_value=_params,
    priority=st.integers(min_value=-3, max_value=3),
    is_active=st.booleans(),
)

_snapshots = st.builds(
    make_snapshot,
    amount=st.decimals(min_value=1, max_value=10000, places=2).map(str),
    category=st.sampled_from([None, "travel", "software"]),
    department=st.sampled_from([None, "Engineering"]),
)


class TestRuleProperties:
    """Evaluation is total and order independent."""

    @settings(max_examples=200, deadline=None)
    @given(snapshot=_snapshots, rules=st.lists(_rules, max_size=6, unique_by=lambda r: r.rule_id))
    def test_never_raises_and_partitions_rules(self, snapshot, rules):
        evaluation = apply_rules(snapshot, STEPS, rules)

        fired_ids = {r.rule_id for r in evaluation.fired}
        ignored_ids = {i.rule.rule_id for i in evaluation.ignored}
        assert not fired_ids & ignored_ids
        if not evaluation.is_auto_approved:
            assert len(fired_ids) + len(ignored_ids) == len(rules)
        else:
            assert evaluation.steps == ()

    @settings(max_examples=100, deadline=None)
    @given(snapshot=_snapshots, rules=st.lists(_rules, max_size=6, unique_by=lambda r: r.rule_id), data=st.data())
    def test_result_independent_of_input_order(self, snapshot, rules, data):
        shuffled = data.draw(st.permutations(rules))

        first = apply_rules(snapshot, STEPS, rules)
        second = apply_rules(snapshot, STEPS, shuffled)

        assert first.steps == second.steps
        assert first.fired == second.fired
        assert first.auto_approved_by == second.auto_approved_by
