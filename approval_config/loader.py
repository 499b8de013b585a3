"""
Workflow definition loader (``approval_config.loader``).

Responsibility
--------------
Parses workflow templates and rules from YAML fragments into the domain
dataclasses the engines consume, and persists them for a company
(administrator tooling and test fixtures).

Architecture position
---------------------
**Config layer** -- tooling above the kernel.  Imports kernel domain types
and models; the kernel never imports from here.

Fragment format
---------------
::

    workflows:
      - name: Standard
        is_default: true
        steps:
          - {step_number: 1, step_name: Manager, approver_type: manager}
          - step_number: 2
            step_name: Finance
            approver_type: finance
            threshold_percentage: 50
    rules:
      - name: Small travel
        condition: {field: amount, operator: "<", value: 50}
        action: {type: auto_approve}
        workflow: Standard        # optional; omitted means company-wide

Invariants enforced
-------------------
* Missing required keys raise ``KeyError``; invalid values ``ValueError``.
* At most one default workflow per fragment.
* Rule ``workflow`` references must name a workflow of the same fragment.
* Rule operators and actions are stored as written.  Unknown values are
  reported as ignored by the rule evaluator rather than rejected here.

Failure modes
-------------
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* ``IntegrityError`` from ``seed_workflows`` when the company already has
  a default workflow.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

import yaml
from sqlalchemy.orm import Session

from approval_kernel.domain.approval import (
    ApproverType,
    RuleSpec,
    StepTemplate,
    WorkflowTemplate,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.logging_config import get_logger
from approval_kernel.models.rule import ApprovalRule
from approval_kernel.models.workflow import ApprovalWorkflow, ApprovalWorkflowStep

logger = get_logger("config.loader")

_TEMPLATE_APPROVER_TYPES = frozenset(
    t for t in ApproverType if t != ApproverType.ESCALATED
)


@dataclass(frozen=True)
class WorkflowDefinitions:
    """Parsed content of one fragment."""

    workflows: tuple[WorkflowTemplate, ...] = ()
    rules: tuple[RuleSpec, ...] = ()


def load_yaml_file(path: Path | str) -> dict[str, Any]:
    """Load a YAML fragment; an empty file yields an empty dict."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _decimal(value: Any, key: str) -> Decimal | None:
    if value is None:
        return None
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid decimal for {key}: {value!r}") from None
    if not parsed.is_finite():
        raise ValueError(f"Invalid decimal for {key}: {value!r}")
    return parsed


def _uuid(value: Any, key: str) -> UUID | None:
    if value is None:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        raise ValueError(f"Invalid UUID for {key}: {value!r}") from None


def parse_step(data: Mapping[str, Any]) -> StepTemplate:
    """Parse one workflow step."""
    try:
        approver_type = ApproverType(data["approver_type"])
    except ValueError:
        raise ValueError(f"Unknown approver_type: {data['approver_type']!r}") from None
    if approver_type not in _TEMPLATE_APPROVER_TYPES:
        raise ValueError(f"approver_type {approver_type.value!r} is runtime-only")

    step_number = int(data["step_number"])
    if step_number <= 0:
        raise ValueError(f"step_number must be positive: {step_number}")

    percentage = _decimal(data.get("threshold_percentage"), "threshold_percentage")
    if percentage is not None and not Decimal("0") <= percentage <= Decimal("100"):
        raise ValueError(f"threshold_percentage out of range: {percentage}")

    codes = data.get("category_codes") or ()
    if isinstance(codes, str):
        codes = (codes,)

    return StepTemplate(
        step_number=step_number,
        step_name=str(data["step_name"]),
        approver_type=approver_type,
        approver_id=_uuid(data.get("approver_id"), "approver_id"),
        approver_role=data.get("approver_role"),
        amount_min=_decimal(data.get("amount_min"), "amount_min"),
        amount_max=_decimal(data.get("amount_max"), "amount_max"),
        category_codes=tuple(str(c) for c in codes),
        auto_approve_threshold=_decimal(
            data.get("auto_approve_threshold"), "auto_approve_threshold",
        ),
        threshold_percentage=percentage,
    )


def parse_workflow(data: Mapping[str, Any], company_id: UUID) -> WorkflowTemplate:
    """Parse one workflow with its steps."""
    steps = tuple(parse_step(s) for s in data.get("steps") or ())
    numbers = [s.step_number for s in steps]
    if len(numbers) != len(set(numbers)):
        raise ValueError(f"Workflow {data['name']!r} has duplicate step numbers")
    return WorkflowTemplate(
        workflow_id=_uuid(data.get("id"), "id") or uuid4(),
        company_id=company_id,
        name=str(data["name"]),
        description=data.get("description"),
        is_default=bool(data.get("is_default", False)),
        is_active=bool(data.get("is_active", True)),
        created_at=None,
        steps=tuple(sorted(steps, key=lambda s: s.step_number)),
    )


def parse_rule(
    data: Mapping[str, Any],
    company_id: UUID,
    workflow_ids: Mapping[str, UUID],
) -> RuleSpec:
    """Parse one rule, resolving its optional workflow reference by name."""
    condition = data["condition"]
    action = data["action"]

    workflow_id = None
    workflow_name = data.get("workflow")
    if workflow_name is not None:
        if workflow_name not in workflow_ids:
            raise ValueError(
                f"Rule {data['name']!r} references unknown workflow {workflow_name!r}",
            )
        workflow_id = workflow_ids[workflow_name]

    params = {k: v for k, v in action.items() if k != "type"}
    return RuleSpec(
        rule_id=_uuid(data.get("id"), "id") or uuid4(),
        company_id=company_id,
        name=str(data["name"]),
        condition_field=str(condition["field"]),
        condition_operator=str(condition["operator"]),
        condition_value=condition.get("value"),
        action_type=str(action["type"]),
        action_value=params or None,
        priority=int(data.get("priority", 0)),
        workflow_id=workflow_id,
        is_active=bool(data.get("is_active", True)),
    )


def parse_definitions(data: Mapping[str, Any], company_id: UUID) -> WorkflowDefinitions:
    """Parse a whole fragment for ``company_id``."""
    workflows = tuple(parse_workflow(w, company_id) for w in data.get("workflows") or ())
    if sum(1 for w in workflows if w.is_default) > 1:
        raise ValueError("At most one workflow may be marked is_default")

    workflow_ids = {w.name: w.workflow_id for w in workflows}
    if len(workflow_ids) != len(workflows):
        raise ValueError("Workflow names must be unique within a fragment")

    rules = tuple(
        parse_rule(r, company_id, workflow_ids) for r in data.get("rules") or ()
    )
    return WorkflowDefinitions(workflows=workflows, rules=rules)


def seed_workflows(
    session: Session,
    company_id: UUID,
    data: Mapping[str, Any] | WorkflowDefinitions,
    clock: Clock | None = None,
) -> WorkflowDefinitions:
    """Persist a fragment's workflows and rules for a company.

    Flushes; the caller commits.
    """
    clock = clock or SystemClock()
    definitions = (
        data if isinstance(data, WorkflowDefinitions)
        else parse_definitions(data, company_id)
    )
    now = clock.now()

    for template in definitions.workflows:
        workflow = ApprovalWorkflow(
            id=template.workflow_id,
            company_id=company_id,
            name=template.name,
            description=template.description,
            is_default=template.is_default,
            is_active=template.is_active,
            created_at=now,
        )
        workflow.steps = [
            ApprovalWorkflowStep(
                step_number=step.step_number,
                step_name=step.step_name,
                approver_type=step.approver_type.value,
                approver_id=step.approver_id,
                approver_role=step.approver_role,
                amount_min=step.amount_min,
                amount_max=step.amount_max,
                category_codes=list(step.category_codes) or None,
                auto_approve_threshold=step.auto_approve_threshold,
                threshold_percentage=step.threshold_percentage,
            )
            for step in template.steps
        ]
        session.add(workflow)

    # Workflows first so that rules can reference them.
    session.flush()

    for rule in definitions.rules:
        session.add(
            ApprovalRule(
                id=rule.rule_id,
                company_id=company_id,
                workflow_id=rule.workflow_id,
                name=rule.name,
                condition_field=rule.condition_field,
                condition_operator=rule.condition_operator,
                condition_value=rule.condition_value,
                action_type=rule.action_type,
                action_value=rule.action_value,
                priority=rule.priority,
                is_active=rule.is_active,
                created_at=now,
            )
        )
    session.flush()

    logger.info(
        "workflows_seeded",
        extra={
            "company_id": str(company_id),
            "workflow_count": len(definitions.workflows),
            "rule_count": len(definitions.rules),
        },
    )
    return definitions
