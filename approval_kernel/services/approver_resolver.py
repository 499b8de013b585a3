"""
Approver resolution -- ApproverSpec -> concrete user ids.

Responsibility:
    The single place that turns an approver variant into approver ids
    through the DirectoryService.  Keeps the state machine free of lookup
    logic.

Architecture position:
    Kernel > Services.  Depends only on the DirectoryService protocol.

Invariants enforced:
    - The result has no duplicates and keeps directory order.
    - Directory failures are logged and yield an empty result.  An empty
      result is never an error; the materializer turns it into an
      auto-approval with a history annotation.
"""

from __future__ import annotations

from uuid import UUID

from approval_kernel.domain.approval import (
    ApproverSpec,
    Cfo,
    DepartmentHead,
    ExpenseSnapshot,
    Finance,
    Manager,
    Role,
    SpecificUser,
)
from approval_kernel.domain.directory import DirectoryService
from approval_kernel.logging_config import get_logger

logger = get_logger("services.approver_resolver")

FINANCE_ROLE = "finance"
CFO_ROLE = "cfo"


def _lookup(spec: ApproverSpec, snapshot: ExpenseSnapshot, directory: DirectoryService):
    match spec:
        case SpecificUser(user_id=user_id):
            return (user_id,)
        case Manager():
            manager = directory.get_manager(snapshot.submitter_id)
            return (manager,) if manager is not None else ()
        case Role(name=name):
            return directory.get_users_by_role(snapshot.company_id, name)
        case Finance():
            return directory.get_users_by_role(snapshot.company_id, FINANCE_ROLE)
        case Cfo():
            return directory.get_users_by_role(snapshot.company_id, CFO_ROLE)
        case DepartmentHead():
            department = snapshot.department
            if department is None:
                department = directory.get_department(snapshot.submitter_id)
            if department is None:
                return ()
            head = directory.get_department_head(snapshot.company_id, department)
            return (head,) if head is not None else ()
    return ()


def resolve(
    spec: ApproverSpec | None,
    snapshot: ExpenseSnapshot,
    directory: DirectoryService,
) -> tuple[UUID, ...]:
    """Resolve ``spec`` for ``snapshot``.  Never raises."""
    if spec is None:
        return ()
    try:
        found = _lookup(spec, snapshot, directory)
    except Exception:
        logger.warning(
            "approver_resolution_failed",
            extra={
                "expense_id": str(snapshot.expense_id),
                "approver_spec": type(spec).__name__,
            },
            exc_info=True,
        )
        return ()

    seen: set[UUID] = set()
    result: list[UUID] = []
    for user_id in found or ():
        if user_id is not None and user_id not in seen:
            seen.add(user_id)
            result.append(user_id)
    return tuple(result)
