"""
SqlDirectoryService -- DirectoryService over the users/companies tables.

Responsibility:
    Answer the reporting-line and role lookups that approver resolution
    and escalation need.

Architecture position:
    Kernel > Services.  Read-only; may import from models/ and domain/.

Invariants enforced:
    - Only active users are ever returned as approvers.
    - Multi-user answers are ordered by name, then id, so fan-out and the
      escalation admin fallback are deterministic.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from approval_kernel.models.directory import Company, User

MANAGER_ROLE = "manager"


class SqlDirectoryService:
    """DirectoryService implementation backed by SQLAlchemy."""

    def __init__(self, session: Session):
        self._session = session

    def get_manager(self, user_id: UUID) -> UUID | None:
        user = self._session.get(User, user_id)
        if user is None or user.manager_id is None:
            return None
        manager = self._session.get(User, user.manager_id)
        if manager is None or not manager.is_active:
            return None
        return manager.id

    def get_users_by_role(self, company_id: UUID, role: str) -> tuple[UUID, ...]:
        rows = self._session.execute(
            select(User.id)
            .where(
                User.company_id == company_id,
                User.role == role,
                User.is_active.is_(True),
            )
            .order_by(User.name, User.id)
        ).scalars()
        return tuple(rows)

    def get_department_head(
        self, company_id: UUID, department: str,
    ) -> UUID | None:
        return self._session.execute(
            select(User.id)
            .where(
                User.company_id == company_id,
                User.department == department,
                User.role == MANAGER_ROLE,
                User.is_active.is_(True),
            )
            .order_by(User.name, User.id)
            .limit(1)
        ).scalar_one_or_none()

    def get_department(self, user_id: UUID) -> str | None:
        user = self._session.get(User, user_id)
        return user.department if user is not None else None

    def get_company_currency(self, company_id: UUID) -> str | None:
        company = self._session.get(Company, company_id)
        return company.currency if company is not None else None

    def get_user_name(self, user_id: UUID) -> str | None:
        user = self._session.get(User, user_id)
        return user.name if user is not None else None
