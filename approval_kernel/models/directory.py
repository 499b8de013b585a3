"""
Module: approval_kernel.models.directory
Responsibility: Minimal company and user reference data backing the SQL
    directory and currency collaborators.
Architecture position: Kernel > Models.  May import from db/base.py only.

The engine only reads these tables.  User and company management belong to
the surrounding CRUD application.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UUIDString


class Company(Base):
    """A tenant.  ``currency`` is the ISO 4217 code expenses normalize to."""

    __tablename__ = "companies"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    def __repr__(self) -> str:
        return f"<Company {self.name} ({self.currency})>"


class User(Base):
    """A member of a company.

    ``role`` is free text (employee, manager, finance, cfo, admin, ...).
    ``manager_id`` points at the user's direct manager.
    """

    __tablename__ = "users"

    __table_args__ = (
        Index("idx_users_company_role", "company_id", "role", "is_active"),
        Index("idx_users_company_department", "company_id", "department"),
    )

    company_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("companies.id"), nullable=False,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="employee")
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)
    manager_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("users.id"), nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<User {self.email} role={self.role}>"
