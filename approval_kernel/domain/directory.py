"""
Collaborator protocols for the approval engine.

Responsibility:
    Structural interfaces for the fallible collaborators the engine
    consumes: the user/company directory, currency normalization and the
    notification sink.  Concrete implementations live in
    ``approval_kernel.services``; tests substitute fakes.

Architecture position:
    Kernel > Domain -- pure declarations, zero I/O.

Failure modes:
    Implementations may raise.  Callers recover locally: directory errors
    are treated as "no approver", conversion errors keep the raw amount,
    notification errors are logged and dropped.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable, Protocol, runtime_checkable
from uuid import UUID

from approval_kernel.domain.approval import NotificationKind


@runtime_checkable
class DirectoryService(Protocol):
    """Read access to users, their reporting lines and company settings."""

    def get_manager(self, user_id: UUID) -> UUID | None:
        """Active direct manager of ``user_id``, if any."""
        ...

    def get_users_by_role(self, company_id: UUID, role: str) -> tuple[UUID, ...]:
        """Active users of the company holding ``role``, in a stable order."""
        ...

    def get_department_head(
        self, company_id: UUID, department: str,
    ) -> UUID | None:
        """Active manager-role user of ``department``, if any."""
        ...

    def get_department(self, user_id: UUID) -> str | None:
        ...

    def get_company_currency(self, company_id: UUID) -> str | None:
        ...

    def get_user_name(self, user_id: UUID) -> str | None:
        """Display name used in notification messages."""
        ...


@runtime_checkable
class CurrencyConverter(Protocol):
    """Normalizes an amount into the company's currency."""

    def normalize_to_company_currency(
        self, amount: Decimal, currency: str, company_id: UUID,
    ) -> Decimal:
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Best-effort outward notification channel."""

    def notify(
        self,
        user_id: UUID,
        kind: NotificationKind,
        expense_id: UUID | None,
        payload: dict[str, Any],
    ) -> None:
        ...


# (from_currency, to_currency) -> rate, or raise.
RateSource = Callable[[str, str], Decimal]
