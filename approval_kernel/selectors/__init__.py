"""Selectors for the approval kernel (read side)."""

from approval_kernel.selectors.approval_selector import ApprovalSelector

__all__ = [
    "ApprovalSelector",
]
