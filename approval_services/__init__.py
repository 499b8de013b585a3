"""
approval_services -- the public facade of the approval engine.

Responsibility:
    ``ApprovalEngine`` composes kernel services and pure engines, owns the
    transaction boundary of every operation and is the canonical import
    surface for callers.

Architecture position:
    Services -- orchestration over engines + kernel.

        approval_services/ -> approval_kernel/   (allowed)
        approval_services/ -> approval_engines/  (allowed)
        approval_kernel/   -> approval_services/ (FORBIDDEN)
"""

from approval_services.engine import ApprovalEngine

__all__ = [
    "ApprovalEngine",
]
