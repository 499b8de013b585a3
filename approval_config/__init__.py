"""
approval_config -- runtime settings and workflow definition tooling.

Responsibility:
    ``get_settings()`` is the single way to obtain runtime settings.  No
    other component reads configuration files or ``APPROVAL_*`` environment
    variables.  ``loader`` parses and seeds workflow templates and rules
    (administrator tooling).

Architecture position:
    Configuration -- sits above ``approval_kernel``.  The kernel MUST NEVER
    import from ``approval_config``.
"""

from approval_config.loader import (
    WorkflowDefinitions,
    parse_definitions,
    seed_workflows,
)
from approval_config.settings import EngineSettings, get_settings

__all__ = [
    "EngineSettings",
    "WorkflowDefinitions",
    "get_settings",
    "parse_definitions",
    "seed_workflows",
]
