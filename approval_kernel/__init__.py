"""
Approval Kernel

The persistence and service core of the expense approval engine:
- Workflow template selection and rule evaluation
- Lazy, one-step-at-a-time approval task materialization
- Compare-and-swap guarded approve/reject transitions
- Escalation and reminder sweeps
- Append-only approval history
"""

__version__ = "0.1.0"
