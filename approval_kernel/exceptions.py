"""
Typed Exception Hierarchy for the Approval Engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The excluded CRUD/HTTP layer renders engine failures to end users.  Parsing
message strings to decide between "404", "403" and "409" is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (expense id, step id, rule id)

Example:
    try:
        engine.process_approval(step_id, actor_id, "reject", comments="")
    except RejectionReasonRequiredError as e:
        api_response(status=422, code=e.code, step_id=e.step_id)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ApprovalEngineError (base)
    |
    +-- NotFoundError
    |   +-- ExpenseNotFoundError
    |   +-- ApprovalStepNotFoundError
    |   +-- WorkflowNotFoundError
    |
    +-- InvalidStateError
    |   +-- InvalidExpenseStateError
    |   +-- StepNotPendingError
    |   +-- InvalidActionError
    |
    +-- NotAuthorizedError
    |   +-- UnauthorizedApproverError
    |   +-- UnauthorizedActorError
    |
    +-- ValidationError
    |   +-- RejectionReasonRequiredError
    |   +-- InvalidAmountError
    |
    +-- ConcurrencyError
    |   +-- ConcurrentModificationError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- CollaboratorError
        +-- CurrencyConversionError

===============================================================================
HANDLING PATTERNS
===============================================================================

1. ConcurrencyError is retryable.  The conditional-update guards make a
   retry with the same inputs safe:

    for attempt in range(3):
        try:
            return engine.process_approval(step_id, actor_id, "approve")
        except ConcurrentModificationError:
            continue

2. Locally recovered conditions (no approver found, currency conversion
   failure, malformed rule) are NOT exceptions.  They surface as history
   annotations and warning logs.
"""


class ApprovalEngineError(Exception):
    """
    Base exception for all approval engine errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "APPROVAL_ENGINE_ERROR"


# Not found


class NotFoundError(ApprovalEngineError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class ExpenseNotFoundError(NotFoundError):
    """Expense with given ID was not found."""

    code: str = "EXPENSE_NOT_FOUND"

    def __init__(self, expense_id: str):
        self.expense_id = expense_id
        super().__init__(f"Expense not found: {expense_id}")


class ApprovalStepNotFoundError(NotFoundError):
    """Approval step with given ID was not found."""

    code: str = "APPROVAL_STEP_NOT_FOUND"

    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Approval step not found: {step_id}")


class WorkflowNotFoundError(NotFoundError):
    """No active workflow template qualifies for the expense."""

    code: str = "WORKFLOW_NOT_FOUND"

    def __init__(self, expense_id: str, company_id: str):
        self.expense_id = expense_id
        self.company_id = company_id
        super().__init__(
            f"No suitable workflow found for expense {expense_id} "
            f"in company {company_id}"
        )


# Invalid state


class InvalidStateError(ApprovalEngineError):
    """Base exception for actions against ineligible entities."""

    code: str = "INVALID_STATE"


class InvalidExpenseStateError(InvalidStateError):
    """Expense is not in a status that allows the requested operation."""

    code: str = "INVALID_EXPENSE_STATE"

    def __init__(self, expense_id: str, current_status: str, operation: str):
        self.expense_id = expense_id
        self.current_status = current_status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} expense {expense_id} in status '{current_status}'"
        )


class StepNotPendingError(InvalidStateError):
    """Approval step was already resolved (possibly by a concurrent action)."""

    code: str = "STEP_NOT_PENDING"

    def __init__(self, step_id: str, current_status: str):
        self.step_id = step_id
        self.current_status = current_status
        super().__init__(
            f"Approval step {step_id} is not pending (status '{current_status}')"
        )


class InvalidActionError(InvalidStateError):
    """Action is neither approve nor reject."""

    code: str = "INVALID_ACTION"

    def __init__(self, action: str):
        self.action = action
        super().__init__(
            f"Invalid action '{action}'. Must be 'approve' or 'reject'"
        )


# Authorization


class NotAuthorizedError(ApprovalEngineError):
    """Base exception for actor mismatches."""

    code: str = "NOT_AUTHORIZED"


class UnauthorizedApproverError(NotAuthorizedError):
    """Actor is not the approver assigned to the step."""

    code: str = "UNAUTHORIZED_APPROVER"

    def __init__(self, step_id: str, actor_id: str):
        self.step_id = step_id
        self.actor_id = actor_id
        super().__init__(
            f"User {actor_id} is not authorized to process approval step {step_id}"
        )


class UnauthorizedActorError(NotAuthorizedError):
    """Actor is not the submitter of the expense."""

    code: str = "UNAUTHORIZED_ACTOR"

    def __init__(self, expense_id: str, actor_id: str):
        self.expense_id = expense_id
        self.actor_id = actor_id
        super().__init__(
            f"User {actor_id} cannot submit expense {expense_id}"
        )


# Validation


class ValidationError(ApprovalEngineError):
    """Base exception for malformed action input."""

    code: str = "VALIDATION_ERROR"


class RejectionReasonRequiredError(ValidationError):
    """Rejecting requires non-empty comments."""

    code: str = "REJECTION_REASON_REQUIRED"

    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Rejection reason is required for step {step_id}")


class InvalidAmountError(ValidationError):
    """Approved amount is not positive or exceeds the requested amount."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, expense_id: str, amount: str, reason: str):
        self.expense_id = expense_id
        self.amount = amount
        self.reason = reason
        super().__init__(
            f"Invalid amount {amount} for expense {expense_id}: {reason}"
        )


# Concurrency


class ConcurrencyError(ApprovalEngineError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrentModificationError(ConcurrencyError):
    """Expense was modified by another transaction since it was read."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, expense_id: str, expected_version: int):
        self.expense_id = expense_id
        self.expected_version = expected_version
        super().__init__(
            f"Concurrent modification of expense {expense_id}: "
            f"expected version {expected_version}"
        )


# Immutability


class ImmutabilityError(ApprovalEngineError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Approval history rows are append-only.  Workflow templates are frozen
    once a submitted expense references them.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Collaborators (recovered locally, never propagated by the engine)


class CollaboratorError(ApprovalEngineError):
    """Base exception for failures of external collaborators."""

    code: str = "COLLABORATOR_ERROR"


class CurrencyConversionError(CollaboratorError):
    """No exchange rate available for a currency pair."""

    code: str = "CURRENCY_CONVERSION_FAILED"

    def __init__(self, from_currency: str, to_currency: str, reason: str = ""):
        self.from_currency = from_currency
        self.to_currency = to_currency
        self.reason = reason
        super().__init__(
            f"Cannot convert {from_currency} to {to_currency}"
            + (f": {reason}" if reason else "")
        )
