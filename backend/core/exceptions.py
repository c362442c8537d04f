"""Exceptions raised by the workflow engine."""

from typing import Optional


class WorkflowError(Exception):
    """Base exception for the workflow engine."""

    def __init__(self, message: str):
        """Initialize exception with message.

        Args:
            message: Exception message
        """
        self.message = message
        super().__init__(self.message)

    def as_named_fields(self) -> dict:
        """Fields visible to expressions, e.g. ``${error.message}``."""
        return {"message": self.message, "type": type(self).__name__}


class DefinitionError(WorkflowError):
    """Malformed workflow, step, condition or concurrency definition.

    Raised at definition or first-resolution time and never retried.
    """


class UnresolveableCondition(DefinitionError):
    """Condition that cannot be interpreted (not a mapping, unknown key)."""

    def __init__(self, message: str, condition=None):
        """Initialize with the offending condition literal."""
        self.condition = condition
        super().__init__(message)


class UnresolvableExpression(WorkflowError):
    """A referenced path has no value and no tolerant default."""

    def __init__(self, message: str, expression: Optional[str] = None):
        """Initialize with the expression that could not be resolved."""
        self.expression = expression
        super().__init__(message)


class StepExecutionFailure(WorkflowError):
    """A step's behavior failed.

    Also used when an unhandled failure crosses a nesting level; the
    original error is kept as ``cause`` and its message is preserved.
    """

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        step_id: Optional[str] = None,
    ):
        """Initialize StepExecutionFailure.

        Args:
            message: Exception message
            cause: Underlying error, if any
            step_id: Identifier of the failed step, if known
        """
        self.cause = cause
        self.step_id = step_id
        super().__init__(message)

    def as_named_fields(self) -> dict:
        fields = super().as_named_fields()
        fields["step_id"] = self.step_id
        fields["cause"] = str(self.cause) if self.cause is not None else None
        return fields


class ConditionAssertionFailure(StepExecutionFailure):
    """A condition ``assert`` check did not hold."""


class RetryLimitExceeded(StepExecutionFailure):
    """A retry policy ran out of attempts."""


class StepTimeoutError(WorkflowError):
    """A step or workflow exceeded its configured timeout."""

    def __init__(self, message: str = "Step timed out", timeout: Optional[float] = None):
        """Initialize with the timeout that elapsed."""
        self.timeout = timeout
        super().__init__(message)


def root_cause(error: BaseException) -> BaseException:
    """Follow ``cause`` links down to the innermost error."""
    while isinstance(error, StepExecutionFailure) and error.cause is not None:
        error = error.cause
    return error
