"""Constants and enums for the workflow engine."""

from enum import Enum


class WorkflowStatus(str, Enum):
    """Workflow execution context status."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if the status is final."""
        return self in (WorkflowStatus.SUCCEEDED, WorkflowStatus.FAILED)


class WorkflowOrigin(str, Enum):
    """How a workflow run was started."""

    DIRECT = "direct"
    EFFECTOR = "effector"
    SENSOR = "sensor"
    POLICY = "policy"
    NESTED = "nested"


class ConditionWhen(str, Enum):
    """Presence checks accepted by a condition ``when`` key."""

    PRESENT = "present"
    ABSENT = "absent"
    PRESENT_NON_NULL = "present_non_null"
    ABSENT_OR_NULL = "absent_or_null"


class LogLevel(str, Enum):
    """Levels accepted by the ``log`` step."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# Successor sentinel ending the current step list
END_STEP = "end"

# Token meaning "the direct children of the current entity" as a target
CHILDREN_TARGET = "children"
