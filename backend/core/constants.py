"""Constants and enums for the workflow engine."""

from enum import Enum


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow definition."""

    DRAFT = "draft"
    PUBLISHED = "published"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DEPRECATED = "deprecated"
    ARCHIVED = "archived"


EXECUTABLE_WORKFLOW_STATUSES = frozenset({WorkflowStatus.ACTIVE, WorkflowStatus.PUBLISHED})


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EXECUTION_STATUSES


TERMINAL_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.TIMEOUT,
})


class StepStatus(str, Enum):
    """Status of a single step execution record."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class ActionStatus(str, Enum):
    """Status of an action execution record."""

    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepType(str, Enum):
    """Kinds of workflow steps."""

    START = "start"
    END = "end"
    TASK = "task"
    USER_TASK = "user_task"
    SERVICE_TASK = "service_task"
    SCRIPT_TASK = "script_task"
    EMAIL_TASK = "email_task"
    TIMER_TASK = "timer_task"
    DECISION = "decision"
    PARALLEL = "parallel"
    LOOP = "loop"
    SUB_WORKFLOW = "sub_workflow"
    EVENT = "event"
    GATEWAY = "gateway"
    CUSTOM = "custom"


# Step types that dispatch to an external handler
HANDLER_STEP_TYPES = frozenset({
    StepType.TASK,
    StepType.SERVICE_TASK,
    StepType.SCRIPT_TASK,
    StepType.EMAIL_TASK,
    StepType.CUSTOM,
})

# Default handler tag per handler step type, used when the step names none
DEFAULT_HANDLER_TAGS = {
    StepType.SERVICE_TASK: "service_call",
    StepType.SCRIPT_TASK: "script",
    StepType.EMAIL_TASK: "email",
}


class AssignmentType(str, Enum):
    """How the assignee of a user task is determined."""

    USER = "user"
    ROLE = "role"
    GROUP = "group"
    EXPRESSION = "expression"
    SERVICE = "service"
    AUTO = "auto"


class TransitionType(str, Enum):
    """Kinds of transitions between steps."""

    SEQUENCE = "sequence"
    CONDITIONAL = "conditional"
    DEFAULT = "default"
    EXCEPTION = "exception"
    TIMER = "timer"
    MESSAGE = "message"
    SIGNAL = "signal"


class ConditionOperator(str, Enum):
    """Operators a condition node may apply."""

    AND = "and"
    OR = "or"
    NOT = "not"
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    CUSTOM = "custom"


class ActionType(str, Enum):
    """Built-in action types."""

    SET_VARIABLE = "set_variable"
    SEND_NOTIFICATION = "send_notification"
    CALL_WEBHOOK = "call_webhook"
    UPDATE_DATA = "update_data"
    CUSTOM = "custom"


class RetryStrategyType(str, Enum):
    """Backoff strategy between step retry attempts."""

    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    FIXED = "fixed"
    CUSTOM = "custom"


class TimeoutAction(str, Enum):
    """What happens when a step timeout fires."""

    CANCEL = "cancel"
    COMPLETE = "complete"
    ESCALATE = "escalate"
    RETRY = "retry"
    SKIP = "skip"
    GO_TO_STEP = "go_to_step"


class NotificationEvent(str, Enum):
    """Execution lifecycle events a definition may subscribe to."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"
    RESUMED = "resumed"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    ESCALATED = "escalated"
    TIMEOUT = "timeout"


class VariableScope(str, Enum):
    """Scope of a declared workflow variable."""

    WORKFLOW = "workflow"
    STEP = "step"
    GLOBAL = "global"


class WakeKind(str, Enum):
    """Kinds of durable scheduled wakes."""

    TIMER = "timer"
    ESCALATION = "escalation"
    TIMEOUT = "timeout"
    EXECUTION_TIMEOUT = "execution_timeout"


class TokenStatus(str, Enum):
    """State of a control-flow token."""

    ACTIVE = "active"
    WAITING = "waiting"
    ARRIVED = "arrived"
    COMPLETED = "completed"
    DISCARDED = "discarded"


class ValidationSeverity(str, Enum):
    """Severity of a validation finding."""

    ERROR = "error"
    WARNING = "warning"


# Reserved variable namespace holding step outputs during evaluation
STEPS_NAMESPACE = "steps"

# Output key a timed-out step receives under TimeoutAction.COMPLETE
TIMED_OUT_OUTPUT_KEY = "timed_out"


class ErrorCode(str, Enum):
    """Stable error identifiers recorded on executions and step records."""

    INVALID_STATE = "invalid_state"
    NOT_FOUND = "not_found"
    INVALID_CONTEXT = "invalid_context"
    NO_START_STEP = "no_start_step"
    NO_VALID_TRANSITION = "no_valid_transition"
    MAX_STEPS_EXCEEDED = "max_steps_exceeded"
    HANDLER_NOT_FOUND = "handler_not_found"
    HANDLER_EXECUTION_FAILED = "handler_execution_failed"
    ASSIGNMENT_UNRESOLVED = "assignment_unresolved"
    STEP_TIMEOUT = "step_timeout"
    EXECUTION_TIMEOUT = "execution_timeout"
    ACTION_FAILED = "action_failed"
    CANCELLED = "cancelled"
    STEP_NOT_WAITING = "step_not_waiting"
    STORAGE_ERROR = "storage_error"
