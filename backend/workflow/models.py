"""
Workflow data model.

Definitions (the authored graph) are pydantic models parsed from JSON
documents; camelCase and snake_case keys are both accepted, and enum
values may be written either as ``"UserTask"`` or ``"user_task"``.

Execution records (the live instance and its audit trail) are plain
dataclasses with ``to_dict``/``from_dict`` so they can be snapshotted
into any store.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.constants import (
    ActionStatus,
    ActionType,
    AssignmentType,
    ConditionOperator,
    ExecutionStatus,
    NotificationEvent,
    RetryStrategyType,
    StepStatus,
    StepType,
    TimeoutAction,
    TokenStatus,
    TransitionType,
    VariableScope,
    WorkflowStatus,
)
from core.utils import duration_ms, isoformat, new_id, parse_datetime, parse_duration, utc_now


def _enum_key(value: Any) -> Any:
    """Normalize ``"GreaterThanOrEqual"`` / ``"greater-than"`` to snake_case."""
    if isinstance(value, str) and not hasattr(value, "value"):
        text = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", value.strip())
        return re.sub(r"[\s\-]+", "_", text).lower()
    return value


StepTypeField = Annotated[StepType, BeforeValidator(_enum_key)]
TransitionTypeField = Annotated[TransitionType, BeforeValidator(_enum_key)]
OperatorField = Annotated[ConditionOperator, BeforeValidator(_enum_key)]
ActionTypeField = Annotated[ActionType, BeforeValidator(_enum_key)]
AssignmentTypeField = Annotated[AssignmentType, BeforeValidator(_enum_key)]
StrategyField = Annotated[RetryStrategyType, BeforeValidator(_enum_key)]
TimeoutActionField = Annotated[TimeoutAction, BeforeValidator(_enum_key)]
NotificationEventField = Annotated[NotificationEvent, BeforeValidator(_enum_key)]
WorkflowStatusField = Annotated[WorkflowStatus, BeforeValidator(_enum_key)]
ScopeField = Annotated[VariableScope, BeforeValidator(_enum_key)]
Duration = Annotated[Optional[float], BeforeValidator(parse_duration)]


class DefinitionModel(BaseModel):
    """Base for definition documents."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Definition graph
# ---------------------------------------------------------------------------


class WorkflowCondition(DefinitionModel):
    """
    Recursive boolean condition.

    Leaves compare ``variable`` against ``value`` (or ``value_variable``),
    or carry an ``expression``/``script`` delegated to the expression
    evaluator. ``And``/``Or``/``Not`` combine ``sub_conditions``.
    """

    id: Optional[str] = None
    name: str = ""
    expression: str = ""
    operator: OperatorField = ConditionOperator.AND
    sub_conditions: List["WorkflowCondition"] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    script: str = ""
    script_language: str = "python"
    variable: Optional[str] = None
    value: Any = None
    value_variable: Optional[str] = None


class RetryPolicy(DefinitionModel):
    """Step retry policy. ``max_attempts`` counts total invocations."""

    is_enabled: bool = False
    max_attempts: int = Field(default=3, ge=1)
    retry_delay: Duration = 300.0
    strategy: StrategyField = RetryStrategyType.LINEAR
    max_delay: Duration = None
    retry_on_errors: List[str] = Field(default_factory=list)
    do_not_retry_on_errors: List[str] = Field(default_factory=list)


class ActionRetryPolicy(DefinitionModel):
    max_attempts: int = Field(default=3, ge=1)
    retry_delay: Duration = 30.0
    strategy: StrategyField = RetryStrategyType.FIXED


class WorkflowAction(DefinitionModel):
    """Side effect run by a step, a transition, an escalation or a timeout."""

    id: str = Field(default_factory=new_id)
    type: ActionTypeField = ActionType.CUSTOM
    name: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    condition: Optional[WorkflowCondition] = None
    order: int = 0
    is_async: bool = False
    delay: Duration = None
    is_required: bool = False
    retry: Optional[ActionRetryPolicy] = None


class AssignmentPolicy(DefinitionModel):
    type: AssignmentTypeField = AssignmentType.USER
    assignee: str = ""
    assignment_rule: str = ""
    candidates: List[str] = Field(default_factory=list)
    parameters: Dict[str, Any] = Field(default_factory=dict)


class EscalationPolicy(DefinitionModel):
    is_enabled: bool = False
    duration: Duration = 86400.0
    escalate_to: str = ""
    actions: List[WorkflowAction] = Field(default_factory=list)
    repeat_escalation: bool = False
    repeat_interval: Duration = 43200.0


class TimeoutPolicy(DefinitionModel):
    is_enabled: bool = False
    duration: Duration = 3600.0
    action: TimeoutActionField = TimeoutAction.CANCEL
    next_step_id: Optional[str] = None
    timeout_actions: List[WorkflowAction] = Field(default_factory=list)


class StepConfiguration(DefinitionModel):
    handler: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    assignment: Optional[AssignmentPolicy] = None
    escalation: Optional[EscalationPolicy] = None
    validators: List[Dict[str, Any]] = Field(default_factory=list)
    input_mapping: Dict[str, str] = Field(default_factory=dict)
    output_mapping: Dict[str, str] = Field(default_factory=dict)


class WorkflowStep(DefinitionModel):
    """A node in the process graph."""

    id: str
    name: str = ""
    description: str = ""
    type: StepTypeField = StepType.TASK
    configuration: StepConfiguration = Field(default_factory=StepConfiguration)
    actions: List[WorkflowAction] = Field(default_factory=list)
    conditions: List[WorkflowCondition] = Field(default_factory=list)
    outcomes: Dict[str, WorkflowCondition] = Field(default_factory=dict)
    timeout: TimeoutPolicy = Field(default_factory=TimeoutPolicy)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    is_start_step: bool = False
    is_end_step: bool = False
    continue_on_error: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        """End of a path: flagged as an end step or typed End."""
        return self.is_end_step or self.type == StepType.END

    @property
    def handler(self) -> str:
        return self.configuration.handler

    @property
    def parameters(self) -> Dict[str, Any]:
        return self.configuration.parameters


class WorkflowTransition(DefinitionModel):
    """Directed edge between two steps."""

    id: str = Field(default_factory=new_id)
    name: str = ""
    from_step_id: str
    to_step_id: str
    condition: Optional[WorkflowCondition] = None
    type: TransitionTypeField = TransitionType.SEQUENCE
    priority: int = 0
    actions: List[WorkflowAction] = Field(default_factory=list)


class NotificationSettings(DefinitionModel):
    is_enabled: bool = False
    events: List[NotificationEventField] = Field(default_factory=list)
    recipients: List[str] = Field(default_factory=list)
    template: str = ""
    channel: str = "email"


class WorkflowConfiguration(DefinitionModel):
    is_parallel_execution_enabled: bool = False
    max_concurrent_executions: Optional[int] = None
    enable_audit_trail: bool = True
    default_timeout: Duration = None
    max_steps: Optional[int] = None
    notification: NotificationSettings = Field(default_factory=NotificationSettings)


class WorkflowVariable(DefinitionModel):
    name: str
    display_name: str = ""
    type: str = "string"
    value: Any = None
    default_value: Any = None
    is_required: bool = False
    is_read_only: bool = False
    scope: ScopeField = VariableScope.WORKFLOW
    description: str = ""


class WorkflowSecurity(DefinitionModel):
    allowed_roles: List[str] = Field(default_factory=list)
    allowed_users: List[str] = Field(default_factory=list)
    require_authentication: bool = True
    require_authorization: bool = True
    level: str = "standard"
    audit_execution: bool = True
    encrypt_data: bool = False


class WorkflowTrigger(DefinitionModel):
    type: str = "manual"
    configuration: Dict[str, Any] = Field(default_factory=dict)


class WorkflowDefinition(DefinitionModel):
    """The authored process graph. Read-only while executions run."""

    id: str = Field(default_factory=new_id)
    name: str = ""
    description: str = ""
    tenant_id: str = ""
    version: int = 1
    status: WorkflowStatusField = WorkflowStatus.DRAFT
    steps: List[WorkflowStep] = Field(default_factory=list)
    transitions: List[WorkflowTransition] = Field(default_factory=list)
    configuration: WorkflowConfiguration = Field(default_factory=WorkflowConfiguration)
    trigger: WorkflowTrigger = Field(default_factory=WorkflowTrigger)
    variables: List[WorkflowVariable] = Field(default_factory=list)
    security: WorkflowSecurity = Field(default_factory=WorkflowSecurity)
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def get_step(self, step_id: Optional[str]) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def start_steps(self) -> List[WorkflowStep]:
        """Steps flagged as start; Start-typed steps when none is flagged."""
        flagged = [s for s in self.steps if s.is_start_step]
        return flagged or [s for s in self.steps if s.type == StepType.START]

    def outgoing(self, step_id: str) -> List[WorkflowTransition]:
        """Transitions leaving ``step_id`` in declaration order."""
        return [t for t in self.transitions if t.from_step_id == step_id]

    def get_variable(self, name: str) -> Optional[WorkflowVariable]:
        for variable in self.variables:
            if variable.name == name:
                return variable
        return None


class WorkflowContext(DefinitionModel):
    """Caller-supplied context an execution starts from."""

    tenant_id: str = ""
    user_id: str = ""
    business_key: str = ""
    variables: Dict[str, Any] = Field(default_factory=dict)
    process_data: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: str = ""
    source: str = ""
    timestamp: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Execution records
# ---------------------------------------------------------------------------


def _json_safe(value: Any) -> Any:
    """Make step outputs serializable (datetimes, enums, models)."""
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


@dataclass
class ActionExecution:
    """Audit record of one action run."""

    action_id: str
    action_type: str
    status: ActionStatus = ActionStatus.PENDING
    id: str = field(default_factory=new_id)
    name: str = ""
    transition_id: Optional[str] = None
    is_required: bool = False
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action_id": self.action_id,
            "action_type": self.action_type,
            "name": self.name,
            "status": self.status.value,
            "transition_id": self.transition_id,
            "is_required": self.is_required,
            "attempts": self.attempts,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "result": _json_safe(self.result),
            "error_message": self.error_message,
            "error_code": self.error_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionExecution":
        return cls(
            id=data["id"],
            action_id=data["action_id"],
            action_type=data["action_type"],
            name=data.get("name", ""),
            status=ActionStatus(data.get("status", ActionStatus.PENDING.value)),
            transition_id=data.get("transition_id"),
            is_required=data.get("is_required", False),
            attempts=data.get("attempts", 0),
            started_at=parse_datetime(data.get("started_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            result=data.get("result") or {},
            error_message=data.get("error_message"),
            error_code=data.get("error_code"),
        )


@dataclass
class StepExecution:
    """Audit record of one step visit."""

    step_id: str
    step_name: str = ""
    step_type: str = StepType.TASK.value
    status: StepStatus = StepStatus.PENDING
    id: str = field(default_factory=new_id)
    token_id: Optional[str] = None
    assigned_to: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    waiting_since: Optional[datetime] = None
    input_data: Dict[str, Any] = field(default_factory=dict)
    output_data: Dict[str, Any] = field(default_factory=dict)
    action_executions: List[ActionExecution] = field(default_factory=list)
    attempts: int = 0
    escalation_count: int = 0
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.status not in (StepStatus.PENDING, StepStatus.RUNNING, StepStatus.WAITING)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "step_id": self.step_id,
            "step_name": self.step_name,
            "step_type": self.step_type,
            "status": self.status.value,
            "token_id": self.token_id,
            "assigned_to": self.assigned_to,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "waiting_since": isoformat(self.waiting_since),
            "input_data": _json_safe(self.input_data),
            "output_data": _json_safe(self.output_data),
            "action_executions": [a.to_dict() for a in self.action_executions],
            "attempts": self.attempts,
            "escalation_count": self.escalation_count,
            "error_message": self.error_message,
            "error_code": self.error_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepExecution":
        return cls(
            id=data["id"],
            step_id=data["step_id"],
            step_name=data.get("step_name", ""),
            step_type=data.get("step_type", StepType.TASK.value),
            status=StepStatus(data.get("status", StepStatus.PENDING.value)),
            token_id=data.get("token_id"),
            assigned_to=data.get("assigned_to"),
            started_at=parse_datetime(data.get("started_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            waiting_since=parse_datetime(data.get("waiting_since")),
            input_data=data.get("input_data") or {},
            output_data=data.get("output_data") or {},
            action_executions=[ActionExecution.from_dict(a) for a in data.get("action_executions", [])],
            attempts=data.get("attempts", 0),
            escalation_count=data.get("escalation_count", 0),
            error_message=data.get("error_message"),
            error_code=data.get("error_code"),
        )


@dataclass
class ExecutionToken:
    """
    A unit of control flow.

    A sequential run has exactly one token. A parallel fork consumes its
    token and creates one per branch; the join creates a continuation.
    """

    current_step_id: str
    id: str = field(default_factory=new_id)
    status: TokenStatus = TokenStatus.ACTIVE
    join_id: Optional[str] = None
    reached_end: bool = False
    pending_record_id: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.status in (TokenStatus.ACTIVE, TokenStatus.WAITING)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "current_step_id": self.current_step_id,
            "status": self.status.value,
            "join_id": self.join_id,
            "reached_end": self.reached_end,
            "pending_record_id": self.pending_record_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionToken":
        return cls(
            id=data["id"],
            current_step_id=data["current_step_id"],
            status=TokenStatus(data.get("status", TokenStatus.ACTIVE.value)),
            join_id=data.get("join_id"),
            reached_end=data.get("reached_end", False),
            pending_record_id=data.get("pending_record_id"),
        )


@dataclass
class JoinState:
    """Per-instance bookkeeping for one parallel fork awaiting its join."""

    fork_step_id: str
    join_step_id: str
    quorum: int
    id: str = field(default_factory=new_id)
    branch_token_ids: List[str] = field(default_factory=list)
    arrived_token_ids: List[str] = field(default_factory=list)
    parent_join_id: Optional[str] = None
    fired: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fork_step_id": self.fork_step_id,
            "join_step_id": self.join_step_id,
            "quorum": self.quorum,
            "branch_token_ids": list(self.branch_token_ids),
            "arrived_token_ids": list(self.arrived_token_ids),
            "parent_join_id": self.parent_join_id,
            "fired": self.fired,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JoinState":
        return cls(**data)


@dataclass
class ExecutionMetrics:
    total_duration_ms: int = 0
    active_duration_ms: int = 0
    waiting_duration_ms: int = 0
    steps_completed: int = 0
    steps_failed: int = 0
    actions_executed: int = 0
    custom_metrics: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_duration_ms": self.total_duration_ms,
            "active_duration_ms": self.active_duration_ms,
            "waiting_duration_ms": self.waiting_duration_ms,
            "steps_completed": self.steps_completed,
            "steps_failed": self.steps_failed,
            "actions_executed": self.actions_executed,
            "custom_metrics": _json_safe(self.custom_metrics),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionMetrics":
        return cls(**data)


@dataclass
class WorkflowExecution:
    """
    The live (or finished) instance of a definition.

    Mutated only by the engine while it holds the execution's lock;
    frozen once the status is terminal.
    """

    workflow_id: str
    workflow_version: int = 1
    id: str = field(default_factory=new_id)
    status: ExecutionStatus = ExecutionStatus.PENDING
    context: WorkflowContext = field(default_factory=WorkflowContext)
    initiated_by: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    step_executions: List[StepExecution] = field(default_factory=list)
    step_outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    tokens: List[ExecutionToken] = field(default_factory=list)
    joins: List[JoinState] = field(default_factory=list)
    loop_counters: Dict[str, int] = field(default_factory=dict)
    steps_executed: int = 0
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)
    data: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    failed_step_id: Optional[str] = None
    cancel_requested: bool = False
    parent_execution_id: Optional[str] = None
    parent_step_execution_id: Optional[str] = None

    @property
    def variables(self) -> Dict[str, Any]:
        return self.context.variables

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def live_tokens(self) -> List[ExecutionToken]:
        return [t for t in self.tokens if t.is_live]

    @property
    def active_tokens(self) -> List[ExecutionToken]:
        return [t for t in self.tokens if t.status == TokenStatus.ACTIVE]

    def get_token(self, token_id: Optional[str]) -> Optional[ExecutionToken]:
        for token in self.tokens:
            if token.id == token_id:
                return token
        return None

    def get_join(self, join_id: Optional[str]) -> Optional[JoinState]:
        for join in self.joins:
            if join.id == join_id:
                return join
        return None

    def get_step_execution(self, step_execution_id: Optional[str]) -> Optional[StepExecution]:
        for record in self.step_executions:
            if record.id == step_execution_id:
                return record
        return None

    def waiting_step_executions(self, step_id: Optional[str] = None) -> List[StepExecution]:
        return [
            r for r in self.step_executions
            if r.status == StepStatus.WAITING and (step_id is None or r.step_id == step_id)
        ]

    def compute_metrics(self) -> ExecutionMetrics:
        """Recompute counters from the audit trail."""
        metrics = self.metrics
        metrics.steps_completed = sum(1 for r in self.step_executions if r.status == StepStatus.COMPLETED)
        metrics.steps_failed = sum(
            1 for r in self.step_executions if r.status in (StepStatus.FAILED, StepStatus.TIMEOUT)
        )
        metrics.actions_executed = sum(
            1 for r in self.step_executions for a in r.action_executions
            if a.status in (ActionStatus.COMPLETED, ActionStatus.FAILED) and a.attempts > 0
        )
        end = self.completed_at or utc_now()
        metrics.total_duration_ms = duration_ms(self.started_at, end)
        waiting = 0
        for record in self.step_executions:
            if record.waiting_since:
                waiting += duration_ms(record.waiting_since, record.completed_at or end)
        metrics.waiting_duration_ms = waiting
        metrics.active_duration_ms = max(0, metrics.total_duration_ms - waiting)
        return metrics

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "workflow_version": self.workflow_version,
            "status": self.status.value,
            "context": self.context.model_dump(mode="json"),
            "initiated_by": self.initiated_by,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "step_executions": [r.to_dict() for r in self.step_executions],
            "step_outputs": _json_safe(self.step_outputs),
            "tokens": [t.to_dict() for t in self.tokens],
            "joins": [j.to_dict() for j in self.joins],
            "loop_counters": dict(self.loop_counters),
            "steps_executed": self.steps_executed,
            "metrics": self.metrics.to_dict(),
            "data": _json_safe(self.data),
            "error_message": self.error_message,
            "error_code": self.error_code,
            "failed_step_id": self.failed_step_id,
            "cancel_requested": self.cancel_requested,
            "parent_execution_id": self.parent_execution_id,
            "parent_step_execution_id": self.parent_step_execution_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowExecution":
        return cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            workflow_version=data.get("workflow_version", 1),
            status=ExecutionStatus(data.get("status", ExecutionStatus.PENDING.value)),
            context=WorkflowContext.model_validate(data.get("context") or {}),
            initiated_by=data.get("initiated_by", ""),
            started_at=parse_datetime(data.get("started_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            step_executions=[StepExecution.from_dict(r) for r in data.get("step_executions", [])],
            step_outputs=data.get("step_outputs") or {},
            tokens=[ExecutionToken.from_dict(t) for t in data.get("tokens", [])],
            joins=[JoinState.from_dict(j) for j in data.get("joins", [])],
            loop_counters=data.get("loop_counters") or {},
            steps_executed=data.get("steps_executed", 0),
            metrics=ExecutionMetrics.from_dict(data.get("metrics") or {}),
            data=data.get("data") or {},
            error_message=data.get("error_message"),
            error_code=data.get("error_code"),
            failed_step_id=data.get("failed_step_id"),
            cancel_requested=data.get("cancel_requested", False),
            parent_execution_id=data.get("parent_execution_id"),
            parent_step_execution_id=data.get("parent_step_execution_id"),
        )
