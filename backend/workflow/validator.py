"""
Definition validation.

Runs before a definition may be published. Structural problems are
reported as errors (the definition must not run); questionable but
runnable graphs produce warnings. The result depends only on the
definition, so re-validating an unchanged definition yields the same
findings in the same order.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog

from core.constants import (
    AssignmentType,
    StepType,
    TimeoutAction,
    TransitionType,
    ValidationSeverity,
)
from core.utils import get_param, parse_duration
from workflow.conditions import SUPPORTED_LANGUAGES, validate_expression
from workflow.models import WorkflowCondition, WorkflowDefinition, WorkflowStep

logger = structlog.get_logger(__name__)


@dataclass
class ValidationError:
    code: str
    message: str
    property: str = ""
    severity: ValidationSeverity = ValidationSeverity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "property": self.property,
            "severity": self.severity.value,
        }


@dataclass
class ValidationWarning:
    code: str
    message: str
    property: str = ""
    suggestion: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "property": self.property,
            "suggestion": self.suggestion,
        }


@dataclass
class ValidationResult:
    errors: List[ValidationError] = field(default_factory=list)
    warnings: List[ValidationWarning] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def error_codes(self) -> List[str]:
        return [e.code for e in self.errors]

    @property
    def warning_codes(self) -> List[str]:
        return [w.code for w in self.warnings]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


class WorkflowValidator:
    """Static checks over a ``WorkflowDefinition``."""

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        result = ValidationResult()
        self._check_definition(definition, result)
        self._check_steps(definition, result)
        self._check_transitions(definition, result)
        self._check_routing(definition, result)
        self._check_security(definition, result)

        logger.info(
            "definition_validated",
            definition_id=definition.id,
            errors=len(result.errors),
            warnings=len(result.warnings),
        )
        return result

    # ─── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _error(result: ValidationResult, code: str, message: str, prop: str = "") -> None:
        result.errors.append(ValidationError(code=code, message=message, property=prop))

    @staticmethod
    def _warn(result: ValidationResult, code: str, message: str, prop: str = "", suggestion: str = "") -> None:
        result.warnings.append(ValidationWarning(code=code, message=message, property=prop, suggestion=suggestion))

    def _check_definition(self, definition: WorkflowDefinition, result: ValidationResult) -> None:
        if not definition.name.strip():
            self._error(result, "NAME_REQUIRED", "Workflow name is required", "name")
        if not definition.tenant_id.strip():
            self._error(result, "TENANT_REQUIRED", "Tenant id is required", "tenant_id")
        if not definition.steps:
            self._error(result, "NO_STEPS", "Workflow must contain at least one step", "steps")
            return

        starts = definition.start_steps
        if not starts:
            self._error(result, "NO_START_STEP", "Workflow must have a start step", "steps")
        elif len(starts) > 1:
            self._warn(
                result,
                "MULTIPLE_START_STEPS",
                f"Workflow has {len(starts)} start steps; '{starts[0].id}' will be used",
                "steps",
                "Mark exactly one step as the start step",
            )

        if not any(s.is_terminal for s in definition.steps):
            self._warn(
                result,
                "NO_END_STEP",
                "Workflow has no end step",
                "steps",
                "Mark at least one step as an end step",
            )

    def _check_steps(self, definition: WorkflowDefinition, result: ValidationResult) -> None:
        seen: Set[str] = set()
        step_ids = {s.id for s in definition.steps}
        parallel = definition.configuration.is_parallel_execution_enabled

        for step in definition.steps:
            prop = f"steps.{step.id}"
            if step.id in seen:
                self._error(result, "DUPLICATE_STEP_ID", f"Duplicate step id '{step.id}'", prop)
            seen.add(step.id)

            if not step.name.strip():
                self._error(result, "STEP_NAME_REQUIRED", f"Step '{step.id}' has no name", f"{prop}.name")

            self._check_step_configuration(step, result, prop)

            if parallel and step.type == StepType.PARALLEL:
                join = get_param(step.parameters, "join_step_id")
                if not join or join not in step_ids:
                    self._error(
                        result,
                        "PARALLEL_NO_JOIN",
                        f"Parallel step '{step.id}' needs a valid 'join_step_id'",
                        f"{prop}.configuration.parameters.join_step_id",
                    )

            if step.timeout.is_enabled and step.timeout.action == TimeoutAction.GO_TO_STEP:
                if not step.timeout.next_step_id or step.timeout.next_step_id not in step_ids:
                    self._error(
                        result,
                        "TIMEOUT_INVALID_NEXT_STEP",
                        f"Timeout of step '{step.id}' goes to unknown step '{step.timeout.next_step_id}'",
                        f"{prop}.timeout.next_step_id",
                    )

            for condition in self._step_conditions(step):
                self._check_condition(condition, result, prop)

    def _check_step_configuration(self, step: WorkflowStep, result: ValidationResult, prop: str) -> None:
        params = step.parameters

        if step.type == StepType.USER_TASK and not self._has_assignee(step):
            self._error(
                result,
                "USER_TASK_NO_ASSIGNEE",
                f"User task '{step.id}' needs an assignee or an assignment rule",
                f"{prop}.configuration.assignment",
            )

        elif step.type == StepType.SERVICE_TASK:
            if not step.handler and not get_param(params, "service_url", "url"):
                self._error(
                    result,
                    "SERVICE_TASK_NO_URL",
                    f"Service task '{step.id}' needs a service URL or a handler",
                    f"{prop}.configuration.parameters.service_url",
                )

        elif step.type == StepType.EMAIL_TASK:
            if not get_param(params, "to", "recipients") or not get_param(params, "subject"):
                self._error(
                    result,
                    "EMAIL_TASK_INCOMPLETE",
                    f"Email task '{step.id}' needs recipients and a subject",
                    f"{prop}.configuration.parameters",
                )

        elif step.type == StepType.TIMER_TASK:
            if not self._has_timer(params):
                self._error(
                    result,
                    "TIMER_TASK_NO_DURATION",
                    f"Timer task '{step.id}' needs a valid 'duration' or 'until'",
                    f"{prop}.configuration.parameters.duration",
                )

        elif step.type == StepType.SUB_WORKFLOW:
            if not get_param(params, "definition_id", "workflow_id"):
                self._error(
                    result,
                    "SUB_WORKFLOW_NO_DEFINITION",
                    f"Sub-workflow step '{step.id}' needs a 'definition_id'",
                    f"{prop}.configuration.parameters.definition_id",
                )

    @staticmethod
    def _has_assignee(step: WorkflowStep) -> bool:
        if get_param(step.parameters, "assignee", "assigned_to"):
            return True
        policy = step.configuration.assignment
        if policy is None:
            return False
        if policy.type in (AssignmentType.SERVICE, AssignmentType.AUTO):
            return True
        if policy.type == AssignmentType.EXPRESSION:
            return bool(policy.assignment_rule.strip() or policy.assignee.strip())
        return bool(policy.assignee.strip())

    @staticmethod
    def _has_timer(params: Dict[str, Any]) -> bool:
        if get_param(params, "until"):
            return True
        value = get_param(params, "duration", "delay")
        if value is None:
            return False
        if isinstance(value, str) and "{{" in value:
            return True
        try:
            return parse_duration(value) is not None
        except ValueError:
            return False

    @staticmethod
    def _step_conditions(step: WorkflowStep) -> Iterable[WorkflowCondition]:
        yield from step.conditions
        yield from step.outcomes.values()
        for action in step.actions:
            if action.condition is not None:
                yield action.condition

    def _check_condition(self, condition: WorkflowCondition, result: ValidationResult, prop: str) -> None:
        expressions = [condition.expression]
        if (condition.script_language or "").lower() in SUPPORTED_LANGUAGES:
            expressions.append(condition.script)
        for expression in expressions:
            if not expression or not expression.strip():
                continue
            for problem in validate_expression(expression):
                self._error(result, "INVALID_EXPRESSION", f"{problem}: {expression!r}", f"{prop}.condition")
        for sub in condition.sub_conditions:
            self._check_condition(sub, result, prop)

    def _check_transitions(self, definition: WorkflowDefinition, result: ValidationResult) -> None:
        step_ids = {s.id for s in definition.steps}
        for transition in definition.transitions:
            prop = f"transitions.{transition.id}"
            if transition.from_step_id not in step_ids:
                self._error(
                    result,
                    "INVALID_TRANSITION_SOURCE",
                    f"Transition '{transition.id}' starts at unknown step '{transition.from_step_id}'",
                    f"{prop}.from_step_id",
                )
            if transition.to_step_id not in step_ids:
                self._error(
                    result,
                    "INVALID_TRANSITION_TARGET",
                    f"Transition '{transition.id}' targets unknown step '{transition.to_step_id}'",
                    f"{prop}.to_step_id",
                )
            if transition.from_step_id == transition.to_step_id:
                self._error(
                    result,
                    "CIRCULAR_TRANSITION",
                    f"Transition '{transition.id}' loops on step '{transition.from_step_id}'",
                    prop,
                )
            if transition.condition is not None:
                self._check_condition(transition.condition, result, prop)
            for action in transition.actions:
                if action.condition is not None:
                    self._check_condition(action.condition, result, prop)

    def _check_routing(self, definition: WorkflowDefinition, result: ValidationResult) -> None:
        parallel = definition.configuration.is_parallel_execution_enabled
        for step in definition.steps:
            if step.is_terminal:
                continue
            outgoing = definition.outgoing(step.id)
            if not outgoing:
                self._error(
                    result,
                    "NO_OUTGOING_TRANSITION",
                    f"Step '{step.id}' is not an end step and has no outgoing transition",
                    f"steps.{step.id}",
                )
                continue
            if parallel and step.type == StepType.PARALLEL:
                continue
            normal = [t for t in outgoing if t.type != TransitionType.EXCEPTION]
            if normal and all(t.condition is not None and t.type != TransitionType.DEFAULT for t in normal):
                self._warn(
                    result,
                    "NO_DEFAULT_TRANSITION",
                    f"Every transition leaving '{step.id}' is conditional; the run fails if none holds",
                    f"steps.{step.id}",
                    "Add a default transition",
                )

        start = definition.start_steps[0] if definition.start_steps else None
        if start is None:
            return
        reachable = self._reachable(definition, start.id)
        for step in definition.steps:
            if step.id not in reachable:
                self._warn(
                    result,
                    "UNREACHABLE_STEP",
                    f"Step '{step.id}' cannot be reached from '{start.id}'",
                    f"steps.{step.id}",
                )

    @staticmethod
    def _reachable(definition: WorkflowDefinition, start_id: str) -> Set[str]:
        seen = {start_id}
        pending = [start_id]
        while pending:
            current = pending.pop()
            targets: List[Optional[str]] = [t.to_step_id for t in definition.outgoing(current)]
            step = definition.get_step(current)
            if step is not None and step.timeout.is_enabled and step.timeout.action == TimeoutAction.GO_TO_STEP:
                targets.append(step.timeout.next_step_id)
            for target in targets:
                if target and target not in seen:
                    seen.add(target)
                    pending.append(target)
        return seen

    def _check_security(self, definition: WorkflowDefinition, result: ValidationResult) -> None:
        security = definition.security
        if security.require_authentication and not security.allowed_roles and not security.allowed_users:
            self._error(
                result,
                "SECURITY_NO_ACCESS_DEFINED",
                "Authentication is required but no roles or users are allowed",
                "security",
            )
