"""
Action execution.

Actions are side effects attached to steps, transitions, escalations and
timeouts. ``set_variable`` is applied to the execution directly; every
other type is dispatched through the handler registry under its tag
(``send_notification``, ``call_webhook``, ``update_data``) or, for
``custom``, under the tag named by its ``handler`` parameter.

A false action condition skips the action (recorded as Completed with a
skip note). A failed best-effort action is recorded and ignored; only
actions flagged ``is_required`` fail their owner.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from core.constants import ActionStatus, ActionType, ErrorCode
from core.exceptions import HandlerNotFoundError
from core.utils import get_param, utc_now
from tasks.base_task import HandlerResult
from tasks.registry import HandlerRegistry
from workflow.conditions import ConditionEvaluator, build_scope, resolve_templates
from workflow.models import (
    ActionExecution,
    StepExecution,
    WorkflowAction,
    WorkflowDefinition,
    WorkflowExecution,
)
from workflow.retry_strategies import RetryStrategy, execute_with_retry

logger = structlog.get_logger(__name__)

SKIPPED_RESULT = {"skipped": "Condition not met"}


def handler_context(
    execution: WorkflowExecution,
    step_execution: Optional[StepExecution] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Context passed to every handler invocation."""
    context = {
        "execution_id": execution.id,
        "workflow_id": execution.workflow_id,
        "tenant_id": execution.context.tenant_id,
        "business_key": execution.context.business_key,
        "correlation_id": execution.context.correlation_id,
        "variables": dict(execution.variables),
    }
    if step_execution is not None:
        context["step_id"] = step_execution.step_id
        context["step_execution_id"] = step_execution.id
        context["input"] = dict(step_execution.input_data)
    context.update(extra)
    return context


def execution_scope(execution: WorkflowExecution) -> Dict[str, Any]:
    return build_scope(execution.variables, execution.step_outputs)


class ActionExecutor:
    """Runs actions with condition gating, delay and retry."""

    def __init__(
        self,
        handlers: HandlerRegistry,
        conditions: ConditionEvaluator,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.handlers = handlers
        self.conditions = conditions
        self._sleep = sleep

    async def execute_all(
        self,
        actions: List[WorkflowAction],
        execution: WorkflowExecution,
        definition: Optional[WorkflowDefinition] = None,
        step_execution: Optional[StepExecution] = None,
        transition_id: Optional[str] = None,
    ) -> List[ActionExecution]:
        """Run ``actions`` in ``order`` (declaration order breaks ties).

        Records are appended to ``step_execution.action_executions`` when a
        step execution is given. Stops at the first failed required action.
        """
        ordered = sorted(enumerate(actions), key=lambda item: (item[1].order, item[0]))
        records = []
        for _, action in ordered:
            record = await self.execute(action, execution, definition, step_execution, transition_id)
            records.append(record)
            if record.status == ActionStatus.FAILED and record.is_required:
                break
        return records

    async def execute(
        self,
        action: WorkflowAction,
        execution: WorkflowExecution,
        definition: Optional[WorkflowDefinition] = None,
        step_execution: Optional[StepExecution] = None,
        transition_id: Optional[str] = None,
    ) -> ActionExecution:
        record = ActionExecution(
            action_id=action.id,
            action_type=action.type.value,
            name=action.name,
            transition_id=transition_id,
            is_required=action.is_required,
            status=ActionStatus.RUNNING,
            started_at=utc_now(),
        )
        if step_execution is not None:
            step_execution.action_executions.append(record)

        scope = execution_scope(execution)
        if action.condition is not None and not self.conditions.evaluate(action.condition, scope):
            record.status = ActionStatus.COMPLETED
            record.result = dict(SKIPPED_RESULT)
            record.completed_at = utc_now()
            logger.debug("action_skipped", action_id=action.id, action_type=action.type.value)
            return record

        if action.delay:
            await self._sleep(action.delay)

        parameters = resolve_templates(action.parameters, scope, self.conditions.expression_evaluator)
        strategy = RetryStrategy.from_action_policy(action.retry)

        def mark_retrying(attempt: int, result: HandlerResult, delay: float) -> None:
            record.status = ActionStatus.RETRYING
            record.error_message = result.error

        try:
            result, attempts = await execute_with_retry(
                lambda attempt: self._dispatch(action, parameters, execution, definition, step_execution),
                strategy,
                on_retry=mark_retrying,
                sleep=self._sleep,
            )
        except HandlerNotFoundError as e:
            record.status = ActionStatus.FAILED
            record.error_message = e.message
            record.error_code = ErrorCode.HANDLER_NOT_FOUND.value
            record.completed_at = utc_now()
            logger.warning("action_handler_missing", action_id=action.id, action_type=action.type.value)
            return record

        record.attempts = attempts
        record.completed_at = utc_now()
        record.result = result.output or {}
        if result.success:
            record.status = ActionStatus.COMPLETED
            record.error_message = None
            logger.info("action_completed", action_id=action.id, action_type=action.type.value, attempts=attempts)
        else:
            record.status = ActionStatus.FAILED
            record.error_message = result.error
            record.error_code = ErrorCode.ACTION_FAILED.value if action.is_required else ErrorCode.HANDLER_EXECUTION_FAILED.value
            logger.warning(
                "action_failed",
                action_id=action.id,
                action_type=action.type.value,
                attempts=attempts,
                required=action.is_required,
                error=result.error,
            )
        return record

    async def _dispatch(
        self,
        action: WorkflowAction,
        parameters: Dict[str, Any],
        execution: WorkflowExecution,
        definition: Optional[WorkflowDefinition],
        step_execution: Optional[StepExecution],
    ) -> HandlerResult:
        if action.type == ActionType.SET_VARIABLE:
            return self._set_variable(parameters, execution, definition)

        if action.type == ActionType.CUSTOM:
            tag = get_param(parameters, "handler")
            if not tag:
                raise HandlerNotFoundError("Custom action requires a 'handler' parameter", action_id=action.id)
        else:
            tag = action.type.value

        context = handler_context(execution, step_execution, action_id=action.id, action_type=action.type.value)
        return await self.handlers.invoke(tag, parameters, context)

    @staticmethod
    def _set_variable(
        parameters: Dict[str, Any],
        execution: WorkflowExecution,
        definition: Optional[WorkflowDefinition],
    ) -> HandlerResult:
        updates: Dict[str, Any] = {}
        bulk = get_param(parameters, "variables")
        if isinstance(bulk, dict):
            updates.update(bulk)
        name = get_param(parameters, "variable_name", "variable", "name")
        if name:
            value = get_param(parameters, "variable_value", "value")
            updates[str(name)] = value
        if not updates:
            return HandlerResult.fail("set_variable requires 'variable_name'", "ConfigurationError")

        if definition is not None:
            for key in updates:
                declared = definition.get_variable(key)
                if declared is not None and declared.is_read_only:
                    return HandlerResult.fail(f"Variable '{key}' is read-only", "ReadOnlyVariable")

        execution.variables.update(updates)
        return HandlerResult.ok({"updated": updates})


def failed_required(records: List[ActionExecution]) -> Optional[ActionExecution]:
    """First required action that failed, if any."""
    for record in records:
        if record.is_required and record.status == ActionStatus.FAILED:
            return record
    return None
