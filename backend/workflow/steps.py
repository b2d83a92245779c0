"""
Step execution.

``StepExecutor.execute`` runs one visit of a step and fills in its
``StepExecution`` record. It never routes; the engine reads the record's
status afterwards:

- Completed: output recorded, output mapping and step actions applied
- Waiting: the step parked (user task, event, pending timer, sub-workflow
  still running); ``StepOutcome.wake_at`` carries a timer's due time
- Failed / Timeout: ``error_code`` and ``error_message`` say why
- Cancelled: the execution was cancelled while the step was in flight;
  the output is kept for the audit trail but not applied

Handler-backed steps (Task, ServiceTask, ScriptTask, EmailTask, Custom)
dispatch through the handler registry with the step's retry policy and a
per-attempt ``asyncio.wait_for`` timeout.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from app.config import get_settings
from core.constants import (
    DEFAULT_HANDLER_TAGS,
    HANDLER_STEP_TYPES,
    AssignmentType,
    ErrorCode,
    ExecutionStatus,
    StepStatus,
    StepType,
)
from core.exceptions import AssignmentUnresolvedError, WorkflowEngineError
from core.utils import get_param, isoformat, parse_datetime, parse_duration, utc_now
from tasks.base_task import HandlerResult
from tasks.registry import HandlerRegistry
from workflow.actions import ActionExecutor, execution_scope, failed_required, handler_context
from workflow.capabilities import AssignmentResolver
from workflow.conditions import ConditionEvaluator, resolve_path, resolve_templates
from workflow.models import (
    AssignmentPolicy,
    StepExecution,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStep,
)
from workflow.retry_strategies import RetryStrategy, execute_with_retry

logger = structlog.get_logger(__name__)

# error_type marking a handler attempt cut short by the step timeout
STEP_TIMEOUT_ERROR = "StepTimeout"

SubWorkflowRunner = Callable[
    [str, Dict[str, Any], WorkflowExecution, StepExecution],
    Awaitable[WorkflowExecution],
]


@dataclass
class StepOutcome:
    record: StepExecution
    wake_at: Optional[datetime] = None


def subworkflow_output(child: WorkflowExecution) -> Dict[str, Any]:
    """Output a SubWorkflow step receives from its finished child."""
    output = dict(child.variables)
    output["child_execution_id"] = child.id
    return output


def fail_record(record: StepExecution, code: ErrorCode, message: str, status: StepStatus = StepStatus.FAILED) -> None:
    record.status = status
    record.error_code = code.value
    record.error_message = message
    record.completed_at = utc_now()


class StepExecutor:
    """Dispatches a step to its type-specific behaviour."""

    def __init__(
        self,
        handlers: HandlerRegistry,
        conditions: ConditionEvaluator,
        actions: ActionExecutor,
        assignment: AssignmentResolver,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        subworkflow_runner: Optional[SubWorkflowRunner] = None,
    ):
        self.handlers = handlers
        self.conditions = conditions
        self.actions = actions
        self.assignment = assignment
        self.subworkflow_runner = subworkflow_runner
        self._sleep = sleep

    def prepare_input(self, step: WorkflowStep, execution: WorkflowExecution) -> Dict[str, Any]:
        """Variables merged with the step's ``input_mapping`` (``{input_key: path}``)."""
        data = dict(execution.variables)
        if step.configuration.input_mapping:
            scope = execution_scope(execution)
            for key, path in step.configuration.input_mapping.items():
                data[key] = resolve_path(path, scope)
        return data

    async def execute(
        self,
        step: WorkflowStep,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        record: StepExecution,
    ) -> StepOutcome:
        record.status = StepStatus.RUNNING
        record.started_at = utc_now()
        record.input_data = self.prepare_input(step, execution)
        logger.info("step_started", step_id=step.id, step_type=step.type.value, record_id=record.id)

        if step.type in HANDLER_STEP_TYPES:
            outcome = await self._execute_handler(step, execution, definition, record)
        elif step.type == StepType.START:
            outcome = await self._finish(step, execution, definition, record, {
                "activated_at": isoformat(record.started_at),
                "execution_id": execution.id,
            })
        elif step.type == StepType.END:
            outcome = await self._finish(step, execution, definition, record, {
                "completed_at": isoformat(utc_now()),
            })
        elif step.type == StepType.TIMER_TASK:
            outcome = await self._execute_timer(step, execution, definition, record)
        elif step.type in (StepType.DECISION, StepType.GATEWAY):
            outcome = await self._execute_decision(step, execution, definition, record)
        elif step.type == StepType.USER_TASK:
            outcome = await self._execute_user_task(step, execution, record)
        elif step.type == StepType.EVENT:
            self._park(record)
            outcome = StepOutcome(record)
        elif step.type == StepType.LOOP:
            outcome = await self._execute_loop(step, execution, definition, record)
        elif step.type == StepType.PARALLEL:
            outcome = await self._finish(step, execution, definition, record, {
                "join_step_id": get_param(step.parameters, "join_step_id"),
            })
        elif step.type == StepType.SUB_WORKFLOW:
            outcome = await self._execute_sub_workflow(step, execution, definition, record)
        else:
            fail_record(record, ErrorCode.HANDLER_NOT_FOUND, f"Unsupported step type: {step.type.value}")
            outcome = StepOutcome(record)

        logger.info(
            "step_finished",
            step_id=step.id,
            status=record.status.value,
            attempts=record.attempts,
            error_code=record.error_code,
        )
        return outcome

    async def complete(
        self,
        step: WorkflowStep,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        record: StepExecution,
        output: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record ``output``, apply output mapping and run the step's actions.

        Returns True if the record ended Completed.
        """
        record.output_data = dict(output or {})

        if execution.cancel_requested or execution.status == ExecutionStatus.CANCELLED:
            fail_record(record, ErrorCode.CANCELLED, "Execution cancelled", StepStatus.CANCELLED)
            return False

        execution.step_outputs[step.id] = record.output_data
        for variable, key in step.configuration.output_mapping.items():
            execution.variables[variable] = resolve_path(key, record.output_data)

        if step.actions:
            records = await self.actions.execute_all(step.actions, execution, definition, step_execution=record)
            failed = failed_required(records)
            if failed is not None:
                fail_record(
                    record,
                    ErrorCode.ACTION_FAILED,
                    f"Required action '{failed.action_id}' failed: {failed.error_message}",
                )
                return False

        record.status = StepStatus.COMPLETED
        record.completed_at = utc_now()
        return True

    async def _finish(self, step, execution, definition, record, output) -> StepOutcome:
        await self.complete(step, execution, definition, record, output)
        return StepOutcome(record)

    @staticmethod
    def _park(record: StepExecution) -> None:
        record.status = StepStatus.WAITING
        record.waiting_since = utc_now()

    # ─── Handler steps ─────────────────────────────────────────

    async def _execute_handler(
        self,
        step: WorkflowStep,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        record: StepExecution,
    ) -> StepOutcome:
        tag = step.handler or DEFAULT_HANDLER_TAGS.get(step.type)
        if not tag:
            if step.type == StepType.TASK:
                # A plain Task without a handler is a pass-through
                return await self._finish(step, execution, definition, record, {})
            fail_record(record, ErrorCode.HANDLER_NOT_FOUND, f"Step '{step.id}' names no handler")
            return StepOutcome(record)

        if not self.handlers.has(tag):
            fail_record(record, ErrorCode.HANDLER_NOT_FOUND, f"No handler registered for '{tag}'")
            return StepOutcome(record)

        scope = execution_scope(execution)
        parameters = resolve_templates(step.parameters, scope, self.conditions.expression_evaluator)
        context = handler_context(execution, record, handler=tag)
        strategy = RetryStrategy.from_policy(step.retry)
        if step.timeout.is_enabled and step.timeout.duration:
            timeout = step.timeout.duration
        else:
            timeout = get_settings().DEFAULT_STEP_TIMEOUT_SECONDS

        async def attempt(number: int) -> HandlerResult:
            record.attempts = number
            try:
                return await asyncio.wait_for(self.handlers.invoke(tag, parameters, context), timeout=timeout)
            except asyncio.TimeoutError:
                return HandlerResult.fail(f"Step timed out after {timeout}s", STEP_TIMEOUT_ERROR)

        def on_retry(number: int, result: HandlerResult, delay: float) -> None:
            logger.info("step_retry", step_id=step.id, attempt=number, delay=delay, error=result.error)

        result, attempts = await execute_with_retry(attempt, strategy, on_retry=on_retry, sleep=self._sleep)
        record.attempts = attempts

        if result.success:
            return await self._finish(step, execution, definition, record, result.output)

        record.output_data = dict(result.output or {})
        if result.error_type == STEP_TIMEOUT_ERROR:
            fail_record(record, ErrorCode.STEP_TIMEOUT, result.error, StepStatus.TIMEOUT)
        else:
            fail_record(
                record,
                ErrorCode.HANDLER_EXECUTION_FAILED,
                f"{result.error} (after {attempts} attempt{'s' if attempts != 1 else ''})",
            )
        return StepOutcome(record)

    # ─── Control steps ─────────────────────────────────────────

    async def _execute_timer(self, step, execution, definition, record) -> StepOutcome:
        scope = execution_scope(execution)
        parameters = resolve_templates(step.parameters, scope, self.conditions.expression_evaluator)
        try:
            until = parse_datetime(get_param(parameters, "until"))
            seconds = parse_duration(get_param(parameters, "duration", "delay"))
        except (TypeError, ValueError) as e:
            fail_record(record, ErrorCode.HANDLER_EXECUTION_FAILED, f"Invalid timer configuration: {e}")
            return StepOutcome(record)

        if until is None and seconds is None:
            fail_record(record, ErrorCode.HANDLER_EXECUTION_FAILED, "Timer requires 'duration' or 'until'")
            return StepOutcome(record)

        now = utc_now()
        due_at = until or now + timedelta(seconds=seconds)
        if due_at <= now:
            return await self._finish(step, execution, definition, record, {
                "fired_at": isoformat(now),
                "scheduled_for": isoformat(due_at),
            })

        self._park(record)
        record.output_data = {"due_at": isoformat(due_at)}
        return StepOutcome(record, wake_at=due_at)

    async def _execute_decision(self, step, execution, definition, record) -> StepOutcome:
        scope = execution_scope(execution)
        results = [self.conditions.evaluate(c, scope) for c in step.conditions]
        outcome = None
        for name, condition in step.outcomes.items():
            if self.conditions.evaluate(condition, scope):
                outcome = name
                break
        return await self._finish(step, execution, definition, record, {
            "decision_result": all(results),
            "condition_results": results,
            "outcome": outcome,
        })

    async def _execute_user_task(self, step, execution, record) -> StepOutcome:
        policy = step.configuration.assignment
        if policy is None:
            assignee = get_param(step.parameters, "assignee", "assigned_to")
            if assignee:
                policy = AssignmentPolicy(type=AssignmentType.USER, assignee=str(assignee))

        principal = None
        try:
            if policy is not None:
                principal = await self.assignment.resolve(policy, execution_scope(execution))
            if not principal:
                raise AssignmentUnresolvedError(f"No assignee could be determined for '{step.id}'", step_id=step.id)
        except AssignmentUnresolvedError as e:
            fail_record(record, e.code, e.message)
            return StepOutcome(record)

        record.assigned_to = principal
        self._park(record)
        logger.info("user_task_assigned", step_id=step.id, assigned_to=principal)
        return StepOutcome(record)

    async def _execute_loop(self, step, execution, definition, record) -> StepOutcome:
        iteration = execution.loop_counters.get(step.id, 0) + 1
        max_iterations = get_param(step.parameters, "max_iterations")
        holds = self.conditions.evaluate_all(step.conditions, execution_scope(execution))
        keep_going = holds and (max_iterations is None or iteration <= int(max_iterations))

        if keep_going:
            execution.loop_counters[step.id] = iteration
        else:
            execution.loop_counters.pop(step.id, None)
        return await self._finish(step, execution, definition, record, {
            "iteration": iteration,
            "continue": keep_going,
        })

    async def _execute_sub_workflow(self, step, execution, definition, record) -> StepOutcome:
        definition_id = get_param(step.parameters, "definition_id", "workflow_id")
        if not definition_id:
            fail_record(record, ErrorCode.INVALID_STATE, f"Sub-workflow step '{step.id}' names no definition")
            return StepOutcome(record)
        if self.subworkflow_runner is None:
            fail_record(record, ErrorCode.HANDLER_NOT_FOUND, "No sub-workflow runner configured")
            return StepOutcome(record)

        if step.configuration.input_mapping:
            variables = {k: record.input_data.get(k) for k in step.configuration.input_mapping}
        else:
            variables = dict(record.input_data)
        extra = get_param(step.parameters, "variables")
        if isinstance(extra, dict):
            variables.update(resolve_templates(extra, execution_scope(execution), self.conditions.expression_evaluator))

        try:
            child = await self.subworkflow_runner(str(definition_id), variables, execution, record)
        except WorkflowEngineError as e:
            fail_record(record, e.code, e.message)
            return StepOutcome(record)

        if child.status == ExecutionStatus.COMPLETED:
            return await self._finish(step, execution, definition, record, subworkflow_output(child))
        if child.is_terminal:
            record.output_data = {"child_execution_id": child.id}
            message = f"Sub-workflow {child.id} ended {child.status.value}"
            if child.error_message:
                message = f"{message}: {child.error_message}"
            fail_record(record, ErrorCode.HANDLER_EXECUTION_FAILED, message)
            return StepOutcome(record)

        self._park(record)
        record.output_data = {"child_execution_id": child.id}
        return StepOutcome(record)
