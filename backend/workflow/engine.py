"""Workflow Execution Engine: token-based process runner.

Takes a published ``WorkflowDefinition`` and drives executions of it:

- Sequential routing by prioritized, conditional transitions
- Parallel fork/join with quorum (when enabled on the definition)
- Waiting steps (user tasks, events, timers, sub-workflows) that park the
  run without holding a worker; ``signal`` and durable wakes resume it
- Step retry, step and execution timeouts, escalation
- Cancellation, suspension and resumption by an operator
- A snapshot saved at every step boundary so a restart loses at most the
  step that was in flight (see ``RecoveryService``)

Control flow is carried by tokens. A token executes its current step,
the step record is saved with the token pointing at it (pending), then
the token is routed. A token parks when its step waits; the execution
finishes once no live tokens remain.

Each execution has exactly one owner at a time: every operation takes
the execution's lock, and the number of executions being driven is
bounded by ``MAX_CONCURRENT_EXECUTIONS``.
"""

import asyncio
import copy
from contextlib import AsyncExitStack, asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, FrozenSet, List, Optional, Set

import structlog

from app.config import Settings, get_settings
from core.constants import (
    EXECUTABLE_WORKFLOW_STATUSES,
    TIMED_OUT_OUTPUT_KEY,
    ActionType,
    ErrorCode,
    ExecutionStatus,
    NotificationEvent,
    StepStatus,
    StepType,
    TimeoutAction,
    TokenStatus,
    WakeKind,
    WorkflowStatus,
)
from core.exceptions import (
    ActionFailedError,
    DefinitionValidationError,
    InvalidStateError,
    NotFoundError,
    StorageError,
    WorkflowEngineError,
)
from core.logging_config import execution_log_context
from core.utils import get_param, isoformat, utc_now
from tasks.registry import HandlerRegistry, get_handler_registry
from workflow.actions import ActionExecutor, handler_context
from workflow.assignment import DefaultAssignmentResolver
from workflow.capabilities import AssignmentResolver, ExpressionEvaluator
from workflow.conditions import ConditionEvaluator
from workflow.models import (
    ExecutionToken,
    JoinState,
    StepExecution,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStep,
)
from workflow.persistence import (
    DefinitionStore,
    ExecutionStore,
    InMemoryDefinitionStore,
    InMemoryExecutionStore,
)
from workflow.scheduler import InMemoryScheduler, ScheduledWake, Scheduler
from workflow.steps import StepExecutor, fail_record, subworkflow_output
from workflow.transitions import TransitionResolver
from workflow.validator import ValidationError, ValidationResult, WorkflowValidator

logger = structlog.get_logger(__name__)

# Execution ids whose lock the current task already holds
_owned_ids: ContextVar[FrozenSet[str]] = ContextVar("workflow_owned_executions", default=frozenset())

# Set while running inside a concurrency slot; nested runs don't take another
_in_slot: ContextVar[bool] = ContextVar("workflow_in_slot", default=False)

_FINISH_EVENTS = {
    ExecutionStatus.COMPLETED: NotificationEvent.COMPLETED,
    ExecutionStatus.FAILED: NotificationEvent.FAILED,
    ExecutionStatus.TIMEOUT: NotificationEvent.TIMEOUT,
}


# ─── Public result ────────────────────────────────────────────

@dataclass
class EngineResult:
    """Outcome of a public engine operation.

    ``success`` says whether the operation was accepted; an accepted
    ``execute`` may still have produced a Failed execution, so callers
    inspect ``status`` for the run's outcome.
    """
    success: bool
    execution_id: Optional[str] = None
    execution: Optional[WorkflowExecution] = None
    error_code: Optional[ErrorCode] = None
    message: str = ""

    @classmethod
    def ok(cls, execution: WorkflowExecution) -> "EngineResult":
        return cls(success=True, execution_id=execution.id, execution=execution)

    @classmethod
    def failure(
        cls,
        error_code: ErrorCode,
        message: str,
        execution_id: Optional[str] = None,
        execution: Optional[WorkflowExecution] = None,
    ) -> "EngineResult":
        return cls(
            success=False,
            execution_id=execution_id,
            execution=execution,
            error_code=error_code,
            message=message,
        )

    @property
    def status(self) -> Optional[ExecutionStatus]:
        return self.execution.status if self.execution else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "execution_id": self.execution_id,
            "status": self.status.value if self.status else None,
            "error_code": self.error_code.value if self.error_code else None,
            "message": self.message,
        }


# ─── Workflow Engine ───────────────────────────────────────────

class WorkflowEngine:
    """Drives workflow executions.

    Capabilities (handler registry, assignment resolver, expression
    evaluator, stores, scheduler) are supplied by the host; in-memory
    defaults are used for anything not given.
    """

    # Window of stored executions aggregated by get_metrics
    METRICS_WINDOW = 1000

    def __init__(
        self,
        definitions: Optional[DefinitionStore] = None,
        store: Optional[ExecutionStore] = None,
        scheduler: Optional[Scheduler] = None,
        handlers: Optional[HandlerRegistry] = None,
        assignment: Optional[AssignmentResolver] = None,
        expression_evaluator: Optional[ExpressionEvaluator] = None,
        settings: Optional[Settings] = None,
        sleep=asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.definitions = definitions or InMemoryDefinitionStore()
        self.store = store or InMemoryExecutionStore()
        self.scheduler = scheduler or InMemoryScheduler()
        self.handlers = handlers or get_handler_registry()

        self.conditions = ConditionEvaluator(expression_evaluator)
        self.actions = ActionExecutor(self.handlers, self.conditions, sleep=sleep)
        self.transitions = TransitionResolver(self.conditions, self.actions)
        self.steps = StepExecutor(
            self.handlers,
            self.conditions,
            self.actions,
            assignment or DefaultAssignmentResolver(self.conditions.expression_evaluator),
            sleep=sleep,
            subworkflow_runner=self._run_child,
        )
        self.validator = WorkflowValidator()

        self._locks: Dict[str, asyncio.Lock] = {}
        self._live: Dict[str, WorkflowExecution] = {}
        self._slots = asyncio.Semaphore(self.settings.MAX_CONCURRENT_EXECUTIONS)
        self._definition_slots: Dict[str, asyncio.Semaphore] = {}
        self._background: Set[asyncio.Task] = set()

    # ─── Public operations ────────────────────────────────────

    async def execute(
        self,
        definition_id: str,
        context: Optional[WorkflowContext] = None,
        wait: bool = True,
    ) -> EngineResult:
        """Start an execution of a stored definition.

        With ``wait=True`` the call returns once the execution finishes or
        parks (Running with waiting steps). With ``wait=False`` it returns
        the Pending execution and runs it in the background.
        """
        definition = await self.definitions.get(definition_id)
        if definition is None:
            return EngineResult.failure(ErrorCode.NOT_FOUND, f"Workflow definition {definition_id} not found")
        try:
            execution = await self.execute_definition(definition, context, wait=wait)
        except StorageError:
            raise
        except WorkflowEngineError as e:
            logger.warning("execute_rejected", definition_id=definition_id, code=e.code.value, error=e.message)
            return EngineResult.failure(e.code, e.message)
        return EngineResult.ok(execution)

    async def execute_definition(
        self,
        definition: WorkflowDefinition,
        context: Optional[WorkflowContext] = None,
        wait: bool = True,
        parent: Optional[WorkflowExecution] = None,
        parent_step_execution_id: Optional[str] = None,
    ) -> WorkflowExecution:
        """Create and run an execution of ``definition``.

        Raises:
            InvalidStateError: Definition not Active/Published, or a required
                variable is missing (code INVALID_CONTEXT).
            DefinitionValidationError: Definition has no start step.
        """
        if definition.status not in EXECUTABLE_WORKFLOW_STATUSES:
            raise InvalidStateError(
                f"Workflow {definition.id} is {definition.status.value}; only active or published workflows run",
                definition_id=definition.id,
            )
        starts = definition.start_steps
        if not starts:
            raise DefinitionValidationError(
                f"Workflow {definition.id} has no start step", code=ErrorCode.NO_START_STEP
            )

        context = context.model_copy(deep=True) if context is not None else WorkflowContext()
        if not context.tenant_id:
            context.tenant_id = definition.tenant_id
        self._seed_variables(definition, context)

        execution = WorkflowExecution(
            workflow_id=definition.id,
            workflow_version=definition.version,
            context=context,
            initiated_by=context.user_id,
            parent_execution_id=parent.id if parent else None,
            parent_step_execution_id=parent_step_execution_id,
        )
        execution.tokens.append(ExecutionToken(current_step_id=starts[0].id))
        await self.store.save(execution)

        if wait:
            return await self._start(execution.id, definition)

        task = asyncio.create_task(self._start_in_background(execution.id, definition))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return execution

    async def signal(
        self,
        execution_id: str,
        step_id: str,
        output: Optional[Dict[str, Any]] = None,
    ) -> EngineResult:
        """Complete a waiting step (user task, event) with ``output`` and resume."""
        workflow_id = await self._workflow_id_of(execution_id)
        if workflow_id is None:
            return EngineResult.failure(ErrorCode.NOT_FOUND, f"Execution {execution_id} not found")

        async with self._slot(workflow_id):
            async with self._checkout(execution_id) as execution:
                if execution is None:
                    return EngineResult.failure(ErrorCode.NOT_FOUND, f"Execution {execution_id} not found")
                if execution.is_terminal:
                    return EngineResult.failure(
                        ErrorCode.INVALID_STATE,
                        f"Execution {execution_id} is {execution.status.value}",
                        execution_id,
                        execution,
                    )
                waiting = execution.waiting_step_executions(step_id)
                if not waiting:
                    return EngineResult.failure(
                        ErrorCode.STEP_NOT_WAITING,
                        f"Step '{step_id}' is not waiting",
                        execution_id,
                        execution,
                    )
                definition = await self.definitions.get(execution.workflow_id)
                step = definition.get_step(step_id) if definition else None
                if step is None:
                    return EngineResult.failure(
                        ErrorCode.NOT_FOUND,
                        f"Step '{step_id}' not found in workflow {execution.workflow_id}",
                        execution_id,
                        execution,
                    )

                record = waiting[0]
                logger.info("step_signalled", execution_id=execution_id, step_id=step_id, record_id=record.id)
                await self._resume_waiting(execution, definition, step, record, output=output or {})
                await self._run(execution, definition)

            await self._after_terminal(execution)
        return EngineResult.ok(execution)

    async def cancel(self, execution_id: str) -> EngineResult:
        """Cancel an execution. Idempotent for already-cancelled executions."""
        live = self._live.get(execution_id)
        if live is not None and not live.is_terminal:
            # Observed by the owner at its next step boundary
            live.cancel_requested = True

        async with self._checkout(execution_id) as execution:
            if execution is None:
                return EngineResult.failure(ErrorCode.NOT_FOUND, f"Execution {execution_id} not found")
            if execution.status == ExecutionStatus.CANCELLED:
                return EngineResult.ok(execution)
            if execution.is_terminal:
                return EngineResult.failure(
                    ErrorCode.INVALID_STATE,
                    f"Execution {execution_id} is {execution.status.value}",
                    execution_id,
                    execution,
                )
            definition = await self.definitions.get(execution.workflow_id)
            execution.cancel_requested = True
            await self._finish(execution, definition, ExecutionStatus.CANCELLED, ErrorCode.CANCELLED, "Execution cancelled")

        await self._after_terminal(execution)
        return EngineResult.ok(execution)

    async def suspend(self, execution_id: str) -> EngineResult:
        """Park a Running execution; signals and wakes still apply, routing waits."""
        live = self._live.get(execution_id)
        if live is not None:
            # Being driven right now: the owner stops at its next step boundary
            if live.status != ExecutionStatus.RUNNING:
                return EngineResult.failure(
                    ErrorCode.INVALID_STATE, f"Execution {execution_id} is {live.status.value}", execution_id, live
                )
            live.status = ExecutionStatus.SUSPENDED
            await self._notify(live, await self.definitions.get(live.workflow_id), NotificationEvent.SUSPENDED)
            logger.info("execution_suspended", execution_id=execution_id)
            return EngineResult.ok(live)

        async with self._checkout(execution_id) as execution:
            if execution is None:
                return EngineResult.failure(ErrorCode.NOT_FOUND, f"Execution {execution_id} not found")
            if execution.status != ExecutionStatus.RUNNING:
                return EngineResult.failure(
                    ErrorCode.INVALID_STATE,
                    f"Execution {execution_id} is {execution.status.value}",
                    execution_id,
                    execution,
                )
            execution.status = ExecutionStatus.SUSPENDED
            await self.store.save(execution)
            await self._notify(execution, await self.definitions.get(execution.workflow_id), NotificationEvent.SUSPENDED)
        logger.info("execution_suspended", execution_id=execution_id)
        return EngineResult.ok(execution)

    async def resume(self, execution_id: str) -> EngineResult:
        """Continue a Suspended execution."""
        workflow_id = await self._workflow_id_of(execution_id)
        if workflow_id is None:
            return EngineResult.failure(ErrorCode.NOT_FOUND, f"Execution {execution_id} not found")

        async with self._slot(workflow_id):
            async with self._checkout(execution_id) as execution:
                if execution is None:
                    return EngineResult.failure(ErrorCode.NOT_FOUND, f"Execution {execution_id} not found")
                if execution.status != ExecutionStatus.SUSPENDED:
                    return EngineResult.failure(
                        ErrorCode.INVALID_STATE,
                        f"Execution {execution_id} is {execution.status.value}",
                        execution_id,
                        execution,
                    )
                definition = await self.definitions.get(execution.workflow_id)
                if definition is None:
                    return EngineResult.failure(
                        ErrorCode.NOT_FOUND, f"Workflow definition {execution.workflow_id} not found", execution_id
                    )
                execution.status = ExecutionStatus.RUNNING
                logger.info("execution_resumed", execution_id=execution_id)
                await self._notify(execution, definition, NotificationEvent.RESUMED)
                await self._run(execution, definition)

            await self._after_terminal(execution)
        return EngineResult.ok(execution)

    async def recover(self, execution_id: str) -> EngineResult:
        """Resume an execution interrupted by a restart.

        Pending executions are started; Running ones continue from their
        saved tokens. A step that was in flight at the crash is re-executed.
        """
        workflow_id = await self._workflow_id_of(execution_id)
        if workflow_id is None:
            return EngineResult.failure(ErrorCode.NOT_FOUND, f"Execution {execution_id} not found")
        definition = await self.definitions.get(workflow_id)
        if definition is None:
            return EngineResult.failure(ErrorCode.NOT_FOUND, f"Workflow definition {workflow_id} not found", execution_id)

        async with self._slot(workflow_id):
            async with self._checkout(execution_id) as execution:
                if execution is None:
                    return EngineResult.failure(ErrorCode.NOT_FOUND, f"Execution {execution_id} not found")
                if execution.status == ExecutionStatus.PENDING:
                    await self._begin(execution, definition)
                elif execution.status == ExecutionStatus.RUNNING:
                    for record in execution.step_executions:
                        if record.status == StepStatus.RUNNING:
                            fail_record(
                                record,
                                ErrorCode.CANCELLED,
                                "Interrupted by restart; step re-executed",
                                StepStatus.CANCELLED,
                            )
                    await self._run(execution, definition)
                else:
                    return EngineResult.failure(
                        ErrorCode.INVALID_STATE,
                        f"Execution {execution_id} is {execution.status.value}",
                        execution_id,
                        execution,
                    )

            await self._after_terminal(execution)
        return EngineResult.ok(execution)

    async def get_execution(self, execution_id: str) -> EngineResult:
        execution = self._live.get(execution_id) or await self.store.load(execution_id)
        if execution is None:
            return EngineResult.failure(ErrorCode.NOT_FOUND, f"Execution {execution_id} not found")
        return EngineResult.ok(execution)

    async def get_execution_history(self, definition_id: str, limit: int = 50) -> List[WorkflowExecution]:
        """Stored executions of a definition, most recent first."""
        return await self.store.list_by_workflow(definition_id, limit=limit)

    async def get_metrics(self, definition_id: str) -> Dict[str, Any]:
        """Aggregate counts, success rate and durations for a definition."""
        executions = await self.store.list_by_workflow(definition_id, limit=self.METRICS_WINDOW)
        by_status = {status.value: 0 for status in ExecutionStatus}
        for execution in executions:
            by_status[execution.status.value] += 1

        finished = [e for e in executions if e.is_terminal]
        durations = [e.metrics.total_duration_ms for e in finished]
        completed = by_status[ExecutionStatus.COMPLETED.value]
        return {
            "definition_id": definition_id,
            "total_executions": len(executions),
            "finished_executions": len(finished),
            "by_status": by_status,
            "success_rate": round(completed / len(finished), 4) if finished else 0.0,
            "average_duration_ms": int(sum(durations) / len(durations)) if durations else 0,
            "min_duration_ms": min(durations) if durations else 0,
            "max_duration_ms": max(durations) if durations else 0,
            "steps_completed": sum(e.metrics.steps_completed for e in executions),
            "steps_failed": sum(e.metrics.steps_failed for e in executions),
        }

    async def validate(self, definition_id: str) -> ValidationResult:
        definition = await self.definitions.get(definition_id)
        if definition is None:
            return ValidationResult(errors=[ValidationError(
                code="DEFINITION_NOT_FOUND",
                message=f"Workflow definition {definition_id} not found",
            )])
        return self.validate_definition(definition)

    def validate_definition(self, definition: WorkflowDefinition) -> ValidationResult:
        return self.validator.validate(definition)

    async def publish(self, definition_id: str) -> ValidationResult:
        """Validate a definition and mark it Published when it has no errors."""
        result = await self.validate(definition_id)
        if not result.is_valid:
            logger.info("publish_rejected", definition_id=definition_id, errors=result.error_codes)
            return result
        definition = await self.definitions.get(definition_id)
        definition.status = WorkflowStatus.PUBLISHED
        await self.definitions.save(definition)
        logger.info("definition_published", definition_id=definition_id, version=definition.version)
        return result

    def get_running_executions(self) -> Dict[str, Dict[str, Any]]:
        """Executions currently being driven by this process."""
        return {
            eid: {
                "workflow_id": execution.workflow_id,
                "status": execution.status.value,
                "current_steps": [t.current_step_id for t in execution.live_tokens],
                "steps_executed": execution.steps_executed,
            }
            for eid, execution in self._live.items()
        }

    # ─── Timers ───────────────────────────────────────────────

    async def process_due_wakes(self, now: Optional[datetime] = None) -> int:
        """Fire every wake due at ``now``. Returns the number fired.

        A wake is deleted only after it fired; if firing raises, the claim is
        released so the next poll retries it.
        """
        now = now or utc_now()
        lease_until = now + timedelta(seconds=self.settings.WAKE_CLAIM_LEASE_SECONDS)
        fired = 0
        for wake in await self.scheduler.due(now):
            if not await self.scheduler.claim(wake.id, now, lease_until):
                continue
            try:
                await self._fire_wake(wake, now)
            except Exception:
                logger.warning("wake_fire_failed", wake_id=wake.id, execution_id=wake.execution_id)
                await self.scheduler.release(wake.id)
                raise
            await self.scheduler.complete(wake.id)
            fired += 1
        return fired

    async def run_timer_loop(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Poll for due wakes until ``stop_event`` is set."""
        stop = stop_event or asyncio.Event()
        interval = self.settings.TIMER_POLL_INTERVAL_SECONDS
        logger.info("timer_loop_started", interval=interval)
        while not stop.is_set():
            try:
                await self.process_due_wakes()
            except StorageError as e:
                logger.error("timer_loop_storage_error", error=e.message)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("timer_loop_stopped")

    async def drain(self) -> None:
        """Wait for background executions started with ``wait=False``."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ─── Ownership and concurrency ────────────────────────────

    @asynccontextmanager
    async def _owned(self, execution_id: str) -> AsyncIterator[None]:
        owned = _owned_ids.get()
        if execution_id in owned:
            yield
            return
        lock = self._locks.setdefault(execution_id, asyncio.Lock())
        try:
            async with lock:
                token = _owned_ids.set(owned | {execution_id})
                try:
                    yield
                finally:
                    _owned_ids.reset(token)
        finally:
            # Last holder out drops the entry; waiters still reference this lock
            if not lock.locked() and not getattr(lock, "_waiters", None) and self._locks.get(execution_id) is lock:
                del self._locks[execution_id]

    @asynccontextmanager
    async def _checkout(self, execution_id: str) -> AsyncIterator[Optional[WorkflowExecution]]:
        """Own the execution and yield its current state (None if unknown)."""
        async with self._owned(execution_id):
            execution = self._live.get(execution_id)
            if execution is not None:
                yield execution
                return
            execution = await self.store.load(execution_id)
            if execution is None:
                yield None
                return
            self._live[execution_id] = execution
            try:
                yield execution
            finally:
                self._live.pop(execution_id, None)

    @asynccontextmanager
    async def _slot(self, workflow_id: Optional[str]) -> AsyncIterator[None]:
        """Hold a concurrency slot (global and per-definition) unless already in one."""
        if _in_slot.get():
            yield
            return
        per_definition = await self._definition_slot(workflow_id)
        async with AsyncExitStack() as stack:
            await stack.enter_async_context(self._slots)
            if per_definition is not None:
                await stack.enter_async_context(per_definition)
            token = _in_slot.set(True)
            try:
                yield
            finally:
                _in_slot.reset(token)

    async def _definition_slot(self, workflow_id: Optional[str]) -> Optional[asyncio.Semaphore]:
        """Per-definition semaphore, created on first use from the stored definition."""
        if not workflow_id:
            return None
        if workflow_id in self._definition_slots:
            return self._definition_slots[workflow_id]
        definition = await self.definitions.get(workflow_id)
        limit = definition.configuration.max_concurrent_executions if definition else None
        if not limit:
            return None
        return self._definition_slots.setdefault(workflow_id, asyncio.Semaphore(limit))

    async def _workflow_id_of(self, execution_id: str) -> Optional[str]:
        live = self._live.get(execution_id)
        if live is not None:
            return live.workflow_id
        execution = await self.store.load(execution_id)
        return execution.workflow_id if execution else None

    # ─── Run loop ─────────────────────────────────────────────

    async def _start(self, execution_id: str, definition: WorkflowDefinition) -> WorkflowExecution:
        async with self._slot(definition.id):
            async with self._checkout(execution_id) as execution:
                if execution is None:
                    raise NotFoundError(f"Execution {execution_id} not found", execution_id=execution_id)
                if execution.status == ExecutionStatus.PENDING:
                    await self._begin(execution, definition)
            await self._after_terminal(execution)
        return execution

    async def _start_in_background(self, execution_id: str, definition: WorkflowDefinition) -> None:
        # Tasks inherit the creator's context; start from a clean one
        _owned_ids.set(frozenset())
        _in_slot.set(False)
        try:
            await self._start(execution_id, definition)
        except Exception as e:
            logger.error("background_execution_failed", execution_id=execution_id, error=str(e), exc_info=True)

    async def _begin(self, execution: WorkflowExecution, definition: WorkflowDefinition) -> None:
        execution.status = ExecutionStatus.RUNNING
        execution.started_at = utc_now()
        timeout = definition.configuration.default_timeout
        if timeout:
            await self.scheduler.schedule(ScheduledWake(
                execution_id=execution.id,
                kind=WakeKind.EXECUTION_TIMEOUT,
                due_at=execution.started_at + timedelta(seconds=timeout),
                payload={"workflow_id": definition.id},
            ))
        logger.info(
            "execution_started",
            execution_id=execution.id,
            definition_id=definition.id,
            version=definition.version,
            parent_execution_id=execution.parent_execution_id,
        )
        await self._notify(execution, definition, NotificationEvent.STARTED)
        await self._run(execution, definition)

    async def _run(self, execution: WorkflowExecution, definition: WorkflowDefinition) -> None:
        """Drive the execution, converting engine errors into a Failed status."""
        with execution_log_context(execution.id, definition.id, execution.context.tenant_id):
            try:
                await self._drive(execution, definition)
            except StorageError:
                raise
            except WorkflowEngineError as e:
                logger.warning("execution_error", code=e.code.value, error=e.message)
                await self._finish(
                    execution, definition, ExecutionStatus.FAILED, e.code, e.message, e.context.get("step_id")
                )
            except Exception as e:
                logger.error("execution_crashed", error=str(e), exc_info=True)
                await self._finish(execution, definition, ExecutionStatus.FAILED, ErrorCode.INVALID_STATE, str(e))

    async def _drive(self, execution: WorkflowExecution, definition: WorkflowDefinition) -> None:
        while not execution.is_terminal:
            if execution.cancel_requested:
                await self._finish(
                    execution, definition, ExecutionStatus.CANCELLED, ErrorCode.CANCELLED, "Execution cancelled"
                )
                return
            if execution.status != ExecutionStatus.RUNNING:
                break

            active = execution.active_tokens
            if not active:
                if not execution.live_tokens:
                    await self._settle(execution, definition)
                    return
                # Parked on waiting steps
                break
            await self._advance(execution, definition, active[0])

        if not execution.is_terminal:
            await self.store.save(execution)

    async def _advance(self, execution: WorkflowExecution, definition: WorkflowDefinition, token: ExecutionToken) -> None:
        """Move ``token`` one step: route a pending record, or execute its current step."""
        step = definition.get_step(token.current_step_id)
        if step is None:
            raise InvalidStateError(
                f"Step '{token.current_step_id}' not found in workflow {definition.id}",
                step_id=token.current_step_id,
            )

        if token.pending_record_id:
            record = execution.get_step_execution(token.pending_record_id)
            if record is not None:
                await self._route(execution, definition, token, step, record)
                return
            token.pending_record_id = None

        join = execution.get_join(token.join_id)
        if join is not None and step.id == join.join_step_id:
            await self._arrive(execution, token, join)
            await self.store.save(execution)
            return

        limit = definition.configuration.max_steps or self.settings.ENGINE_MAX_STEPS
        if execution.steps_executed >= limit:
            await self._finish(
                execution,
                definition,
                ExecutionStatus.TIMEOUT,
                ErrorCode.MAX_STEPS_EXCEEDED,
                f"Execution exceeded {limit} steps",
                step.id,
            )
            return

        execution.steps_executed += 1
        record = StepExecution(
            step_id=step.id,
            step_name=step.name,
            step_type=step.type.value,
            token_id=token.id,
        )
        execution.step_executions.append(record)
        outcome = await self.steps.execute(step, execution, definition, record)

        if record.status == StepStatus.WAITING:
            token.status = TokenStatus.WAITING
            await self._arm_wakes(execution, definition, step, record, outcome.wake_at)
            await self.store.save(execution)
            return

        token.pending_record_id = record.id
        await self.store.save(execution)
        await self._route(execution, definition, token, step, record)

    async def _route(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        token: ExecutionToken,
        step: WorkflowStep,
        record: StepExecution,
    ) -> None:
        if record.status == StepStatus.CANCELLED:
            token.status = TokenStatus.DISCARDED
            token.pending_record_id = None
            return

        if record.status in (StepStatus.FAILED, StepStatus.TIMEOUT):
            await self._notify(execution, definition, NotificationEvent.STEP_FAILED, step_id=step.id)
            await self._on_step_failure(execution, definition, token, step, record)
        else:
            if record.status == StepStatus.COMPLETED:
                await self._notify(execution, definition, NotificationEvent.STEP_COMPLETED, step_id=step.id)
            await self._continue(execution, definition, token, step, record)

        if not execution.is_terminal:
            await self.store.save(execution)

    async def _continue(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        token: ExecutionToken,
        step: WorkflowStep,
        record: StepExecution,
    ) -> None:
        """Normal routing after a completed (or tolerated) step."""
        token.pending_record_id = None

        if step.is_terminal:
            token.status = TokenStatus.COMPLETED
            token.reached_end = True
            return

        join_step_id = get_param(step.parameters, "join_step_id")
        if (
            step.type == StepType.PARALLEL
            and definition.configuration.is_parallel_execution_enabled
            and join_step_id
        ):
            await self._fork(execution, definition, token, step, record, join_step_id)
            return

        try:
            target = await self.transitions.resolve(step, execution, definition, record)
        except ActionFailedError as e:
            await self._finish(execution, definition, ExecutionStatus.FAILED, e.code, e.message, step.id)
            return

        if target is None:
            if self.settings.DEAD_END_IS_FATAL:
                await self._finish(
                    execution,
                    definition,
                    ExecutionStatus.FAILED,
                    ErrorCode.NO_VALID_TRANSITION,
                    f"No valid transition from step '{step.id}'",
                    step.id,
                )
            else:
                logger.info("dead_end_completes_token", step_id=step.id, token_id=token.id)
                token.status = TokenStatus.COMPLETED
                token.reached_end = True
            return

        token.current_step_id = target.id

    async def _on_step_failure(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        token: ExecutionToken,
        step: WorkflowStep,
        record: StepExecution,
    ) -> None:
        if record.status == StepStatus.TIMEOUT and step.timeout.is_enabled:
            await self._handle_timeout(execution, definition, token, step, record)
            return

        transition = self.transitions.select_exception(step, definition)
        if transition is not None:
            try:
                target = await self.transitions.take(transition, execution, definition, record)
            except ActionFailedError as e:
                await self._finish(execution, definition, ExecutionStatus.FAILED, e.code, e.message, step.id)
                return
            if target is not None:
                logger.info("exception_transition_taken", step_id=step.id, to_step=target.id)
                token.pending_record_id = None
                token.current_step_id = target.id
                return

        if step.continue_on_error:
            logger.info("step_failure_tolerated", step_id=step.id, error_code=record.error_code)
            await self._continue(execution, definition, token, step, record)
            return

        await self._finish(
            execution,
            definition,
            ExecutionStatus.FAILED,
            ErrorCode(record.error_code) if record.error_code else ErrorCode.HANDLER_EXECUTION_FAILED,
            f"Step '{step.id}' failed: {record.error_message}",
            step.id,
        )

    async def _settle(self, execution: WorkflowExecution, definition: WorkflowDefinition) -> None:
        """No live tokens remain: the execution is done."""
        if any(t.reached_end for t in execution.tokens):
            await self._finish(execution, definition, ExecutionStatus.COMPLETED)
        else:
            await self._finish(
                execution,
                definition,
                ExecutionStatus.FAILED,
                ErrorCode.NO_VALID_TRANSITION,
                "No branch reached an end step",
            )

    async def _finish(
        self,
        execution: WorkflowExecution,
        definition: Optional[WorkflowDefinition],
        status: ExecutionStatus,
        error_code: Optional[ErrorCode] = None,
        message: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> None:
        if execution.is_terminal:
            return
        execution.status = status
        execution.completed_at = utc_now()
        execution.error_code = error_code.value if error_code else None
        execution.error_message = message
        execution.failed_step_id = step_id

        for token in execution.live_tokens:
            token.status = TokenStatus.DISCARDED
        for record in execution.step_executions:
            if record.status in (StepStatus.WAITING, StepStatus.PENDING, StepStatus.RUNNING):
                fail_record(record, ErrorCode.CANCELLED, f"Execution {status.value}", StepStatus.CANCELLED)
        await self.scheduler.cancel_for_execution(execution.id)

        execution.compute_metrics()
        await self.store.save(execution)

        logger.info(
            "execution_finished",
            execution_id=execution.id,
            status=status.value,
            error_code=execution.error_code,
            failed_step_id=step_id,
            steps_executed=execution.steps_executed,
            duration_ms=execution.metrics.total_duration_ms,
        )
        event = _FINISH_EVENTS.get(status)
        if event is not None:
            await self._notify(execution, definition, event)

    # ─── Parallel fork / join ─────────────────────────────────

    async def _fork(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        token: ExecutionToken,
        step: WorkflowStep,
        record: StepExecution,
        join_step_id: str,
    ) -> None:
        branches = self.transitions.select_all(step, execution, definition)
        if not branches:
            await self._finish(
                execution,
                definition,
                ExecutionStatus.FAILED,
                ErrorCode.NO_VALID_TRANSITION,
                f"Parallel step '{step.id}' has no branch to follow",
                step.id,
            )
            return

        quorum = get_param(step.parameters, "quorum")
        quorum = max(1, min(int(quorum), len(branches))) if quorum is not None else len(branches)
        join = JoinState(
            fork_step_id=step.id,
            join_step_id=join_step_id,
            quorum=quorum,
            parent_join_id=token.join_id,
        )
        execution.joins.append(join)
        token.status = TokenStatus.COMPLETED

        for transition in branches:
            try:
                target = await self.transitions.take(transition, execution, definition, record)
            except ActionFailedError as e:
                await self._finish(execution, definition, ExecutionStatus.FAILED, e.code, e.message, step.id)
                return
            if target is None:
                raise InvalidStateError(
                    f"Transition '{transition.id}' targets unknown step '{transition.to_step_id}'",
                    step_id=step.id,
                )
            branch = ExecutionToken(current_step_id=target.id, join_id=join.id)
            join.branch_token_ids.append(branch.id)
            execution.tokens.append(branch)

        logger.info("parallel_fork", step_id=step.id, branches=len(branches), quorum=quorum, join_step_id=join_step_id)

    async def _arrive(self, execution: WorkflowExecution, token: ExecutionToken, join: JoinState) -> None:
        if join.fired:
            token.status = TokenStatus.DISCARDED
            logger.info("late_branch_discarded", join_step_id=join.join_step_id, token_id=token.id)
            return

        token.status = TokenStatus.ARRIVED
        join.arrived_token_ids.append(token.id)
        if len(join.arrived_token_ids) < join.quorum:
            return

        join.fired = True
        for other in execution.live_tokens:
            if self._within_join(execution, other, join.id):
                other.status = TokenStatus.DISCARDED
                for record in execution.step_executions:
                    if record.token_id == other.id and record.status == StepStatus.WAITING:
                        fail_record(record, ErrorCode.CANCELLED, "Parallel branch discarded", StepStatus.CANCELLED)
                        await self.scheduler.cancel_for_step_execution(record.id)

        execution.tokens.append(ExecutionToken(current_step_id=join.join_step_id, join_id=join.parent_join_id))
        logger.info("parallel_join", join_step_id=join.join_step_id, arrived=len(join.arrived_token_ids))

    @staticmethod
    def _within_join(execution: WorkflowExecution, token: ExecutionToken, join_id: str) -> bool:
        join = execution.get_join(token.join_id)
        while join is not None:
            if join.id == join_id:
                return True
            join = execution.get_join(join.parent_join_id)
        return False

    # ─── Waiting steps, wakes and timeouts ────────────────────

    async def _arm_wakes(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        record: StepExecution,
        timer_due: Optional[datetime],
    ) -> None:
        now = utc_now()
        payload = {"workflow_id": definition.id, "step_id": step.id}

        def wake(kind: WakeKind, due_at: datetime) -> ScheduledWake:
            return ScheduledWake(
                execution_id=execution.id,
                kind=kind,
                due_at=due_at,
                step_execution_id=record.id,
                payload=dict(payload),
            )

        if timer_due is not None:
            await self.scheduler.schedule(wake(WakeKind.TIMER, timer_due))
        escalation = step.configuration.escalation
        if escalation is not None and escalation.is_enabled and escalation.duration:
            await self.scheduler.schedule(wake(WakeKind.ESCALATION, now + timedelta(seconds=escalation.duration)))
        if step.timeout.is_enabled and step.timeout.duration:
            await self.scheduler.schedule(wake(WakeKind.TIMEOUT, now + timedelta(seconds=step.timeout.duration)))

    async def _fire_wake(self, wake: ScheduledWake, now: datetime) -> None:
        workflow_id = wake.payload.get("workflow_id") or await self._workflow_id_of(wake.execution_id)
        async with self._slot(workflow_id):
            async with self._checkout(wake.execution_id) as execution:
                if execution is None or execution.is_terminal:
                    return
                definition = await self.definitions.get(execution.workflow_id)
                if definition is None:
                    logger.warning("wake_definition_missing", execution_id=execution.id, workflow_id=execution.workflow_id)
                    return
                logger.info("wake_fired", execution_id=execution.id, kind=wake.kind.value, wake_id=wake.id)

                if wake.kind == WakeKind.EXECUTION_TIMEOUT:
                    await self._finish(
                        execution,
                        definition,
                        ExecutionStatus.TIMEOUT,
                        ErrorCode.EXECUTION_TIMEOUT,
                        "Execution exceeded its timeout",
                    )
                else:
                    record = execution.get_step_execution(wake.step_execution_id)
                    if record is None or record.status != StepStatus.WAITING:
                        logger.debug("stale_wake_skipped", wake_id=wake.id)
                        return
                    step = definition.get_step(record.step_id)
                    token = execution.get_token(record.token_id)
                    if step is None or token is None:
                        return

                    if wake.kind == WakeKind.TIMER:
                        await self._resume_waiting(execution, definition, step, record, output={
                            "fired_at": isoformat(now),
                            "scheduled_for": isoformat(wake.due_at),
                        })
                    elif wake.kind == WakeKind.ESCALATION:
                        await self._escalate(execution, definition, step, record)
                        escalation = step.configuration.escalation
                        if escalation.repeat_escalation and escalation.repeat_interval:
                            await self.scheduler.schedule(ScheduledWake(
                                execution_id=execution.id,
                                kind=WakeKind.ESCALATION,
                                due_at=now + timedelta(seconds=escalation.repeat_interval),
                                step_execution_id=record.id,
                                payload=dict(wake.payload),
                            ))
                    else:
                        await self._handle_timeout(execution, definition, token, step, record)

                    await self._run(execution, definition)

            await self._after_terminal(execution)

    async def _resume_waiting(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        record: StepExecution,
        output: Optional[Dict[str, Any]] = None,
        failure: Optional[str] = None,
    ) -> None:
        """Finish a waiting step and hand its token back for routing."""
        await self.scheduler.cancel_for_step_execution(record.id)
        if failure is not None:
            fail_record(record, ErrorCode.HANDLER_EXECUTION_FAILED, failure)
        else:
            await self.steps.complete(step, execution, definition, record, output)
        self._mark_pending(execution, record)

    @staticmethod
    def _mark_pending(execution: WorkflowExecution, record: StepExecution) -> None:
        token = execution.get_token(record.token_id)
        if token is not None:
            token.status = TokenStatus.ACTIVE
            token.pending_record_id = record.id

    async def _escalate(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        record: StepExecution,
    ) -> None:
        policy = step.configuration.escalation
        record.escalation_count += 1
        if policy is not None:
            if policy.escalate_to:
                record.assigned_to = policy.escalate_to
            if policy.actions:
                await self.actions.execute_all(policy.actions, execution, definition, step_execution=record)
        logger.info(
            "step_escalated",
            step_id=step.id,
            escalation_count=record.escalation_count,
            assigned_to=record.assigned_to,
        )
        await self._notify(execution, definition, NotificationEvent.ESCALATED, step_id=step.id)
        await self.store.save(execution)

    async def _handle_timeout(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        token: ExecutionToken,
        step: WorkflowStep,
        record: StepExecution,
    ) -> None:
        """Apply the step's timeout action.

        ``record`` is either still Waiting (a timeout wake fired) or already
        Timeout (a handler step exhausted its attempts).
        """
        policy = step.timeout
        waiting = record.status == StepStatus.WAITING
        action = policy.action
        logger.info("step_timeout", step_id=step.id, action=action.value, waiting=waiting)

        if policy.timeout_actions:
            await self.actions.execute_all(policy.timeout_actions, execution, definition, step_execution=record)

        if action == TimeoutAction.ESCALATE:
            await self._escalate(execution, definition, step, record)
            if waiting:
                return
            action = TimeoutAction.CANCEL

        if waiting:
            await self.scheduler.cancel_for_step_execution(record.id)

        if action == TimeoutAction.COMPLETE:
            record.error_code = None
            record.error_message = None
            await self.steps.complete(step, execution, definition, record, {TIMED_OUT_OUTPUT_KEY: True})
            self._mark_pending(execution, record)
            return

        if action == TimeoutAction.SKIP:
            fail_record(record, ErrorCode.STEP_TIMEOUT, "Skipped after timeout", StepStatus.SKIPPED)
            self._mark_pending(execution, record)
            return

        if waiting:
            fail_record(record, ErrorCode.STEP_TIMEOUT, f"Step timed out after {policy.duration}s", StepStatus.TIMEOUT)

        if action == TimeoutAction.RETRY:
            if waiting:
                timeouts = sum(
                    1 for r in execution.step_executions
                    if r.step_id == step.id and r.token_id == token.id and r.status == StepStatus.TIMEOUT
                )
                if timeouts < step.retry.max_attempts:
                    logger.info("step_timeout_retry", step_id=step.id, attempt=timeouts + 1)
                    token.status = TokenStatus.ACTIVE
                    token.pending_record_id = None
                    return
            action = TimeoutAction.CANCEL

        if action == TimeoutAction.GO_TO_STEP:
            target = definition.get_step(policy.next_step_id)
            if target is None:
                await self._finish(
                    execution,
                    definition,
                    ExecutionStatus.FAILED,
                    ErrorCode.INVALID_STATE,
                    f"Timeout target step '{policy.next_step_id}' not found",
                    step.id,
                )
                return
            token.status = TokenStatus.ACTIVE
            token.pending_record_id = None
            token.current_step_id = target.id
            return

        token.pending_record_id = None
        await self._finish(
            execution,
            definition,
            ExecutionStatus.TIMEOUT,
            ErrorCode.STEP_TIMEOUT,
            f"Step '{step.id}' timed out",
            step.id,
        )

    # ─── Sub-workflows ────────────────────────────────────────

    async def _run_child(
        self,
        definition_id: str,
        variables: Dict[str, Any],
        parent: WorkflowExecution,
        parent_record: StepExecution,
    ) -> WorkflowExecution:
        definition = await self.definitions.get(definition_id)
        if definition is None:
            raise NotFoundError(f"Workflow definition {definition_id} not found", definition_id=definition_id)
        context = WorkflowContext(
            tenant_id=parent.context.tenant_id,
            user_id=parent.context.user_id,
            business_key=parent.context.business_key,
            correlation_id=parent.context.correlation_id or parent.id,
            source="sub_workflow",
            variables=copy.deepcopy(variables),
        )
        logger.info("sub_workflow_starting", parent_execution_id=parent.id, definition_id=definition_id)
        return await self.execute_definition(
            definition,
            context,
            wait=True,
            parent=parent,
            parent_step_execution_id=parent_record.id,
        )

    async def _after_terminal(self, execution: Optional[WorkflowExecution]) -> None:
        """Propagate a finished execution to its parent and its waiting children.

        Called after the execution's lock is released.
        """
        if execution is None or not execution.is_terminal:
            return

        for record in execution.step_executions:
            child_id = record.output_data.get("child_execution_id")
            if record.step_type == StepType.SUB_WORKFLOW.value and child_id and record.status == StepStatus.CANCELLED:
                result = await self.cancel(child_id)
                if result.success:
                    logger.info("child_execution_cancelled", child_execution_id=child_id)

        parent_id = execution.parent_execution_id
        if parent_id and parent_id not in _owned_ids.get():
            await self._resume_parent(execution)

    async def _resume_parent(self, child: WorkflowExecution) -> None:
        async with self._checkout(child.parent_execution_id) as parent:
            if parent is None or parent.is_terminal:
                return
            record = parent.get_step_execution(child.parent_step_execution_id)
            if record is None or record.status != StepStatus.WAITING:
                return
            definition = await self.definitions.get(parent.workflow_id)
            step = definition.get_step(record.step_id) if definition else None
            if step is None:
                return

            logger.info("sub_workflow_finished", parent_execution_id=parent.id, child_execution_id=child.id)
            if child.status == ExecutionStatus.COMPLETED:
                await self._resume_waiting(parent, definition, step, record, output=subworkflow_output(child))
            else:
                failure = f"Sub-workflow {child.id} ended {child.status.value}"
                if child.error_message:
                    failure = f"{failure}: {child.error_message}"
                record.output_data = {"child_execution_id": child.id}
                await self._resume_waiting(parent, definition, step, record, failure=failure)
            await self._run(parent, definition)

        await self._after_terminal(parent)

    # ─── Helpers ──────────────────────────────────────────────

    @staticmethod
    def _seed_variables(definition: WorkflowDefinition, context: WorkflowContext) -> None:
        missing = []
        for variable in definition.variables:
            if variable.name in context.variables:
                continue
            default = variable.default_value if variable.default_value is not None else variable.value
            if default is not None:
                context.variables[variable.name] = copy.deepcopy(default)
            elif variable.is_required:
                missing.append(variable.name)
        if missing:
            raise InvalidStateError(
                f"Missing required variables: {', '.join(missing)}",
                ErrorCode.INVALID_CONTEXT,
                variables=missing,
            )

    async def _notify(
        self,
        execution: WorkflowExecution,
        definition: Optional[WorkflowDefinition],
        event: NotificationEvent,
        **extra: Any,
    ) -> None:
        """Send a lifecycle notification if the definition subscribes to ``event``.

        Best-effort: failures are logged, never raised.
        """
        if definition is None:
            return
        settings = definition.configuration.notification
        if not settings.is_enabled or event not in settings.events:
            return
        tag = ActionType.SEND_NOTIFICATION.value
        if not self.handlers.has(tag):
            logger.warning("notification_handler_missing", notification_event=event.value)
            return

        parameters = {
            "recipients": list(settings.recipients),
            "template": settings.template,
            "channel": settings.channel,
            "event": event.value,
            "execution_id": execution.id,
            "workflow_id": execution.workflow_id,
            "status": execution.status.value,
            **extra,
        }
        result = await self.handlers.invoke(tag, parameters, handler_context(execution, event=event.value))
        if not result.success:
            logger.warning("notification_failed", notification_event=event.value, error=result.error)


# ─── Singleton ─────────────────────────────────────────────────

_engine: Optional[WorkflowEngine] = None


def get_workflow_engine() -> WorkflowEngine:
    """Get or create the singleton WorkflowEngine."""
    global _engine
    if _engine is None:
        _engine = WorkflowEngine()
    return _engine
