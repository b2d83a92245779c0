"""Tests for the workflow execution engine."""

import asyncio
from datetime import timedelta

import pytest

from app.config import Settings
from conftest import end, go, make_definition, start, step, when
from core.constants import ErrorCode, ExecutionStatus, StepStatus, TokenStatus, WakeKind
from core.exceptions import StorageError
from core.utils import utc_now
from workflow.engine import EngineResult, WorkflowEngine
from workflow.models import ExecutionToken, StepExecution, WorkflowContext, WorkflowExecution
from workflow.recovery import RecoveryService


def ctx(**variables) -> WorkflowContext:
    return WorkflowContext(user_id="alice", variables=variables)


def records_for(execution, step_id):
    return [r for r in execution.step_executions if r.step_id == step_id]


def approval_definition(add_definition, **fields):
    return add_definition(
        [start(), step("approve", "UserTask", parameters={"assignee": "role:Approver"}), end()],
        [go("start", "approve"), go("approve", "end")],
        **fields,
    )


def later(seconds: float = 7200):
    return utc_now() + timedelta(seconds=seconds)


# ─── End-to-end scenarios ───

@pytest.mark.unit
class TestScenarios:
    async def test_user_task_waits_then_signal_completes(self, engine, add_definition):
        definition = approval_definition(add_definition)

        result = await engine.execute(definition.id, ctx())
        assert result.success
        assert result.status == ExecutionStatus.RUNNING
        waiting = records_for(result.execution, "approve")[0]
        assert waiting.status == StepStatus.WAITING
        assert waiting.assigned_to == "role:Approver"

        signalled = await engine.signal(result.execution_id, "approve", {"approved": True})
        assert signalled.success
        assert signalled.status == ExecutionStatus.COMPLETED
        assert signalled.execution.step_outputs["approve"] == {"approved": True}
        assert [r.step_id for r in signalled.execution.step_executions] == ["start", "approve", "end"]

    @pytest.mark.parametrize("amount,expected", [(1500, "end_a"), (500, "end_b")])
    async def test_decision_routes_on_amount(self, engine, add_definition, amount, expected):
        definition = add_definition(
            [start(), step("decide", "Decision"), end("end_a"), end("end_b")],
            [
                go("start", "decide"),
                go("decide", "end_a", type="Conditional", condition=when("amount", "GreaterThan", 1000)),
                go("decide", "end_b", type="Default"),
            ],
        )

        result = await engine.execute(definition.id, ctx(amount=amount))

        assert result.status == ExecutionStatus.COMPLETED
        assert result.execution.step_executions[-1].step_id == expected

    async def test_failing_handler_is_attempted_exactly_max_attempts(self, engine, add_definition, handlers):
        handlers.add("flaky", error="boom")
        definition = add_definition(
            [
                start(),
                step("work", handler="flaky", retry={"isEnabled": True, "maxAttempts": 2, "retryDelay": 0}),
                end(),
            ],
            [go("start", "work"), go("work", "end")],
        )

        result = await engine.execute(definition.id, ctx())

        assert handlers.count("flaky") == 2
        record = records_for(result.execution, "work")[0]
        assert record.status == StepStatus.FAILED
        assert record.attempts == 2
        assert result.status == ExecutionStatus.FAILED
        assert result.execution.error_code == ErrorCode.HANDLER_EXECUTION_FAILED.value
        assert result.execution.failed_step_id == "work"

    async def test_missing_start_step_fails_validation(self, engine, add_definition):
        definition = add_definition([step("work"), end()], [go("work", "end")])

        validation = await engine.validate(definition.id)

        assert not validation.is_valid
        assert "NO_START_STEP" in validation.error_codes
        result = await engine.execute(definition.id, ctx())
        assert not result.success
        assert result.error_code == ErrorCode.NO_START_STEP

    async def test_false_only_transition_is_a_dead_end(self, engine, add_definition):
        definition = add_definition(
            [start(), step("work"), end()],
            [
                go("start", "work"),
                go("work", "end", type="Conditional", condition=when("amount", "GreaterThan", 1000)),
            ],
        )

        result = await engine.execute(definition.id, ctx(amount=5))

        assert result.success
        assert result.status == ExecutionStatus.FAILED
        assert result.execution.error_code == ErrorCode.NO_VALID_TRANSITION.value
        assert result.execution.failed_step_id == "work"


# ─── Execute preconditions ───

@pytest.mark.unit
class TestExecute:
    async def test_unknown_definition(self, engine):
        result = await engine.execute("missing", ctx())
        assert not result.success
        assert result.error_code == ErrorCode.NOT_FOUND

    async def test_draft_definition_is_rejected(self, engine, add_definition):
        definition = add_definition([start(), end()], [go("start", "end")], status="Draft")

        result = await engine.execute(definition.id, ctx())

        assert not result.success
        assert result.error_code == ErrorCode.INVALID_STATE

    async def test_missing_required_variable(self, engine, add_definition):
        definition = add_definition(
            [start(), end()],
            [go("start", "end")],
            variables=[{"name": "amount", "isRequired": True}],
        )

        result = await engine.execute(definition.id, ctx())

        assert not result.success
        assert result.error_code == ErrorCode.INVALID_CONTEXT

    async def test_declared_defaults_seed_variables(self, engine, add_definition):
        definition = add_definition(
            [start(), end()],
            [go("start", "end")],
            variables=[{"name": "region", "defaultValue": "eu"}, {"name": "amount", "isRequired": True}],
        )

        result = await engine.execute(definition.id, ctx(amount=3))

        assert result.execution.variables == {"amount": 3, "region": "eu"}
        assert result.execution.context.tenant_id == "tenant-1"

    async def test_caller_context_is_not_mutated(self, engine, add_definition):
        definition = add_definition(
            [start(), end()],
            [go("start", "end")],
            variables=[{"name": "region", "defaultValue": "eu"}],
        )
        context = ctx()

        await engine.execute(definition.id, context)

        assert context.variables == {}

    async def test_metrics_are_computed_on_completion(self, engine, add_definition, handlers):
        handlers.add("work", {"ok": True})
        definition = add_definition(
            [start(), step("work", handler="work"), end()],
            [go("start", "work"), go("work", "end")],
        )

        result = await engine.execute(definition.id, ctx())

        metrics = result.execution.metrics
        assert metrics.steps_completed == 3
        assert metrics.steps_failed == 0
        assert result.execution.started_at <= result.execution.completed_at

    async def test_templates_in_parameters_are_resolved(self, engine, add_definition, handlers):
        handlers.add("charge")
        definition = add_definition(
            [start(), step("work", handler="charge", parameters={"total": "{{ amount * 2 }}"}), end()],
            [go("start", "work"), go("work", "end")],
        )

        await engine.execute(definition.id, ctx(amount=21))

        assert handlers.params("charge")[0]["total"] == 42

    async def test_set_variable_is_visible_to_routing(self, engine, add_definition):
        definition = add_definition(
            [
                step(
                    "start",
                    "Start",
                    isStartStep=True,
                    actions=[{"type": "setVariable", "parameters": {"variableName": "tier", "variableValue": "gold"}}],
                ),
                end("gold"),
                end("standard"),
            ],
            [
                go("start", "gold", condition=when("tier", "Equals", "gold")),
                go("start", "standard", type="Default"),
            ],
        )

        result = await engine.execute(definition.id, ctx())

        assert result.execution.variables["tier"] == "gold"
        assert result.execution.step_executions[-1].step_id == "gold"

    async def test_loop_guard_times_out(self, engine, add_definition):
        definition = add_definition(
            [start(), step("ping"), step("pong"), end()],
            [go("start", "ping"), go("ping", "pong"), go("pong", "ping")],
            configuration={"maxSteps": 10},
        )

        result = await engine.execute(definition.id, ctx())

        assert result.status == ExecutionStatus.TIMEOUT
        assert result.execution.error_code == ErrorCode.MAX_STEPS_EXCEEDED.value
        assert result.execution.steps_executed == 10

    async def test_dead_end_may_complete_when_configured(self, definitions, store, scheduler, handlers, sleeps):
        engine = WorkflowEngine(
            definitions=definitions,
            store=store,
            scheduler=scheduler,
            handlers=handlers.registry,
            settings=Settings(DEAD_END_IS_FATAL=False),
            sleep=sleeps,
        )
        definition = definitions.add(make_definition(
            [start(), step("work"), end()],
            [go("start", "work"), go("work", "end", condition=when("amount", "GreaterThan", 10))],
        ))

        result = await engine.execute(definition.id, ctx(amount=1))

        assert result.status == ExecutionStatus.COMPLETED

    async def test_background_execution(self, engine, add_definition):
        definition = add_definition([start(), end()], [go("start", "end")])

        result = await engine.execute(definition.id, ctx(), wait=False)
        assert result.status == ExecutionStatus.PENDING

        await engine.drain()
        final = await engine.get_execution(result.execution_id)
        assert final.status == ExecutionStatus.COMPLETED

    async def test_running_executions_are_listed_while_driven(self, engine, add_definition, handlers):
        seen = {}
        handlers.add_function("peek", lambda p, c: seen.update(engine.get_running_executions()))
        definition = add_definition(
            [start(), step("work", handler="peek"), end()],
            [go("start", "work"), go("work", "end")],
        )

        result = await engine.execute(definition.id, ctx())

        assert seen[result.execution_id]["current_steps"] == ["work"]
        assert engine.get_running_executions() == {}

    async def test_loop_step_repeats_body(self, engine, add_definition, handlers):
        handlers.add("body")
        definition = add_definition(
            [start(), step("loop", "Loop", parameters={"maxIterations": 3}), step("body", handler="body"), end()],
            [
                go("start", "loop"),
                go("loop", "body", condition=when("steps.loop.continue", "Equals", True)),
                go("loop", "end", type="Default"),
                go("body", "loop"),
            ],
        )

        result = await engine.execute(definition.id, ctx())

        assert result.status == ExecutionStatus.COMPLETED
        assert handlers.count("body") == 3


# ─── Routing ───

@pytest.mark.unit
class TestRouting:
    async def test_priority_then_declaration_order(self, engine, add_definition):
        definition = add_definition(
            [start(), end("low"), end("high"), end("tie")],
            [
                go("start", "low", priority=2, condition=when("amount", "GreaterThan", 0)),
                go("start", "high", priority=1, condition=when("amount", "GreaterThan", 0)),
                go("start", "tie", priority=1, condition=when("amount", "GreaterThan", 0)),
            ],
        )

        reached = set()
        for _ in range(3):
            result = await engine.execute(definition.id, ctx(amount=5))
            reached.add(result.execution.step_executions[-1].step_id)

        assert reached == {"high"}

    async def test_step_types_mark_start_and_end(self, engine, add_definition):
        definition = add_definition(
            [step("begin", "Start"), step("work"), step("finish", "End")],
            [go("begin", "work"), go("work", "finish")],
        )

        result = await engine.execute(definition.id, ctx())

        assert result.status == ExecutionStatus.COMPLETED
        assert [r.step_id for r in result.execution.step_executions] == ["begin", "work", "finish"]

    async def test_unflagged_end_type_completes(self, engine, add_definition):
        definition = add_definition([start(), step("finish", "End")], [go("start", "finish")])

        result = await engine.execute(definition.id, ctx())

        assert result.status == ExecutionStatus.COMPLETED
        assert result.execution.error_code is None

    async def test_exception_transition_handles_failure(self, engine, add_definition, handlers):
        handlers.add("broken", error="down")
        definition = add_definition(
            [start(), step("work", handler="broken"), step("fallback"), end()],
            [
                go("start", "work"),
                go("work", "end"),
                go("work", "fallback", type="Exception"),
                go("fallback", "end"),
            ],
        )

        result = await engine.execute(definition.id, ctx())

        assert result.status == ExecutionStatus.COMPLETED
        assert [r.step_id for r in result.execution.step_executions] == ["start", "work", "fallback", "end"]

    async def test_non_critical_step_continues(self, engine, add_definition, handlers):
        handlers.add("broken", error="down")
        definition = add_definition(
            [start(), step("work", handler="broken", continueOnError=True), end()],
            [go("start", "work"), go("work", "end")],
        )

        result = await engine.execute(definition.id, ctx())

        assert result.status == ExecutionStatus.COMPLETED
        assert records_for(result.execution, "work")[0].status == StepStatus.FAILED

    async def test_missing_handler_fails_execution(self, engine, add_definition):
        definition = add_definition(
            [start(), step("work", handler="nobody"), end()],
            [go("start", "work"), go("work", "end")],
        )

        result = await engine.execute(definition.id, ctx())

        assert result.status == ExecutionStatus.FAILED
        assert result.execution.error_code == ErrorCode.HANDLER_NOT_FOUND.value

    async def test_required_transition_action_failure(self, engine, add_definition, handlers):
        handlers.add("audit", error="audit store down")
        definition = add_definition(
            [start(), end()],
            [go("start", "end", actions=[
                {"id": "audit-1", "type": "Custom", "parameters": {"handler": "audit"}, "isRequired": True},
            ])],
        )

        result = await engine.execute(definition.id, ctx())

        assert result.status == ExecutionStatus.FAILED
        assert result.execution.error_code == ErrorCode.ACTION_FAILED.value
        action = records_for(result.execution, "start")[0].action_executions[0]
        assert action.action_id == "audit-1"
        assert action.transition_id == "start->end"

    async def test_best_effort_action_failure_is_ignored(self, engine, add_definition, handlers):
        handlers.add("audit", error="audit store down")
        definition = add_definition(
            [start(), end()],
            [go("start", "end", actions=[{"type": "Custom", "parameters": {"handler": "audit"}}])],
        )

        result = await engine.execute(definition.id, ctx())

        assert result.status == ExecutionStatus.COMPLETED


# ─── Operator controls ───

@pytest.mark.unit
class TestOperatorControls:
    async def test_cancel_waiting_execution(self, engine, add_definition):
        definition = approval_definition(add_definition)
        started = await engine.execute(definition.id, ctx())

        cancelled = await engine.cancel(started.execution_id)

        assert cancelled.success
        assert cancelled.status == ExecutionStatus.CANCELLED
        assert records_for(cancelled.execution, "approve")[0].status == StepStatus.CANCELLED
        assert all(not t.is_live for t in cancelled.execution.tokens)

    async def test_cancel_is_idempotent(self, engine, add_definition):
        definition = approval_definition(add_definition)
        started = await engine.execute(definition.id, ctx())

        await engine.cancel(started.execution_id)
        again = await engine.cancel(started.execution_id)

        assert again.success
        assert again.status == ExecutionStatus.CANCELLED

    async def test_cancel_finished_execution_is_rejected(self, engine, add_definition):
        definition = add_definition([start(), end()], [go("start", "end")])
        finished = await engine.execute(definition.id, ctx())

        result = await engine.cancel(finished.execution_id)

        assert not result.success
        assert result.error_code == ErrorCode.INVALID_STATE

    async def test_signal_errors(self, engine, add_definition):
        definition = approval_definition(add_definition)
        started = await engine.execute(definition.id, ctx())

        missing = await engine.signal("nope", "approve")
        assert missing.error_code == ErrorCode.NOT_FOUND

        not_waiting = await engine.signal(started.execution_id, "start")
        assert not_waiting.error_code == ErrorCode.STEP_NOT_WAITING

        await engine.cancel(started.execution_id)
        terminal = await engine.signal(started.execution_id, "approve")
        assert terminal.error_code == ErrorCode.INVALID_STATE

    async def test_suspend_and_resume(self, engine, add_definition):
        definition = approval_definition(add_definition)
        started = await engine.execute(definition.id, ctx())

        suspended = await engine.suspend(started.execution_id)
        assert suspended.status == ExecutionStatus.SUSPENDED

        # Signals are applied while suspended but routing waits
        signalled = await engine.signal(started.execution_id, "approve", {"approved": True})
        assert signalled.status == ExecutionStatus.SUSPENDED
        assert records_for(signalled.execution, "approve")[0].status == StepStatus.COMPLETED

        resumed = await engine.resume(started.execution_id)
        assert resumed.status == ExecutionStatus.COMPLETED

    async def test_resume_requires_suspended(self, engine, add_definition):
        definition = approval_definition(add_definition)
        started = await engine.execute(definition.id, ctx())

        result = await engine.resume(started.execution_id)

        assert not result.success
        assert result.error_code == ErrorCode.INVALID_STATE

    async def test_engine_result_to_dict(self, engine, add_definition):
        definition = approval_definition(add_definition)
        started = await engine.execute(definition.id, ctx())

        assert started.to_dict() == {
            "success": True,
            "execution_id": started.execution_id,
            "status": "running",
            "error_code": None,
            "message": "",
        }
        assert EngineResult.failure(ErrorCode.NOT_FOUND, "gone").to_dict()["error_code"] == "not_found"


# ─── Timers, escalation and timeouts ───

@pytest.mark.unit
class TestTimers:
    async def test_timer_step_waits_for_wake(self, engine, add_definition, scheduler):
        definition = add_definition(
            [start(), step("wait", "TimerTask", parameters={"duration": "01:00:00"}), end()],
            [go("start", "wait"), go("wait", "end")],
        )
        started = await engine.execute(definition.id, ctx())
        assert started.status == ExecutionStatus.RUNNING

        wakes = await scheduler.list_for_execution(started.execution_id)
        assert [w.kind for w in wakes] == [WakeKind.TIMER]

        assert await engine.process_due_wakes(utc_now()) == 0
        assert await engine.process_due_wakes(later()) == 1

        final = await engine.get_execution(started.execution_id)
        assert final.status == ExecutionStatus.COMPLETED
        assert "fired_at" in final.execution.step_outputs["wait"]

    async def test_elapsed_timer_completes_immediately(self, engine, add_definition):
        definition = add_definition(
            [start(), step("wait", "TimerTask", parameters={"until": "2000-01-01T00:00:00Z"}), end()],
            [go("start", "wait"), go("wait", "end")],
        )

        result = await engine.execute(definition.id, ctx())

        assert result.status == ExecutionStatus.COMPLETED

    async def test_execution_timeout(self, engine, add_definition):
        definition = approval_definition(add_definition, configuration={"defaultTimeout": 60})
        started = await engine.execute(definition.id, ctx())

        await engine.process_due_wakes(later(120))

        final = await engine.get_execution(started.execution_id)
        assert final.status == ExecutionStatus.TIMEOUT
        assert final.execution.error_code == ErrorCode.EXECUTION_TIMEOUT.value
        assert records_for(final.execution, "approve")[0].status == StepStatus.CANCELLED

    async def test_escalation_reassigns_and_repeats(self, engine, add_definition, handlers, scheduler):
        handlers.add("send_notification")
        definition = add_definition(
            [
                start(),
                step(
                    "approve",
                    "UserTask",
                    parameters={"assignee": "bob"},
                    configuration={"escalation": {
                        "isEnabled": True,
                        "duration": 60,
                        "escalateTo": "manager",
                        "repeatEscalation": True,
                        "repeatInterval": 60,
                        "actions": [{"type": "SendNotification", "parameters": {"to": "manager"}}],
                    }},
                ),
                end(),
            ],
            [go("start", "approve"), go("approve", "end")],
        )
        started = await engine.execute(definition.id, ctx())

        await engine.process_due_wakes(later(120))

        current = await engine.get_execution(started.execution_id)
        record = records_for(current.execution, "approve")[0]
        assert record.status == StepStatus.WAITING
        assert record.assigned_to == "manager"
        assert record.escalation_count == 1
        assert handlers.count("send_notification") == 1
        wakes = await scheduler.list_for_execution(started.execution_id)
        assert [w.kind for w in wakes] == [WakeKind.ESCALATION]

    @pytest.mark.parametrize("action,status", [
        ("Cancel", ExecutionStatus.TIMEOUT),
        ("Complete", ExecutionStatus.COMPLETED),
        ("Skip", ExecutionStatus.COMPLETED),
    ])
    async def test_user_task_timeout_actions(self, engine, add_definition, action, status):
        definition = add_definition(
            [
                start(),
                step("approve", "UserTask", parameters={"assignee": "bob"},
                     timeout={"isEnabled": True, "duration": 60, "action": action}),
                end(),
            ],
            [go("start", "approve"), go("approve", "end")],
        )
        started = await engine.execute(definition.id, ctx())

        await engine.process_due_wakes(later(120))

        final = await engine.get_execution(started.execution_id)
        assert final.status == status
        if action == "Cancel":
            assert final.execution.error_code == ErrorCode.STEP_TIMEOUT.value
            assert records_for(final.execution, "approve")[0].status == StepStatus.TIMEOUT
        if action == "Complete":
            assert final.execution.step_outputs["approve"] == {"timed_out": True}

    async def test_wake_survives_failed_fire(self, engine, add_definition, store, scheduler, monkeypatch):
        definition = add_definition(
            [
                start(),
                step("approve", "UserTask", parameters={"assignee": "bob"},
                     timeout={"isEnabled": True, "duration": 10, "action": "Cancel"}),
                end(),
            ],
            [go("start", "approve"), go("approve", "end")],
        )
        started = await engine.execute(definition.id, ctx())

        save = store.save
        failures = []

        async def failing_save(execution):
            if not failures:
                failures.append(execution.id)
                raise StorageError("database unavailable", execution_id=execution.id)
            await save(execution)

        monkeypatch.setattr(store, "save", failing_save)

        with pytest.raises(StorageError):
            await engine.process_due_wakes(later())

        assert failures == [started.execution_id]
        pending = await scheduler.list_for_execution(started.execution_id)
        assert [w.kind for w in pending] == [WakeKind.TIMEOUT]
        assert pending[0].claimed_until is None
        assert (await engine.get_execution(started.execution_id)).status == ExecutionStatus.RUNNING

        assert await engine.process_due_wakes(later()) == 1

        final = await engine.get_execution(started.execution_id)
        assert final.status == ExecutionStatus.TIMEOUT
        assert final.execution.error_code == ErrorCode.STEP_TIMEOUT.value
        assert await scheduler.list_for_execution(started.execution_id) == []

    async def test_refired_wake_after_completion_is_dropped(self, engine, add_definition, scheduler):
        definition = approval_definition(add_definition, configuration={"defaultTimeout": 60})
        started = await engine.execute(definition.id, ctx())
        wake = (await scheduler.list_for_execution(started.execution_id))[0]
        now = later(120)

        # Lease expired after a crash mid-fire; the execution already finished
        await scheduler.claim(wake.id, now, now)
        await engine.signal(started.execution_id, "approve", {"approved": True})

        assert await engine.process_due_wakes(now) == 1
        final = await engine.get_execution(started.execution_id)
        assert final.status == ExecutionStatus.COMPLETED
        assert await scheduler.list_for_execution(started.execution_id) == []

    async def test_timeout_go_to_step(self, engine, add_definition, handlers):
        handlers.add("timeout_audit")
        definition = add_definition(
            [
                start(),
                step("approve", "UserTask", parameters={"assignee": "bob"}, timeout={
                    "isEnabled": True,
                    "duration": 60,
                    "action": "GoToStep",
                    "nextStepId": "auto_approve",
                    "timeoutActions": [{"type": "Custom", "parameters": {"handler": "timeout_audit"}}],
                }),
                step("auto_approve"),
                end(),
            ],
            [go("start", "approve"), go("approve", "end"), go("auto_approve", "end")],
        )
        started = await engine.execute(definition.id, ctx())

        await engine.process_due_wakes(later(120))

        final = await engine.get_execution(started.execution_id)
        assert final.status == ExecutionStatus.COMPLETED
        assert [r.step_id for r in final.execution.step_executions] == ["start", "approve", "auto_approve", "end"]
        assert handlers.count("timeout_audit") == 1

    async def test_timeout_retry_is_bounded(self, engine, add_definition):
        definition = add_definition(
            [
                start(),
                step("approve", "UserTask", parameters={"assignee": "bob"},
                     timeout={"isEnabled": True, "duration": 60, "action": "Retry"},
                     retry={"maxAttempts": 2}),
                end(),
            ],
            [go("start", "approve"), go("approve", "end")],
        )
        started = await engine.execute(definition.id, ctx())

        await engine.process_due_wakes(later(120))
        retried = await engine.get_execution(started.execution_id)
        assert retried.status == ExecutionStatus.RUNNING
        assert [r.status for r in records_for(retried.execution, "approve")] == [StepStatus.TIMEOUT, StepStatus.WAITING]

        await engine.process_due_wakes(later(240))
        final = await engine.get_execution(started.execution_id)
        assert final.status == ExecutionStatus.TIMEOUT
        assert len(records_for(final.execution, "approve")) == 2

    async def test_slow_handler_times_out(self, engine, add_definition, handlers):
        async def slow(parameters, context):
            await asyncio.sleep(5)

        handlers.add_function("slow", slow)
        definition = add_definition(
            [start(), step("work", handler="slow", timeout={"isEnabled": True, "duration": 0.01, "action": "Skip"}), end()],
            [go("start", "work"), go("work", "end")],
        )

        result = await engine.execute(definition.id, ctx())

        assert result.status == ExecutionStatus.COMPLETED
        record = records_for(result.execution, "work")[0]
        assert record.status == StepStatus.SKIPPED
        assert record.error_code == ErrorCode.STEP_TIMEOUT.value


# ─── Parallel fork / join ───

@pytest.mark.unit
class TestParallel:
    def fork_definition(self, add_definition, first_branch, quorum=None):
        parameters = {"joinStepId": "join"}
        if quorum is not None:
            parameters["quorum"] = quorum
        return add_definition(
            [start(), step("fork", "Parallel", parameters=parameters), first_branch,
             step("auto", handler="auto"), step("join"), end()],
            [
                go("start", "fork"),
                go("fork", first_branch["id"]),
                go("fork", "auto"),
                go(first_branch["id"], "join"),
                go("auto", "join"),
                go("join", "end"),
            ],
            configuration={"isParallelExecutionEnabled": True},
        )

    async def test_all_branches_join(self, engine, add_definition, handlers):
        handlers.add("auto")
        handlers.add("manual")
        definition = self.fork_definition(add_definition, step("manual", handler="manual"))

        result = await engine.execute(definition.id, ctx())

        assert result.status == ExecutionStatus.COMPLETED
        assert handlers.count("auto") == 1
        assert handlers.count("manual") == 1
        assert len(records_for(result.execution, "join")) == 1
        assert result.execution.joins[0].fired

    async def test_join_waits_for_waiting_branch(self, engine, add_definition, handlers):
        handlers.add("auto")
        definition = self.fork_definition(add_definition, step("review", "UserTask", parameters={"assignee": "bob"}))

        started = await engine.execute(definition.id, ctx())
        assert started.status == ExecutionStatus.RUNNING
        assert records_for(started.execution, "join") == []

        final = await engine.signal(started.execution_id, "review", {"ok": True})
        assert final.status == ExecutionStatus.COMPLETED
        assert len(records_for(final.execution, "join")) == 1

    async def test_quorum_discards_late_branch(self, engine, add_definition, handlers):
        handlers.add("auto")
        definition = self.fork_definition(
            add_definition, step("review", "UserTask", parameters={"assignee": "bob"}), quorum=1,
        )

        result = await engine.execute(definition.id, ctx())

        assert result.status == ExecutionStatus.COMPLETED
        assert records_for(result.execution, "review")[0].status == StepStatus.CANCELLED
        statuses = {t.status for t in result.execution.tokens}
        assert TokenStatus.DISCARDED in statuses

    async def test_parallel_disabled_routes_sequentially(self, engine, add_definition, handlers):
        handlers.add("auto")
        handlers.add("manual")
        definition = self.fork_definition(add_definition, step("manual", handler="manual"))
        definition.configuration.is_parallel_execution_enabled = False

        result = await engine.execute(definition.id, ctx())

        assert result.status == ExecutionStatus.COMPLETED
        assert handlers.count("manual") == 1
        assert handlers.count("auto") == 0


# ─── Sub-workflows ───

@pytest.mark.unit
class TestSubWorkflow:
    def parent_definition(self, add_definition, child_id):
        return add_definition(
            [
                start(),
                step("child", "SubWorkflow", parameters={"definitionId": child_id},
                     configuration={"outputMapping": {"child_score": "score"}}),
                end(),
            ],
            [go("start", "child"), go("child", "end")],
        )

    async def test_child_output_flows_to_parent(self, engine, add_definition, handlers, store):
        handlers.add("score", {"score": 7})
        child = add_definition(
            [start(), step("work", handler="score", configuration={"outputMapping": {"score": "score"}}), end()],
            [go("start", "work"), go("work", "end")],
        )
        parent = self.parent_definition(add_definition, child.id)

        result = await engine.execute(parent.id, ctx(customer="acme"))

        assert result.status == ExecutionStatus.COMPLETED
        assert result.execution.variables["child_score"] == 7
        child_id = result.execution.step_outputs["child"]["child_execution_id"]
        child_execution = await store.load(child_id)
        assert child_execution.parent_execution_id == result.execution_id
        assert child_execution.variables["customer"] == "acme"
        assert child_execution.context.source == "sub_workflow"

    async def test_waiting_child_resumes_parent(self, engine, add_definition):
        child = approval_definition(add_definition)
        parent = self.parent_definition(add_definition, child.id)

        started = await engine.execute(parent.id, ctx())
        assert started.status == ExecutionStatus.RUNNING
        child_id = records_for(started.execution, "child")[0].output_data["child_execution_id"]

        await engine.signal(child_id, "approve", {"approved": True})

        final = await engine.get_execution(started.execution_id)
        assert final.status == ExecutionStatus.COMPLETED
        assert final.execution.step_outputs["child"]["child_execution_id"] == child_id
        assert (await engine.get_execution(child_id)).status == ExecutionStatus.COMPLETED

    async def test_failed_child_fails_parent(self, engine, add_definition, handlers):
        handlers.add("broken", error="nope")
        child = add_definition(
            [start(), step("work", handler="broken"), end()],
            [go("start", "work"), go("work", "end")],
        )
        parent = self.parent_definition(add_definition, child.id)

        result = await engine.execute(parent.id, ctx())

        assert result.status == ExecutionStatus.FAILED
        assert result.execution.failed_step_id == "child"
        assert result.execution.error_code == ErrorCode.HANDLER_EXECUTION_FAILED.value

    async def test_cancelling_parent_cancels_child(self, engine, add_definition):
        child = approval_definition(add_definition)
        parent = self.parent_definition(add_definition, child.id)
        started = await engine.execute(parent.id, ctx())
        child_id = records_for(started.execution, "child")[0].output_data["child_execution_id"]

        await engine.cancel(started.execution_id)

        child_execution = await engine.get_execution(child_id)
        assert child_execution.status == ExecutionStatus.CANCELLED


# ─── Ownership and concurrency slots ───

@pytest.mark.unit
class TestOwnership:
    async def test_execution_locks_are_dropped_when_released(self, engine, add_definition):
        definition = add_definition([start(), end()], [go("start", "end")])

        for _ in range(50):
            result = await engine.execute(definition.id, ctx())
            assert result.status == ExecutionStatus.COMPLETED

        assert engine._locks == {}

    async def test_concurrent_signals_leave_no_lock_behind(self, engine, add_definition):
        definition = approval_definition(add_definition)
        started = await engine.execute(definition.id, ctx())
        assert engine._locks == {}

        results = await asyncio.gather(
            engine.signal(started.execution_id, "approve", {"approved": True}),
            engine.signal(started.execution_id, "approve", {"approved": False}),
        )

        assert sorted(r.success for r in results) == [False, True]
        assert engine._locks == {}

    async def test_definition_limit_applies_after_restart(
        self, engine, add_definition, definitions, store, scheduler, handlers, sleeps
    ):
        definition = approval_definition(add_definition, configuration={"maxConcurrentExecutions": 1})
        first = await engine.execute(definition.id, ctx())
        second = await engine.execute(definition.id, ctx())
        restarted = WorkflowEngine(
            definitions=definitions,
            store=store,
            scheduler=scheduler,
            handlers=handlers.registry,
            sleep=sleeps,
        )
        assert restarted._definition_slots == {}

        done = await restarted.signal(first.execution_id, "approve", {"approved": True})
        assert done.status == ExecutionStatus.COMPLETED

        slot = restarted._definition_slots[definition.id]
        await slot.acquire()
        blocked = asyncio.create_task(restarted.signal(second.execution_id, "approve", {"approved": True}))
        await asyncio.sleep(0.01)
        assert not blocked.done()

        slot.release()
        assert (await blocked).status == ExecutionStatus.COMPLETED

    async def test_unlimited_definition_has_no_slot(self, engine, add_definition):
        definition = add_definition([start(), end()], [go("start", "end")])

        await engine.execute(definition.id, ctx())

        assert definition.id not in engine._definition_slots


# ─── Notifications, history and metrics ───

@pytest.mark.unit
class TestLifecycle:
    async def test_notifications_follow_subscribed_events(self, engine, add_definition, handlers):
        handlers.add("send_notification")
        definition = add_definition(
            [start(), end()],
            [go("start", "end")],
            configuration={"notification": {
                "isEnabled": True,
                "events": ["Started", "Completed"],
                "recipients": ["ops@example.com"],
            }},
        )

        await engine.execute(definition.id, ctx())

        events = [p["event"] for p in handlers.params("send_notification")]
        assert events == ["started", "completed"]
        assert handlers.params("send_notification")[0]["recipients"] == ["ops@example.com"]

    async def test_notification_failures_are_best_effort(self, engine, add_definition, handlers):
        handlers.add("send_notification", error="smtp down")
        definition = add_definition(
            [start(), end()],
            [go("start", "end")],
            configuration={"notification": {"isEnabled": True, "events": ["Completed"]}},
        )

        result = await engine.execute(definition.id, ctx())

        assert result.status == ExecutionStatus.COMPLETED

    async def test_history_and_metrics(self, engine, add_definition):
        definition = add_definition(
            [start(), step("work"), end()],
            [go("start", "work"), go("work", "end", condition=when("ok", "Equals", True))],
        )
        await engine.execute(definition.id, ctx(ok=True))
        await engine.execute(definition.id, ctx(ok=False))

        history = await engine.get_execution_history(definition.id)
        metrics = await engine.get_metrics(definition.id)

        assert len(history) == 2
        assert metrics["total_executions"] == 2
        assert metrics["by_status"]["completed"] == 1
        assert metrics["by_status"]["failed"] == 1
        assert metrics["success_rate"] == 0.5

    async def test_publish_marks_valid_definition(self, engine, add_definition, definitions):
        definition = add_definition([start(), end()], [go("start", "end")], status="Draft")

        result = await engine.publish(definition.id)

        assert result.is_valid
        assert (await definitions.get(definition.id)).status.value == "published"

    async def test_validate_unknown_definition(self, engine):
        result = await engine.validate("missing")
        assert result.error_codes == ["DEFINITION_NOT_FOUND"]


# ─── Recovery ───

@pytest.mark.unit
class TestRecovery:
    async def test_interrupted_step_is_re_executed(self, engine, add_definition, handlers, store):
        handlers.add("work")
        definition = add_definition(
            [start(), step("work", handler="work"), end()],
            [go("start", "work"), go("work", "end")],
        )
        token = ExecutionToken(current_step_id="work")
        execution = WorkflowExecution(
            workflow_id=definition.id,
            status=ExecutionStatus.RUNNING,
            started_at=utc_now(),
            tokens=[token],
            step_executions=[StepExecution(step_id="work", status=StepStatus.RUNNING, token_id=token.id)],
        )
        await store.save(execution)

        results = await RecoveryService(engine).recover_all()

        assert [r.recovered for r in results] == [True]
        final = await engine.get_execution(execution.id)
        assert final.status == ExecutionStatus.COMPLETED
        assert records_for(final.execution, "work")[0].status == StepStatus.CANCELLED
        assert handlers.count("work") == 1

    async def test_finished_step_is_routed_not_repeated(self, engine, add_definition, handlers, store):
        handlers.add("work")
        definition = add_definition(
            [start(), step("work", handler="work"), end()],
            [go("start", "work"), go("work", "end")],
        )
        record = StepExecution(step_id="work", status=StepStatus.COMPLETED)
        token = ExecutionToken(current_step_id="work", pending_record_id=record.id)
        record.token_id = token.id
        execution = WorkflowExecution(
            workflow_id=definition.id,
            status=ExecutionStatus.RUNNING,
            started_at=utc_now(),
            tokens=[token],
            step_executions=[record],
        )
        await store.save(execution)

        await RecoveryService(engine).recover_all()

        final = await engine.get_execution(execution.id)
        assert final.status == ExecutionStatus.COMPLETED
        assert handlers.count("work") == 0

    async def test_parked_executions_are_left_alone(self, engine, add_definition):
        definition = approval_definition(add_definition)
        started = await engine.execute(definition.id, ctx())

        service = RecoveryService(engine)
        results = await service.recover_all()

        assert results == []
        assert (await engine.get_execution(started.execution_id)).status == ExecutionStatus.RUNNING
