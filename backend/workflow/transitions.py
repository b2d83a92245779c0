"""Transition resolution.

Given the step a token has just finished, picks the next step:

1. Outgoing transitions (Exception transitions excluded) are ordered by
   ``priority`` ascending, declaration order breaking ties.
2. The first conditional transition whose condition holds wins.
3. Otherwise the first Default (or unconditional) transition wins.
4. Otherwise there is no next step: a dead end.

The winning transition's actions run exactly once per traversal and are
recorded on the source step's execution record.
"""

from typing import List, Optional

import structlog

from core.constants import TransitionType
from core.exceptions import ActionFailedError
from workflow.actions import ActionExecutor, execution_scope, failed_required
from workflow.conditions import ConditionEvaluator
from workflow.models import (
    StepExecution,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStep,
    WorkflowTransition,
)

logger = structlog.get_logger(__name__)


def _ordered(transitions: List[WorkflowTransition]) -> List[WorkflowTransition]:
    indexed = list(enumerate(transitions))
    indexed.sort(key=lambda item: (item[1].priority, item[0]))
    return [t for _, t in indexed]


def _is_fallback(transition: WorkflowTransition) -> bool:
    return transition.type == TransitionType.DEFAULT or transition.condition is None


class TransitionResolver:
    """Chooses outgoing transitions for a finished step."""

    def __init__(self, conditions: ConditionEvaluator, actions: ActionExecutor):
        self.conditions = conditions
        self.actions = actions

    def candidates(self, step: WorkflowStep, definition: WorkflowDefinition) -> List[WorkflowTransition]:
        """Normal (non-Exception) outgoing transitions in evaluation order."""
        return _ordered([
            t for t in definition.outgoing(step.id)
            if t.type != TransitionType.EXCEPTION
        ])

    def select(
        self,
        step: WorkflowStep,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
    ) -> Optional[WorkflowTransition]:
        ordered = self.candidates(step, definition)
        scope = execution_scope(execution)

        for transition in ordered:
            if _is_fallback(transition):
                continue
            if self.conditions.evaluate(transition.condition, scope):
                return transition

        for transition in ordered:
            if _is_fallback(transition):
                return transition
        return None

    def select_all(
        self,
        step: WorkflowStep,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
    ) -> List[WorkflowTransition]:
        """Every transition a parallel fork should follow."""
        scope = execution_scope(execution)
        return [
            t for t in self.candidates(step, definition)
            if t.condition is None or self.conditions.evaluate(t.condition, scope)
        ]

    def select_exception(self, step: WorkflowStep, definition: WorkflowDefinition) -> Optional[WorkflowTransition]:
        """First Exception transition leaving ``step``, by priority."""
        exceptions = [t for t in definition.outgoing(step.id) if t.type == TransitionType.EXCEPTION]
        ordered = _ordered(exceptions)
        return ordered[0] if ordered else None

    async def take(
        self,
        transition: WorkflowTransition,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        source_record: Optional[StepExecution] = None,
    ) -> Optional[WorkflowStep]:
        """Run the transition's actions and return its target step.

        Raises:
            ActionFailedError: If a required transition action fails.
        """
        if transition.actions:
            records = await self.actions.execute_all(
                transition.actions,
                execution,
                definition,
                step_execution=source_record,
                transition_id=transition.id,
            )
            failed = failed_required(records)
            if failed is not None:
                raise ActionFailedError(
                    f"Required action '{failed.action_id}' on transition '{transition.id}' failed: "
                    f"{failed.error_message}",
                    transition_id=transition.id,
                    action_id=failed.action_id,
                    attempts=failed.attempts,
                )

        target = definition.get_step(transition.to_step_id)
        logger.info(
            "transition_taken",
            transition_id=transition.id,
            from_step=transition.from_step_id,
            to_step=transition.to_step_id,
        )
        return target

    async def resolve(
        self,
        step: WorkflowStep,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        source_record: Optional[StepExecution] = None,
    ) -> Optional[WorkflowStep]:
        """Select and take the next transition; None on a dead end."""
        transition = self.select(step, execution, definition)
        if transition is None:
            logger.info("dead_end", step_id=step.id)
            return None
        return await self.take(transition, execution, definition, source_record)
