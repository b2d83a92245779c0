"""Default user-task assignment resolution."""

from typing import Any, Dict, Optional

import structlog

from core.constants import AssignmentType
from core.exceptions import ConditionEvaluationError
from workflow.capabilities import AssignmentResolver, ExpressionEvaluator
from workflow.conditions import SafeExpressionEvaluator, resolve_templates

logger = structlog.get_logger(__name__)

_PREFIXES = {
    AssignmentType.ROLE: "role:",
    AssignmentType.GROUP: "group:",
}


class DefaultAssignmentResolver(AssignmentResolver):
    """
    Resolves assignment policies without any directory lookup.

    - User: the assignee as written
    - Role / Group: the assignee, prefixed ``role:`` / ``group:`` unless it
      already carries a prefix
    - Expression: the value of ``assignment_rule``
    - Service / Auto: the ``fallback`` resolver if given, else the first
      candidate, else the assignee
    """

    def __init__(
        self,
        expression_evaluator: Optional[ExpressionEvaluator] = None,
        fallback: Optional[AssignmentResolver] = None,
    ):
        self.expression_evaluator = expression_evaluator or SafeExpressionEvaluator()
        self.fallback = fallback

    async def resolve(self, policy: Any, scope: Dict[str, Any]) -> Optional[str]:
        if policy is None:
            return None

        assignee = resolve_templates(policy.assignee or "", scope, self.expression_evaluator)
        assignee = str(assignee).strip() if assignee is not None else ""

        if policy.type == AssignmentType.USER:
            return assignee or None

        if policy.type in _PREFIXES:
            if not assignee:
                return None
            return assignee if ":" in assignee else f"{_PREFIXES[policy.type]}{assignee}"

        if policy.type == AssignmentType.EXPRESSION:
            rule = policy.assignment_rule or assignee
            if not rule:
                return None
            try:
                value = self.expression_evaluator.evaluate(rule, "expression", scope)
            except ConditionEvaluationError as e:
                logger.warning("assignment_rule_failed", rule=rule, error=e.message)
                return None
            return str(value) if value not in (None, "") else None

        # Service / Auto
        if self.fallback is not None:
            resolved = await self.fallback.resolve(policy, scope)
            if resolved:
                return resolved
        if policy.candidates:
            return str(policy.candidates[0])
        return assignee or None
