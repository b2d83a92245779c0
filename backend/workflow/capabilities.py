"""
Capability interfaces the engine consumes but does not implement.

The host supplies these at engine construction:
- Handler invocation: ``tasks.registry.HandlerRegistry``
- Assignment resolution: ``AssignmentResolver``
- Expression evaluation: ``ExpressionEvaluator``
- Persistence: ``workflow.persistence.ExecutionStore``
- Clock/scheduler: ``workflow.scheduler.Scheduler``
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class ExpressionEvaluator(ABC):
    """Evaluates script/expression bodies for conditions and templates."""

    @abstractmethod
    def evaluate(self, expression: str, language: str, scope: Dict[str, Any]) -> Any:
        """Return the value of ``expression`` in ``scope``.

        Raises:
            ConditionEvaluationError: When the expression cannot be evaluated.
        """


class AssignmentResolver(ABC):
    """Determines the principal a user task is assigned to."""

    @abstractmethod
    async def resolve(self, policy: Any, scope: Dict[str, Any]) -> Optional[str]:
        """Return a principal id, or None when nobody can be determined.

        May raise ``AssignmentUnresolvedError`` to explain why.
        """
