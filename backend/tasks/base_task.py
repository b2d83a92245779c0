"""
Base handler interface for step and action handlers.

Every external capability the engine invokes (service calls, scripts,
emails, notifications, webhooks, custom host code) is a handler
registered under a string tag. Handlers subclass BaseHandler and
implement execute(); hosts may also register plain callables through
FunctionHandler.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import structlog

logger = structlog.get_logger(__name__)


class HandlerResult:
    """Standardized result from handler invocation."""

    def __init__(
        self,
        success: bool,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        duration_ms: float = 0,
    ):
        self.success = success
        self.output = output if output is not None else {}
        self.error = error
        self.error_type = error_type
        self.metadata = metadata or {}
        self.duration_ms = duration_ms
        self.timestamp = datetime.now(timezone.utc)

    @classmethod
    def ok(cls, output: Optional[Dict[str, Any]] = None, **metadata: Any) -> "HandlerResult":
        return cls(success=True, output=output, metadata=metadata)

    @classmethod
    def fail(cls, error: str, error_type: str = "HandlerError", output: Optional[Dict[str, Any]] = None) -> "HandlerResult":
        return cls(success=False, output=output, error=error, error_type=error_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "error_type": self.error_type,
            "metadata": self.metadata,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }


class BaseHandler(ABC):
    """
    Abstract base class for handler implementations.

    Subclasses must implement:
    - execute(parameters, context) -> HandlerResult
    - handler_type (class attribute)
    - display_name (class attribute)
    """

    handler_type: str = "base"
    display_name: str = "Base Handler"
    description: str = "Abstract base handler"

    @abstractmethod
    async def execute(
        self,
        parameters: Dict[str, Any],
        context: Dict[str, Any],
    ) -> HandlerResult:
        """
        Execute the handler.

        Args:
            parameters: Resolved step or action parameters
            context: Execution context (execution_id, step_id, tenant_id, variables)

        Returns:
            HandlerResult with output or error
        """

    async def run(
        self,
        parameters: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> HandlerResult:
        """
        Run the handler with timing and error capture.

        This is the entry point the engine calls. Exceptions raised by
        execute() become failed results carrying the exception type name,
        except cancellation which propagates.
        """
        start = time.monotonic()
        try:
            result = await self.execute(parameters, context or {})
            if not isinstance(result, HandlerResult):
                result = HandlerResult.ok(result if isinstance(result, dict) else {"result": result})
            result.duration_ms = (time.monotonic() - start) * 1000
            logger.debug(
                "handler_completed",
                handler_type=self.handler_type,
                success=result.success,
                duration_ms=round(result.duration_ms, 2),
            )
            return result

        except asyncio.CancelledError:
            raise
        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            logger.warning(
                "handler_raised",
                handler_type=self.handler_type,
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round(duration_ms, 2),
            )
            return HandlerResult(
                success=False,
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
                duration_ms=duration_ms,
            )


HandlerCallable = Callable[[Dict[str, Any], Dict[str, Any]], Union[Any, Awaitable[Any]]]


class FunctionHandler(BaseHandler):
    """Adapts a plain sync or async callable ``func(parameters, context)``.

    The callable may return a HandlerResult, a dict (taken as output) or
    any other value (wrapped as ``{"result": value}``); raising marks
    the invocation failed.
    """

    def __init__(self, func: HandlerCallable, handler_type: str = "function", display_name: str = ""):
        self.func = func
        self.handler_type = handler_type
        self.display_name = display_name or handler_type

    async def execute(self, parameters: Dict[str, Any], context: Dict[str, Any]) -> HandlerResult:
        outcome = self.func(parameters, context)
        if asyncio.iscoroutine(outcome):
            outcome = await outcome
        if isinstance(outcome, HandlerResult):
            return outcome
        if outcome is None:
            return HandlerResult.ok()
        if isinstance(outcome, dict):
            return HandlerResult.ok(outcome)
        return HandlerResult.ok({"result": outcome})
