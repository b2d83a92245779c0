"""
Handler Registry: dispatch table from handler tags to implementations.

The engine never resolves handlers by reflection; steps and actions name
a stable tag ("service_call", "script", "send_notification", ...) and the
registry maps it to a BaseHandler. Hosts register their own handlers for
delivery concerns the engine does not own (email, notifications, data
updates, custom integrations).
"""

from typing import Any, Dict, Optional

import structlog

from core.exceptions import HandlerNotFoundError
from tasks.base_task import BaseHandler, FunctionHandler, HandlerCallable, HandlerResult
from tasks.implementations.http_task import HTTP_HANDLER_TYPES
from tasks.implementations.script_task import SCRIPT_HANDLER_TYPES

logger = structlog.get_logger(__name__)


class HandlerRegistry:
    """Central registry for handler implementations."""

    def __init__(self, include_builtins: bool = True):
        self._handlers: Dict[str, BaseHandler] = {}
        if include_builtins:
            self._register_builtin_handlers()

    def _register_builtin_handlers(self):
        """Register the built-in handler types."""
        # HTTP service calls and webhooks
        for handler_type, handler_class in HTTP_HANDLER_TYPES.items():
            self.register(handler_type, handler_class())

        # Script execution
        for handler_type, handler_class in SCRIPT_HANDLER_TYPES.items():
            self.register(handler_type, handler_class())

    def register(self, handler_type: str, handler: BaseHandler) -> None:
        """Register (or replace) a handler under ``handler_type``."""
        self._handlers[handler_type] = handler

    def register_function(self, handler_type: str, func: HandlerCallable) -> FunctionHandler:
        """Register a plain callable ``func(parameters, context)`` as a handler."""
        handler = FunctionHandler(func, handler_type=handler_type)
        self.register(handler_type, handler)
        return handler

    def unregister(self, handler_type: str) -> None:
        self._handlers.pop(handler_type, None)

    def get(self, handler_type: str) -> Optional[BaseHandler]:
        return self._handlers.get(handler_type)

    def has(self, handler_type: str) -> bool:
        return handler_type in self._handlers

    async def invoke(
        self,
        handler_type: str,
        parameters: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> HandlerResult:
        """Invoke the handler registered under ``handler_type``.

        Raises:
            HandlerNotFoundError: If no handler is registered for the tag.
        """
        handler = self.get(handler_type)
        if handler is None:
            raise HandlerNotFoundError(f"No handler registered for '{handler_type}'", handler=handler_type)
        return await handler.run(parameters, context or {})

    def list_all(self) -> list:
        """List registered handlers with metadata."""
        return [
            {
                "handler_type": handler_type,
                "display_name": handler.display_name,
                "description": handler.description,
            }
            for handler_type, handler in self._handlers.items()
        ]

    @property
    def available_types(self) -> list:
        return list(self._handlers.keys())


# Singleton
_registry: Optional[HandlerRegistry] = None


def get_handler_registry() -> HandlerRegistry:
    """Get or create the singleton handler registry."""
    global _registry
    if _registry is None:
        _registry = HandlerRegistry()
    return _registry
