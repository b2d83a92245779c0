"""Structured logging for the workflow engine.

Every engine log line is a structlog event. Execution-scoped fields
(execution id, definition id, tenant) are carried through contextvars so
handlers and stores log them without having the execution passed in.
"""

import logging
import sys
from typing import Optional

import structlog
from app.config import get_settings


def setup_logging(level: Optional[str] = None) -> None:
    """Configure structlog and route stdlib logging through it.

    Console rendering in development or when LOG_FORMAT is "text",
    JSON lines otherwise.
    """
    settings = get_settings()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.LOG_FORMAT == "text" or settings.is_development:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    level = level or ("DEBUG" if settings.DEBUG else settings.LOG_LEVEL)
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # Third-party noise
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if settings.SQLALCHEMY_ECHO else logging.WARNING
    )
    for name in ("httpx", "httpcore", "aiosqlite"):
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        level=level.upper(),
    )


def execution_log_context(
    execution_id: str,
    definition_id: str,
    tenant_id: Optional[str] = None,
):
    """Attach execution identifiers to every log line inside a ``with`` block.

    Previous values are restored on exit, so a sub-workflow run nested
    inside its parent's run leaves the parent's fields intact.
    """
    return structlog.contextvars.bound_contextvars(
        execution_id=execution_id,
        definition_id=definition_id,
        tenant_id=tenant_id,
    )
