"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- In-memory async SQLite database (no server needed for tests)
- A recording handler registry (no built-in handlers, every call captured)
- A WorkflowEngine wired to in-memory stores and an instant sleep
- Definition builders
"""

import os
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

from core.logging_config import setup_logging  # noqa: E402
from db.database import close_db, create_db_engine, create_session_factory, init_db  # noqa: E402
from tasks.base_task import HandlerResult  # noqa: E402
from tasks.registry import HandlerRegistry  # noqa: E402
from workflow.engine import WorkflowEngine  # noqa: E402
from workflow.models import WorkflowDefinition  # noqa: E402
from workflow.persistence import InMemoryDefinitionStore, InMemoryExecutionStore  # noqa: E402
from workflow.scheduler import InMemoryScheduler  # noqa: E402


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    setup_logging("DEBUG")


@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database per test."""
    engine = create_db_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    await init_db(engine)

    yield engine

    await close_db(engine)


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


# ---------------------------------------------------------------------------
# Handler fixtures
# ---------------------------------------------------------------------------

class RecordingHandlers:
    """Handler registry whose handlers record every invocation."""

    def __init__(self):
        self.registry = HandlerRegistry(include_builtins=False)
        self.calls: List[tuple] = []

    def add(self, tag: str, output: Optional[Dict[str, Any]] = None, error: Optional[str] = None):
        """Register ``tag`` returning ``output``, or failing with ``error``."""
        def handler(parameters, context):
            self.calls.append((tag, parameters, context))
            if error:
                return HandlerResult.fail(error)
            return dict(output or {})

        self.registry.register_function(tag, handler)

    def add_sequence(self, tag: str, results: List[Any]):
        """Register ``tag`` returning ``results`` in turn (the last one repeats)."""
        def handler(parameters, context):
            self.calls.append((tag, parameters, context))
            index = min(self.count(tag) - 1, len(results) - 1)
            return results[index]

        self.registry.register_function(tag, handler)

    def add_function(self, tag: str, func):
        def handler(parameters, context):
            self.calls.append((tag, parameters, context))
            return func(parameters, context)

        self.registry.register_function(tag, handler)

    def count(self, tag: str) -> int:
        return sum(1 for call in self.calls if call[0] == tag)

    def params(self, tag: str) -> List[Dict[str, Any]]:
        return [call[1] for call in self.calls if call[0] == tag]


@pytest.fixture
def handlers() -> RecordingHandlers:
    return RecordingHandlers()


class SleepRecorder:
    """Instant replacement for asyncio.sleep that remembers requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def definitions() -> InMemoryDefinitionStore:
    return InMemoryDefinitionStore()


@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def scheduler() -> InMemoryScheduler:
    return InMemoryScheduler()


@pytest.fixture
def engine(definitions, store, scheduler, handlers, sleeps) -> WorkflowEngine:
    return WorkflowEngine(
        definitions=definitions,
        store=store,
        scheduler=scheduler,
        handlers=handlers.registry,
        sleep=sleeps,
    )


# ---------------------------------------------------------------------------
# Definition builders
# ---------------------------------------------------------------------------

def step(step_id: str, type_: str = "Task", **fields: Any) -> Dict[str, Any]:
    """Step document; ``handler``/``parameters`` go into the configuration."""
    configuration = dict(fields.pop("configuration", {}))
    if "handler" in fields:
        configuration["handler"] = fields.pop("handler")
    if "parameters" in fields:
        configuration["parameters"] = fields.pop("parameters")
    return {"id": step_id, "name": step_id.replace("_", " ").title(), "type": type_, "configuration": configuration, **fields}


def start(step_id: str = "start") -> Dict[str, Any]:
    return step(step_id, "Start", isStartStep=True)


def end(step_id: str = "end") -> Dict[str, Any]:
    return step(step_id, "End", isEndStep=True)


def go(from_id: str, to_id: str, **fields: Any) -> Dict[str, Any]:
    return {"id": f"{from_id}->{to_id}", "fromStepId": from_id, "toStepId": to_id, **fields}


def when(variable: str, operator: str, value: Any = None) -> Dict[str, Any]:
    return {"variable": variable, "operator": operator, "value": value}


def make_definition(
    steps: List[Dict[str, Any]],
    transitions: List[Dict[str, Any]],
    **fields: Any,
) -> WorkflowDefinition:
    document = {
        "name": "Test Process",
        "tenantId": "tenant-1",
        "status": "Active",
        "steps": steps,
        "transitions": transitions,
        "security": {"allowedRoles": ["Operator"]},
        **fields,
    }
    return WorkflowDefinition.model_validate(document)


@pytest.fixture
def add_definition(definitions):
    """Build a definition and register it with the engine's definition store."""
    def _add(steps, transitions, **fields) -> WorkflowDefinition:
        return definitions.add(make_definition(steps, transitions, **fields))

    return _add
