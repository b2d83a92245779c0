"""
Execution and definition persistence.

The engine snapshots an execution after every step boundary and state
change, so a crash loses at most the step that was in flight:
- Before routing: the finished step record is saved with the token
  still pointing at it (``pending_record_id``)
- After routing / parking: the new position is saved
- On restart: RecoveryService loads Running executions and resumes them

Two stores are provided: an in-memory one (tests, embedded use) and a
SQLAlchemy one (``workflow_executions`` table). Storage failures surface
as ``StorageError``.
"""

import copy
import json
from abc import ABC, abstractmethod
from datetime import timezone
from typing import Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from core.constants import ExecutionStatus
from core.exceptions import StorageError
from db.models.execution_state import WorkflowExecutionModel
from workflow.models import WorkflowDefinition, WorkflowExecution

logger = structlog.get_logger(__name__)


class ExecutionStore(ABC):
    """Save/Load contract for execution snapshots."""

    @abstractmethod
    async def save(self, execution: WorkflowExecution) -> None:
        ...

    @abstractmethod
    async def load(self, execution_id: str) -> Optional[WorkflowExecution]:
        ...

    @abstractmethod
    async def list_by_workflow(self, workflow_id: str, limit: int = 50) -> List[WorkflowExecution]:
        """Most recent first."""

    @abstractmethod
    async def list_by_status(self, status: ExecutionStatus) -> List[WorkflowExecution]:
        ...


class InMemoryExecutionStore(ExecutionStore):
    """Keeps JSON snapshots in a dict; loads return fresh copies."""

    def __init__(self):
        self._snapshots: Dict[str, str] = {}
        self.save_count = 0

    async def save(self, execution: WorkflowExecution) -> None:
        self._snapshots[execution.id] = json.dumps(execution.to_dict())
        self.save_count += 1

    async def load(self, execution_id: str) -> Optional[WorkflowExecution]:
        raw = self._snapshots.get(execution_id)
        if raw is None:
            return None
        return WorkflowExecution.from_dict(json.loads(raw))

    async def list_by_workflow(self, workflow_id: str, limit: int = 50) -> List[WorkflowExecution]:
        executions = [
            WorkflowExecution.from_dict(json.loads(raw)) for raw in self._snapshots.values()
        ]
        matching = [e for e in executions if e.workflow_id == workflow_id]
        matching.sort(key=lambda e: e.started_at.timestamp() if e.started_at else 0, reverse=True)
        return matching[:limit]

    async def list_by_status(self, status: ExecutionStatus) -> List[WorkflowExecution]:
        executions = [
            WorkflowExecution.from_dict(json.loads(raw)) for raw in self._snapshots.values()
        ]
        return [e for e in executions if e.status == status]


class SQLAlchemyExecutionStore(ExecutionStore):
    """Persists snapshots to the ``workflow_executions`` table."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def save(self, execution: WorkflowExecution) -> None:
        started_at = execution.started_at
        if started_at is not None:
            started_at = started_at.astimezone(timezone.utc).replace(tzinfo=None)
        row = WorkflowExecutionModel(
            id=execution.id,
            workflow_id=execution.workflow_id,
            tenant_id=execution.context.tenant_id or None,
            status=execution.status.value,
            parent_execution_id=execution.parent_execution_id,
            started_at=started_at,
            state_data=execution.to_dict(),
        )
        try:
            async with self.session_factory() as session:
                await session.merge(row)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("execution_save_failed", execution_id=execution.id, error=str(e))
            raise StorageError(f"Failed to save execution {execution.id}: {e}", execution_id=execution.id) from e

    async def load(self, execution_id: str) -> Optional[WorkflowExecution]:
        try:
            async with self.session_factory() as session:
                row = await session.get(WorkflowExecutionModel, execution_id)
                if row is None:
                    return None
                return WorkflowExecution.from_dict(copy.deepcopy(row.state_data))
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load execution {execution_id}: {e}", execution_id=execution_id) from e

    async def list_by_workflow(self, workflow_id: str, limit: int = 50) -> List[WorkflowExecution]:
        stmt = (
            select(WorkflowExecutionModel)
            .where(WorkflowExecutionModel.workflow_id == workflow_id)
            .order_by(WorkflowExecutionModel.started_at.desc())
            .limit(limit)
        )
        return await self._query(stmt)

    async def list_by_status(self, status: ExecutionStatus) -> List[WorkflowExecution]:
        stmt = select(WorkflowExecutionModel).where(WorkflowExecutionModel.status == status.value)
        return await self._query(stmt)

    async def _query(self, stmt) -> List[WorkflowExecution]:
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [WorkflowExecution.from_dict(copy.deepcopy(r.state_data)) for r in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Execution query failed: {e}") from e


class DefinitionStore(ABC):
    """Read access to published definitions (owned outside the engine)."""

    @abstractmethod
    async def get(self, definition_id: str) -> Optional[WorkflowDefinition]:
        ...

    @abstractmethod
    async def save(self, definition: WorkflowDefinition) -> None:
        ...


class InMemoryDefinitionStore(DefinitionStore):
    def __init__(self, definitions: Optional[List[WorkflowDefinition]] = None):
        self._definitions: Dict[str, WorkflowDefinition] = {}
        for definition in definitions or []:
            self._definitions[definition.id] = definition

    async def get(self, definition_id: str) -> Optional[WorkflowDefinition]:
        return self._definitions.get(definition_id)

    async def save(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.id] = definition

    def add(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        self._definitions[definition.id] = definition
        return definition
