"""
Execution Recovery Service.

Resumes executions interrupted by a crash, restart or shutdown.

Recovery flow:
1. On startup, scan the store for Pending executions and Running
   executions that still have active tokens
2. Hand each to the engine, which re-executes the step that was in flight
   (if any) and continues from the saved tokens
3. Fire every wake that fell due while the process was down

Executions parked on waiting steps have no active tokens and are left
alone; their signals and wakes resume them as usual.
"""

from datetime import datetime
from typing import List, Optional

import structlog

from core.constants import ExecutionStatus
from core.utils import isoformat, utc_now
from workflow.engine import WorkflowEngine, get_workflow_engine

logger = structlog.get_logger(__name__)


class RecoveryResult:
    """Result of a recovery attempt for a single execution."""

    def __init__(self, execution_id: str, previous_status: ExecutionStatus):
        self.execution_id = execution_id
        self.previous_status = previous_status
        self.recovered: bool = False
        self.status: Optional[ExecutionStatus] = None
        self.error: Optional[str] = None
        self.timestamp: datetime = utc_now()

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "previous_status": self.previous_status.value,
            "recovered": self.recovered,
            "status": self.status.value if self.status else None,
            "error": self.error,
            "timestamp": isoformat(self.timestamp),
        }


class RecoveryService:
    """
    Handles recovery of interrupted executions on startup.

    Uses the engine's execution store to find interrupted runs and the
    engine itself to resume them.
    """

    def __init__(self, engine: Optional[WorkflowEngine] = None):
        self.engine = engine or get_workflow_engine()
        self._recovery_log: List[RecoveryResult] = []
        self.wakes_fired = 0

    async def scan_interrupted_executions(self) -> List[tuple]:
        """(execution_id, status) pairs of executions that need resuming."""
        store = self.engine.store
        interrupted = [
            (e.id, e.status)
            for e in await store.list_by_status(ExecutionStatus.RUNNING)
            if e.active_tokens
        ]
        interrupted.extend((e.id, e.status) for e in await store.list_by_status(ExecutionStatus.PENDING))

        if interrupted:
            logger.info(
                "interrupted_executions_found",
                count=len(interrupted),
                execution_ids=[eid for eid, _ in interrupted[:10]],
            )
        return interrupted

    async def recover_execution(self, execution_id: str, previous_status: ExecutionStatus) -> RecoveryResult:
        """Resume one interrupted execution."""
        result = RecoveryResult(execution_id, previous_status)
        outcome = await self.engine.recover(execution_id)
        result.recovered = outcome.success
        result.status = outcome.status
        if not outcome.success:
            result.error = outcome.message
            logger.warning("execution_not_recovered", execution_id=execution_id, error=outcome.message)
        else:
            logger.info(
                "execution_recovered",
                execution_id=execution_id,
                previous_status=previous_status.value,
                status=outcome.status.value,
            )

        self._recovery_log.append(result)
        return result

    async def recover_all(self) -> List[RecoveryResult]:
        """
        Scan and recover all interrupted executions, then fire overdue wakes.

        Called on application startup.
        """
        logger.info("recovery_scan_started")

        results = []
        for execution_id, status in await self.scan_interrupted_executions():
            results.append(await self.recover_execution(execution_id, status))

        self.wakes_fired = await self.engine.process_due_wakes()

        logger.info(
            "recovery_scan_complete",
            total=len(results),
            recovered=sum(1 for r in results if r.recovered),
            failed=sum(1 for r in results if not r.recovered),
            wakes_fired=self.wakes_fired,
        )
        return results

    def get_recovery_log(self) -> List[dict]:
        return [r.to_dict() for r in self._recovery_log]
