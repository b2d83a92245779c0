"""
Durable wake scheduling.

Timer steps, escalations, step timeouts and execution-level timeouts are
all expressed as ``ScheduledWake`` rows with a due time. The engine's
``process_due_wakes`` claims due wakes with a lease, fires them under the
owning execution's lock, and only then completes (deletes) them; a failed
fire releases the claim. ``run_timer_loop`` polls it. Because wakes live
in a store rather than in ``asyncio`` timers, they survive process
restarts, and a wake whose firing process died becomes due again once its
lease runs out.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from core.constants import WakeKind
from core.exceptions import StorageError
from core.utils import isoformat, new_id, parse_datetime
from db.models.execution_state import ScheduledWakeModel

logger = structlog.get_logger(__name__)


@dataclass
class ScheduledWake:
    """A pending wake-up for one execution (and optionally one step visit)."""
    execution_id: str
    kind: WakeKind
    due_at: datetime
    step_execution_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    claimed_until: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "kind": self.kind.value,
            "due_at": isoformat(self.due_at),
            "step_execution_id": self.step_execution_id,
            "payload": self.payload,
        }


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Scheduler(ABC):
    """Clock/scheduler capability: ``At(time) -> wake``."""

    @abstractmethod
    async def schedule(self, wake: ScheduledWake) -> ScheduledWake:
        ...

    @abstractmethod
    async def due(self, now: datetime) -> List[ScheduledWake]:
        """Unclaimed (or lease-expired) wakes with ``due_at <= now``, earliest first."""

    @abstractmethod
    async def claim(self, wake_id: str, now: datetime, lease_until: datetime) -> bool:
        """Lease a wake for firing; False if another claim still holds it."""

    @abstractmethod
    async def complete(self, wake_id: str) -> None:
        """Delete a wake once it has fired."""

    @abstractmethod
    async def release(self, wake_id: str) -> None:
        """Drop the claim on a wake whose firing failed."""

    @abstractmethod
    async def cancel_for_step_execution(self, step_execution_id: str) -> int:
        """Delete the unclaimed wakes of one step visit."""

    @abstractmethod
    async def cancel_for_execution(self, execution_id: str) -> int:
        """Delete the unclaimed wakes of an execution."""

    @abstractmethod
    async def list_for_execution(self, execution_id: str) -> List[ScheduledWake]:
        ...


class InMemoryScheduler(Scheduler):
    def __init__(self):
        self._wakes: Dict[str, ScheduledWake] = {}

    async def schedule(self, wake: ScheduledWake) -> ScheduledWake:
        self._wakes[wake.id] = wake
        return wake

    async def due(self, now: datetime) -> List[ScheduledWake]:
        due = [
            w for w in self._wakes.values()
            if w.due_at <= now and (w.claimed_until is None or w.claimed_until <= now)
        ]
        return sorted(due, key=lambda w: (w.due_at, w.id))

    async def claim(self, wake_id: str, now: datetime, lease_until: datetime) -> bool:
        wake = self._wakes.get(wake_id)
        if wake is None or (wake.claimed_until is not None and wake.claimed_until > now):
            return False
        wake.claimed_until = lease_until
        return True

    async def complete(self, wake_id: str) -> None:
        self._wakes.pop(wake_id, None)

    async def release(self, wake_id: str) -> None:
        wake = self._wakes.get(wake_id)
        if wake is not None:
            wake.claimed_until = None

    async def cancel_for_step_execution(self, step_execution_id: str) -> int:
        return self._cancel(lambda w: w.step_execution_id == step_execution_id)

    async def cancel_for_execution(self, execution_id: str) -> int:
        return self._cancel(lambda w: w.execution_id == execution_id)

    async def list_for_execution(self, execution_id: str) -> List[ScheduledWake]:
        wakes = [w for w in self._wakes.values() if w.execution_id == execution_id]
        return sorted(wakes, key=lambda w: (w.due_at, w.id))

    def _cancel(self, matches) -> int:
        ids = [w.id for w in self._wakes.values() if w.claimed_until is None and matches(w)]
        for wake_id in ids:
            del self._wakes[wake_id]
        return len(ids)


class SQLAlchemyScheduler(Scheduler):
    """Persists wakes to the ``scheduled_wakes`` table."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @staticmethod
    def _to_wake(row: ScheduledWakeModel) -> ScheduledWake:
        return ScheduledWake(
            id=row.id,
            execution_id=row.execution_id,
            kind=WakeKind(row.kind),
            due_at=parse_datetime(row.due_at),
            step_execution_id=row.step_execution_id,
            payload=dict(row.payload or {}),
            claimed_until=parse_datetime(row.claimed_until),
        )

    @staticmethod
    def _claimable(now: datetime):
        return or_(
            ScheduledWakeModel.claimed_until.is_(None),
            ScheduledWakeModel.claimed_until <= _naive_utc(now),
        )

    async def schedule(self, wake: ScheduledWake) -> ScheduledWake:
        try:
            async with self.session_factory() as session:
                session.add(ScheduledWakeModel(
                    id=wake.id,
                    execution_id=wake.execution_id,
                    step_execution_id=wake.step_execution_id,
                    kind=wake.kind.value,
                    due_at=_naive_utc(wake.due_at),
                    payload=wake.payload,
                ))
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to schedule wake: {e}", execution_id=wake.execution_id) from e
        return wake

    async def due(self, now: datetime) -> List[ScheduledWake]:
        stmt = (
            select(ScheduledWakeModel)
            .where(ScheduledWakeModel.due_at <= _naive_utc(now), self._claimable(now))
            .order_by(ScheduledWakeModel.due_at, ScheduledWakeModel.id)
        )
        return await self._query(stmt)

    async def claim(self, wake_id: str, now: datetime, lease_until: datetime) -> bool:
        # Conditional update: only one process wins the lease
        stmt = (
            update(ScheduledWakeModel)
            .where(ScheduledWakeModel.id == wake_id, self._claimable(now))
            .values(claimed_until=_naive_utc(lease_until))
        )
        return await self._write(stmt) > 0

    async def complete(self, wake_id: str) -> None:
        await self._write(delete(ScheduledWakeModel).where(ScheduledWakeModel.id == wake_id))

    async def release(self, wake_id: str) -> None:
        await self._write(
            update(ScheduledWakeModel).where(ScheduledWakeModel.id == wake_id).values(claimed_until=None)
        )

    async def cancel_for_step_execution(self, step_execution_id: str) -> int:
        return await self._write(
            delete(ScheduledWakeModel).where(
                ScheduledWakeModel.step_execution_id == step_execution_id,
                ScheduledWakeModel.claimed_until.is_(None),
            )
        )

    async def cancel_for_execution(self, execution_id: str) -> int:
        return await self._write(
            delete(ScheduledWakeModel).where(
                ScheduledWakeModel.execution_id == execution_id,
                ScheduledWakeModel.claimed_until.is_(None),
            )
        )

    async def list_for_execution(self, execution_id: str) -> List[ScheduledWake]:
        stmt = (
            select(ScheduledWakeModel)
            .where(ScheduledWakeModel.execution_id == execution_id)
            .order_by(ScheduledWakeModel.due_at, ScheduledWakeModel.id)
        )
        return await self._query(stmt)

    async def _query(self, stmt) -> List[ScheduledWake]:
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [self._to_wake(r) for r in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Wake query failed: {e}") from e

    async def _write(self, stmt) -> int:
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise StorageError(f"Wake update failed: {e}") from e
