"""
Durable execution state models.

These tables back crash-safe execution:
- workflow_executions: full serialized execution snapshot (one row per execution)
- scheduled_wakes: pending timer, escalation and timeout wakes
"""

from sqlalchemy import Column, DateTime, Index, String, JSON

from db.base import TimestampedModel


class WorkflowExecutionModel(TimestampedModel):
    """
    Persisted execution snapshot.

    Rewritten at every step boundary. ``status`` and ``workflow_id`` are
    copied out of the snapshot so history and recovery can query them.
    """

    __tablename__ = "workflow_executions"

    id = Column(String(36), primary_key=True)
    workflow_id = Column(String(255), nullable=False, index=True)
    tenant_id = Column(String(255), nullable=True, index=True)
    status = Column(String(20), nullable=False, index=True)
    parent_execution_id = Column(String(36), nullable=True, index=True)
    started_at = Column(DateTime(timezone=False), nullable=True)
    state_data = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_workflow_executions_workflow_started", "workflow_id", "started_at"),
    )


class ScheduledWakeModel(TimestampedModel):
    """
    A durable wake-up.

    ``due_at`` is stored as naive UTC so ordering comparisons behave the
    same on SQLite and PostgreSQL. ``claimed_until`` is the lease held by
    the process firing the wake; the row is deleted only once firing
    finished, so a crash mid-fire leaves it to be claimed again.
    """

    __tablename__ = "scheduled_wakes"

    id = Column(String(36), primary_key=True)
    execution_id = Column(String(36), nullable=False, index=True)
    step_execution_id = Column(String(36), nullable=True, index=True)
    kind = Column(String(30), nullable=False)
    due_at = Column(DateTime(timezone=False), nullable=False, index=True)
    claimed_until = Column(DateTime(timezone=False), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
