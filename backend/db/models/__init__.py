"""Database models for the workflow engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.execution_state import ScheduledWakeModel, WorkflowExecutionModel

__all__ = [
    "ScheduledWakeModel",
    "WorkflowExecutionModel",
]
