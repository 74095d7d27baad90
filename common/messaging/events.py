"""Event definitions for messages between scheduler workers and the orchestrator."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from common.models.job import JobState
from common.utils import utcnow


class EventType(str, Enum):
    """Types of events in the system."""

    # Job lifecycle
    JOB_STARTED = "job.started"
    JOB_FINISHED = "job.finished"

    # Store
    STORE_ERROR = "store.error"

    # Run control
    RUN_CANCEL = "run.cancel"


class Event(BaseModel):
    """Base event structure for all messages."""

    type: EventType = Field(..., description="Event type")
    timestamp: datetime = Field(default_factory=utcnow)
    source: str = Field(..., description="Source identifier (worker name or 'orchestrator')")
    run_id: str = Field(..., description="Run the event belongs to")
    job_id: Optional[str] = Field(default=None)
    payload: dict[str, Any] = Field(default_factory=dict)


# Convenience functions for creating common events

def create_job_started_event(source: str, run_id: str, job_id: str) -> Event:
    """Create a job started event."""
    return Event(
        type=EventType.JOB_STARTED,
        source=source,
        run_id=run_id,
        job_id=job_id,
    )


def create_job_finished_event(
    source: str,
    run_id: str,
    job_id: str,
    state: JobState,
    error_message: Optional[str] = None,
) -> Event:
    """Create a job finished event carrying the terminal state."""
    return Event(
        type=EventType.JOB_FINISHED,
        source=source,
        run_id=run_id,
        job_id=job_id,
        payload={
            "state": state.value,
            "error_message": error_message,
        },
    )


def create_store_error_event(
    source: str,
    run_id: str,
    message: str,
    job_id: Optional[str] = None,
) -> Event:
    """Create an event reporting a lost store write."""
    return Event(
        type=EventType.STORE_ERROR,
        source=source,
        run_id=run_id,
        job_id=job_id,
        payload={"message": message},
    )


def create_run_cancel_event(run_id: str, graceful: bool = False) -> Event:
    """Create a run cancellation event."""
    return Event(
        type=EventType.RUN_CANCEL,
        source="orchestrator",
        run_id=run_id,
        payload={"graceful": graceful},
    )
