"""In-process messaging between scheduler workers and the orchestrator."""

from common.messaging.events import Event, EventType

__all__ = ["Event", "EventType"]
