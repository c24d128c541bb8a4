"""Event broadcasting system for pipeline runs.

Provides a lightweight event system for tracking run progress, stage
execution and gate decisions. Events can be consumed by:
- The CLI progress log
- Tests asserting on ordering
- Telemetry collectors
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import threading

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventType(str, Enum):
    """Types of events emitted during a run."""

    # Run events
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"

    # Group events
    GROUP_STARTED = "group_started"
    GROUP_COMPLETED = "group_completed"

    # Stage events
    STAGE_STARTED = "stage_started"
    STAGE_SUCCEEDED = "stage_succeeded"
    STAGE_FAILED = "stage_failed"
    STAGE_SKIPPED = "stage_skipped"
    STAGE_CANCELLED = "stage_cancelled"
    STAGE_RETRYING = "stage_retrying"

    # Gate events
    GATE_AWAITING = "gate_awaiting"
    GATE_RESOLVED = "gate_resolved"

    # Artifact events
    ARTIFACT_PUBLISHED = "artifact_published"

    WARNING = "warning"


@dataclass
class Event:
    """Base event class."""

    type: EventType
    run_id: str
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class EventBus:
    """Central event bus for publishing and subscribing to events.

    Thread-safe: parallel stages publish from pool threads.
    """

    def __init__(self, max_history: int = 1000):
        self._subscribers: Dict[EventType, List[Callable]] = {}
        self._wildcard_subscribers: List[Callable] = []
        self._event_history: List[Event] = []
        self._max_history = max_history
        self._lock = threading.RLock()

    def subscribe(self, event_type: Optional[EventType], callback: Callable[[Event], None]):
        """
        Subscribe to events.

        Args:
            event_type: Type of event to subscribe to, or None for all events
            callback: Function to call when event is published
        """
        with self._lock:
            if event_type is None:
                self._wildcard_subscribers.append(callback)
            else:
                self._subscribers.setdefault(event_type, []).append(callback)

    def unsubscribe(self, event_type: Optional[EventType], callback: Callable[[Event], None]):
        with self._lock:
            if event_type is None:
                if callback in self._wildcard_subscribers:
                    self._wildcard_subscribers.remove(callback)
            elif callback in self._subscribers.get(event_type, []):
                self._subscribers[event_type].remove(callback)

    def publish(self, event: Event):
        """
        Publish event to all subscribers.

        Args:
            event: Event to publish
        """
        with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history.pop(0)
            callbacks = list(self._wildcard_subscribers) + list(self._subscribers.get(event.type, []))

        logger.debug(f"Event published: {event.type.value} for run {event.run_id}")

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                # A broken subscriber must not take the run down with it
                logger.error(f"Error in event callback for {event.type.value}: {e}")

    def get_history(self, run_id: Optional[str] = None, event_type: Optional[EventType] = None) -> List[Event]:
        """
        Get event history.

        Args:
            run_id: Filter by run ID (optional)
            event_type: Filter by event type (optional)

        Returns:
            List of events matching filters
        """
        with self._lock:
            events = list(self._event_history)

        if run_id:
            events = [e for e in events if e.run_id == run_id]

        if event_type:
            events = [e for e in events if e.type == event_type]

        return events

    def clear_history(self):
        with self._lock:
            self._event_history.clear()


class EventEmitter:
    """Helper class for emitting events from the executor and gates."""

    def __init__(self, run_id: str, event_bus: Optional[EventBus] = None):
        self.run_id = run_id
        self.event_bus = event_bus or EventBus()

    def emit(self, event_type: EventType, data: Optional[Dict[str, Any]] = None):
        self.event_bus.publish(Event(type=event_type, run_id=self.run_id, data=data or {}))

    def run_started(self, pipeline_name: str, pipeline_version: str, environment: str):
        self.emit(EventType.RUN_STARTED, {
            "pipeline_name": pipeline_name,
            "pipeline_version": pipeline_version,
            "environment": environment,
        })

    def run_completed(self, duration_ms: int):
        self.emit(EventType.RUN_COMPLETED, {"duration_ms": duration_ms})

    def run_failed(self, error: str, error_kind: str):
        self.emit(EventType.RUN_FAILED, {"error": error, "error_kind": error_kind})

    def run_cancelled(self, reason: str):
        self.emit(EventType.RUN_CANCELLED, {"reason": reason})

    def group_started(self, index: int, parallel: bool, stages: List[str]):
        self.emit(EventType.GROUP_STARTED, {"index": index, "parallel": parallel, "stages": stages})

    def group_completed(self, index: int, statuses: Dict[str, str]):
        self.emit(EventType.GROUP_COMPLETED, {"index": index, "statuses": statuses})

    def stage_started(self, stage: str, kind: str, attempt: int = 1):
        self.emit(EventType.STAGE_STARTED, {"stage": stage, "kind": kind, "attempt": attempt})

    def stage_succeeded(self, stage: str, attempts: int, duration_ms: int):
        self.emit(EventType.STAGE_SUCCEEDED, {
            "stage": stage,
            "attempts": attempts,
            "duration_ms": duration_ms,
        })

    def stage_failed(self, stage: str, error: str, best_effort: bool):
        self.emit(EventType.STAGE_FAILED, {"stage": stage, "error": error, "best_effort": best_effort})

    def stage_skipped(self, stage: str, reason: str):
        self.emit(EventType.STAGE_SKIPPED, {"stage": stage, "reason": reason})

    def stage_cancelled(self, stage: str):
        self.emit(EventType.STAGE_CANCELLED, {"stage": stage})

    def stage_retrying(self, stage: str, attempt: int, max_attempts: int, exit_code: Optional[int]):
        self.emit(EventType.STAGE_RETRYING, {
            "stage": stage,
            "attempt": attempt,
            "max_attempts": max_attempts,
            "exit_code": exit_code,
        })

    def gate_awaiting(self, stage: str, kind: str, message: Optional[str] = None):
        self.emit(EventType.GATE_AWAITING, {"stage": stage, "kind": kind, "message": message})

    def gate_resolved(self, stage: str, state: str, detail: Optional[str] = None):
        self.emit(EventType.GATE_RESOLVED, {"stage": stage, "state": state, "detail": detail})

    def artifact_published(self, stage: str, name: str, value: str):
        self.emit(EventType.ARTIFACT_PUBLISHED, {"stage": stage, "name": name, "value": value})

    def warning(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.emit(EventType.WARNING, {"message": message, "context": context or {}})
