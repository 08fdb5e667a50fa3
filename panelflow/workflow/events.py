"""
Domain events and their delivery to external collaborators.

Every engine call returns the events it produced, in order. The
EventDispatcher additionally forwards them to registered sinks
(notification, metrics, dashboards) and history entries to the
persistence sink, fire-and-forget on a worker thread. A slow or failing
sink never blocks or rolls back a panel transition.

Usage:
    dispatcher = EventDispatcher(persistence=audit_store)
    dispatcher.register(EventType.PANEL_COMPLETED, notify_shipping)
    dispatcher.register_all(metrics.record)

    orchestrator = WorkflowOrchestrator(config, registry, dispatcher=dispatcher)
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from panelflow.workflow.record import (
    PanelWorkflowRecord,
    TransitionHistoryEntry,
    utcnow,
)

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PANEL_INITIALIZED = "panel_initialized"
    STATE_TRANSITION = "state_transition"
    READY_FOR_NEXT_STATION = "ready_for_next_station"
    PANEL_COMPLETED = "panel_completed"


@dataclass(frozen=True)
class DomainEvent:
    """Something that happened to a panel, for the caller to forward."""

    event_type: EventType
    panel_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: Any = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "panel_id": self.panel_id,
            "timestamp": self.timestamp.isoformat(),
            **self.payload,
        }


@runtime_checkable
class PersistenceSink(Protocol):
    """Durable audit trail. Owns its own retries."""

    def record_transition(self, panel_id: str, entry: TransitionHistoryEntry) -> None:
        ...

    def record_completion(self, snapshot: PanelWorkflowRecord) -> None:
        ...


EventHandler = Callable[[DomainEvent], Any]


@dataclass
class EventRoute:
    """Maps an event type to a handler."""

    event_type: Optional[EventType]
    handler: EventHandler
    description: str = ""


@dataclass
class DispatchBatch:
    """Everything one committed engine call hands to the collaborators."""

    events: list[DomainEvent] = field(default_factory=list)
    history: list[TransitionHistoryEntry] = field(default_factory=list)
    completions: list[PanelWorkflowRecord] = field(default_factory=list)


class EventDispatcher:
    """
    Routes domain events to handlers and history to the persistence sink.

    Each event type can have multiple handlers (fan-out). Handlers
    registered with `register_all` receive every event.

    With `synchronous=True` delivery happens inline on the caller's
    thread (tests, scripts). Otherwise a ThreadPoolExecutor delivers; one
    worker preserves event order across panels.
    """

    def __init__(
        self,
        persistence: Optional[PersistenceSink] = None,
        *,
        max_workers: int = 1,
        synchronous: bool = False,
    ):
        self.persistence = persistence
        self.synchronous = synchronous
        self._routes: dict[Optional[EventType], list[EventRoute]] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        if not synchronous:
            self._executor = ThreadPoolExecutor(
                max_workers=max_workers,
                thread_name_prefix="panelflow-dispatch",
            )

    def register(
        self,
        event_type: EventType,
        handler: EventHandler,
        description: str = "",
    ) -> None:
        """Register a handler for one event type."""
        route = EventRoute(event_type=event_type, handler=handler, description=description)
        self._routes.setdefault(event_type, []).append(route)
        logger.info(
            f"Event route registered: {event_type.value} → "
            f"{getattr(handler, '__qualname__', repr(handler))}"
        )

    def register_all(self, handler: EventHandler, description: str = "") -> None:
        """Register a handler for every event type."""
        route = EventRoute(event_type=None, handler=handler, description=description)
        self._routes.setdefault(None, []).append(route)

    def get_routes_for_event(self, event_type: EventType) -> list[EventRoute]:
        return list(self._routes.get(event_type, [])) + list(self._routes.get(None, []))

    def list_routes(self) -> dict[Optional[EventType], list[EventRoute]]:
        return {k: list(v) for k, v in self._routes.items()}

    def dispatch(self, batch: DispatchBatch) -> Optional[Future]:
        """
        Hand a committed batch to the collaborators.

        Returns the Future of the background delivery, or None when
        delivery ran inline, there was nothing to deliver, or the
        dispatcher was already shut down (the batch is logged and dropped).
        """
        if not (batch.events or batch.history or batch.completions):
            return None
        if self._executor is None:
            self._deliver(batch)
            return None
        try:
            return self._executor.submit(self._deliver, batch)
        except RuntimeError as e:
            # Executor shut down
            panel_ids = sorted(
                {ev.panel_id for ev in batch.events}
                | {h.panel_id for h in batch.history}
                | {s.panel_id for s in batch.completions}
            )
            logger.error(
                f"Event delivery failed: batch dropped for {panel_ids}: {e}",
                extra={
                    "panel_id": panel_ids[0] if len(panel_ids) == 1 else None,
                    "status": "dispatch_failed",
                },
            )
            return None

    def _deliver(self, batch: DispatchBatch) -> None:
        if self.persistence is not None:
            for entry in batch.history:
                self._call(
                    "record_transition",
                    lambda e=entry: self.persistence.record_transition(e.panel_id, e),
                    entry.panel_id,
                )
            for snapshot in batch.completions:
                self._call(
                    "record_completion",
                    lambda s=snapshot: self.persistence.record_completion(s),
                    snapshot.panel_id,
                )

        for event in batch.events:
            for route in self.get_routes_for_event(event.event_type):
                self._call(
                    event.event_type.value,
                    lambda r=route, ev=event: r.handler(ev),
                    event.panel_id,
                )

    @staticmethod
    def _call(what: str, fn: Callable[[], Any], panel_id: str) -> None:
        try:
            fn()
        except Exception as e:
            logger.error(
                f"Event delivery failed: {what} for panel {panel_id}: {e}",
                extra={"panel_id": panel_id, "status": "dispatch_failed"},
            )

    def shutdown(self, wait: bool = True) -> None:
        """Stop the delivery thread, optionally draining pending batches."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

