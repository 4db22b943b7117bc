"""Observable supervisor events."""

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

STATE_CHANGED = 'state_changed'
DEPENDENCY_SKIPPED = 'dependency_skipped'
DEPENDENCY_CRASHED = 'dependency_crashed'
FOREGROUND_STARTED = 'foreground_started'
FOREGROUND_EXITED = 'foreground_exited'
SIGNAL_RECEIVED = 'signal_received'


@dataclass
class SupervisorEvent:
    """Something the supervisor observed or did."""
    kind: str
    service: Optional[str] = None
    state: Optional[object] = None  # ServiceState for state changes
    detail: Optional[str] = None
    error: Optional[Exception] = None
    timestamp: datetime = field(default_factory=datetime.now)


Listener = Callable[[SupervisorEvent], None]


class EventRecorder:
    """Records events and state transitions and notifies listeners."""

    def __init__(self, listeners: Optional[List[Listener]] = None) -> None:
        self.listeners: List[Listener] = list(listeners or [])
        self.events: List[SupervisorEvent] = []
        self.transitions: List[Tuple[str, object]] = []

    def subscribe(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def emit(self, event: SupervisorEvent) -> None:
        """Record an event and pass it to every listener.

        A failing listener is logged and skipped.
        """
        self.events.append(event)
        if event.kind == STATE_CHANGED:
            self.transitions.append((event.service, event.state))
        for listener in list(self.listeners):
            try:
                listener(event)
            except Exception:  # pylint: disable=broad-except
                logger.exception(
                    "Event listener %r failed on %s event", listener,
                    event.kind
                )

    def of_kind(self, kind: str) -> List[SupervisorEvent]:
        return [e for e in self.events if e.kind == kind]

    def reset(self) -> None:
        self.events = []
        self.transitions = []
