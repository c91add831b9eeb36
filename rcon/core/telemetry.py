"""
Telemetry and metrics collection
"""
import threading
import time
from collections import deque
from typing import Deque, Dict, Any, Optional
from dataclasses import dataclass, field

from .constants import TELEMETRY_HISTORY


@dataclass
class Metric:
    """Single metric value"""
    name: str
    value: float
    timestamp: float = field(default_factory=time.time)
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class Event:
    """Event record"""
    name: str
    timestamp: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)


class Telemetry:
    """
    Telemetry collector.

    Written to from session, relay and shell threads concurrently. Only
    the most recent ``history`` metrics and events are kept, so a
    long-running broker or agent stays at a fixed footprint.
    """

    def __init__(self, history: int = TELEMETRY_HISTORY):
        self._metrics: Deque[Metric] = deque(maxlen=history)
        self._events: Deque[Event] = deque(maxlen=history)
        self._lock = threading.Lock()

    def record_metric(self, name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
        """Record a metric"""
        with self._lock:
            self._metrics.append(Metric(name=name, value=value, tags=tags or {}))

    def record_event(self, name: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Record an event"""
        with self._lock:
            self._events.append(Event(name=name, metadata=metadata or {}))

    def get_metrics(self, name: Optional[str] = None) -> list[Metric]:
        """Get recorded metrics, optionally only those named ``name``"""
        with self._lock:
            return [metric for metric in self._metrics if name is None or metric.name == name]

    def get_events(self, name: Optional[str] = None) -> list[Event]:
        """
        Get recorded events.

        Args:
            name: Only return events with this name

        Returns:
            Events in recording order
        """
        with self._lock:
            return [event for event in self._events if name is None or event.name == name]

    def clear(self) -> None:
        """Clear all metrics and events"""
        with self._lock:
            self._metrics.clear()
            self._events.clear()


# Global telemetry instance
_telemetry = Telemetry()


def get_telemetry() -> Telemetry:
    """Get global telemetry instance"""
    return _telemetry
