"""Telemetry collector for dispatch and supervisor events."""
from __future__ import annotations

import json
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .otel import OtelExporter


@dataclass
class DispatchEvent:
    """One completed (or failed) dispatch."""

    driver_id: Optional[str]
    function: Optional[str]
    call_id: Optional[str]
    timestamp: datetime
    duration: float
    success: bool
    error: Optional[str] = None
    error_type: Optional[str] = None
    request_summary: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "driver_id": self.driver_id,
            "function": self.function,
            "call_id": self.call_id,
            "timestamp": self.timestamp.isoformat(),
            "duration": self.duration,
            "success": self.success,
            "error": self.error,
            "error_type": self.error_type,
            "request_summary": self.request_summary,
        }


@dataclass
class SupervisorEvent:
    """A supervisor state transition for one driver."""

    driver_id: str
    previous: str
    current: str
    timestamp: datetime
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "driver_id": self.driver_id,
            "previous": self.previous,
            "current": self.current,
            "timestamp": self.timestamp.isoformat(),
            "detail": self.detail,
        }


@dataclass
class _DriverTotals:
    calls: int = 0
    errors: int = 0
    total_duration: float = 0.0
    min_duration: float = float("inf")
    max_duration: float = 0.0

    def add(self, duration: float, success: bool) -> None:
        self.calls += 1
        if not success:
            self.errors += 1
        self.total_duration += duration
        self.min_duration = min(self.min_duration, duration)
        self.max_duration = max(self.max_duration, duration)


@dataclass
class DispatchTelemetry:
    """Counters, per-driver aggregates and a bounded window of recent events.

    Only the newest ``max_events`` dispatch and transition events are kept;
    counters and per-driver stats cover everything recorded since creation.
    """

    max_events: int = 1000
    counters: Dict[str, int] = field(default_factory=lambda: {
        "dispatches": 0,
        "dispatch_errors": 0,
        "no_call": 0,
        "launches": 0,
        "restarts": 0,
        "crashes": 0,
    })
    dispatches: Deque[DispatchEvent] = field(default_factory=deque)
    transitions: Deque[SupervisorEvent] = field(default_factory=deque)
    _totals: Dict[str, _DriverTotals] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    _recorded_dispatches: int = 0
    _recorded_transitions: int = 0
    _flushed_dispatches: int = 0
    _flushed_transitions: int = 0

    def __post_init__(self) -> None:
        if self.max_events < 1:
            raise ValueError("max_events must be at least 1")
        self.dispatches = deque(self.dispatches, maxlen=self.max_events)
        self.transitions = deque(self.transitions, maxlen=self.max_events)

    def incr(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self.counters[key] = self.counters.get(key, 0) + amount

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.counters)

    def record_dispatch(
        self,
        *,
        driver_id: Optional[str],
        function: Optional[str],
        call_id: Optional[str],
        duration: float,
        success: bool,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
        request_summary: Optional[str] = None,
    ) -> None:
        event = DispatchEvent(
            driver_id=driver_id,
            function=function,
            call_id=call_id,
            timestamp=datetime.now(),
            duration=duration,
            success=success,
            error=error,
            error_type=error_type,
            request_summary=request_summary,
        )
        key = driver_id or "<unresolved>"
        with self._lock:
            self.dispatches.append(event)
            self.counters["dispatches"] = self.counters.get("dispatches", 0) + 1
            if error_type == "no_action":
                self.counters["no_call"] = self.counters.get("no_call", 0) + 1
            elif not success:
                self.counters["dispatch_errors"] = self.counters.get("dispatch_errors", 0) + 1
            self._recorded_dispatches += 1
            self._totals.setdefault(key, _DriverTotals()).add(duration, success)

    def record_transition(self, driver_id: str, previous: str, current: str, detail: Optional[str] = None) -> None:
        event = SupervisorEvent(
            driver_id=driver_id,
            previous=previous,
            current=current,
            timestamp=datetime.now(),
            detail=detail,
        )
        with self._lock:
            self.transitions.append(event)
            self._recorded_transitions += 1
            if current == "launching":
                self.counters["launches"] = self.counters.get("launches", 0) + 1
            elif current == "restarting":
                self.counters["restarts"] = self.counters.get("restarts", 0) + 1
            elif current == "crashed":
                self.counters["crashes"] = self.counters.get("crashes", 0) + 1

    @property
    def error_counts(self) -> Dict[str, int]:
        with self._lock:
            return {key: totals.errors for key, totals in self._totals.items() if totals.errors}

    def driver_stats(self, driver_id: str) -> Dict[str, float]:
        with self._lock:
            totals = self._totals.get(driver_id)
            if totals is None:
                return {"calls": 0, "errors": 0}
            calls, errors = totals.calls, totals.errors
            total, low, high = totals.total_duration, totals.min_duration, totals.max_duration
        return {
            "calls": calls,
            "avg_duration": total / calls,
            "min_duration": low,
            "max_duration": high,
            "errors": errors,
            "success_rate": (calls - errors) / calls,
        }

    def iter_otel_events(self) -> Iterable[Dict[str, object]]:
        """Yield OTEL-style event dictionaries for downstream exporters."""
        with self._lock:
            dispatches = list(self.dispatches)
            transitions = list(self.transitions)
        return _otel_events(dispatches, transitions)

    def export_otel(self) -> str:
        records = list(self.iter_otel_events())
        return json.dumps({"events": records}, ensure_ascii=False, indent=2)

    def flush_to_otel(self, exporter: "OtelExporter") -> int:
        """Send events recorded since the previous flush; return how many were sent.

        Events that fell out of the retention window before a flush are skipped.
        """
        with self._lock:
            dispatches = _newest(self.dispatches, self._recorded_dispatches - self._flushed_dispatches)
            transitions = _newest(self.transitions, self._recorded_transitions - self._flushed_transitions)
            self._flushed_dispatches = self._recorded_dispatches
            self._flushed_transitions = self._recorded_transitions
        pending = list(_otel_events(dispatches, transitions))
        if pending:
            exporter.export(pending)
        return len(pending)


def _newest(events: Deque, count: int) -> List:
    if count <= 0:
        return []
    return list(events)[-count:]


def _otel_events(
    dispatches: List[DispatchEvent],
    transitions: List[SupervisorEvent],
) -> Iterable[Dict[str, object]]:
    for event in dispatches:
        yield {
            "timestamp": event.timestamp.isoformat(),
            "name": f"dispatch.{event.driver_id or 'unresolved'}",
            "attributes": {
                "driver.id": event.driver_id,
                "driver.function": event.function,
                "dispatch.call_id": event.call_id,
                "dispatch.duration_ms": event.duration * 1000,
                "dispatch.success": event.success,
                "dispatch.error": event.error,
                "dispatch.error_type": event.error_type,
                "dispatch.request_summary": event.request_summary,
            },
        }
    for event in transitions:
        yield {
            "timestamp": event.timestamp.isoformat(),
            "name": f"supervisor.{event.current}",
            "attributes": {
                "driver.id": event.driver_id,
                "supervisor.previous": event.previous,
                "supervisor.current": event.current,
                "supervisor.detail": event.detail,
            },
        }


__all__ = ["DispatchEvent", "DispatchTelemetry", "SupervisorEvent"]
