"""Export dispatch and supervisor telemetry as OTLP-style JSON lines.

Each line is ``{"resource": ..., "scope": ..., "event": ...}``. The resource
carries the service attributes plus ``driver.id`` of the event, so a collector
can group lines per driver; the scope names the subsystem that produced the
event (dispatcher or autostart supervisor).
"""
from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Dict, Iterable, Mapping, MutableMapping, Optional, TextIO

DEFAULT_SERVICE_NAME = "llm-drivers"

SCOPES: Mapping[str, str] = {
    "dispatch": "llm_drivers.dispatcher",
    "supervisor": "llm_drivers.autostart",
}
DEFAULT_SCOPE = "llm_drivers"


def event_scope(event: Mapping[str, object]) -> str:
    kind = str(event.get("name") or "").split(".", 1)[0]
    return SCOPES.get(kind, DEFAULT_SCOPE)


class OtelExporter:
    """Write one JSON line per event to a sink, a file, or an in-memory buffer."""

    def __init__(
        self,
        *,
        service_name: str = DEFAULT_SERVICE_NAME,
        sink: Optional[TextIO] = None,
        path: Optional[Path] = None,
        resource: Optional[Mapping[str, str]] = None,
    ) -> None:
        if sink is not None and path is not None:
            raise ValueError("provide either sink or path, not both")
        self._sink = sink
        self._path = path
        self._resource: MutableMapping[str, str] = {"service.name": service_name}
        if resource:
            self._resource.update({str(k): str(v) for k, v in resource.items()})
        self._lock = threading.Lock()
        self._buffer: list[str] = []
        self._scope_counts: Dict[str, int] = {}

    @property
    def resource(self) -> Mapping[str, str]:
        return dict(self._resource)

    def scope_counts(self) -> Dict[str, int]:
        """Number of lines written so far per instrumentation scope."""
        with self._lock:
            return dict(self._scope_counts)

    def _envelope(self, event: Mapping[str, object]) -> Dict[str, object]:
        resource = dict(self._resource)
        attributes = event.get("attributes")
        if isinstance(attributes, Mapping) and attributes.get("driver.id"):
            resource["driver.id"] = str(attributes["driver.id"])
        return {"resource": resource, "scope": {"name": event_scope(event)}, "event": event}

    def export(self, events: Iterable[Mapping[str, object]]) -> int:
        """Serialize *events* one per line; return the line count."""
        envelopes = [self._envelope(event) for event in events]
        if not envelopes:
            return 0
        lines = [json.dumps(envelope, ensure_ascii=False, default=str) for envelope in envelopes]

        with self._lock:
            for envelope in envelopes:
                scope = envelope["scope"]["name"]
                self._scope_counts[scope] = self._scope_counts.get(scope, 0) + 1
            if self._sink is not None:
                for line in lines:
                    self._sink.write(line + "\n")
                self._sink.flush()
            elif self._path is not None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as fh:
                    for line in lines:
                        fh.write(line + "\n")
            else:
                self._buffer.extend(lines)
        return len(lines)

    def buffered_payloads(self) -> list[str]:
        """Return payloads retained in memory (used when no sink or path is configured)."""
        with self._lock:
            return list(self._buffer)


__all__ = ["DEFAULT_SCOPE", "DEFAULT_SERVICE_NAME", "OtelExporter", "SCOPES", "event_scope"]
