"""Telemetry for dispatches and supervised driver processes."""

from .collector import DispatchEvent, DispatchTelemetry, SupervisorEvent
from .otel import DEFAULT_SERVICE_NAME, OtelExporter

__all__ = [
    "DEFAULT_SERVICE_NAME",
    "DispatchEvent",
    "DispatchTelemetry",
    "OtelExporter",
    "SupervisorEvent",
]
