"""Assemble a driver runtime (registry, autostarter, dispatcher) from settings."""
from __future__ import annotations

import importlib
import logging
import urllib.parse
from functools import partial
from typing import Any, Callable, Dict, Optional, Tuple

from autostart import AutoStarter, ContainerLauncher, SubprocessLauncher
from config import BridgeDefinition, DriverDefinition, Settings
from errors import DriverConfigError
from telemetry import DispatchTelemetry, OtelExporter

from .bridge import BridgeEndpoint, BridgeFactory
from .bridges import FunctionBridge, HTTPBridge, connect_sse_bridge, connect_stdio_bridge, http_bridge_factory
from .capabilities import builtin_bindings
from .dispatcher import Dispatcher
from .registry import DriverRegistry
from .spec import CachingSpecProvider, FileSpecProvider, StaticSpecProvider

logger = logging.getLogger(__name__)


class DriverRuntime:
    """Everything needed to describe and dispatch against configured drivers."""

    def __init__(
        self,
        settings: Settings,
        registry: DriverRegistry,
        dispatcher: Dispatcher,
        telemetry: DispatchTelemetry,
        *,
        autostarter: Optional[AutoStarter] = None,
        exporter: Optional[OtelExporter] = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.dispatcher = dispatcher
        self.telemetry = telemetry
        self.autostarter = autostarter
        self.exporter = exporter

    async def connect(self) -> None:
        """Open bridges that need a live session before the first call (stdio and fixed-URL MCP)."""
        for definition in self.settings.drivers:
            bridge_def = definition.bridge
            if bridge_def is None:
                continue
            driver = self.registry.get(definition.meta.id)
            if driver is None or driver.is_bound:
                continue
            if bridge_def.kind == "mcp-stdio":
                bridge = await connect_stdio_bridge(
                    bridge_def.command or "",
                    bridge_def.args,
                    env=dict(bridge_def.env) or None,
                    cwd=bridge_def.cwd,
                )
                driver.bind(bridge)
            elif bridge_def.kind == "mcp-sse" and bridge_def.url:
                endpoint = _endpoint_from_url(definition.meta.id, bridge_def.url)
                driver.bind(await connect_sse_bridge(endpoint, path=bridge_def.sse_path), endpoint)

    async def aclose(self) -> None:
        if self.autostarter is not None:
            await self.autostarter.shutdown()
        await self.registry.aclose()
        if self.exporter is not None:
            sent = self.telemetry.flush_to_otel(self.exporter)
            logger.debug("Exported %d telemetry event(s)", sent)

    async def __aenter__(self) -> "DriverRuntime":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


def build_runtime(
    settings: Settings,
    *,
    autostarter: Optional[AutoStarter] = None,
    telemetry: Optional[DispatchTelemetry] = None,
) -> DriverRuntime:
    """Register every configured driver and wire the dispatcher."""
    telemetry = telemetry or DispatchTelemetry(max_events=settings.telemetry.max_events)
    registry = DriverRegistry()

    needs_autostart = any(definition.deployment is not None for definition in settings.drivers)
    if autostarter is None and needs_autostart and settings.autostart.enable:
        autostarter = build_autostarter(settings, telemetry)

    for definition in settings.drivers:
        bridge, factory, endpoint = build_bridge_setup(definition)
        if definition.deployment is not None and factory is None:
            raise DriverConfigError(
                f"driver '{definition.meta.id}' has a deployment but its bridge cannot attach to a launched endpoint",
                driver_id=definition.meta.id,
            )
        deployment = definition.deployment if autostarter is not None else None
        driver = registry.register(
            definition.meta,
            build_spec_provider(definition),
            bridge,
            capabilities=builtin_bindings(definition.meta.capabilities),
            bridge_factory=factory if deployment is not None else None,
            deployment=deployment,
            endpoint=endpoint,
        )
        if autostarter is not None and deployment is not None:
            autostarter.register_deployment(driver.id, deployment)
            driver.attach_status_source(partial(autostarter.status, driver.id))

    dispatcher = Dispatcher(
        registry,
        autostarter=autostarter,
        telemetry=telemetry,
        default_timeout=settings.dispatcher.timeout_seconds,
        launch_timeout=settings.autostart.launch_timeout,
        max_concurrency=settings.dispatcher.max_concurrency,
    )

    exporter: Optional[OtelExporter] = None
    if settings.telemetry.enable_export:
        exporter = OtelExporter(service_name=settings.telemetry.service_name, path=settings.telemetry.export_path)

    return DriverRuntime(settings, registry, dispatcher, telemetry, autostarter=autostarter, exporter=exporter)


def build_autostarter(settings: Settings, telemetry: Optional[DispatchTelemetry] = None) -> AutoStarter:
    options = settings.autostart
    context = options.launch_context()
    return AutoStarter(
        {
            "process": SubprocessLauncher(context, log_dir=options.log_dir),
            "container": ContainerLauncher(context, docker=options.docker),
        },
        health_policy=options.health,
        restart_policy=options.restart,
        grace_seconds=options.grace_seconds,
        telemetry=telemetry,
    )


def build_spec_provider(definition: DriverDefinition) -> CachingSpecProvider:
    kwargs: Dict[str, Any] = {
        "spec_format": definition.meta.spec_format,
        "templates": dict(definition.templates),
        "driver_id": definition.meta.id,
    }
    if definition.spec_path is not None:
        return FileSpecProvider(definition.spec_path, **kwargs)
    return StaticSpecProvider(definition.spec or "", **kwargs)


def build_bridge_setup(definition: DriverDefinition) -> Tuple[Any, Optional[BridgeFactory], Optional[BridgeEndpoint]]:
    """Return ``(bridge, factory, endpoint)`` for a driver definition.

    A bridge is created up front only when its target is fixed (function
    bridges and HTTP bridges with a URL). Otherwise a factory is returned for
    the autostarter to bind once the driver is running.
    """
    bridge_def = definition.bridge
    driver_id = definition.meta.id
    if bridge_def is None:
        return None, None, None

    if bridge_def.kind == "function":
        functions = {name: resolve_callable(driver_id, ref) for name, ref in bridge_def.functions}
        return FunctionBridge(functions, requires_serial=bridge_def.requires_serial, driver_id=driver_id), None, None

    if bridge_def.kind == "http":
        options = _http_options(bridge_def)
        if bridge_def.url:
            endpoint = _endpoint_from_url(driver_id, bridge_def.url)
            return HTTPBridge(endpoint, dict(bridge_def.routes), **options), None, endpoint
        return None, http_bridge_factory(dict(bridge_def.routes), **options), None

    if bridge_def.kind == "mcp-sse" and not bridge_def.url:
        return None, partial(connect_sse_bridge, path=bridge_def.sse_path), None

    return None, None, None


def resolve_callable(driver_id: str, reference: str) -> Callable[..., Any]:
    """Import ``"package.module:attribute"`` and return the callable."""
    module_name, sep, attr_path = reference.partition(":")
    if not sep or not module_name or not attr_path:
        raise DriverConfigError(
            f"function reference '{reference}' must look like 'module:attribute'",
            driver_id=driver_id,
        )
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise DriverConfigError(f"cannot import '{module_name}': {exc}", driver_id=driver_id) from exc
    for part in attr_path.split("."):
        if not hasattr(target, part):
            raise DriverConfigError(f"'{reference}' does not exist", driver_id=driver_id)
        target = getattr(target, part)
    if not callable(target):
        raise DriverConfigError(f"'{reference}' is not callable", driver_id=driver_id)
    return target


def _http_options(bridge_def: BridgeDefinition) -> Dict[str, Any]:
    return {"timeout": bridge_def.timeout, "health_path": bridge_def.health_path}


def _endpoint_from_url(driver_id: str, url: str) -> BridgeEndpoint:
    parsed = urllib.parse.urlsplit(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise DriverConfigError(f"bridge url '{url}' must be an http(s) URL", driver_id=driver_id)
    if parsed.path not in ("", "/"):
        raise DriverConfigError(f"bridge url '{url}' must not contain a path; use routes", driver_id=driver_id)
    return BridgeEndpoint(address=parsed.hostname, port=parsed.port, scheme=parsed.scheme)


__all__ = [
    "DriverRuntime",
    "build_autostarter",
    "build_bridge_setup",
    "build_runtime",
    "build_spec_provider",
    "resolve_callable",
]
