"""Settings for the driver runtime, loaded from TOML with environment overrides."""
from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping, MutableMapping, Optional, Tuple

from drivers.meta import DriverMeta
from drivers.schemas import DeploymentInput, parse_input
from errors import DriverConfigError
from policies import HealthCheckPolicy, LaunchContext, RestartPolicy, SandboxPolicy
from telemetry.otel import DEFAULT_SERVICE_NAME

DEFAULT_CONFIG_PATHS: tuple[Path, ...] = (
    Path.home() / ".config" / "llm-drivers" / "config.toml",
)
CONFIG_ENV = "LLMDRIVERS_CONFIG"
DISPATCH_TIMEOUT_ENV = "LLMDRIVERS_DISPATCH_TIMEOUT"
LOG_LEVEL_ENV = "LLMDRIVERS_LOG_LEVEL"

BRIDGE_KINDS = frozenset({"function", "http", "mcp-sse", "mcp-stdio"})


@dataclass(frozen=True)
class DispatcherSettings:
    timeout_seconds: Optional[float] = None
    max_concurrency: int = 8


@dataclass(frozen=True)
class AutostartSettings:
    enable: bool = True
    sandbox: SandboxPolicy = SandboxPolicy.RESTRICTED
    grace_seconds: float = 5.0
    launch_timeout: Optional[float] = None
    allowed_commands: tuple[str, ...] = ()
    blocked_commands: tuple[str, ...] = ()
    log_dir: Optional[Path] = None
    docker: str = "docker"
    health: HealthCheckPolicy = HealthCheckPolicy()
    restart: RestartPolicy = RestartPolicy()

    def launch_context(self) -> LaunchContext:
        return LaunchContext(
            sandbox_policy=self.sandbox,
            allowed_commands=self.allowed_commands or None,
            blocked_commands=self.blocked_commands or None,
        )


@dataclass(frozen=True)
class TelemetrySettings:
    """Telemetry/export configuration (OTEL)."""

    enable_export: bool = False
    export_path: Optional[Path] = None
    service_name: str = DEFAULT_SERVICE_NAME
    max_events: int = 1000


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "WARNING"


@dataclass(frozen=True)
class BridgeDefinition:
    """How a driver reaches its backend."""

    kind: str
    url: Optional[str] = None
    routes: Tuple[Tuple[str, str], ...] = ()
    functions: Tuple[Tuple[str, str], ...] = ()
    timeout: float = 30.0
    health_path: Optional[str] = None
    sse_path: str = "/sse"
    command: Optional[str] = None
    args: Tuple[str, ...] = ()
    env: Tuple[Tuple[str, str], ...] = ()
    cwd: Optional[Path] = None
    requires_serial: bool = False


@dataclass(frozen=True)
class DriverDefinition:
    """One ``[[drivers]]`` table."""

    meta: DriverMeta
    spec: Optional[str] = None
    spec_path: Optional[Path] = None
    templates: Tuple[Tuple[str, str], ...] = ()
    bridge: Optional[BridgeDefinition] = None
    deployment: Optional[DeploymentInput] = None


@dataclass(frozen=True)
class Settings:
    dispatcher: DispatcherSettings = DispatcherSettings()
    autostart: AutostartSettings = AutostartSettings()
    telemetry: TelemetrySettings = TelemetrySettings()
    logging: LoggingSettings = LoggingSettings()
    drivers: tuple[DriverDefinition, ...] = ()
    source: Optional[Path] = field(default=None, compare=False)

    def update_with(self, **overrides: Any) -> "Settings":
        """Return new settings with dotted overrides like 'dispatcher.timeout_seconds'."""

        current: MutableMapping[str, Any] = {
            "dispatcher": self.dispatcher,
            "autostart": self.autostart,
            "telemetry": self.telemetry,
            "logging": self.logging,
        }
        updated = dict(current)
        for dotted, raw_value in overrides.items():
            parts = dotted.split(".")
            if len(parts) != 2:
                raise KeyError(f"Override must be of the form group.field (got '{dotted}')")
            group, leaf = parts
            if group not in current:
                raise KeyError(f"Unknown settings group '{group}'")
            target = updated[group]
            if not hasattr(target, leaf):
                raise KeyError(f"Unknown field '{leaf}' for settings group '{group}'")
            cast_value = _cast_value(getattr(target, leaf), raw_value)
            updated[group] = replace(target, **{leaf: cast_value})
        return replace(self, **updated)

    def driver(self, driver_id: str) -> Optional[DriverDefinition]:
        for definition in self.drivers:
            if driver_id in definition.meta.references:
                return definition
        return None


def load_settings(path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load settings from *path*, ``$LLMDRIVERS_CONFIG`` or the default locations."""

    env = os.environ if environ is None else environ
    config_data: Mapping[str, Any] = {}
    chosen_path: Optional[Path] = None

    if path is not None:
        chosen_path = Path(path).expanduser().resolve()
        if not chosen_path.exists():
            raise DriverConfigError(f"config file not found: {chosen_path}")
        config_data = _loads(chosen_path)
    else:
        env_path = env.get(CONFIG_ENV)
        if env_path:
            candidate = Path(env_path).expanduser().resolve()
            if candidate.exists():
                chosen_path = candidate
                config_data = _loads(candidate)
        else:
            for candidate in DEFAULT_CONFIG_PATHS:
                if candidate.exists():
                    chosen_path = candidate
                    config_data = _loads(candidate)
                    break

    settings = settings_from_mapping(config_data, base_dir=chosen_path.parent if chosen_path else None)
    settings = replace(settings, source=chosen_path)
    return _apply_env_overrides(settings, env)


def _loads(path: Path) -> Mapping[str, Any]:
    try:
        with path.open("rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise DriverConfigError(f"invalid TOML in {path}: {exc}") from exc


def _apply_env_overrides(settings: Settings, env: Mapping[str, str]) -> Settings:
    timeout_raw = (env.get(DISPATCH_TIMEOUT_ENV) or "").strip()
    if timeout_raw:
        timeout = _parse_positive_float(timeout_raw)
        if timeout is not None:
            settings = settings.update_with(**{"dispatcher.timeout_seconds": timeout})
    level = (env.get(LOG_LEVEL_ENV) or "").strip()
    if level:
        settings = settings.update_with(**{"logging.level": level.upper()})
    return settings


def _parse_positive_float(raw: Optional[str]) -> Optional[float]:
    """Return a positive float parsed from *raw*, or ``None`` on failure."""

    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def settings_from_mapping(mapping: Mapping[str, Any], *, base_dir: Optional[Path] = None) -> Settings:
    dispatcher = DispatcherSettings()
    dispatcher_section = _coerce_mapping(mapping.get("dispatcher"))
    if dispatcher_section:
        dispatcher = DispatcherSettings(
            timeout_seconds=_optional_float(dispatcher_section.get("timeout_seconds"), "dispatcher.timeout_seconds"),
            max_concurrency=int(dispatcher_section.get("max_concurrency", dispatcher.max_concurrency)),
        )
        if dispatcher.max_concurrency < 1:
            raise DriverConfigError("dispatcher.max_concurrency must be at least 1")

    autostart = AutostartSettings()
    autostart_section = _coerce_mapping(mapping.get("autostart"))
    if autostart_section:
        autostart = _parse_autostart(autostart_section, autostart, base_dir)

    telemetry = TelemetrySettings()
    telemetry_section = _coerce_mapping(mapping.get("telemetry"))
    if telemetry_section:
        telemetry = TelemetrySettings(
            enable_export=bool(telemetry_section.get("enable_export", telemetry.enable_export)),
            export_path=_resolve_path(telemetry_section.get("export_path"), base_dir),
            service_name=str(telemetry_section.get("service_name", telemetry.service_name)),
            max_events=int(telemetry_section.get("max_events", telemetry.max_events)),
        )
        if telemetry.max_events < 1:
            raise DriverConfigError("telemetry.max_events must be at least 1")

    logging_settings = LoggingSettings()
    logging_section = _coerce_mapping(mapping.get("logging"))
    if logging_section:
        logging_settings = LoggingSettings(level=str(logging_section.get("level", logging_settings.level)).upper())

    drivers_value = mapping.get("drivers", ())
    if not isinstance(drivers_value, (list, tuple)):
        raise DriverConfigError("drivers must be an array of tables")
    definitions = []
    for entry in drivers_value:
        if not isinstance(entry, Mapping):
            raise DriverConfigError("drivers entries must be tables")
        definitions.append(_parse_driver(entry, base_dir))

    return Settings(
        dispatcher=dispatcher,
        autostart=autostart,
        telemetry=telemetry,
        logging=logging_settings,
        drivers=tuple(definitions),
    )


def _parse_autostart(section: Mapping[str, Any], base: AutostartSettings, base_dir: Optional[Path]) -> AutostartSettings:
    health = base.health
    health_section = _coerce_mapping(section.get("health"))
    restart = base.restart
    restart_section = _coerce_mapping(section.get("restart"))
    try:
        if health_section:
            health = HealthCheckPolicy(
                base_delay=float(health_section.get("base_delay", health.base_delay)),
                max_delay=float(health_section.get("max_delay", health.max_delay)),
                max_attempts=int(health_section.get("max_attempts", health.max_attempts)),
                probe_timeout=float(health_section.get("probe_timeout", health.probe_timeout)),
            )
        if restart_section:
            restart = RestartPolicy(
                max_restarts=int(restart_section.get("max_restarts", restart.max_restarts)),
                window_seconds=float(restart_section.get("window_seconds", restart.window_seconds)),
                restart_on_exit=bool(restart_section.get("restart_on_exit", restart.restart_on_exit)),
            )
    except (TypeError, ValueError) as exc:
        raise DriverConfigError(f"invalid autostart policy: {exc}") from exc

    return AutostartSettings(
        enable=bool(section.get("enable", base.enable)),
        sandbox=_parse_enum(SandboxPolicy, section.get("sandbox"), base.sandbox),
        grace_seconds=float(section.get("grace_seconds", base.grace_seconds)),
        launch_timeout=_optional_float(section.get("launch_timeout"), "autostart.launch_timeout"),
        allowed_commands=_coerce_strings(section.get("allowed_commands")),
        blocked_commands=_coerce_strings(section.get("blocked_commands")),
        log_dir=_resolve_path(section.get("log_dir"), base_dir),
        docker=str(section.get("docker", base.docker)),
        health=health,
        restart=restart,
    )


def _parse_driver(entry: Mapping[str, Any], base_dir: Optional[Path]) -> DriverDefinition:
    meta_fields = {
        key: entry[key]
        for key in ("id", "prefix", "protocol", "transport", "spec_format", "target_llms", "capabilities", "version")
        if key in entry
    }
    meta = DriverMeta.from_mapping(meta_fields)

    spec = entry.get("spec")
    if spec is not None and not isinstance(spec, str):
        raise DriverConfigError(f"driver '{meta.id}' spec must be a string", driver_id=meta.id)
    spec_path = _resolve_path(entry.get("spec_path"), base_dir)
    if spec is None and spec_path is None:
        raise DriverConfigError(f"driver '{meta.id}' needs 'spec' or 'spec_path'", driver_id=meta.id)

    templates_section = entry.get("templates") or {}
    if not isinstance(templates_section, Mapping):
        raise DriverConfigError(f"driver '{meta.id}' templates must be a table", driver_id=meta.id)
    templates = tuple((str(key), str(value)) for key, value in templates_section.items())

    bridge: Optional[BridgeDefinition] = None
    bridge_section = entry.get("bridge")
    if bridge_section is not None:
        if not isinstance(bridge_section, Mapping):
            raise DriverConfigError(f"driver '{meta.id}' bridge must be a table", driver_id=meta.id)
        bridge = _parse_bridge(meta.id, bridge_section, base_dir)

    deployment: Optional[DeploymentInput] = None
    deployment_section = entry.get("deployment")
    if deployment_section is not None:
        try:
            deployment = parse_input(DeploymentInput, deployment_section)
        except ValueError as exc:
            raise DriverConfigError(f"driver '{meta.id}' deployment: {exc}", driver_id=meta.id) from exc

    return DriverDefinition(
        meta=meta,
        spec=spec,
        spec_path=spec_path,
        templates=templates,
        bridge=bridge,
        deployment=deployment,
    )


def _parse_bridge(driver_id: str, section: Mapping[str, Any], base_dir: Optional[Path]) -> BridgeDefinition:
    kind = str(section.get("kind", "")).strip().lower()
    if kind not in BRIDGE_KINDS:
        raise DriverConfigError(
            f"driver '{driver_id}' bridge kind must be one of {sorted(BRIDGE_KINDS)} (got '{kind}')",
            driver_id=driver_id,
        )
    routes = _coerce_pairs(section.get("routes"), f"driver '{driver_id}' bridge.routes")
    functions = _coerce_pairs(section.get("functions"), f"driver '{driver_id}' bridge.functions")
    if kind == "function" and not functions:
        raise DriverConfigError(f"driver '{driver_id}' function bridge needs 'functions'", driver_id=driver_id)
    command = section.get("command")
    if kind == "mcp-stdio" and not command:
        raise DriverConfigError(f"driver '{driver_id}' mcp-stdio bridge needs 'command'", driver_id=driver_id)

    args_value = section.get("args", ())
    if isinstance(args_value, str):
        args = tuple(args_value.split())
    elif isinstance(args_value, (list, tuple)):
        args = tuple(str(item) for item in args_value)
    else:
        raise DriverConfigError(f"driver '{driver_id}' bridge.args must be a list or string", driver_id=driver_id)

    return BridgeDefinition(
        kind=kind,
        url=str(section["url"]) if section.get("url") else None,
        routes=routes,
        functions=functions,
        timeout=float(section.get("timeout", 30.0)),
        health_path=str(section["health_path"]) if section.get("health_path") else None,
        sse_path=str(section.get("sse_path", "/sse")),
        command=str(command) if command else None,
        args=args,
        env=_coerce_pairs(section.get("env"), f"driver '{driver_id}' bridge.env"),
        cwd=_resolve_path(section.get("cwd"), base_dir),
        requires_serial=bool(section.get("requires_serial", False)),
    )


def _coerce_mapping(value: Any) -> Optional[Mapping[str, Any]]:
    return value if isinstance(value, Mapping) else None


def _coerce_pairs(value: Any, label: str) -> Tuple[Tuple[str, str], ...]:
    if value is None:
        return ()
    if not isinstance(value, Mapping):
        raise DriverConfigError(f"{label} must be a table")
    return tuple((str(key), str(item)) for key, item in value.items())


def _coerce_strings(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, Iterable) and not isinstance(value, Mapping):
        items = value
    else:
        raise DriverConfigError("command lists must be a string or an array of strings")
    return tuple(str(part).strip() for part in items if str(part).strip())


def _optional_float(value: Any, label: str) -> Optional[float]:
    if value is None:
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise DriverConfigError(f"{label} must be numeric") from exc
    if parsed <= 0:
        raise DriverConfigError(f"{label} must be positive")
    return parsed


def _resolve_path(value: Any, base_dir: Optional[Path]) -> Optional[Path]:
    if value is None or str(value).strip() == "":
        return None
    candidate = Path(str(value)).expanduser()
    if not candidate.is_absolute() and base_dir is not None:
        candidate = base_dir / candidate
    return candidate.resolve()


def _parse_enum(enum_cls: type[Enum], raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    if isinstance(raw, enum_cls):
        return raw
    if isinstance(raw, str):
        candidate = raw.strip()
        if not candidate:
            return default
        try:
            return enum_cls(candidate.lower())
        except ValueError:
            try:
                return enum_cls[candidate.upper()]
            except KeyError as exc:
                raise DriverConfigError(f"invalid value {raw!r} for {enum_cls.__name__}") from exc
    raise DriverConfigError(f"unsupported value {raw!r} for {enum_cls.__name__}")


def _cast_value(example: Any, raw: Any) -> Any:
    if isinstance(example, Enum):
        return _parse_enum(type(example), raw, example)
    if isinstance(example, bool):
        if isinstance(raw, str):
            lowered = raw.strip().lower()
            if lowered in {"true", "1", "yes", "on"}:
                return True
            if lowered in {"false", "0", "no", "off"}:
                return False
        return bool(raw)
    if isinstance(example, int):
        return int(raw)
    if isinstance(example, float) or example is None and isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(example, tuple):
        if isinstance(raw, str):
            return tuple(part.strip() for part in raw.split(",") if part.strip())
        return tuple(str(item) for item in raw)
    return raw


__all__ = [
    "AutostartSettings",
    "BridgeDefinition",
    "DispatcherSettings",
    "DriverDefinition",
    "LoggingSettings",
    "Settings",
    "TelemetrySettings",
    "load_settings",
    "settings_from_mapping",
]
