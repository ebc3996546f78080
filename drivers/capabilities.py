"""Optional capability flags and their handler bindings."""
from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple, TYPE_CHECKING, Union

from errors import DriverConfigError

from .bridge import bridge_is_healthy

if TYPE_CHECKING:  # pragma: no cover
    from .driver import Driver

logger = logging.getLogger(__name__)

HEALTHCHECK = "healthcheck"
CACHE = "cache"
STATUS = "status"
STREAM = "stream"

RECOGNIZED_CAPABILITIES: FrozenSet[str] = frozenset({HEALTHCHECK, CACHE, STATUS, STREAM})

CapabilityHandler = Callable[["Driver", Dict[str, Any]], Union[Any, Awaitable[Any]]]


class CapabilitySet:
    """Declared capability flags of one driver plus their handler bindings.

    Only recognized flags take part in dispatch; unrecognized declared flags
    are kept for feature detection by callers but never routed.
    """

    def __init__(
        self,
        declared: Iterable[str],
        bindings: Optional[Mapping[str, CapabilityHandler]] = None,
    ) -> None:
        self._declared = frozenset(str(flag).lower() for flag in declared)
        self._bindings: Dict[str, CapabilityHandler] = {
            str(name).lower(): handler for name, handler in (bindings or {}).items()
        }

    @property
    def declared(self) -> FrozenSet[str]:
        return self._declared

    def recognized(self) -> FrozenSet[str]:
        return self._declared & RECOGNIZED_CAPABILITIES

    def supports(self, flag: str) -> bool:
        name = flag.lower()
        return name in self.recognized() and name in self._bindings

    def handler(self, flag: str) -> Optional[CapabilityHandler]:
        name = flag.lower()
        if name not in self.recognized():
            return None
        return self._bindings.get(name)

    def validate(self, driver_id: str) -> None:
        """Raise ``DriverConfigError`` when declarations and bindings disagree."""
        missing = sorted(flag for flag in self.recognized() if flag not in self._bindings)
        if missing:
            raise DriverConfigError(
                f"driver '{driver_id}' declares capabilities without handlers: {', '.join(missing)}",
                driver_id=driver_id,
            )
        undeclared = sorted(name for name in self._bindings if name not in self._declared)
        if undeclared:
            raise DriverConfigError(
                f"driver '{driver_id}' binds undeclared capabilities: {', '.join(undeclared)}",
                driver_id=driver_id,
            )
        for name, handler in self._bindings.items():
            if not callable(handler):
                raise DriverConfigError(
                    f"capability '{name}' of driver '{driver_id}' is not callable",
                    driver_id=driver_id,
                )
        ignored = sorted(self._declared - RECOGNIZED_CAPABILITIES)
        if ignored:
            logger.debug("Driver %s declares unrecognized capabilities %s; ignoring", driver_id, ignored)


CAPABILITY_PREFIX = "capability:"


def is_capability_call(function: str) -> bool:
    return capability_request(function)[0] is not None


def capability_request(function: str) -> Tuple[Optional[str], bool]:
    """Split a called function name into ``(flag, explicit)``.

    ``capability:<flag>`` always addresses the capability. A bare recognized
    flag name addresses it only when the driver declares that flag; otherwise
    the name is an ordinary backend function.
    """
    name = function.strip().lower()
    if name.startswith(CAPABILITY_PREFIX):
        return name[len(CAPABILITY_PREFIX):].strip(), True
    if name in RECOGNIZED_CAPABILITIES:
        return name, False
    return None, False


async def invoke_capability(handler: CapabilityHandler, driver: "Driver", arguments: Dict[str, Any]) -> Any:
    result = handler(driver, arguments)
    if inspect.isawaitable(result):
        result = await result
    return result


async def status_handler(driver: "Driver", arguments: Dict[str, Any]) -> Dict[str, Any]:
    return driver.status()


async def cache_handler(driver: "Driver", arguments: Dict[str, Any]) -> Dict[str, Any]:
    """Warm the spec cache for the requested model hints (default: every target)."""
    hints = arguments.get("models") or list(driver.meta.target_llms)
    if isinstance(hints, str):
        hints = [hints]
    warmed: Dict[str, str] = {}
    for hint in hints:
        model_hint = None if hint == "*" else str(hint)
        warmed[str(hint)] = driver.spec_provider.describe(model_hint).digest
    return {"driver_id": driver.id, "warmed": warmed}


async def healthcheck_handler(driver: "Driver", arguments: Dict[str, Any]) -> Dict[str, Any]:
    bridge = driver.bridge
    healthy = bridge is not None and await bridge_is_healthy(bridge)
    return {"driver_id": driver.id, "healthy": healthy}


BUILTIN_HANDLERS: Dict[str, CapabilityHandler] = {
    STATUS: status_handler,
    CACHE: cache_handler,
    HEALTHCHECK: healthcheck_handler,
}


def builtin_bindings(declared: Iterable[str]) -> Dict[str, CapabilityHandler]:
    """Return built-in handlers for the declared flags that have one."""
    return {flag: BUILTIN_HANDLERS[flag] for flag in declared if flag in BUILTIN_HANDLERS}


__all__ = [
    "BUILTIN_HANDLERS",
    "CACHE",
    "CAPABILITY_PREFIX",
    "CapabilityHandler",
    "CapabilitySet",
    "HEALTHCHECK",
    "RECOGNIZED_CAPABILITIES",
    "STATUS",
    "STREAM",
    "builtin_bindings",
    "cache_handler",
    "capability_request",
    "healthcheck_handler",
    "invoke_capability",
    "is_capability_call",
    "status_handler",
]
