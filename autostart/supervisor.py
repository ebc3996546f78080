"""Supervisor that launches, health-checks and restarts driver processes."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Union

from drivers.bridge import BridgeEndpoint
from drivers.meta import DriverMeta
from errors import (
    BridgeUnavailableError,
    DriverError,
    DriverUnavailableError,
    HealthCheckTimeoutError,
    LaunchError,
    LaunchPolicyError,
    LaunchTimeoutError,
    ResolutionError,
)
from policies import HealthCheckPolicy, RestartPolicy

from .descriptor import LaunchDescriptor, resolve_descriptor
from .health import Probe, build_probe, poll_health
from .launcher import ContainerLauncher, Launcher, SubprocessLauncher

logger = logging.getLogger(__name__)


class SupervisorState(Enum):
    UNRESOLVED = "unresolved"
    LAUNCHING = "launching"
    HEALTH_CHECKING = "health_checking"
    READY = "ready"
    CRASHED = "crashed"
    RESTARTING = "restarting"
    STOPPED = "stopped"


StateListener = Callable[[str, SupervisorState, SupervisorState], None]
ProbeFactory = Callable[[LaunchDescriptor, Any, HealthCheckPolicy], Probe]


@dataclass
class SupervisedProcess:
    """Mutable supervisor record for one driver."""

    driver_id: str
    state: SupervisorState = SupervisorState.UNRESOLVED
    descriptor: Optional[LaunchDescriptor] = None
    handle: Any = None
    launcher: Any = None
    endpoint: Optional[BridgeEndpoint] = None
    restart_count: int = 0
    restart_times: Deque[float] = field(default_factory=deque)
    last_error: Optional[str] = None
    launched_at: Optional[float] = None
    changed_at: float = field(default_factory=time.time)
    exhausted: bool = False
    task: Optional["asyncio.Task[BridgeEndpoint]"] = None
    watcher: Optional["asyncio.Task[None]"] = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "driver_id": self.driver_id,
            "state": self.state.value,
            "restart_count": self.restart_count,
            "recent_restarts": len(self.restart_times),
            "exhausted": self.exhausted,
            "last_error": self.last_error,
            "handle": getattr(self.handle, "id", None),
            "endpoint": self.endpoint.redacted() if self.endpoint is not None else None,
            "launched_at": self.launched_at,
            "changed_at": self.changed_at,
        }


def _driver_id(target: Union[DriverMeta, str]) -> str:
    return target.id if isinstance(target, DriverMeta) else str(target)


class AutoStarter:
    """Start drivers on demand and keep them running within a restart budget.

    ``ensure_running`` is safe to call from many tasks at once: the first
    caller for a driver starts a launch task and every other caller awaits
    the same task, so one driver is launched at most once per attempt.
    Callers time out individually without cancelling the shared launch.

    Crashes restart on two schedules. A READY process that exits on its own
    is restarted in the background when ``restart_on_exit`` is set. A launch
    that fails its health check raises ``HealthCheckTimeoutError`` to the
    waiting callers and stays CRASHED; the next ``ensure_running`` performs
    the restart. Both paths draw on the same sliding restart budget, so an
    unhealthy driver reaches STOPPED only as callers keep asking for it.
    """

    def __init__(
        self,
        launchers: Optional[Mapping[str, Launcher]] = None,
        *,
        health_policy: Optional[HealthCheckPolicy] = None,
        restart_policy: Optional[RestartPolicy] = None,
        grace_seconds: float = 5.0,
        deployments: Optional[Mapping[str, Any]] = None,
        probe_factory: Optional[ProbeFactory] = None,
        telemetry: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if launchers is None:
            launchers = {"process": SubprocessLauncher(), "container": ContainerLauncher()}
        self._launchers: Dict[str, Launcher] = dict(launchers)
        self._health_policy = health_policy or HealthCheckPolicy()
        self._restart_policy = restart_policy or RestartPolicy()
        self._grace_seconds = grace_seconds
        self._deployments: Dict[str, Any] = dict(deployments or {})
        self._probe_factory: ProbeFactory = probe_factory or build_probe
        self._telemetry = telemetry
        self._clock = clock
        self._processes: Dict[str, SupervisedProcess] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._global_lock = asyncio.Lock()
        self._listeners: List[StateListener] = []

    @property
    def health_policy(self) -> HealthCheckPolicy:
        return self._health_policy

    @property
    def restart_policy(self) -> RestartPolicy:
        return self._restart_policy

    def register_deployment(self, driver_id: str, deployment: Any) -> None:
        self._deployments[driver_id] = deployment

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Subscribe to state changes; returns a callable that unsubscribes."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def state(self, target: Union[DriverMeta, str]) -> SupervisorState:
        record = self._processes.get(_driver_id(target))
        return record.state if record is not None else SupervisorState.UNRESOLVED

    def status(self, driver_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if driver_id is not None:
            record = self._processes.get(driver_id)
            return record.snapshot() if record is not None else None
        return {key: record.snapshot() for key, record in sorted(self._processes.items())}

    async def ensure_running(
        self,
        meta: DriverMeta,
        *,
        deployment: Any = None,
        timeout: Optional[float] = None,
    ) -> BridgeEndpoint:
        """Return the endpoint of a healthy instance of *meta*, launching it if needed."""
        if deployment is not None:
            self._deployments[meta.id] = deployment
        lock = await self._get_lock(meta.id)
        async with lock:
            record = self._processes.setdefault(meta.id, SupervisedProcess(meta.id))
            if record.state is SupervisorState.READY and record.endpoint is not None:
                return record.endpoint
            if record.state is SupervisorState.STOPPED:
                raise DriverUnavailableError(
                    f"driver '{meta.id}' is stopped; reset it before launching again",
                    driver_id=meta.id,
                    state=record.state.value,
                )
            task = record.task
            if task is None or task.done():
                task = self._begin(meta, record)

        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            raise LaunchTimeoutError(
                f"driver '{meta.id}' was not ready within {timeout}s",
                driver_id=meta.id,
                state=record.state.value,
            )
        if task.cancelled():
            raise DriverUnavailableError(
                f"launch of driver '{meta.id}' was cancelled",
                driver_id=meta.id,
                state=record.state.value,
            )
        return task.result()

    async def stop(self, target: Union[DriverMeta, str], *, grace_seconds: Optional[float] = None) -> bool:
        """Stop the driver; it stays STOPPED until ``reset``."""
        driver_id = _driver_id(target)
        lock = await self._get_lock(driver_id)
        async with lock:
            record = self._processes.get(driver_id)
            if record is None or record.state is SupervisorState.STOPPED:
                return False
            await self._halt(record, grace_seconds)
            self._transition(record, SupervisorState.STOPPED, "stopped")
            return True

    async def reset(self, target: Union[DriverMeta, str]) -> None:
        """Stop any running instance and forget restart history."""
        driver_id = _driver_id(target)
        lock = await self._get_lock(driver_id)
        async with lock:
            record = self._processes.get(driver_id)
            if record is None:
                return
            await self._halt(record, None)
            record.restart_times.clear()
            record.restart_count = 0
            record.exhausted = False
            record.last_error = None
            record.task = None
            self._transition(record, SupervisorState.UNRESOLVED, "reset")

    async def shutdown(self) -> None:
        for driver_id in list(self._processes):
            await self.stop(driver_id)

    def _begin(self, meta: DriverMeta, record: SupervisedProcess) -> "asyncio.Task[BridgeEndpoint]":
        if record.state is SupervisorState.CRASHED:
            record.restart_times.append(self._clock())
            record.restart_count += 1
            self._transition(record, SupervisorState.RESTARTING, f"restart {record.restart_count}")
        task = asyncio.create_task(self._start(meta, record), name=f"autostart:{meta.id}")
        record.task = task
        return task

    async def _start(self, meta: DriverMeta, record: SupervisedProcess) -> BridgeEndpoint:
        restarting = record.state is SupervisorState.RESTARTING
        try:
            descriptor = resolve_descriptor(meta, self._deployments.get(meta.id))
            launcher = self._launchers.get(descriptor.kind)
            if launcher is None:
                raise ResolutionError(
                    f"no launcher configured for '{descriptor.kind}' deployments",
                    driver_id=meta.id,
                    state="unresolved",
                )
            if not restarting:
                self._transition(record, SupervisorState.LAUNCHING)
            handle = await launcher.launch(descriptor)
        except (ResolutionError, LaunchPolicyError) as exc:
            record.last_error = str(exc)
            self._transition(record, SupervisorState.UNRESOLVED, str(exc))
            raise
        except BridgeUnavailableError as exc:
            self._crash(record, str(exc))
            raise
        except Exception as exc:
            self._crash(record, str(exc))
            raise LaunchError(
                f"failed to launch driver '{meta.id}': {exc}",
                driver_id=meta.id,
                state=record.state.value,
            ) from exc

        record.descriptor = descriptor
        record.handle = handle
        record.launcher = launcher
        record.launched_at = time.time()
        self._transition(record, SupervisorState.HEALTH_CHECKING)

        probe = self._probe_factory(descriptor, handle, self._health_policy)
        try:
            await poll_health(
                probe,
                self._health_policy,
                driver_id=meta.id,
                is_alive=lambda: getattr(handle, "returncode", None) is None,
            )
        except HealthCheckTimeoutError as exc:
            await self._teardown(record, None)
            self._crash(record, str(exc))
            exc.state = record.state.value
            raise
        except asyncio.CancelledError:
            await self._teardown(record, None)
            raise

        record.endpoint = descriptor.endpoint()
        record.last_error = None
        self._transition(record, SupervisorState.READY)
        record.watcher = asyncio.create_task(self._watch(meta, record, handle), name=f"autostart-watch:{meta.id}")
        return record.endpoint

    async def _watch(self, meta: DriverMeta, record: SupervisedProcess, handle: Any) -> None:
        code = await handle.wait()
        lock = await self._get_lock(meta.id)
        async with lock:
            if record.handle is not handle or record.state is not SupervisorState.READY:
                return
            record.watcher = None
            logger.warning("Driver %s exited unexpectedly with code %s", meta.id, code)
            record.handle = None
            self._crash(record, f"process exited with code {code}")
            if record.state is SupervisorState.CRASHED and self._restart_policy.restart_on_exit:
                task = self._begin(meta, record)
                task.add_done_callback(_log_background_failure)

    def _crash(self, record: SupervisedProcess, reason: str) -> None:
        record.last_error = reason
        record.endpoint = None
        self._transition(record, SupervisorState.CRASHED, reason)
        self._prune(record)
        if len(record.restart_times) >= self._restart_policy.max_restarts:
            record.exhausted = True
            logger.error(
                "Driver %s exhausted its restart budget (%d in %.0fs)",
                record.driver_id,
                self._restart_policy.max_restarts,
                self._restart_policy.window_seconds,
            )
            self._transition(record, SupervisorState.STOPPED, "restart budget exhausted")

    def _prune(self, record: SupervisedProcess) -> None:
        horizon = self._clock() - self._restart_policy.window_seconds
        while record.restart_times and record.restart_times[0] < horizon:
            record.restart_times.popleft()

    async def _halt(self, record: SupervisedProcess, grace_seconds: Optional[float]) -> None:
        task = record.task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        await self._teardown(record, grace_seconds)

    async def _teardown(self, record: SupervisedProcess, grace_seconds: Optional[float]) -> None:
        handle, launcher, watcher = record.handle, record.launcher, record.watcher
        record.handle = None
        record.endpoint = None
        record.watcher = None
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
        if handle is None or launcher is None:
            return
        grace = self._grace_seconds if grace_seconds is None else grace_seconds
        try:
            await launcher.stop(handle, grace)
        except (OSError, DriverError) as exc:
            logger.warning("Failed to stop driver %s cleanly: %s", record.driver_id, exc)

    def _transition(self, record: SupervisedProcess, new: SupervisorState, detail: Optional[str] = None) -> None:
        previous = record.state
        if previous is new:
            return
        record.state = new
        record.changed_at = time.time()
        logger.info("Driver %s: %s -> %s", record.driver_id, previous.value, new.value)
        if self._telemetry is not None:
            self._telemetry.record_transition(record.driver_id, previous.value, new.value, detail)
        for listener in list(self._listeners):
            try:
                listener(record.driver_id, previous, new)
            except Exception:
                logger.exception("State listener failed for driver %s", record.driver_id)

    async def _get_lock(self, driver_id: str) -> asyncio.Lock:
        async with self._global_lock:
            lock = self._locks.get(driver_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[driver_id] = lock
            return lock


def _log_background_failure(task: "asyncio.Task[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background restart failed: %s", exc)


__all__ = ["AutoStarter", "StateListener", "SupervisedProcess", "SupervisorState"]
