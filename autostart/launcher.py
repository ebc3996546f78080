"""Launchers that start drivers inside a process sandbox or a container."""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import time
import uuid
from pathlib import Path
from typing import Any, Dict, IO, List, Mapping, Optional, Protocol, Sequence

from errors import LaunchError, LaunchPolicyError, ResolutionError
from policies import LaunchContext

from .descriptor import LaunchDescriptor

logger = logging.getLogger(__name__)


class ProcessHandle(Protocol):
    """A running process or container started by a launcher."""

    @property
    def id(self) -> str:
        ...

    @property
    def returncode(self) -> Optional[int]:
        ...

    async def wait(self) -> int:
        ...


class Launcher(Protocol):
    async def launch(self, descriptor: LaunchDescriptor) -> ProcessHandle:
        ...

    async def stop(self, handle: ProcessHandle, grace_seconds: float) -> None:
        ...


def _merge_env(overrides: Optional[Mapping[str, str]]) -> Dict[str, str]:
    merged: Dict[str, str] = {**os.environ}
    for key, value in (overrides or {}).items():
        merged[str(key)] = str(value)
    return merged


def _check_policy(context: LaunchContext, descriptor: LaunchDescriptor, command: Sequence[str]) -> None:
    allowed, reason = context.can_launch(command, container=descriptor.is_container)
    if not allowed:
        raise LaunchPolicyError(
            f"launch of driver '{descriptor.driver_id}' blocked by policy: {reason}",
            driver_id=descriptor.driver_id,
            state="launching",
        )


class SubprocessHandle:
    """Handle around an ``asyncio`` subprocess running in its own session."""

    def __init__(self, process: asyncio.subprocess.Process, logs: Sequence[IO[Any]] = ()) -> None:
        self._process = process
        self._logs = list(logs)
        self.started_at = time.time()

    @property
    def id(self) -> str:
        return f"pid:{self._process.pid}"

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    async def wait(self) -> int:
        code = await self._process.wait()
        self._close_logs()
        return code

    def send_signal(self, sig: int) -> None:
        if self._process.returncode is not None:
            return
        try:
            if hasattr(os, "killpg"):
                os.killpg(self._process.pid, sig)
            else:  # pragma: no cover - non-posix
                self._process.send_signal(sig)
        except ProcessLookupError:
            pass

    def _close_logs(self) -> None:
        for fh in self._logs:
            if not fh.closed:
                fh.close()
        self._logs.clear()


class SubprocessLauncher:
    """Start process deployments with ``asyncio.create_subprocess_exec``.

    Each driver runs in a new session so the whole process group can be
    signalled on stop. Output goes to per-launch log files under *log_dir*,
    or is discarded when no directory is configured.
    """

    def __init__(self, context: Optional[LaunchContext] = None, *, log_dir: Optional[Path] = None) -> None:
        self._context = context or LaunchContext()
        self._log_dir = Path(log_dir) if log_dir else None

    async def launch(self, descriptor: LaunchDescriptor) -> SubprocessHandle:
        if descriptor.is_container:
            raise ResolutionError(
                f"subprocess launcher cannot start container driver '{descriptor.driver_id}'",
                driver_id=descriptor.driver_id,
                state="launching",
            )
        _check_policy(self._context, descriptor, descriptor.argv)

        stdout: Any = asyncio.subprocess.DEVNULL
        stderr: Any = asyncio.subprocess.DEVNULL
        logs: List[IO[Any]] = []
        if self._log_dir is not None:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            stem = f"{descriptor.driver_id}-{time.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"
            stdout = open(self._log_dir / f"{stem}.out.log", "w", encoding="utf-8")
            stderr = open(self._log_dir / f"{stem}.err.log", "w", encoding="utf-8")
            logs = [stdout, stderr]

        try:
            process = await asyncio.create_subprocess_exec(
                *descriptor.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                env=_merge_env(descriptor.env),
                cwd=descriptor.cwd or None,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as exc:
            for fh in logs:
                fh.close()
            raise ResolutionError(
                f"cannot execute '{descriptor.argv[0]}' for driver '{descriptor.driver_id}': {exc}",
                driver_id=descriptor.driver_id,
                state="launching",
            ) from exc
        except OSError as exc:
            for fh in logs:
                fh.close()
            raise LaunchError(
                f"failed to start driver '{descriptor.driver_id}': {exc}",
                driver_id=descriptor.driver_id,
                state="launching",
            ) from exc

        logger.info("Launched driver %s as pid %s", descriptor.driver_id, process.pid)
        return SubprocessHandle(process, logs)

    async def stop(self, handle: ProcessHandle, grace_seconds: float) -> None:
        if not isinstance(handle, SubprocessHandle):
            raise TypeError(f"unexpected handle type {type(handle).__name__}")
        if handle.returncode is None:
            handle.send_signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(handle.wait(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("Driver pid %s ignored SIGTERM; killing", handle.pid)
                handle.send_signal(signal.SIGKILL)
        await handle.wait()


class ContainerHandle:
    """Handle for a detached container; ``wait`` blocks on ``docker wait``."""

    def __init__(self, docker: str, container_id: str, name: str) -> None:
        self._docker = docker
        self._id = container_id
        self.name = name
        self._returncode: Optional[int] = None
        self._wait_lock = asyncio.Lock()
        self.started_at = time.time()

    @property
    def id(self) -> str:
        return self._id

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    async def wait(self) -> int:
        async with self._wait_lock:
            if self._returncode is not None:
                return self._returncode
            code, output = await _run_cli(self._docker, "wait", self._id)
            try:
                self._returncode = int(output.strip().splitlines()[-1]) if code == 0 else code
            except (IndexError, ValueError):
                self._returncode = code if code != 0 else -1
            return self._returncode


class ContainerLauncher:
    """Start container deployments through the docker CLI."""

    def __init__(
        self,
        context: Optional[LaunchContext] = None,
        *,
        docker: str = "docker",
        network: Optional[str] = None,
        extra_args: Sequence[str] = (),
    ) -> None:
        self._context = context or LaunchContext()
        self._docker = docker
        self._network = network
        self._extra_args = tuple(extra_args)

    def build_run_command(self, descriptor: LaunchDescriptor, *, name: str) -> List[str]:
        if not descriptor.image:
            raise ResolutionError(
                f"container driver '{descriptor.driver_id}' has no image",
                driver_id=descriptor.driver_id,
                state="launching",
            )
        command = [self._docker, "run", "--detach", "--rm", "--name", name]
        if self._network:
            command += ["--network", self._network]
        if descriptor.port is not None:
            inner = descriptor.container_port or descriptor.port
            command += ["--publish", f"{descriptor.host}:{descriptor.port}:{inner}"]
        for key, value in sorted(descriptor.env.items()):
            command += ["--env", f"{key}={value}"]
        command += list(self._extra_args)
        command.append(descriptor.image)
        command += list(descriptor.argv)
        return command

    async def launch(self, descriptor: LaunchDescriptor) -> ContainerHandle:
        docker = shutil.which(self._docker) or (self._docker if os.path.isfile(self._docker) else None)
        if docker is None:
            raise ResolutionError(
                f"container runtime '{self._docker}' not found for driver '{descriptor.driver_id}'",
                driver_id=descriptor.driver_id,
                state="launching",
            )
        name = f"llmdrv-{descriptor.driver_id.replace(':', '-')}-{uuid.uuid4().hex[:8]}"
        command = self.build_run_command(descriptor, name=name)
        command[0] = docker
        _check_policy(self._context, descriptor, command)

        code, output = await _run_cli(*command)
        if code != 0:
            raise LaunchError(
                f"container launch for driver '{descriptor.driver_id}' failed ({code}): {output.strip()}",
                driver_id=descriptor.driver_id,
                state="launching",
            )
        container_id = output.strip().splitlines()[-1] if output.strip() else name
        logger.info("Launched driver %s as container %s", descriptor.driver_id, container_id[:12])
        return ContainerHandle(docker, container_id, name)

    async def stop(self, handle: ProcessHandle, grace_seconds: float) -> None:
        if not isinstance(handle, ContainerHandle):
            raise TypeError(f"unexpected handle type {type(handle).__name__}")
        if handle.returncode is not None:
            return
        timeout = max(int(grace_seconds), 0)
        try:
            code, output = await asyncio.wait_for(
                _run_cli(self._docker, "stop", "--time", str(timeout), handle.id),
                timeout=grace_seconds + 10,
            )
        except asyncio.TimeoutError:
            code, output = -1, "docker stop timed out"
        if code != 0:
            logger.warning("docker stop for %s failed (%s); killing", handle.id[:12], output.strip())
            await _run_cli(self._docker, "kill", handle.id)


async def _run_cli(*command: str) -> tuple[int, str]:
    process = await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    stdout, _ = await process.communicate()
    return process.returncode or 0, stdout.decode("utf-8", errors="replace")


__all__ = [
    "ContainerHandle",
    "ContainerLauncher",
    "Launcher",
    "ProcessHandle",
    "SubprocessHandle",
    "SubprocessLauncher",
]
