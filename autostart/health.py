"""Health probes and bounded polling for launched drivers."""
from __future__ import annotations

import asyncio
import logging
import urllib.error
import urllib.request
from typing import Any, Awaitable, Callable, Optional

from errors import HealthCheckTimeoutError
from policies import HealthCheckPolicy

from .descriptor import LaunchDescriptor

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[bool]]


def _http_get_status(url: str, timeout: float, token: Optional[str]) -> int:
    request = urllib.request.Request(url, method="GET")
    if token:
        request.add_header("Authorization", f"Bearer {token}")
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return int(response.status)
    except urllib.error.HTTPError as exc:
        return int(exc.code)


def http_probe(url: str, *, timeout: float = 2.0, token: Optional[str] = None) -> Probe:
    """Probe that succeeds on a 2xx response to ``GET url``."""

    async def _probe() -> bool:
        loop = asyncio.get_running_loop()
        try:
            status = await loop.run_in_executor(None, _http_get_status, url, timeout, token)
        except (urllib.error.URLError, OSError, ValueError) as exc:
            logger.debug("HTTP probe %s failed: %s", url, exc)
            return False
        return 200 <= status < 300

    return _probe


def tcp_probe(host: str, port: int, *, timeout: float = 2.0) -> Probe:
    """Probe that succeeds when a TCP connection can be opened."""

    async def _probe() -> bool:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.debug("TCP probe %s:%s failed: %s", host, port, exc)
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    return _probe


def process_probe(handle: Any) -> Probe:
    """Probe that succeeds while the launched process has not exited."""

    async def _probe() -> bool:
        return getattr(handle, "returncode", None) is None

    return _probe


def build_probe(descriptor: LaunchDescriptor, handle: Any, policy: HealthCheckPolicy) -> Probe:
    if descriptor.health_kind == "http" and descriptor.health_url:
        return http_probe(descriptor.health_url, timeout=policy.probe_timeout, token=descriptor.token)
    if descriptor.health_kind == "tcp" and descriptor.port is not None:
        return tcp_probe(descriptor.host, descriptor.port, timeout=policy.probe_timeout)
    return process_probe(handle)


async def poll_health(
    probe: Probe,
    policy: HealthCheckPolicy,
    *,
    driver_id: str,
    is_alive: Optional[Callable[[], bool]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> int:
    """Poll *probe* with exponential backoff until it reports healthy.

    Returns the number of attempts used. Raises ``HealthCheckTimeoutError``
    once ``policy.max_attempts`` probes have failed, or as soon as
    *is_alive* reports that the process has exited.
    """
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        if is_alive is not None and not is_alive():
            raise HealthCheckTimeoutError(
                f"driver '{driver_id}' exited during health check",
                driver_id=driver_id,
                state="health_checking",
            )
        if await probe():
            logger.debug("Driver %s healthy after %d attempt(s)", driver_id, attempt)
            return attempt
        delay = next(delays, None)
        if delay is None:
            raise HealthCheckTimeoutError(
                f"driver '{driver_id}' did not become healthy after {attempt} attempt(s)",
                driver_id=driver_id,
                state="health_checking",
            )
        await sleep(delay)


__all__ = ["Probe", "build_probe", "http_probe", "poll_health", "process_probe", "tcp_probe"]
