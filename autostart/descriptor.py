"""Resolve driver deployment metadata into a runnable launch descriptor."""
from __future__ import annotations

import os
import secrets
import shlex
import shutil
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple

from drivers.bridge import BridgeEndpoint
from drivers.meta import DriverMeta
from drivers.schemas import DeploymentInput, parse_input
from errors import ResolutionError


@dataclass(frozen=True)
class LaunchDescriptor:
    """Everything a launcher needs to start one driver instance."""

    driver_id: str
    kind: str
    argv: Tuple[str, ...] = ()
    image: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    host: str = "127.0.0.1"
    port: Optional[int] = None
    container_port: Optional[int] = None
    scheme: str = "http"
    health_kind: str = "process"
    health_path: Optional[str] = None
    token: Optional[str] = None

    @property
    def is_container(self) -> bool:
        return self.kind == "container"

    @property
    def health_url(self) -> Optional[str]:
        if self.health_kind != "http" or self.port is None:
            return None
        path = self.health_path or "/"
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.scheme}://{self.host}:{self.port}{path}"

    def endpoint(self) -> BridgeEndpoint:
        return BridgeEndpoint(
            address=self.host,
            port=self.port,
            token=self.token,
            scheme=self.scheme,
            extra={"driver_id": self.driver_id, "kind": self.kind},
        )


def resolve_descriptor(meta: DriverMeta, deployment: Any) -> LaunchDescriptor:
    """Build a ``LaunchDescriptor`` for *meta* or raise ``ResolutionError``.

    A fresh auth token is minted per resolution when the deployment names an
    ``auth_token_env`` variable, so every launch gets its own credential.
    """
    if deployment is None:
        raise ResolutionError(
            f"driver '{meta.id}' declares no deployment metadata",
            driver_id=meta.id,
            state="unresolved",
        )
    if isinstance(deployment, DeploymentInput):
        spec = deployment
    elif isinstance(deployment, Mapping):
        try:
            spec = parse_input(DeploymentInput, deployment)
        except ValueError as exc:
            raise ResolutionError(
                f"invalid deployment for driver '{meta.id}': {exc}",
                driver_id=meta.id,
                state="unresolved",
            ) from exc
    else:
        raise ResolutionError(
            f"unsupported deployment type {type(deployment).__name__} for driver '{meta.id}'",
            driver_id=meta.id,
            state="unresolved",
        )

    env = {str(key): str(value) for key, value in spec.env.items()}
    token: Optional[str] = None
    if spec.auth_token_env:
        token = secrets.token_urlsafe(24)
        env[spec.auth_token_env] = token

    argv: Tuple[str, ...] = ()
    if spec.kind == "process":
        argv = tuple(shlex.split(spec.command or "")) + tuple(spec.args)
        if not argv:
            raise ResolutionError(
                f"driver '{meta.id}' has an empty launch command",
                driver_id=meta.id,
                state="unresolved",
            )
        executable = _resolve_executable(argv[0], spec.cwd)
        if executable is None:
            raise ResolutionError(
                f"executable '{argv[0]}' for driver '{meta.id}' was not found",
                driver_id=meta.id,
                state="unresolved",
            )
        argv = (executable,) + argv[1:]
    else:
        argv = tuple(spec.args)

    return LaunchDescriptor(
        driver_id=meta.id,
        kind=spec.kind,
        argv=argv,
        image=spec.image,
        env=env,
        cwd=spec.cwd,
        host=spec.host,
        port=spec.port,
        container_port=spec.container_port,
        scheme=spec.scheme,
        health_kind=spec.health_kind(),
        health_path=spec.health_path,
        token=token,
    )


def _resolve_executable(name: str, cwd: Optional[str]) -> Optional[str]:
    if os.sep in name or (os.altsep and os.altsep in name):
        candidate = name if os.path.isabs(name) or not cwd else os.path.join(cwd, name)
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
        return None
    return shutil.which(name)


__all__ = ["LaunchDescriptor", "resolve_descriptor"]
