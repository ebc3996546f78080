"""JSON-over-HTTP bridge built on ``urllib``."""
from __future__ import annotations

import asyncio
import json
import logging
import re
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from errors import BridgeCallError, BridgeUnavailableError, MalformedCallError

from ..bridge import BridgeEndpoint, BridgeOperation

logger = logging.getLogger(__name__)

RequestHook = Callable[[urllib.request.Request, BridgeOperation], None]

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")
_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})


@dataclass(frozen=True)
class Route:
    method: str
    path: str

    @classmethod
    def parse(cls, text: str) -> "Route":
        parts = text.strip().split(None, 1)
        if len(parts) == 1:
            method, path = "POST", parts[0]
        else:
            method, path = parts[0].upper(), parts[1].strip()
        if method not in _METHODS:
            raise ValueError(f"unsupported HTTP method '{method}' in route '{text}'")
        if not path.startswith("/"):
            path = "/" + path
        return cls(method=method, path=path)

    def render(self, arguments: Mapping[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Fill path placeholders, returning the path and the unused arguments."""
        remaining = dict(arguments)

        def _sub(match: "re.Match[str]") -> str:
            key = match.group(1)
            if key not in remaining:
                raise MalformedCallError(f"missing path parameter '{key}' for route {self.method} {self.path}")
            return urllib.parse.quote(str(remaining.pop(key)), safe="")

        return _PLACEHOLDER.sub(_sub, self.path), remaining


class HTTPBridge:
    """Translate bridge operations into HTTP requests against one endpoint.

    ``routes`` maps function names to ``"METHOD /path/{param}"`` strings.
    Functions without a route are posted to ``/<function>``. GET and DELETE
    send leftover arguments as a query string, other methods as a JSON body.
    The raw response body is returned as text.
    """

    transport = "http"
    requires_serial = False

    def __init__(
        self,
        endpoint: BridgeEndpoint,
        routes: Optional[Mapping[str, str]] = None,
        *,
        timeout: float = 30.0,
        hooks: Sequence[RequestHook] = (),
        health_path: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.endpoint = endpoint
        self._routes = {name: Route.parse(spec) for name, spec in (routes or {}).items()}
        self._timeout = timeout
        self._hooks = list(hooks)
        self._health_path = health_path
        self._headers = dict(headers or {})

    def add_hook(self, hook: RequestHook) -> None:
        self._hooks.append(hook)

    def route_for(self, name: str) -> Route:
        return self._routes.get(name) or Route(method="POST", path=f"/{name}")

    def build_request(self, operation: BridgeOperation) -> urllib.request.Request:
        route = self.route_for(operation.name)
        path, remaining = route.render(operation.arguments)
        url = self.endpoint.url.rstrip("/") + path
        data: Optional[bytes] = None
        headers = {"Accept": "application/json", **self._headers}
        if route.method in ("GET", "DELETE"):
            if remaining:
                url += "?" + urllib.parse.urlencode(remaining, doseq=True)
        else:
            body: Any = remaining
            if operation.args:
                body = list(operation.args) if not remaining else {"args": list(operation.args), **remaining}
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self.endpoint.token:
            headers["Authorization"] = f"Bearer {self.endpoint.token}"
        request = urllib.request.Request(url, data=data, headers=headers, method=route.method)
        for hook in self._hooks:
            hook(request, operation)
        return request

    async def invoke(self, operation: BridgeOperation) -> str:
        request = self.build_request(operation)
        driver_id = operation.metadata.get("driver_id")
        loop = asyncio.get_running_loop()
        logger.debug("HTTP %s %s", request.get_method(), request.full_url)
        return await loop.run_in_executor(None, self._send, request, driver_id)

    def _send(self, request: urllib.request.Request, driver_id: Optional[str]) -> str:
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                return response.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace") if exc.fp is not None else ""
            raise BridgeCallError(
                f"{request.get_method()} {request.full_url} returned {exc.code}",
                driver_id=driver_id,
                status=exc.code,
                body=body,
            ) from exc
        except (urllib.error.URLError, OSError) as exc:
            raise BridgeUnavailableError(
                f"cannot reach {self.endpoint.url}: {exc}",
                driver_id=driver_id,
                state="bound",
            ) from exc

    async def is_healthy(self) -> bool:
        if self._health_path is None:
            return True
        request = urllib.request.Request(self.endpoint.url.rstrip("/") + self._health_path, method="GET")
        if self.endpoint.token:
            request.add_header("Authorization", f"Bearer {self.endpoint.token}")
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send, request, None)
        except (BridgeCallError, BridgeUnavailableError) as exc:
            logger.debug("HTTP bridge health check failed: %s", exc)
            return False
        return True

    async def aclose(self) -> None:
        return None


def http_bridge_factory(
    routes: Optional[Mapping[str, str]] = None,
    **kwargs: Any,
) -> Callable[[BridgeEndpoint], HTTPBridge]:
    """Return a bridge factory that binds ``HTTPBridge`` to a launched endpoint."""

    def _factory(endpoint: BridgeEndpoint) -> HTTPBridge:
        return HTTPBridge(endpoint, routes, **kwargs)

    return _factory


__all__ = ["HTTPBridge", "RequestHook", "Route", "http_bridge_factory"]
