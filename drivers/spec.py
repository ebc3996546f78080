"""Spec providers: produce and cache the function description of a driver."""
from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Union

from errors import SpecUnavailableError
from prompt.renderers import render_system_message, render_template

logger = logging.getLogger(__name__)

ArtifactSource = Callable[[Optional[str]], Union[str, bytes, Mapping[str, Any]]]

_DEFAULT_KEY = "*"


@dataclass(frozen=True)
class SpecArtifact:
    """An opaque, format-tagged description document."""

    content: str
    format: str
    model_hint: Optional[str] = None

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.content.encode("utf-8")).hexdigest()[:16]

    def __str__(self) -> str:
        return self.content


class SpecProvider(Protocol):
    """Protocol describing spec providers."""

    def describe(self, model_hint: Optional[str] = None) -> SpecArtifact:
        ...

    def system_message(self, model_hint: Optional[str] = None) -> str:
        ...


class CachingSpecProvider:
    """Spec provider that builds artifacts from a source callable and caches them per model hint.

    ``invalidate`` drops cached entries and bumps a generation counter; a build
    that started before an invalidation is returned to its caller but never
    stored, so the cache cannot serve an artifact older than the last
    invalidation.
    """

    def __init__(
        self,
        source: ArtifactSource,
        *,
        spec_format: str = "text",
        templates: Optional[Mapping[str, str]] = None,
        driver_id: Optional[str] = None,
        target: Optional[str] = None,
        protocol: str = "custom",
        transport: str = "custom",
    ) -> None:
        self._source = source
        self._format = spec_format
        self._templates = dict(templates or {})
        self.driver_id = driver_id
        self.target = target
        self.protocol = protocol
        self.transport = transport
        self._cache: Dict[str, SpecArtifact] = {}
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def spec_format(self) -> str:
        return self._format

    def bind_meta(self, meta: Any) -> None:
        """Adopt identity fields from a ``DriverMeta`` at registration time."""
        self.driver_id = self.driver_id or meta.id
        self.target = self.target or meta.prefix or meta.id
        if self.protocol == "custom":
            self.protocol = meta.protocol
        if self.transport == "custom":
            self.transport = meta.transport
        if self._format == "text" and meta.spec_format:
            self._format = meta.spec_format

    def describe(self, model_hint: Optional[str] = None) -> SpecArtifact:
        key = _cache_key(model_hint)
        with self._lock:
            cached = self._cache.get(key)
            generation = self._generation
        if cached is not None:
            return cached

        artifact = self._build(model_hint)
        with self._lock:
            if generation == self._generation:
                self._cache.setdefault(key, artifact)
                artifact = self._cache[key]
        logger.debug("Built spec artifact for %s (model=%s, digest=%s)", self.driver_id, key, artifact.digest)
        return artifact

    def system_message(self, model_hint: Optional[str] = None) -> str:
        artifact = self.describe(model_hint)
        driver_id = self.driver_id or "driver"
        target = self.target or driver_id
        template = self._templates.get(model_hint) if model_hint else None
        if template is None:
            template = self._templates.get(_DEFAULT_KEY)
        if template is not None:
            return render_template(
                template,
                content=artifact.content,
                driver_id=driver_id,
                target=target,
                model_hint=model_hint,
            )
        return render_system_message(
            driver_id=driver_id,
            target=target,
            protocol=self.protocol,
            transport=self.transport,
            spec_format=artifact.format,
            content=artifact.content,
        )

    def invalidate(self, model_hint: Optional[str] = None) -> None:
        """Drop the artifact cached for *model_hint*, or every artifact when omitted."""
        with self._lock:
            self._generation += 1
            if model_hint is None:
                self._cache.clear()
            else:
                self._cache.pop(_cache_key(model_hint), None)

    def cached_hints(self) -> list[str]:
        with self._lock:
            return sorted(self._cache)

    def _build(self, model_hint: Optional[str]) -> SpecArtifact:
        try:
            raw = self._source(model_hint)
        except SpecUnavailableError:
            raise
        except Exception as exc:
            raise SpecUnavailableError(
                f"spec source failed for driver '{self.driver_id}': {exc}",
                driver_id=self.driver_id,
            ) from exc

        content = _render_content(raw, driver_id=self.driver_id)
        if not content.strip():
            raise SpecUnavailableError(
                f"spec source returned an empty artifact for driver '{self.driver_id}'",
                driver_id=self.driver_id,
            )
        return SpecArtifact(content=content, format=self._format, model_hint=model_hint)


class StaticSpecProvider(CachingSpecProvider):
    """Provider serving a fixed document for every model hint."""

    def __init__(self, document: Union[str, bytes, Mapping[str, Any]], **kwargs: Any) -> None:
        super().__init__(lambda _hint: document, **kwargs)


class FileSpecProvider(CachingSpecProvider):
    """Provider reading the artifact from a file; ``invalidate`` re-reads it."""

    def __init__(self, path: Path, **kwargs: Any) -> None:
        self.path = Path(path)
        super().__init__(self._read, **kwargs)

    def _read(self, _hint: Optional[str]) -> str:
        return self.path.read_text(encoding="utf-8")


def _cache_key(model_hint: Optional[str]) -> str:
    if model_hint is None:
        return _DEFAULT_KEY
    return model_hint.strip() or _DEFAULT_KEY


def _render_content(raw: Any, *, driver_id: Optional[str]) -> str:
    if isinstance(raw, bytes):
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SpecUnavailableError(
                f"spec artifact for driver '{driver_id}' is not valid UTF-8",
                driver_id=driver_id,
            ) from exc
    if isinstance(raw, str):
        return raw
    if isinstance(raw, (Mapping, list)):
        return json.dumps(raw, ensure_ascii=False, indent=2, sort_keys=True)
    if raw is None:
        return ""
    raise SpecUnavailableError(
        f"spec source for driver '{driver_id}' returned unsupported type {type(raw).__name__}",
        driver_id=driver_id,
    )


__all__ = [
    "ArtifactSource",
    "CachingSpecProvider",
    "FileSpecProvider",
    "SpecArtifact",
    "SpecProvider",
    "StaticSpecProvider",
]
