"""Driver registry used for lookup by the dispatcher and enumeration by callers."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from errors import DuplicateIdError, DuplicatePrefixError, UnknownTargetError
from prompt.renderers import render_table

from .bridge import BridgeEndpoint, BridgeFactory
from .capabilities import CapabilityHandler, CapabilitySet
from .driver import Driver, DriverHandle, Translator
from .meta import DriverMeta
from .spec import SpecArtifact, SpecProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Snapshot:
    by_id: Mapping[str, Driver] = field(default_factory=lambda: MappingProxyType({}))
    by_prefix: Mapping[str, Driver] = field(default_factory=lambda: MappingProxyType({}))
    order: tuple[str, ...] = ()


class DriverRegistry:
    """Central registry mapping driver ids and prefixes to drivers.

    Writers build a complete new snapshot under a lock and publish it with a
    single attribute assignment; readers never lock and always see either the
    previous or the next snapshot.
    """

    def __init__(self) -> None:
        self._snapshot = _Snapshot()
        self._write_lock = threading.Lock()

    def register(
        self,
        meta: DriverMeta,
        spec_provider: SpecProvider,
        bridge: Any = None,
        *,
        capabilities: Optional[Mapping[str, CapabilityHandler]] = None,
        translator: Optional[Translator] = None,
        bridge_factory: Optional[BridgeFactory] = None,
        deployment: Any = None,
        endpoint: Optional[BridgeEndpoint] = None,
    ) -> DriverHandle:
        capability_set = CapabilitySet(meta.capabilities, capabilities)
        capability_set.validate(meta.id)

        with self._write_lock:
            current = self._snapshot
            if meta.id in current.by_id:
                raise DuplicateIdError(meta.id)
            prefix_owner = current.by_prefix.get(meta.id)
            if prefix_owner is not None:
                raise DuplicateIdError(meta.id, existing_id=prefix_owner.id)
            if meta.prefix:
                owner = current.by_prefix.get(meta.prefix) or current.by_id.get(meta.prefix)
                if owner is not None:
                    raise DuplicatePrefixError(meta.prefix, driver_id=meta.id, existing_id=owner.id)

            # Providers adopt identity only once the registration is accepted.
            bind_meta = getattr(spec_provider, "bind_meta", None)
            if callable(bind_meta):
                bind_meta(meta)
            driver = Driver(
                meta,
                spec_provider,
                bridge,
                capabilities=capability_set,
                translator=translator,
                bridge_factory=bridge_factory,
                deployment=deployment,
                endpoint=endpoint,
            )

            by_id = dict(current.by_id)
            by_id[meta.id] = driver
            by_prefix = dict(current.by_prefix)
            if meta.prefix:
                by_prefix[meta.prefix] = driver
            self._snapshot = _Snapshot(
                by_id=MappingProxyType(by_id),
                by_prefix=MappingProxyType(by_prefix),
                order=current.order + (meta.id,),
            )

        logger.info("Registered driver %s (prefix=%s, version=%s)", meta.id, meta.prefix, meta.version)
        return driver

    def unregister(self, driver_id: str) -> Driver:
        with self._write_lock:
            current = self._snapshot
            driver = current.by_id.get(driver_id)
            if driver is None:
                raise UnknownTargetError(driver_id)
            by_id = {key: value for key, value in current.by_id.items() if key != driver_id}
            by_prefix = {key: value for key, value in current.by_prefix.items() if value is not driver}
            self._snapshot = _Snapshot(
                by_id=MappingProxyType(by_id),
                by_prefix=MappingProxyType(by_prefix),
                order=tuple(item for item in current.order if item != driver_id),
            )
        logger.info("Unregistered driver %s", driver_id)
        return driver

    def get(self, id_or_prefix: str) -> Optional[Driver]:
        snapshot = self._snapshot
        driver = snapshot.by_id.get(id_or_prefix)
        if driver is not None:
            return driver
        return snapshot.by_prefix.get(id_or_prefix)

    def lookup(self, id_or_prefix: str) -> Driver:
        """Resolve by exact id first, then by prefix."""
        driver = self.get(id_or_prefix)
        if driver is None:
            raise UnknownTargetError(id_or_prefix)
        return driver

    def list(self, model_hint: Optional[str] = None) -> List[DriverMeta]:
        snapshot = self._snapshot
        metas = [snapshot.by_id[driver_id].meta for driver_id in snapshot.order]
        if model_hint is None:
            return metas
        return [meta for meta in metas if meta.supports_model(model_hint)]

    def drivers(self) -> List[Driver]:
        snapshot = self._snapshot
        return [snapshot.by_id[driver_id] for driver_id in snapshot.order]

    def describe_all(self, model_hint: Optional[str] = None) -> Dict[str, SpecArtifact]:
        """Return the spec artifact of every driver targeting *model_hint*."""
        artifacts: Dict[str, SpecArtifact] = {}
        for meta in self.list(model_hint):
            artifacts[meta.id] = self.lookup(meta.id).describe(model_hint)
        return artifacts

    def catalog(self, model_hint: Optional[str] = None) -> str:
        """Render a plain-text index of the available drivers."""
        rows = [
            [
                meta.id,
                meta.prefix or "-",
                f"{meta.protocol}/{meta.transport}",
                meta.spec_format,
                ", ".join(sorted(meta.capabilities)) or "-",
            ]
            for meta in self.list(model_hint)
        ]
        return render_table(["driver", "prefix", "protocol", "spec", "capabilities"], rows)

    def __contains__(self, id_or_prefix: object) -> bool:
        return isinstance(id_or_prefix, str) and self.get(id_or_prefix) is not None

    def __len__(self) -> int:
        return len(self._snapshot.order)

    async def aclose(self) -> None:
        """Close every bound bridge."""
        for driver in self.drivers():
            await driver.aclose()


__all__ = ["DriverRegistry"]
