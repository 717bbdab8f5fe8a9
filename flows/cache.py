"""
Flow Cache — one validated flow per tenant, loaded lazily on first use.

Reads vastly outnumber writes: a write only happens on a cache miss. The
load itself runs outside the lock, so a slow disk read for one tenant never
blocks lookups for the others. Two concurrent misses for the same tenant may
both load; the last store wins, which is harmless because loading is
idempotent and side-effect free. Failures are never cached, so the next
request retries the load.
"""
from __future__ import annotations

import threading
from functools import partial
import structlog
from pathlib import Path
from typing import Callable, Iterable, Optional

from flows.loader import load_flow
from models.schemas import FlowDefinition

logger = structlog.get_logger()

FlowLoader = Callable[[str], FlowDefinition]


class FlowCache:

    def __init__(
        self,
        loader: Optional[FlowLoader] = None,
        config_root: str | Path = "configs",
        known_actions: Optional[Iterable[str]] = None,
    ):
        if loader is None:
            actions = set(known_actions) if known_actions is not None else None
            loader = partial(load_flow, config_root=config_root, known_actions=actions)
        self._loader = loader
        self._flows: dict[str, FlowDefinition] = {}
        self._lock = threading.Lock()

    def get(self, tenant: str) -> FlowDefinition:
        """Return the tenant's flow, loading and validating it on a miss."""
        with self._lock:
            flow = self._flows.get(tenant)
        if flow is not None:
            return flow

        flow = self._loader(tenant)          # raises FlowConfigError; not cached
        with self._lock:
            self._flows[tenant] = flow
        logger.info("flow_cached", tenant=tenant, version=flow.version)
        return flow

    def peek(self, tenant: str) -> Optional[FlowDefinition]:
        with self._lock:
            return self._flows.get(tenant)

    def invalidate(self, tenant: Optional[str] = None) -> None:
        """Drop one tenant's entry, or every entry when no tenant is given."""
        with self._lock:
            if tenant is None:
                self._flows.clear()
            else:
                self._flows.pop(tenant, None)
        logger.info("flow_cache_invalidated", tenant=tenant or "*")

    @property
    def tenants(self) -> list[str]:
        with self._lock:
            return sorted(self._flows)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._flows)
