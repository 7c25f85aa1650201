"""In-process sidecar runtime.

:class:`InMemoryRuntime` keeps the connections, clusters and bindings a real
sidecar would hold and enforces the same error semantics, so the reconcilers
can be exercised end-to-end without a network.  It records every call in
:attr:`InMemoryRuntime.calls` for assertions.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from atomix_controller.control import (
    BindingId,
    BindingInfo,
    ClusterId,
    ClusterInfo,
    ControlClient,
    Dialer,
    DriverId,
    StoreId,
)
from atomix_controller.errors import (
    AlreadyExistsError,
    AtomixError,
    NotFoundError,
    UnavailableError,
)
from atomix_controller.resources import PrimitiveRule

LOG = logging.getLogger(__name__)


class InMemoryRuntime(ControlClient):
    def __init__(self) -> None:
        self.connections: Dict[StoreId, Tuple[DriverId, bytes]] = {}
        self.clusters: Dict[ClusterId, ClusterInfo] = {}
        self.bindings: Dict[BindingId, BindingInfo] = {}
        self.calls: List[Tuple[str, object]] = []
        self._failures: Dict[str, AtomixError] = {}
        self._lock = Lock()

    def fail_next(self, method: str, error: AtomixError) -> None:
        """Make the next call to ``method`` raise ``error``."""

        self._failures[method] = error

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def _record(self, method: str, target: object) -> None:
        self.calls.append((method, target))
        error = self._failures.pop(method, None)
        if error is not None:
            raise error

    # ------------------------------------------------------------------
    # Store connections
    # ------------------------------------------------------------------
    def connect(self, store: StoreId, driver: DriverId, config: bytes) -> None:
        with self._lock:
            self._record("connect", store)
            if store in self.connections:
                raise AlreadyExistsError(f"store '{store.namespace}/{store.name}' already connected")
            self.connections[store] = (driver, config)
        LOG.debug("Connected store %s with driver %s", store, driver)

    def configure(self, store: StoreId, config: bytes) -> None:
        with self._lock:
            self._record("configure", store)
            current = self.connections.get(store)
            if current is None:
                raise NotFoundError(f"store '{store.namespace}/{store.name}' not connected")
            self.connections[store] = (current[0], config)

    def disconnect(self, store: StoreId) -> None:
        with self._lock:
            self._record("disconnect", store)
            if self.connections.pop(store, None) is None:
                raise NotFoundError(f"store '{store.namespace}/{store.name}' not connected")

    # ------------------------------------------------------------------
    # Clusters and bindings
    # ------------------------------------------------------------------
    def get_cluster(self, cluster: ClusterId) -> ClusterInfo:
        with self._lock:
            self._record("get_cluster", cluster)
            info = self.clusters.get(cluster)
        if info is None:
            raise NotFoundError(f"cluster '{cluster.namespace}/{cluster.name}' not found")
        return info

    def create_cluster(self, cluster: ClusterId, driver: DriverId, config: bytes) -> None:
        with self._lock:
            self._record("create_cluster", cluster)
            if cluster in self.clusters:
                raise AlreadyExistsError(
                    f"cluster '{cluster.namespace}/{cluster.name}' already exists"
                )
            self.clusters[cluster] = ClusterInfo(cluster=cluster, driver=driver, config=config)

    def get_binding(self, binding: BindingId) -> BindingInfo:
        with self._lock:
            self._record("get_binding", binding)
            info = self.bindings.get(binding)
        if info is None:
            raise NotFoundError(f"binding '{binding.namespace}/{binding.name}' not found")
        return info

    def create_binding(
        self, binding: BindingId, cluster: ClusterId, rules: Sequence[PrimitiveRule]
    ) -> None:
        with self._lock:
            self._record("create_binding", binding)
            if binding in self.bindings:
                raise AlreadyExistsError(
                    f"binding '{binding.namespace}/{binding.name}' already exists"
                )
            self.bindings[binding] = BindingInfo(
                binding=binding, cluster=cluster, rules=tuple(rules)
            )


class InMemoryDialer(Dialer):
    """Route dials to in-process runtimes keyed by ``<ip>:<port>``."""

    def __init__(self, runtimes: Optional[Mapping[str, ControlClient]] = None) -> None:
        self.runtimes: Dict[str, ControlClient] = dict(runtimes or {})
        self.dials: List[Tuple[str, Optional[float]]] = []

    def dial(self, address: str, timeout: Optional[float] = None) -> ControlClient:
        self.dials.append((address, timeout))
        runtime = self.runtimes.get(address)
        if runtime is None:
            raise UnavailableError(f"no sidecar listening on {address}")
        return runtime
