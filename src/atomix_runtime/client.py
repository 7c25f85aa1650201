"""HTTP control protocol client used by the reconcilers."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence

import requests

from atomix_controller.control import (
    BindingId,
    BindingInfo,
    ClusterId,
    ClusterInfo,
    ControlClient,
    Dialer,
    DriverId,
    StoreId,
    rules_to_dicts,
)
from atomix_controller.errors import UnavailableError
from atomix_controller.resources import PrimitiveRule

from . import wire

LOG = logging.getLogger(__name__)


class HttpControlClient(ControlClient):
    """Control protocol client talking to one sidecar over HTTP/JSON.

    Usage::

        with HttpControlClient("10.0.0.12:5679", timeout=5.0) as conn:
            conn.connect(StoreId("default", "raft"), DriverId("raft", "v1"), b"{}")
    """

    def __init__(
        self,
        address: str,
        timeout: Optional[float] = None,
        session: Optional[Any] = None,
        scheme: str = "http",
    ) -> None:
        self.address = address
        self._base_url = f"{scheme}://{address}"
        self._timeout = timeout
        self._owns_session = session is None
        self._session = session if session is not None else requests.Session()

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    # ------------------------------------------------------------------
    # Store connections
    # ------------------------------------------------------------------
    def connect(self, store: StoreId, driver: DriverId, config: bytes) -> None:
        self._call(
            wire.CONNECT_PATH,
            {
                "store": store.to_dict(),
                "driver": driver.to_dict(),
                "config": wire.encode_config(config),
            },
        )

    def configure(self, store: StoreId, config: bytes) -> None:
        self._call(
            wire.CONFIGURE_PATH,
            {"store": store.to_dict(), "config": wire.encode_config(config)},
        )

    def disconnect(self, store: StoreId) -> None:
        self._call(wire.DISCONNECT_PATH, {"store": store.to_dict()})

    # ------------------------------------------------------------------
    # Clusters and bindings
    # ------------------------------------------------------------------
    def get_cluster(self, cluster: ClusterId) -> ClusterInfo:
        return wire.cluster_info(
            self._call(wire.GET_CLUSTER_PATH, {"cluster": cluster.to_dict()})
        )

    def create_cluster(self, cluster: ClusterId, driver: DriverId, config: bytes) -> None:
        self._call(
            wire.CREATE_CLUSTER_PATH,
            {
                "cluster": cluster.to_dict(),
                "driver": driver.to_dict(),
                "config": wire.encode_config(config),
            },
        )

    def get_binding(self, binding: BindingId) -> BindingInfo:
        return wire.binding_info(
            self._call(wire.GET_BINDING_PATH, {"binding": binding.to_dict()})
        )

    def create_binding(
        self, binding: BindingId, cluster: ClusterId, rules: Sequence[PrimitiveRule]
    ) -> None:
        self._call(
            wire.CREATE_BINDING_PATH,
            {
                "binding": binding.to_dict(),
                "cluster": cluster.to_dict(),
                "rules": rules_to_dicts(rules),
            },
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _call(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        LOG.debug("POST %s", url)
        try:
            response = self._session.post(url, json=body, timeout=self._timeout)
        except requests.Timeout as exc:
            raise UnavailableError(f"{path} to {self.address} timed out") from exc
        except requests.RequestException as exc:
            raise UnavailableError(f"{path} to {self.address} failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            raise wire.error_from_response(response.status_code, payload)
        if not response.content:
            return {}
        return response.json()


class HttpDialer(Dialer):
    """Dial a fresh :class:`HttpControlClient` for every reconciliation.

    ``session`` may be supplied to route every call through one shared
    requests-compatible session (tests pass a FastAPI ``TestClient``); the
    dialed clients never close a session they did not create.
    """

    def __init__(self, session: Optional[Any] = None, scheme: str = "http") -> None:
        self._session = session
        self._scheme = scheme

    def dial(self, address: str, timeout: Optional[float] = None) -> ControlClient:
        return HttpControlClient(
            address, timeout=timeout, session=self._session, scheme=self._scheme
        )
