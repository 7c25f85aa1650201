"""Control protocol contract between the controller and injected sidecars.

Reconcilers depend only on :class:`ControlClient` and :class:`Dialer`; the
transport (HTTP/JSON in :mod:`atomix_runtime.client`, in-process in
:mod:`atomix_runtime.memory`) is injected.  Errors raised by implementations
use the :mod:`atomix_controller.errors` taxonomy so reconcilers can absorb
``NotFound``/``AlreadyExists`` races at the call site.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence

from .resources import ObjectKey, PrimitiveRule


@dataclass(frozen=True)
class StoreId:
    namespace: str
    name: str

    @classmethod
    def of(cls, key: ObjectKey) -> "StoreId":
        return cls(namespace=key.namespace, name=key.name)

    def to_dict(self) -> Dict[str, str]:
        return {"namespace": self.namespace, "name": self.name}


@dataclass(frozen=True)
class DriverId:
    name: str
    version: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "version": self.version}


@dataclass(frozen=True)
class ClusterId:
    namespace: str
    name: str

    @classmethod
    def of(cls, key: ObjectKey) -> "ClusterId":
        return cls(namespace=key.namespace, name=key.name)

    def to_dict(self) -> Dict[str, str]:
        return {"namespace": self.namespace, "name": self.name}


@dataclass(frozen=True)
class BindingId:
    namespace: str
    name: str

    @classmethod
    def of(cls, key: ObjectKey) -> "BindingId":
        return cls(namespace=key.namespace, name=key.name)

    def to_dict(self) -> Dict[str, str]:
        return {"namespace": self.namespace, "name": self.name}


@dataclass(frozen=True)
class ClusterInfo:
    """What a sidecar reports back for a cluster it knows about."""

    cluster: ClusterId
    driver: DriverId
    config: bytes = b""


@dataclass(frozen=True)
class BindingInfo:
    binding: BindingId
    cluster: ClusterId
    rules: Sequence[PrimitiveRule] = field(default_factory=tuple)


class ControlClient(ABC):
    """Unary control RPCs served by one sidecar.

    Every method raises :class:`~atomix_controller.errors.NotFoundError`,
    :class:`~atomix_controller.errors.AlreadyExistsError`,
    :class:`~atomix_controller.errors.UnavailableError` or
    :class:`~atomix_controller.errors.InternalError` as reported by the
    sidecar.  Transport failures and timeouts are ``UnavailableError``.
    """

    @abstractmethod
    def connect(self, store: StoreId, driver: DriverId, config: bytes) -> None:
        """Open a connection from the sidecar to ``store`` using ``driver``."""

    @abstractmethod
    def configure(self, store: StoreId, config: bytes) -> None:
        """Push new configuration for an already connected store."""

    @abstractmethod
    def disconnect(self, store: StoreId) -> None:
        """Close the sidecar's connection to ``store``."""

    @abstractmethod
    def get_cluster(self, cluster: ClusterId) -> ClusterInfo:
        ...

    @abstractmethod
    def create_cluster(self, cluster: ClusterId, driver: DriverId, config: bytes) -> None:
        ...

    @abstractmethod
    def get_binding(self, binding: BindingId) -> BindingInfo:
        ...

    @abstractmethod
    def create_binding(
        self, binding: BindingId, cluster: ClusterId, rules: Sequence[PrimitiveRule]
    ) -> None:
        ...

    def close(self) -> None:
        """Release transport resources held by this client."""

    def __enter__(self) -> "ControlClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class Dialer(ABC):
    """Open a :class:`ControlClient` against ``<pod ip>:<control port>``.

    A new client is dialed for every reconciliation; no connection is pooled
    across calls.
    """

    @abstractmethod
    def dial(self, address: str, timeout: Optional[float] = None) -> ControlClient:
        ...


def rules_to_dicts(rules: Sequence[PrimitiveRule]) -> list:
    return [rule.to_dict() for rule in rules]


def rules_from_dicts(data: Optional[Sequence[Mapping[str, Any]]]) -> tuple:
    return tuple(PrimitiveRule.from_dict(entry) for entry in data or ())
