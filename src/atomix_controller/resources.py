"""Typed views over the declarative objects the controller reads and writes.

Objects arrive from the cluster as plain JSON-like mappings.  These frozen
dataclasses give the reconcilers a typed, immutable view of the fields they
care about while keeping the raw mapping around for write-back.  Status values
are never mutated in place: every change produces a new value that replaces
the previous one wholesale, so a concurrent writer is always detected by the
object store's resource-version check instead of being silently merged.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

GROUP = "atomix.io"

DEFAULT_CONTROL_PORT = 5679
CONTROL_PORT_NAME = "control"


class ResourceKind(Enum):
    """Closed set of object kinds known to the controller."""

    PROTOCOL = ("Protocol", GROUP, "v1beta1", "protocols", False)
    STORE = ("Store", GROUP, "v1beta1", "stores", True)
    PROFILE = ("Profile", GROUP, "v1beta1", "profiles", True)
    CLUSTER = ("Cluster", GROUP, "v3beta1", "clusters", True)
    BINDING = ("Binding", GROUP, "v3beta1", "bindings", True)
    POD = ("Pod", "", "v1", "pods", True)
    CONFIG_MAP = ("ConfigMap", "", "v1", "configmaps", True)

    def __init__(
        self, kind: str, group: str, version: str, plural: str, namespaced: bool
    ) -> None:
        self.kind = kind
        self.group = group
        self.version = version
        self.plural = plural
        self.namespaced = namespaced

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    @property
    def is_custom(self) -> bool:
        return bool(self.group)


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Namespace/name pair identifying an object (namespace empty if cluster scoped)."""

    namespace: str
    name: str

    def __str__(self) -> str:
        if not self.namespace:
            return self.name
        return f"{self.namespace}/{self.name}"

    @classmethod
    def of(cls, obj: Mapping[str, Any]) -> "ObjectKey":
        metadata = obj.get("metadata") or {}
        return cls(str(metadata.get("namespace") or ""), str(metadata.get("name", "")))


@dataclass(frozen=True)
class ObjectRef:
    """Reference to another object; an empty namespace means "same as owner"."""

    name: str
    namespace: str = ""

    def resolve(self, default_namespace: str) -> ObjectKey:
        return ObjectKey(self.namespace or default_namespace, self.name)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ObjectRef":
        data = data or {}
        return cls(name=str(data.get("name", "")), namespace=str(data.get("namespace") or ""))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def _spec(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("spec") or {}


def _strings(values: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    return tuple(str(v) for v in (values or ()))


# ----------------------------------------------------------------------
# Catalog objects
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ProtocolDriver:
    """Driver artifact for one runtime version of a protocol version."""

    runtime_version: str
    image: str
    path: str


@dataclass(frozen=True)
class ProtocolVersion:
    name: str
    primitives: Sequence[str] = ()
    drivers: Sequence[ProtocolDriver] = ()

    def driver_for(self, runtime_version: str) -> Optional[ProtocolDriver]:
        return next(
            (d for d in self.drivers if d.runtime_version == runtime_version), None
        )


@dataclass(frozen=True)
class Protocol:
    """A storage protocol and the ordered versions it ships."""

    name: str
    versions: Sequence[ProtocolVersion] = ()

    def version(self, name: str) -> Optional[ProtocolVersion]:
        return next((v for v in self.versions if v.name == name), None)

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "Protocol":
        versions = []
        for entry in _spec(obj).get("versions") or []:
            drivers = tuple(
                ProtocolDriver(
                    runtime_version=str(d.get("runtimeVersion", "")),
                    image=str(d.get("image", "")),
                    path=str(d.get("path", "")),
                )
                for d in entry.get("drivers") or []
            )
            versions.append(
                ProtocolVersion(
                    name=str(entry.get("name", "")),
                    primitives=_strings(entry.get("primitives")),
                    drivers=drivers,
                )
            )
        return cls(name=str(_metadata(obj).get("name", "")), versions=tuple(versions))


@dataclass(frozen=True)
class ProtocolRef:
    name: str
    version: str


@dataclass(frozen=True)
class Store:
    """A storage backend declaration.

    Attributes
    ----------
    key:
        Namespace and name of the store.
    protocol:
        The ``(protocol name, protocol version)`` pair implementing the store.
    config:
        Opaque protocol specific configuration handed to the sidecar.
    version:
        Token that changes whenever the store is modified; bindings record the
        token they last connected or configured with to detect drift.
    """

    key: ObjectKey
    protocol: ProtocolRef
    config: Mapping[str, Any] = field(default_factory=dict)
    version: str = ""

    def config_bytes(self) -> bytes:
        return json.dumps(self.config, sort_keys=True, separators=(",", ":")).encode(
            "utf-8"
        )

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "Store":
        spec = _spec(obj)
        protocol = spec.get("protocol") or {}
        return cls(
            key=ObjectKey.of(obj),
            protocol=ProtocolRef(
                name=str(protocol.get("name", "")),
                version=str(protocol.get("version", "")),
            ),
            config=dict(spec.get("config") or {}),
            version=str(_metadata(obj).get("resourceVersion") or ""),
        )


# ----------------------------------------------------------------------
# Profiles and their status
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class PrimitiveRule:
    """Routing matcher for primitives (by kind, name, tag and metadata)."""

    kinds: Sequence[str] = ()
    names: Sequence[str] = ()
    tags: Sequence[str] = ()
    metadata: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PrimitiveRule":
        return cls(
            kinds=_strings(data.get("kinds")),
            names=_strings(data.get("names")),
            tags=_strings(data.get("tags")),
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.kinds:
            data["kinds"] = list(self.kinds)
        if self.names:
            data["names"] = list(self.names)
        if self.tags:
            data["tags"] = list(self.tags)
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data


@dataclass(frozen=True)
class ProfileBinding:
    name: str
    store: ObjectRef
    rules: Sequence[PrimitiveRule] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProfileBinding":
        store = ObjectRef.from_dict(data.get("store"))
        return cls(
            name=str(data.get("name") or store.name),
            store=store,
            rules=tuple(PrimitiveRule.from_dict(r) for r in data.get("primitives") or []),
        )


class BindingState(Enum):
    UNBOUND = "Unbound"
    BOUND = "Bound"


class SessionState(Enum):
    UNBOUND = "Unbound"
    BOUND = "Bound"


@dataclass(frozen=True)
class BindingStatus:
    state: BindingState = BindingState.UNBOUND
    store_version: Optional[str] = None
    store: Optional[ObjectKey] = None

    @property
    def bound(self) -> bool:
        return self.state is BindingState.BOUND


@dataclass(frozen=True)
class SessionStatus:
    session_id: str
    primitive: str
    service: str
    metadata: Mapping[str, Sequence[str]] = field(default_factory=dict)
    state: SessionState = SessionState.UNBOUND
    creation_timestamp: str = ""
    deletion_timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.session_id,
            "primitive": self.primitive,
            "service": self.service,
            "state": self.state.value,
            "creationTimestamp": self.creation_timestamp,
        }
        if self.metadata:
            data["metadata"] = {k: list(v) for k, v in self.metadata.items()}
        if self.deletion_timestamp:
            data["deletionTimestamp"] = self.deletion_timestamp
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SessionStatus":
        return cls(
            session_id=str(data.get("id", "")),
            primitive=str(data.get("primitive", "")),
            service=str(data.get("service", "")),
            metadata={
                str(k): _strings(v) for k, v in (data.get("metadata") or {}).items()
            },
            state=SessionState(data.get("state") or SessionState.UNBOUND.value),
            creation_timestamp=str(data.get("creationTimestamp") or ""),
            deletion_timestamp=data.get("deletionTimestamp"),
        )


@dataclass(frozen=True)
class ProxyStatus:
    """Observed state of the proxy sidecar running in one pod."""

    pod_name: str
    pod_uid: str
    ready: bool = False
    bindings: Mapping[str, BindingStatus] = field(default_factory=dict)
    sessions: Mapping[str, SessionStatus] = field(default_factory=dict)

    def with_binding(self, name: str, status: BindingStatus) -> "ProxyStatus":
        bindings = dict(self.bindings)
        bindings[name] = status
        return replace(self, bindings=bindings)

    def without_bindings(self, names: Iterable[str]) -> "ProxyStatus":
        drop = set(names)
        return replace(
            self, bindings={k: v for k, v in self.bindings.items() if k not in drop}
        )

    def with_session(self, status: SessionStatus) -> "ProxyStatus":
        sessions = dict(self.sessions)
        sessions[status.session_id] = status
        return replace(self, sessions=sessions)

    def compute_ready(self) -> bool:
        return all(b.bound for b in self.bindings.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pod": {"name": self.pod_name, "uid": self.pod_uid},
            "ready": self.ready,
            "bindings": [
                _binding_status_to_dict(name, status)
                for name, status in self.bindings.items()
            ],
            "sessions": [s.to_dict() for s in self.sessions.values()],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProxyStatus":
        pod = data.get("pod") or {}
        bindings: Dict[str, BindingStatus] = {}
        for entry in data.get("bindings") or []:
            store = entry.get("store")
            bindings[str(entry.get("name", ""))] = BindingStatus(
                state=BindingState(entry.get("state") or BindingState.UNBOUND.value),
                store_version=entry.get("storeVersion"),
                store=(
                    ObjectKey(str(store.get("namespace") or ""), str(store.get("name", "")))
                    if store
                    else None
                ),
            )
        sessions: Dict[str, SessionStatus] = {}
        for entry in data.get("sessions") or []:
            session = SessionStatus.from_dict(entry)
            sessions[session.session_id] = session
        return cls(
            pod_name=str(pod.get("name", "")),
            pod_uid=str(pod.get("uid", "")),
            ready=bool(data.get("ready", False)),
            bindings=bindings,
            sessions=sessions,
        )


def _binding_status_to_dict(name: str, status: BindingStatus) -> Dict[str, Any]:
    data: Dict[str, Any] = {"name": name, "state": status.state.value}
    if status.store is not None:
        data["store"] = {"namespace": status.store.namespace, "name": status.store.name}
    if status.store_version is not None:
        data["storeVersion"] = status.store_version
    return data


@dataclass(frozen=True)
class ProfileStatus:
    ready: bool = False
    proxies: Mapping[str, ProxyStatus] = field(default_factory=dict)

    def with_proxy(self, proxy: ProxyStatus) -> "ProfileStatus":
        proxies = dict(self.proxies)
        proxies[proxy.pod_uid] = proxy
        return replace(self, proxies=proxies)

    def without_proxies(self, uids: Iterable[str]) -> "ProfileStatus":
        drop = set(uids)
        return replace(
            self, proxies={k: v for k, v in self.proxies.items() if k not in drop}
        )

    def with_readiness(self) -> "ProfileStatus":
        """Return a copy whose readiness flags reflect the binding entries."""

        proxies = {
            uid: replace(proxy, ready=proxy.compute_ready())
            for uid, proxy in self.proxies.items()
        }
        ready = all(proxy.ready for proxy in proxies.values())
        return ProfileStatus(ready=ready, proxies=proxies)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ready": self.ready,
            "proxies": [proxy.to_dict() for proxy in self.proxies.values()],
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ProfileStatus":
        data = data or {}
        proxies: Dict[str, ProxyStatus] = {}
        for entry in data.get("proxies") or []:
            proxy = ProxyStatus.from_dict(entry)
            proxies[proxy.pod_uid] = proxy
        return cls(ready=bool(data.get("ready", False)), proxies=proxies)


@dataclass(frozen=True)
class Profile:
    key: ObjectKey
    bindings: Sequence[ProfileBinding] = ()
    status: ProfileStatus = field(default_factory=ProfileStatus)
    uid: str = ""
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def store_keys(self) -> List[ObjectKey]:
        return [b.store.resolve(self.key.namespace) for b in self.bindings]

    def with_status(self, status: ProfileStatus) -> Dict[str, Any]:
        """Return the raw object with ``status`` replacing the current one."""

        obj = dict(self.raw)
        obj["status"] = status.to_dict()
        return obj

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "Profile":
        return cls(
            key=ObjectKey.of(obj),
            bindings=tuple(
                ProfileBinding.from_dict(b) for b in _spec(obj).get("bindings") or []
            ),
            status=ProfileStatus.from_dict(obj.get("status")),
            uid=str(_metadata(obj).get("uid") or ""),
            raw=obj,
        )


# ----------------------------------------------------------------------
# Lower-level runtime model
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class DriverRef:
    name: str
    version: str


@dataclass(frozen=True)
class Cluster:
    key: ObjectKey
    driver: DriverRef
    config: Mapping[str, Any] = field(default_factory=dict)

    def config_bytes(self) -> bytes:
        return json.dumps(self.config, sort_keys=True, separators=(",", ":")).encode(
            "utf-8"
        )

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "Cluster":
        spec = _spec(obj)
        driver = spec.get("driver") or {}
        return cls(
            key=ObjectKey.of(obj),
            driver=DriverRef(
                name=str(driver.get("name", "")), version=str(driver.get("version", ""))
            ),
            config=dict(spec.get("config") or {}),
        )


@dataclass(frozen=True)
class Binding:
    key: ObjectKey
    cluster: ObjectRef
    rules: Sequence[PrimitiveRule] = ()

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "Binding":
        spec = _spec(obj)
        return cls(
            key=ObjectKey.of(obj),
            cluster=ObjectRef.from_dict(spec.get("cluster")),
            rules=tuple(PrimitiveRule.from_dict(r) for r in spec.get("rules") or []),
        )


# ----------------------------------------------------------------------
# Workloads
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class Pod:
    key: ObjectKey
    uid: str = ""
    annotations: Mapping[str, str] = field(default_factory=dict)
    ip: str = ""
    containers: Sequence[Mapping[str, Any]] = ()

    def port(self, container: str, port_name: str, default: int) -> int:
        for spec in self.containers:
            if spec.get("name") != container:
                continue
            for port in spec.get("ports") or []:
                if port.get("name") == port_name:
                    return int(port.get("containerPort", default))
        return default

    def control_address(self, container: str) -> str:
        port = self.port(container, CONTROL_PORT_NAME, DEFAULT_CONTROL_PORT)
        return f"{self.ip}:{port}"

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "Pod":
        metadata = _metadata(obj)
        return cls(
            key=ObjectKey.of(obj),
            uid=str(metadata.get("uid") or ""),
            annotations=dict(metadata.get("annotations") or {}),
            ip=str((obj.get("status") or {}).get("podIP") or ""),
            containers=tuple(_spec(obj).get("containers") or ()),
        )
