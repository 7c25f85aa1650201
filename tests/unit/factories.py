"""Object builders shared by the unit tests."""

from typing import Any, Dict, Iterable, Optional

from atomix_controller.injector import (
    INJECTED_STATUS,
    PROXY_INJECT_ANNOTATION,
    PROXY_PROFILE_ANNOTATION,
    PROXY_RUNTIME_VERSION_ANNOTATION,
    PROXY_STATUS_ANNOTATION,
    RUNTIME_INJECT_ANNOTATION,
    RUNTIME_STATUS_ANNOTATION,
    RUNTIME_VERSION_ANNOTATION,
)
from atomix_controller.memory import MemoryResourceClient
from atomix_controller.resources import ResourceKind

RUNTIME_VERSION = "v2"
NAMESPACE = "default"


def protocol_obj(
    name: str = "raft",
    version: str = "v1",
    runtime_versions: Iterable[str] = (RUNTIME_VERSION,),
) -> Dict[str, Any]:
    return {
        "apiVersion": "atomix.io/v1beta1",
        "kind": "Protocol",
        "metadata": {"name": name},
        "spec": {
            "versions": [
                {
                    "name": version,
                    "primitives": ["Map", "Counter"],
                    "drivers": [
                        {
                            "runtimeVersion": rv,
                            "image": f"atomix/{name}-driver:{version}-{rv}",
                            "path": f"/var/lib/{name}.so",
                        }
                        for rv in runtime_versions
                    ],
                }
            ]
        },
    }


def store_obj(
    name: str = "raft-store",
    namespace: str = NAMESPACE,
    protocol: str = "raft",
    version: str = "v1",
    config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "apiVersion": "atomix.io/v1beta1",
        "kind": "Store",
        "metadata": {"namespace": namespace, "name": name},
        "spec": {
            "protocol": {"name": protocol, "version": version},
            "config": config if config is not None else {"replicas": 3},
        },
    }


def profile_obj(
    name: str = "app",
    namespace: str = NAMESPACE,
    stores: Iterable[str] = ("raft-store",),
    status: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    obj: Dict[str, Any] = {
        "apiVersion": "atomix.io/v1beta1",
        "kind": "Profile",
        "metadata": {"namespace": namespace, "name": name},
        "spec": {
            "bindings": [
                {
                    "name": store,
                    "store": {"name": store},
                    "primitives": [{"kinds": ["Map"]}],
                }
                for store in stores
            ]
        },
    }
    if status is not None:
        obj["status"] = status
    return obj


def pod_obj(
    name: str = "app-0",
    namespace: str = NAMESPACE,
    uid: str = "pod-0",
    ip: str = "10.0.0.10",
    annotations: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "namespace": namespace,
            "name": name,
            "uid": uid,
            "annotations": dict(annotations or {}),
        },
        "spec": {"containers": [{"name": "app", "image": "example/app:1"}]},
        "status": {"podIP": ip},
    }


def proxy_pod_obj(
    name: str = "app-0",
    uid: str = "pod-0",
    ip: str = "10.0.0.10",
    profile: str = "app",
    runtime_version: str = RUNTIME_VERSION,
) -> Dict[str, Any]:
    return pod_obj(
        name=name,
        uid=uid,
        ip=ip,
        annotations={
            PROXY_INJECT_ANNOTATION: "true",
            PROXY_PROFILE_ANNOTATION: profile,
            PROXY_STATUS_ANNOTATION: INJECTED_STATUS,
            PROXY_RUNTIME_VERSION_ANNOTATION: runtime_version,
        },
    )


def runtime_pod_obj(
    name: str = "rt-0",
    uid: str = "rt-uid-0",
    ip: str = "10.0.0.20",
    runtime_version: str = RUNTIME_VERSION,
) -> Dict[str, Any]:
    return pod_obj(
        name=name,
        uid=uid,
        ip=ip,
        annotations={
            RUNTIME_INJECT_ANNOTATION: "true",
            RUNTIME_STATUS_ANNOTATION: INJECTED_STATUS,
            RUNTIME_VERSION_ANNOTATION: runtime_version,
        },
    )


def cluster_obj(name: str = "raft", namespace: str = NAMESPACE) -> Dict[str, Any]:
    return {
        "apiVersion": "atomix.io/v3beta1",
        "kind": "Cluster",
        "metadata": {"namespace": namespace, "name": name},
        "spec": {"driver": {"name": "raft", "version": "v1"}, "config": {"replicas": 3}},
    }


def binding_obj(
    name: str = "maps", namespace: str = NAMESPACE, cluster: str = "raft"
) -> Dict[str, Any]:
    return {
        "apiVersion": "atomix.io/v3beta1",
        "kind": "Binding",
        "metadata": {"namespace": namespace, "name": name},
        "spec": {
            "cluster": {"name": cluster},
            "rules": [{"kinds": ["Map"], "names": ["orders-*"]}],
        },
    }


def build_catalog_client(
    runtime_versions: Iterable[str] = (RUNTIME_VERSION,),
    stores: Iterable[str] = ("raft-store",),
) -> MemoryResourceClient:
    """A client holding the raft protocol, its stores and the ``app`` Profile."""

    client = MemoryResourceClient()
    client.create(ResourceKind.PROTOCOL, protocol_obj(runtime_versions=runtime_versions))
    for store in stores:
        client.create(ResourceKind.STORE, store_obj(name=store))
    client.create(ResourceKind.PROFILE, profile_obj(stores=stores))
    return client
