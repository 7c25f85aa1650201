"""Kubernetes-backed implementation of the resource client contract."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException

from atomix_controller.client import ResourceClient
from atomix_controller.errors import (
    AlreadyExistsError,
    AtomixError,
    ConflictError,
    InternalError,
    NotFoundError,
    UnavailableError,
)
from atomix_controller.resources import ObjectKey, ResourceKind

LOG = logging.getLogger(__name__)

_UNAVAILABLE_STATUSES = {429, 500, 502, 503, 504}


def load_kube_config(kubeconfig: Optional[Path] = None) -> None:
    """Load credentials from ``kubeconfig``, the pod service account or ~/.kube."""

    if kubeconfig is not None:
        k8s_config.load_kube_config(config_file=str(kubeconfig))
        return
    try:
        k8s_config.load_incluster_config()
    except k8s_config.ConfigException:
        LOG.debug("Not running in a cluster, falling back to kubeconfig")
        k8s_config.load_kube_config()


def translate_api_exception(exc: ApiException, operation: str) -> AtomixError:
    message = f"{operation} failed: {exc.status} {exc.reason}"
    if exc.status == 404:
        return NotFoundError(message)
    if exc.status == 409:
        if operation.startswith("create"):
            return AlreadyExistsError(message)
        return ConflictError(message)
    if exc.status in _UNAVAILABLE_STATUSES:
        return UnavailableError(message)
    return InternalError(message)


class KubernetesResourceClient(ResourceClient):
    def __init__(self, api_client: Optional[k8s_client.ApiClient] = None) -> None:
        self._api = api_client or k8s_client.ApiClient()
        self._custom = k8s_client.CustomObjectsApi(self._api)
        self._core = k8s_client.CoreV1Api(self._api)

    # ------------------------------------------------------------------
    # ResourceClient contract
    # ------------------------------------------------------------------
    def get(self, kind: ResourceKind, key: ObjectKey) -> Dict[str, Any]:
        op = f"get {kind.kind} '{key}'"
        if kind.is_custom:
            if kind.namespaced:
                return self._call(
                    op,
                    self._custom.get_namespaced_custom_object,
                    kind.group,
                    kind.version,
                    key.namespace,
                    kind.plural,
                    key.name,
                )
            return self._call(
                op,
                self._custom.get_cluster_custom_object,
                kind.group,
                kind.version,
                kind.plural,
                key.name,
            )
        read = {
            ResourceKind.POD: self._core.read_namespaced_pod,
            ResourceKind.CONFIG_MAP: self._core.read_namespaced_config_map,
        }[kind]
        return self._serialize(self._call(op, read, key.name, key.namespace))

    def list(
        self, kind: ResourceKind, namespace: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        items, _ = self.list_with_version(kind, namespace)
        return items

    def list_with_version(
        self, kind: ResourceKind, namespace: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Return the objects of ``kind`` and the list's resource version."""

        func, args = self.list_source(kind, namespace)
        result = self._call(f"list {kind.plural}", func, *args)
        if kind.is_custom:
            metadata = result.get("metadata") or {}
            return list(result.get("items") or []), metadata.get("resourceVersion")
        items = [self._serialize(item) for item in result.items]
        for item in items:
            item.setdefault("apiVersion", kind.api_version)
            item.setdefault("kind", kind.kind)
        return items, result.metadata.resource_version

    def create(self, kind: ResourceKind, obj: Mapping[str, Any]) -> Dict[str, Any]:
        key = ObjectKey.of(obj)
        op = f"create {kind.kind} '{key}'"
        body = dict(obj)
        if kind.is_custom:
            if kind.namespaced:
                return self._call(
                    op,
                    self._custom.create_namespaced_custom_object,
                    kind.group,
                    kind.version,
                    key.namespace,
                    kind.plural,
                    body,
                )
            return self._call(
                op,
                self._custom.create_cluster_custom_object,
                kind.group,
                kind.version,
                kind.plural,
                body,
            )
        create = {
            ResourceKind.POD: self._core.create_namespaced_pod,
            ResourceKind.CONFIG_MAP: self._core.create_namespaced_config_map,
        }[kind]
        return self._serialize(self._call(op, create, key.namespace, body))

    def replace(self, kind: ResourceKind, obj: Mapping[str, Any]) -> Dict[str, Any]:
        key = ObjectKey.of(obj)
        op = f"replace {kind.kind} '{key}'"
        body = dict(obj)
        if kind.is_custom:
            if kind.namespaced:
                return self._call(
                    op,
                    self._custom.replace_namespaced_custom_object,
                    kind.group,
                    kind.version,
                    key.namespace,
                    kind.plural,
                    key.name,
                    body,
                )
            return self._call(
                op,
                self._custom.replace_cluster_custom_object,
                kind.group,
                kind.version,
                kind.plural,
                key.name,
                body,
            )
        replace = {
            ResourceKind.POD: self._core.replace_namespaced_pod,
            ResourceKind.CONFIG_MAP: self._core.replace_namespaced_config_map,
        }[kind]
        return self._serialize(self._call(op, replace, key.name, key.namespace, body))

    def update_status(
        self, kind: ResourceKind, obj: Mapping[str, Any]
    ) -> Dict[str, Any]:
        key = ObjectKey.of(obj)
        op = f"update {kind.kind} '{key}' status"
        body = dict(obj)
        if kind.is_custom:
            if kind.namespaced:
                return self._call(
                    op,
                    self._custom.replace_namespaced_custom_object_status,
                    kind.group,
                    kind.version,
                    key.namespace,
                    kind.plural,
                    key.name,
                    body,
                )
            return self._call(
                op,
                self._custom.replace_cluster_custom_object_status,
                kind.group,
                kind.version,
                kind.plural,
                key.name,
                body,
            )
        if kind is not ResourceKind.POD:
            raise InternalError(f"{kind.kind} has no status subresource")
        return self._serialize(
            self._call(op, self._core.replace_namespaced_pod_status, key.name, key.namespace, body)
        )

    # ------------------------------------------------------------------
    # Watch support
    # ------------------------------------------------------------------
    def list_source(
        self, kind: ResourceKind, namespace: Optional[str] = None
    ) -> Tuple[Callable[..., Any], Tuple[Any, ...]]:
        """Return the list function and positional args for ``kind``.

        The same pair drives :class:`kubernetes.watch.Watch` streams.
        """

        if kind.is_custom:
            if kind.namespaced and namespace:
                return (
                    self._custom.list_namespaced_custom_object,
                    (kind.group, kind.version, namespace, kind.plural),
                )
            return (
                self._custom.list_cluster_custom_object,
                (kind.group, kind.version, kind.plural),
            )
        if kind is ResourceKind.POD:
            if namespace:
                return self._core.list_namespaced_pod, (namespace,)
            return self._core.list_pod_for_all_namespaces, ()
        if namespace:
            return self._core.list_namespaced_config_map, (namespace,)
        return self._core.list_config_map_for_all_namespaces, ()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _call(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return func(*args)
        except ApiException as exc:
            raise translate_api_exception(exc, operation) from exc

    def _serialize(self, obj: Any) -> Dict[str, Any]:
        return self._api.sanitize_for_serialization(obj)
