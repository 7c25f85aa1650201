"""Cluster and Binding existence reconciliation for runtime sidecars.

The lower-level resource model only needs each Cluster and Binding to exist
inside every controllable runtime sidecar of its namespace.  Existence is
monotonic: objects are created when missing and never updated or deleted.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, List, Optional

from .client import ResourceClient
from .control import BindingId, ClusterId, ControlClient, Dialer, DriverId
from .errors import AlreadyExistsError, AtomixError, NotFoundError
from .injector import (
    INJECTED_STATUS,
    RUNTIME_CONTAINER_NAME,
    RUNTIME_STATUS_ANNOTATION,
    RUNTIME_VERSION_ANNOTATION,
)
from .reconcile import DONE, Deadline, Reconciler, Result
from .resources import Binding, Cluster, ObjectKey, Pod, ResourceKind

LOG = logging.getLogger(__name__)


class Presence(Enum):
    CREATED = "created"
    PRESENT = "present"


def _ensure(
    what: str,
    get: Callable[[], object],
    create: Callable[[], None],
) -> Presence:
    try:
        get()
        return Presence.PRESENT
    except NotFoundError:
        pass
    try:
        create()
    except AlreadyExistsError:
        LOG.debug("%s was created concurrently", what)
        return Presence.PRESENT
    LOG.info("Created %s", what)
    return Presence.CREATED


def ensure_cluster(conn: ControlClient, cluster: Cluster) -> Presence:
    """Make sure ``cluster`` exists in the sidecar behind ``conn``."""

    cluster_id = ClusterId.of(cluster.key)
    return _ensure(
        f"Cluster '{cluster.key}'",
        lambda: conn.get_cluster(cluster_id),
        lambda: conn.create_cluster(
            cluster_id,
            DriverId(name=cluster.driver.name, version=cluster.driver.version),
            cluster.config_bytes(),
        ),
    )


def ensure_binding(conn: ControlClient, binding: Binding) -> Presence:
    """Make sure ``binding`` exists in the sidecar behind ``conn``."""

    binding_id = BindingId.of(binding.key)
    cluster_id = ClusterId.of(binding.cluster.resolve(binding.key.namespace))
    return _ensure(
        f"Binding '{binding.key}'",
        lambda: conn.get_binding(binding_id),
        lambda: conn.create_binding(binding_id, cluster_id, binding.rules),
    )


class _RuntimeReconciler(Reconciler):
    def __init__(self, client: ResourceClient, dialer: Dialer, runtime_version: str) -> None:
        self._client = client
        self._dialer = dialer
        self._runtime_version = runtime_version

    def is_controllable(self, pod: Pod) -> bool:
        return (
            pod.annotations.get(RUNTIME_STATUS_ANNOTATION) == INJECTED_STATUS
            and pod.annotations.get(RUNTIME_VERSION_ANNOTATION) == self._runtime_version
            and bool(pod.ip)
        )

    def _controllable_pods(self, namespace: str) -> List[Pod]:
        pods = [Pod.from_dict(obj) for obj in self._client.list(ResourceKind.POD, namespace)]
        return sorted((p for p in pods if self.is_controllable(p)), key=lambda p: p.key)

    def _dial(self, pod: Pod, deadline: Deadline) -> ControlClient:
        return self._dialer.dial(
            pod.control_address(RUNTIME_CONTAINER_NAME), timeout=deadline.remaining()
        )

    def _fan_out(
        self,
        what: str,
        pods: List[Pod],
        apply: Callable[[ControlClient], object],
        deadline: Deadline,
    ) -> None:
        first_error: Optional[AtomixError] = None
        for pod in pods:
            try:
                with self._dial(pod, deadline) as conn:
                    apply(conn)
            except AtomixError as exc:
                LOG.warning("Failed to reconcile %s in Pod '%s': %s", what, pod.key, exc)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error


class ClusterReconciler(_RuntimeReconciler):
    kind = ResourceKind.CLUSTER

    def reconcile(self, key: ObjectKey, deadline: Optional[Deadline] = None) -> Result:
        deadline = deadline or Deadline()
        LOG.info("Reconciling Cluster '%s'", key)
        try:
            cluster = Cluster.from_dict(self._client.get(ResourceKind.CLUSTER, key))
        except NotFoundError:
            return DONE
        self._fan_out(
            f"Cluster '{key}'",
            self._controllable_pods(key.namespace),
            lambda conn: ensure_cluster(conn, cluster),
            deadline,
        )
        return DONE


class BindingReconciler(_RuntimeReconciler):
    kind = ResourceKind.BINDING

    def reconcile(self, key: ObjectKey, deadline: Optional[Deadline] = None) -> Result:
        deadline = deadline or Deadline()
        LOG.info("Reconciling Binding '%s'", key)
        try:
            binding = Binding.from_dict(self._client.get(ResourceKind.BINDING, key))
        except NotFoundError:
            return DONE
        self._fan_out(
            f"Binding '{key}'",
            self._controllable_pods(key.namespace),
            lambda conn: ensure_binding(conn, binding),
            deadline,
        )
        return DONE


class PodReconciler(_RuntimeReconciler):
    """Bring a newly started runtime sidecar up to date with its namespace."""

    kind = ResourceKind.POD

    def reconcile(self, key: ObjectKey, deadline: Optional[Deadline] = None) -> Result:
        deadline = deadline or Deadline()
        try:
            pod = Pod.from_dict(self._client.get(ResourceKind.POD, key))
        except NotFoundError:
            return DONE
        if not self.is_controllable(pod):
            return DONE

        LOG.info("Reconciling Pod '%s'", key)
        clusters = [
            Cluster.from_dict(obj)
            for obj in self._client.list(ResourceKind.CLUSTER, key.namespace)
        ]
        bindings = [
            Binding.from_dict(obj)
            for obj in self._client.list(ResourceKind.BINDING, key.namespace)
        ]
        with self._dial(pod, deadline) as conn:
            for cluster in clusters:
                ensure_cluster(conn, cluster)
            for binding in bindings:
                ensure_binding(conn, binding)
        return DONE
