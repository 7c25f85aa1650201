import pytest

from atomix_controller.control import BindingId, ClusterId
from atomix_controller.errors import AlreadyExistsError, UnavailableError
from atomix_controller.memory import MemoryResourceClient
from atomix_controller.reconcile import DONE
from atomix_controller.resources import Cluster, ObjectKey, ResourceKind
from atomix_controller.runtime import (
    BindingReconciler,
    ClusterReconciler,
    PodReconciler,
    Presence,
    ensure_cluster,
)
from atomix_runtime import InMemoryDialer, InMemoryRuntime

from factories import RUNTIME_VERSION, binding_obj, cluster_obj, runtime_pod_obj

CLUSTER = ClusterId("default", "raft")
BINDING = BindingId("default", "maps")


def build_client(*pods) -> MemoryResourceClient:
    client = MemoryResourceClient()
    client.create(ResourceKind.CLUSTER, cluster_obj())
    client.create(ResourceKind.BINDING, binding_obj())
    for pod in pods:
        client.create(ResourceKind.POD, pod)
    return client


def test_ensure_cluster_creates_once():
    runtime = InMemoryRuntime()
    cluster = Cluster.from_dict(cluster_obj())

    assert ensure_cluster(runtime, cluster) is Presence.CREATED
    assert ensure_cluster(runtime, cluster) is Presence.PRESENT
    assert runtime.call_names() == ["get_cluster", "create_cluster", "get_cluster"]
    assert runtime.clusters[CLUSTER].config == b'{"replicas":3}'


def test_ensure_cluster_absorbs_create_race():
    runtime = InMemoryRuntime()
    runtime.fail_next("create_cluster", AlreadyExistsError("raced"))

    presence = ensure_cluster(runtime, Cluster.from_dict(cluster_obj()))

    assert presence is Presence.PRESENT


def test_cluster_reconciler_fans_out_to_runtime_pods():
    client = build_client(
        runtime_pod_obj(name="rt-0", ip="10.0.0.20"),
        runtime_pod_obj(name="rt-1", uid="rt-uid-1", ip="10.0.0.21"),
        runtime_pod_obj(name="rt-old", uid="rt-uid-2", ip="10.0.0.22", runtime_version="v1"),
    )
    runtimes = {"10.0.0.20:5679": InMemoryRuntime(), "10.0.0.21:5679": InMemoryRuntime()}
    reconciler = ClusterReconciler(client, InMemoryDialer(runtimes), RUNTIME_VERSION)

    assert reconciler.reconcile(ObjectKey("default", "raft")) == DONE

    for runtime in runtimes.values():
        assert CLUSTER in runtime.clusters


def test_cluster_reconciler_reports_first_error_after_fan_out():
    client = build_client(
        runtime_pod_obj(name="rt-0", ip="10.0.0.20"),
        runtime_pod_obj(name="rt-1", uid="rt-uid-1", ip="10.0.0.21"),
    )
    healthy = InMemoryRuntime()
    reconciler = ClusterReconciler(
        client, InMemoryDialer({"10.0.0.21:5679": healthy}), RUNTIME_VERSION
    )

    with pytest.raises(UnavailableError):
        reconciler.reconcile(ObjectKey("default", "raft"))

    assert CLUSTER in healthy.clusters


def test_binding_reconciler_creates_binding():
    client = build_client(runtime_pod_obj())
    runtime = InMemoryRuntime()
    reconciler = BindingReconciler(
        client, InMemoryDialer({"10.0.0.20:5679": runtime}), RUNTIME_VERSION
    )

    assert reconciler.reconcile(ObjectKey("default", "maps")) == DONE

    info = runtime.bindings[BINDING]
    assert info.cluster == CLUSTER
    assert info.rules[0].kinds == ("Map",)
    assert info.rules[0].names == ("orders-*",)


def test_missing_objects_are_done():
    client = MemoryResourceClient()
    dialer = InMemoryDialer()

    assert ClusterReconciler(client, dialer, RUNTIME_VERSION).reconcile(
        ObjectKey("default", "raft")
    ) == DONE
    assert BindingReconciler(client, dialer, RUNTIME_VERSION).reconcile(
        ObjectKey("default", "maps")
    ) == DONE
    assert PodReconciler(client, dialer, RUNTIME_VERSION).reconcile(
        ObjectKey("default", "rt-0")
    ) == DONE
    assert dialer.dials == []


def test_pod_reconciler_catches_up_new_sidecar():
    client = build_client(runtime_pod_obj())
    runtime = InMemoryRuntime()
    reconciler = PodReconciler(
        client, InMemoryDialer({"10.0.0.20:5679": runtime}), RUNTIME_VERSION
    )

    assert reconciler.reconcile(ObjectKey("default", "rt-0")) == DONE

    assert CLUSTER in runtime.clusters
    assert BINDING in runtime.bindings
    assert runtime.call_names() == [
        "get_cluster",
        "create_cluster",
        "get_binding",
        "create_binding",
    ]


def test_pod_reconciler_ignores_uncontrollable_pod():
    client = build_client(runtime_pod_obj(runtime_version="v1"))
    dialer = InMemoryDialer({"10.0.0.20:5679": InMemoryRuntime()})

    PodReconciler(client, dialer, RUNTIME_VERSION).reconcile(ObjectKey("default", "rt-0"))

    assert dialer.dials == []
