from typing import List

import pytest

from atomix_controller.control import DriverId, StoreId
from atomix_controller.errors import UnavailableError
from atomix_controller.memory import MemoryResourceClient
from atomix_controller.proxy import ProfileReconciler
from atomix_controller.reconcile import DONE, REQUEUE, Deadline
from atomix_controller.resources import (
    BindingState,
    ObjectKey,
    Profile,
    ResourceKind,
)
from atomix_runtime import InMemoryDialer, InMemoryRuntime

from factories import (
    RUNTIME_VERSION,
    build_catalog_client,
    profile_obj,
    proxy_pod_obj,
    store_obj,
)

PROFILE = ObjectKey("default", "app")
STORE = StoreId("default", "raft-store")
ADDRESS = "10.0.0.10:5679"


def build_reconciler(client: MemoryResourceClient, runtime: InMemoryRuntime, **kwargs):
    dialer = InMemoryDialer({ADDRESS: runtime})
    return ProfileReconciler(client, dialer, RUNTIME_VERSION, **kwargs), dialer


def build_setup(**kwargs):
    client = build_catalog_client()
    client.create(ResourceKind.POD, proxy_pod_obj())
    runtime = InMemoryRuntime()
    reconciler, dialer = build_reconciler(client, runtime, **kwargs)
    return client, runtime, reconciler, dialer


def load_profile(client: MemoryResourceClient) -> Profile:
    return Profile.from_dict(client.get(ResourceKind.PROFILE, PROFILE))


def converge(reconciler: ProfileReconciler, limit: int = 20) -> List:
    results = []
    for _ in range(limit):
        result = reconciler.reconcile(PROFILE)
        results.append(result)
        if result == DONE:
            return results
    raise AssertionError(f"did not converge: {results}")


def binding_state(client: MemoryResourceClient, name: str = "raft-store"):
    proxy = load_profile(client).status.proxies["pod-0"]
    return proxy.bindings[name]


def test_binding_converges_one_transition_per_call():
    client, runtime, reconciler, _ = build_setup()

    # routing ConfigMap
    assert reconciler.reconcile(PROFILE) == REQUEUE
    assert client.get(ResourceKind.CONFIG_MAP, PROFILE)["data"]["config.yaml"]
    assert runtime.calls == []

    # NoEntry -> Unbound
    assert reconciler.reconcile(PROFILE) == REQUEUE
    assert binding_state(client).state is BindingState.UNBOUND
    assert runtime.calls == []

    # Unbound -> Bound
    assert reconciler.reconcile(PROFILE) == REQUEUE
    assert runtime.call_names() == ["connect"]
    status = binding_state(client)
    assert status.state is BindingState.BOUND
    assert status.store == ObjectKey("default", "raft-store")

    assert reconciler.reconcile(PROFILE) == DONE
    assert runtime.call_names() == ["connect"]

    profile = load_profile(client)
    assert profile.status.ready
    assert profile.status.proxies["pod-0"].ready
    assert STORE in runtime.connections


def test_converged_profile_is_stable():
    client, runtime, reconciler, _ = build_setup()
    converge(reconciler)
    version = client.get(ResourceKind.PROFILE, PROFILE)["metadata"]["resourceVersion"]

    assert reconciler.reconcile(PROFILE) == DONE

    after = client.get(ResourceKind.PROFILE, PROFILE)["metadata"]["resourceVersion"]
    assert after == version
    assert runtime.call_names() == ["connect"]


def test_store_update_is_configured():
    client, runtime, reconciler, _ = build_setup()
    converge(reconciler)

    client.apply(ResourceKind.STORE, store_obj(config={"replicas": 5}))
    converge(reconciler)

    assert runtime.call_names() == ["connect", "configure"]
    assert runtime.connections[STORE][1] == b'{"replicas":5}'
    current = client.get(ResourceKind.STORE, ObjectKey("default", "raft-store"))
    assert binding_state(client).store_version == current["metadata"]["resourceVersion"]


def test_configure_not_found_reconnects():
    client, runtime, reconciler, _ = build_setup()
    converge(reconciler)

    client.apply(ResourceKind.STORE, store_obj(config={"replicas": 5}))
    runtime.connections.clear()

    assert reconciler.reconcile(PROFILE) == REQUEUE
    assert binding_state(client).state is BindingState.UNBOUND
    assert not load_profile(client).status.ready

    converge(reconciler)
    assert binding_state(client).state is BindingState.BOUND
    assert runtime.call_names() == ["connect", "configure", "connect"]


def test_existing_connection_is_reconfigured_on_connect():
    client, runtime, reconciler, _ = build_setup()
    reconciler.reconcile(PROFILE)
    reconciler.reconcile(PROFILE)
    assert binding_state(client).state is BindingState.UNBOUND
    runtime.connections[STORE] = (DriverId("raft", "v1"), b'{"replicas":3}')

    client.apply(ResourceKind.STORE, store_obj(config={"replicas": 5}))
    converge(reconciler)

    assert runtime.call_names() == ["connect", "configure"]
    assert runtime.connections[STORE][1] == b'{"replicas":5}'
    current = client.get(ResourceKind.STORE, ObjectKey("default", "raft-store"))
    assert binding_state(client).state is BindingState.BOUND
    assert binding_state(client).store_version == current["metadata"]["resourceVersion"]


def test_store_deletion_disconnects():
    client, runtime, reconciler, _ = build_setup()
    converge(reconciler)

    client.delete(ResourceKind.STORE, ObjectKey("default", "raft-store"))

    assert reconciler.reconcile(PROFILE) == REQUEUE
    assert runtime.call_names() == ["connect", "disconnect"]
    assert STORE not in runtime.connections
    assert binding_state(client).state is BindingState.UNBOUND
    assert reconciler.reconcile(PROFILE) == DONE
    assert not load_profile(client).status.ready


def test_disconnect_absorbs_not_found():
    client, runtime, reconciler, _ = build_setup()
    converge(reconciler)
    runtime.connections.clear()

    client.delete(ResourceKind.STORE, ObjectKey("default", "raft-store"))

    assert reconciler.reconcile(PROFILE) == REQUEUE
    assert binding_state(client).state is BindingState.UNBOUND


def test_failed_connect_records_nothing():
    client, runtime, reconciler, _ = build_setup()
    reconciler.reconcile(PROFILE)
    reconciler.reconcile(PROFILE)
    runtime.fail_next("connect", UnavailableError("sidecar down"))

    with pytest.raises(UnavailableError):
        reconciler.reconcile(PROFILE)

    assert binding_state(client).state is BindingState.UNBOUND
    converge(reconciler)
    assert binding_state(client).state is BindingState.BOUND


def test_missing_store_skips_to_next_binding():
    client = build_catalog_client(stores=("raft-store", "cache"))
    client.delete(ResourceKind.STORE, ObjectKey("default", "raft-store"))
    client.create(ResourceKind.POD, proxy_pod_obj())
    runtime = InMemoryRuntime()
    reconciler, _ = build_reconciler(client, runtime)

    converge(reconciler)

    assert binding_state(client, "raft-store").state is BindingState.UNBOUND
    assert binding_state(client, "cache").state is BindingState.BOUND
    assert runtime.connections.keys() == {StoreId("default", "cache")}
    assert not load_profile(client).status.ready


def test_unsupported_driver_leaves_binding_unbound():
    client = build_catalog_client(runtime_versions=("v1",))
    client.create(ResourceKind.POD, proxy_pod_obj())
    runtime = InMemoryRuntime()
    reconciler, _ = build_reconciler(client, runtime)

    converge(reconciler)

    assert binding_state(client).state is BindingState.UNBOUND
    assert runtime.calls == []


def test_foreign_and_uninjected_pods_are_ignored():
    client = build_catalog_client()
    client.create(ResourceKind.POD, proxy_pod_obj(runtime_version="v1"))
    pending = proxy_pod_obj(name="app-1", uid="pod-1", ip="")
    client.create(ResourceKind.POD, pending)
    runtime = InMemoryRuntime()
    reconciler, dialer = build_reconciler(client, runtime)

    converge(reconciler)

    assert load_profile(client).status.proxies == {}
    assert dialer.dials == []


def test_profile_without_bindings_tracks_proxy():
    client = build_catalog_client(stores=())
    client.create(ResourceKind.POD, proxy_pod_obj())
    reconciler, _ = build_reconciler(client, InMemoryRuntime())

    converge(reconciler)

    profile = load_profile(client)
    assert list(profile.status.proxies) == ["pod-0"]
    assert profile.status.ready


def test_missing_profile_is_done():
    reconciler, _ = build_reconciler(MemoryResourceClient(), InMemoryRuntime())

    assert reconciler.reconcile(ObjectKey("default", "gone")) == DONE


def test_config_map_follows_profile_changes():
    client, _, reconciler, _ = build_setup()
    converge(reconciler)
    before = client.get(ResourceKind.CONFIG_MAP, PROFILE)["data"]

    client.apply(ResourceKind.PROFILE, profile_obj(stores=()))

    assert reconciler.reconcile(PROFILE) == REQUEUE
    after = client.get(ResourceKind.CONFIG_MAP, PROFILE)["data"]
    assert after != before
    assert "routes: []" in after["config.yaml"]


def test_rpc_timeout_comes_from_deadline():
    client, _, reconciler, dialer = build_setup()
    reconciler.reconcile(PROFILE)
    reconciler.reconcile(PROFILE)

    now = [100.0]
    reconciler.reconcile(PROFILE, Deadline(5.0, clock=lambda: now[0]))

    assert dialer.dials == [(ADDRESS, 5.0)]


def test_expired_deadline_is_unavailable():
    client, runtime, reconciler, _ = build_setup()
    reconciler.reconcile(PROFILE)
    reconciler.reconcile(PROFILE)
    now = [100.0]
    deadline = Deadline(1.0, clock=lambda: now[0])
    now[0] = 102.0

    with pytest.raises(UnavailableError):
        reconciler.reconcile(PROFILE, deadline)
    assert runtime.calls == []


def test_prune_removes_deleted_pods():
    client, runtime, reconciler, _ = build_setup(prune_stale_status=True)
    converge(reconciler)

    client.delete(ResourceKind.POD, ObjectKey("default", "app-0"))
    converge(reconciler)

    assert load_profile(client).status.proxies == {}


def test_prune_disconnects_undeclared_bindings():
    client, runtime, reconciler, _ = build_setup(prune_stale_status=True)
    converge(reconciler)

    client.apply(ResourceKind.PROFILE, profile_obj(stores=()))
    converge(reconciler)

    assert runtime.call_names() == ["connect", "disconnect"]
    proxy = load_profile(client).status.proxies["pod-0"]
    assert proxy.bindings == {}
    assert proxy.ready


def test_without_prune_stale_entries_remain():
    client, runtime, reconciler, _ = build_setup()
    converge(reconciler)

    client.delete(ResourceKind.POD, ObjectKey("default", "app-0"))
    converge(reconciler)

    assert list(load_profile(client).status.proxies) == ["pod-0"]
    assert runtime.call_names() == ["connect"]
