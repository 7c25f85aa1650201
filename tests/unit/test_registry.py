import pytest

from atomix_controller.reconcile import DONE, Reconciler, Result
from atomix_controller.resources import ObjectKey, Profile, ResourceKind
from atomix_controller.routes import RouterConfigRenderer
from atomix_manager.events import ObjectDelete, ObjectUpsert
from atomix_manager.registry import ControllerRegistry
from atomix_manager.scheduler import Controller
from atomix_manager.watchers import (
    NamespaceObjects,
    ProfilesForProtocol,
    ProfilesForStore,
    owner_profile,
    profile_for_pod,
)

from factories import (
    build_catalog_client,
    cluster_obj,
    profile_obj,
    protocol_obj,
    proxy_pod_obj,
    store_obj,
)

PROFILE = ObjectKey("default", "app")


class NullReconciler(Reconciler):
    kind = ResourceKind.PROFILE

    def reconcile(self, key, deadline=None) -> Result:
        return DONE


def build_profile_controller(client) -> Controller:
    controller = Controller("profile-controller", NullReconciler())
    controller.watch(ResourceKind.PROFILE)
    controller.watch(ResourceKind.POD, profile_for_pod)
    controller.watch(ResourceKind.STORE, ProfilesForStore(client))
    controller.watch(ResourceKind.CONFIG_MAP, owner_profile)
    return controller


def queued(controller: Controller) -> list:
    keys = []
    while True:
        key = controller.queue.get(timeout=0)
        if key is None:
            return keys
        keys.append(key)
        controller.queue.done(key)


def test_registry_rejects_duplicate_registration():
    registry = ControllerRegistry()
    controller = Controller("profile-controller", NullReconciler())

    registry.register(controller)

    with pytest.raises(ValueError):
        registry.register(controller)


def test_registry_rejects_unknown_events():
    registry = ControllerRegistry()

    with pytest.raises(TypeError):
        registry.handle({"type": "ADDED"})


def test_primary_and_dependency_changes_enqueue_the_same_key():
    client = build_catalog_client()
    registry = ControllerRegistry()
    controller = build_profile_controller(client)
    registry.register(controller)

    registry.handle(ObjectUpsert(ResourceKind.STORE, store_obj()))
    assert queued(controller) == [PROFILE]

    registry.handle(ObjectUpsert(ResourceKind.PROFILE, profile_obj()))
    assert queued(controller) == [PROFILE]

    registry.handle(ObjectDelete(ResourceKind.POD, proxy_pod_obj()))
    assert queued(controller) == [PROFILE]

    config_map = RouterConfigRenderer().render(Profile.from_dict(profile_obj())).config_map
    registry.handle(ObjectUpsert(ResourceKind.CONFIG_MAP, config_map))
    assert queued(controller) == [PROFILE]


def test_coalesced_triggers_reconcile_once():
    client = build_catalog_client()
    registry = ControllerRegistry()
    controller = build_profile_controller(client)
    registry.register(controller)

    registry.handle(ObjectUpsert(ResourceKind.PROFILE, profile_obj()))
    registry.handle(ObjectUpsert(ResourceKind.STORE, store_obj()))
    registry.handle(ObjectUpsert(ResourceKind.POD, proxy_pod_obj()))

    assert len(controller.queue) == 1


def test_unrelated_objects_enqueue_nothing():
    client = build_catalog_client()
    registry = ControllerRegistry()
    controller = build_profile_controller(client)
    registry.register(controller)

    registry.handle(ObjectUpsert(ResourceKind.STORE, store_obj(name="other")))
    registry.handle(ObjectUpsert(ResourceKind.POD, proxy_pod_obj(profile="")))
    registry.handle(ObjectUpsert(ResourceKind.CONFIG_MAP, {"metadata": {"name": "x"}}))
    registry.handle(ObjectUpsert(ResourceKind.CLUSTER, cluster_obj()))

    assert len(controller.queue) == 0


def test_failing_mapper_does_not_block_other_controllers():
    registry = ControllerRegistry()
    broken = Controller("broken", NullReconciler())
    broken.watch(ResourceKind.POD, lambda obj: 1 / 0)
    healthy = Controller("healthy", NullReconciler())
    healthy.watch(ResourceKind.POD, profile_for_pod)
    registry.register(broken)
    registry.register(healthy)

    registry.handle(ObjectUpsert(ResourceKind.POD, proxy_pod_obj()))

    assert queued(healthy) == [PROFILE]
    assert registry.watched_kinds() == {ResourceKind.POD}


def test_namespace_objects_mapper():
    client = build_catalog_client()
    client.create(ResourceKind.CLUSTER, cluster_obj())
    client.create(ResourceKind.CLUSTER, cluster_obj(namespace="other"))

    keys = NamespaceObjects(client, ResourceKind.CLUSTER)(proxy_pod_obj())

    assert keys == [ObjectKey("default", "raft")]


def test_profiles_for_protocol_mapper():
    client = build_catalog_client(stores=("raft-store", "cache"))

    assert ProfilesForProtocol(client)(protocol_obj()) == [PROFILE]
    assert ProfilesForProtocol(client)(protocol_obj(name="etcd")) == []
