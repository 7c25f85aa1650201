"""Binding convergence for proxy sidecars.

:class:`ProfileReconciler` walks every injected pod that references a
Profile and drives each ``(pod, binding)`` pair through::

    NoEntry -> Unbound -> Bound -> (Configure on store drift) -> Bound
                                \\-> (store deleted) Disconnect -> Unbound

Exactly one mutating transition is attempted per call.  A successful
transition persists the new status (readiness recomputed) and returns
:data:`~atomix_controller.reconcile.REQUEUE`; the next transition happens on
the following call.  Errors propagate to the caller, which retries with
backoff; status is only ever written after the RPC it records succeeded.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .catalog import Catalog
from .client import ResourceClient
from .control import ControlClient, Dialer, DriverId, StoreId
from .errors import AlreadyExistsError, NotFoundError, VersionMismatchError
from .injector import (
    INJECTED_STATUS,
    PROXY_CONTAINER_NAME,
    PROXY_PROFILE_ANNOTATION,
    PROXY_RUNTIME_VERSION_ANNOTATION,
    PROXY_STATUS_ANNOTATION,
)
from .reconcile import DONE, REQUEUE, Deadline, Reconciler, Result
from .resources import (
    BindingState,
    BindingStatus,
    ObjectKey,
    Pod,
    Profile,
    ProfileBinding,
    ProfileStatus,
    ProxyStatus,
    ResourceKind,
    Store,
)
from .routes import RouterConfigRenderer

LOG = logging.getLogger(__name__)


class ProfileReconciler(Reconciler):
    """Converge the proxies of one Profile with its declared bindings."""

    kind = ResourceKind.PROFILE

    def __init__(
        self,
        client: ResourceClient,
        dialer: Dialer,
        runtime_version: str,
        *,
        renderer: Optional[RouterConfigRenderer] = None,
        prune_stale_status: bool = False,
    ) -> None:
        self._client = client
        self._catalog = Catalog(client)
        self._dialer = dialer
        self._runtime_version = runtime_version
        self._renderer = renderer or RouterConfigRenderer()
        self._prune = prune_stale_status

    def reconcile(self, key: ObjectKey, deadline: Optional[Deadline] = None) -> Result:
        deadline = deadline or Deadline()
        LOG.info("Reconciling Profile '%s'", key)
        try:
            profile = Profile.from_dict(self._client.get(ResourceKind.PROFILE, key))
        except NotFoundError:
            LOG.debug("Profile '%s' no longer exists", key)
            return DONE

        if self._sync_config_map(profile):
            return REQUEUE

        pods = self._list_pods(profile)
        for pod in pods:
            if not self._is_controllable(pod):
                LOG.debug("Pod '%s' is not ready to be reconciled", pod.key)
                continue
            if self._reconcile_pod(profile, pod, deadline):
                return REQUEUE

        if self._prune and self._prune_stale(profile, pods, deadline):
            return REQUEUE

        status = profile.status.with_readiness()
        if status != profile.status:
            self._persist(profile, status)
        return DONE

    # ------------------------------------------------------------------
    # Routing configuration
    # ------------------------------------------------------------------
    def _sync_config_map(self, profile: Profile) -> bool:
        rendered = self._renderer.render(profile)
        try:
            current = self._client.get(ResourceKind.CONFIG_MAP, profile.key)
        except NotFoundError:
            self._client.create(ResourceKind.CONFIG_MAP, rendered.config_map)
            LOG.info("Created routing ConfigMap for Profile '%s'", profile.key)
            return True

        if (current.get("data") or {}) == rendered.config_map["data"]:
            return False
        desired = dict(rendered.config_map)
        desired["metadata"] = dict(
            rendered.config_map["metadata"],
            resourceVersion=(current.get("metadata") or {}).get("resourceVersion"),
        )
        self._client.replace(ResourceKind.CONFIG_MAP, desired)
        LOG.info("Updated routing ConfigMap for Profile '%s'", profile.key)
        return True

    # ------------------------------------------------------------------
    # Pods
    # ------------------------------------------------------------------
    def _list_pods(self, profile: Profile) -> List[Pod]:
        pods = [
            Pod.from_dict(obj)
            for obj in self._client.list(ResourceKind.POD, profile.key.namespace)
        ]
        return sorted(
            (p for p in pods if p.annotations.get(PROXY_PROFILE_ANNOTATION) == profile.key.name),
            key=lambda p: p.key,
        )

    def _is_controllable(self, pod: Pod) -> bool:
        return (
            pod.annotations.get(PROXY_STATUS_ANNOTATION) == INJECTED_STATUS
            and pod.annotations.get(PROXY_RUNTIME_VERSION_ANNOTATION) == self._runtime_version
            and bool(pod.ip)
            and bool(pod.uid)
        )

    def _reconcile_pod(self, profile: Profile, pod: Pod, deadline: Deadline) -> bool:
        proxy = profile.status.proxies.get(pod.uid)
        if proxy is None and not profile.bindings:
            self._persist(
                profile,
                profile.status.with_proxy(ProxyStatus(pod_name=pod.key.name, pod_uid=pod.uid)),
            )
            LOG.info("Added proxy for Pod '%s' to Profile '%s'", pod.key, profile.key)
            return True

        for binding in profile.bindings:
            if self._reconcile_binding(profile, pod, proxy, binding, deadline):
                return True
        return False

    # ------------------------------------------------------------------
    # Binding state machine
    # ------------------------------------------------------------------
    def _reconcile_binding(
        self,
        profile: Profile,
        pod: Pod,
        proxy: Optional[ProxyStatus],
        binding: ProfileBinding,
        deadline: Deadline,
    ) -> bool:
        store_key = binding.store.resolve(profile.key.namespace)
        status = proxy.bindings.get(binding.name) if proxy is not None else None
        if status is None:
            proxy = proxy or ProxyStatus(pod_name=pod.key.name, pod_uid=pod.uid)
            self._set_binding(profile, proxy, binding.name, BindingStatus(store=store_key))
            LOG.info(
                "Binding '%s' of Pod '%s' is %s",
                binding.name,
                pod.key,
                BindingState.UNBOUND.value,
            )
            return True

        store = self._get_store(store_key)
        if not status.bound:
            if store is None:
                LOG.debug("Store '%s' for binding '%s' not found", store_key, binding.name)
                return False
            return self._connect(profile, pod, proxy, binding.name, store, deadline)

        if status.store is not None and status.store != store_key:
            return self._disconnect(profile, pod, proxy, binding.name, status.store, deadline)
        if store is None:
            return self._disconnect(profile, pod, proxy, binding.name, store_key, deadline)
        if status.store_version != store.version:
            return self._configure(profile, pod, proxy, binding.name, store, deadline)
        return False

    def _connect(
        self,
        profile: Profile,
        pod: Pod,
        proxy: ProxyStatus,
        name: str,
        store: Store,
        deadline: Deadline,
    ) -> bool:
        try:
            resolved = self._catalog.resolve_driver(store, self._runtime_version)
        except (NotFoundError, VersionMismatchError) as exc:
            LOG.warning("Cannot connect binding '%s' of Pod '%s': %s", name, pod.key, exc)
            return False

        LOG.info("Connecting Pod '%s' to Store '%s'", pod.key, store.key)
        with self._dial(pod, deadline) as conn:
            try:
                conn.connect(
                    StoreId.of(store.key),
                    DriverId(name=resolved.protocol.name, version=resolved.version.name),
                    store.config_bytes(),
                )
            except AlreadyExistsError:
                # the existing connection may hold an older config
                LOG.info("Pod '%s' already connected to Store '%s'", pod.key, store.key)
                conn.configure(StoreId.of(store.key), store.config_bytes())
        self._set_binding(
            profile,
            proxy,
            name,
            BindingStatus(BindingState.BOUND, store_version=store.version, store=store.key),
        )
        LOG.info("Binding '%s' of Pod '%s' is %s", name, pod.key, BindingState.BOUND.value)
        return True

    def _configure(
        self,
        profile: Profile,
        pod: Pod,
        proxy: ProxyStatus,
        name: str,
        store: Store,
        deadline: Deadline,
    ) -> bool:
        LOG.info("Configuring Store '%s' for Pod '%s'", store.key, pod.key)
        try:
            with self._dial(pod, deadline) as conn:
                conn.configure(StoreId.of(store.key), store.config_bytes())
        except NotFoundError:
            LOG.info("Pod '%s' lost its connection to Store '%s'", pod.key, store.key)
            self._set_binding(profile, proxy, name, BindingStatus(store=store.key))
            return True
        self._set_binding(
            profile,
            proxy,
            name,
            BindingStatus(BindingState.BOUND, store_version=store.version, store=store.key),
        )
        return True

    def _disconnect(
        self,
        profile: Profile,
        pod: Pod,
        proxy: ProxyStatus,
        name: str,
        store_key: ObjectKey,
        deadline: Deadline,
    ) -> bool:
        self._send_disconnect(pod, store_key, deadline)
        self._set_binding(profile, proxy, name, BindingStatus(store=store_key))
        LOG.info("Binding '%s' of Pod '%s' is %s", name, pod.key, BindingState.UNBOUND.value)
        return True

    def _send_disconnect(self, pod: Pod, store_key: ObjectKey, deadline: Deadline) -> None:
        LOG.info("Disconnecting Pod '%s' from Store '%s'", pod.key, store_key)
        with self._dial(pod, deadline) as conn:
            try:
                conn.disconnect(StoreId.of(store_key))
            except NotFoundError:
                LOG.debug("Pod '%s' was not connected to Store '%s'", pod.key, store_key)

    # ------------------------------------------------------------------
    # Stale status pruning
    # ------------------------------------------------------------------
    def _prune_stale(self, profile: Profile, pods: List[Pod], deadline: Deadline) -> bool:
        live = {pod.uid: pod for pod in pods}
        declared = {binding.name for binding in profile.bindings}

        gone = [uid for uid in profile.status.proxies if uid not in live]
        if gone:
            self._persist(profile, profile.status.without_proxies(gone))
            LOG.info("Pruned %d stale proxies from Profile '%s'", len(gone), profile.key)
            return True

        for uid, proxy in profile.status.proxies.items():
            stale = [name for name in proxy.bindings if name not in declared]
            if not stale:
                continue
            pod = live[uid]
            if not self._is_controllable(pod):
                continue
            for name in stale:
                status = proxy.bindings[name]
                if status.bound and status.store is not None:
                    self._send_disconnect(pod, status.store, deadline)
                    self._set_binding(profile, proxy, name, BindingStatus(store=status.store))
                    return True
            self._persist(profile, profile.status.with_proxy(proxy.without_bindings(stale)))
            LOG.info("Pruned bindings %s of Pod '%s'", stale, pod.key)
            return True
        return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _get_store(self, key: ObjectKey) -> Optional[Store]:
        try:
            return self._catalog.get_store(key)
        except NotFoundError:
            return None

    def _dial(self, pod: Pod, deadline: Deadline) -> ControlClient:
        return self._dialer.dial(
            pod.control_address(PROXY_CONTAINER_NAME), timeout=deadline.remaining()
        )

    def _set_binding(
        self, profile: Profile, proxy: ProxyStatus, name: str, status: BindingStatus
    ) -> None:
        self._persist(profile, profile.status.with_proxy(proxy.with_binding(name, status)))

    def _persist(self, profile: Profile, status: ProfileStatus) -> None:
        self._client.update_status(
            ResourceKind.PROFILE, profile.with_status(status.with_readiness())
        )
