"""Kubernetes list/watch loop publishing object events."""

from __future__ import annotations

import logging
from threading import Event, Thread
from typing import Any, Dict, Optional

from kubernetes import watch
from kubernetes.client.rest import ApiException

from atomix_controller.resources import ObjectKey, ResourceKind

from ..events import ObjectDelete, ObjectUpsert
from ..kube import KubernetesResourceClient
from ..registry import ControllerRegistry

LOG = logging.getLogger(__name__)

_GONE = 410


class KubernetesWatcher(Thread):
    """List then watch one resource kind and feed the registry.

    The initial list publishes an upsert per existing object so every
    primary key is reconciled once after startup.  When the server reports
    the watch resource version as expired the watcher relists.
    """

    def __init__(
        self,
        registry: ControllerRegistry,
        client: KubernetesResourceClient,
        kind: ResourceKind,
        *,
        stop_event: Event,
        namespace: Optional[str] = None,
        timeout_seconds: int = 300,
        retry_interval: float = 5.0,
    ) -> None:
        super().__init__(daemon=True, name=f"watch-{kind.plural}")
        self._registry = registry
        self._client = client
        self._kind = kind
        self._namespace = namespace if kind.namespaced else None
        self._timeout_seconds = timeout_seconds
        self._retry_interval = retry_interval
        self._stop_event = stop_event
        self._resource_version: Optional[str] = None
        self._watch: Optional[watch.Watch] = None

    @property
    def kind(self) -> ResourceKind:
        return self._kind

    def run(self) -> None:
        LOG.info("Watching %s", self._kind.plural)
        while not self._stop_event.is_set():
            try:
                self.poll()
            except ApiException as exc:
                if exc.status == _GONE:
                    LOG.info("%s watch expired, relisting", self._kind.plural)
                    self._resource_version = None
                    continue
                LOG.warning("%s watch failed: %s", self._kind.plural, exc)
                self._stop_event.wait(self._retry_interval)
            except Exception:  # pragma: no cover - logged below
                LOG.exception("%s watcher encountered an error", self._kind.plural)
                self._stop_event.wait(self._retry_interval)

    def stop(self) -> None:
        if self._watch is not None:
            self._watch.stop()

    def resync(self) -> None:
        items, version = self._client.list_with_version(self._kind, self._namespace)
        for obj in items:
            self._registry.handle(ObjectUpsert(self._kind, obj))
        self._resource_version = version
        LOG.debug("Listed %d %s at version %s", len(items), self._kind.plural, version)

    def poll(self) -> None:
        """Run one list (if needed) and watch cycle."""

        if self._resource_version is None:
            self.resync()
        func, args = self._client.list_source(self._kind, self._namespace)
        self._watch = watch.Watch()
        kwargs: Dict[str, Any] = {"timeout_seconds": self._timeout_seconds}
        if self._resource_version:
            kwargs["resource_version"] = self._resource_version
        for event in self._watch.stream(func, *args, **kwargs):
            if self._stop_event.is_set():
                self._watch.stop()
                break
            self.dispatch(event)

    def dispatch(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")
        obj = event.get("raw_object") or {}
        if event_type == "ERROR":
            if obj.get("code") == _GONE:
                self._resource_version = None
                if self._watch is not None:
                    self._watch.stop()
            LOG.warning("%s watch error: %s", self._kind.plural, obj.get("message"))
            return

        version = (obj.get("metadata") or {}).get("resourceVersion")
        if version:
            self._resource_version = version
        if event_type in ("ADDED", "MODIFIED"):
            self._registry.handle(ObjectUpsert(self._kind, obj))
        elif event_type == "DELETED":
            self._registry.handle(ObjectDelete(self._kind, obj))
        else:
            return
        LOG.debug("%s %s '%s'", event_type, self._kind.kind, ObjectKey.of(obj))
