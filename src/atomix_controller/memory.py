"""In-process resource client.

Keeps objects in a dictionary, bumps ``metadata.resourceVersion`` on every
write and rejects writes carrying a stale version, which is enough to drive
the reconcilers end-to-end in tests and in ``--dry-run`` style local runs.
Listeners registered with :meth:`MemoryResourceClient.subscribe` receive every
change so watch-driven scheduling can be exercised without a cluster.
"""

from __future__ import annotations

import copy
import logging
import uuid
from threading import RLock
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .client import ResourceClient
from .errors import AlreadyExistsError, ConflictError, NotFoundError
from .resources import ObjectKey, ResourceKind

LOG = logging.getLogger(__name__)

Listener = Callable[[str, ResourceKind, Dict[str, Any]], None]

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


class MemoryResourceClient(ResourceClient):
    def __init__(self) -> None:
        self._objects: Dict[Tuple[ResourceKind, ObjectKey], Dict[str, Any]] = {}
        self._version = 0
        self._lock = RLock()
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # ResourceClient contract
    # ------------------------------------------------------------------
    def get(self, kind: ResourceKind, key: ObjectKey) -> Dict[str, Any]:
        with self._lock:
            obj = self._objects.get((kind, self._scoped(kind, key)))
            if obj is None:
                raise NotFoundError(f"{kind.kind} '{key}' not found")
            return copy.deepcopy(obj)

    def list(
        self, kind: ResourceKind, namespace: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(obj)
                for (k, key), obj in sorted(self._objects.items(), key=lambda i: i[0][1])
                if k is kind and (namespace is None or key.namespace == namespace)
            ]

    def create(self, kind: ResourceKind, obj: Mapping[str, Any]) -> Dict[str, Any]:
        stored = copy.deepcopy(dict(obj))
        key = self._scoped(kind, ObjectKey.of(stored))
        with self._lock:
            if (kind, key) in self._objects:
                raise AlreadyExistsError(f"{kind.kind} '{key}' already exists")
            metadata = stored.setdefault("metadata", {})
            metadata.setdefault("uid", str(uuid.uuid4()))
            metadata["resourceVersion"] = self._next_version()
            self._objects[(kind, key)] = stored
        self._notify(ADDED, kind, stored)
        return copy.deepcopy(stored)

    def replace(self, kind: ResourceKind, obj: Mapping[str, Any]) -> Dict[str, Any]:
        return self._write(kind, obj, status_only=False)

    def update_status(
        self, kind: ResourceKind, obj: Mapping[str, Any]
    ) -> Dict[str, Any]:
        return self._write(kind, obj, status_only=True)

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------
    def apply(self, kind: ResourceKind, obj: Mapping[str, Any]) -> Dict[str, Any]:
        """Create or overwrite ``obj`` regardless of its resource version."""

        key = self._scoped(kind, ObjectKey.of(obj))
        with self._lock:
            current = self._objects.get((kind, key))
        if current is None:
            return self.create(kind, obj)
        stored = copy.deepcopy(dict(obj))
        metadata = stored.setdefault("metadata", {})
        metadata["uid"] = current["metadata"].get("uid")
        metadata["resourceVersion"] = current["metadata"]["resourceVersion"]
        return self._write(kind, stored, status_only=False)

    def delete(self, kind: ResourceKind, key: ObjectKey) -> None:
        with self._lock:
            obj = self._objects.pop((kind, self._scoped(kind, key)), None)
        if obj is None:
            raise NotFoundError(f"{kind.kind} '{key}' not found")
        self._notify(DELETED, kind, obj)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _write(
        self, kind: ResourceKind, obj: Mapping[str, Any], status_only: bool
    ) -> Dict[str, Any]:
        incoming = copy.deepcopy(dict(obj))
        key = self._scoped(kind, ObjectKey.of(incoming))
        with self._lock:
            current = self._objects.get((kind, key))
            if current is None:
                raise NotFoundError(f"{kind.kind} '{key}' not found")
            expected = (incoming.get("metadata") or {}).get("resourceVersion")
            if expected and expected != current["metadata"]["resourceVersion"]:
                raise ConflictError(
                    f"{kind.kind} '{key}' was modified (have {expected}, "
                    f"current {current['metadata']['resourceVersion']})"
                )
            if status_only:
                stored = copy.deepcopy(current)
                stored["status"] = incoming.get("status")
            else:
                stored = incoming
                stored.setdefault("metadata", {})["uid"] = current["metadata"].get("uid")
                if "status" in current and "status" not in stored:
                    stored["status"] = current["status"]
            stored["metadata"]["resourceVersion"] = self._next_version()
            self._objects[(kind, key)] = stored
        self._notify(MODIFIED, kind, stored)
        return copy.deepcopy(stored)

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    @staticmethod
    def _scoped(kind: ResourceKind, key: ObjectKey) -> ObjectKey:
        if kind.namespaced:
            return key
        return ObjectKey("", key.name)

    def _notify(self, event: str, kind: ResourceKind, obj: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, kind, copy.deepcopy(obj))
            except Exception:  # pragma: no cover
                LOG.exception("resource listener failed for %s %s", event, kind.kind)
