"""Mapping functions from a changed dependency to affected primary keys.

Mappers list the primary resources and filter by reference equality; there is
no index beyond what the object store offers.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from atomix_controller.client import ResourceClient
from atomix_controller.errors import AtomixError
from atomix_controller.injector import PROXY_PROFILE_ANNOTATION
from atomix_controller.resources import ObjectKey, Profile, ResourceKind, Store

LOG = logging.getLogger(__name__)


def profile_for_pod(obj: Dict[str, Any]) -> List[ObjectKey]:
    """A pod enqueues the Profile named by its profile annotation."""

    metadata = obj.get("metadata") or {}
    profile = (metadata.get("annotations") or {}).get(PROXY_PROFILE_ANNOTATION)
    if not profile:
        return []
    return [ObjectKey(str(metadata.get("namespace") or ""), profile)]


def owner_profile(obj: Dict[str, Any]) -> List[ObjectKey]:
    """A routing ConfigMap enqueues the Profile that owns it."""

    metadata = obj.get("metadata") or {}
    kind = ResourceKind.PROFILE
    return [
        ObjectKey(str(metadata.get("namespace") or ""), str(ref.get("name", "")))
        for ref in metadata.get("ownerReferences") or []
        if ref.get("kind") == kind.kind and ref.get("apiVersion") == kind.api_version
    ]


class ProfilesForStore:
    """A store enqueues every Profile with a binding referencing it."""

    def __init__(self, client: ResourceClient) -> None:
        self._client = client

    def __call__(self, obj: Dict[str, Any]) -> List[ObjectKey]:
        store = ObjectKey.of(obj)
        try:
            profiles = self._client.list(ResourceKind.PROFILE)
        except AtomixError as exc:
            LOG.warning("Cannot list Profiles for Store '%s': %s", store, exc)
            return []
        keys = []
        for raw in profiles:
            profile = Profile.from_dict(raw)
            if store in profile.store_keys():
                keys.append(profile.key)
        return keys


class ProfilesForProtocol:
    """A protocol enqueues every Profile bound to a store implemented by it."""

    def __init__(self, client: ResourceClient) -> None:
        self._client = client

    def __call__(self, obj: Dict[str, Any]) -> List[ObjectKey]:
        protocol = ObjectKey.of(obj).name
        try:
            stores = {
                store.key
                for store in map(Store.from_dict, self._client.list(ResourceKind.STORE))
                if store.protocol.name == protocol
            }
            if not stores:
                return []
            profiles = self._client.list(ResourceKind.PROFILE)
        except AtomixError as exc:
            LOG.warning("Cannot list Profiles for Protocol '%s': %s", protocol, exc)
            return []
        keys = []
        for raw in profiles:
            profile = Profile.from_dict(raw)
            if stores.intersection(profile.store_keys()):
                keys.append(profile.key)
        return keys


class NamespaceObjects:
    """A pod enqueues every object of ``kind`` in its namespace."""

    def __init__(self, client: ResourceClient, kind: ResourceKind) -> None:
        self._client = client
        self._kind = kind

    def __call__(self, obj: Dict[str, Any]) -> List[ObjectKey]:
        namespace = ObjectKey.of(obj).namespace
        try:
            objects = self._client.list(self._kind, namespace)
        except AtomixError as exc:
            LOG.warning(
                "Cannot list %s in namespace '%s': %s", self._kind.plural, namespace, exc
            )
            return []
        return [ObjectKey.of(o) for o in objects]
