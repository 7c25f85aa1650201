"""Watcher implementations used by the Atomix controller."""

from .kube import KubernetesWatcher  # noqa: F401
from .mappers import (  # noqa: F401
    NamespaceObjects,
    ProfilesForProtocol,
    ProfilesForStore,
    owner_profile,
    profile_for_pod,
)

__all__ = [
    "KubernetesWatcher",
    "NamespaceObjects",
    "ProfilesForProtocol",
    "ProfilesForStore",
    "owner_profile",
    "profile_for_pod",
]
