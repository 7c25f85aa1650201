"""Abstract object-store contract consumed by reconcilers and webhooks."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional

from .resources import ObjectKey, ResourceKind


class ResourceClient(ABC):
    """Get/list/create/replace access to declarative objects.

    Implementations raise :class:`~atomix_controller.errors.NotFoundError`
    for missing objects, :class:`~atomix_controller.errors.AlreadyExistsError`
    on create races and :class:`~atomix_controller.errors.ConflictError` when a
    write carries a stale ``metadata.resourceVersion``.  Any other failure is
    reported as :class:`~atomix_controller.errors.InternalError` or
    :class:`~atomix_controller.errors.UnavailableError`.
    """

    @abstractmethod
    def get(self, kind: ResourceKind, key: ObjectKey) -> Dict[str, Any]:
        """Return the object identified by ``key``."""

    @abstractmethod
    def list(
        self, kind: ResourceKind, namespace: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Return all objects of ``kind``, optionally limited to ``namespace``."""

    @abstractmethod
    def create(self, kind: ResourceKind, obj: Mapping[str, Any]) -> Dict[str, Any]:
        """Create ``obj`` and return the stored copy."""

    @abstractmethod
    def replace(self, kind: ResourceKind, obj: Mapping[str, Any]) -> Dict[str, Any]:
        """Replace the object's spec/data, honouring its resource version."""

    @abstractmethod
    def update_status(
        self, kind: ResourceKind, obj: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """Persist ``obj['status']``, honouring its resource version."""
