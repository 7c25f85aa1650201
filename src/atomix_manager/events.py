"""Event primitives consumed by the controller registry."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from atomix_controller.resources import ObjectKey, ResourceKind


@dataclass(frozen=True)
class ObjectUpsert:
    """An object of ``kind`` was added or modified.

    ``obj`` is the full object as observed by the watcher so mapping
    functions can follow its references without another read.
    """

    kind: ResourceKind
    obj: Mapping[str, Any]

    @property
    def key(self) -> ObjectKey:
        return ObjectKey.of(self.obj)


@dataclass(frozen=True)
class ObjectDelete:
    """An object of ``kind`` was deleted; ``obj`` is its last known state."""

    kind: ResourceKind
    obj: Mapping[str, Any]

    @property
    def key(self) -> ObjectKey:
        return ObjectKey.of(self.obj)
