"""Controller registry dispatching watch events to controllers."""

from __future__ import annotations

import logging
from typing import Dict, List, Set, Union

from atomix_controller.resources import ResourceKind

from .events import ObjectDelete, ObjectUpsert
from .scheduler import Controller

LOG = logging.getLogger(__name__)

Event = Union[ObjectUpsert, ObjectDelete]


class ControllerRegistry:
    """Fan watch events out to every controller watching the event's kind.

    A controller may watch its own kind directly and any number of dependency
    kinds through mapping functions, so a change on either side of a
    dependency enqueues the same primary key.
    """

    def __init__(self) -> None:
        self._controllers: Dict[str, Controller] = {}

    def register(self, controller: Controller) -> None:
        if controller.name in self._controllers:
            raise ValueError(f"controller '{controller.name}' already registered")
        self._controllers[controller.name] = controller

    def unregister(self, name: str) -> None:
        self._controllers.pop(name, None)

    def controllers(self) -> List[Controller]:
        return list(self._controllers.values())

    def watched_kinds(self) -> Set[ResourceKind]:
        kinds: Set[ResourceKind] = set()
        for controller in self._controllers.values():
            kinds.update(controller.watched_kinds())
        return kinds

    def handle(self, event: Event) -> None:
        if not isinstance(event, (ObjectUpsert, ObjectDelete)):
            raise TypeError(f"Unsupported event type: {type(event)!r}")
        for controller in self._controllers.values():
            for mapper in controller.mappers_for(event.kind):
                try:
                    keys = mapper(dict(event.obj))
                except Exception:
                    LOG.exception(
                        "%s: failed to map %s '%s'",
                        controller.name,
                        event.kind.kind,
                        event.key,
                    )
                    continue
                for key in keys:
                    LOG.debug(
                        "%s: %s '%s' enqueues '%s'",
                        controller.name,
                        event.kind.kind,
                        event.key,
                        key,
                    )
                    controller.enqueue(key)
