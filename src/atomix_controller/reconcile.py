"""Reconciler capability shared by every reconciled resource kind."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import UnavailableError
from .resources import ObjectKey, ResourceKind


@dataclass(frozen=True)
class Result:
    """Outcome of one reconciliation call.

    Attributes
    ----------
    requeue:
        Reconcile the same key again immediately; set after every successful
        state transition.
    requeue_after:
        Reconcile again after this many seconds.
    """

    requeue: bool = False
    requeue_after: Optional[float] = None


DONE = Result()
REQUEUE = Result(requeue=True)


class Deadline:
    """Bound on how long a single reconciliation may block.

    :meth:`remaining` is passed as the timeout of every control RPC issued by
    the call; once the deadline has passed it raises
    :class:`~atomix_controller.errors.UnavailableError` so the key is retried
    with backoff instead of recording a transition.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._expires = None if timeout is None else clock() + timeout

    @property
    def expired(self) -> bool:
        return self._expires is not None and self._clock() >= self._expires

    def remaining(self) -> Optional[float]:
        if self._expires is None:
            return None
        left = self._expires - self._clock()
        if left <= 0:
            raise UnavailableError("reconcile deadline exceeded")
        return left


class Reconciler(ABC):
    """Drive one object of :attr:`kind` toward its declared state."""

    kind: ResourceKind

    @abstractmethod
    def reconcile(self, key: ObjectKey, deadline: Optional[Deadline] = None) -> Result:
        """Attempt at most one state transition for ``key``."""
