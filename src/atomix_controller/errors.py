"""Error taxonomy shared by the reconcilers, webhooks and the control protocol.

Every error carries a wire ``code`` so it can cross the control protocol and
session RPC boundaries and be rebuilt on the other side with
:func:`error_for_code`.
"""

from __future__ import annotations

from typing import Dict, Type


class AtomixError(Exception):
    """Base class for all controller errors."""

    code = "INTERNAL"
    retryable = True

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(AtomixError):
    """A declarative reference or a sidecar-side object does not exist."""

    code = "NOT_FOUND"


class AlreadyExistsError(AtomixError):
    """Benign create race; callers absorb it as success."""

    code = "ALREADY_EXISTS"
    retryable = False


class ConflictError(AtomixError):
    """Optimistic-concurrency write against a stale resource version."""

    code = "CONFLICT"


class UnavailableError(AtomixError):
    """Target unreachable, transport failure or deadline exceeded."""

    code = "UNAVAILABLE"


class InternalError(AtomixError):
    """Unexpected object-store or serialization failure."""

    code = "INTERNAL"


class VersionMismatchError(AtomixError):
    """A declared protocol or runtime version has no matching catalog entry."""

    code = "VERSION_MISMATCH"
    retryable = False


class InvalidAnnotationError(AtomixError):
    """A pod annotation could not be parsed."""

    code = "INVALID_ANNOTATION"
    retryable = False


_ERRORS_BY_CODE: Dict[str, Type[AtomixError]] = {
    cls.code: cls
    for cls in (
        NotFoundError,
        AlreadyExistsError,
        ConflictError,
        UnavailableError,
        InternalError,
        VersionMismatchError,
        InvalidAnnotationError,
    )
}


def error_for_code(code: str, message: str = "") -> AtomixError:
    """Rebuild an exception from its wire ``code``.

    Unknown codes become :class:`InternalError` so a newer peer never makes
    the caller crash on an unexpected code.
    """

    cls = _ERRORS_BY_CODE.get(code, InternalError)
    return cls(message)
