"""Bookkeeping of client sessions reported by proxy sidecars."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Mapping, Optional, Sequence

from .client import ResourceClient
from .errors import ConflictError, NotFoundError, UnavailableError
from .resources import (
    ObjectKey,
    Profile,
    ProfileStatus,
    ResourceKind,
    SessionStatus,
    format_timestamp,
    utcnow,
)

LOG = logging.getLogger(__name__)


class SessionTracker:
    """Record session open/close events in the owning Profile's status.

    Sessions are keyed by ``(pod uid, session id)`` and are never removed
    here: closing a session only stamps its deletion timestamp.  Writes use
    the Profile's resource version; a conflicting write is retried from a
    fresh read up to ``max_attempts`` times before the caller is told to
    retry with :class:`~atomix_controller.errors.UnavailableError`.
    """

    def __init__(
        self,
        client: ResourceClient,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 5,
    ) -> None:
        self._client = client
        self._clock = clock
        self._max_attempts = max_attempts

    def open_session(
        self,
        profile_key: ObjectKey,
        pod_uid: str,
        session_id: str,
        primitive: str,
        service: str,
        metadata: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> SessionStatus:
        def apply(profile: Profile) -> Optional[ProfileStatus]:
            proxy = profile.status.proxies.get(pod_uid)
            if proxy is None:
                raise UnavailableError(
                    f"pod '{pod_uid}' status not found for Profile '{profile_key}'"
                )
            if session_id in proxy.sessions:
                return None
            session = SessionStatus(
                session_id=session_id,
                primitive=primitive,
                service=service,
                metadata={k: tuple(v) for k, v in (metadata or {}).items()},
                creation_timestamp=format_timestamp(self._clock()),
            )
            return profile.status.with_proxy(proxy.with_session(session))

        profile = self._update(profile_key, apply)
        LOG.info(
            "Opened session '%s' for primitive '%s' in Pod '%s'",
            session_id,
            primitive,
            pod_uid,
        )
        return profile.status.proxies[pod_uid].sessions[session_id]

    def close_session(
        self, profile_key: ObjectKey, session_id: str, pod_uid: Optional[str] = None
    ) -> None:
        def apply(profile: Profile) -> Optional[ProfileStatus]:
            if pod_uid is not None and pod_uid not in profile.status.proxies:
                raise UnavailableError(
                    f"pod '{pod_uid}' status not found for Profile '{profile_key}'"
                )
            status = profile.status
            changed = False
            for proxy in profile.status.proxies.values():
                session = proxy.sessions.get(session_id)
                if session is None or session.deletion_timestamp:
                    continue
                closed = replace(
                    session, deletion_timestamp=format_timestamp(self._clock())
                )
                status = status.with_proxy(proxy.with_session(closed))
                changed = True
            return status if changed else None

        self._update(profile_key, apply)
        LOG.info("Closed session '%s' of Profile '%s'", session_id, profile_key)

    def _update(
        self,
        profile_key: ObjectKey,
        apply: Callable[[Profile], Optional[ProfileStatus]],
    ) -> Profile:
        for attempt in range(1, self._max_attempts + 1):
            try:
                obj = self._client.get(ResourceKind.PROFILE, profile_key)
            except NotFoundError:
                raise UnavailableError(f"Profile '{profile_key}' not found") from None
            profile = Profile.from_dict(obj)
            status = apply(profile)
            if status is None:
                return profile
            try:
                stored = self._client.update_status(
                    ResourceKind.PROFILE, profile.with_status(status)
                )
            except ConflictError:
                LOG.debug(
                    "Conflict updating sessions of Profile '%s' (attempt %d)",
                    profile_key,
                    attempt,
                )
                continue
            return Profile.from_dict(stored)
        raise UnavailableError(
            f"Profile '{profile_key}' was modified concurrently, retry later"
        )
