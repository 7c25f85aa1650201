"""Read-only lookups from stores to protocol versions and driver artifacts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict

from .client import ResourceClient
from .errors import NotFoundError, VersionMismatchError
from .resources import (
    ObjectKey,
    Protocol,
    ProtocolDriver,
    ProtocolVersion,
    ResourceKind,
    Store,
)

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedDriver:
    """A store's protocol version together with the driver for a runtime."""

    protocol: Protocol
    version: ProtocolVersion
    driver: ProtocolDriver

    @property
    def name(self) -> str:
        return f"{self.protocol.name}-{self.version.name}"

    @property
    def file_name(self) -> str:
        return f"{self.name}.so"


class Catalog:
    """Resolve catalog objects against the currently observed cluster state.

    Every lookup reads through ``client``; nothing is cached so the answer is
    always a pure function of what the object store currently holds.
    """

    def __init__(self, client: ResourceClient) -> None:
        self._client = client

    def get_protocol(self, name: str) -> Protocol:
        obj = self._client.get(ResourceKind.PROTOCOL, ObjectKey("", name))
        return Protocol.from_dict(obj)

    def get_profile(self, key: ObjectKey) -> Dict[str, Any]:
        return self._client.get(ResourceKind.PROFILE, key)

    def get_store(self, key: ObjectKey) -> Store:
        return Store.from_dict(self._client.get(ResourceKind.STORE, key))

    def resolve_version(self, store: Store) -> ProtocolVersion:
        """Return the protocol version ``store`` declares.

        Raises :class:`NotFoundError` if the protocol does not exist and
        :class:`VersionMismatchError` if it has no such version.
        """

        protocol = self.get_protocol(store.protocol.name)
        version = protocol.version(store.protocol.version)
        if version is None:
            raise VersionMismatchError(
                f"Unknown version '{store.protocol.version}' for protocol "
                f"'{store.protocol.name}'"
            )
        return version

    def resolve_driver(self, store: Store, runtime_version: str) -> ResolvedDriver:
        try:
            protocol = self.get_protocol(store.protocol.name)
        except NotFoundError:
            raise NotFoundError(
                f"Protocol '{store.protocol.name}' for Store '{store.key}' not found"
            ) from None
        version = protocol.version(store.protocol.version)
        if version is None:
            raise VersionMismatchError(
                f"Unknown version '{store.protocol.version}' for protocol "
                f"'{protocol.name}'"
            )
        driver = version.driver_for(runtime_version)
        if driver is None:
            raise VersionMismatchError(
                f"Unknown runtime version '{runtime_version}' for protocol "
                f"'{protocol.name}'"
            )
        LOG.debug(
            "Resolved Store '%s' to driver %s (%s)",
            store.key,
            f"{protocol.name}-{version.name}",
            driver.image,
        )
        return ResolvedDriver(protocol=protocol, version=version, driver=driver)
