"""Admission-time injection decisions.

The injectors in this module are pure functions of the admitted pod and the
catalog objects they look up: they never modify their input and, given the
same inputs, always return the same :class:`AdmissionDecision` (including a
byte-identical JSON patch).  This is what makes admission safe to retry or
replay.

Outcomes are exactly one of:

* allow unchanged (``patch is None``);
* allow with an RFC 6902 JSON patch;
* deny with a human readable reason;
* raise an :class:`~atomix_controller.errors.AtomixError` for infrastructure
  trouble, which the webhook reports as an admission error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .catalog import Catalog, ResolvedDriver
from .errors import InvalidAnnotationError, NotFoundError, VersionMismatchError
from .resources import (
    CONTROL_PORT_NAME,
    DEFAULT_CONTROL_PORT,
    ObjectKey,
    Profile,
    Store,
)
from .routes import CONFIG_FILE

LOG = logging.getLogger(__name__)

INJECTED_STATUS = "injected"

PROXY_INJECT_ANNOTATION = "proxy.atomix.io/inject"
PROXY_STATUS_ANNOTATION = "proxy.atomix.io/status"
PROXY_RUNTIME_VERSION_ANNOTATION = "proxy.atomix.io/runtime-version"
PROXY_DRIVERS_ANNOTATION = "proxy.atomix.io/drivers"
PROXY_PROFILE_ANNOTATION = "proxy.atomix.io/profile"

RUNTIME_INJECT_ANNOTATION = "runtime.atomix.io/inject"
RUNTIME_STATUS_ANNOTATION = "runtime.atomix.io/status"
RUNTIME_VERSION_ANNOTATION = "runtime.atomix.io/version"

PROXY_CONTAINER_NAME = "atomix-proxy"
RUNTIME_CONTAINER_NAME = "atomix-runtime"
DEFAULT_PROXY_IMAGE = "atomix/proxy:latest"
RUNTIME_PORT = 5678
READY_CONDITION = "AtomixReady"

CONFIG_VOLUME = "config"
DRIVERS_VOLUME = "drivers"
CONFIG_MOUNT_PATH = "/etc/atomix"
DRIVERS_MOUNT_PATH = "/var/atomix/drivers"
DRIVERS_INIT_PATH = "/drivers"

_TRUE = {"1", "t", "true", "yes"}
_FALSE = {"0", "f", "false", "no"}


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise InvalidAnnotationError(f"invalid boolean value '{value}'")


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of an admission handler."""

    allowed: bool
    reason: str = ""
    patch: Optional[Sequence[Mapping[str, Any]]] = None

    @classmethod
    def allow(cls, reason: str = "") -> "AdmissionDecision":
        return cls(allowed=True, reason=reason)

    @classmethod
    def deny(cls, reason: str) -> "AdmissionDecision":
        return cls(allowed=False, reason=reason)

    @classmethod
    def patched(
        cls, patch: Sequence[Mapping[str, Any]], reason: str = ""
    ) -> "AdmissionDecision":
        return cls(allowed=True, reason=reason, patch=tuple(patch))


# ----------------------------------------------------------------------
# JSON patch helpers
# ----------------------------------------------------------------------
def _escape(segment: str) -> str:
    return segment.replace("~", "~0").replace("/", "~1")


def _add(path: str, value: Any) -> Dict[str, Any]:
    return {"op": "add", "path": path, "value": value}


def _append_all(
    ops: List[Dict[str, Any]],
    spec: Mapping[str, Any],
    field_name: str,
    items: Sequence[Any],
) -> None:
    if not items:
        return
    if field_name in spec and spec[field_name] is not None:
        for item in items:
            ops.append(_add(f"/spec/{field_name}/-", item))
    else:
        ops.append(_add(f"/spec/{field_name}", list(items)))


def _annotate(
    ops: List[Dict[str, Any]],
    metadata: Mapping[str, Any],
    annotations: Mapping[str, str],
) -> None:
    if metadata.get("annotations") is None:
        ops.append(_add("/metadata/annotations", dict(annotations)))
        return
    for key, value in annotations.items():
        ops.append(_add(f"/metadata/annotations/{_escape(key)}", value))


def _field_env(name: str, field_path: str) -> Dict[str, Any]:
    return {"name": name, "valueFrom": {"fieldRef": {"fieldPath": field_path}}}


class _Injector:
    """Shared opt-in, idempotence and version-ownership checks."""

    inject_annotation = ""
    status_annotation = ""
    version_annotation = ""

    def __init__(self, runtime_version: str) -> None:
        self._runtime_version = runtime_version

    @property
    def runtime_version(self) -> str:
        return self._runtime_version

    def _skip_reason(self, key: str, annotations: Mapping[str, str]) -> Optional[str]:
        intent = annotations.get(self.inject_annotation)
        if intent is None:
            return f"'{self.inject_annotation}' annotation not found"
        try:
            inject = parse_bool(intent)
        except InvalidAnnotationError:
            LOG.warning(
                "Pod '%s' has unparseable '%s' annotation %r",
                key,
                self.inject_annotation,
                intent,
            )
            return f"'{self.inject_annotation}' annotation could not be parsed"
        if not inject:
            return f"'{self.inject_annotation}' annotation is false"

        status = annotations.get(self.status_annotation)
        if status == INJECTED_STATUS:
            return f"'{self.status_annotation}' annotation is '{status}'"

        declared = annotations.get(self.version_annotation)
        if declared and declared != self._runtime_version:
            return f"'{self.version_annotation}' annotation is '{declared}'"
        return None

    @staticmethod
    def _pod_key(pod: Mapping[str, Any], namespace: Optional[str]) -> ObjectKey:
        metadata = pod.get("metadata") or {}
        return ObjectKey(
            namespace or str(metadata.get("namespace") or "default"),
            str(metadata.get("name") or metadata.get("generateName") or ""),
        )


class ProxyInjector(_Injector):
    """Decide which proxy sidecar and driver init-containers a pod needs."""

    inject_annotation = PROXY_INJECT_ANNOTATION
    status_annotation = PROXY_STATUS_ANNOTATION
    version_annotation = PROXY_RUNTIME_VERSION_ANNOTATION

    def __init__(
        self,
        catalog: Catalog,
        runtime_version: str,
        image: str = DEFAULT_PROXY_IMAGE,
        control_port: int = DEFAULT_CONTROL_PORT,
    ) -> None:
        super().__init__(runtime_version)
        self._catalog = catalog
        self._image = image
        self._control_port = control_port

    def decide(
        self, pod: Mapping[str, Any], namespace: Optional[str] = None
    ) -> AdmissionDecision:
        key = self._pod_key(pod, namespace)
        metadata = pod.get("metadata") or {}
        annotations = metadata.get("annotations") or {}

        reason = self._skip_reason(str(key), annotations)
        if reason is not None:
            LOG.info("Skipping proxy injection for Pod '%s': %s", key, reason)
            return AdmissionDecision.allow(reason)

        drivers: List[ResolvedDriver] = []
        profile_name = annotations.get(PROXY_PROFILE_ANNOTATION)
        if not profile_name:
            LOG.warning("No profile specified for Pod '%s'", key)
        else:
            resolved = self._resolve_drivers(key, ObjectKey(key.namespace, profile_name))
            if isinstance(resolved, AdmissionDecision):
                return resolved
            drivers = resolved

        ops = self._build_patch(pod, drivers, profile_name)
        LOG.info(
            "Injecting proxy into Pod '%s' with drivers %s",
            key,
            [d.name for d in drivers],
        )
        return AdmissionDecision.patched(ops, reason="proxy injected")

    def _resolve_drivers(self, pod_key: ObjectKey, profile_key: ObjectKey):
        try:
            profile = Profile.from_dict(self._catalog.get_profile(profile_key))
        except NotFoundError:
            LOG.info("Denying Pod '%s': Profile '%s' not found", pod_key, profile_key)
            return AdmissionDecision.deny(f"Profile '{profile_key}' not found")

        drivers: List[ResolvedDriver] = []
        seen = set()
        for binding in profile.bindings:
            store_key = binding.store.resolve(profile.key.namespace)
            try:
                store = self._catalog.get_store(store_key)
            except NotFoundError:
                LOG.info("Denying Pod '%s': Store '%s' not found", pod_key, store_key)
                return AdmissionDecision.deny(f"Store '{store_key}' not found")
            try:
                driver = self._catalog.resolve_driver(store, self.runtime_version)
            except (NotFoundError, VersionMismatchError) as exc:
                LOG.info("Denying Pod '%s': %s", pod_key, exc)
                return AdmissionDecision.deny(str(exc))
            if driver.name not in seen:
                seen.add(driver.name)
                drivers.append(driver)
        return drivers

    def _build_patch(
        self,
        pod: Mapping[str, Any],
        drivers: Sequence[ResolvedDriver],
        profile_name: Optional[str],
    ) -> List[Dict[str, Any]]:
        spec = pod.get("spec") or {}
        ops: List[Dict[str, Any]] = []

        _append_all(ops, spec, "initContainers", [self._init_container(d) for d in drivers])
        _append_all(ops, spec, "containers", [self._sidecar(drivers, profile_name)])

        volumes = []
        if profile_name:
            volumes.append({"name": CONFIG_VOLUME, "configMap": {"name": profile_name}})
        volumes.append({"name": DRIVERS_VOLUME, "emptyDir": {}})
        _append_all(ops, spec, "volumes", volumes)

        _annotate(
            ops,
            pod.get("metadata") or {},
            {
                PROXY_STATUS_ANNOTATION: INJECTED_STATUS,
                PROXY_RUNTIME_VERSION_ANNOTATION: self.runtime_version,
                PROXY_DRIVERS_ANNOTATION: ",".join(d.name for d in drivers),
            },
        )
        return ops

    @staticmethod
    def _init_container(driver: ResolvedDriver) -> Dict[str, Any]:
        return {
            "name": driver.name,
            "image": driver.driver.image,
            "command": [
                "cp",
                driver.driver.path,
                f"{DRIVERS_INIT_PATH}/{driver.file_name}",
            ],
            "volumeMounts": [{"name": DRIVERS_VOLUME, "mountPath": DRIVERS_INIT_PATH}],
        }

    def _sidecar(
        self, drivers: Sequence[ResolvedDriver], profile_name: Optional[str]
    ) -> Dict[str, Any]:
        args: List[str] = []
        for driver in drivers:
            args.extend(["--driver", f"{DRIVERS_MOUNT_PATH}/{driver.file_name}"])
        mounts = []
        if profile_name:
            args.extend(["--config", f"{CONFIG_MOUNT_PATH}/{CONFIG_FILE}"])
            mounts.append(
                {"name": CONFIG_VOLUME, "readOnly": True, "mountPath": CONFIG_MOUNT_PATH}
            )
        mounts.append(
            {"name": DRIVERS_VOLUME, "readOnly": True, "mountPath": DRIVERS_MOUNT_PATH}
        )
        return {
            "name": PROXY_CONTAINER_NAME,
            "image": self._image,
            "imagePullPolicy": "IfNotPresent",
            "args": args,
            "env": [
                _field_env("POD_ID", "metadata.uid"),
                _field_env("POD_NAMESPACE", "metadata.namespace"),
                _field_env("POD_NAME", "metadata.name"),
                _field_env("NODE_ID", "spec.nodeName"),
                _field_env(
                    "PROFILE_NAME", f"metadata.annotations['{PROXY_PROFILE_ANNOTATION}']"
                ),
            ],
            "ports": [
                {"name": "runtime", "containerPort": RUNTIME_PORT},
                {"name": CONTROL_PORT_NAME, "containerPort": self._control_port},
            ],
            "volumeMounts": mounts,
        }


class RuntimeInjector(_Injector):
    """Inject the lower-level runtime sidecar used by the Cluster/Binding model."""

    inject_annotation = RUNTIME_INJECT_ANNOTATION
    status_annotation = RUNTIME_STATUS_ANNOTATION
    version_annotation = RUNTIME_VERSION_ANNOTATION

    def __init__(
        self,
        runtime_version: str,
        image: Optional[str] = None,
        control_port: int = DEFAULT_CONTROL_PORT,
    ) -> None:
        super().__init__(runtime_version)
        self._image = image or f"atomix/runtime:{runtime_version}"
        self._control_port = control_port

    def decide(
        self, pod: Mapping[str, Any], namespace: Optional[str] = None
    ) -> AdmissionDecision:
        key = self._pod_key(pod, namespace)
        metadata = pod.get("metadata") or {}
        annotations = metadata.get("annotations") or {}

        reason = self._skip_reason(str(key), annotations)
        if reason is not None:
            LOG.info("Skipping runtime injection for Pod '%s': %s", key, reason)
            return AdmissionDecision.allow(reason)

        spec = pod.get("spec") or {}
        ops: List[Dict[str, Any]] = []
        _append_all(
            ops,
            spec,
            "containers",
            [
                {
                    "name": RUNTIME_CONTAINER_NAME,
                    "image": self._image,
                    "imagePullPolicy": "IfNotPresent",
                    "env": [
                        _field_env("ATOMIX_NAMESPACE", "metadata.namespace"),
                        _field_env("ATOMIX_NAME", "metadata.name"),
                        _field_env("ATOMIX_NODE", "spec.nodeName"),
                    ],
                    "ports": [
                        {"name": CONTROL_PORT_NAME, "containerPort": self._control_port}
                    ],
                }
            ],
        )
        _append_all(ops, spec, "readinessGates", [{"conditionType": READY_CONDITION}])
        _annotate(
            ops,
            metadata,
            {
                RUNTIME_STATUS_ANNOTATION: INJECTED_STATUS,
                RUNTIME_VERSION_ANNOTATION: self.runtime_version,
            },
        )
        LOG.info("Injecting runtime into Pod '%s'", key)
        return AdmissionDecision.patched(ops, reason="runtime injected")


class StoreValidator:
    """Reject stores whose protocol/version pair is not in the catalog."""

    def __init__(self, catalog: Catalog) -> None:
        self._catalog = catalog

    def validate(self, store_obj: Mapping[str, Any]) -> AdmissionDecision:
        store = Store.from_dict(store_obj)
        try:
            self._catalog.resolve_version(store)
        except NotFoundError:
            return AdmissionDecision.deny(
                f"protocol '{store.protocol.name}' not found"
            )
        except VersionMismatchError:
            return AdmissionDecision.deny(
                f"protocol '{store.protocol.name}' does not support version "
                f"{store.protocol.version}"
            )
        return AdmissionDecision.allow()
