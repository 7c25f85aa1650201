"""YAML configuration loader for the Atomix controller process."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from atomix_controller.injector import DEFAULT_PROXY_IMAGE
from atomix_controller.resources import DEFAULT_CONTROL_PORT

RUNTIME_VERSION_ENV = "ATOMIX_RUNTIME_VERSION"
PROXY_IMAGE_ENV = "ATOMIX_PROXY_IMAGE"
RUNTIME_IMAGE_ENV = "ATOMIX_RUNTIME_IMAGE"


@dataclass
class ProxyConfig:
    runtime_version: str = ""
    image: str = DEFAULT_PROXY_IMAGE
    runtime_image: Optional[str] = None
    control_port: int = DEFAULT_CONTROL_PORT


@dataclass
class WebhookConfig:
    host: str = "0.0.0.0"
    port: int = 443
    certfile: Optional[Path] = None
    keyfile: Optional[Path] = None


@dataclass
class SessionsConfig:
    host: str = "0.0.0.0"
    port: int = 5680


@dataclass
class ControllerSettings:
    """Work queue and reconciliation tuning.

    Attributes
    ----------
    workers:
        Worker threads per controller.
    reconcile_timeout:
        Seconds a single reconciliation may block; also bounds every control
        RPC it issues.
    backoff_base, backoff_max:
        Per-key exponential backoff for failed reconciliations.
    prune_stale_status:
        Remove status entries of deleted pods and undeclared bindings.
    namespace:
        Restrict watches to one namespace (all namespaces when unset).
    """

    workers: int = 4
    reconcile_timeout: float = 30.0
    backoff_base: float = 0.01
    backoff_max: float = 5.0
    prune_stale_status: bool = False
    namespace: Optional[str] = None


@dataclass
class ControllerConfig:
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    sessions: SessionsConfig = field(default_factory=SessionsConfig)
    controller: ControllerSettings = field(default_factory=ControllerSettings)
    ready_file: Path = Path("/tmp/atomix-controller-ready")
    kubeconfig: Optional[Path] = None


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' section must be a mapping")
    return section


def _optional_path(value: Any) -> Optional[Path]:
    return Path(value) if value else None


def _parse_proxy(section: Mapping[str, Any]) -> ProxyConfig:
    return ProxyConfig(
        runtime_version=str(section.get("runtime_version", "")),
        image=str(section.get("image", DEFAULT_PROXY_IMAGE)),
        runtime_image=section.get("runtime_image"),
        control_port=int(section.get("control_port", DEFAULT_CONTROL_PORT)),
    )


def _parse_webhook(section: Mapping[str, Any]) -> WebhookConfig:
    return WebhookConfig(
        host=str(section.get("host", "0.0.0.0")),
        port=int(section.get("port", 443)),
        certfile=_optional_path(section.get("certfile")),
        keyfile=_optional_path(section.get("keyfile")),
    )


def _parse_sessions(section: Mapping[str, Any]) -> SessionsConfig:
    return SessionsConfig(
        host=str(section.get("host", "0.0.0.0")),
        port=int(section.get("port", 5680)),
    )


def _parse_controller(section: Mapping[str, Any]) -> ControllerSettings:
    workers = int(section.get("workers", 4))
    if workers < 1:
        raise ValueError("'controller.workers' must be at least 1")
    backoff_base = float(section.get("backoff_base", 0.01))
    backoff_max = float(section.get("backoff_max", 5.0))
    if backoff_base <= 0 or backoff_max < backoff_base:
        raise ValueError("backoff_max must be >= backoff_base > 0")
    prune = section.get("prune_stale_status", False)
    if not isinstance(prune, bool):
        raise ValueError("'controller.prune_stale_status' must be a boolean")
    namespace = section.get("namespace")
    return ControllerSettings(
        workers=workers,
        reconcile_timeout=float(section.get("reconcile_timeout", 30.0)),
        backoff_base=backoff_base,
        backoff_max=backoff_max,
        prune_stale_status=prune,
        namespace=str(namespace) if namespace else None,
    )


def apply_env(config: ControllerConfig, environ: Mapping[str, str]) -> ControllerConfig:
    """Return ``config`` with environment overrides applied."""

    proxy = config.proxy
    if environ.get(RUNTIME_VERSION_ENV):
        proxy = replace(proxy, runtime_version=environ[RUNTIME_VERSION_ENV])
    if environ.get(PROXY_IMAGE_ENV):
        proxy = replace(proxy, image=environ[PROXY_IMAGE_ENV])
    if environ.get(RUNTIME_IMAGE_ENV):
        proxy = replace(proxy, runtime_image=environ[RUNTIME_IMAGE_ENV])
    return replace(config, proxy=proxy)


def load_config(
    path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None
) -> ControllerConfig:
    data: Any = {}
    if path is not None:
        data = yaml.safe_load(Path(path).read_text()) or {}
    if not isinstance(data, dict):
        raise ValueError("Controller configuration must be a mapping")

    config = ControllerConfig(
        proxy=_parse_proxy(_section(data, "proxy")),
        webhook=_parse_webhook(_section(data, "webhook")),
        sessions=_parse_sessions(_section(data, "sessions")),
        controller=_parse_controller(_section(data, "controller")),
        ready_file=Path(data.get("ready_file", "/tmp/atomix-controller-ready")),
        kubeconfig=_optional_path(data.get("kubeconfig")),
    )
    config = apply_env(config, os.environ if environ is None else environ)
    if not config.proxy.runtime_version:
        raise ValueError(
            f"runtime version missing: set 'proxy.runtime_version' or {RUNTIME_VERSION_ENV}"
        )
    return config
