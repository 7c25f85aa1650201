"""Entry point for the Atomix controller."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from threading import Event

from atomix_controller.catalog import Catalog
from atomix_controller.client import ResourceClient
from atomix_controller.control import Dialer
from atomix_controller.injector import ProxyInjector, RuntimeInjector, StoreValidator
from atomix_controller.proxy import ProfileReconciler
from atomix_controller.resources import ResourceKind
from atomix_controller.runtime import BindingReconciler, ClusterReconciler, PodReconciler
from atomix_controller.sessions import SessionTracker
from atomix_runtime import HttpDialer

from .config import ControllerConfig, load_config
from .kube import KubernetesResourceClient, load_kube_config
from .lifecycle import Lifecycle, ReadyFile, ServerThread
from .registry import ControllerRegistry
from .scheduler import Controller, ItemExponentialFailureRateLimiter, WorkQueue
from .sessions_api import create_sessions_app
from .watchers import (
    KubernetesWatcher,
    NamespaceObjects,
    ProfilesForProtocol,
    ProfilesForStore,
    owner_profile,
    profile_for_pod,
)
from .webhook import create_webhook_app

LOG = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def build_registry(
    client: ResourceClient, dialer: Dialer, config: ControllerConfig
) -> ControllerRegistry:
    """Wire every reconciler to its queue and watches."""

    settings = config.controller
    runtime_version = config.proxy.runtime_version

    def controller(name, reconciler) -> Controller:
        queue = WorkQueue(
            ItemExponentialFailureRateLimiter(settings.backoff_base, settings.backoff_max)
        )
        return Controller(
            name,
            reconciler,
            workers=settings.workers,
            reconcile_timeout=settings.reconcile_timeout,
            queue=queue,
        )

    profiles = controller(
        "profile-controller",
        ProfileReconciler(
            client,
            dialer,
            runtime_version,
            prune_stale_status=settings.prune_stale_status,
        ),
    )
    profiles.watch(ResourceKind.PROFILE)
    profiles.watch(ResourceKind.POD, profile_for_pod)
    profiles.watch(ResourceKind.STORE, ProfilesForStore(client))
    profiles.watch(ResourceKind.PROTOCOL, ProfilesForProtocol(client))
    profiles.watch(ResourceKind.CONFIG_MAP, owner_profile)

    clusters = controller(
        "cluster-controller", ClusterReconciler(client, dialer, runtime_version)
    )
    clusters.watch(ResourceKind.CLUSTER)
    clusters.watch(ResourceKind.POD, NamespaceObjects(client, ResourceKind.CLUSTER))

    bindings = controller(
        "binding-controller", BindingReconciler(client, dialer, runtime_version)
    )
    bindings.watch(ResourceKind.BINDING)
    bindings.watch(ResourceKind.POD, NamespaceObjects(client, ResourceKind.BINDING))

    pods = controller("pod-controller", PodReconciler(client, dialer, runtime_version))
    pods.watch(ResourceKind.POD)

    registry = ControllerRegistry()
    for entry in (profiles, clusters, bindings, pods):
        registry.register(entry)
    return registry


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the Atomix controller")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the controller configuration file",
    )
    parser.add_argument(
        "--kubeconfig",
        type=Path,
        default=None,
        help="Path to a kubeconfig (defaults to in-cluster credentials)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    config = load_config(args.config)
    load_kube_config(args.kubeconfig or config.kubeconfig)
    LOG.info("Starting Atomix controller for runtime %s", config.proxy.runtime_version)

    client = KubernetesResourceClient()
    registry = build_registry(client, HttpDialer(), config)

    catalog = Catalog(client)
    webhook_app = create_webhook_app(
        ProxyInjector(
            catalog,
            config.proxy.runtime_version,
            image=config.proxy.image,
            control_port=config.proxy.control_port,
        ),
        RuntimeInjector(
            config.proxy.runtime_version,
            image=config.proxy.runtime_image,
            control_port=config.proxy.control_port,
        ),
        StoreValidator(catalog),
    )
    sessions_app = create_sessions_app(SessionTracker(client))

    stop_event = Event()
    watchers = [
        KubernetesWatcher(
            registry,
            client,
            kind,
            stop_event=stop_event,
            namespace=config.controller.namespace,
        )
        for kind in sorted(registry.watched_kinds(), key=lambda k: k.plural)
    ]
    lifecycle = Lifecycle(
        ReadyFile(config.ready_file),
        stop_event=stop_event,
        servers=[
            ServerThread(
                "webhook",
                webhook_app,
                config.webhook.host,
                config.webhook.port,
                certfile=config.webhook.certfile,
                keyfile=config.webhook.keyfile,
            ),
            ServerThread(
                "sessions", sessions_app, config.sessions.host, config.sessions.port
            ),
        ],
        controllers=registry.controllers(),
        watchers=watchers,
    )

    def _shutdown(signum, frame):  # pragma: no cover - signal handler
        LOG.info("received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        lifecycle.start()
        lifecycle.wait()
    except KeyboardInterrupt:  # pragma: no cover - fallback if signal not set
        stop_event.set()
    finally:
        lifecycle.stop()
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
