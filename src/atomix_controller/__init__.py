"""Atomix controller convergence engine.

This package holds the logic that attaches distributed-data-store clients to
workloads and keeps their sidecars converged with the declared stores:

* resolving stores to protocol versions and driver artifacts
  (:mod:`atomix_controller.catalog`);
* deciding admission-time sidecar injection
  (:mod:`atomix_controller.injector`);
* driving each ``(pod, binding)`` pair through Unbound/Bound over the control
  protocol (:mod:`atomix_controller.proxy`);
* ensuring Clusters and Bindings exist in runtime sidecars
  (:mod:`atomix_controller.runtime`); and
* tracking sidecar client sessions (:mod:`atomix_controller.sessions`).

The object store and the control protocol transport are injected through
:class:`atomix_controller.client.ResourceClient` and
:class:`atomix_controller.control.Dialer`, so everything here runs against
in-process fakes in tests.
"""

from .errors import AtomixError  # noqa: F401
from .resources import ObjectKey, ResourceKind  # noqa: F401

__all__ = ["AtomixError", "ObjectKey", "ResourceKind"]
