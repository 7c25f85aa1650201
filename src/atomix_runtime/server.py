"""Sidecar-side control protocol server.

The sidecar exposes its control surface as a FastAPI application. Request
handling is delegated to any :class:`~atomix_controller.control.ControlClient`
implementation (for example :class:`atomix_runtime.memory.InMemoryRuntime`),
so the same semantics are reachable in-process and over HTTP.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from atomix_controller.control import ControlClient
from atomix_controller.errors import AtomixError

from . import wire

LOG = logging.getLogger(__name__)


def _id_model(value) -> wire.ObjectIdModel:
    return wire.ObjectIdModel(namespace=value.namespace, name=value.name)


def create_control_app(runtime: ControlClient) -> FastAPI:
    app = FastAPI(title="Atomix sidecar control", version="1.0.0")

    @app.exception_handler(AtomixError)
    async def atomix_error_handler(request: Request, exc: AtomixError) -> JSONResponse:
        LOG.debug("%s failed: %s %s", request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=wire.status_for(exc), content=wire.error_body(exc))

    @app.post(wire.CONNECT_PATH)
    def connect(request: wire.ConnectRequest) -> dict:
        runtime.connect(
            wire.store_id(request.store),
            wire.driver_id(request.driver),
            wire.decode_config(request.config),
        )
        return {}

    @app.post(wire.CONFIGURE_PATH)
    def configure(request: wire.ConfigureRequest) -> dict:
        runtime.configure(wire.store_id(request.store), wire.decode_config(request.config))
        return {}

    @app.post(wire.DISCONNECT_PATH)
    def disconnect(request: wire.DisconnectRequest) -> dict:
        runtime.disconnect(wire.store_id(request.store))
        return {}

    @app.post(wire.GET_CLUSTER_PATH, response_model=wire.ClusterResponse)
    def get_cluster(request: wire.ClusterRequest) -> wire.ClusterResponse:
        info = runtime.get_cluster(wire.cluster_id(request.cluster))
        return wire.ClusterResponse(
            cluster=_id_model(info.cluster),
            driver=wire.DriverModel(name=info.driver.name, version=info.driver.version),
            config=wire.encode_config(info.config),
        )

    @app.post(wire.CREATE_CLUSTER_PATH)
    def create_cluster(request: wire.CreateClusterRequest) -> dict:
        runtime.create_cluster(
            wire.cluster_id(request.cluster),
            wire.driver_id(request.driver),
            wire.decode_config(request.config),
        )
        return {}

    @app.post(wire.GET_BINDING_PATH, response_model=wire.BindingResponse)
    def get_binding(request: wire.BindingRequest) -> wire.BindingResponse:
        info = runtime.get_binding(wire.binding_id(request.binding))
        return wire.BindingResponse(
            binding=_id_model(info.binding),
            cluster=_id_model(info.cluster),
            rules=[wire.RuleModel(**rule.to_dict()) for rule in info.rules],
        )

    @app.post(wire.CREATE_BINDING_PATH)
    def create_binding(request: wire.CreateBindingRequest) -> dict:
        rules = wire.rules_from_models(request.rules)
        runtime.create_binding(
            wire.binding_id(request.binding), wire.cluster_id(request.cluster), rules
        )
        return {}

    return app
