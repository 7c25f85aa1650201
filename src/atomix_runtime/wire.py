"""HTTP/JSON encoding of the control protocol.

Every RPC is a ``POST`` of a JSON body to a fixed path.  Opaque configuration
blobs travel base64 encoded.  Failures are answered with a non-2xx status and
a ``{"code": ..., "message": ...}`` body whose ``code`` is the wire code of
an :class:`~atomix_controller.errors.AtomixError` subclass, so the client
raises the same exception type the server raised.
"""

from __future__ import annotations

import base64
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from atomix_controller.control import (
    BindingId,
    BindingInfo,
    ClusterId,
    ClusterInfo,
    DriverId,
    StoreId,
    rules_from_dicts,
)
from atomix_controller.errors import (
    AlreadyExistsError,
    AtomixError,
    ConflictError,
    InternalError,
    InvalidAnnotationError,
    NotFoundError,
    UnavailableError,
    VersionMismatchError,
    error_for_code,
)

CONNECT_PATH = "/v1/connect"
CONFIGURE_PATH = "/v1/configure"
DISCONNECT_PATH = "/v1/disconnect"
GET_CLUSTER_PATH = "/v1/clusters/get"
CREATE_CLUSTER_PATH = "/v1/clusters/create"
GET_BINDING_PATH = "/v1/bindings/get"
CREATE_BINDING_PATH = "/v1/bindings/create"

_STATUS_BY_CODE = {
    NotFoundError.code: 404,
    AlreadyExistsError.code: 409,
    ConflictError.code: 409,
    UnavailableError.code: 503,
    InternalError.code: 500,
    VersionMismatchError.code: 422,
    InvalidAnnotationError.code: 400,
}

_ERROR_BY_STATUS = {
    404: NotFoundError,
    409: AlreadyExistsError,
    503: UnavailableError,
}


def encode_config(config: bytes) -> str:
    return base64.b64encode(config).decode("ascii")


def decode_config(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii")) if text else b""


def status_for(exc: AtomixError) -> int:
    return _STATUS_BY_CODE.get(exc.code, 500)


def error_body(exc: AtomixError) -> Dict[str, str]:
    return {"code": exc.code, "message": exc.message}


def error_from_response(status: int, body: Optional[Mapping[str, Any]]) -> AtomixError:
    """Translate a failed response back into the error taxonomy."""

    body = body or {}
    message = str(body.get("message") or body.get("detail") or f"HTTP {status}")
    code = body.get("code")
    if code:
        return error_for_code(str(code), message)
    return _ERROR_BY_STATUS.get(status, InternalError)(message)


# ----------------------------------------------------------------------
# Request / response models
# ----------------------------------------------------------------------
class ObjectIdModel(BaseModel):
    namespace: str = ""
    name: str


class DriverModel(BaseModel):
    name: str
    version: str


class RuleModel(BaseModel):
    kinds: List[str] = Field(default_factory=list)
    names: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, str] = Field(default_factory=dict)


class ConnectRequest(BaseModel):
    store: ObjectIdModel
    driver: DriverModel
    config: str = ""


class ConfigureRequest(BaseModel):
    store: ObjectIdModel
    config: str = ""


class DisconnectRequest(BaseModel):
    store: ObjectIdModel


class ClusterRequest(BaseModel):
    cluster: ObjectIdModel


class CreateClusterRequest(BaseModel):
    cluster: ObjectIdModel
    driver: DriverModel
    config: str = ""


class BindingRequest(BaseModel):
    binding: ObjectIdModel


class CreateBindingRequest(BaseModel):
    binding: ObjectIdModel
    cluster: ObjectIdModel
    rules: List[RuleModel] = Field(default_factory=list)


class ClusterResponse(BaseModel):
    cluster: ObjectIdModel
    driver: DriverModel
    config: str = ""


class BindingResponse(BaseModel):
    binding: ObjectIdModel
    cluster: ObjectIdModel
    rules: List[RuleModel] = Field(default_factory=list)


def store_id(model: ObjectIdModel) -> StoreId:
    return StoreId(namespace=model.namespace, name=model.name)


def cluster_id(model: ObjectIdModel) -> ClusterId:
    return ClusterId(namespace=model.namespace, name=model.name)


def binding_id(model: ObjectIdModel) -> BindingId:
    return BindingId(namespace=model.namespace, name=model.name)


def driver_id(model: DriverModel) -> DriverId:
    return DriverId(name=model.name, version=model.version)


def cluster_info(data: Mapping[str, Any]) -> ClusterInfo:
    response = ClusterResponse.model_validate(data)
    return ClusterInfo(
        cluster=cluster_id(response.cluster),
        driver=driver_id(response.driver),
        config=decode_config(response.config),
    )


def binding_info(data: Mapping[str, Any]) -> BindingInfo:
    response = BindingResponse.model_validate(data)
    return BindingInfo(
        binding=binding_id(response.binding),
        cluster=cluster_id(response.cluster),
        rules=rules_from_models(response.rules),
    )


def rules_from_models(rules: List[RuleModel]) -> tuple:
    return rules_from_dicts([rule.model_dump() for rule in rules])
