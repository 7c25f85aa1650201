import pytest
import requests
from fastapi.testclient import TestClient

from atomix_controller.control import BindingId, ClusterId, DriverId, StoreId
from atomix_controller.errors import (
    AlreadyExistsError,
    InternalError,
    NotFoundError,
    UnavailableError,
    VersionMismatchError,
)
from atomix_controller.resources import PrimitiveRule
from atomix_runtime import HttpControlClient, HttpDialer, InMemoryRuntime
from atomix_runtime import wire
from atomix_runtime.server import create_control_app

ADDRESS = "10.0.0.10:5679"
STORE = StoreId("default", "raft-store")
DRIVER = DriverId("raft", "v1")


def build_client():
    runtime = InMemoryRuntime()
    session = TestClient(create_control_app(runtime))
    conn = HttpDialer(session=session).dial(ADDRESS, timeout=2.0)
    return runtime, conn


class BrokenSession:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc
        self.closed = False

    def post(self, url, json=None, timeout=None):
        raise self.exc

    def close(self):
        self.closed = True


def test_connect_configure_disconnect():
    runtime, conn = build_client()

    conn.connect(STORE, DRIVER, b'{"replicas":3}')
    assert runtime.connections[STORE] == (DRIVER, b'{"replicas":3}')

    conn.configure(STORE, b'{"replicas":5}')
    assert runtime.connections[STORE][1] == b'{"replicas":5}'

    conn.disconnect(STORE)
    assert runtime.connections == {}


def test_errors_cross_the_wire():
    runtime, conn = build_client()
    conn.connect(STORE, DRIVER, b"")

    with pytest.raises(AlreadyExistsError):
        conn.connect(STORE, DRIVER, b"")
    with pytest.raises(NotFoundError):
        conn.configure(StoreId("default", "other"), b"")
    with pytest.raises(NotFoundError):
        conn.disconnect(StoreId("default", "other"))

    runtime.fail_next("configure", UnavailableError("driver restarting"))
    with pytest.raises(UnavailableError) as excinfo:
        conn.configure(STORE, b"")
    assert "driver restarting" in str(excinfo.value)


def test_cluster_round_trip():
    _, conn = build_client()
    cluster = ClusterId("default", "raft")

    with pytest.raises(NotFoundError):
        conn.get_cluster(cluster)
    conn.create_cluster(cluster, DRIVER, b"\x00\x01")

    info = conn.get_cluster(cluster)
    assert info.cluster == cluster
    assert info.driver == DRIVER
    assert info.config == b"\x00\x01"


def test_binding_round_trip():
    _, conn = build_client()
    binding = BindingId("default", "maps")
    cluster = ClusterId("default", "raft")
    rules = [PrimitiveRule(kinds=("Map",), metadata={"tier": "gold"})]

    conn.create_binding(binding, cluster, rules)
    with pytest.raises(AlreadyExistsError):
        conn.create_binding(binding, cluster, rules)

    info = conn.get_binding(binding)
    assert info.cluster == cluster
    assert info.rules[0].kinds == ("Map",)
    assert info.rules[0].metadata == {"tier": "gold"}


def test_transport_failures_are_unavailable():
    session = BrokenSession(requests.ConnectionError("connection refused"))
    conn = HttpControlClient(ADDRESS, timeout=1.0, session=session)

    with pytest.raises(UnavailableError):
        conn.disconnect(STORE)

    conn.close()
    assert not session.closed


def test_timeouts_are_unavailable():
    conn = HttpControlClient(
        ADDRESS, session=BrokenSession(requests.ReadTimeout("read timed out"))
    )

    with pytest.raises(UnavailableError) as excinfo:
        conn.connect(STORE, DRIVER, b"")
    assert "timed out" in str(excinfo.value)


def test_error_from_response():
    assert isinstance(wire.error_from_response(404, None), NotFoundError)
    assert isinstance(wire.error_from_response(503, {"detail": "busy"}), UnavailableError)
    assert isinstance(wire.error_from_response(418, {}), InternalError)
    error = wire.error_from_response(
        500, {"code": "VERSION_MISMATCH", "message": "no driver"}
    )
    assert isinstance(error, VersionMismatchError)
    assert error.message == "no driver"
    assert isinstance(wire.error_from_response(409, {"code": "FUTURE"}), InternalError)


def test_status_for_error_codes():
    assert wire.status_for(NotFoundError()) == 404
    assert wire.status_for(AlreadyExistsError()) == 409
    assert wire.status_for(UnavailableError()) == 503
    assert wire.status_for(VersionMismatchError()) == 422
