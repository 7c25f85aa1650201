"""Session RPC application served to proxy sidecars."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from atomix_controller.errors import AtomixError
from atomix_controller.resources import ObjectKey
from atomix_controller.sessions import SessionTracker
from atomix_runtime import wire

LOG = logging.getLogger(__name__)


class SessionRef(BaseModel):
    namespace: str
    profile: str
    pod_id: str
    session_id: str


class OpenSessionRequest(SessionRef):
    primitive: str
    service: str
    metadata: Dict[str, List[str]] = Field(default_factory=dict)


class CloseSessionRequest(BaseModel):
    namespace: str
    profile: str
    session_id: str
    pod_id: Optional[str] = None


def create_sessions_app(tracker: SessionTracker) -> FastAPI:
    app = FastAPI(title="Atomix controller sessions", version="1.0.0")

    @app.exception_handler(AtomixError)
    async def atomix_error_handler(request: Request, exc: AtomixError) -> JSONResponse:
        LOG.warning("%s failed: %s", request.url.path, exc)
        return JSONResponse(status_code=wire.status_for(exc), content=wire.error_body(exc))

    @app.post("/v1/sessions/open")
    def open_session(request: OpenSessionRequest) -> Dict[str, Any]:
        session = tracker.open_session(
            ObjectKey(request.namespace, request.profile),
            pod_uid=request.pod_id,
            session_id=request.session_id,
            primitive=request.primitive,
            service=request.service,
            metadata=request.metadata,
        )
        return session.to_dict()

    @app.post("/v1/sessions/close")
    def close_session(request: CloseSessionRequest) -> Dict[str, Any]:
        tracker.close_session(
            ObjectKey(request.namespace, request.profile),
            session_id=request.session_id,
            pod_uid=request.pod_id,
        )
        return {}

    return app
