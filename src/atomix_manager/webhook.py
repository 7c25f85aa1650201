"""Admission webhook application.

Serves ``admission.k8s.io/v1`` AdmissionReview requests for proxy injection,
runtime injection and Store validation.  A decision is turned into exactly
one of: allowed without patch, allowed with a base64 JSON patch, denied with
a reason (HTTP-level code 403), or errored (code 500) so the API server
retries.
"""

import base64
import json
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict

from atomix_controller.errors import AtomixError
from atomix_controller.injector import (
    AdmissionDecision,
    ProxyInjector,
    RuntimeInjector,
    StoreValidator,
)

LOG = logging.getLogger(__name__)

ADMISSION_API_VERSION = "admission.k8s.io/v1"


class AdmissionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    uid: str
    namespace: Optional[str] = None
    name: Optional[str] = None
    operation: Optional[str] = None
    object: Optional[Dict[str, Any]] = None


class AdmissionReview(BaseModel):
    model_config = ConfigDict(extra="allow")

    apiVersion: str = ADMISSION_API_VERSION
    kind: str = "AdmissionReview"
    request: Optional[AdmissionRequest] = None


def encode_patch(decision: AdmissionDecision) -> str:
    payload = json.dumps(list(decision.patch or ()), separators=(",", ":"))
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def review_response(uid: str, decision: AdmissionDecision) -> Dict[str, Any]:
    response: Dict[str, Any] = {"uid": uid, "allowed": decision.allowed}
    if not decision.allowed:
        response["status"] = {"code": 403, "reason": "Forbidden", "message": decision.reason}
    elif decision.reason:
        response["status"] = {"code": 200, "message": decision.reason}
    if decision.patch is not None:
        response["patchType"] = "JSONPatch"
        response["patch"] = encode_patch(decision)
    return {"apiVersion": ADMISSION_API_VERSION, "kind": "AdmissionReview", "response": response}


def error_response(uid: str, exc: AtomixError) -> Dict[str, Any]:
    return {
        "apiVersion": ADMISSION_API_VERSION,
        "kind": "AdmissionReview",
        "response": {
            "uid": uid,
            "allowed": False,
            "status": {"code": 500, "message": str(exc)},
        },
    }


def _review(
    name: str,
    review: AdmissionReview,
    decide: Callable[[AdmissionRequest], AdmissionDecision],
) -> Dict[str, Any]:
    request = review.request
    if request is None:
        raise HTTPException(status_code=400, detail="AdmissionReview has no request")
    try:
        decision = decide(request)
    except AtomixError as exc:
        LOG.error("%s failed for %s/%s: %s", name, request.namespace, request.name, exc)
        return error_response(request.uid, exc)
    LOG.info(
        "%s %s/%s: allowed=%s %s",
        name,
        request.namespace,
        request.name,
        decision.allowed,
        decision.reason,
    )
    return review_response(request.uid, decision)


def create_webhook_app(
    proxy_injector: ProxyInjector,
    runtime_injector: RuntimeInjector,
    store_validator: StoreValidator,
) -> FastAPI:
    app = FastAPI(title="Atomix controller webhooks", version="1.0.0")

    @app.post("/inject-proxy")
    def inject_proxy(review: AdmissionReview) -> Dict[str, Any]:
        return _review(
            "Proxy injection",
            review,
            lambda req: proxy_injector.decide(req.object or {}, req.namespace),
        )

    @app.post("/inject-runtime")
    def inject_runtime(review: AdmissionReview) -> Dict[str, Any]:
        return _review(
            "Runtime injection",
            review,
            lambda req: runtime_injector.decide(req.object or {}, req.namespace),
        )

    @app.post("/validate-store")
    def validate_store(review: AdmissionReview) -> Dict[str, Any]:
        return _review(
            "Store validation",
            review,
            lambda req: store_validator.validate(req.object or {}),
        )

    @app.get("/healthz")
    def healthz() -> Dict[str, str]:
        return {"status": "ok"}

    return app
