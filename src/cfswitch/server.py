"""HTTP API for inspecting and switching the managed rule.

Endpoints:
    GET  /healthz          liveness, no auth
    GET  /readyz           503 until the first reconciliation succeeded, no auth
    GET  /metrics          Prometheus exposition, no auth
    GET  /v1/rule          current rule
    POST /v1/rule/enable   {"enabled": bool}
    PUT  /v1/rule/hosts    {"hostnames": [...]}

Everything under /v1 requires `Authorization: Bearer <token>`. Errors are
returned as {"error": <HTTP reason>, "message": <detail>}.
"""

from __future__ import annotations

import logging
import time
from http import HTTPStatus
from typing import Protocol

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .metrics import METRICS_CONTENT_TYPE, Metrics
from .models import ErrorResponse, Rule, RuleResponse, ToggleRequest, UpdateHostsRequest
from .reconciler import (
    InvalidHostnamesError,
    ReconcilerError,
    RuleNotInitializedError,
)
from .security import log_security_audit_event, tokens_match

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


class RuleReconciler(Protocol):
    """Operations the API needs from the reconciler."""

    async def get_current_rule(self) -> Rule: ...

    async def toggle_rule(self, enabled: bool) -> Rule: ...

    async def update_hosts(self, hostnames: list[str]) -> Rule: ...


def error_response(status: int, message: str) -> JSONResponse:
    """Build a JSON error body for an HTTP status."""
    body = ErrorResponse(error=HTTPStatus(status).phrase, message=message)
    return JSONResponse(status_code=status, content=body.model_dump())


def status_for_error(error: ReconcilerError) -> int:
    """Map a reconciler failure to an HTTP status."""
    if isinstance(error, InvalidHostnamesError):
        return HTTPStatus.BAD_REQUEST
    if isinstance(error, RuleNotInitializedError):
        return HTTPStatus.SERVICE_UNAVAILABLE
    return HTTPStatus.BAD_GATEWAY


def create_app(
    reconciler: RuleReconciler,
    auth_token: str,
    metrics: Metrics | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        reconciler: Owner of the cached rule.
        auth_token: Bearer token required on /v1 endpoints.
        metrics: Optional metrics sink; /metrics serves an empty registry without it.
    """
    if not auth_token:
        raise ValueError("auth_token must not be empty")

    metrics = metrics if metrics is not None else Metrics()

    app = FastAPI(title="cf-switch", docs_url=None, redoc_url=None, openapi_url=None)

    @app.middleware("http")
    async def record_request(request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)

        # Route templates keep the label set bounded
        route = request.scope.get("route")
        path = getattr(route, "path", "unmatched")
        metrics.record_api_request(request.method, path, response.status_code)

        logger.debug(
            "API request completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": int((time.monotonic() - start) * 1000),
            },
        )
        return response

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        response = error_response(exc.status_code, str(exc.detail))
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = []
        for error in exc.errors():
            loc = ".".join(str(x) for x in error["loc"])
            messages.append(f"{loc}: {error['msg']}")
        return error_response(HTTPStatus.BAD_REQUEST, "invalid request body: " + "; ".join(messages))

    @app.exception_handler(ReconcilerError)
    async def handle_reconciler_error(request: Request, exc: ReconcilerError) -> JSONResponse:
        status = status_for_error(exc)
        if status == HTTPStatus.BAD_GATEWAY:
            logger.error(
                "Rule operation failed",
                extra={"path": request.url.path, "error": str(exc)},
            )
        return error_response(status, str(exc))

    async def require_token(request: Request) -> None:
        header = request.headers.get("Authorization", "")
        presented = header[len(BEARER_PREFIX) :] if header.startswith(BEARER_PREFIX) else ""

        if not presented or not tokens_match(presented, auth_token):
            log_security_audit_event(
                "auth",
                target_resource=request.url.path,
                action=request.method,
                result="denied",
            )
            raise StarletteHTTPException(
                status_code=HTTPStatus.UNAUTHORIZED,
                detail="missing or invalid bearer token",
                headers={"WWW-Authenticate": "Bearer"},
            )

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz() -> JSONResponse:
        try:
            await reconciler.get_current_rule()
        except RuleNotInitializedError:
            return JSONResponse(
                status_code=HTTPStatus.SERVICE_UNAVAILABLE,
                content={"status": "not ready"},
            )
        return JSONResponse(content={"status": "ready"})

    @app.get("/metrics")
    async def prometheus_metrics() -> Response:
        return Response(content=metrics.render(), media_type=METRICS_CONTENT_TYPE)

    api = APIRouter(prefix="/v1", dependencies=[Depends(require_token)])

    @api.get("/rule", response_model=RuleResponse)
    async def get_rule() -> RuleResponse:
        rule = await reconciler.get_current_rule()
        return RuleResponse.from_rule(rule)

    @api.post("/rule/enable", response_model=RuleResponse)
    async def toggle_rule(body: ToggleRequest) -> RuleResponse:
        rule = await reconciler.toggle_rule(body.enabled)
        log_security_audit_event(
            "toggle",
            target_resource=rule.id,
            action="enable" if body.enabled else "disable",
            result="success",
        )
        return RuleResponse.from_rule(rule)

    @api.put("/rule/hosts", response_model=RuleResponse)
    async def update_hosts(body: UpdateHostsRequest) -> RuleResponse:
        rule = await reconciler.update_hosts(body.hostnames)
        log_security_audit_event(
            "update_hosts",
            target_resource=rule.id,
            action="update",
            result="success",
        )
        return RuleResponse.from_rule(rule)

    app.include_router(api)

    return app
