"""
Correlation middleware for the billing API.

Every request gets a request_id and correlation_id (taken from the
incoming x-request-id / x-correlation-id headers when present). A
project_id query parameter is bound as well, so preflight and ledger log
lines carry the project they were about. Routers that receive the
project id in a JSON body bind it themselves with bind_project_id().

One request_completed line is logged per request; 402/403 responses are
flagged as billing denials.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from billing_guard.core.structured_logging import correlation_id_var, project_id_var, request_id_var

logger = logging.getLogger(__name__)

DENIAL_STATUS_CODES = frozenset({402, 403})


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class CorrelationMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        corr_id = request.headers.get("x-correlation-id") or uuid.uuid4().hex
        project_id = request.query_params.get("project_id") or None

        tokens = (
            (request_id_var, request_id_var.set(req_id)),
            (correlation_id_var, correlation_id_var.set(corr_id)),
            (project_id_var, project_id_var.set(project_id)),
        )

        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        finally:
            status_code = response.status_code if response else 500
            logger.info(
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path_template": _route_template(request),
                    "http.status_code": status_code,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                    "project_id": project_id,
                    "billing.denied": status_code in DENIAL_STATUS_CODES,
                },
            )
            for var, token in reversed(tokens):
                var.reset(token)

        response.headers["x-request-id"] = req_id
        response.headers["x-correlation-id"] = corr_id
        return response
