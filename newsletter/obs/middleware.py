"""
Request observability for the newsletter API.

Every request outside the excluded probes gets a request id (echoed back as
X-Request-Id), a span, a latency sample and one structured log line. Metrics
are labelled with the matched route template rather than the raw path.
"""
import time
from typing import Callable, Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from newsletter.obs.logging import extract_trace_id, get_logger, log_error, log_request
from newsletter.obs.metrics import record_http_request
from newsletter.obs.tracing import add_span_attributes, add_span_error, get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)

DEFAULT_EXCLUDED_PATHS = ('/health', '/ready', '/metrics', '/docs', '/openapi.json')


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Assigns request ids and records spans, metrics and access logs."""

    def __init__(self, app, exclude_paths: Optional[Iterable[str]] = None):
        super().__init__(app)
        self.exclude_paths = tuple(exclude_paths or DEFAULT_EXCLUDED_PATHS)

    def _finish(self, request: Request, status_code: int, started: float) -> float:
        duration_ms = (time.perf_counter() - started) * 1000
        record_http_request(
            route=_route_label(request),
            method=request.method,
            status_code=status_code,
            duration_ms=duration_ms,
        )
        return duration_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith(self.exclude_paths):
            return await call_next(request)

        started = time.perf_counter()
        trace_id = extract_trace_id(request)
        request.state.trace_id = trace_id

        with tracer.start_as_current_span(
            f"{request.method} {request.url.path}",
            attributes={"http.method": request.method, "request.id": trace_id},
        ):
            try:
                response = await call_next(request)
            except Exception as e:
                duration_ms = self._finish(request, 500, started)
                add_span_error(e, {"http.route": _route_label(request)})
                log_error(
                    logger=logger,
                    error=e,
                    trace_id=trace_id,
                    account_id=getattr(request.state, 'account_id', None),
                    route=request.url.path,
                    method=request.method,
                    latency_ms=round(duration_ms, 2),
                )
                raise

            duration_ms = self._finish(request, response.status_code, started)
            account_id = getattr(request.state, 'account_id', None)
            add_span_attributes({
                "http.route": _route_label(request),
                "http.status_code": response.status_code,
                "account.id": account_id or "",
            })

            # Never part of a captured idempotent response, so replays differ only here
            response.headers["X-Request-Id"] = trace_id

            log_request(
                logger=logger,
                request=request,
                status_code=response.status_code,
                latency_ms=duration_ms,
                trace_id=trace_id,
                account_id=account_id,
            )
            return response
