"""
Domain exceptions and their RFC-7807 problem responses.

ValidationError and AuthenticationError are the client's fault and echo their
message. UnexpectedError and ExternalServiceError are ours: the response only
says something went wrong while the log line carries the full cause chain.
"""
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from newsletter.obs.logging import get_logger, log_error
from newsletter.obs.tracing import get_current_trace_id

logger = get_logger(__name__)

GENERIC_SERVER_DETAIL = "An unexpected error occurred"


class ValidationError(Exception):
    """Malformed client input, e.g. an empty or over-long idempotency key."""
    pass


class AuthenticationError(Exception):
    """The request carries no usable account context."""
    pass


class UnexpectedError(Exception):
    """Storage failures and broken invariants. Never the client's fault."""
    pass


class ExternalServiceError(Exception):
    """A downstream HTTP service (the email API) failed."""
    pass


ERROR_TYPE_MAPPINGS = {
    ValidationError: ("https://tools.ietf.org/html/rfc7231#section-6.5.1", "Bad Request", 400),
    AuthenticationError: ("https://tools.ietf.org/html/rfc7235#section-3.1", "Unauthorized", 401),
    ExternalServiceError: ("https://tools.ietf.org/html/rfc7231#section-6.6.3", "Bad Gateway", 502),
    UnexpectedError: ("https://tools.ietf.org/html/rfc7231#section-6.6.1", "Internal Server Error", 500),
}


def error_chain(error: BaseException) -> str:
    """Render an exception and every explicit or implicit cause, outermost first."""
    parts = []
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        parts.append(f"{type(current).__name__}: {current}")
        current = current.__cause__ or current.__context__
    return "\nCaused by: ".join(parts)


class ProblemDetail:
    """RFC-7807 Problem Details for HTTP APIs."""

    def __init__(
        self,
        type: str,
        title: str,
        detail: str,
        status: int,
        instance: Optional[str] = None,
        trace_id: Optional[str] = None,
        **extensions
    ):
        self.type = type
        self.title = title
        self.detail = detail
        self.status = status
        self.instance = instance
        self.trace_id = trace_id
        self.extensions = extensions

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "type": self.type,
            "title": self.title,
            "detail": self.detail,
            "status": self.status,
        }
        if self.instance:
            body["instance"] = self.instance
        if self.trace_id:
            body["trace_id"] = self.trace_id
        body.update(self.extensions)
        return body


def _trace_id(request: Request) -> Optional[str]:
    return getattr(request.state, 'trace_id', None) or get_current_trace_id()


def _problem_response(
    request: Request,
    status: int,
    type: str,
    title: str,
    detail: str,
    headers: Optional[Dict[str, str]] = None,
    **extensions
) -> JSONResponse:
    problem = ProblemDetail(
        type=type,
        title=title,
        detail=detail,
        status=status,
        instance=request.url.path,
        trace_id=_trace_id(request),
        **extensions
    )
    return JSONResponse(
        status_code=status,
        content=jsonable_encoder(problem.to_dict()),
        headers=headers,
        media_type="application/problem+json",
    )


def _log_server_error(request: Request, exc: Exception, status: int):
    log_error(
        logger=logger,
        error=exc,
        trace_id=_trace_id(request),
        account_id=getattr(request.state, 'account_id', None),
        route=request.url.path,
        method=request.method,
        status=status,
    )


def _mapping_for(exc: Exception):
    for exc_type in type(exc).__mro__:
        if exc_type in ERROR_TYPE_MAPPINGS:
            return ERROR_TYPE_MAPPINGS[exc_type]
    return ERROR_TYPE_MAPPINGS[UnexpectedError]


async def domain_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map the service's own exceptions onto problem responses."""
    error_type, title, status = _mapping_for(exc)

    if status >= 500:
        _log_server_error(request, exc, status)
        detail = GENERIC_SERVER_DETAIL
    else:
        logger.warning(
            f"Request rejected: {exc}",
            extra={
                'trace_id': _trace_id(request),
                'account_id': getattr(request.state, 'account_id', None),
                'route': request.url.path,
                'status': status,
                'error_type': type(exc).__name__,
            },
        )
        detail = str(exc)

    return _problem_response(request, status, error_type, title, detail)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _problem_response(
        request,
        exc.status_code,
        "about:blank",
        "HTTP Error",
        str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Missing or mistyped form fields."""
    return _problem_response(
        request,
        422,
        "https://tools.ietf.org/html/rfc4918#section-11.2",
        "Validation Error",
        "Request validation failed",
        validation_errors=exc.errors(),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for anything not mapped above."""
    _log_server_error(request, exc, 500)
    error_type, title, status = ERROR_TYPE_MAPPINGS[UnexpectedError]
    return _problem_response(request, status, error_type, title, GENERIC_SERVER_DETAIL)


def register_error_handlers(app):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    for exc_type in ERROR_TYPE_MAPPINGS:
        app.add_exception_handler(exc_type, domain_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
    return app
