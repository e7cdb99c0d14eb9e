import logging
from typing import Any, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base for errors surfaced to API callers.

    ``message`` is what the caller sees and stays generic; ``context`` is only
    logged server-side.
    """

    status_code = 500
    code = "error"
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None, *, context: Optional[str] = None, details: Any = None):
        self.message = message or self.default_message
        self.context = context
        self.details = details
        super().__init__(self.message if not context else f"{self.message} ({context})")


class Unauthenticated(ServiceError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Authentication required"


class Forbidden(ServiceError):
    status_code = 403
    code = "forbidden"
    default_message = "Not authorized to act on this resource"


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class InvalidInput(ServiceError):
    status_code = 400
    code = "invalid_input"
    default_message = "Invalid input"


class Conflict(ServiceError):
    status_code = 409
    code = "conflict"
    default_message = "Request conflicts with the current state"


class UpstreamFailure(ServiceError):
    status_code = 502
    code = "upstream_failure"
    default_message = "An upstream service failed"


def _error_payload(code: str, message: str, details: Any = None) -> dict:
    return {"code": code, "message": message, "details": details}


def _sanitize(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, dict):
        return {k: _sanitize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_sanitize(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def register_error_handlers(app) -> None:
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.info("%s %s rejected code=%s: %s", request.method, request.url.path, exc.code, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, exc.message, exc.details),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(f"http_{exc.status_code}", message),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for err in exc.errors():
            errors.append(
                {
                    "loc": [str(part) for part in err.get("loc", ())],
                    "msg": err.get("msg"),
                    "type": err.get("type"),
                    "input": _sanitize(err.get("input")),
                }
            )
        return JSONResponse(
            status_code=400,
            content=_error_payload("invalid_input", "Invalid input", errors),
        )
