# placekeeper/core/errors.py
"""
Error responses.

Every failure leaves the API as {"error": <message>, "code": <CODE>} with a
conventional status: 400 validation, 401 unauthenticated, 403 forbidden,
404 missing, 409 conflict, 429 throttled/locked, 500 infrastructure.
"""
import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("uvicorn.error")

_DEFAULT_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMIT_EXCEEDED",
    500: "SERVER_ERROR",
}


class ApiError(HTTPException):
    """HTTPException carrying a machine-readable code next to the message."""

    def __init__(self, status_code: int, message: str, code: str | None = None,
                 headers: dict[str, str] | None = None):
        super().__init__(status_code=status_code,
                         detail={"code": code or default_code(status_code), "message": message},
                         headers=headers)

    @property
    def code(self) -> str:
        return self.detail["code"]

    @property
    def message(self) -> str:
        return self.detail["message"]


def default_code(status_code: int) -> str:
    """
    Fallback error code for a status raised without one.

    Args:
        status_code: HTTP status of the failure

    Returns:
        str: e.g. "NOT_FOUND" for 404, or "ERROR_<status>" when unmapped
    """
    return _DEFAULT_CODES.get(status_code, f"ERROR_{status_code}")


def error_body(message: str, code: str) -> dict:
    """The {error, code} JSON body every failure is rendered as."""
    return {"error": message, "code": code}


def _first_validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    msg = str(first.get("msg", "Invalid request"))
    # pydantic prefixes custom ValueError messages
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    loc = [str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path")]
    if loc and first.get("type") in ("missing", "string_type", "bool_type", "int_type", "json_invalid"):
        return f"{'.'.join(loc)}: {msg}"
    return msg


def register_exception_handlers(app: FastAPI) -> None:
    """Install the {error, code} rendering for every exception path."""

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if isinstance(exc.detail, dict) and "code" in exc.detail:
            message = str(exc.detail.get("message", ""))
            code = str(exc.detail["code"])
        else:
            message = str(exc.detail)
            code = default_code(exc.status_code)
        return JSONResponse(status_code=exc.status_code,
                            content=error_body(message, code),
                            headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST,
                            content=error_body(_first_validation_message(exc), "VALIDATION_ERROR"))

    # Middleware rather than an Exception handler: Starlette re-raises after
    # running a catch-all handler, this returns the 500 body instead.
    @app.middleware("http")
    async def catch_unhandled(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.exception("unhandled error on %s %s", request.method, request.url.path)
            return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                                content=error_body("Internal server error", "SERVER_ERROR"))
