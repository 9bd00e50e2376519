"""API error handling: every failure answers ``{"error": "<message>"}``.

Status code mapping:
- request validation failure → 400 Bad Request
- ``ValueError`` (bad action, bad window) → 400
- ``MemberNotFoundError`` → 404 Not Found
- ``HTTPException`` → its own status
- ``CalendarRequestError`` / ``CalendarTransportError`` → 502 Bad Gateway
- ``EventConversionError`` (unusable event from Google) → 502
- anything else → 500, logged with its traceback
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from coup.api.models import ErrorResponse
from coup.calendar.engine import EventConversionError, MemberNotFoundError
from coup.calendar.google import CalendarError, CalendarRequestError

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


def _validation_message(exc: RequestValidationError) -> str:
    missing: list[str] = []
    problems: list[str] = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        name = ".".join(loc) or "body"
        if error.get("type") == "missing":
            missing.append(name)
        else:
            problems.append(f"{name}: {error.get('msg', 'invalid value')}")
    if missing:
        return f"Missing required fields: {', '.join(missing)}"
    return f"Invalid request: {'; '.join(problems) or 'malformed body'}"


async def _handle_validation_error(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    message = _validation_message(exc)
    logger.info("Rejected %s %s: %s", request.method, request.url.path, message)
    return _error(400, message)


async def _handle_http_exception(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


async def _handle_value_error(
    request: Request,
    exc: ValueError,
) -> JSONResponse:
    logger.info("Bad request on %s: %s", request.url.path, exc)
    return _error(400, str(exc))


async def _handle_member_not_found(
    request: Request,
    exc: MemberNotFoundError,
) -> JSONResponse:
    logger.info("Member not found: %s", exc.member_id)
    return _error(404, str(exc))


async def _handle_calendar_error(
    request: Request,
    exc: CalendarError,
) -> JSONResponse:
    """Return 502 when Google Calendar rejects or drops a request."""
    logger.warning("Calendar provider error on %s: %s", request.url.path, exc)
    message = exc.message if isinstance(exc, CalendarRequestError) else str(exc)
    return _error(502, message)


async def _handle_event_conversion_error(
    request: Request,
    exc: EventConversionError,
) -> JSONResponse:
    logger.error("Sync aborted on %s: %s", request.url.path, exc)
    return _error(502, str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Turns exceptions with no registered handler into a JSON 500."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error(500, str(exc) or "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, _handle_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_exception_handler(MemberNotFoundError, _handle_member_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarError, _handle_calendar_error)  # type: ignore[arg-type]
    app.add_exception_handler(
        EventConversionError, _handle_event_conversion_error  # type: ignore[arg-type]
    )
    app.add_middleware(CatchAllErrorMiddleware)
