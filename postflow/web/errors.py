"""Map engine errors to JSON responses."""

from typing import Any, Awaitable, Callable

import asyncpg
import structlog
from aiohttp import web

from postflow.errors import PostflowError, ValidationError

log = structlog.get_logger()

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def error_response(error: PostflowError) -> web.Response:
    return web.json_response(error.to_dict(), status=error.status)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except PostflowError as e:
        if e.status >= 500:
            log.warning("request_failed", path=request.path, code=e.code, error=e.message)
        else:
            log.info("request_rejected", path=request.path, status=e.status, code=e.code)
        return error_response(e)
    except web.HTTPException:
        raise
    except asyncpg.DataError as e:
        # value the column type cannot hold, e.g. a malformed id
        log.info("request_bad_value", path=request.path, error=str(e))
        return error_response(ValidationError("Invalid identifier or value", code="invalid_value"))
    except Exception as e:
        log.error("request_error", path=request.path, method=request.method, error=str(e), exc_info=True)
        return web.json_response(
            {"ok": False, "error": "Internal server error", "code": "internal_error"},
            status=500,
        )


async def read_json(request: web.Request) -> dict[str, Any]:
    """Request body as a JSON object, or ValidationError."""
    try:
        body = await request.json()
    except Exception as e:
        log.info("request_bad_json", path=request.path, error=str(e))
        raise ValidationError("Invalid JSON")
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body
