import logging

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "An unexpected error occurred"


class ChatError(Exception):
    """Base for failures the boundary layer maps deterministically."""
    status_code = 500
    kind = "InternalError"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFound(ChatError):
    status_code = 404
    kind = "NotFound"

    def __init__(self, entity: str, key=None):
        message = entity if key is None else f"{entity} with ID '{key}' not found"
        super().__init__(message)


class Forbidden(ChatError):
    status_code = 403
    kind = "Forbidden"


class Unauthorized(ChatError):
    status_code = 401
    kind = "Unauthorized"


class BadRequest(ChatError):
    status_code = 400
    kind = "BadRequest"


async def chat_error_handler(request: Request, exc: ChatError):
    logger.warning(f"{exc.kind}: {exc.message} - {request.method} {request.url.path}")
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message}, headers=headers)


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(status_code=500, content={"error": INTERNAL_ERROR_MESSAGE})
