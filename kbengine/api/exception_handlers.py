"""Custom exception handlers for the API."""
from fastapi import Request
from fastapi.responses import JSONResponse

from kbengine.exceptions import ErrorKind, KnowledgeBaseError
from kbengine.logging_config import get_logger

log = get_logger(__name__)

STATUS_BY_KIND = {
    ErrorKind.INVALID_QUERY: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.LOCK_TIMEOUT: 409,
    ErrorKind.LOCK_RELEASED: 409,
    ErrorKind.SCHEMA_MISMATCH: 409,
    ErrorKind.RESOURCE_UNREACHABLE: 422,
    ErrorKind.UNPARSEABLE: 422,
    ErrorKind.EMPTY_CONTENT: 422,
    ErrorKind.PROVIDER_UNAVAILABLE: 503,
    ErrorKind.STORAGE: 503,
}


async def knowledge_base_error_handler(request: Request, exc: KnowledgeBaseError) -> JSONResponse:
    """Map every engine error to a status code by its kind."""
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    if status_code >= 500:
        log.error("api_error", path=request.url.path, kind=exc.kind.value, error=str(exc))
    else:
        log.warning("api_error", path=request.url.path, kind=exc.kind.value, error=str(exc))

    headers = {"Retry-After": "5"} if exc.retryable else None
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": str(exc),
            "error_type": exc.__class__.__name__,
            "kind": exc.kind.value,
            "retryable": exc.retryable,
        },
        headers=headers,
    )
