"""
HTTP mapping for upskeeper errors.

Every UpsKeeperError is answered with ``{"error": kind, "detail": message}``
and a status code chosen by its ErrorKind.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..errors import ErrorKind, UpsKeeperError

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.INVALID_ARGUMENT: 400,
    ErrorKind.VALIDATION: 400,
    ErrorKind.STATE: 409,
    ErrorKind.PROTOCOL: 502,
    ErrorKind.IO: 502,
    ErrorKind.TIMEOUT: 504,
}


async def upskeeper_error_handler(request: Request, exc: UpsKeeperError) -> JSONResponse:
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    logger.warning("%s %s -> %s (%s: %s)", request.method, request.url.path, status_code, exc.kind.value, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(UpsKeeperError, upskeeper_error_handler)
