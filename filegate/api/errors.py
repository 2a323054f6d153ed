"""
Error translation for FastAPI hosts
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from filegate.exceptions import StorageError, StorageProviderError

logger = logging.getLogger(__name__)


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    """Render a storage error as the outbound result shape"""
    if isinstance(exc, StorageProviderError):
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> FastAPI:
    app.add_exception_handler(StorageError, storage_error_handler)
    return app
