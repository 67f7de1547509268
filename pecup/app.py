"""
FastAPI application entry point for the academic resources API.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from pecup.config import get_settings
from pecup.errors import ApiError, BadRequest, InternalError
from pecup.routes import (
    academic_router,
    admin_router,
    content_router,
    feeds_router,
    profile_router,
    resources_router,
)

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.as_payload())


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [
        {"loc": [str(part) for part in item.get("loc", ())], "msg": item.get("msg", "")}
        for item in exc.errors()
    ]
    error = BadRequest("Invalid request", details={"errors": problems})
    return JSONResponse(status_code=error.status_code, content=error.as_payload())


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = InternalError()
    return JSONResponse(status_code=error.status_code, content=error.as_payload())


def create_app() -> FastAPI:
    _configure_logging()
    settings = get_settings()
    app = FastAPI(title="PEC-UP Academic Resources API", version="0.1.0")
    for router in (
        academic_router,
        profile_router,
        feeds_router,
        resources_router,
        content_router,
        admin_router,
    ):
        app.include_router(router, prefix=settings.api_prefix)
    app.add_exception_handler(ApiError, handle_api_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    return app


app = create_app()
