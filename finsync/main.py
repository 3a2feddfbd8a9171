from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Any, Awaitable, Callable
from uuid import uuid4

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from finsync.api import (
    routes_auth,
    routes_credentials,
    routes_references,
    routes_stripe,
    routes_sync,
    routes_webhooks,
)
from finsync.core.config import Settings, get_settings
from finsync.core import logging as logging_utils
from finsync.core.errors import SyncError
from finsync.db.session import dispose_engine

RequestHandler = Callable[[Request], Awaitable[Response]]

error_logger = logging.getLogger("finsync.errors")


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def error_response(
    request: Request,
    status_code: int,
    code: int | str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    """Every error leaves the API in the same envelope, tagged with the request id."""
    request_id = _request_id(request)
    response = JSONResponse(
        status_code=status_code,
        content={
            "code": code,
            "message": message,
            "details": details,
            "correlation_id": request_id,
        },
    )
    if request_id:
        response.headers["X-Request-Id"] = request_id
    return response


async def enforce_api_key(
    api_key_header: str | None = Header(default=None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    if api_key_header is None or api_key_header != settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


@asynccontextmanager
async def lifespan(_: FastAPI):
    settings = get_settings()
    logging_utils.configure_logging(settings.log_level)
    logger = logging.getLogger("finsync.lifespan")
    logger.info(
        "application_startup",
        extra={"environment": settings.environment},
    )
    try:
        yield
    finally:
        await dispose_engine()
        logger.info("application_shutdown")


def create_app() -> FastAPI:
    settings = get_settings()
    docs_enabled = settings.allow_docs_without_auth
    app = FastAPI(
        title="finsync",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next: RequestHandler):
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        logging_utils.set_request_context(request_id=request_id)
        start = perf_counter()
        logger = logging.getLogger("finsync.request")
        request.state.response_status = None
        try:
            response = await call_next(request)
            request.state.response_status = response.status_code
            response.headers["X-Request-Id"] = request_id
            return response
        except Exception:
            request.state.response_status = status.HTTP_500_INTERNAL_SERVER_ERROR
            raise
        finally:
            duration_ms = (perf_counter() - start) * 1000
            logger.info(
                "request_completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": request.state.response_status,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            logging_utils.clear_request_context()

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        if isinstance(exc.detail, str):
            return error_response(request, exc.status_code, exc.status_code, exc.detail)
        return error_response(request, exc.status_code, exc.status_code, "Request failed", exc.detail)

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        error_logger.log(
            level,
            "sync_error",
            extra={
                "code": exc.code,
                "error_message": exc.message,
                "correlation_id": _request_id(request),
            },
        )
        return error_response(request, exc.status_code, exc.code, exc.message, exc.details or None)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation error",
            exc.errors(),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        error_logger.exception("unhandled_error", extra={"correlation_id": _request_id(request)})
        return error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Internal server error",
        )

    protected_router = APIRouter(dependencies=[Depends(enforce_api_key)])
    protected_router.include_router(routes_auth.router)
    protected_router.include_router(routes_sync.router)
    protected_router.include_router(routes_references.router)
    protected_router.include_router(routes_credentials.router)
    protected_router.include_router(routes_stripe.router)
    app.include_router(protected_router)
    app.include_router(routes_auth.public_router)
    app.include_router(routes_webhooks.router)

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": settings.app_version}

    return app


app = create_app()


def run() -> None:
    uvicorn.run(
        "finsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        factory=False,
    )


if __name__ == "__main__":
    run()
