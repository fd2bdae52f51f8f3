"""FastAPI application factory for the webhook ingress."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from creatorcrm import __version__
from creatorcrm.core.errors import CoreError
from creatorcrm.core.logging import configure_logging
from creatorcrm.core.middleware import RequestContextMiddleware, metrics_response

from .dependencies import shutdown_clients, start_clients
from .routers import chat, commerce

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Create the webhook app receiving chat and commerce platform events."""

    configure_logging()

    app = FastAPI(title="creatorcrm webhooks", version=__version__)
    app.add_middleware(RequestContextMiddleware, service_name="creatorcrm.webhooks")

    app.include_router(commerce.router)
    app.include_router(chat.router)

    @app.exception_handler(CoreError)
    async def core_error_handler(_: Request, exc: CoreError) -> JSONResponse:
        logger.warning("request failed", extra={"code": exc.code, "status": exc.status_code})
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        return metrics_response()

    @app.on_event("startup")
    async def startup() -> None:
        await start_clients()

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await shutdown_clients()

    return app
