from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from scribe.core.errors import ScribeError
from scribe.core.logs import configure_logging
from scribe.core.settings import S
from scribe.metrics import METRICS_ENABLED, metrics_endpoint, metrics_middleware, set_app_info
from scribe.routers.billing import router as billing_router
from scribe.routers.entitlements import router as entitlements_router
from scribe.routers.misc import router as misc_router
from scribe.routers.transcribe import router as transcribe_router
from scribe.services.container import Services, build_services

logger = logging.getLogger(__name__)


async def scribe_error_handler(request: Request, exc: ScribeError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    content = exc.detail if isinstance(exc.detail, dict) else {"error": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


def create_app(services: Optional[Services] = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title=S.app_name, version="0.1.0")
    app.state.services = services or build_services(S)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(S.cors_allow_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if METRICS_ENABLED:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    app.add_exception_handler(ScribeError, scribe_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)

    app.include_router(transcribe_router)
    app.include_router(billing_router)
    app.include_router(entitlements_router)
    app.include_router(misc_router)

    return app

app = create_app()
