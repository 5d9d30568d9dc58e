# appblock/api/app.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from appblock.api.problems import register_exception_handlers
from appblock.api.routes import router
from appblock.service import AppServices, build_services
from appblock.settings import AppSettings, get_settings

logger = logging.getLogger("appblock.api")


def create_app(settings: Optional[AppSettings] = None, services: Optional[AppServices] = None) -> FastAPI:
    """
    Build the FastAPI application.

    When ``services`` is given the caller owns its startup and shutdown;
    otherwise the lifespan builds, starts and stops them.
    """
    settings = settings or (services.settings if services is not None else get_settings())
    owns_services = services is None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if owns_services:
            svc = build_services(settings)
            app.state.services = svc
            await svc.start()
            logger.info("appblock %s ready", settings.version)
            try:
                yield
            finally:
                await svc.stop()
        else:
            yield

    app = FastAPI(
        title="AppBlock",
        version=settings.version,
        docs_url="/docs",
        redoc_url=None,
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    register_exception_handlers(app)
    app.include_router(router)
    return app
