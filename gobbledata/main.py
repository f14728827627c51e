"""
gobbledata API application.

`create_app()` builds the FastAPI app. Pass a prebuilt Services graph (tests)
or let the lifespan build one from settings at startup.
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from gobbledata.api import billing, entitlements, ga4, health
from gobbledata.core.config import Settings, settings as default_settings, validate_config
from gobbledata.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from gobbledata.core.logging import configure_logging
from gobbledata.core.middleware.request_id import RequestIdMiddleware
from gobbledata.core.validation import validate_env
from gobbledata.dependencies import Services, build_services


def create_app(services: Optional[Services] = None, app_settings: Optional[Settings] = None) -> FastAPI:
    cfg = services.settings if services is not None else (app_settings or default_settings)

    configure_logging(cfg.ENV)
    if services is None:
        validate_env(settings_obj=cfg)
        validate_config(strict=cfg.CONFIG_STRICT, settings_obj=cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("gobbledata")
        owns_services = not hasattr(app.state, "services")
        if owns_services:
            app.state.services = build_services(cfg)
        logger.info(
            "app.startup",
            extra={"env": cfg.ENV, "billing_enabled": app.state.services.billing.enabled},
        )
        try:
            yield
        finally:
            logger.info("app.shutdown")
            if owns_services:
                app.state.services.close()

    app = FastAPI(title="gobbledata API", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[cfg.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(ga4.router, prefix="/api")
    app.include_router(entitlements.router, prefix="/api")
    app.include_router(billing.router, prefix="/api")
    app.include_router(health.router)

    return app
