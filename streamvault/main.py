import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from streamvault.core.config import settings, validate_config
from streamvault.core.logging import configure_logging
from streamvault.core.middleware.request_id import RequestIdMiddleware
from streamvault.core.middleware.metrics import MetricsMiddleware
from streamvault.core.validation import validate_env
from streamvault.core.database import create_all_tables
from streamvault.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from streamvault.api import admin, auth, devices, downloads, health, metrics, subscriptions, webhooks
from streamvault.features.plans.service import seed_plans

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Schema and plan catalog are ensured before the first request is served."""
    logger = logging.getLogger("streamvault")
    app.state.startup_time = time.time()
    create_all_tables()
    seed_plans()
    logger.info("app.startup", extra={"env": settings.ENV})
    try:
        yield
    finally:
        logger.info("app.shutdown")


app = FastAPI(title="StreamVault - Backend", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.APP_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module in (auth, subscriptions, webhooks, devices, downloads, admin, metrics):
    app.include_router(module.router)
app.include_router(health.root_router)
