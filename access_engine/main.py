import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env from the project root .env
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), ".env"))

from access_engine.core.config import cors_origins, settings, validate_config
from access_engine.core.database import create_all_tables, get_database_url
from access_engine.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_error_handler,
    unhandled_exception_handler,
)
from access_engine.core.logging import configure_logging
from access_engine.core.middleware.request_id import RequestIdMiddleware
from access_engine.core.validation import validate_env
from access_engine.api import admin_feature_access, feature_access, feature_requests, health, payments, pricing
from access_engine.features.feature_access.service import seed_feature_gates

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("access_engine")
    logger.info("Starting feature access engine...")
    app.state.startup_time = time.time()
    if get_database_url():
        create_all_tables()
        if settings.SEED_FEATURE_GATES:
            seed_feature_gates()
    else:
        logger.warning("DATABASE_URL is not configured; skipping schema setup")
    try:
        yield
    finally:
        logging.getLogger("access_engine").info("Stopping feature access engine...")


app = FastAPI(title="Feature Access Engine", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(settings),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router, tags=["health"])
app.include_router(pricing.router)
app.include_router(pricing.admin_router)
app.include_router(feature_requests.router)
app.include_router(feature_requests.admin_router)
app.include_router(feature_access.router)
app.include_router(feature_access.admin_router)
app.include_router(admin_feature_access.router)
app.include_router(payments.router)
app.include_router(payments.admin_router)
