import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from accessgate.core.config import settings, validate_config
from accessgate.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from accessgate.core.logging import configure_logging
from accessgate.core.middleware.metrics import MetricsMiddleware
from accessgate.core.middleware.ratelimit import RateLimitMiddleware
from accessgate.core.middleware.request_id import RequestIdMiddleware
from accessgate.core.ratelimit import build_rate_limit_config_from_env
from accessgate.core.validation import validate_env
from accessgate.api import admin, billing, finance_pin, health, metrics, subscription

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("accessgate")
    logger.info("Starting accessgate...")
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logging.getLogger("accessgate").info("Stopping accessgate...")


app = FastAPI(title="accessgate", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(RateLimitMiddleware, config=build_rate_limit_config_from_env(os.environ))
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.SITE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(finance_pin.router)
app.include_router(subscription.router)
app.include_router(admin.router)
app.include_router(billing.router)
app.include_router(health.router)
app.include_router(metrics.router)
