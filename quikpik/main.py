import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.middleware.cors import CORSMiddleware

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from quikpik.core.config import settings, validate_config  # noqa: E402
from quikpik.core.database import create_all_tables  # noqa: E402
from quikpik.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from quikpik.core.logging import configure_logging  # noqa: E402
from quikpik.core.middleware.metrics import MetricsMiddleware  # noqa: E402
from quikpik.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from quikpik.api import admin, health, metrics, subscriptions, webhooks  # noqa: E402
from quikpik.features.plans.service import seed_plans  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("quikpik")
    logger.info("Starting QuikPik subscriptions service...")
    create_all_tables()
    seed_plans()
    try:
        yield
    finally:
        logger.info("Stopping QuikPik subscriptions service...")


app = FastAPI(title="QuikPik - Subscriptions", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(subscriptions.router)
app.include_router(webhooks.router)
app.include_router(admin.router)
app.include_router(health.router)
app.include_router(metrics.router)
