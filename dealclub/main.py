import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env from the project root .env (skipped under pytest)
project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(project_dir, ".env"))

from dealclub.core.config import settings, validate_config
from dealclub.core.database import create_all_tables
from dealclub.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from dealclub.core.logging import configure_logging
from dealclub.core.middleware.request_id import RequestIdMiddleware
from dealclub.api import deals, entitlements, health, redemptions
from dealclub.features.notifications.service import hub
from dealclub.features.plans.service import seed_plans

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("dealclub")
    logger.info("Starting DealClub backend...")
    app.state.startup_time = time.time()
    if settings.ENV in ("development", "dev") and os.getenv("DEALCLUB_SKIP_BOOTSTRAP") != "1":
        create_all_tables()
        seed_plans()
    try:
        yield
    finally:
        logger.info("Stopping DealClub backend...")
        hub.shutdown()


app = FastAPI(title="DealClub - Backend", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

# Exception handlers
app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["health"])
app.include_router(deals.router, tags=["deals"])
app.include_router(redemptions.router, tags=["redemptions"])
app.include_router(entitlements.router, tags=["entitlements"])
