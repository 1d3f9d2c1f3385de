import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from interview_billing/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from interview_billing.api import analysis, billing, health, plans, sessions, webhooks
from interview_billing.core.config import settings, validate_config
from interview_billing.core.database import create_all_tables
from interview_billing.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from interview_billing.core.logging import configure_logging
from interview_billing.core.middleware.request_id import RequestIdMiddleware
from interview_billing.core.validation import validate_env
from interview_billing.features.evaluation.client import EvaluationClient

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("interview_billing")
    logger.info("Starting interview billing service...")
    app.state.startup_time = time.time()
    app.state.evaluation_client = EvaluationClient()
    if settings.ENV.lower() != "production":
        try:
            create_all_tables()
        except Exception as e:
            logger.warning("[startup] table creation skipped", extra={"error": str(e)})
    try:
        yield
    finally:
        logger.info("Stopping interview billing service...")


app = FastAPI(title="Interview Billing", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router)
app.include_router(billing.router)
app.include_router(plans.router)
app.include_router(sessions.router)
app.include_router(webhooks.router)
app.include_router(analysis.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("interview_billing.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
