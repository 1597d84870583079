import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from dailydrop import __version__
from dailydrop.api import health, streaks
from dailydrop.core.config import settings, validate_config
from dailydrop.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from dailydrop.core.logging import configure_logging
from dailydrop.core.middleware.request_id import RequestIdMiddleware
from dailydrop.features.drops.service import get_drop_service

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("dailydrop")
    logger.info("Starting daily drop API...")
    service = get_drop_service()
    await service.initialize_agents()
    app.state.drop_service = service
    try:
        yield
    finally:
        await service.drain_notifications(timeout=5.0)
        logging.getLogger("dailydrop").info("Stopping daily drop API...")


app = FastAPI(title="Daily Drop Scheduler", version=__version__, lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(health.router)
app.include_router(streaks.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("dailydrop.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
