# /app/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from app.utils.logging import setup_logging
from app.services.simulation_service import simulation_service
from app.config.settings import settings

# This file manages the application's lifespan, handling startup tasks like
# configuring logging and shutdown tasks like discarding live simulation runs.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()

    logger.info(
        f"Application starting up (environment={settings.environment}, "
        f"auto_advance={settings.simulation_auto_advance}, "
        f"retry_exhausted_policy={settings.retry_exhausted_policy})"
    )

    yield  # Application is now running

    logger.info("Application shutting down...")
    discarded = simulation_service.clear()
    logger.info(f"Discarded {discarded} simulation runs.")
