import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import api_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan: startup and shutdown events.
    """
    # Startup
    logger.info("Starting genflow application...")
    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down genflow application...")

app = FastAPI(
    title="genflow",
    description="genflow runs node graphs built on the visual canvas (text generation, translation, image description, persona injection, image generation) end-to-end or from any node forward, with per-flow undo/redo.",
    lifespan=lifespan
)

# Add CORS middleware
# Use regex to allow localhost dev servers
app.add_middleware(
    CORSMiddleware,
    allow_origins=[],  # Empty list - use regex instead
    allow_origin_regex=r"^http:\/\/localhost:\d+$|^http:\/\/127\.0\.0\.1:\d+$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(api_router)
