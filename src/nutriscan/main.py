"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from nutriscan.api.routes import router
from nutriscan.config import get_settings
from nutriscan.errors import ModelUnavailableError
from nutriscan.ml.inference import InferencePool
from nutriscan.ml.model_manager import OnnxModelManager
from nutriscan.ml.pipeline import ClassificationContext

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model once on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting NutriScan (device=%s, custom=%s@%s, fallback=%s@%s)",
        settings.device,
        settings.custom_model_repo,
        settings.custom_model_revision,
        settings.fallback_model_repo,
        settings.fallback_model_revision,
    )

    inference_pool = InferencePool()
    app.state.inference_pool = inference_pool
    model_manager = OnnxModelManager(settings)
    app.state.model_manager = model_manager
    app.state.context = None

    try:
        loaded = await inference_pool.run(model_manager.load_model)
    except ModelUnavailableError:
        logger.exception("No model could be loaded; NutriScan is offline")
    else:
        app.state.context = ClassificationContext.from_loaded(loaded, settings)
        logger.info("NutriScan ready (tier=%s)", loaded.tier)

    yield

    logger.info("Shutting down NutriScan")
    model_manager.shutdown()
    inference_pool.shutdown()
    logger.info("NutriScan shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="NutriScan",
        description="Food photo classification with calorie and macro-nutrient estimates",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the app with uvicorn using NUTRISCAN_HOST / NUTRISCAN_PORT."""
    settings = get_settings()
    uvicorn.run("nutriscan.main:app", host=settings.host, port=settings.port)
