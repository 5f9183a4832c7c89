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

from facegate.api.middleware import register_error_handlers
from facegate.api.routes import router
from facegate.config import Settings, get_settings
from facegate.ml.inference import InferencePool
from facegate.ml.model_manager import ModelLoader, OnnxModelManager
from facegate.ml.pipeline import FacePipeline

logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, settings: Settings) -> None:
    """Construct the process-wide components and attach them to the app."""
    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings)
    manager = OnnxModelManager(settings)
    loader = ModelLoader(manager)
    app.state.model_manager = manager
    app.state.model_loader = loader
    app.state.pipeline = FacePipeline(settings, loader)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting FaceGate (device=%s, max_concurrent=%s, strategy=%s, scale=%s)",
        settings.device,
        settings.max_concurrent,
        settings.strategy,
        settings.similarity_scale,
    )

    init_app_state(app, settings)
    pipeline: FacePipeline = app.state.pipeline
    status = await pipeline.prepare()

    logger.info("FaceGate ready (pipeline %s)", status)
    yield

    logger.info("Shutting down FaceGate")
    loader: ModelLoader = app.state.model_loader
    loader.cancel()
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("FaceGate shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="FaceGate",
        description="Face detection, embedding and verification API",
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

    register_error_handlers(application)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
