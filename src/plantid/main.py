"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from plantid.config import Settings

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from plantid.api.routes import router
from plantid.config import get_settings
from plantid.controller import PlantIdController
from plantid.errors import ModelLoadError
from plantid.ml.inference import InferencePool
from plantid.ml.model_manager import OnnxModelManager
from plantid.ml.preprocessing import ImagePreprocessor
from plantid.pipeline import ClassificationPipeline, onnx_classifier_factory
from plantid.search import NullLauncher, WebBrowserLauncher
from plantid.sources import MediaSources

logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, settings: Settings) -> None:
    """Build the inference stack and controller and attach them to ``app.state``."""
    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    preprocessor = ImagePreprocessor(
        max_image_pixels=settings.max_image_pixels,
        max_file_size=settings.max_file_size,
    )
    pipeline = ClassificationPipeline(
        onnx_classifier_factory(settings, model_manager, preprocessor),
        preprocessor,
        inference_pool,
        min_confidence=settings.min_confidence,
    )
    controller = PlantIdController(
        MediaSources(settings),
        pipeline,
        WebBrowserLauncher() if settings.open_browser else NullLauncher(),
        search_domain=settings.search_domain,
        search_suffix=settings.search_suffix,
        initial_label=settings.initial_label,
    )

    app.state.settings = settings
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.pipeline = pipeline
    app.state.controller = controller


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting PlantID (device=%s, max_concurrent=%s, model=%s, models_dir=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classifier_model,
        settings.models_dir,
    )

    init_app_state(app, settings)

    if settings.preload_model:
        try:
            app.state.pipeline.warm_up()
        except ModelLoadError:
            logger.critical("Classifier %s could not be loaded", settings.classifier_model, exc_info=True)
            app.state.inference_pool.shutdown()
            raise

    logger.info("PlantID ready")
    yield

    logger.info("Shutting down PlantID")
    await app.state.controller.join()
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("PlantID shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="PlantID",
        description="Identify plants from a photo and look up how to care for them",
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
    """Serve the application with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("plantid.main:app", host=settings.host, port=settings.port)
