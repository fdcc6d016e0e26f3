"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from retinoscan.api.routes import analysis_error_handler, queue_timeout_handler, router
from retinoscan.config import Settings, get_settings
from retinoscan.errors import AnalysisError
from retinoscan.ml.inference import InferencePool
from retinoscan.ml.model_manager import OnnxModelManager
from retinoscan.ml.pipeline import RetinopathyAnalyzer

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Create the model manager, compute pool and analyzer on ``app.state``."""
    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings)
    app.state.model_manager = OnnxModelManager(settings)
    app.state.analyzer = RetinopathyAnalyzer(settings, app.state.model_manager, app.state.inference_pool)


def close_state(app: FastAPI) -> None:
    """Release the model and stop the worker pools."""
    app.state.model_manager.shutdown()
    app.state.inference_pool.shutdown()


def _load_initial_model(manager: OnnxModelManager, settings: Settings) -> None:
    if settings.model_path is None and settings.model_repo_id is None:
        logger.info("No model configured; load one via POST /api/v1/model/load")
        return
    try:
        path = manager.ensure_downloaded()
        manager.load(path)
    except AnalysisError as exc:
        # Startup continues without a model; analysis requests get 503 until one is loaded.
        logger.error("Model not loaded at startup: %s", exc.message)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting RetinoScan (device=%s, max_concurrent=%s, input_size=%s)",
        settings.device,
        settings.max_concurrent,
        settings.input_size,
    )

    init_state(app, settings)
    _load_initial_model(app.state.model_manager, settings)

    logger.info("RetinoScan ready (model loaded: %s)", app.state.model_manager.is_ready)
    yield

    logger.info("Shutting down RetinoScan")
    close_state(app)
    logger.info("RetinoScan shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="RetinoScan",
        description="Diabetic retinopathy severity screening from fundus photographs",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(AnalysisError, analysis_error_handler)
    application.add_exception_handler(TimeoutError, queue_timeout_handler)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("retinoscan.main:app", host=settings.host, port=settings.port)
