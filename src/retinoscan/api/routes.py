"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse

from retinoscan.api.middleware import verify_api_key
from retinoscan.api.schemas import (
    AnalysisResponse,
    AnalyzeUrlRequest,
    Condition,
    ConditionsResponse,
    ErrorResponse,
    HealthResponse,
    LoadModelRequest,
    LoadModelResponse,
    ModelStatusResponse,
)
from retinoscan.errors import AnalysisError, ErrorKind
from retinoscan.ml.classifier import CONDITION_LABELS
from retinoscan.ml.sources import ImageBytes

if TYPE_CHECKING:
    from retinoscan.config import Settings
    from retinoscan.ml.classifier import ClassificationResult
    from retinoscan.ml.inference import InferencePool
    from retinoscan.ml.model_manager import OnnxModelManager
    from retinoscan.ml.pipeline import RetinopathyAnalyzer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.LOAD_FAILED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.NOT_READY: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.EMPTY_OR_UNREADABLE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.CORRUPT_FORMAT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.INVALID_GEOMETRY: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.FETCH_FAILED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.SHAPE_MISMATCH: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.EXECUTION_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


async def analysis_error_handler(request: Request, exc: AnalysisError) -> JSONResponse:
    """Convert a pipeline error into a JSON response without internal details."""
    status_code = _ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.warning("%s %s failed: %r", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "kind": exc.kind.value},
    )


async def queue_timeout_handler(request: Request, exc: TimeoutError) -> JSONResponse:
    """Requests that waited too long for an inference slot."""
    logger.warning("%s %s timed out waiting for an inference slot", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Server busy, try again later"},
    )


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> OnnxModelManager:
    manager: OnnxModelManager = request.app.state.model_manager
    return manager


def _get_analyzer(request: Request) -> RetinopathyAnalyzer:
    analyzer: RetinopathyAnalyzer = request.app.state.analyzer
    return analyzer


def _to_response(result: ClassificationResult) -> AnalysisResponse:
    return AnalysisResponse(
        confidence=result.top_confidence,
        classification=result.top_index,
        raw_confidences=list(result.all_confidences),
        condition=result.condition_label,
        confidence_percent=result.confidence_percent,
    )


def _model_status(manager: OnnxModelManager) -> ModelStatusResponse:
    model_status = manager.status()
    return ModelStatusResponse(
        ready=model_status.ready,
        path=model_status.path,
        input_shape=list(model_status.input_shape) if model_status.input_shape else None,
        output_size=model_status.output_size,
        providers=model_status.providers,
    )


@router.post(
    "/analyze",
    response_model=AnalysisResponse,
    responses={**_ERROR_RESPONSES, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse}},
    summary="Grade diabetic retinopathy in an uploaded fundus image",
)
async def analyze(request: Request, file: UploadFile) -> AnalysisResponse:
    """Classify an uploaded fundus photograph into a severity class."""
    settings = _get_settings(request)
    analyzer = _get_analyzer(request)

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Image exceeds {settings.max_file_size} bytes",
        )

    result = await analyzer.analyze(ImageBytes(data=data, name=file.filename or "<upload>"))
    return _to_response(result)


@router.post(
    "/analyze-url",
    response_model=AnalysisResponse,
    responses=_ERROR_RESPONSES,
    summary="Grade diabetic retinopathy in an image fetched from a URL",
)
async def analyze_url(request: Request, body: AnalyzeUrlRequest) -> AnalysisResponse:
    """Download a fundus photograph and classify it."""
    analyzer = _get_analyzer(request)
    result = await analyzer.analyze_url(body.url)
    return _to_response(result)


@router.post(
    "/model/load",
    response_model=LoadModelResponse,
    responses={**_ERROR_RESPONSES, status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Load or replace the active model",
)
async def load_model(request: Request, body: LoadModelRequest) -> LoadModelResponse:
    """Load an ONNX model from local storage and make it active."""
    analyzer = _get_analyzer(request)
    pool = _get_inference_pool(request)
    loaded = await pool.run_io(analyzer.load_model, body.path)
    return LoadModelResponse(loaded=loaded, model=_model_status(_get_model_manager(request)))


@router.get(
    "/model",
    response_model=ModelStatusResponse,
    summary="Active model status",
)
async def model_status(request: Request) -> ModelStatusResponse:
    """Return whether a model is loaded and its input/output contract."""
    return _model_status(_get_model_manager(request))


@router.get(
    "/conditions",
    response_model=ConditionsResponse,
    summary="List severity classes",
)
async def list_conditions() -> ConditionsResponse:
    """Return the ordered severity classes the model predicts."""
    return ConditionsResponse(
        conditions=[Condition(index=i, label=label) for i, label in enumerate(CONDITION_LABELS)],
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        ready=_get_model_manager(request).is_ready,
        gpu=settings.device == "cuda",
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )
