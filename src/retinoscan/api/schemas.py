"""Pydantic request/response schemas for the RetinoScan API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class AnalysisResponse(BaseModel):
    """Classification of a single fundus image."""

    confidence: float = Field(description="Confidence of the winning class (raw model score)")
    classification: int = Field(ge=0, description="Winning class index (0-4)")
    raw_confidences: list[float] = Field(
        serialization_alias="rawConfidences",
        description="Scores for all classes, in class order",
    )
    condition: str = Field(description="Condition name for the winning class")
    confidence_percent: float = Field(
        serialization_alias="confidencePercent",
        description="Confidence x 100, rounded to two decimals",
    )


class AnalyzeUrlRequest(BaseModel):
    """Request to classify an image served over HTTP(S)."""

    url: str = Field(min_length=1)


class LoadModelRequest(BaseModel):
    """Request to load (or replace) the active model."""

    path: str = Field(min_length=1, description="Local filesystem path to an ONNX model")


class ModelStatusResponse(BaseModel):
    """State of the active model."""

    ready: bool
    path: str | None
    input_shape: list[int] | None
    output_size: int | None
    providers: list[str]


class LoadModelResponse(BaseModel):
    loaded: bool
    model: ModelStatusResponse


class Condition(BaseModel):
    index: int
    label: str


class ConditionsResponse(BaseModel):
    """Ordered severity classes the model predicts."""

    conditions: list[Condition]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    ready: bool
    gpu: bool
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    kind: str | None = None
