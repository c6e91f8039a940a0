"""Pydantic request/response schemas for the PlantID API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ImageTag(BaseModel):
    """A single classification tag with confidence score."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)


class ClassifyImageResponse(BaseModel):
    """Response for the stateless classification endpoint."""

    status: str = Field(description="Outcome: 'identified' or 'unknown'")
    label: str | None = Field(default=None, description="Top label when identified")
    search_url: str | None = None
    tags: list[ImageTag]


class DisplayStateResponse(BaseModel):
    """Current screen state."""

    label_text: str
    has_image: bool
    image_source: str | None = None
    image_filename: str | None = None
    search_url: str | None = None
    generation: int
    pending: bool


class PickResponse(BaseModel):
    """Response for camera and gallery picks."""

    status: str = Field(description="Pick status: 'started', 'cancelled', or 'unavailable'")
    generation: int
    state: DisplayStateResponse


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    classifier_ready: bool
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
