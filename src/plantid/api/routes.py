"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, Response, UploadFile, status

from plantid.api.middleware import verify_api_key
from plantid.api.schemas import (
    ClassifyImageResponse,
    DisplayStateResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
    PickResponse,
)
from plantid.errors import InferencePoolBusy, ModelLoadError, PreprocessError
from plantid.ml.model_manager import MODEL_REGISTRY
from plantid.ml.preprocessing import sniff_media_type
from plantid.pipeline import OutcomeStatus
from plantid.search import build_search_url

if TYPE_CHECKING:
    from plantid.config import Settings
    from plantid.controller import DisplayState, PickResult, PlantIdController
    from plantid.ml.inference import InferencePool
    from plantid.ml.model_manager import ModelManager
    from plantid.pipeline import ClassificationPipeline

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_pipeline(request: Request) -> ClassificationPipeline:
    pipeline: ClassificationPipeline = request.app.state.pipeline
    return pipeline


def _get_controller(request: Request) -> PlantIdController:
    controller: PlantIdController = request.app.state.controller
    return controller


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _state_response(state: DisplayState) -> DisplayStateResponse:
    image = state.image
    return DisplayStateResponse(
        label_text=state.label_text,
        has_image=image is not None,
        image_source=str(image.source) if image is not None else None,
        image_filename=image.filename if image is not None else None,
        search_url=state.search_url,
        generation=state.generation,
        pending=state.pending,
    )


async def _read_upload(file: UploadFile, settings: Settings) -> bytes:
    try:
        data = await file.read(settings.max_file_size + 1)
    finally:
        await file.close()
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )
    return data


async def _finish_pick(controller: PlantIdController, result: PickResult, wait: bool) -> PickResponse:
    if wait and result.task is not None:
        await result.task
    return PickResponse(
        status=str(result.status),
        generation=result.generation,
        state=_state_response(controller.state),
    )


@router.post(
    "/pick/gallery",
    response_model=PickResponse,
    responses={status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse}},
    summary="Use a gallery photo",
)
async def pick_from_gallery(
    request: Request,
    file: Annotated[UploadFile | None, File()] = None,
    wait: Annotated[bool, Query(description="Wait for identification to finish")] = True,
) -> PickResponse:
    """Select a photo and identify it. Omitting the file cancels the pick."""
    controller = _get_controller(request)
    payload: bytes | None = None
    filename: str | None = None
    content_type: str | None = None
    if file is not None:
        payload = await _read_upload(file, _get_settings(request))
        filename = file.filename
        content_type = file.content_type

    result = await controller.pick_from_gallery(payload, filename=filename, content_type=content_type)
    return await _finish_pick(controller, result, wait)


@router.post(
    "/pick/camera",
    response_model=PickResponse,
    summary="Capture a photo with the camera",
)
async def pick_from_camera(
    request: Request,
    wait: Annotated[bool, Query(description="Wait for identification to finish")] = True,
) -> PickResponse:
    """Capture a camera frame and identify it."""
    controller = _get_controller(request)
    result = await controller.pick_from_camera()
    return await _finish_pick(controller, result, wait)


@router.get(
    "/state",
    response_model=DisplayStateResponse,
    summary="Current display state",
)
async def get_state(request: Request) -> DisplayStateResponse:
    """Return what the screen currently shows."""
    return _state_response(_get_controller(request).state)


@router.get(
    "/state/image",
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
    },
    summary="Current photo",
)
async def get_state_image(request: Request) -> Response:
    """Return the bytes of the photo currently on screen.

    The media type comes from the bytes themselves, so an upload declared as
    HTML is never served as HTML.
    """
    image = _get_controller(request).state.image
    if image is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No image selected")
    media_type = sniff_media_type(image.data)
    if media_type is None:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail="Current image is not a supported raster format",
        )
    return Response(
        content=image.data,
        media_type=media_type,
        headers={"X-Content-Type-Options": "nosniff"},
    )


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image with plant labels",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    top_k: Annotated[int | None, Query(ge=1)] = None,
) -> ClassifyImageResponse:
    """Classify an uploaded image and return ranked tags without touching the display state."""
    settings = _get_settings(request)
    data = await _read_upload(file, settings)
    outcome = await _get_pipeline(request).classify(data)

    error = outcome.error
    if error is not None:
        if isinstance(error, PreprocessError):
            code = status.HTTP_400_BAD_REQUEST
        elif isinstance(error, (ModelLoadError, InferencePoolBusy)):
            code = status.HTTP_503_SERVICE_UNAVAILABLE
        else:
            code = status.HTTP_500_INTERNAL_SERVER_ERROR
        raise HTTPException(status_code=code, detail=error.user_message)

    limit = top_k or settings.top_k
    tags = [ImageTag(label=p.label, confidence=min(max(p.confidence, 0.0), 1.0)) for p in outcome.predictions[:limit]]
    prediction = outcome.prediction
    return ClassifyImageResponse(
        status=str(outcome.status),
        label=prediction.label if prediction is not None else None,
        search_url=(
            build_search_url(prediction.label, settings.search_domain, settings.search_suffix)
            if outcome.status is OutcomeStatus.IDENTIFIED and prediction is not None
            else None
        ),
        tags=tags,
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
        gpu=settings.device == "cuda",
        models_loaded=_get_model_manager(request).get_loaded_models(),
        classifier_ready=_get_pipeline(request).is_loaded,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the registered classifiers and which one is active."""
    settings = _get_settings(request)
    models = [
        ModelInfo(
            name=spec.name,
            task=str(spec.task),
            status="active" if spec.name == settings.classifier_model else "available",
            license=spec.license,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
