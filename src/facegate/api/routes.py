"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, UploadFile, status

from facegate.api.middleware import HTTP_413_TOO_LARGE, HTTP_422_UNPROCESSABLE, verify_api_key
from facegate.api.schemas import (
    DetectedFace,
    DetectionResponse,
    EmbeddingResponse,
    ErrorResponse,
    HealthResponse,
    LandmarkPoint,
    ModelInfo,
    ModelsResponse,
    VerificationResponse,
)
from facegate.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from facegate.config import Settings
    from facegate.ml.face_detector import FaceBox
    from facegate.ml.inference import InferencePool
    from facegate.ml.model_manager import ModelLoader, ModelManager
    from facegate.ml.pipeline import FacePipeline

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_IMAGE_ERRORS: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    HTTP_413_TOO_LARGE: {"model": ErrorResponse},
    HTTP_422_UNPROCESSABLE: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_pipeline(request: Request) -> FacePipeline:
    pipeline: FacePipeline = request.app.state.pipeline
    return pipeline


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _get_model_loader(request: Request) -> ModelLoader:
    loader: ModelLoader = request.app.state.model_loader
    return loader


async def _read_upload(file: UploadFile, settings: Settings) -> bytes:
    data = await file.read()
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=HTTP_413_TOO_LARGE,
            detail=f"Upload exceeds {settings.max_file_size} bytes",
        )
    return data


def _face_schema(face: FaceBox) -> DetectedFace:
    return DetectedFace(
        x=face.x,
        y=face.y,
        width=face.width,
        height=face.height,
        confidence=face.confidence,
        landmarks={name: LandmarkPoint(x=p.x, y=p.y) for name, p in face.landmarks.items()},
    )


@router.post(
    "/detect-faces",
    response_model=DetectionResponse,
    responses=_IMAGE_ERRORS,
    summary="Detect faces in an image",
)
async def detect_faces(
    request: Request,
    file: UploadFile,
    cascade_only: Annotated[bool | None, Query(description="Disable the heuristic fallback")] = None,
) -> DetectionResponse:
    """Detect faces in an uploaded image."""
    settings = _get_settings(request)
    pipeline = _get_pipeline(request)
    data = await _read_upload(file, settings)

    await pipeline.prepare()
    image = await _get_inference_pool(request).run(pipeline.load_image, data)
    result = await _get_inference_pool(request).run(pipeline.detect, image, cascade_only)
    return DetectionResponse(
        faces=[_face_schema(face) for face in result.faces],
        detector=result.detector,
        fallback_used=result.fallback_used,
        image_width=image.width,
        image_height=image.height,
    )


@router.post(
    "/embed",
    response_model=EmbeddingResponse,
    responses=_IMAGE_ERRORS,
    summary="Embed the largest face in an image",
)
async def embed_face(request: Request, file: UploadFile) -> EmbeddingResponse:
    """Detect the largest face and return its embedding."""
    settings = _get_settings(request)
    pipeline = _get_pipeline(request)
    data = await _read_upload(file, settings)

    await pipeline.prepare()
    extracted = await _get_inference_pool(request).run(pipeline.extract, data)
    embedding = extracted.embedding
    return EmbeddingResponse(
        vector=embedding.vector.tolist(),
        dimension=embedding.dimension,
        source=str(embedding.source),
        model=embedding.model,
        strategy=str(extracted.strategy),
        face=_face_schema(extracted.face),
        spoof_score=embedding.spoof_score,
    )


@router.post(
    "/verify",
    response_model=VerificationResponse,
    responses=_IMAGE_ERRORS,
    summary="Verify whether two images show the same person",
)
async def verify_faces(
    request: Request,
    file_a: UploadFile,
    file_b: UploadFile,
    threshold: Annotated[float | None, Query(ge=-1.0, le=1.0)] = None,
    require_models: Annotated[bool, Query(description="Fail with 503 instead of degrading")] = False,
) -> VerificationResponse:
    """Compare the largest faces of two uploaded images."""
    settings = _get_settings(request)
    pipeline = _get_pipeline(request)
    data_a = await _read_upload(file_a, settings)
    data_b = await _read_upload(file_b, settings)

    await pipeline.prepare(require_ready=require_models)
    result = await _get_inference_pool(request).run(pipeline.verify, data_a, data_b, threshold)
    return VerificationResponse(
        similarity=result.similarity,
        distance=result.distance if result.valid else None,
        match=result.match,
        confidence=result.confidence,
        threshold=result.threshold,
        mode=result.mode,
        scale=str(result.scale),
        mock=result.mock,
        valid=result.valid,
        spoof_suspected=result.spoof_suspected,
        status=str(pipeline.status),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health and pipeline status."""
    settings = _get_settings(request)
    stats = _get_inference_pool(request).stats()
    pipeline = _get_pipeline(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        pipeline_status=str(pipeline.status),
        strategy=str(pipeline.strategy),
        active_strategy=str(pipeline.active_strategy),
        models_loaded=_get_model_manager(request).get_loaded_models(),
        concurrent_requests=stats.active,
        queue_depth=stats.queued,
        completed_requests=stats.completed,
        rejected_requests=stats.rejected,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List pipeline models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the registered models and their load state."""
    report = _get_model_loader(request).report

    models: list[ModelInfo] = []
    for name, spec in MODEL_REGISTRY.items():
        error: str | None = None
        if report is not None and report.has(name):
            model_status = "loaded"
        elif report is not None and name in report.errors:
            model_status = "failed"
            error = report.errors[name]
        else:
            model_status = "not_loaded"

        models.append(
            ModelInfo(
                name=name,
                task=str(spec.task),
                required=spec.required,
                status=model_status,
                error=error,
            )
        )

    return ModelsResponse(models=models)
