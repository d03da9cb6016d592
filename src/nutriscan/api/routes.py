"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Request, UploadFile, status
from fastapi.responses import JSONResponse

from nutriscan.api.middleware import (
    get_context,
    get_inference_pool,
    get_request_settings,
    require_context,
    verify_api_key,
)
from nutriscan.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    RankedLabel,
)
from nutriscan.errors import InferenceError, PreprocessingError
from nutriscan.ml.model_manager import build_model_registry
from nutriscan.ml.nutrition import clean_label, confidence_percent, format_label
from nutriscan.ml.pipeline import ClassificationContext, InferenceResult, classify

if TYPE_CHECKING:
    from nutriscan.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_model_manager(request: Request) -> ModelManager | None:
    manager: ModelManager | None = getattr(request.app.state, "model_manager", None)
    return manager


def _to_response(result: InferenceResult) -> ClassifyImageResponse:
    nutrition = result.nutrition
    top_k: list[RankedLabel] = []
    for prediction in result.top_k:
        label = prediction.label if result.is_custom_model else clean_label(prediction.label)
        top_k.append(
            RankedLabel(
                label=label,
                display_name=format_label(label),
                confidence=confidence_percent(prediction.probability),
            )
        )

    return ClassifyImageResponse(
        label=nutrition.label,
        display_name=nutrition.display_name,
        confidence=nutrition.confidence_percent,
        calories=nutrition.calories,
        protein_g=nutrition.protein_g,
        carbs_g=nutrition.carbs_g,
        fat_g=nutrition.fat_g,
        nutrition_source=str(nutrition.source),
        tier=str(result.tier),
        is_custom_model=result.is_custom_model,
        labels_degraded=result.labels_degraded,
        top_k=top_k,
    )


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify a food photo and estimate its nutrition",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    context: Annotated[ClassificationContext, Depends(require_context)],
) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded food photo and return the dish, confidence, and nutrition."""
    settings = get_request_settings(request)
    try:
        image_bytes = await file.read(settings.max_file_size + 1)
    finally:
        await file.close()

    if len(image_bytes) > settings.max_file_size:
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content={"detail": f"File exceeds the {settings.max_file_size} byte limit"},
        )

    pool = get_inference_pool(request)
    try:
        result = await pool.run(classify, image_bytes, context)
    except PreprocessingError as exc:
        logger.info("Rejected upload %s: %s", file.filename, exc)
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc)},
        )
    except InferenceError:
        logger.exception("Inference failed for upload %s", file.filename)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Model inference failed; please try again"},
        )

    return _to_response(result)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status and the active model tier."""
    settings = get_request_settings(request)
    pool = get_inference_pool(request)
    context = get_context(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok" if context is not None else "offline",
        tier=str(context.tier) if context is not None else None,
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models() if manager is not None else [],
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List model tiers",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return both model tiers and whether each one is serving requests."""
    settings = get_request_settings(request)
    context = get_context(request)

    models: list[ModelInfo] = []
    for tier, spec in build_model_registry(settings).items():
        if context is None:
            model_status = "unavailable"
        elif context.tier == tier:
            model_status = "active"
        else:
            model_status = "available"

        models.append(
            ModelInfo(
                name=spec.name,
                tier=str(tier),
                repo_id=spec.repo_id,
                revision=spec.revision,
                status=model_status,
                license=spec.license,
            )
        )

    return ModelsResponse(models=models)
