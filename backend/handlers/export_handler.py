import logging

from fastapi import APIRouter, Depends, HTTPException

from models.export_models import (
    ExportCancelResponse,
    ExportProgressResponse,
    ExportRejection,
    ExportRequest,
    ExportStartResponse,
    ExportValidationResponse,
)
from operators.export_operator import ExportSessionController
from operators.export_preparer import InMemoryAssetRegistry, prepare_timeline_for_export


router = APIRouter(prefix="/export", tags=["export"])
logger = logging.getLogger(__name__)

_controller: ExportSessionController | None = None


def get_export_controller() -> ExportSessionController:
    global _controller
    if _controller is None:
        _controller = ExportSessionController()
    return _controller


REJECTION_STATUS = {
    ExportRejection.IN_PROGRESS: 409,
    ExportRejection.INVALID_TIMELINE: 400,
    ExportRejection.CANCELLED: 409,
    ExportRejection.COMPILATION_FAILED: 500,
    ExportRejection.SPAWN_FAILED: 500,
}


@router.post("/validate", response_model=ExportValidationResponse)
async def validate_export(request: ExportRequest):
    prepared = prepare_timeline_for_export(
        request.tracks, InMemoryAssetRegistry(request.assets)
    )
    return ExportValidationResponse(
        ok=prepared.validation.is_valid,
        validation=prepared.validation,
        analysis=prepared.analysis,
    )


@router.post("", response_model=ExportStartResponse)
async def start_export(
    request: ExportRequest,
    controller: ExportSessionController = Depends(get_export_controller),
):
    if controller.is_busy:
        raise HTTPException(status_code=409, detail="Export already in progress")

    prepared = prepare_timeline_for_export(
        request.tracks, InMemoryAssetRegistry(request.assets)
    )
    if not prepared.validation.is_valid:
        raise HTTPException(
            status_code=400,
            detail={
                "message": "Timeline is not ready for export",
                "errors": prepared.validation.errors,
            },
        )

    result = await controller.start_export(request.options, prepared)
    if not result.accepted:
        status_code = REJECTION_STATUS.get(result.rejection, 500)
        if status_code >= 500:
            logger.error(f"Export rejected: {result.reason}")
        raise HTTPException(status_code=status_code, detail=result.reason)

    return ExportStartResponse(
        ok=True,
        output_path=result.output_path,
        warnings=prepared.validation.warnings,
    )


@router.get("/progress", response_model=ExportProgressResponse)
async def get_export_progress(
    controller: ExportSessionController = Depends(get_export_controller),
):
    return ExportProgressResponse(ok=True, progress=controller.get_progress())


@router.post("/cancel", response_model=ExportCancelResponse)
async def cancel_export(
    controller: ExportSessionController = Depends(get_export_controller),
):
    result = await controller.cancel_export()
    if not result.success:
        raise HTTPException(status_code=409, detail=result.message)
    return ExportCancelResponse(ok=True, message=result.message)
